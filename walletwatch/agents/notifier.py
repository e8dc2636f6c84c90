"""Alert delivery seam for wallet activity."""

from typing import Any, Dict

import structlog

logger = structlog.get_logger(__name__)


class Notifier:
    """Delivers wallet-activity alerts somewhere."""

    async def send_alert(self, payload: Dict[str, Any]) -> None:
        raise NotImplementedError


class LogNotifier(Notifier):
    """Default notifier: writes each alert to the structured log."""

    def __init__(self, event: str = "wallet_activity_alert"):
        self.event = event
        self.sent = 0

    async def send_alert(self, payload: Dict[str, Any]) -> None:
        self.sent += 1
        logger.info(self.event, **payload)

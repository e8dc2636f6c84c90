#!/usr/bin/env python3
"""walletwatch Main Entry Point

Integrates:
- RpcManager (rate limiting, circuit breaking, endpoint rotation, batching)
- WalletPoller (tracked wallet activity monitor)
- LogNotifier (default alert delivery)
"""

import asyncio
import signal
import sys

import structlog

from walletwatch.agents.notifier import LogNotifier
from walletwatch.agents.wallet_poller import WalletPoller
from walletwatch.agents.wallet_store import JsonWalletStore
from walletwatch.config import Settings, configure_logging
from walletwatch.utils.errors import ConfigurationError
from walletwatch.utils.rpc_manager import RpcManager

logger = structlog.get_logger(__name__)


class WalletWatchMain:
    """Owns the RPC layer and the poller for the lifetime of the process."""

    def __init__(self, settings: Settings):
        self.settings = settings
        self.rpc = RpcManager.from_settings(settings)
        self.poller = WalletPoller.from_config(
            self.rpc,
            JsonWalletStore(settings.poller.wallets_file),
            settings.poller,
            notifier=LogNotifier(),
        )
        self.shutdown_event = asyncio.Event()
        self._tasks = []

    async def start(self):
        """Run until SIGINT/SIGTERM."""
        logger.info(
            "walletwatch_starting",
            endpoints=self.settings.pool.endpoints,
            fallbacks=self.settings.pool.fallback_endpoints,
            wallets_file=self.settings.poller.wallets_file,
        )

        async with self.rpc:
            self._tasks = [
                asyncio.create_task(self.poller.run()),
                asyncio.create_task(self.shutdown_handler()),
            ]

            done, pending = await asyncio.wait(
                self._tasks,
                return_when=asyncio.FIRST_COMPLETED
            )

            for task in pending:
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass

            for task in done:
                if not task.cancelled() and task.exception():
                    logger.error("component_failed", error=str(task.exception()))

        logger.info("walletwatch_stopped", **self.poller.get_stats())

    async def shutdown_handler(self):
        """Graceful shutdown on SIGINT/SIGTERM."""
        loop = asyncio.get_running_loop()

        def signal_handler():
            logger.info("shutdown_signal_received")
            self.shutdown_event.set()

        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, signal_handler)

        await self.shutdown_event.wait()

        logger.info("graceful_shutdown_initiated")
        self.poller.stop()
        await self.poller.flush()

    async def stop(self):
        """Manually stop the system."""
        self.shutdown_event.set()


async def main() -> int:
    """Main entry point."""
    try:
        settings = Settings.from_env()
        configure_logging(settings.logging.level, settings.logging.json_output)
        settings.validate()
        app = WalletWatchMain(settings)
    except ConfigurationError as e:
        logger.error("configuration_error", error=str(e))
        return 1

    try:
        await app.start()
    except KeyboardInterrupt:
        logger.info("keyboard_interrupt")
        await app.stop()
    except Exception as e:
        logger.error("fatal_error", error=str(e), exc_info=True)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))

"""Read-only sources of the wallet addresses to monitor."""

from pathlib import Path
from typing import Iterable, List, Union

import orjson
import structlog

logger = structlog.get_logger(__name__)


class WalletListStore:
    """Returns the ordered list of wallet addresses to poll."""

    def list_wallets(self) -> List[str]:
        raise NotImplementedError


class StaticWalletStore(WalletListStore):
    """Fixed, in-memory wallet list."""

    def __init__(self, wallets: Iterable[str]):
        self._wallets = tuple(dict.fromkeys(w.strip() for w in wallets if w and w.strip()))

    def list_wallets(self) -> List[str]:
        return list(self._wallets)


class JsonWalletStore(WalletListStore):
    """
    Wallets loaded from a JSON file shaped like ``{"wallets": ["addr", ...]}``.

    The file is read once, on first use. A missing or malformed file yields
    an empty list and an error log entry.
    """

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)
        self._wallets = None

    def _load(self) -> List[str]:
        try:
            data = orjson.loads(self.path.read_bytes())
        except FileNotFoundError:
            logger.error("wallets_file_missing", path=str(self.path))
            return []
        except orjson.JSONDecodeError as e:
            logger.error("wallets_file_invalid", path=str(self.path), error=str(e))
            return []

        wallets = data.get("wallets", []) if isinstance(data, dict) else []
        if not isinstance(wallets, list):
            logger.error("wallets_file_invalid", path=str(self.path), error="'wallets' is not a list")
            return []

        # Keep file order, drop blanks and duplicates
        unique = list(dict.fromkeys(w.strip() for w in wallets if isinstance(w, str) and w.strip()))
        logger.info("wallets_loaded", path=str(self.path), count=len(unique))
        return unique

    def list_wallets(self) -> List[str]:
        if self._wallets is None:
            self._wallets = tuple(self._load())
        return list(self._wallets)

"""Agent modules for walletwatch.

- wallet_poller: polls tracked wallets and publishes new activity
- notifier: alert delivery seam
- wallet_store: read-only tracked wallet lists
"""

from . import notifier, wallet_poller, wallet_store

__all__ = [
    'notifier',
    'wallet_poller',
    'wallet_store',
]

"""walletwatch: tracked-wallet monitor over a resilient multi-endpoint Solana RPC layer."""

__version__ = "0.1.0"

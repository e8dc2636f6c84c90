"""RPC access layer: rate limiting, circuit breaking, endpoint health and request scheduling."""

"""Exception taxonomy for the RPC access layer.

RpcError subclasses are raised by the RPC client and classified by the
scheduler:

- RateLimitedError: HTTP 429 or a JSON-RPC "too many requests" error
- TransientNetworkError: timeouts, connection resets, 5xx responses
- RpcResponseError: the node answered but rejected the request

CircuitOpenError never leaves the scheduler. AllEndpointsExhaustedError is
the only failure the wallet poller is expected to see.
"""

from typing import Optional


class WalletWatchError(Exception):
    """Base class for all walletwatch errors."""


class ConfigurationError(WalletWatchError):
    """No usable configuration; the process cannot start."""


class RpcError(WalletWatchError):
    """An RPC call failed."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        endpoint: Optional[str] = None,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.endpoint = endpoint


class RateLimitedError(RpcError):
    """The provider rejected the call with a rate limit."""

    def __init__(self, message: str = "Too many requests", status_code: Optional[int] = 429,
                 endpoint: Optional[str] = None):
        super().__init__(message, status_code=status_code, endpoint=endpoint)


class TransientNetworkError(RpcError):
    """Timeout, connection failure or server-side error."""


class RpcResponseError(RpcError):
    """The node returned a JSON-RPC error unrelated to endpoint health."""


class CircuitOpenError(WalletWatchError):
    """Dispatch to an endpoint whose circuit is open."""

    def __init__(self, endpoint: str, retry_after: float = 0.0):
        super().__init__(f"Circuit open for {endpoint} (retry in {retry_after:.1f}s)")
        self.endpoint = endpoint
        self.retry_after = retry_after


class AllEndpointsExhaustedError(WalletWatchError):
    """Every primary and fallback endpoint failed for an operation."""

    def __init__(self, message: str = "All endpoints exhausted",
                 last_error: Optional[BaseException] = None):
        super().__init__(message)
        self.last_error = last_error


class StaleRequestError(WalletWatchError):
    """A queued request aged past the staleness limit and was dropped."""

    def __init__(self, age_seconds: float):
        super().__init__(f"Request dropped after waiting {age_seconds:.1f}s in queue")
        self.age_seconds = age_seconds

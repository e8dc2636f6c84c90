"""
Solana JSON-RPC client over httpx.

Transport failures are classified at this boundary so the scheduler only
ever sees the walletwatch error taxonomy:

- HTTP 429 / JSON-RPC "too many requests"  -> RateLimitedError
- timeouts, connection errors, 5xx, node unhealthy -> TransientNetworkError
- anything else the node rejects           -> RpcResponseError
"""

import itertools
from typing import Any, Dict, List, Optional

import httpx
import orjson
import structlog

from .errors import RateLimitedError, RpcResponseError, TransientNetworkError

logger = structlog.get_logger(__name__)

# JSON-RPC error codes meaning "try another node"
TRANSIENT_RPC_CODES = {-32004, -32005, -32014}
RATE_LIMIT_RPC_CODES = {429, -32429}


class SolanaRpcClient:
    """
    Thin read-only Solana RPC client bound to one endpoint.

    Example:
        client = SolanaRpcClient("https://api.mainnet-beta.solana.com", http_client)
        balance = await client.get_balance(wallet)
    """

    _ids = itertools.count(1)

    def __init__(self, endpoint: str, http_client: httpx.AsyncClient, commitment: str = "confirmed"):
        self.endpoint = endpoint
        self.http_client = http_client
        self.commitment = commitment

    async def request(self, method: str, params: Optional[list] = None) -> Any:
        """
        Execute one JSON-RPC call and return its ``result``.

        Raises:
            RateLimitedError, TransientNetworkError, RpcResponseError
        """
        payload = {
            "jsonrpc": "2.0",
            "id": next(self._ids),
            "method": method,
            "params": params or [],
        }

        try:
            response = await self.http_client.post(
                self.endpoint,
                content=orjson.dumps(payload),
                headers={"Content-Type": "application/json"},
            )
        except httpx.TimeoutException as e:
            raise TransientNetworkError(f"{method} timed out", endpoint=self.endpoint) from e
        except httpx.TransportError as e:
            raise TransientNetworkError(f"{method} transport error: {e}", endpoint=self.endpoint) from e

        status = response.status_code
        if status == 429:
            raise RateLimitedError(f"429 Too Many Requests ({method})", endpoint=self.endpoint)
        if status >= 500:
            raise TransientNetworkError(f"HTTP {status} ({method})", status_code=status, endpoint=self.endpoint)
        if status >= 400:
            raise RpcResponseError(f"HTTP {status} ({method})", status_code=status, endpoint=self.endpoint)

        try:
            body = orjson.loads(response.content)
        except orjson.JSONDecodeError as e:
            raise TransientNetworkError(
                f"Undecodable response to {method}", status_code=status, endpoint=self.endpoint
            ) from e

        error = body.get("error") if isinstance(body, dict) else None
        if error:
            self._raise_rpc_error(method, error)

        return body.get("result") if isinstance(body, dict) else body

    def _raise_rpc_error(self, method: str, error: Any):
        if isinstance(error, dict):
            code = error.get("code")
            message = str(error.get("message", error))
        else:
            code = None
            message = str(error)

        if code in RATE_LIMIT_RPC_CODES or "too many requests" in message.lower():
            raise RateLimitedError(f"{method}: {message}", endpoint=self.endpoint)
        if code in TRANSIENT_RPC_CODES:
            raise TransientNetworkError(f"{method}: {message}", status_code=code, endpoint=self.endpoint)
        raise RpcResponseError(f"{method}: {message}", status_code=code, endpoint=self.endpoint)

    async def get_balance(self, address: str) -> int:
        """Lamport balance of an address."""
        result = await self.request("getBalance", [address, {"commitment": self.commitment}])
        if isinstance(result, dict):
            return result.get("value", 0)
        return result

    async def get_signatures_for_address(self, address: str, limit: int = 10) -> List[Dict]:
        """Most recent signatures for an address, newest first."""
        result = await self.request(
            "getSignaturesForAddress",
            [address, {"limit": limit, "commitment": self.commitment}],
        )
        return result or []

    async def get_parsed_transaction(self, signature: str) -> Optional[Dict]:
        """Transaction in jsonParsed encoding, or None if unknown."""
        return await self.request(
            "getTransaction",
            [
                signature,
                {
                    "encoding": "jsonParsed",
                    "maxSupportedTransactionVersion": 0,
                    "commitment": self.commitment,
                },
            ],
        )

    async def get_slot(self) -> int:
        return await self.request("getSlot", [{"commitment": self.commitment}])


class RpcClientFactory:
    """Creates per-endpoint clients that share one pooled httpx client."""

    def __init__(
        self,
        timeout: float = 30.0,
        http2: bool = True,
        commitment: str = "confirmed",
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.timeout = timeout
        self.http2 = http2
        self.commitment = commitment
        self.transport = transport
        self._http_client: Optional[httpx.AsyncClient] = None
        self._clients: Dict[str, SolanaRpcClient] = {}

    @property
    def http_client(self) -> httpx.AsyncClient:
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(
                http2=self.http2,
                timeout=httpx.Timeout(self.timeout),
                limits=httpx.Limits(max_keepalive_connections=20, max_connections=50),
                transport=self.transport,
            )
        return self._http_client

    def __call__(self, endpoint: str) -> SolanaRpcClient:
        if endpoint not in self._clients:
            self._clients[endpoint] = SolanaRpcClient(
                endpoint, self.http_client, commitment=self.commitment
            )
        return self._clients[endpoint]

    def discard(self, endpoint: str):
        self._clients.pop(endpoint, None)

    async def aclose(self):
        if self._http_client is not None:
            await self._http_client.aclose()
            self._http_client = None
        self._clients.clear()

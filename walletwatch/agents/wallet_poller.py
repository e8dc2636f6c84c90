"""
Wallet Poller - Tracked Wallet Activity Monitor
===============================================

Polls the tracked wallets through the RPC access layer and publishes one
alert per new on-chain signature.

Per wallet and cycle:
1. Admission control: skipped unless ``min_check_interval`` elapsed since
   the last check.
2. Recent signatures (normal priority), limited to the lookback window.
3. Parsed transaction for every unseen signature (high priority).
4. Balance (high priority) once the wallet has new activity.
5. WalletActivity published to subscribers and the notifier.

AllEndpointsExhaustedError skips the wallet for the cycle; monitoring
never halts because of a single wallet.
"""

import asyncio
import time
from dataclasses import asdict, dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

import structlog

from walletwatch.config.settings import PollerConfig
from walletwatch.utils.errors import AllEndpointsExhaustedError, StaleRequestError
from walletwatch.utils.request_queue import RequestPriority

from .notifier import LogNotifier, Notifier
from .wallet_store import WalletListStore

logger = structlog.get_logger(__name__)

LAMPORTS_PER_SOL = 1_000_000_000


class SignatureCache:
    """Signature -> first-seen timestamp, expiring after ``ttl`` seconds."""

    def __init__(self, ttl: float = 1800.0, clock: Callable[[], float] = time.time):
        self.ttl = ttl
        self.clock = clock
        self._seen: Dict[str, float] = {}

    def seen(self, signature: str) -> bool:
        marked_at = self._seen.get(signature)
        return marked_at is not None and self.clock() - marked_at < self.ttl

    def mark(self, signature: str):
        self._seen[signature] = self.clock()

    def discard(self, signature: str):
        self._seen.pop(signature, None)

    def evict_expired(self) -> int:
        cutoff = self.clock() - self.ttl
        expired = [sig for sig, marked_at in self._seen.items() if marked_at <= cutoff]
        for sig in expired:
            del self._seen[sig]
        return len(expired)

    def __len__(self) -> int:
        return len(self._seen)

    def __contains__(self, signature: str) -> bool:
        return self.seen(signature)


@dataclass
class WalletActivity:
    """New activity detected on a tracked wallet."""
    wallet: str
    signatures: List[str]
    transactions: List[Dict[str, Any]] = field(default_factory=list)
    balance_lamports: Optional[int] = None
    detected_at: float = field(default_factory=time.time)

    @property
    def balance_sol(self) -> Optional[float]:
        if self.balance_lamports is None:
            return None
        return self.balance_lamports / LAMPORTS_PER_SOL

    def to_payload(self) -> Dict[str, Any]:
        """Alert payload (transactions reduced to slot and block time)."""
        payload = asdict(self)
        payload["transactions"] = [
            {"slot": tx.get("slot"), "block_time": tx.get("blockTime")}
            for tx in self.transactions
        ]
        payload["transaction_count"] = len(self.transactions)
        payload["balance_sol"] = self.balance_sol
        return payload


class WalletPoller:
    """
    Monitors tracked wallets through an RpcManager-like object.

    ``rpc`` only needs ``queue_request(operation, priority, label)``.
    """

    def __init__(
        self,
        rpc: Any,
        store: WalletListStore,
        notifier: Optional[Notifier] = None,
        min_check_interval: float = 30.0,
        lookback_seconds: float = 1800.0,
        signature_limit: int = 10,
        signature_ttl: float = 1800.0,
        poll_interval: float = 5.0,
        max_poll_interval: float = 30.0,
        error_backoff: float = 10.0,
        status_interval: float = 60.0,
        eviction_interval: float = 60.0,
        fetch_balance: bool = True,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.rpc = rpc
        self.store = store
        self.notifier = notifier or LogNotifier()
        self.min_check_interval = min_check_interval
        self.lookback_seconds = lookback_seconds
        self.signature_limit = signature_limit
        self.poll_interval = poll_interval
        self.max_poll_interval = max(poll_interval, max_poll_interval)
        self.error_backoff = error_backoff
        self.status_interval = status_interval
        self.eviction_interval = eviction_interval
        self.fetch_balance = fetch_balance
        self.clock = clock
        self.sleep = sleep

        self.signature_cache = SignatureCache(ttl=signature_ttl, clock=clock)
        self.last_checked_at: Dict[str, float] = {}

        self._subscribers: List[Callable] = []
        self._pending_deliveries: Set[asyncio.Task] = set()
        self._running = False
        self._last_eviction = clock()

        # Statistics
        self.checks_completed = 0
        self.checks_skipped = 0
        self.alerts_published = 0

    @classmethod
    def from_config(
        cls,
        rpc: Any,
        store: WalletListStore,
        config: PollerConfig,
        notifier: Optional[Notifier] = None,
        **kwargs,
    ) -> "WalletPoller":
        return cls(
            rpc,
            store,
            notifier=notifier,
            min_check_interval=config.min_check_interval,
            lookback_seconds=config.lookback_seconds,
            signature_limit=config.signature_limit,
            signature_ttl=config.signature_ttl,
            poll_interval=config.poll_interval,
            max_poll_interval=config.max_poll_interval,
            error_backoff=config.error_backoff,
            status_interval=config.status_interval,
            fetch_balance=config.fetch_balance,
            **kwargs,
        )

    # ------------------------------------------------------------------
    # Publish registry
    # ------------------------------------------------------------------

    def subscribe(self, callback: Callable[[WalletActivity], Any]):
        """Register callback(activity); coroutine functions are awaited."""
        if callback not in self._subscribers:
            self._subscribers.append(callback)

    def unsubscribe(self, callback: Callable[[WalletActivity], Any]):
        if callback in self._subscribers:
            self._subscribers.remove(callback)

    async def _publish(self, activity: WalletActivity):
        self.alerts_published += 1
        logger.info(
            "wallet_activity_detected",
            wallet=activity.wallet,
            signatures=len(activity.signatures),
            balance_sol=activity.balance_sol,
        )

        for callback in list(self._subscribers):
            try:
                result = callback(activity)
                if asyncio.iscoroutine(result):
                    await result
            except Exception as e:
                logger.error("subscriber_error", wallet=activity.wallet, error=str(e))

        task = asyncio.create_task(self._deliver(activity.to_payload()))
        self._pending_deliveries.add(task)
        task.add_done_callback(self._pending_deliveries.discard)

    async def _deliver(self, payload: Dict[str, Any]):
        try:
            await self.notifier.send_alert(payload)
        except Exception as e:
            logger.error("notifier_failed", wallet=payload.get("wallet"), error=str(e))

    async def flush(self):
        """Wait for in-flight notifier deliveries."""
        if self._pending_deliveries:
            await asyncio.gather(*list(self._pending_deliveries), return_exceptions=True)

    # ------------------------------------------------------------------
    # Checking
    # ------------------------------------------------------------------

    def is_due(self, wallet: str, now: Optional[float] = None) -> bool:
        now = self.clock() if now is None else now
        last = self.last_checked_at.get(wallet)
        return last is None or now - last >= self.min_check_interval

    async def _recent_signatures(self, wallet: str) -> List[str]:
        entries = await self.rpc.queue_request(
            lambda client: client.get_signatures_for_address(wallet, limit=self.signature_limit),
            RequestPriority.NORMAL,
            f"signatures:{wallet}",
        )
        cutoff = self.clock() - self.lookback_seconds

        signatures = []
        for entry in entries or []:
            signature = entry.get("signature")
            block_time = entry.get("blockTime")
            if signature and block_time and block_time > cutoff:
                signatures.append(signature)
        return signatures

    async def _fetch_transaction(self, signature: str) -> Optional[Dict[str, Any]]:
        return await self.rpc.queue_request(
            lambda client: client.get_parsed_transaction(signature),
            RequestPriority.HIGH,
            f"transaction:{signature}",
        )

    async def check_wallet(self, wallet: str) -> Optional[WalletActivity]:
        """
        Check one wallet for new signatures.

        Returns:
            WalletActivity when at least one new transaction was found

        Raises:
            AllEndpointsExhaustedError: the signature lookup failed everywhere
        """
        self.last_checked_at[wallet] = self.clock()

        signatures = await self._recent_signatures(wallet)
        fresh = [sig for sig in dict.fromkeys(signatures) if not self.signature_cache.seen(sig)]
        if not fresh:
            return None

        # Claim before fetching so concurrent wallet checks never alert twice
        for sig in fresh:
            self.signature_cache.mark(sig)

        try:
            return await self._collect_activity(wallet, fresh)
        except BaseException:
            for sig in fresh:
                self.signature_cache.discard(sig)
            raise

    async def _collect_activity(self, wallet: str, fresh: List[str]) -> Optional[WalletActivity]:
        results = await asyncio.gather(
            *(self._fetch_transaction(sig) for sig in fresh),
            return_exceptions=True,
        )

        new_signatures = []
        transactions = []
        for sig, result in zip(fresh, results):
            if isinstance(result, BaseException):
                # Release the claim so the next cycle retries it
                self.signature_cache.discard(sig)
                logger.warning("transaction_fetch_failed", wallet=wallet, signature=sig, error=str(result))
                continue
            if result is None:
                # Listed but not yet indexed; retry within the lookback window
                self.signature_cache.discard(sig)
                logger.debug("transaction_not_indexed", wallet=wallet, signature=sig)
                continue
            new_signatures.append(sig)
            transactions.append(result)

        if not new_signatures:
            return None

        activity = WalletActivity(
            wallet=wallet,
            signatures=new_signatures,
            transactions=transactions,
            detected_at=self.clock(),
        )

        if self.fetch_balance:
            try:
                activity.balance_lamports = await self.rpc.queue_request(
                    lambda client: client.get_balance(wallet),
                    RequestPriority.HIGH,
                    f"balance:{wallet}",
                )
            except Exception as e:
                # Alert without a balance rather than lose the activity
                logger.warning("balance_fetch_failed", wallet=wallet, error=str(e))

        return activity

    async def _check_and_publish(self, wallet: str) -> Optional[WalletActivity]:
        try:
            activity = await self.check_wallet(wallet)
        except AllEndpointsExhaustedError as e:
            logger.warning("wallet_skipped_endpoints_exhausted", wallet=wallet, error=str(e))
            return None
        except StaleRequestError as e:
            logger.warning("wallet_check_stale", wallet=wallet, error=str(e))
            return None
        except Exception as e:
            logger.error("wallet_check_failed", wallet=wallet, error=str(e))
            return None

        self.checks_completed += 1
        if activity is not None:
            await self._publish(activity)
        return activity

    async def poll_once(self) -> List[WalletActivity]:
        """Check every due wallet once; returns the activity published."""
        now = self.clock()
        if now - self._last_eviction >= self.eviction_interval:
            evicted = self.signature_cache.evict_expired()
            self._last_eviction = now
            if evicted:
                logger.debug("signatures_evicted", count=evicted, remaining=len(self.signature_cache))

        wallets = self.store.list_wallets()
        due = [wallet for wallet in wallets if self.is_due(wallet, now)]
        self.checks_skipped += len(wallets) - len(due)

        results = await asyncio.gather(*(self._check_and_publish(wallet) for wallet in due))
        return [activity for activity in results if activity is not None]

    # ------------------------------------------------------------------
    # Run loop
    # ------------------------------------------------------------------

    def next_poll_delay(self) -> float:
        """Pause between cycles, stretched by rate limits on the active endpoint."""
        hits_of = getattr(self.rpc, "active_rate_limit_hits", None)
        hits = hits_of() if callable(hits_of) else 0
        return min(self.poll_interval * (1 + 0.5 * hits), self.max_poll_interval)

    def _log_status(self, checks: int):
        limiter = getattr(getattr(self.rpc, "state", None), "limiter", None)
        logger.info(
            "wallet_monitor_status",
            wallet_checks=checks,
            limiter_tokens=round(limiter.tokens, 2) if limiter else None,
            wallets=len(self.store.list_wallets()),
            alerts_published=self.alerts_published,
        )

    async def run(self):
        """Poll until stop() is called."""
        self._running = True
        logger.info("wallet_monitoring_started", wallets=len(self.store.list_wallets()))

        last_status = self.clock()
        checks_at_status = self.checks_completed

        while self._running:
            try:
                await self.poll_once()

                now = self.clock()
                if now - last_status >= self.status_interval:
                    self._log_status(self.checks_completed - checks_at_status)
                    last_status = now
                    checks_at_status = self.checks_completed

                await self.sleep(self.next_poll_delay())
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("monitoring_error", error=str(e))
                await self.sleep(self.error_backoff)

        await self.flush()
        logger.info("wallet_monitoring_stopped", checks=self.checks_completed)

    def stop(self):
        self._running = False

    def get_stats(self) -> Dict[str, Any]:
        return {
            "wallets": len(self.store.list_wallets()),
            "checks_completed": self.checks_completed,
            "checks_skipped": self.checks_skipped,
            "alerts_published": self.alerts_published,
            "signatures_cached": len(self.signature_cache),
            "pending_deliveries": len(self._pending_deliveries),
        }

"""Sync engine: the public surface of offsync.

A ``SyncEngine`` owns one connectivity monitor, cache, mutation queue and
coordinator. Construct it explicitly and pass it to the code that needs it.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable

from .cache import Fetcher, ReadResult, ReadThroughCache
from .config import Config
from .connectivity import ConnectivityMonitor, ConnectivityProbe
from .coordinator import (
    InvalidationResolver,
    SyncCompleteHandler,
    SyncCoordinator,
    SyncResult,
)
from .errors import StoreError, is_retryable
from .mutation_queue import (
    DEFAULT_MAX_RETRIES,
    DEFAULT_MAX_SIZE,
    Method,
    MutationQueue,
    OperationDraft,
    QueuedOperation,
)
from .store import DurableStore, SQLiteStore
from .transport import HttpTransport, Transport

logger = logging.getLogger(__name__)


class WriteStatus(str, Enum):
    APPLIED = "applied"  # Direct write succeeded
    QUEUED = "queued"  # Accepted for later replay, not yet applied


@dataclass(frozen=True)
class WriteResult:
    """Outcome of ``queued_write``."""

    status: WriteStatus
    value: Any = None
    operation_id: str | None = None

    @property
    def queued(self) -> bool:
        return self.status == WriteStatus.QUEUED


class SyncEngine:
    """Offline-first read cache and write queue with automatic replay."""

    def __init__(
        self,
        store: DurableStore,
        transport: Transport,
        monitor: ConnectivityMonitor | None = None,
        probe: ConnectivityProbe | None = None,
        max_queue_size: int | None = DEFAULT_MAX_SIZE,
        default_max_retries: int = DEFAULT_MAX_RETRIES,
        invalidation_resolver: InvalidationResolver | None = None,
        backoff_base: float = 2.0,
        backoff_max: float = 60.0,
        auto_sync: bool = True,
    ):
        """Initialize the engine.

        Args:
            store: Durable store shared by the cache and the queue.
            transport: Transport used for direct writes and replays.
            monitor: Connectivity monitor. A monitor that starts online is
                created when omitted.
            probe: Optional probe feeding the monitor while the engine runs.
            max_queue_size: Maximum queued operations, or None for no limit.
            default_max_retries: ``max_retries`` used by ``draft()``.
            invalidation_resolver: Maps operations to the cache keys they
                invalidate.
            backoff_base: First follow-up pass delay in seconds.
            backoff_max: Cap on the follow-up pass delay in seconds.
            auto_sync: Drain automatically when connectivity returns.
        """
        self.store = store
        self.transport = transport
        self.monitor = monitor or ConnectivityMonitor()
        self.cache = ReadThroughCache(store, self.monitor)
        self.queue = MutationQueue(store, max_size=max_queue_size)
        self.coordinator = SyncCoordinator(
            self.queue,
            transport,
            self.monitor,
            cache=self.cache,
            invalidation_resolver=invalidation_resolver,
            backoff_base=backoff_base,
            backoff_max=backoff_max,
            auto_sync=auto_sync,
        )
        self.default_max_retries = default_max_retries
        self._probe = probe
        self._started = False

    @classmethod
    def from_config(cls, config: Config) -> "SyncEngine":
        """Build an engine backed by SQLite and HTTP from configuration."""
        store = SQLiteStore(config.store.db_path)
        store.connect()

        transport = HttpTransport(
            base_url=config.transport.base_url,
            timeout=config.transport.timeout_seconds,
            headers=config.transport.headers,
        )

        probe_url = config.probe_url
        monitor = ConnectivityMonitor(
            initial_online=not probe_url,
            guard_interval=config.connectivity.guard_interval_seconds,
        )
        probe = None
        if probe_url:
            probe = ConnectivityProbe(
                monitor,
                probe_url,
                interval=config.connectivity.probe_interval_seconds,
                timeout=config.connectivity.probe_timeout_seconds,
            )

        return cls(
            store,
            transport,
            monitor=monitor,
            probe=probe,
            max_queue_size=config.queue.max_size,
            default_max_retries=config.queue.max_retries,
            backoff_base=config.sync.backoff_base_seconds,
            backoff_max=config.sync.backoff_max_seconds,
            auto_sync=config.sync.auto_sync,
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Take an initial connectivity sample and start syncing."""
        if self._started:
            return

        if self._probe is not None:
            online = await self._probe.sample()
            self.monitor.report(online, immediate=True)
            await self._probe.start()

        await self.coordinator.start()
        self._started = True
        logger.info(
            f"Sync engine started ({self.monitor.state.value}, "
            f"{self.queue.pending_count()} pending)"
        )

    async def stop(self) -> None:
        """Stop probing and syncing. Durable state is left as is."""
        if self._probe is not None:
            await self._probe.stop()
        await self.coordinator.stop()
        self._started = False
        logger.info("Sync engine stopped")

    async def aclose(self) -> None:
        """Stop the engine and release the transport and store."""
        await self.stop()
        self.monitor.close()
        await self.transport.aclose()
        self.store.close()

    async def __aenter__(self) -> "SyncEngine":
        await self.start()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    # ------------------------------------------------------------------
    # Reads and writes
    # ------------------------------------------------------------------

    async def cached_read(self, key: str, fetcher: Fetcher, use_cache: bool = True) -> Any:
        """Read through the cache. See ``ReadThroughCache.read``."""
        return await self.cache.read(key, fetcher, use_cache=use_cache)

    async def cached_read_detailed(
        self, key: str, fetcher: Fetcher, use_cache: bool = True
    ) -> ReadResult:
        return await self.cache.read_detailed(key, fetcher, use_cache=use_cache)

    def draft(
        self,
        method: Method | str,
        target: str,
        body: Any = None,
        **kwargs: Any,
    ) -> OperationDraft:
        """Build an ``OperationDraft`` using the engine's retry default."""
        kwargs.setdefault("max_retries", self.default_max_retries)
        return OperationDraft(method=Method(method), target=target, body=body, **kwargs)

    async def queued_write(
        self,
        draft: OperationDraft,
        direct: Callable[[], Awaitable[Any]] | None = None,
        on_optimistic_apply: Callable[[], None] | None = None,
        on_rollback: Callable[[], None] | None = None,
        queue_on_failure: bool = False,
    ) -> WriteResult:
        """Apply a write now, or queue it for replay.

        Args:
            draft: The write intent, used when the write has to be queued.
            direct: Coroutine function performing the live write. Defaults to
                sending ``draft`` through the transport.
            on_optimistic_apply: Called once, synchronously, before anything
                else happens.
            on_rollback: Called once if the write fails without being queued.
            queue_on_failure: Queue the write when the live attempt fails
                with a retryable error instead of raising.

        Returns:
            ``WriteResult`` with status APPLIED (and the direct result) or
            QUEUED (and the operation id).

        Raises:
            Exception: The live write's error when it is not queued, or the
                queue's error when the write could not be queued.
        """
        if on_optimistic_apply is not None:
            on_optimistic_apply()

        if not self.monitor.is_online:
            return self._enqueue(draft, on_rollback)

        try:
            if direct is not None:
                value = await direct()
            else:
                value = await self._send(draft)
        except Exception as e:
            if queue_on_failure and is_retryable(e):
                logger.warning(f"Live write to {draft.target} failed ({e}), queuing")
                return self._enqueue(draft, on_rollback)
            self._rollback(on_rollback)
            raise

        for key in self.coordinator.resolve_invalidations(draft):
            try:
                self.cache.invalidate(key)
            except StoreError as e:
                logger.warning(f"Could not invalidate cache key '{key}': {e}")

        return WriteResult(status=WriteStatus.APPLIED, value=value)

    async def _send(self, draft: OperationDraft) -> Any:
        response = await self.transport.execute(
            draft.method.value, draft.target, draft.body, dict(draft.headers)
        )
        return response.body

    def _enqueue(
        self, draft: OperationDraft, on_rollback: Callable[[], None] | None
    ) -> WriteResult:
        try:
            op_id = self.queue.enqueue(draft)
        except Exception:
            self._rollback(on_rollback)
            raise
        return WriteResult(status=WriteStatus.QUEUED, operation_id=op_id)

    def _rollback(self, on_rollback: Callable[[], None] | None) -> None:
        if on_rollback is None:
            return
        try:
            on_rollback()
        except Exception as e:
            logger.error(f"Rollback handler failed: {e}", exc_info=True)

    # ------------------------------------------------------------------
    # Sync
    # ------------------------------------------------------------------

    async def sync_now(self) -> SyncResult:
        """Drain the queue now and return the pass result."""
        return await self.coordinator.sync_now()

    def on_sync_complete(self, handler: SyncCompleteHandler) -> Callable[[], None]:
        """Register a handler receiving every ``SyncResult``."""
        return self.coordinator.on_sync_complete(handler)

    def pending_count(self) -> int:
        return self.queue.pending_count()

    def pending(self) -> list[QueuedOperation]:
        return self.queue.list_pending()

    def dead_letters(self) -> list[QueuedOperation]:
        """Operations that failed terminally, kept for inspection."""
        return self.queue.dead_letters()

    def get_status(self) -> dict[str, Any]:
        """Get engine status.

        Returns:
            Dictionary with connectivity, queue and cache statistics.
        """
        return {
            "online": self.monitor.is_online,
            "sync": self.coordinator.get_sync_status(),
            "queue": self.queue.stats(),
            "cache": self.cache.stats(),
        }


"""Sync coordinator: drains the mutation queue when connectivity returns.

Two states, IDLE and DRAINING. A pass is triggered by an online transition,
by ``request_sync()``/``sync_now()``, or by the backoff timer. Only one pass
runs at a time; triggers that arrive during a pass are coalesced into a
single follow-up pass.

Each pass makes at most one attempt per operation, in
``(priority desc, created_at asc)`` order. Operations that fail with a
retryable error wait for the next pass. When a pass leaves work behind, the
next one is scheduled after an exponential backoff shared by the whole queue.
"""

import asyncio
import inspect
import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Iterable

from .cache import ReadThroughCache
from .connectivity import ConnectivityMonitor, ConnectivityState
from .errors import QueuePersistenceError, RetriesExhausted, StoreError, is_retryable
from .mutation_queue import MutationQueue, OperationDraft, OperationStatus, QueuedOperation
from .transport import Transport

logger = logging.getLogger(__name__)

IDEMPOTENCY_HEADER = "Idempotency-Key"


class SyncState(str, Enum):
    IDLE = "idle"
    DRAINING = "draining"


@dataclass(frozen=True)
class SyncResult:
    """Outcome of one drain pass."""

    succeeded: tuple[str, ...] = ()
    failed: tuple[str, ...] = ()
    remaining: int = 0
    errors: dict[str, str] = field(default_factory=dict)  # op id -> reason
    invalidated: tuple[str, ...] = ()  # cache keys marked stale
    cancelled: bool = False
    started_at: datetime | None = None
    finished_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "succeeded": list(self.succeeded),
            "failed": list(self.failed),
            "remaining": self.remaining,
            "errors": dict(self.errors),
            "invalidated": list(self.invalidated),
            "cancelled": self.cancelled,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
        }


SyncCompleteHandler = Callable[[SyncResult], Any]
InvalidationResolver = Callable[[QueuedOperation | OperationDraft], Iterable[str]]


def default_invalidations(op: QueuedOperation | OperationDraft) -> list[str]:
    """Invalidate exactly the keys listed on the operation."""
    return list(op.invalidates)


class SyncCoordinator:
    """Replays queued operations against the transport."""

    def __init__(
        self,
        queue: MutationQueue,
        transport: Transport,
        monitor: ConnectivityMonitor,
        cache: ReadThroughCache | None = None,
        invalidation_resolver: InvalidationResolver | None = None,
        backoff_base: float = 2.0,
        backoff_max: float = 60.0,
        auto_sync: bool = True,
    ):
        """Initialize the coordinator.

        Args:
            queue: Queue to drain.
            transport: Transport used to replay operations.
            monitor: Connectivity monitor gating and triggering passes.
            cache: Cache whose entries are invalidated after successful replays.
            invalidation_resolver: Maps an operation to the cache keys it
                invalidates. Defaults to the operation's ``invalidates`` list.
            backoff_base: Delay before the first follow-up pass, in seconds.
            backoff_max: Upper bound for the follow-up delay, in seconds.
            auto_sync: Drain automatically on online transitions.
        """
        self._queue = queue
        self._transport = transport
        self._monitor = monitor
        self._cache = cache
        self._resolve = invalidation_resolver or default_invalidations
        self.backoff_base = backoff_base
        self.backoff_max = backoff_max
        self.auto_sync = auto_sync

        self._state = SyncState.IDLE
        self._driver: asyncio.Task | None = None
        self._requested = False
        self._waiters: list[asyncio.Future] = []
        self._backoff_handle: asyncio.TimerHandle | None = None
        self._backoff_level = 0
        self._handlers: list[SyncCompleteHandler] = []
        self._handler_tasks: set[asyncio.Task] = set()
        self._unsubscribe: Callable[[], None] | None = None
        self._last_sync: datetime | None = None
        self._last_result: SyncResult | None = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Recover interrupted work and start reacting to connectivity."""
        self._queue.recover()

        if self.auto_sync and self._unsubscribe is None:
            self._unsubscribe = self._monitor.on_change(self._on_connectivity_change)

        if self.auto_sync and self._monitor.is_online and self._queue.pending_count():
            self.request_sync()

        logger.info("Sync coordinator started")

    async def stop(self) -> None:
        """Stop reacting to connectivity and cancel any active pass."""
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        self._cancel_backoff()
        await self.cancel()
        logger.info("Sync coordinator stopped")

    def on_sync_complete(self, handler: SyncCompleteHandler) -> Callable[[], None]:
        """Register a handler receiving every ``SyncResult``.

        Returns:
            Callable that unregisters the handler.
        """
        self._handlers.append(handler)

        def unsubscribe() -> None:
            if handler in self._handlers:
                self._handlers.remove(handler)

        return unsubscribe

    # ------------------------------------------------------------------
    # Triggers
    # ------------------------------------------------------------------

    def request_sync(self) -> None:
        """Ask for a drain pass without waiting for it."""
        self._trigger(None)

    async def sync_now(self) -> SyncResult:
        """Run a drain pass and return its result.

        If a pass is already running, this waits for the follow-up pass.
        """
        waiter = asyncio.get_running_loop().create_future()
        self._trigger(waiter)
        return await waiter

    async def cancel(self) -> bool:
        """Cancel the active pass, if any.

        The operation in progress is returned to pending with its attempt
        count unchanged.

        Returns:
            True if a pass was cancelled.
        """
        driver = self._driver
        if driver is None or driver.done():
            return False

        driver.cancel()
        try:
            await driver
        except asyncio.CancelledError:
            pass
        self._driver = None
        return True

    def _trigger(self, waiter: asyncio.Future | None) -> None:
        self._cancel_backoff()
        if waiter is not None:
            self._waiters.append(waiter)
        self._requested = True

        if self._driver is None or self._driver.done():
            self._driver = asyncio.get_running_loop().create_task(self._drive())
        else:
            logger.debug("Sync pass in progress, coalescing trigger")

    def _on_connectivity_change(self, state: ConnectivityState) -> None:
        if state == ConnectivityState.ONLINE:
            logger.info("Back online, triggering sync")
            self._backoff_level = 0
            self.request_sync()
        else:
            self._cancel_backoff()

    # ------------------------------------------------------------------
    # Drain loop
    # ------------------------------------------------------------------

    async def _drive(self) -> None:
        result: SyncResult | None = None
        waiters: list[asyncio.Future] = []
        try:
            while self._requested:
                self._requested = False
                waiters, self._waiters = self._waiters, []

                try:
                    result = await self._drain_pass()
                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    logger.error(f"Sync pass failed: {e}", exc_info=True)
                    result = None
                    for waiter in waiters:
                        if not waiter.done():
                            waiter.set_exception(e)
                    continue

                for waiter in waiters:
                    if not waiter.done():
                        waiter.set_result(result)
                self._notify(result)
        except asyncio.CancelledError:
            for waiter in waiters + self._waiters:
                waiter.cancel()
            self._waiters = []
            self._requested = False
            raise
        finally:
            self._state = SyncState.IDLE

        if result is not None:
            self._schedule_backoff(result)

    async def _drain_pass(self) -> SyncResult:
        started_at = datetime.now()

        if not self._monitor.is_online:
            logger.info("Skipping sync pass while offline")
            return SyncResult(
                remaining=self._queue.pending_count(),
                started_at=started_at,
                finished_at=datetime.now(),
            )

        self._state = SyncState.DRAINING
        succeeded: list[str] = []
        failed: list[str] = []
        errors: dict[str, str] = {}
        invalidated: list[str] = []

        snapshot = self._queue.list_pending()
        if snapshot:
            logger.info(f"Sync pass started: {len(snapshot)} pending operations")

        try:
            for op in snapshot:
                if not self._monitor.is_online:
                    logger.warning("Connectivity lost, ending sync pass early")
                    break

                reason = await self._attempt(op)
                if reason is None:
                    succeeded.append(op.id)
                    invalidated.extend(self._invalidate(op))
                elif reason:
                    failed.append(op.id)
                    errors[op.id] = reason
        except asyncio.CancelledError:
            result = self._finish(succeeded, failed, errors, invalidated, started_at, cancelled=True)
            logger.info("Sync pass cancelled")
            self._notify(result)
            raise

        result = self._finish(succeeded, failed, errors, invalidated, started_at)
        if snapshot:
            logger.info(
                f"Sync pass complete: succeeded={len(result.succeeded)}, "
                f"failed={len(result.failed)}, remaining={result.remaining}"
            )
        return result

    def _finish(
        self,
        succeeded: list[str],
        failed: list[str],
        errors: dict[str, str],
        invalidated: list[str],
        started_at: datetime,
        cancelled: bool = False,
    ) -> SyncResult:
        finished_at = datetime.now()
        result = SyncResult(
            succeeded=tuple(succeeded),
            failed=tuple(failed),
            remaining=self._queue.pending_count(),
            errors=dict(errors),
            invalidated=tuple(invalidated),
            cancelled=cancelled,
            started_at=started_at,
            finished_at=finished_at,
        )
        self._last_sync = finished_at
        self._last_result = result
        self._state = SyncState.IDLE
        return result

    async def _attempt(self, op: QueuedOperation) -> str | None:
        """Make one attempt at an operation.

        Returns:
            None on success, "" when the operation stays pending, or the
            failure reason when it failed terminally.
        """
        if op.status == OperationStatus.IN_FLIGHT:
            # Left over from an attempt that never completed
            op = self._queue.abort_attempt(op)
        in_flight = self._queue.begin_attempt(op)
        headers = {**in_flight.headers, IDEMPOTENCY_HEADER: in_flight.id}

        try:
            await self._transport.execute(
                in_flight.method.value,
                in_flight.target,
                in_flight.body,
                headers,
            )
        except asyncio.CancelledError:
            self._queue.abort_attempt(in_flight)
            raise
        except Exception as e:
            return self._handle_failure(in_flight, e)

        try:
            self._queue.complete(in_flight)
        except QueuePersistenceError:
            # Applied remotely but still stored; the replay carries the same key
            self._restore(in_flight)
            raise
        logger.debug(f"Synced {in_flight.method.value} {in_flight.target} ({in_flight.id})")
        return None

    def _restore(self, op: QueuedOperation) -> None:
        try:
            self._queue.abort_attempt(op)
        except QueuePersistenceError as e:
            logger.error(f"Could not restore {op.id} to pending: {e}")

    def _handle_failure(self, op: QueuedOperation, error: Exception) -> str:
        if not is_retryable(error):
            reason = f"{type(error).__name__}: {error}"
            self._queue.fail(op, reason)
            return reason

        if op.attempt >= op.max_retries:
            reason = str(RetriesExhausted(op.id, op.attempt, str(error)))
            self._queue.fail(op, reason)
            return reason

        logger.warning(
            f"Attempt {op.attempt}/{op.max_retries} for {op.id} failed: {error}"
        )
        self._queue.release(op, str(error))
        return ""

    def resolve_invalidations(self, op: QueuedOperation | OperationDraft) -> list[str]:
        """Cache keys tied to an operation."""
        try:
            return list(self._resolve(op))
        except Exception as e:
            logger.error(f"Invalidation resolver failed for {op.target}: {e}", exc_info=True)
            return []

    def _invalidate(self, op: QueuedOperation) -> list[str]:
        if self._cache is None:
            return []

        invalidated = []
        for key in self.resolve_invalidations(op):
            try:
                if self._cache.invalidate(key):
                    invalidated.append(key)
            except StoreError as e:
                logger.warning(f"Could not invalidate cache key '{key}': {e}")
        return invalidated

    # ------------------------------------------------------------------
    # Backoff
    # ------------------------------------------------------------------

    def next_backoff_delay(self) -> float:
        """Delay before the next follow-up pass, given the current level."""
        return min(self.backoff_base * (2 ** self._backoff_level), self.backoff_max)

    def _schedule_backoff(self, result: SyncResult) -> None:
        if result.remaining == 0:
            self._backoff_level = 0
            return
        if not self._monitor.is_online:
            return

        delay = self.next_backoff_delay()
        self._backoff_level += 1
        logger.info(f"{result.remaining} operations remain, retrying in {delay:.0f}s")
        self._backoff_handle = asyncio.get_running_loop().call_later(
            delay, self._on_backoff_elapsed
        )

    def _on_backoff_elapsed(self) -> None:
        self._backoff_handle = None
        if self._monitor.is_online:
            self.request_sync()

    def _cancel_backoff(self) -> None:
        if self._backoff_handle is not None:
            self._backoff_handle.cancel()
            self._backoff_handle = None

    # ------------------------------------------------------------------
    # Notifications and status
    # ------------------------------------------------------------------

    def _notify(self, result: SyncResult) -> None:
        for handler in list(self._handlers):
            try:
                outcome = handler(result)
                if inspect.isawaitable(outcome):
                    task = asyncio.ensure_future(outcome)
                    self._handler_tasks.add(task)
                    task.add_done_callback(self._handler_done)
            except Exception as e:
                logger.error(f"Sync complete handler failed: {e}", exc_info=True)

    def _handler_done(self, task: asyncio.Task) -> None:
        self._handler_tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(
                f"Sync complete handler failed: {task.exception()}",
                exc_info=task.exception(),
            )

    @property
    def state(self) -> SyncState:
        return self._state

    @property
    def backoff_scheduled(self) -> bool:
        return self._backoff_handle is not None

    @property
    def last_sync(self) -> datetime | None:
        """Get timestamp of the last finished pass."""
        return self._last_sync

    @property
    def last_result(self) -> SyncResult | None:
        return self._last_result

    def get_sync_status(self) -> dict[str, Any]:
        """Get current sync status.

        Returns:
            Dictionary with sync statistics.
        """
        return {
            "state": self._state.value,
            "online": self._monitor.is_online,
            "last_sync": self._last_sync.isoformat() if self._last_sync else None,
            "pending_operations": self._queue.pending_count(),
            "backoff_scheduled": self.backoff_scheduled,
            "next_backoff_seconds": self.next_backoff_delay(),
        }

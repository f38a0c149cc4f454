"""Tests for the sync coordinator."""

import asyncio
import logging
import pytest
from unittest.mock import patch

from offsync.cache import ReadThroughCache
from offsync.connectivity import ConnectivityMonitor
from offsync.coordinator import IDEMPOTENCY_HEADER, SyncCoordinator, SyncState
from offsync.errors import QueuePersistenceError, RejectedOperation, TransientNetworkError
from offsync.mutation_queue import MutationQueue, OperationDraft, OperationStatus, Priority
from offsync.store import MemoryStore
from offsync.transport import Response, Transport


async def settle():
    """Let scheduled callbacks and tasks run."""
    for _ in range(5):
        await asyncio.sleep(0)


class RecordingTransport(Transport):
    """Transport that records calls and replays scripted failures per target."""

    def __init__(self, outcomes=None):
        self.calls = []
        self.outcomes = outcomes or {}
        self.gate: asyncio.Event | None = None
        self.on_call = None

    async def execute(self, method, target, body=None, headers=None):
        self.calls.append((method, target, body, dict(headers or {})))
        if self.on_call is not None:
            self.on_call(target)
        if self.gate is not None:
            await self.gate.wait()

        script = self.outcomes.get(target)
        if script:
            outcome = script.pop(0)
            if isinstance(outcome, BaseException):
                raise outcome
        return Response(status_code=200)

    @property
    def targets(self):
        return [call[1] for call in self.calls]


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def monitor():
    return ConnectivityMonitor(initial_online=True, guard_interval=0)


@pytest.fixture
def queue(store):
    return MutationQueue(store)


@pytest.fixture
def cache(store, monitor):
    return ReadThroughCache(store, monitor)


@pytest.fixture
def transport():
    return RecordingTransport()


@pytest.fixture
def coordinator(queue, transport, monitor, cache):
    return SyncCoordinator(
        queue, transport, monitor, cache=cache, backoff_base=60.0, auto_sync=False
    )


def enqueue(queue, target, priority=Priority.MEDIUM, **kwargs):
    return queue.enqueue(
        OperationDraft(method="POST", target=target, priority=priority, **kwargs)
    )


class TestDrainPass:
    """Tests for a single drain pass."""

    @pytest.mark.asyncio
    async def test_empty_queue_is_noop(self, coordinator, transport):
        """Test draining an empty queue changes nothing, repeatedly."""
        first = await coordinator.sync_now()
        second = await coordinator.sync_now()

        for result in (first, second):
            assert result.succeeded == ()
            assert result.failed == ()
            assert result.remaining == 0
        assert transport.calls == []
        assert coordinator.state == SyncState.IDLE

    @pytest.mark.asyncio
    async def test_drains_in_priority_order(self, coordinator, queue, transport, monitor):
        """Test queued writes replay high to low once back online."""
        monitor.report(False)
        a = enqueue(queue, "/a", Priority.MEDIUM)
        b = enqueue(queue, "/b", Priority.HIGH)
        c = enqueue(queue, "/c", Priority.LOW)

        offline_result = await coordinator.sync_now()
        assert offline_result.remaining == 3
        assert transport.calls == []

        monitor.report(True)
        result = await coordinator.sync_now()

        assert transport.targets == ["/b", "/a", "/c"]
        assert result.succeeded == (b, a, c)
        assert result.remaining == 0
        assert queue.pending_count() == 0
        assert coordinator.last_result is result
        assert coordinator.last_sync is not None

    @pytest.mark.asyncio
    async def test_replay_carries_idempotency_key(self, coordinator, queue, transport):
        """Test every replay is tagged with the operation id."""
        op_id = enqueue(queue, "/contacts", body={"name": "Ada"}, headers={"X-Trace": "t1"})

        await coordinator.sync_now()

        method, target, body, headers = transport.calls[0]
        assert method == "POST"
        assert body == {"name": "Ada"}
        assert headers[IDEMPOTENCY_HEADER] == op_id
        assert headers["X-Trace"] == "t1"

    @pytest.mark.asyncio
    async def test_offline_pass_makes_no_attempts(self, coordinator, queue, transport, monitor):
        """Test a pass while offline leaves every operation untouched."""
        op_id = enqueue(queue, "/a")
        monitor.report(False)

        result = await coordinator.sync_now()

        assert result.remaining == 1
        assert transport.calls == []
        assert queue.get(op_id).attempt == 0
        assert coordinator.backoff_scheduled is False

    @pytest.mark.asyncio
    async def test_connectivity_lost_mid_pass(self, coordinator, queue, transport, monitor):
        """Test the rest of the snapshot is skipped once offline."""
        first = enqueue(queue, "/a", Priority.HIGH)
        second = enqueue(queue, "/b", Priority.LOW)
        transport.on_call = lambda target: monitor.report(False)

        result = await coordinator.sync_now()

        assert transport.targets == ["/a"]
        assert result.succeeded == (first,)
        assert result.remaining == 1
        untouched = queue.get(second)
        assert untouched.attempt == 0
        assert untouched.status == OperationStatus.PENDING


class TestFailures:
    """Tests for retry accounting and terminal failures."""

    @pytest.mark.asyncio
    async def test_retry_bound(self, coordinator, queue, transport):
        """Test an always-failing operation is attempted exactly max_retries times."""
        op_id = enqueue(queue, "/flaky", max_retries=2)
        transport.outcomes["/flaky"] = [TransientNetworkError("timeout") for _ in range(5)]

        first = await coordinator.sync_now()
        assert first.failed == ()
        assert first.remaining == 1
        assert queue.get(op_id).attempt == 1
        assert queue.get(op_id).last_error == "timeout"

        second = await coordinator.sync_now()
        assert second.failed == (op_id,)
        assert "after 2 attempts" in second.errors[op_id]

        third = await coordinator.sync_now()
        assert third.failed == ()

        assert len(transport.calls) == 2
        assert queue.pending_count() == 0
        assert [op.id for op in queue.dead_letters()] == [op_id]

    @pytest.mark.asyncio
    async def test_rejected_fails_immediately(self, coordinator, queue, transport):
        """Test a rejected operation fails without retry and the pass continues."""
        bad = enqueue(queue, "/bad", Priority.HIGH)
        good = enqueue(queue, "/good", Priority.LOW)
        transport.outcomes["/bad"] = [RejectedOperation("HTTP 422: invalid", status_code=422)]

        result = await coordinator.sync_now()

        assert result.failed == (bad,)
        assert result.succeeded == (good,)
        assert "HTTP 422" in result.errors[bad]
        assert queue.dead_letters()[0].attempt == 1

    @pytest.mark.asyncio
    async def test_unknown_error_is_terminal(self, coordinator, queue, transport):
        """Test unexpected exceptions are not retried."""
        op_id = enqueue(queue, "/a")
        transport.outcomes["/a"] = [ValueError("unexpected payload")]

        result = await coordinator.sync_now()

        assert result.failed == (op_id,)
        assert "ValueError" in result.errors[op_id]

    @pytest.mark.asyncio
    async def test_persistence_error_propagates(self, coordinator, queue):
        """Test store failures surface through sync_now."""
        enqueue(queue, "/a")

        with patch.object(queue, "list_pending", side_effect=QueuePersistenceError("corrupt")):
            with pytest.raises(QueuePersistenceError):
                await coordinator.sync_now()

        assert coordinator.state == SyncState.IDLE

    @pytest.mark.asyncio
    async def test_corrupt_entry_does_not_block_drain(self, coordinator, queue, store, transport):
        """Test valid operations still replay next to an unreadable entry."""
        good = enqueue(queue, "/good")
        store.set("queue:op:zzz", b"{not json")

        result = await coordinator.sync_now()

        assert result.succeeded == (good,)
        assert transport.targets == ["/good"]
        assert result.remaining == 0
        assert queue.corrupt_keys() == ["queue:corrupt:queue:op:zzz"]

    @pytest.mark.asyncio
    async def test_failed_completion_keeps_attempt_count(self, coordinator, queue, transport):
        """Test a store failure after a successful send does not use up a retry."""
        op_id = enqueue(queue, "/a", max_retries=2)

        with patch.object(queue, "complete", side_effect=QueuePersistenceError("disk full")):
            with pytest.raises(QueuePersistenceError):
                await coordinator.sync_now()

        op = queue.get(op_id)
        assert op.status == OperationStatus.PENDING
        assert op.attempt == 0

        result = await coordinator.sync_now()

        assert result.succeeded == (op_id,)
        first_key = transport.calls[0][3][IDEMPOTENCY_HEADER]
        second_key = transport.calls[1][3][IDEMPOTENCY_HEADER]
        assert first_key == second_key == op_id

    @pytest.mark.asyncio
    async def test_leftover_in_flight_is_not_double_counted(self, coordinator, queue, transport):
        """Test an operation stuck in flight is restored before its next attempt."""
        op_id = enqueue(queue, "/a", max_retries=2)
        queue.begin_attempt(queue.get(op_id))
        transport.outcomes["/a"] = [TransientNetworkError("timeout")]

        await coordinator.sync_now()

        op = queue.get(op_id)
        assert op.attempt == 1
        assert op.status == OperationStatus.PENDING

    @pytest.mark.asyncio
    async def test_bytes_body_replayed(self, coordinator, queue, transport):
        """Test opaque bodies reach the transport unchanged."""
        enqueue(queue, "/upload", body=b"\x00\x01raw")

        await coordinator.sync_now()

        assert transport.calls[0][2] == b"\x00\x01raw"


class TestInvalidation:
    """Tests for cache invalidation after replay."""

    @pytest.mark.asyncio
    async def test_success_invalidates_listed_keys(self, coordinator, queue, cache):
        """Test replayed writes mark their cache keys stale."""
        cache.put("profile", {"name": "Ada"})
        cache.put("contacts", [])
        enqueue(queue, "/profile", invalidates=["profile", "missing"])

        result = await coordinator.sync_now()

        assert result.invalidated == ("profile",)
        assert cache.get_entry("profile").stale is True
        assert cache.get_entry("contacts").stale is False

    @pytest.mark.asyncio
    async def test_failure_does_not_invalidate(self, coordinator, queue, cache, transport):
        """Test failed writes leave the cache alone."""
        cache.put("profile", {"name": "Ada"})
        enqueue(queue, "/profile", invalidates=["profile"])
        transport.outcomes["/profile"] = [RejectedOperation("HTTP 400")]

        result = await coordinator.sync_now()

        assert result.invalidated == ()
        assert cache.get_entry("profile").stale is False

    @pytest.mark.asyncio
    async def test_custom_resolver(self, queue, transport, monitor, cache):
        """Test a resolver maps operations to cache keys."""
        coordinator = SyncCoordinator(
            queue,
            transport,
            monitor,
            cache=cache,
            invalidation_resolver=lambda op: [op.target.strip("/")],
            auto_sync=False,
        )
        cache.put("contacts", [])
        enqueue(queue, "/contacts")

        result = await coordinator.sync_now()

        assert result.invalidated == ("contacts",)

    @pytest.mark.asyncio
    async def test_broken_resolver_does_not_fail_pass(self, queue, transport, monitor, cache):
        """Test resolver errors are logged and the write still counts."""

        def resolver(op):
            raise RuntimeError("boom")

        coordinator = SyncCoordinator(
            queue, transport, monitor, cache=cache, invalidation_resolver=resolver,
            auto_sync=False,
        )
        op_id = enqueue(queue, "/contacts")

        result = await coordinator.sync_now()

        assert result.succeeded == (op_id,)
        assert result.invalidated == ()


class TestTriggers:
    """Tests for automatic and coalesced passes."""

    @pytest.mark.asyncio
    async def test_online_transition_drains(self, queue, transport, cache):
        """Test going online starts a pass on its own."""
        monitor = ConnectivityMonitor(initial_online=False, guard_interval=0)
        coordinator = SyncCoordinator(queue, transport, monitor, cache=cache, auto_sync=True)
        done = asyncio.Event()
        coordinator.on_sync_complete(lambda result: done.set())
        enqueue(queue, "/a")

        await coordinator.start()
        assert transport.calls == []

        monitor.report(True)
        await asyncio.wait_for(done.wait(), timeout=1)

        assert transport.targets == ["/a"]
        assert queue.pending_count() == 0
        await coordinator.stop()

    @pytest.mark.asyncio
    async def test_start_drains_when_online_with_backlog(self, queue, transport, monitor, cache):
        """Test start() drains work left from a previous run."""
        coordinator = SyncCoordinator(queue, transport, monitor, cache=cache, auto_sync=True)
        done = asyncio.Event()
        coordinator.on_sync_complete(lambda result: done.set())
        enqueue(queue, "/a")

        await coordinator.start()
        await asyncio.wait_for(done.wait(), timeout=1)

        assert transport.targets == ["/a"]
        await coordinator.stop()

    @pytest.mark.asyncio
    async def test_start_recovers_interrupted_operations(self, coordinator, queue):
        """Test in-flight operations from a crash are restored to pending."""
        op_id = enqueue(queue, "/a")
        queue.begin_attempt(queue.get(op_id))

        await coordinator.start()

        recovered = queue.get(op_id)
        assert recovered.status == OperationStatus.PENDING
        assert recovered.attempt == 0

    @pytest.mark.asyncio
    async def test_triggers_during_pass_are_coalesced(self, coordinator, queue, transport):
        """Test triggers during a pass produce exactly one follow-up pass."""
        passes = []
        coordinator.on_sync_complete(passes.append)
        transport.gate = asyncio.Event()
        first = enqueue(queue, "/a")

        task1 = asyncio.create_task(coordinator.sync_now())
        await settle()
        assert coordinator.state == SyncState.DRAINING

        second = enqueue(queue, "/b")
        coordinator.request_sync()
        coordinator.request_sync()
        task2 = asyncio.create_task(coordinator.sync_now())
        await settle()

        transport.gate.set()
        result1 = await task1
        result2 = await task2

        assert result1.succeeded == (first,)
        assert result2.succeeded == (second,)
        assert len(passes) == 2
        assert transport.targets == ["/a", "/b"]

    @pytest.mark.asyncio
    async def test_cancel_restores_operation(self, coordinator, queue, transport):
        """Test cancelling mid-attempt leaves the operation as it was."""
        results = []
        coordinator.on_sync_complete(results.append)
        transport.gate = asyncio.Event()
        op_id = enqueue(queue, "/a")

        task = asyncio.create_task(coordinator.sync_now())
        await settle()
        assert queue.get(op_id).status == OperationStatus.IN_FLIGHT

        assert await coordinator.cancel() is True

        op = queue.get(op_id)
        assert op.status == OperationStatus.PENDING
        assert op.attempt == 0
        assert coordinator.state == SyncState.IDLE
        assert results[0].cancelled is True
        with pytest.raises(asyncio.CancelledError):
            await task

    @pytest.mark.asyncio
    async def test_cancel_without_pass(self, coordinator):
        """Test cancel() is a no-op while idle."""
        assert await coordinator.cancel() is False

    @pytest.mark.asyncio
    async def test_async_sync_complete_handler(self, coordinator, queue):
        """Test coroutine handlers receive the result."""
        seen = []

        async def handler(result):
            seen.append(result)

        coordinator.on_sync_complete(handler)
        enqueue(queue, "/a")

        result = await coordinator.sync_now()
        await settle()

        assert seen == [result]

    @pytest.mark.asyncio
    async def test_failing_async_handler_is_logged(self, coordinator, caplog):
        """Test errors raised by coroutine handlers are logged."""

        async def handler(result):
            raise RuntimeError("handler exploded")

        coordinator.on_sync_complete(handler)

        with caplog.at_level(logging.ERROR, logger="offsync.coordinator"):
            await coordinator.sync_now()
            await settle()

        assert "handler exploded" in caplog.text
        assert coordinator._handler_tasks == set()


class TestBackoff:
    """Tests for the follow-up pass schedule."""

    def test_delay_doubles_and_caps(self, queue, transport, monitor):
        """Test the delay grows exponentially up to the maximum."""
        coordinator = SyncCoordinator(
            queue, transport, monitor, backoff_base=2.0, backoff_max=10.0, auto_sync=False
        )

        delays = []
        for level in range(5):
            coordinator._backoff_level = level
            delays.append(coordinator.next_backoff_delay())

        assert delays == [2.0, 4.0, 8.0, 10.0, 10.0]

    @pytest.mark.asyncio
    async def test_backoff_retries_until_drained(self, queue, transport, monitor, cache):
        """Test leftover work is retried on a timer until the queue is empty."""
        coordinator = SyncCoordinator(
            queue, transport, monitor, cache=cache,
            backoff_base=0.01, backoff_max=0.04, auto_sync=False,
        )
        done = asyncio.Event()
        coordinator.on_sync_complete(lambda result: result.remaining == 0 and done.set())
        enqueue(queue, "/flaky", max_retries=5)
        transport.outcomes["/flaky"] = [
            TransientNetworkError("timeout"),
            TransientNetworkError("timeout"),
        ]

        first = await coordinator.sync_now()
        assert first.remaining == 1
        assert coordinator.backoff_scheduled is True

        await asyncio.wait_for(done.wait(), timeout=1)

        assert len(transport.calls) == 3
        assert coordinator.backoff_scheduled is False
        assert coordinator.next_backoff_delay() == 0.01

    @pytest.mark.asyncio
    async def test_going_offline_cancels_backoff(self, queue, transport, monitor, cache):
        """Test no follow-up pass stays scheduled while offline."""
        coordinator = SyncCoordinator(
            queue, transport, monitor, cache=cache, backoff_base=60.0, auto_sync=True
        )
        await coordinator.start()
        enqueue(queue, "/flaky")
        transport.outcomes["/flaky"] = [TransientNetworkError("timeout")]

        await coordinator.sync_now()
        assert coordinator.backoff_scheduled is True

        monitor.report(False)
        await settle()

        assert coordinator.backoff_scheduled is False
        await coordinator.stop()

    @pytest.mark.asyncio
    async def test_sync_status(self, coordinator, queue):
        """Test the status snapshot."""
        enqueue(queue, "/a")

        status = coordinator.get_sync_status()

        assert status["state"] == "idle"
        assert status["online"] is True
        assert status["last_sync"] is None
        assert status["pending_operations"] == 1
        assert status["backoff_scheduled"] is False

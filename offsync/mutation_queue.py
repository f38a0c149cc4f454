"""Durable, priority-ordered queue of write intents.

Operations are stored one per key so that a single transition never
rewrites the whole queue. Terminal failures move to a dead-letter list for
inspection instead of being dropped.
"""

import logging
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any

from .errors import QueueFull, QueuePersistenceError, StoreError
from .store import DurableStore, decode_record, encode_record

logger = logging.getLogger(__name__)

OP_PREFIX = "queue:op:"
DEAD_PREFIX = "queue:dead:"
CORRUPT_PREFIX = "queue:corrupt:"
SEQ_KEY = "queue:seq"

DEFAULT_MAX_RETRIES = 3
DEFAULT_MAX_SIZE = 100


class Method(str, Enum):
    GET = "GET"
    POST = "POST"
    PUT = "PUT"
    PATCH = "PATCH"
    DELETE = "DELETE"


class Priority(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"

    @property
    def rank(self) -> int:
        """Higher ranks drain first."""
        return {"high": 3, "medium": 2, "low": 1}[self.value]


class OperationStatus(str, Enum):
    PENDING = "pending"
    IN_FLIGHT = "in_flight"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


@dataclass
class OperationDraft:
    """A write intent before it is accepted into the queue."""

    method: Method
    target: str  # URL or resource path
    body: Any = None
    headers: dict[str, str] = field(default_factory=dict)
    priority: Priority = Priority.MEDIUM
    max_retries: int = DEFAULT_MAX_RETRIES
    invalidates: list[str] = field(default_factory=list)  # cache keys

    def __post_init__(self):
        self.method = Method(self.method)
        self.priority = Priority(self.priority)
        if self.max_retries < 1:
            raise ValueError(f"max_retries must be at least 1, got {self.max_retries}")


@dataclass
class QueuedOperation:
    """A write intent accepted into the queue."""

    id: str
    method: Method
    target: str
    body: Any
    headers: dict[str, str]
    priority: Priority
    attempt: int
    max_retries: int
    created_at: datetime
    status: OperationStatus
    invalidates: list[str] = field(default_factory=list)
    seq: int = 0  # enqueue order; created_at is informational only
    last_error: str | None = None

    @property
    def sort_key(self) -> tuple[int, int]:
        return (-self.priority.rank, self.seq)

    @property
    def is_active(self) -> bool:
        return self.status in (OperationStatus.PENDING, OperationStatus.IN_FLIGHT)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "id": self.id,
            "method": self.method.value,
            "target": self.target,
            "body": self.body,
            "headers": self.headers,
            "priority": self.priority.value,
            "attempt": self.attempt,
            "max_retries": self.max_retries,
            "created_at": self.created_at.isoformat(),
            "status": self.status.value,
            "invalidates": self.invalidates,
            "seq": self.seq,
            "last_error": self.last_error,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "QueuedOperation":
        """Create from dictionary."""
        return cls(
            id=data["id"],
            method=Method(data["method"]),
            target=data["target"],
            body=data.get("body"),
            headers=data.get("headers") or {},
            priority=Priority(data["priority"]),
            attempt=data["attempt"],
            max_retries=data["max_retries"],
            created_at=datetime.fromisoformat(data["created_at"]),
            status=OperationStatus(data["status"]),
            invalidates=data.get("invalidates") or [],
            seq=data.get("seq", 0),
            last_error=data.get("last_error"),
        )


class MutationQueue:
    """Persisted queue of write intents ordered by priority, then age.

    ``enqueue`` is the only producer. Status and attempt transitions
    (``begin_attempt`` through ``fail``) belong to the sync coordinator.
    """

    def __init__(self, store: DurableStore, max_size: int | None = DEFAULT_MAX_SIZE):
        """Initialize the queue.

        Args:
            store: Durable store holding queue entries.
            max_size: Maximum number of active operations, or None for no limit.
        """
        self._store = store
        self.max_size = max_size
        self._seq = self._load_seq()

    def _load_seq(self) -> int:
        raw = self._read(SEQ_KEY)
        return int(raw) if raw else 0

    def _read(self, key: str) -> bytes | None:
        try:
            return self._store.get(key)
        except StoreError as e:
            raise QueuePersistenceError(f"Failed to read queue entry: {e}") from e

    def _write(self, key: str, value: bytes) -> None:
        try:
            self._store.set(key, value)
        except StoreError as e:
            raise QueuePersistenceError(f"Failed to persist queue entry: {e}") from e

    def _remove(self, key: str) -> None:
        try:
            self._store.delete(key)
        except StoreError as e:
            raise QueuePersistenceError(f"Failed to remove queue entry: {e}") from e

    def _keys(self, prefix: str) -> list[str]:
        try:
            return self._store.list_keys_with_prefix(prefix)
        except StoreError as e:
            raise QueuePersistenceError(f"Failed to list queue entries: {e}") from e

    def _save(self, op: QueuedOperation, prefix: str = OP_PREFIX) -> None:
        try:
            value = encode_record(op.to_dict())
        except TypeError as e:
            raise QueuePersistenceError(f"Cannot persist operation {op.id}: {e}") from e
        self._write(f"{prefix}{op.id}", value)

    def _decode(self, key: str, raw: bytes) -> QueuedOperation | None:
        try:
            return QueuedOperation.from_dict(decode_record(raw))
        except (ValueError, KeyError, TypeError) as e:
            self._quarantine(key, raw, e)
            return None

    def _quarantine(self, key: str, raw: bytes, error: Exception) -> None:
        """Move an unreadable entry out of the active and dead-letter lists."""
        corrupt_key = f"{CORRUPT_PREFIX}{key}"
        logger.error(f"Corrupt queue entry {key} moved to {corrupt_key}: {error}")
        self._write(corrupt_key, raw)
        self._remove(key)

    def _load_all(self, prefix: str) -> list[QueuedOperation]:
        ops = []
        for key in self._keys(prefix):
            raw = self._read(key)
            if raw is None:
                continue
            op = self._decode(key, raw)
            if op is not None:
                ops.append(op)
        return ops

    def enqueue(self, draft: OperationDraft) -> str:
        """Accept a write intent and persist it.

        Returns:
            The new operation id.

        Raises:
            QueueFull: The queue already holds ``max_size`` operations.
            QueuePersistenceError: The store could not record the operation.
        """
        if self.max_size is not None and self.pending_count() >= self.max_size:
            raise QueueFull(self.max_size)

        self._seq += 1
        self._write(SEQ_KEY, str(self._seq).encode("utf-8"))

        op = QueuedOperation(
            id=str(uuid.uuid4()),
            method=draft.method,
            target=draft.target,
            body=draft.body,
            headers=dict(draft.headers),
            priority=draft.priority,
            attempt=0,
            max_retries=draft.max_retries,
            created_at=datetime.now(),
            status=OperationStatus.PENDING,
            invalidates=list(draft.invalidates),
            seq=self._seq,
        )
        self._save(op)

        logger.info(
            f"Queued {op.method.value} {op.target} as {op.id} "
            f"(priority={op.priority.value})"
        )
        return op.id

    def get(self, op_id: str) -> QueuedOperation | None:
        """Get an active operation by id."""
        key = f"{OP_PREFIX}{op_id}"
        raw = self._read(key)
        if raw is None:
            return None
        return self._decode(key, raw)

    def list_pending(self) -> list[QueuedOperation]:
        """Active operations, highest priority first, in enqueue order within a priority.

        Unreadable entries are moved aside (see ``corrupt_keys``) instead of
        blocking the rest of the queue.
        """
        ops = [op for op in self._load_all(OP_PREFIX) if op.is_active]
        return sorted(ops, key=lambda op: op.sort_key)

    def pending_count(self) -> int:
        return len(self._keys(OP_PREFIX))

    def begin_attempt(self, op: QueuedOperation) -> QueuedOperation:
        """Mark an operation in flight and count the attempt."""
        started = replace(op, status=OperationStatus.IN_FLIGHT, attempt=op.attempt + 1)
        self._save(started)
        logger.debug(
            f"Attempt {started.attempt}/{started.max_retries} for {op.id}"
        )
        return started

    def abort_attempt(self, op: QueuedOperation) -> QueuedOperation:
        """Undo ``begin_attempt`` for an attempt that never completed."""
        restored = replace(op, status=OperationStatus.PENDING, attempt=max(op.attempt - 1, 0))
        self._save(restored)
        return restored

    def release(self, op: QueuedOperation, error: str | None = None) -> QueuedOperation:
        """Return an operation to pending after a retryable failure."""
        released = replace(op, status=OperationStatus.PENDING, last_error=error)
        self._save(released)
        return released

    def complete(self, op: QueuedOperation) -> None:
        """Remove a successfully applied operation."""
        self._remove(f"{OP_PREFIX}{op.id}")
        logger.debug(f"Completed {op.id}")

    def fail(self, op: QueuedOperation, reason: str) -> QueuedOperation:
        """Move an operation to the dead-letter list."""
        failed = replace(op, status=OperationStatus.FAILED, last_error=reason)
        self._save(failed, prefix=DEAD_PREFIX)
        self._remove(f"{OP_PREFIX}{op.id}")
        logger.error(f"Operation {op.id} ({op.method.value} {op.target}) failed: {reason}")
        return failed

    def recover(self) -> int:
        """Restore operations left in flight by an interrupted process.

        Returns:
            Number of operations restored to pending.
        """
        restored = 0
        for op in self._load_all(OP_PREFIX):
            if op.status == OperationStatus.IN_FLIGHT:
                self.abort_attempt(op)
                restored += 1

        if restored:
            logger.warning(f"Recovered {restored} interrupted operations")
        return restored

    def remove(self, op_id: str) -> bool:
        """Drop an active operation. Returns True if it existed."""
        key = f"{OP_PREFIX}{op_id}"
        if self._read(key) is None:
            return False
        self._remove(key)
        logger.info(f"Removed {op_id} from queue")
        return True

    def clear(self) -> int:
        """Drop all active operations.

        Returns:
            Number of operations removed.
        """
        keys = self._keys(OP_PREFIX)
        for key in keys:
            self._remove(key)
        logger.info(f"Cleared queue ({len(keys)} operations)")
        return len(keys)

    def dead_letters(self) -> list[QueuedOperation]:
        """Terminally failed operations, oldest first."""
        return sorted(self._load_all(DEAD_PREFIX), key=lambda op: op.seq)

    def clear_dead_letters(self) -> int:
        keys = self._keys(DEAD_PREFIX)
        for key in keys:
            self._remove(key)
        return len(keys)

    def corrupt_keys(self) -> list[str]:
        """Store keys of entries that could not be decoded."""
        return self._keys(CORRUPT_PREFIX)

    def stats(self) -> dict[str, Any]:
        """Get queue statistics."""
        pending = self.list_pending()
        by_priority = {p.value: 0 for p in Priority}
        for op in pending:
            by_priority[op.priority.value] += 1

        return {
            "pending": len(pending),
            "by_priority": by_priority,
            "dead_letters": len(self._keys(DEAD_PREFIX)),
            "corrupt": len(self.corrupt_keys()),
            "max_size": self.max_size,
        }

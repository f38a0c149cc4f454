"""Error taxonomy for the sync engine."""

import httpx


class SyncEngineError(Exception):
    """Base class for all sync engine errors."""


class NoCachedData(SyncEngineError):
    """Offline read with no prior snapshot for the key."""

    def __init__(self, key: str):
        super().__init__(f"No cached data available offline for '{key}'")
        self.key = key


class TransientNetworkError(SyncEngineError):
    """Timeout, connection failure or 5xx response. Retryable."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class RejectedOperation(SyncEngineError):
    """4xx, validation or auth failure. Never retried."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class RetriesExhausted(SyncEngineError):
    """An operation used up its attempts without succeeding."""

    def __init__(self, operation_id: str, attempts: int, last_error: str | None = None):
        msg = f"Operation {operation_id} failed after {attempts} attempts"
        if last_error:
            msg = f"{msg}: {last_error}"
        super().__init__(msg)
        self.operation_id = operation_id
        self.attempts = attempts
        self.last_error = last_error


class StoreError(SyncEngineError):
    """The durable store failed to read or write."""


class QueuePersistenceError(SyncEngineError):
    """A queue entry could not be persisted or loaded."""


class QueueFull(SyncEngineError):
    """The mutation queue reached its configured size limit."""

    def __init__(self, max_size: int):
        super().__init__(f"Mutation queue is full ({max_size} pending operations)")
        self.max_size = max_size


def is_retryable(error: BaseException) -> bool:
    """Return True if a failed write may succeed when replayed later."""
    return isinstance(error, (TransientNetworkError, httpx.TransportError))

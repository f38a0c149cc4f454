"""Offline-first synchronization engine.

Provides a read-through cache that falls back to the last durable snapshot
when offline, and a persisted, priority-ordered mutation queue that is
replayed automatically when connectivity returns.
"""

from .cache import CacheEntry, ReadResult, ReadSource, ReadThroughCache
from .config import Config, load_config
from .connectivity import ConnectivityMonitor, ConnectivityProbe, ConnectivityState
from .coordinator import SyncCoordinator, SyncResult, SyncState
from .engine import SyncEngine, WriteResult, WriteStatus
from .errors import (
    NoCachedData,
    QueueFull,
    QueuePersistenceError,
    RejectedOperation,
    RetriesExhausted,
    StoreError,
    SyncEngineError,
    TransientNetworkError,
)
from .mutation_queue import (
    Method,
    MutationQueue,
    OperationDraft,
    OperationStatus,
    Priority,
    QueuedOperation,
)
from .store import DurableStore, MemoryStore, SQLiteStore
from .transport import HttpTransport, Response, Transport

__version__ = "0.1.0"

__all__ = [
    "CacheEntry",
    "Config",
    "ConnectivityMonitor",
    "ConnectivityProbe",
    "ConnectivityState",
    "DurableStore",
    "HttpTransport",
    "MemoryStore",
    "Method",
    "MutationQueue",
    "NoCachedData",
    "OperationDraft",
    "OperationStatus",
    "Priority",
    "QueueFull",
    "QueuePersistenceError",
    "QueuedOperation",
    "ReadResult",
    "ReadSource",
    "ReadThroughCache",
    "RejectedOperation",
    "Response",
    "RetriesExhausted",
    "SQLiteStore",
    "StoreError",
    "SyncCoordinator",
    "SyncEngine",
    "SyncEngineError",
    "SyncResult",
    "SyncState",
    "TransientNetworkError",
    "Transport",
    "WriteResult",
    "WriteStatus",
    "load_config",
]

"""
Storage module: Hierarchical tree store contract and adapters.

Provides:
- TreeStoreProtocol: the async read/write contract of the remote store
- InMemoryTreeStore: in-process store with read ceiling and fault injection
- RedisTreeStore: Redis-backed store (strings + sorted-set child index)
- SessionPaths, GroupPaths: path layout for telemetry and phase markers
"""

from posemesh.storage.protocols import (
    OperationType,
    OperationMetadata,
    TreeStoreProtocol,
    join_path,
    split_path,
)
from posemesh.storage.memory_store import InMemoryTreeStore, FailureRule
from posemesh.storage.redis_store import RedisTreeStore, RedisMetrics
from posemesh.storage.paths import (
    GroupPaths,
    SessionPaths,
    sanitize_segment,
    device_slug,
    phase_marker_key,
)

__all__ = [
    "OperationType",
    "OperationMetadata",
    "TreeStoreProtocol",
    "join_path",
    "split_path",
    "InMemoryTreeStore",
    "FailureRule",
    "RedisTreeStore",
    "RedisMetrics",
    "GroupPaths",
    "SessionPaths",
    "sanitize_segment",
    "device_slug",
    "phase_marker_key",
]

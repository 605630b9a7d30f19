"""
Store Protocol Definitions: Hierarchical Tree Store Contract

Provides the structural subtyping protocol (PEP 544) every remote store
adapter satisfies:
- TreeStoreProtocol: write / patch_children / read / list_child_keys / remove

The store is a JSON-like tree addressed by '/'-separated paths. Whole
subtree reads are subject to a hard size ceiling; exceeding it yields
an Err carrying ErrorCode.STORE_READ_TOO_LARGE so callers can split.

Design Principles:
    - Zero-exception control flow via Result[T, StoreError]
    - Async-first for non-blocking I/O
    - Protocol classes for structural subtyping (duck typing with type safety)
"""

from __future__ import annotations

from abc import abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Any, Mapping, Protocol, runtime_checkable

from posemesh.core.types import Result
from posemesh.core.errors import StoreError


# =============================================================================
# OPERATION TYPE
# =============================================================================
class OperationType(Enum):
    """Store operation types for logging and metrics."""
    WRITE = "write"
    PATCH = "patch"
    READ = "read"
    LIST = "list"
    REMOVE = "remove"


# =============================================================================
# OPERATION RESULT METADATA
# =============================================================================
@dataclass(frozen=True, slots=True)
class OperationMetadata:
    """
    Metadata returned with every mutating store operation.
    """
    operation: OperationType
    latency_ns: int
    affected_nodes: int = 0

    @property
    def latency_ms(self) -> float:
        """Latency in milliseconds."""
        return self.latency_ns / 1_000_000


# =============================================================================
# TREE STORE PROTOCOL
# =============================================================================
@runtime_checkable
class TreeStoreProtocol(Protocol):
    """
    Async hierarchical key-value store.

    Paths are '/'-separated with no leading or trailing slash; the empty
    path addresses the root. Values are JSON-compatible (dict, list, str,
    int, float, bool, None).

    Example:
        class MyStore(TreeStoreProtocol):
            async def read(self, path: str) -> Result[Any, StoreError]:
                ...
    """

    @abstractmethod
    async def write(
        self,
        path: str,
        value: Any,
    ) -> Result[OperationMetadata, StoreError]:
        """
        Overwrite the subtree at an exact path.

        Returns:
            Ok(metadata): Value stored
            Err(StoreError): Rejected
        """
        ...

    @abstractmethod
    async def patch_children(
        self,
        path: str,
        children: Mapping[str, Any],
    ) -> Result[OperationMetadata, StoreError]:
        """
        Atomically set several children of one node.

        Siblings not named in ``children`` are left untouched. Either all
        children are written or none are.
        """
        ...

    @abstractmethod
    async def read(self, path: str) -> Result[Any, StoreError]:
        """
        Read the whole subtree at ``path``.

        Returns:
            Ok(value): Subtree, or None when absent
            Err(StoreError): STORE_READ_TOO_LARGE when the subtree exceeds
                the ceiling, STORE_OPERATION_FAILED otherwise
        """
        ...

    @abstractmethod
    async def list_child_keys(
        self,
        path: str,
        limit: int,
    ) -> Result[list[str], StoreError]:
        """
        List the immediate child names of ``path`` (keys only,
        lexicographic), at most ``limit`` of them.
        """
        ...

    @abstractmethod
    async def remove(self, path: str) -> Result[OperationMetadata, StoreError]:
        """Delete the subtree at ``path``. Removing an absent path succeeds."""
        ...


# =============================================================================
# PATH HELPERS
# =============================================================================
def split_path(path: str) -> list[str]:
    """Split a store path into segments, ignoring empty segments."""
    return [segment for segment in path.split("/") if segment]


def join_path(*segments: str) -> str:
    """Join path segments with '/', skipping empty segments."""
    return "/".join(s.strip("/") for s in segments if s and s.strip("/"))

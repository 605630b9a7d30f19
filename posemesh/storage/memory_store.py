"""
In-Memory Tree Store: Development and Testing Implementation

Provides an in-process implementation of TreeStoreProtocol:
- Nested dicts as the tree, leaves are JSON scalars or lists
- Byte-sized read ceiling mirroring the remote store's hard limit
- Failure injection and write gating for tests and the demo

Design Principles:
    - Full protocol compliance for seamless production swap
    - Values are deep-copied on the way in and out
    - Safe under concurrent coroutines via asyncio locks

Performance Characteristics:
    - write / patch_children / remove: O(depth + size of value)
    - read: O(size of subtree) (serialized once to measure size)
    - list_child_keys: O(c log c), c = child count
"""

from __future__ import annotations

import asyncio
import copy
import json
import random
import time
from dataclasses import dataclass
from typing import Any, Mapping, Optional

from posemesh.core.types import Result, Ok, Err
from posemesh.core.errors import StoreError
from posemesh.core import constants as C
from posemesh.storage.protocols import (
    OperationMetadata,
    OperationType,
    split_path,
)


# =============================================================================
# FAILURE INJECTION
# =============================================================================
@dataclass(slots=True)
class FailureRule:
    """
    Reject matching operations.

    ``path`` of None matches every path; ``remaining`` of None never expires.
    """
    operation: OperationType
    path: Optional[str] = None
    remaining: Optional[int] = None

    def matches(self, operation: OperationType, path: str) -> bool:
        if operation != self.operation:
            return False
        if self.path is not None and self.path.strip("/") != path.strip("/"):
            return False
        return self.remaining is None or self.remaining > 0

    def consume(self) -> None:
        if self.remaining is not None:
            self.remaining -= 1


class InjectedFailure(ConnectionError):
    """Raised internally for an injected fault; surfaces as a StoreError cause."""


# =============================================================================
# IN-MEMORY TREE STORE
# =============================================================================
class InMemoryTreeStore:
    """
    In-memory hierarchical store with a read size ceiling.

    Example:
        store = InMemoryTreeStore(read_ceiling_bytes=1024)

        await store.write("a/b", {"x": 1})
        await store.patch_children("a/b", {"y": 2, "z": 3})
        result = await store.read("a")      # Ok({"b": {"x": 1, "y": 2, "z": 3}})

        store.inject_failure(OperationType.PATCH, count=2)
        await store.patch_children("a", {"k": 1})   # Err(STORE_OPERATION_FAILED)
    """

    __slots__ = (
        "_root",
        "_lock",
        "_read_ceiling_bytes",
        "_latency_s",
        "_failure_rate",
        "_rng",
        "_rules",
        "_write_gate",
        "_op_counts",
    )

    def __init__(
        self,
        read_ceiling_bytes: int = C.DEFAULT_READ_CEILING_BYTES,
        latency_s: float = 0.0,
        failure_rate: float = 0.0,
        seed: Optional[int] = None,
    ) -> None:
        """
        Initialize in-memory tree store.

        Args:
            read_ceiling_bytes: Serialized size above which whole-subtree
                reads are refused
            latency_s: Simulated latency added to every operation
            failure_rate: Probability in [0, 1] that a mutating call fails
            seed: Seed for the failure RNG
        """
        if not 0.0 <= failure_rate <= 1.0:
            raise ValueError(f"failure_rate must be in [0, 1], got {failure_rate}")
        self._root: dict[str, Any] = {}
        self._lock = asyncio.Lock()
        self._read_ceiling_bytes = read_ceiling_bytes
        self._latency_s = latency_s
        self._failure_rate = failure_rate
        self._rng = random.Random(seed)
        self._rules: list[FailureRule] = []
        self._write_gate = asyncio.Event()
        self._write_gate.set()
        self._op_counts: dict[OperationType, int] = {op: 0 for op in OperationType}

    # -------------------------------------------------------------------------
    # Test Controls
    # -------------------------------------------------------------------------

    def inject_failure(
        self,
        operation: OperationType,
        path: Optional[str] = None,
        count: Optional[int] = None,
    ) -> FailureRule:
        """Reject the next ``count`` matching operations (all, if None)."""
        rule = FailureRule(operation=operation, path=path, remaining=count)
        self._rules.append(rule)
        return rule

    def clear_failures(self) -> None:
        self._rules.clear()
        self._failure_rate = 0.0

    def hold_writes(self) -> None:
        """Park every write/patch until release_writes() is called."""
        self._write_gate.clear()

    def release_writes(self) -> None:
        self._write_gate.set()

    def operation_count(self, operation: OperationType) -> int:
        """Number of calls received for ``operation`` (successful or not)."""
        return self._op_counts[operation]

    def snapshot(self) -> dict[str, Any]:
        """Deep copy of the whole tree, bypassing the ceiling."""
        return copy.deepcopy(self._root)

    # -------------------------------------------------------------------------
    # TreeStoreProtocol Implementation
    # -------------------------------------------------------------------------

    async def write(
        self,
        path: str,
        value: Any,
    ) -> Result[OperationMetadata, StoreError]:
        start_ns = time.perf_counter_ns()
        self._op_counts[OperationType.WRITE] += 1
        segments = split_path(path)
        if not segments:
            return Err(StoreError.invalid_path(path, "cannot overwrite the root"))

        await self._write_gate.wait()
        await self._simulate_network_latency()

        failure = self._check_failure(OperationType.WRITE, path)
        if failure is not None:
            return Err(failure)

        try:
            stored = self._copy_in(value)
        except (TypeError, ValueError) as e:
            return Err(StoreError.operation_failed("write", path, e))
        async with self._lock:
            self._set(segments, stored)

        return Ok(OperationMetadata(
            operation=OperationType.WRITE,
            latency_ns=time.perf_counter_ns() - start_ns,
            affected_nodes=1,
        ))

    async def patch_children(
        self,
        path: str,
        children: Mapping[str, Any],
    ) -> Result[OperationMetadata, StoreError]:
        start_ns = time.perf_counter_ns()
        self._op_counts[OperationType.PATCH] += 1
        segments = split_path(path)
        for child_key in children:
            if not child_key or "/" in child_key:
                return Err(StoreError.invalid_path(f"{path}/{child_key}", "bad child key"))

        await self._write_gate.wait()
        await self._simulate_network_latency()

        failure = self._check_failure(OperationType.PATCH, path)
        if failure is not None:
            return Err(failure)

        # Copy before taking the lock so a bad payload leaves the tree untouched
        try:
            staged = {k: self._copy_in(v) for k, v in children.items()}
        except (TypeError, ValueError) as e:
            return Err(StoreError.operation_failed("patch", path, e))
        async with self._lock:
            for child_key, stored in staged.items():
                self._set(segments + [child_key], stored)

        return Ok(OperationMetadata(
            operation=OperationType.PATCH,
            latency_ns=time.perf_counter_ns() - start_ns,
            affected_nodes=len(staged),
        ))

    async def read(self, path: str) -> Result[Any, StoreError]:
        self._op_counts[OperationType.READ] += 1
        await self._simulate_network_latency()

        failure = self._check_failure(OperationType.READ, path)
        if failure is not None:
            return Err(failure)

        async with self._lock:
            node = self._get(split_path(path))
            if node is None:
                return Ok(None)
            encoded = json.dumps(node, separators=(",", ":"))

        size = len(encoded.encode("utf-8"))
        if size > self._read_ceiling_bytes:
            return Err(StoreError.read_too_large(path, size, self._read_ceiling_bytes))
        return Ok(json.loads(encoded))

    async def list_child_keys(
        self,
        path: str,
        limit: int,
    ) -> Result[list[str], StoreError]:
        self._op_counts[OperationType.LIST] += 1
        await self._simulate_network_latency()

        failure = self._check_failure(OperationType.LIST, path)
        if failure is not None:
            return Err(failure)

        async with self._lock:
            node = self._get(split_path(path))
            if not isinstance(node, dict):
                return Ok([])
            return Ok(sorted(node)[:limit])

    async def remove(self, path: str) -> Result[OperationMetadata, StoreError]:
        start_ns = time.perf_counter_ns()
        self._op_counts[OperationType.REMOVE] += 1
        await self._simulate_network_latency()

        failure = self._check_failure(OperationType.REMOVE, path)
        if failure is not None:
            return Err(failure)

        segments = split_path(path)
        async with self._lock:
            if not segments:
                affected = 1 if self._root else 0
                self._root.clear()
            else:
                affected = 1 if self._get(segments) is not None else 0
                self._set(segments, None)

        return Ok(OperationMetadata(
            operation=OperationType.REMOVE,
            latency_ns=time.perf_counter_ns() - start_ns,
            affected_nodes=affected,
        ))

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    async def _simulate_network_latency(self) -> None:
        if self._latency_s > 0:
            await asyncio.sleep(self._latency_s)

    def _check_failure(self, operation: OperationType, path: str) -> Optional[StoreError]:
        for rule in self._rules:
            if rule.matches(operation, path):
                rule.consume()
                return StoreError.operation_failed(
                    operation.value, path, InjectedFailure("injected failure"),
                )
        mutating = operation in (OperationType.WRITE, OperationType.PATCH)
        if mutating and self._failure_rate and self._rng.random() < self._failure_rate:
            return StoreError.operation_failed(
                operation.value, path, InjectedFailure("random failure"),
            )
        return None

    @staticmethod
    def _copy_in(value: Any) -> Any:
        """JSON round-trip: rejects non-JSON values and detaches the caller's objects."""
        return json.loads(json.dumps(value))

    def _get(self, segments: list[str]) -> Any:
        node: Any = self._root
        for segment in segments:
            if not isinstance(node, dict) or segment not in node:
                return None
            node = node[segment]
        return node

    def _set(self, segments: list[str], value: Any) -> None:
        """Set (or, for None / empty dict, delete) the node and prune empty parents."""
        parents: list[tuple[dict[str, Any], str]] = []
        node = self._root
        for segment in segments[:-1]:
            child = node.get(segment)
            if not isinstance(child, dict):
                if value is None or value == {}:
                    return
                child = {}
                node[segment] = child
            parents.append((node, segment))
            node = child

        leaf_key = segments[-1]
        if value is None or value == {}:
            node.pop(leaf_key, None)
            for parent, segment in reversed(parents):
                if parent[segment]:
                    break
                del parent[segment]
        else:
            node[leaf_key] = value

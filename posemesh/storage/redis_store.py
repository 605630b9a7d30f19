"""
Redis Tree Store
================

Redis/Valkey implementation of TreeStoreProtocol.

Memory Layout:
--------------
A tree is flattened onto two key families under the configured namespace:
- ``{ns}:v:{path}``  string holding the JSON-encoded leaf value
- ``{ns}:c:{path}``  sorted set (all scores 0) of the node's child names

Equal scores make ZRANGE return members lexicographically, which is the
order batch keys are designed for.

Design Principles:
------------------
1. **Pipeline Batching**: Each mutation is a single MULTI/EXEC round-trip
2. **Bounded Reads**: Size ceiling enforced while walking, not after
3. **Result Monad**: No exceptions for control flow

Algorithmic Complexity:
-----------------------
| Operation        | Time         | Notes                           |
|------------------|--------------|---------------------------------|
| write            | O(n + d)     | n = leaves in old+new subtree   |
| patch_children   | O(n + d)     | single transaction              |
| read             | O(n)         | aborts once ceiling is crossed  |
| list_child_keys  | O(log c + k) | ZRANGE                          |
| remove           | O(n)         |                                 |
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from dataclasses import dataclass
from typing import Any, Mapping, Optional, TYPE_CHECKING

from posemesh.core.types import Result, Ok, Err
from posemesh.core.errors import StoreError
from posemesh.core.config import RedisConfig
from posemesh.storage.protocols import (
    OperationMetadata,
    OperationType,
    join_path,
    split_path,
)

# Lazy import for the redis dependency
if TYPE_CHECKING:
    import redis.asyncio as aioredis

logger = logging.getLogger(__name__)


# =============================================================================
# CONSTANTS
# =============================================================================

# Upper bound on children fetched per ZRANGE while walking a subtree
WALK_PAGE_SIZE: int = 1000


class ReadCeilingExceeded(Exception):
    """Internal signal: the subtree walk crossed max_read_bytes."""

    def __init__(self, size_bytes: int) -> None:
        super().__init__(size_bytes)
        self.size_bytes = size_bytes


# =============================================================================
# METRICS COLLECTOR
# =============================================================================

@dataclass(slots=True)
class RedisMetrics:
    """
    Operation counters for the Redis adapter.

    Atomic in single-threaded asyncio.
    """
    read_count: int = 0
    write_count: int = 0
    pipeline_count: int = 0
    too_large_count: int = 0

    read_latency_sum_ns: int = 0
    write_latency_sum_ns: int = 0

    connection_errors: int = 0
    timeout_errors: int = 0

    def record_read(self, latency_ns: int) -> None:
        self.read_count += 1
        self.read_latency_sum_ns += latency_ns

    def record_write(self, latency_ns: int) -> None:
        self.write_count += 1
        self.write_latency_sum_ns += latency_ns

    def get_avg_read_latency_ms(self) -> float:
        if self.read_count == 0:
            return 0.0
        return (self.read_latency_sum_ns / self.read_count) / 1_000_000

    def get_avg_write_latency_ms(self) -> float:
        if self.write_count == 0:
            return 0.0
        return (self.write_latency_sum_ns / self.write_count) / 1_000_000


# =============================================================================
# REDIS TREE STORE
# =============================================================================

class RedisTreeStore:
    """
    Hierarchical store backed by Redis strings and sorted sets.

    Example:
        >>> store = RedisTreeStore(RedisConfig(host="redis.example.com"))
        >>> await store.connect()
        >>> await store.patch_children("a/frames/warmup", {"batch_..._frame_00000": {...}})
        >>> result = await store.read("a")
        >>> await store.close()
    """

    __slots__ = (
        "_config",
        "_client",
        "_metrics",
        "_connected",
    )

    def __init__(
        self,
        config: RedisConfig,
        client: Optional["aioredis.Redis"] = None,
    ) -> None:
        """
        Initialize Redis tree store.

        Args:
            config: Redis connection configuration.
            client: Pre-built client; when given, connect() only pings it.
        """
        self._config = config
        self._client = client
        self._metrics = RedisMetrics()
        self._connected = False

    # -------------------------------------------------------------------------
    # CONNECTION MANAGEMENT
    # -------------------------------------------------------------------------

    async def connect(self) -> Result[None, StoreError]:
        """
        Create the client (unless injected) and verify it with PING.
        """
        if self._client is None:
            try:
                import redis.asyncio as aioredis
            except ImportError as e:
                return Err(StoreError.operation_failed("connect", "", e))
            self._client = aioredis.Redis(**self._config.get_connection_kwargs())

        try:
            await self._client.ping()
        except Exception as e:
            self._metrics.connection_errors += 1
            return Err(StoreError.operation_failed("connect", "", e))

        self._connected = True
        logger.info(
            f"Connected to Redis at {self._config.host}:{self._config.port} "
            f"(namespace={self._config.namespace})"
        )
        return Ok(None)

    async def close(self) -> None:
        """Close the client. Safe to call multiple times."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None
        self._connected = False

    async def __aenter__(self) -> RedisTreeStore:
        result = await self.connect()
        if result.is_err():
            raise result.error
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.close()

    @property
    def metrics(self) -> RedisMetrics:
        return self._metrics

    # -------------------------------------------------------------------------
    # KEY LAYOUT
    # -------------------------------------------------------------------------

    def value_key(self, path: str) -> str:
        return f"{self._config.namespace}:v:{path.strip('/')}"

    def children_key(self, path: str) -> str:
        return f"{self._config.namespace}:c:{path.strip('/')}"

    @staticmethod
    def flatten(path: str, value: Any) -> tuple[dict[str, str], dict[str, set[str]]]:
        """
        Flatten a JSON value rooted at ``path``.

        Returns (leaves, index): leaf path -> JSON string, and interior
        path -> child names. Empty dicts and None contribute nothing.
        """
        leaves: dict[str, str] = {}
        index: dict[str, set[str]] = {}

        def visit(node_path: str, node: Any) -> None:
            if node is None:
                return
            if isinstance(node, dict):
                for child, child_value in node.items():
                    if not child or "/" in str(child):
                        raise ValueError(f"bad child key {child!r} under '{node_path}'")
                    before = len(leaves)
                    visit(join_path(node_path, str(child)), child_value)
                    if len(leaves) > before:
                        index.setdefault(node_path, set()).add(str(child))
                return
            leaves[node_path] = json.dumps(node, separators=(",", ":"))

        visit(path.strip("/"), value)
        return leaves, index

    # -------------------------------------------------------------------------
    # TreeStoreProtocol Implementation
    # -------------------------------------------------------------------------

    async def write(
        self,
        path: str,
        value: Any,
    ) -> Result[OperationMetadata, StoreError]:
        if not split_path(path):
            return Err(StoreError.invalid_path(path, "cannot overwrite the root"))
        return await self._replace({path.strip("/"): value}, OperationType.WRITE, path)

    async def patch_children(
        self,
        path: str,
        children: Mapping[str, Any],
    ) -> Result[OperationMetadata, StoreError]:
        targets: dict[str, Any] = {}
        for child_key, child_value in children.items():
            if not child_key or "/" in child_key:
                return Err(StoreError.invalid_path(f"{path}/{child_key}", "bad child key"))
            targets[join_path(path, child_key)] = child_value
        return await self._replace(targets, OperationType.PATCH, path)

    async def read(self, path: str) -> Result[Any, StoreError]:
        if not self._connected or self._client is None:
            return Err(StoreError.not_connected("redis"))

        start_ns = time.perf_counter_ns()
        try:
            budget = [self._config.max_read_bytes]
            value = await self._walk(path.strip("/"), budget)
        except ReadCeilingExceeded as e:
            self._metrics.too_large_count += 1
            return Err(StoreError.read_too_large(path, e.size_bytes, self._config.max_read_bytes))
        except asyncio.TimeoutError as e:
            self._metrics.timeout_errors += 1
            return Err(StoreError.operation_failed("read", path, e))
        except Exception as e:
            self._metrics.connection_errors += 1
            return Err(StoreError.operation_failed("read", path, e))

        self._metrics.record_read(time.perf_counter_ns() - start_ns)
        return Ok(value)

    async def list_child_keys(
        self,
        path: str,
        limit: int,
    ) -> Result[list[str], StoreError]:
        if not self._connected or self._client is None:
            return Err(StoreError.not_connected("redis"))
        if limit <= 0:
            return Ok([])
        try:
            members = await self._client.zrange(self.children_key(path), 0, limit - 1)
        except Exception as e:
            return Err(StoreError.operation_failed("list", path, e))
        return Ok(list(members))

    async def remove(self, path: str) -> Result[OperationMetadata, StoreError]:
        return await self._replace({path.strip("/"): None}, OperationType.REMOVE, path)

    # -------------------------------------------------------------------------
    # INTERNALS
    # -------------------------------------------------------------------------

    async def _replace(
        self,
        targets: Mapping[str, Any],
        operation: OperationType,
        path: str,
    ) -> Result[OperationMetadata, StoreError]:
        """
        Replace each target subtree in one MULTI/EXEC transaction.

        Old subtree keys are collected first, then deleted and rewritten
        inside the same transaction.
        """
        if not self._connected or self._client is None:
            return Err(StoreError.not_connected("redis"))

        start_ns = time.perf_counter_ns()
        try:
            leaves: dict[str, str] = {}
            index: dict[str, set[str]] = {}
            for target_path, value in targets.items():
                t_leaves, t_index = self.flatten(target_path, value)
                leaves.update(t_leaves)
                for node, names in t_index.items():
                    index.setdefault(node, set()).update(names)
        except (TypeError, ValueError) as e:
            return Err(StoreError.operation_failed(operation.value, path, e))

        try:
            stale: list[str] = []
            for target_path in targets:
                stale.extend(await self._subtree_keys(target_path))

            async with self._client.pipeline(transaction=True) as pipe:
                if stale:
                    pipe.delete(*stale)
                for target_path, value in targets.items():
                    segments = split_path(target_path)
                    if not segments:
                        continue
                    # A leaf on the way down would shadow the new children
                    for depth in range(1, len(segments)):
                        pipe.delete(self.value_key("/".join(segments[:depth])))
                    parent = "/".join(segments[:-1])
                    if target_path in leaves or target_path in index:
                        for depth in range(len(segments)):
                            ancestor = "/".join(segments[:depth])
                            pipe.zadd(self.children_key(ancestor), {segments[depth]: 0})
                    else:
                        pipe.zrem(self.children_key(parent), segments[-1])
                for node, names in index.items():
                    pipe.zadd(self.children_key(node), {name: 0 for name in names})
                if leaves:
                    pipe.mset({self.value_key(p): v for p, v in leaves.items()})
                await pipe.execute()
        except asyncio.TimeoutError as e:
            self._metrics.timeout_errors += 1
            return Err(StoreError.operation_failed(operation.value, path, e))
        except Exception as e:
            self._metrics.connection_errors += 1
            return Err(StoreError.operation_failed(operation.value, path, e))

        latency_ns = time.perf_counter_ns() - start_ns
        self._metrics.record_write(latency_ns)
        self._metrics.pipeline_count += 1
        return Ok(OperationMetadata(
            operation=operation,
            latency_ns=latency_ns,
            affected_nodes=len(leaves) if leaves else len(stale),
        ))

    async def _subtree_keys(self, path: str) -> list[str]:
        """Every value/children key at or under ``path``."""
        keys = [self.value_key(path), self.children_key(path)]
        children = await self._client.zrange(self.children_key(path), 0, -1)
        for child in children:
            keys.extend(await self._subtree_keys(join_path(path, child)))
        return keys

    async def _walk(self, path: str, budget: list[int]) -> Any:
        """
        Rebuild the subtree at ``path``.

        ``budget`` holds the remaining byte allowance and is shared across
        the recursion; crossing zero aborts the walk.
        """
        raw = await self._client.get(self.value_key(path))
        if raw is not None:
            self._charge(budget, len(path) + len(raw))
            return json.loads(raw)

        result: dict[str, Any] = {}
        start = 0
        while True:
            page = await self._client.zrange(
                self.children_key(path), start, start + WALK_PAGE_SIZE - 1,
            )
            for child in page:
                self._charge(budget, len(child) + 3)
                value = await self._walk(join_path(path, child), budget)
                if value is not None:
                    result[child] = value
            if len(page) < WALK_PAGE_SIZE:
                break
            start += WALK_PAGE_SIZE

        return result or None

    def _charge(self, budget: list[int], size: int) -> None:
        budget[0] -= size
        if budget[0] < 0:
            raise ReadCeilingExceeded(self._config.max_read_bytes - budget[0])

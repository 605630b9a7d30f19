"""
Recursive Split Reader

Reads a subtree that may exceed the store's per-read size ceiling.

Algorithm:
    fetch(path, depth):
        read(path) succeeds                 -> value
        STORE_READ_TOO_LARGE and depth > 0  -> list child keys, fetch every
                                               child at depth - 1, merge
        anything else                       -> Err

A child that fails for a reason other than the ceiling is skipped, logged
and recorded in FetchResult.skipped; the parent still succeeds with the
remaining children. A child that still hits the ceiling with no depth left
fails the whole fetch with STORE_READ_TOO_LARGE.

fetch_range(path, days) lists the day buckets under a group path, keeps the
ones inside a DayRange and reads each of them the same way.

Concurrency:
    Children are fetched concurrently. A semaphore bounds the number of
    store calls in flight and is only held around individual store calls,
    never across the recursion, so deep trees cannot deadlock it.
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Optional

from posemesh.core import constants as C
from posemesh.core.config import ReaderConfig
from posemesh.core.errors import StoreError
from posemesh.core.types import DayRange, Result, Ok, Err
from posemesh.storage.protocols import TreeStoreProtocol, join_path

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class FetchResult:
    """Outcome of a (possibly split) subtree read."""
    value: Any
    size_bytes: int
    child_count: int
    split: bool = False
    skipped: tuple[str, ...] = field(default_factory=tuple)

    @property
    def complete(self) -> bool:
        """True if no child had to be skipped."""
        return not self.skipped


def _encoded_size(value: Any) -> int:
    if value is None:
        return 0
    return len(json.dumps(value, separators=(",", ":")).encode("utf-8"))


class RecursiveReader:
    """
    Depth-bounded reader that splits oversized subtrees by child key.

    Usage:
        reader = RecursiveReader(store)
        match await reader.fetch("_PoseData/org/game", max_depth=3):
            case Ok(result):
                export(result.value)
                for path in result.skipped:
                    logger.warning(f"missing {path}")
            case Err(error):
                raise error
    """

    __slots__ = ("_store", "_config", "_semaphore")

    def __init__(
        self,
        store: TreeStoreProtocol,
        config: ReaderConfig = ReaderConfig(),
    ) -> None:
        self._store = store
        self._config = config
        self._semaphore = asyncio.Semaphore(config.concurrency)

    async def fetch(
        self,
        path: str,
        max_depth: Optional[int] = None,
    ) -> Result[FetchResult, StoreError]:
        """
        Read ``path``, splitting on the size ceiling up to ``max_depth``
        levels (default from config, clamped to MAX_READ_DEPTH).
        """
        return await self._fetch(path.strip("/"), self._clamp(max_depth))

    async def fetch_range(
        self,
        path: str,
        days: DayRange,
        max_depth: Optional[int] = None,
    ) -> Result[FetchResult, StoreError]:
        """
        Read the day buckets directly under ``path`` that fall inside
        ``days``.

        Only the bucket names are listed; every selected bucket is then
        read like fetch() with the full depth budget. The value maps bucket
        name to subtree and is empty when no bucket matches.
        """
        path = path.strip("/")
        async with self._semaphore:
            listed = await self._store.list_child_keys(path, self._config.child_list_limit)
        if listed.is_err():
            return Err(listed.error)

        selected = days.select(listed.value)
        logger.debug(f"'{path}': {len(selected)} of {len(listed.value)} day buckets in range")
        return await self._fetch_children(path, selected, self._clamp(max_depth))

    def _clamp(self, max_depth: Optional[int]) -> int:
        depth = self._config.max_depth if max_depth is None else max_depth
        return max(0, min(depth, C.MAX_READ_DEPTH))

    async def _fetch(self, path: str, depth: int) -> Result[FetchResult, StoreError]:
        async with self._semaphore:
            result = await self._store.read(path)

        if result.is_ok():
            value = result.value
            return Ok(FetchResult(
                value=value,
                size_bytes=_encoded_size(value),
                child_count=len(value) if isinstance(value, dict) else 0,
            ))

        error = result.error
        if not error.is_too_large or depth == 0:
            return Err(error)

        limit = self._config.child_list_limit
        async with self._semaphore:
            listed = await self._store.list_child_keys(path, limit)
        if listed.is_err():
            return Err(listed.error)

        keys = listed.value
        if not keys:
            return Err(error)
        if len(keys) >= limit:
            logger.warning(
                f"'{path}' listed {len(keys)} children (limit {limit}); "
                f"later children are not read"
            )

        logger.debug(f"Splitting '{path}' into {len(keys)} children (depth {depth})")
        return await self._fetch_children(path, keys, depth - 1)

    async def _fetch_children(
        self,
        path: str,
        keys: list[str],
        depth: int,
    ) -> Result[FetchResult, StoreError]:
        child_paths = [join_path(path, k) for k in keys]
        child_results = await asyncio.gather(
            *(self._fetch(child, depth) for child in child_paths)
        )

        merged: dict[str, Any] = {}
        skipped: list[str] = []
        size = 0
        for key, child_path, child in zip(keys, child_paths, child_results):
            if child.is_ok():
                fetched = child.value
                if fetched.value is not None:
                    merged[key] = fetched.value
                skipped.extend(fetched.skipped)
                size += fetched.size_bytes
            elif child.error.is_too_large:
                logger.warning(f"'{child_path}' still exceeds the read ceiling with no depth left")
                return Err(child.error)
            else:
                logger.warning(f"Skipping '{child_path}': {child.error}")
                skipped.append(child_path)

        return Ok(FetchResult(
            value=merged,
            size_bytes=size,
            child_count=len(keys),
            split=True,
            skipped=tuple(skipped),
        ))

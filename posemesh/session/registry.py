"""
Session Registry: Per-Session State and One-Time Metadata Writes

Provides:
- Lazily created SessionState per SessionKey (buffer, phase, flush flags,
  timers, counters)
- Idempotent initialization: SessionMetadata is written at most once per
  live registry entry; after forget() the key behaves as if never seen
- Per-key locks so concurrent initialize() calls share one write

Storage Model:
    In-memory only. Nothing here survives a process restart; a restarted
    process may write a key's metadata again.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Iterator, Optional

from posemesh.core.types import (
    Phase,
    SessionKey,
    SessionMetadata,
    Timestamp,
)
from posemesh.core.errors import SessionError
from posemesh.pipeline.buffer import FrameBuffer
from posemesh.session.phase import EventPhaseTracker
from posemesh.storage.paths import SessionPaths
from posemesh.storage.protocols import TreeStoreProtocol

logger = logging.getLogger(__name__)


# =============================================================================
# SESSION STATE
# =============================================================================
@dataclass(frozen=True, slots=True)
class SessionStats:
    """Point-in-time counters of one session."""
    appended: int
    flushed: int
    dropped: int
    buffered: int
    in_flight: int
    flushes: int
    failed_flushes: int
    phase: Phase
    last_flushed_phase: Phase
    initialized: bool

    def to_dict(self) -> dict[str, object]:
        return {
            "appended": self.appended,
            "flushed": self.flushed,
            "dropped": self.dropped,
            "buffered": self.buffered,
            "in_flight": self.in_flight,
            "flushes": self.flushes,
            "failed_flushes": self.failed_flushes,
            "phase": self.phase,
            "last_flushed_phase": self.last_flushed_phase,
            "initialized": self.initialized,
        }


class SessionState:
    """
    Mutable state of one buffering lifecycle.

    Owned by the registry; the flush controller reads and mutates it.
    """

    __slots__ = (
        "key",
        "buffer",
        "phase",
        "metadata",
        "paths",
        "frame_rate",
        "flushing",
        "closed",
        "last_flushed_phase",
        "last_batch_millis",
        "session_start",
        "last_frame_at",
        "pending",
        "auto_flush_task",
        "sampler_task",
        "appended",
        "flushed",
        "dropped",
        "in_flight",
        "flushes",
        "failed_flushes",
    )

    def __init__(self, key: SessionKey, frame_rate: int) -> None:
        self.key = key
        self.buffer = FrameBuffer()
        self.phase = EventPhaseTracker()
        self.metadata: Optional[SessionMetadata] = None
        self.paths: Optional[SessionPaths] = None
        self.frame_rate = frame_rate
        self.flushing = False
        self.closed = False
        self.last_flushed_phase: Phase = None
        self.last_batch_millis = 0
        self.session_start: Optional[Timestamp] = None
        self.last_frame_at: Optional[Timestamp] = None
        self.pending: set[asyncio.Task] = set()
        self.auto_flush_task: Optional[asyncio.Task] = None
        self.sampler_task: Optional[asyncio.Task] = None
        self.appended = 0
        self.flushed = 0
        self.dropped = 0
        self.in_flight = 0
        self.flushes = 0
        self.failed_flushes = 0

    @property
    def initialized(self) -> bool:
        return self.paths is not None

    def stats(self) -> SessionStats:
        return SessionStats(
            appended=self.appended,
            flushed=self.flushed,
            dropped=self.dropped,
            buffered=len(self.buffer),
            in_flight=self.in_flight,
            flushes=self.flushes,
            failed_flushes=self.failed_flushes,
            phase=self.phase.get_phase(),
            last_flushed_phase=self.last_flushed_phase,
            initialized=self.initialized,
        )


# =============================================================================
# SESSION REGISTRY
# =============================================================================
class SessionRegistry:
    """
    In-memory map of SessionKey -> SessionState.

    Usage:
        registry = SessionRegistry(store)

        paths = SessionPaths.build(key, metadata, org_id, group_id)
        await registry.initialize(key, metadata, paths)   # writes metadata
        await registry.initialize(key, metadata, paths)   # no-op

        state = registry.state_for(key)
        ...
        registry.forget(key)
    """

    __slots__ = ("_store", "_default_frame_rate", "_states", "_locks")

    def __init__(self, store: TreeStoreProtocol, default_frame_rate: int = 12) -> None:
        self._store = store
        self._default_frame_rate = default_frame_rate
        self._states: dict[SessionKey, SessionState] = {}
        self._locks: dict[SessionKey, asyncio.Lock] = {}

    def state_for(self, key: SessionKey) -> SessionState:
        """Existing state for ``key``, created on first use."""
        state = self._states.get(key)
        if state is None:
            state = SessionState(key, self._default_frame_rate)
            self._states[key] = state
        return state

    def get(self, key: SessionKey) -> Optional[SessionState]:
        return self._states.get(key)

    async def initialize(
        self,
        key: SessionKey,
        metadata: SessionMetadata,
        paths: SessionPaths,
    ) -> bool:
        """
        Write ``metadata`` once and mark the session initialized.

        Returns:
            True if this call performed the write, False if it was a no-op.

        Raises:
            SessionError: The metadata write was rejected by the store
        """
        lock = self._locks.setdefault(key, asyncio.Lock())
        async with lock:
            state = self.state_for(key)
            if state.initialized:
                return False

            result = await self._store.write(paths.metadata_path, metadata.to_dict())
            if result.is_err():
                raise SessionError.metadata_write_failed(str(key), result.error)

            self._attach(state, metadata, paths)
            logger.info(f"[{key}] Session initialized at {paths.metadata_path}")
            return True

    def forget(self, key: SessionKey) -> Optional[SessionState]:
        """Drop the session's state; a later initialize() writes metadata again."""
        self._locks.pop(key, None)
        state = self._states.pop(key, None)
        if state is not None:
            logger.debug(f"[{key}] Session forgotten")
        return state

    def is_initialized(self, key: SessionKey) -> bool:
        state = self._states.get(key)
        return state is not None and state.initialized

    def _attach(
        self,
        state: SessionState,
        metadata: SessionMetadata,
        paths: SessionPaths,
    ) -> None:
        state.metadata = metadata
        state.paths = paths
        state.frame_rate = metadata.frame_rate
        if state.session_start is None:
            state.session_start = metadata.session_start

    def keys(self) -> list[SessionKey]:
        return list(self._states)

    def __contains__(self, key: object) -> bool:
        return key in self._states

    def __len__(self) -> int:
        return len(self._states)

    def __iter__(self) -> Iterator[SessionState]:
        return iter(list(self._states.values()))

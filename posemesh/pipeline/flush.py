"""
Flush Controller: Hybrid Size / Time / Phase-Boundary Batching

Moves frames from a session's FrameBuffer to the store as batches.

State machine (per session):

    IDLE --flush()--> FLUSHING --write settles--> IDLE
                         |
                         +-- flush() while FLUSHING is a no-op

Triggers:
    1. Size      - append() sees len(buffer) >= size_ceiling
    2. Time      - auto-flush task wakes every flush_interval_ms; evaluates
                   the boundary trigger, then flushes if
                   len(buffer) >= min_batch_size
    3. Boundary  - the resolved phase differs from the phase of the oldest
                   buffered frames; those frames are written under their
                   own phase before anything newer

Batch construction happens synchronously inside flush(), before the first
await: the oldest same-phase run is removed from the buffer, stamped with
one batch timestamp (strictly increasing per session) and indexed. Frames
appended while the write is in flight land in the buffer and are never
lost by the write's completion.

After a successful write the controller chains another flush when the
buffer still holds a completed phase segment or is at the size ceiling.
Failed writes are reported to the LossDetector and not retried
immediately; their frames are either put back at the head of the buffer
(FailedFlushPolicy.RETAIN) or counted as dropped (DROP).
"""

from __future__ import annotations

import asyncio
import logging
from typing import Callable, Optional

from posemesh.core import constants as C
from posemesh.core.config import FailedFlushPolicy, FlushConfig
from posemesh.core.errors import PoseMeshError, SessionError, WriteError
from posemesh.core.types import (
    FrameRecord,
    Phase,
    SessionKey,
    Timestamp,
    make_batch_key,
)
from posemesh.observability.logging import log_context
from posemesh.observability.metrics import TelemetryMetrics
from posemesh.reliability.loss_detector import FlushPromiseRecord, LossDetector
from posemesh.session.registry import SessionRegistry, SessionState
from posemesh.storage.protocols import TreeStoreProtocol

logger = logging.getLogger(__name__)


class FlushController:
    """
    Buffers frames per session and writes them in phase-pure batches.

    Usage:
        controller = FlushController(registry, store, loss_detector, FlushConfig())

        controller.append(key, payload)      # never blocks, never raises
        controller.start_auto_flush(key)
        task = controller.flush(key)         # None if nothing was issued
        await controller.end_session(key)
    """

    __slots__ = (
        "_registry",
        "_store",
        "_loss",
        "_config",
        "_metrics",
        "_clock",
    )

    def __init__(
        self,
        registry: SessionRegistry,
        store: TreeStoreProtocol,
        loss_detector: LossDetector,
        config: FlushConfig = FlushConfig(),
        metrics: Optional[TelemetryMetrics] = None,
        clock: Callable[[], Timestamp] = Timestamp.now,
    ) -> None:
        self._registry = registry
        self._store = store
        self._loss = loss_detector
        self._config = config
        self._metrics = metrics or TelemetryMetrics()
        self._clock = clock

    @property
    def config(self) -> FlushConfig:
        return self._config

    # -------------------------------------------------------------------------
    # Producer Side
    # -------------------------------------------------------------------------

    def append(self, key: SessionKey, payload: str) -> bool:
        """
        Buffer one serialized frame under the session's current phase.

        Returns False (and buffers nothing) when no phase is active.
        Flushes triggered here are scheduled, never awaited.
        """
        state = self._registry.state_for(key)
        phase = state.phase.get_phase()
        if phase is None or state.closed:
            return False

        if state.buffer and state.buffer.head_phase != phase:
            self._check_boundary(state)

        now = self._clock()
        if state.session_start is None:
            state.session_start = now
        since_start = max(0, (now - state.session_start) // C.NS_PER_MS)
        since_last = (
            max(0, (now - state.last_frame_at) // C.NS_PER_MS)
            if state.last_frame_at is not None else 0
        )
        state.last_frame_at = now

        state.buffer.append(FrameRecord(
            payload=payload,
            captured_at=now,
            phase=phase,
            since_session_start_ms=since_start,
            since_last_frame_ms=since_last,
        ))
        state.appended += 1
        self._metrics.frames_appended.inc(phase=phase)
        self._update_depth(state)

        if len(state.buffer) >= self._config.size_ceiling:
            self._start_flush(state, reason="size")
        return True

    def buffer_size(self, key: SessionKey) -> int:
        state = self._registry.get(key)
        return len(state.buffer) if state is not None else 0

    # -------------------------------------------------------------------------
    # Flush State Machine
    # -------------------------------------------------------------------------

    def flush(
        self,
        key: SessionKey,
        target_phase: Phase = None,
    ) -> Optional[asyncio.Task]:
        """
        Issue one batch write for the session.

        ``target_phase`` overrides the tracker's phase for the precondition
        check; the batch is always written under the phase its frames were
        captured in.

        Returns:
            The pending write task, or None if nothing was issued (empty
            buffer, no phase, not initialized, or a write already in flight).
        """
        state = self._registry.get(key)
        if state is None:
            logger.debug(f"[{key}] Flush skipped: unknown session")
            return None
        resolved = target_phase or state.phase.get_phase()
        if resolved is None:
            logger.debug(f"[{key}] Flush skipped: no active phase")
            return None
        return self._start_flush(state, reason="manual")

    def force_phase_check(self, key: SessionKey) -> Optional[asyncio.Task]:
        """Evaluate the boundary trigger now."""
        state = self._registry.get(key)
        if state is None:
            return None
        return self._check_boundary(state)

    def _check_boundary(self, state: SessionState) -> Optional[asyncio.Task]:
        """Flush the oldest segment if its phase is no longer current."""
        head = state.buffer.head_phase
        if head is None or head == state.phase.get_phase():
            return None
        logger.debug(
            f"[{state.key}] Phase boundary: {head!r} -> {state.phase.get_phase()!r}"
        )
        return self._start_flush(state, reason="boundary")

    def _start_flush(self, state: SessionState, reason: str) -> Optional[asyncio.Task]:
        if not state.buffer:
            return None
        if state.flushing:
            return None
        if not state.initialized:
            error = SessionError.not_initialized(str(state.key), f"{reason} flush")
            logger.warning(f"{error}; {len(state.buffer)} frames kept")
            return None

        frames = state.buffer.take_leading_run(C.MAX_FRAMES_PER_BATCH)
        phase = frames[0].phase
        batch_millis = max(self._clock().millis, state.last_batch_millis + 1)
        state.last_batch_millis = batch_millis
        state.flushing = True
        state.in_flight += len(frames)
        self._update_depth(state)

        record = FlushPromiseRecord(
            phase=phase,
            frame_count=len(frames),
            batch_millis=batch_millis,
        )
        task = asyncio.create_task(
            self._write_batch(state, frames, record),
            name=f"posemesh-flush-{state.key}-{batch_millis}",
        )
        record.task = task
        self._loss.track(state.key, record, state.frame_rate)
        state.pending.add(task)
        task.add_done_callback(state.pending.discard)
        logger.debug(
            f"[{state.key}] {reason} flush: {len(frames)} frames under {phase!r}"
        )
        return task

    async def _write_batch(
        self,
        state: SessionState,
        frames: list[FrameRecord],
        record: FlushPromiseRecord,
    ) -> bool:
        """Write one batch; never raises."""
        phase = record.phase
        path = state.paths.frames_path(phase)
        error: Optional[PoseMeshError] = None

        with log_context(session_key=str(state.key), phase=phase):
            try:
                children = {
                    make_batch_key(record.batch_millis, i): frame.to_dict()
                    for i, frame in enumerate(frames)
                }
                with self._metrics.flush_latency.time(phase=phase):
                    result = await self._store.patch_children(path, children)
                if result.is_err():
                    error = WriteError.transient_failure(path, len(frames), result.error)
            except asyncio.CancelledError:
                state.flushing = False
                state.in_flight -= len(frames)
                state.buffer.push_front(frames)
                self._loss.discard(state.key, record)
                raise
            except Exception as e:
                error = WriteError.transient_failure(path, len(frames), e)
            finally:
                state.flushes += 1

            state.flushing = False
            state.in_flight -= len(frames)
            ok = error is None

            if ok:
                state.last_flushed_phase = phase
                state.flushed += len(frames)
                self._metrics.frames_flushed.inc(len(frames), phase=phase)
                logger.debug(f"[{state.key}] Wrote {len(frames)} frames to {path}")
            else:
                state.failed_flushes += 1
                self._metrics.flush_failures.inc(phase=phase)
                if self._config.failed_flush_policy is FailedFlushPolicy.RETAIN:
                    state.buffer.push_front(frames)
                    logger.warning(f"{error}; {len(frames)} frames retained")
                else:
                    state.dropped += len(frames)
                    self._metrics.frames_dropped.inc(len(frames), phase=phase)
                    logger.warning(f"{error}; {len(frames)} frames dropped")

            self._update_depth(state)
            self._loss.settle(state.key, record, ok, state.frame_rate, error)

            if ok:
                self._chain(state)
            return ok

    def _chain(self, state: SessionState) -> None:
        """Follow up a successful write when more complete work is buffered."""
        if state.closed or not state.buffer:
            return
        if self._registry.get(state.key) is not state:
            return
        completed_segment = (
            state.buffer.segment_count() > 1
            or state.buffer.head_phase != state.phase.get_phase()
        )
        if completed_segment or len(state.buffer) >= self._config.size_ceiling:
            self._start_flush(state, reason="chained")

    # -------------------------------------------------------------------------
    # Time Trigger
    # -------------------------------------------------------------------------

    def start_auto_flush(self, key: SessionKey) -> asyncio.Task:
        """Start (or return the running) periodic flush task for ``key``."""
        state = self._registry.state_for(key)
        if state.auto_flush_task is not None and not state.auto_flush_task.done():
            return state.auto_flush_task
        state.auto_flush_task = asyncio.create_task(
            self._auto_flush_loop(state),
            name=f"posemesh-autoflush-{key}",
        )
        return state.auto_flush_task

    async def stop_auto_flush(self, key: SessionKey) -> None:
        state = self._registry.get(key)
        if state is None:
            return
        await self._cancel(state.auto_flush_task)
        state.auto_flush_task = None

    async def _auto_flush_loop(self, state: SessionState) -> None:
        interval = self._config.flush_interval_s
        while True:
            await asyncio.sleep(interval)
            if self._registry.get(state.key) is not state:
                logger.warning(f"[{state.key}] Auto-flush fired for a forgotten session")
                return
            if self._check_boundary(state) is not None:
                continue
            if len(state.buffer) >= self._config.min_batch_size:
                self._start_flush(state, reason="time")

    # -------------------------------------------------------------------------
    # Teardown
    # -------------------------------------------------------------------------

    async def end_session(self, key: SessionKey) -> None:
        """
        Drain and forget a session.

        Cancels its timers, writes every remaining segment under its own
        phase, waits for all writes to settle, discards (and logs) whatever
        could still not be written, then removes the registry entry.
        """
        state = self._registry.get(key)
        if state is None:
            return
        state.closed = True

        await self._cancel(state.auto_flush_task)
        await self._cancel(state.sampler_task)
        state.auto_flush_task = None
        state.sampler_task = None

        await self._settle_pending(state)

        # Each remaining run gets one write attempt
        unwritable: list[FrameRecord] = []
        while state.initialized and state.buffer:
            run_length = min(state.buffer.segments()[0][1], C.MAX_FRAMES_PER_BATCH)
            task = self._start_flush(state, reason="drain")
            if task is None:
                break
            ok = await task
            if not ok and self._config.failed_flush_policy is FailedFlushPolicy.RETAIN:
                unwritable.extend(state.buffer.take_leading_run(run_length))
        await self._settle_pending(state)

        leftovers = unwritable + state.buffer.clear()
        if leftovers:
            state.dropped += len(leftovers)
            for frame in leftovers:
                self._metrics.frames_dropped.inc(phase=frame.phase)
            logger.warning(
                f"[{key}] Discarding {len(leftovers)} unwritten frames at session end"
            )

        self._metrics.buffer_depth.remove(session=str(key))
        self._loss.forget(key)
        self._registry.forget(key)
        logger.info(
            f"[{key}] Session ended: appended={state.appended} "
            f"flushed={state.flushed} dropped={state.dropped}"
        )

    async def _settle_pending(self, state: SessionState) -> None:
        while state.pending:
            await asyncio.gather(*list(state.pending), return_exceptions=True)

    @staticmethod
    async def _cancel(task: Optional[asyncio.Task]) -> None:
        if task is None or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    def _update_depth(self, state: SessionState) -> None:
        self._metrics.buffer_depth.set(len(state.buffer), session=str(state.key))

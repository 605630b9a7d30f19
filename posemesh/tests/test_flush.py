"""
Integration Tests: Hybrid Flush Against the In-Memory Store

Tests:
    - Size, time, manual and phase-boundary triggers
    - Batch keys strictly increasing within a session
    - Phase-pure batches, including boundaries crossed mid-write
    - Frame accounting under RETAIN and DROP policies
    - Session teardown
"""

from __future__ import annotations

import asyncio

import numpy as np
import pytest

from posemesh.core.config import FailedFlushPolicy
from posemesh.core.types import parse_batch_key
from posemesh.storage import OperationType
from posemesh.tests.conftest import fixed_clock, node_at


def accounted(state) -> bool:
    """Every appended frame is flushed, dropped, buffered or in flight."""
    return state.appended == state.flushed + state.dropped + len(state.buffer) + state.in_flight


async def settle(state) -> None:
    while state.pending:
        await asyncio.gather(*list(state.pending))


def stored_frames(store, state, phase: str) -> dict:
    return node_at(store.snapshot(), state.paths.frames_path(phase)) or {}


class TestAppend:
    """Tests for the producer side."""

    @pytest.mark.asyncio
    async def test_no_phase_buffers_nothing(self, make_sink, session_key, metadata):
        sink = make_sink()
        await sink.initialize_session(session_key, metadata)
        assert sink.append(session_key, [1, 2, 3]) is False
        assert sink.buffer_size(session_key) == 0

    @pytest.mark.asyncio
    async def test_append_buffers_under_phase(self, make_sink, session_key, metadata):
        sink = make_sink()
        await sink.initialize_session(session_key, metadata)
        await sink.mark_phase(session_key, "warmup")
        assert sink.append(session_key, np.zeros((17, 3)))
        assert sink.buffer_size(session_key) == 1
        assert sink.metrics.frames_appended.get(phase="warmup") == 1

    @pytest.mark.asyncio
    async def test_unserializable_pose_skipped(self, make_sink, session_key, metadata):
        sink = make_sink()
        await sink.initialize_session(session_key, metadata)
        await sink.mark_phase(session_key, "warmup")
        assert sink.append(session_key, object()) is False
        assert sink.buffer_size(session_key) == 0

    @pytest.mark.asyncio
    async def test_frame_timing_fields(self, make_sink, session_key, metadata, store):
        sink = make_sink()
        await sink.initialize_session(session_key, metadata)
        await sink.mark_phase(session_key, "warmup")
        sink.append(session_key, [0])
        await asyncio.sleep(0.02)
        sink.append(session_key, [1])
        state = sink.registry.get(session_key)
        first, second = list(state.buffer)
        assert first.since_last_frame_ms == 0
        assert second.since_last_frame_ms >= 15
        assert second.since_session_start_ms >= first.since_session_start_ms

    @pytest.mark.asyncio
    async def test_phase_provider(self, make_sink, session_key, metadata):
        level = {"name": "level-1"}
        sink = make_sink()
        await sink.initialize_session(
            session_key, metadata, phase_provider=lambda: level["name"],
        )
        assert sink.current_phase(session_key) == "level-1"
        assert sink.append(session_key, [1])
        level["name"] = None
        assert sink.append(session_key, [2]) is False


class TestTriggers:
    """Tests for size / time / manual triggers."""

    @pytest.mark.asyncio
    async def test_size_trigger(self, make_sink, session_key, metadata, store):
        sink = make_sink(size_ceiling=5, min_batch_size=1)
        await sink.initialize_session(session_key, metadata)
        await sink.mark_phase(session_key, "warmup")
        state = sink.registry.get(session_key)
        for i in range(4):
            sink.append(session_key, [i])
        assert not state.pending
        sink.append(session_key, [4])
        assert state.pending
        await settle(state)
        assert state.flushed == 5
        assert len(stored_frames(store, state, "warmup")) == 5

    @pytest.mark.asyncio
    async def test_time_trigger(self, make_sink, session_key, metadata, store):
        sink = make_sink(flush_interval_ms=20, min_batch_size=3)
        await sink.initialize_session(session_key, metadata)
        await sink.mark_phase(session_key, "warmup")
        state = sink.registry.get(session_key)
        sink.start_auto_flush(session_key)

        sink.append(session_key, [0])
        sink.append(session_key, [1])
        await asyncio.sleep(0.08)
        assert state.flushed == 0

        sink.append(session_key, [2])
        await asyncio.sleep(0.08)
        await settle(state)
        assert state.flushed == 3
        await sink.end_session(session_key)

    @pytest.mark.asyncio
    async def test_start_auto_flush_idempotent(self, make_sink, session_key, metadata):
        sink = make_sink()
        await sink.initialize_session(session_key, metadata)
        task = sink.start_auto_flush(session_key)
        assert sink.start_auto_flush(session_key) is task
        await sink.stop_auto_flush(session_key)
        assert task.cancelled()

    @pytest.mark.asyncio
    async def test_manual_flush(self, make_sink, session_key, metadata, store):
        sink = make_sink()
        await sink.initialize_session(session_key, metadata)
        await sink.mark_phase(session_key, "warmup")
        for i in range(3):
            sink.append(session_key, {"i": i})
        task = sink.flush(session_key)
        assert await task is True
        state = sink.registry.get(session_key)
        frames = stored_frames(store, state, "warmup")
        assert [frames[k]["pose"] for k in sorted(frames)] == ['{"i":0}', '{"i":1}', '{"i":2}']

    @pytest.mark.asyncio
    async def test_flush_empty_or_no_phase(self, make_sink, session_key, metadata):
        sink = make_sink()
        await sink.initialize_session(session_key, metadata)
        assert sink.flush(session_key) is None
        await sink.mark_phase(session_key, "warmup")
        assert sink.flush(session_key) is None

    @pytest.mark.asyncio
    async def test_flush_while_flushing_is_noop(self, make_sink, session_key, metadata, store):
        sink = make_sink()
        await sink.initialize_session(session_key, metadata)
        await sink.mark_phase(session_key, "warmup")
        sink.append(session_key, [0])

        store.hold_writes()
        task = sink.flush(session_key)
        await asyncio.sleep(0)
        sink.append(session_key, [1])
        assert sink.flush(session_key) is None
        assert sink.buffer_size(session_key) == 1

        store.release_writes()
        assert await task is True
        assert sink.buffer_size(session_key) == 1
        assert store.operation_count(OperationType.PATCH) == 1

    @pytest.mark.asyncio
    async def test_uninitialized_flush_keeps_frames(self, make_sink, session_key, store):
        sink = make_sink()
        await sink.mark_phase(session_key, "warmup")
        assert sink.append(session_key, [0])
        assert sink.flush(session_key) is None
        assert sink.buffer_size(session_key) == 1
        assert store.operation_count(OperationType.PATCH) == 0


class TestOrdering:
    """Tests for batch key ordering."""

    @pytest.mark.asyncio
    async def test_keys_strictly_increase_with_frozen_clock(
        self, make_sink, session_key, metadata, store,
    ):
        sink = make_sink(clock=fixed_clock())
        await sink.initialize_session(session_key, metadata)
        await sink.mark_phase(session_key, "warmup")
        state = sink.registry.get(session_key)

        for batch in range(3):
            for i in range(2):
                sink.append(session_key, [batch, i])
            await sink.flush(session_key)

        keys = sorted(stored_frames(store, state, "warmup"))
        batch_millis = sorted({parse_batch_key(k)[0] for k in keys})
        assert len(keys) == 6
        assert batch_millis == [1_700_000_000_000, 1_700_000_000_001, 1_700_000_000_002]

    @pytest.mark.asyncio
    async def test_keys_increase_across_phases(self, make_sink, session_key, metadata, store):
        sink = make_sink(clock=fixed_clock())
        await sink.initialize_session(session_key, metadata)
        state = sink.registry.get(session_key)
        for phase in ("a", "b", "c"):
            await sink.mark_phase(session_key, phase)
            sink.append(session_key, [phase])
        await sink.mark_phase(session_key, None)
        await settle(state)

        firsts = [
            parse_batch_key(next(iter(stored_frames(store, state, phase))))[0]
            for phase in ("a", "b", "c")
        ]
        assert firsts == sorted(firsts)
        assert len(set(firsts)) == 3


class TestPhaseIsolation:
    """Tests for phase-pure batches."""

    @pytest.mark.asyncio
    async def test_boundary_flushes_old_phase(self, make_sink, session_key, metadata, store):
        sink = make_sink()
        await sink.initialize_session(session_key, metadata)
        state = sink.registry.get(session_key)
        await sink.mark_phase(session_key, "warmup")
        for i in range(3):
            sink.append(session_key, [i])
        await sink.mark_phase(session_key, "pose-1")
        sink.append(session_key, [99])
        await settle(state)

        assert len(stored_frames(store, state, "warmup")) == 3
        assert stored_frames(store, state, "pose-1") == {}
        assert state.buffer.segments() == [("pose-1", 1)]
        assert state.last_flushed_phase == "warmup"

    @pytest.mark.asyncio
    async def test_boundaries_deferred_behind_inflight_write(
        self, make_sink, session_key, metadata, store,
    ):
        sink = make_sink()
        await sink.initialize_session(session_key, metadata)
        state = sink.registry.get(session_key)
        await sink.mark_phase(session_key, "a")
        for i in range(3):
            sink.append(session_key, ["a", i])

        store.hold_writes()
        first = sink.flush(session_key)
        await asyncio.sleep(0)

        await sink.mark_phase(session_key, "b")
        sink.append(session_key, ["b", 0])
        sink.append(session_key, ["b", 1])
        await sink.mark_phase(session_key, "c")
        sink.append(session_key, ["c", 0])
        assert state.buffer.segments() == [("b", 2), ("c", 1)]
        assert accounted(state)

        store.release_writes()
        assert await first is True
        await settle(state)

        assert len(stored_frames(store, state, "a")) == 3
        b_frames = stored_frames(store, state, "b")
        assert [b_frames[k]["pose"] for k in sorted(b_frames)] == ['["b",0]', '["b",1]']
        assert stored_frames(store, state, "c") == {}
        assert state.buffer.segments() == [("c", 1)]

    @pytest.mark.asyncio
    async def test_every_batch_single_phase(self, make_sink, session_key, metadata, store):
        sink = make_sink(size_ceiling=4, min_batch_size=1)
        await sink.initialize_session(session_key, metadata)
        state = sink.registry.get(session_key)
        for phase in ("a", "b", "a", "c"):
            await sink.mark_phase(session_key, phase)
            for i in range(6):
                sink.append(session_key, [phase, i])
        await sink.end_session(session_key)

        frames = node_at(store.snapshot(), state.paths.metadata_path)["frames"]
        for phase, batches in frames.items():
            for record in batches.values():
                assert f'"{phase}"' in record["pose"]
        assert state.flushed == 24


class TestAccounting:
    """Tests for failed writes under each policy."""

    @pytest.mark.asyncio
    async def test_retain_puts_frames_back(self, make_sink, session_key, metadata, store):
        sink = make_sink()
        await sink.initialize_session(session_key, metadata)
        await sink.mark_phase(session_key, "warmup")
        state = sink.registry.get(session_key)
        for i in range(5):
            sink.append(session_key, [i])

        store.inject_failure(OperationType.PATCH, count=1)
        assert await sink.flush(session_key) is False
        assert accounted(state)
        assert state.buffer.segments() == [("warmup", 5)]
        assert state.failed_flushes == 1
        assert sink.metrics.flush_failures.get(phase="warmup") == 1

        assert await sink.flush(session_key) is True
        assert state.flushed == 5
        assert state.dropped == 0
        assert accounted(state)

    @pytest.mark.asyncio
    async def test_retain_keeps_order_with_newer_frames(
        self, make_sink, session_key, metadata, store,
    ):
        sink = make_sink()
        await sink.initialize_session(session_key, metadata)
        await sink.mark_phase(session_key, "warmup")
        state = sink.registry.get(session_key)
        sink.append(session_key, [0])

        store.inject_failure(OperationType.PATCH, count=1)
        store.hold_writes()
        task = sink.flush(session_key)
        await asyncio.sleep(0)
        sink.append(session_key, [1])
        store.release_writes()
        assert await task is False
        assert [f.payload for f in state.buffer] == ["[0]", "[1]"]

    @pytest.mark.asyncio
    async def test_drop_counts_frames(self, make_sink, session_key, metadata, store):
        sink = make_sink(failed_flush_policy=FailedFlushPolicy.DROP)
        await sink.initialize_session(session_key, metadata)
        await sink.mark_phase(session_key, "warmup")
        state = sink.registry.get(session_key)
        for i in range(5):
            sink.append(session_key, [i])

        store.inject_failure(OperationType.PATCH, count=1)
        assert await sink.flush(session_key) is False
        assert state.dropped == 5
        assert len(state.buffer) == 0
        assert sink.metrics.frames_dropped.get(phase="warmup") == 5
        assert accounted(state)

    @pytest.mark.asyncio
    async def test_in_flight_counted(self, make_sink, session_key, metadata, store):
        sink = make_sink()
        await sink.initialize_session(session_key, metadata)
        await sink.mark_phase(session_key, "warmup")
        state = sink.registry.get(session_key)
        for i in range(4):
            sink.append(session_key, [i])

        store.hold_writes()
        task = sink.flush(session_key)
        assert state.in_flight == 4
        assert accounted(state)
        store.release_writes()
        await task
        assert state.in_flight == 0
        assert accounted(state)

    @pytest.mark.asyncio
    async def test_no_chained_retry_after_failure(self, make_sink, session_key, metadata, store):
        sink = make_sink(size_ceiling=2, min_batch_size=1)
        await sink.initialize_session(session_key, metadata)
        await sink.mark_phase(session_key, "warmup")
        state = sink.registry.get(session_key)

        store.inject_failure(OperationType.PATCH)
        sink.append(session_key, [0])
        sink.append(session_key, [1])
        await settle(state)
        assert store.operation_count(OperationType.PATCH) == 1
        assert len(state.buffer) == 2

    @pytest.mark.asyncio
    async def test_cancelled_write_leaves_loss_window(self, make_sink, session_key, metadata, store):
        sink = make_sink()
        await sink.initialize_session(session_key, metadata)
        await sink.mark_phase(session_key, "warmup")
        state = sink.registry.get(session_key)
        sink.append(session_key, [0])

        store.hold_writes()
        task = sink.flush(session_key)
        await asyncio.sleep(0.01)
        assert len(sink.loss_detector.records(session_key)) == 1

        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        store.release_writes()

        assert sink.loss_detector.records(session_key) == []
        assert len(state.buffer) == 1
        assert not state.flushing
        assert accounted(state)


class TestEndSession:
    """Tests for teardown."""

    @pytest.mark.asyncio
    async def test_drains_every_segment(self, make_sink, session_key, metadata, store):
        sink = make_sink()
        await sink.initialize_session(session_key, metadata)
        state = sink.registry.get(session_key)
        sink.start_auto_flush(session_key)

        store.hold_writes()
        await sink.mark_phase(session_key, "a")
        sink.append(session_key, [0])
        sink.flush(session_key)
        await sink.mark_phase(session_key, "b")
        sink.append(session_key, [1])
        await sink.mark_phase(session_key, "c")
        sink.append(session_key, [2])
        store.release_writes()

        await sink.end_session(session_key)

        assert session_key not in sink.registry
        assert state.auto_flush_task is None
        assert len(state.buffer) == 0
        assert state.flushed == 3
        for phase in ("a", "b", "c"):
            assert len(stored_frames(store, state, phase)) == 1
        assert list(sink.metrics.buffer_depth.collect()) == []

    @pytest.mark.asyncio
    async def test_unwritable_frames_discarded(self, make_sink, session_key, metadata, store):
        sink = make_sink()
        await sink.initialize_session(session_key, metadata)
        await sink.mark_phase(session_key, "a")
        state = sink.registry.get(session_key)
        sink.append(session_key, [0])
        await sink.mark_phase(session_key, "b")
        sink.append(session_key, [1])

        store.inject_failure(OperationType.PATCH)
        await sink.end_session(session_key)

        assert session_key not in sink.registry
        assert state.dropped == 2
        assert len(state.buffer) == 0
        assert accounted(state)

    @pytest.mark.asyncio
    async def test_uninitialized_session_discarded(self, make_sink, session_key, store):
        sink = make_sink()
        await sink.mark_phase(session_key, "a")
        sink.append(session_key, [0])
        await sink.end_session(session_key)
        assert session_key not in sink.registry
        assert store.operation_count(OperationType.PATCH) == 0

    @pytest.mark.asyncio
    async def test_append_after_end_recreates_nothing_buffered(
        self, make_sink, session_key, metadata,
    ):
        sink = make_sink()
        await sink.initialize_session(session_key, metadata)
        await sink.end_session(session_key)
        assert sink.append(session_key, [0]) is False
        assert sink.buffer_size(session_key) == 0

    @pytest.mark.asyncio
    async def test_end_unknown_session(self, make_sink, session_key):
        await make_sink().end_session(session_key)

    @pytest.mark.asyncio
    async def test_reinitialize_after_end(self, make_sink, session_key, metadata, store):
        sink = make_sink()
        await sink.initialize_session(session_key, metadata)
        await sink.end_session(session_key)
        assert await sink.initialize_session(session_key, metadata) is True
        assert sink.registry.is_initialized(session_key)
        assert store.operation_count(OperationType.WRITE) == 2
        await sink.mark_phase(session_key, "warmup")
        assert sink.append(session_key, [1]) is True

"""
Frame Buffer

Ordered in-memory queue of frames awaiting a batch write. Frames carry
their own phase, so the buffer can hold several phase segments back to
back (e.g. while a write is in flight across a phase boundary); batches
are always cut as the oldest contiguous same-phase run.

Complexity:
    append / __len__ / head_phase / tail_phase: O(1)
    take_leading_run: O(k), k = frames taken
    segment_count: O(1)
"""

from __future__ import annotations

from collections import deque
from typing import Iterator, Optional, Sequence

from posemesh.core.types import FrameRecord


class FrameBuffer:
    """
    Phase-segmented FIFO of FrameRecords.

    Usage:
        buf = FrameBuffer()
        buf.append(frame_a1); buf.append(frame_a2); buf.append(frame_b1)
        buf.segment_count()        # 2
        buf.take_leading_run()     # [frame_a1, frame_a2]
    """

    __slots__ = ("_frames", "_segments")

    def __init__(self) -> None:
        self._frames: deque[FrameRecord] = deque()
        # Lengths of consecutive same-phase runs, oldest first
        self._segments: deque[list] = deque()

    def append(self, frame: FrameRecord) -> None:
        if self._segments and self._frames[-1].phase == frame.phase:
            self._segments[-1][1] += 1
        else:
            self._segments.append([frame.phase, 1])
        self._frames.append(frame)

    def take_leading_run(self, max_frames: Optional[int] = None) -> list[FrameRecord]:
        """Remove and return the oldest run of frames sharing one phase."""
        if not self._segments:
            return []
        segment = self._segments[0]
        count = segment[1] if max_frames is None else min(segment[1], max_frames)
        taken = [self._frames.popleft() for _ in range(count)]
        segment[1] -= count
        if segment[1] == 0:
            self._segments.popleft()
        return taken

    def push_front(self, frames: Sequence[FrameRecord]) -> None:
        """Return frames to the head of the buffer, preserving their order."""
        for frame in reversed(frames):
            if self._segments and self._segments[0][0] == frame.phase:
                self._segments[0][1] += 1
            else:
                self._segments.appendleft([frame.phase, 1])
            self._frames.appendleft(frame)

    def clear(self) -> list[FrameRecord]:
        """Remove and return every frame."""
        frames = list(self._frames)
        self._frames.clear()
        self._segments.clear()
        return frames

    @property
    def head_phase(self) -> Optional[str]:
        return self._segments[0][0] if self._segments else None

    @property
    def tail_phase(self) -> Optional[str]:
        return self._segments[-1][0] if self._segments else None

    def segment_count(self) -> int:
        return len(self._segments)

    def segments(self) -> list[tuple[str, int]]:
        """(phase, frame count) per run, oldest first."""
        return [(phase, count) for phase, count in self._segments]

    def __len__(self) -> int:
        return len(self._frames)

    def __bool__(self) -> bool:
        return bool(self._frames)

    def __iter__(self) -> Iterator[FrameRecord]:
        return iter(self._frames)

"""
Core Type Definitions for Pose Telemetry Buffering

Implements Result/Either monads for zero-exception control flow on the
store boundary, plus the identity and record types shared by every
subsystem.

Design Principles:
- Never use null for absence at the store boundary (use Result)
- Records are frozen once built; buffers hold references, never copies
- Batch keys sort lexicographically in write order
"""

from __future__ import annotations

import re
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from email.utils import formatdate
from typing import (
    Any,
    Callable,
    Generic,
    Iterable,
    Literal,
    Optional,
    TypeVar,
    Union,
)

from posemesh.core import constants as C

# =============================================================================
# TYPE VARIABLES FOR GENERIC CONTAINERS
# =============================================================================
T = TypeVar("T")  # Success type
E = TypeVar("E")  # Error type
U = TypeVar("U")  # Transform result type


# =============================================================================
# RESULT MONAD: ZERO-EXCEPTION CONTROL FLOW
# =============================================================================
@dataclass(frozen=True, slots=True)
class Ok(Generic[T]):
    """
    Success variant of Result monad.

    Immutable container for successful computation results.
    """

    value: T

    def is_ok(self) -> Literal[True]:
        return True

    def is_err(self) -> Literal[False]:
        return False

    def unwrap(self) -> T:
        """Extract value. Safe to call after is_ok() check."""
        return self.value

    def unwrap_or(self, default: T) -> T:
        """Return value, ignoring default."""
        return self.value

    def map(self, fn: Callable[[T], U]) -> Ok[U]:
        """Apply transformation to success value."""
        return Ok(fn(self.value))

    def flat_map(self, fn: Callable[[T], Result[U, E]]) -> Result[U, E]:
        """Monadic bind for chaining fallible operations."""
        return fn(self.value)

    def __repr__(self) -> str:
        return f"Ok({self.value!r})"


@dataclass(frozen=True, slots=True)
class Err(Generic[E]):
    """
    Failure variant of Result monad.

    Carries full error context for exhaustive handling.
    """

    error: E

    def is_ok(self) -> Literal[False]:
        return False

    def is_err(self) -> Literal[True]:
        return True

    def unwrap(self) -> Any:
        """
        Attempting to unwrap an error is a programming error.

        Raises:
            RuntimeError: Always, with error context
        """
        raise RuntimeError(f"Called unwrap() on Err: {self.error}")

    def unwrap_or(self, default: T) -> T:
        """Return default value on error."""
        return default

    def map(self, fn: Callable[[Any], U]) -> Err[E]:
        """No-op on error variant - propagates error unchanged."""
        return self

    def flat_map(self, fn: Callable[[Any], Result[U, E]]) -> Err[E]:
        """Propagate error through monadic chain."""
        return self

    def __repr__(self) -> str:
        return f"Err({self.error!r})"


# Union type for pattern matching
Result = Union[Ok[T], Err[E]]

# A phase of None means "not recording"
Phase = Optional[str]


# =============================================================================
# TIMESTAMP WITH NANOSECOND PRECISION
# =============================================================================
@dataclass(frozen=True, slots=True, order=True)
class Timestamp:
    """
    Wall-clock timestamp stored as nanoseconds since Unix epoch.

    Batch keys and frame records only need millisecond resolution;
    nanos are kept so ordering within one millisecond is preserved.
    """

    nanos: int

    @classmethod
    def now(cls) -> Timestamp:
        return cls(nanos=time.time_ns())

    @classmethod
    def from_millis(cls, millis: int) -> Timestamp:
        return cls(nanos=millis * C.NS_PER_MS)

    @property
    def millis(self) -> int:
        """Convert to milliseconds (truncating)."""
        return self.nanos // C.NS_PER_MS

    @property
    def seconds(self) -> float:
        return self.nanos / 1_000_000_000

    def to_datetime(self) -> datetime:
        return datetime.fromtimestamp(self.seconds, tz=timezone.utc)

    def to_gmt_string(self) -> str:
        """RFC 1123 form, e.g. 'Mon, 19 Oct 2026 10:00:00 GMT'."""
        return formatdate(self.seconds, usegmt=True)

    def date_bucket(self) -> str:
        """YYYY-MM-DD bucket (UTC) so day folders sort chronologically."""
        return self.to_datetime().strftime("%Y-%m-%d")

    def __sub__(self, other: Timestamp) -> int:
        """Subtract timestamps, returning difference in nanos."""
        return self.nanos - other.nanos

    def __repr__(self) -> str:
        return f"Timestamp({self.nanos}ns)"


# =============================================================================
# DAY BUCKET RANGES
# =============================================================================
_LABEL_UNSAFE = re.compile(r"[^A-Za-z0-9]")


@dataclass(frozen=True, slots=True)
class DayRange:
    """
    Inclusive range of day bucket keys, compared as strings.

    Either bound may be None (open). Day buckets are YYYY-MM-DD, so string
    order is date order.
    """
    start: Optional[str] = None
    end: Optional[str] = None

    def contains(self, key: str) -> bool:
        if self.start is not None and key < self.start:
            return False
        if self.end is not None and key > self.end:
            return False
        return True

    def select(self, keys: Iterable[str]) -> list[str]:
        """Keys inside the range, sorted."""
        return sorted(k for k in keys if self.contains(k))

    @property
    def label(self) -> str:
        """e.g. ``2023_11_01_to_2023_11_14`` for export file names."""
        start = _LABEL_UNSAFE.sub("_", self.start) if self.start else "first"
        end = _LABEL_UNSAFE.sub("_", self.end) if self.end else "last"
        return f"{start}_to_{end}"


# =============================================================================
# SESSION IDENTITY
# =============================================================================
@dataclass(frozen=True, slots=True)
class SessionKey:
    """
    Composite identity of one buffering lifecycle.

    (user, device, login, recording) - hashable, used as the registry key.
    """

    user_id: str
    device_id: str
    login_epoch: int
    recording_id: str

    def __str__(self) -> str:
        return (
            f"{self.user_id}/{self.device_id[:C.DEVICE_ID_PREFIX_CHARS]}/"
            f"{self.login_epoch}/{self.recording_id}"
        )


@dataclass(frozen=True, slots=True)
class SessionMetadata:
    """
    Static per-recording record, written exactly once per SessionKey.
    """

    user_id: str
    user_name: str
    device_id: str
    device_nickname: str
    frame_rate: int
    login_time: str
    session_start: Timestamp = field(default_factory=Timestamp.now)

    def to_dict(self) -> dict[str, Any]:
        """Serialize to the stored document shape."""
        return {
            "userId": self.user_id,
            "userName": self.user_name,
            "deviceId": self.device_id,
            "deviceNickname": self.device_nickname,
            "frameRate": self.frame_rate,
            "loginTime": self.login_time,
            "sessionStartTime": self.session_start.to_gmt_string(),
            "sessionStartUnix": self.session_start.millis,
        }


# =============================================================================
# FRAME RECORDS
# =============================================================================
@dataclass(frozen=True, slots=True)
class FrameRecord:
    """
    One sampled frame waiting in the buffer.

    Frames carry the phase they were captured under so that a batch
    can always be cut along phase boundaries, even when a boundary
    flush had to be deferred behind an in-flight write.
    """

    payload: str
    captured_at: Timestamp
    phase: str
    since_session_start_ms: int = 0
    since_last_frame_ms: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "pose": self.payload,
            "timestamp": self.captured_at.to_gmt_string(),
            "unixTimestamp": self.captured_at.millis,
            "timeSinceGameStart": self.since_session_start_ms,
            "timeSinceLastEvent": self.since_last_frame_ms,
        }


# =============================================================================
# BATCH KEYS
# =============================================================================
def make_batch_key(batch_millis: int, index: int) -> str:
    """
    Build a batch child key.

    Zero padding makes lexicographic order equal chronological order:
        batch_001692123456789_frame_00001

    Raises:
        ValueError: If either component would overflow its padding
    """
    if not 0 <= batch_millis < 10 ** C.BATCH_TIMESTAMP_DIGITS:
        raise ValueError(f"batch timestamp out of range: {batch_millis}")
    if not 0 <= index < C.MAX_FRAMES_PER_BATCH:
        raise ValueError(f"frame index out of range: {index}")
    return (
        f"batch_{batch_millis:0{C.BATCH_TIMESTAMP_DIGITS}d}"
        f"_frame_{index:0{C.BATCH_INDEX_DIGITS}d}"
    )


def parse_batch_key(key: str) -> Optional[tuple[int, int]]:
    """Inverse of make_batch_key; None for keys of another shape."""
    parts = key.split("_")
    if len(parts) != 4 or parts[0] != "batch" or parts[2] != "frame":
        return None
    try:
        return int(parts[1]), int(parts[3])
    except ValueError:
        return None

"""
Data Loss Detection

Watches the outcomes of batch writes per session and raises a LossWarning
when too many recent writes were rejected.

Window:
    The trailing ``check_interval_s * frame_rate + 1`` flush records.
Threshold:
    More than ``data_loss_threshold_s * frame_rate`` rejections in the window.
Debounce:
    At most one warning per ``check_interval_s`` per session, measured on a
    monotonic clock. The first warning fires immediately.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Callable, Optional

from posemesh.core.config import LossDetectorConfig
from posemesh.core.errors import PoseMeshError
from posemesh.core.types import SessionKey, Timestamp
from posemesh.observability.metrics import TelemetryMetrics

logger = logging.getLogger(__name__)


# =============================================================================
# FLUSH RECORDS
# =============================================================================
@dataclass(slots=True)
class FlushPromiseRecord:
    """
    Handle on one issued batch write.

    ``outcome`` stays None until the write settles.
    """
    phase: str
    frame_count: int
    batch_millis: int
    issued_at: Timestamp = field(default_factory=Timestamp.now)
    task: Optional[asyncio.Task] = None
    outcome: Optional[bool] = None
    error: Optional[PoseMeshError] = None

    @property
    def settled(self) -> bool:
        return self.outcome is not None

    @property
    def rejected(self) -> bool:
        return self.outcome is False


@dataclass(frozen=True, slots=True)
class LossWarning:
    """Raised (as a value) when the rejection rate crosses the threshold."""
    session: SessionKey
    rejections: int
    window: int
    threshold: float
    at: Timestamp = field(default_factory=Timestamp.now)

    @property
    def message(self) -> str:
        return (
            f"Possible data loss: {self.rejections} of the last {self.window} "
            f"batch writes were rejected (threshold {self.threshold:g})"
        )


LossWarningCallback = Callable[[LossWarning], None]


# =============================================================================
# LOSS DETECTOR
# =============================================================================
class LossDetector:
    """
    Per-session sliding-window rejection monitor.

    Usage:
        detector = LossDetector(LossDetectorConfig(), on_warning=show_banner)

        record = FlushPromiseRecord(phase="warmup", frame_count=50, batch_millis=...)
        detector.track(key, record, frame_rate=12)
        ...
        warning = detector.settle(key, record, ok=False)
    """

    __slots__ = (
        "_config",
        "_on_warning",
        "_metrics",
        "_monotonic",
        "_records",
        "_last_alert",
        "_warnings",
    )

    def __init__(
        self,
        config: LossDetectorConfig = LossDetectorConfig(),
        on_warning: Optional[LossWarningCallback] = None,
        metrics: Optional[TelemetryMetrics] = None,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        self._config = config
        self._on_warning = on_warning
        self._metrics = metrics
        self._monotonic = monotonic
        self._records: dict[SessionKey, deque[FlushPromiseRecord]] = {}
        self._last_alert: dict[SessionKey, float] = {}
        self._warnings: list[LossWarning] = []

    def window_size(self, frame_rate: int) -> int:
        return int(self._config.check_interval_s * frame_rate) + 1

    def threshold(self, frame_rate: int) -> float:
        return self._config.data_loss_threshold_s * frame_rate

    def track(self, key: SessionKey, record: FlushPromiseRecord, frame_rate: int) -> None:
        """Register an issued write. Older records fall out of the window."""
        window = self.window_size(frame_rate)
        records = self._records.get(key)
        if records is None or records.maxlen != window:
            records = deque(records or (), maxlen=window)
            self._records[key] = records
        records.append(record)

    def settle(
        self,
        key: SessionKey,
        record: FlushPromiseRecord,
        ok: bool,
        frame_rate: int,
        error: Optional[PoseMeshError] = None,
    ) -> Optional[LossWarning]:
        """Record a write outcome and evaluate the window."""
        record.outcome = ok
        record.error = error
        return self.evaluate(key, frame_rate)

    def evaluate(self, key: SessionKey, frame_rate: int) -> Optional[LossWarning]:
        records = self._records.get(key)
        if not records:
            return None

        rejections = sum(1 for r in records if r.rejected)
        threshold = self.threshold(frame_rate)
        if rejections <= threshold:
            return None

        now = self._monotonic()
        last = self._last_alert.get(key)
        if last is not None and now - last < self._config.check_interval_s:
            return None
        self._last_alert[key] = now

        warning = LossWarning(
            session=key,
            rejections=rejections,
            window=len(records),
            threshold=threshold,
        )
        self._warnings.append(warning)
        logger.warning(f"[{key}] {warning.message}")
        if self._metrics is not None:
            self._metrics.loss_warnings.inc()
        if self._on_warning is not None:
            try:
                self._on_warning(warning)
            except Exception:
                logger.exception(f"[{key}] Loss warning callback failed")
        return warning

    def discard(self, key: SessionKey, record: FlushPromiseRecord) -> None:
        """Remove a write that never settled, e.g. one that was cancelled."""
        records = self._records.get(key)
        if records is None:
            return
        kept = [r for r in records if r is not record]
        self._records[key] = deque(kept, maxlen=records.maxlen)

    def records(self, key: SessionKey) -> list[FlushPromiseRecord]:
        return list(self._records.get(key, ()))

    @property
    def warnings(self) -> list[LossWarning]:
        return list(self._warnings)

    def forget(self, key: SessionKey) -> None:
        self._records.pop(key, None)
        self._last_alert.pop(key, None)

"""
Reliability module: Data loss detection over batch write outcomes.
"""

from posemesh.reliability.loss_detector import (
    FlushPromiseRecord,
    LossDetector,
    LossWarning,
)

__all__ = [
    "FlushPromiseRecord",
    "LossDetector",
    "LossWarning",
]

"""
Core module: Type definitions, error hierarchy, and configuration.

This module provides the foundational abstractions for pose telemetry:
- Result/Either monads for store and reader operations
- Session, frame and batch-key types
- Typed error hierarchy keyed by ErrorCode
- Configuration management with validation
"""

from posemesh.core.types import (
    Result,
    Ok,
    Err,
    Phase,
    Timestamp,
    DayRange,
    SessionKey,
    SessionMetadata,
    FrameRecord,
    make_batch_key,
    parse_batch_key,
)
from posemesh.core.errors import (
    ErrorCode,
    PoseMeshError,
    SessionError,
    WriteError,
    StoreError,
    ConfigError,
)
from posemesh.core.config import (
    FailedFlushPolicy,
    FlushConfig,
    LossDetectorConfig,
    ReaderConfig,
    PathConfig,
    RedisConfig,
    PoseMeshConfig,
)

__all__ = [
    "Result",
    "Ok",
    "Err",
    "Phase",
    "Timestamp",
    "DayRange",
    "SessionKey",
    "SessionMetadata",
    "FrameRecord",
    "make_batch_key",
    "parse_batch_key",
    "ErrorCode",
    "PoseMeshError",
    "SessionError",
    "WriteError",
    "StoreError",
    "ConfigError",
    "FailedFlushPolicy",
    "FlushConfig",
    "LossDetectorConfig",
    "ReaderConfig",
    "PathConfig",
    "RedisConfig",
    "PoseMeshConfig",
]

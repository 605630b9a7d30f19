"""
Error Hierarchy for Pose Telemetry Buffering

Design Principles:
- Store and reader operations return Result types; errors travel as values
- Lifecycle calls raise these errors so explicit callers see failures
- Branching is done on ErrorCode, never on message text

Each error type includes:
- Unique error code for programmatic handling
- Human-readable message for logging
- Optional cause for root cause analysis
- Timestamp for correlation with logs

Usage:
    result = await store.read(path)
    match result:
        case Ok(value):
            process(value)
        case Err(StoreError(code=ErrorCode.STORE_READ_TOO_LARGE)):
            split_and_recurse(path)
        case Err(error):
            raise error
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional
from uuid import uuid4

from posemesh.core.types import Timestamp


# =============================================================================
# ERROR CODE ENUMERATION
# =============================================================================
class ErrorCode(Enum):
    """
    Unique error codes for programmatic error handling.

    Codes are grouped by subsystem:
    - 1xxx: Session errors
    - 2xxx: Write path errors
    - 3xxx: Store / read path errors
    - 9xxx: Configuration and internal errors
    """

    # Session errors (1xxx)
    SESSION_NOT_INITIALIZED = 1001
    SESSION_METADATA_WRITE_FAILED = 1002

    # Write path errors (2xxx)
    WRITE_TRANSIENT_FAILURE = 2001
    WRITE_SERIALIZATION_FAILED = 2002

    # Store errors (3xxx)
    STORE_READ_TOO_LARGE = 3001
    STORE_OPERATION_FAILED = 3002
    STORE_NOT_CONNECTED = 3003
    STORE_INVALID_PATH = 3004

    # Internal errors (9xxx)
    INTERNAL_ERROR = 9001
    CONFIG_INVALID = 9002


# =============================================================================
# BASE ERROR CLASS
# =============================================================================
@dataclass
class PoseMeshError(Exception):
    """
    Base class for all posemesh errors.

    Provides:
    - Unique error ID for log correlation
    - Error code for programmatic handling
    - Cause chain for root cause analysis
    """

    code: ErrorCode
    message: str
    error_id: str = field(default_factory=lambda: str(uuid4()))
    timestamp: Timestamp = field(default_factory=Timestamp.now)
    cause: Optional[BaseException] = None
    context: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        super().__init__(self.message)

    def to_dict(self) -> dict[str, Any]:
        """Serialize error to dictionary for structured logs."""
        return {
            "error_id": self.error_id,
            "code": self.code.name,
            "code_value": self.code.value,
            "message": self.message,
            "timestamp_nanos": self.timestamp.nanos,
            "context": self.context,
        }

    def __str__(self) -> str:
        return f"[{self.code.name}] {self.message} (id={self.error_id[:8]})"

    def __repr__(self) -> str:
        return (
            f"{self.__class__.__name__}("
            f"code={self.code.name}, "
            f"message={self.message!r}, "
            f"error_id={self.error_id!r})"
        )


# =============================================================================
# SESSION ERRORS
# =============================================================================
@dataclass
class SessionError(PoseMeshError):
    """
    Errors raised around the session lifecycle.
    """

    @classmethod
    def not_initialized(cls, session: str, operation: str) -> SessionError:
        """A buffer/flush operation ran against a session never initialized."""
        return cls(
            code=ErrorCode.SESSION_NOT_INITIALIZED,
            message=f"Session {session} not initialized; {operation} skipped",
            context={"session": session, "operation": operation},
        )

    @classmethod
    def metadata_write_failed(
        cls,
        session: str,
        cause: Optional[BaseException] = None,
    ) -> SessionError:
        """The one-time metadata write for a session failed."""
        return cls(
            code=ErrorCode.SESSION_METADATA_WRITE_FAILED,
            message=f"Failed to write metadata for session {session}",
            cause=cause,
            context={"session": session},
        )


# =============================================================================
# WRITE PATH ERRORS
# =============================================================================
@dataclass
class WriteError(PoseMeshError):
    """
    Errors from batch writes of buffered frames.
    """

    @classmethod
    def transient_failure(
        cls,
        path: str,
        frame_count: int,
        cause: Optional[BaseException] = None,
    ) -> WriteError:
        """A batch write was rejected by the store."""
        return cls(
            code=ErrorCode.WRITE_TRANSIENT_FAILURE,
            message=f"Batch write of {frame_count} frames to '{path}' failed",
            cause=cause,
            context={"path": path, "frame_count": frame_count},
        )

    @classmethod
    def serialization_failed(
        cls,
        type_name: str,
        cause: Optional[BaseException] = None,
    ) -> WriteError:
        """A pose payload could not be serialized."""
        return cls(
            code=ErrorCode.WRITE_SERIALIZATION_FAILED,
            message=f"Cannot serialize payload of type {type_name}",
            cause=cause,
            context={"type": type_name},
        )


# =============================================================================
# STORE ERRORS
# =============================================================================
@dataclass
class StoreError(PoseMeshError):
    """
    Errors from the remote hierarchical store adapter.

    The size ceiling is its own code so readers can split on it.
    """

    @property
    def is_too_large(self) -> bool:
        return self.code == ErrorCode.STORE_READ_TOO_LARGE

    @classmethod
    def read_too_large(
        cls,
        path: str,
        size_bytes: int,
        limit_bytes: int,
    ) -> StoreError:
        """Subtree exceeds the store's hard read ceiling."""
        return cls(
            code=ErrorCode.STORE_READ_TOO_LARGE,
            message=f"Subtree at '{path}' exceeds read limit ({size_bytes}B > {limit_bytes}B)",
            context={"path": path, "size_bytes": size_bytes, "limit_bytes": limit_bytes},
        )

    @classmethod
    def operation_failed(
        cls,
        operation: str,
        path: str,
        cause: Optional[BaseException] = None,
    ) -> StoreError:
        """Any other store failure (network, permission, timeout)."""
        detail = f": {cause}" if cause is not None else ""
        return cls(
            code=ErrorCode.STORE_OPERATION_FAILED,
            message=f"Store {operation} failed at '{path}'{detail}",
            cause=cause,
            context={"operation": operation, "path": path},
        )

    @classmethod
    def not_connected(cls, backend: str) -> StoreError:
        return cls(
            code=ErrorCode.STORE_NOT_CONNECTED,
            message=f"Store backend '{backend}' is not connected",
            context={"backend": backend},
        )

    @classmethod
    def invalid_path(cls, path: str, reason: str) -> StoreError:
        return cls(
            code=ErrorCode.STORE_INVALID_PATH,
            message=f"Invalid path '{path}': {reason}",
            context={"path": path, "reason": reason},
        )


# =============================================================================
# CONFIGURATION ERRORS
# =============================================================================
@dataclass
class ConfigError(PoseMeshError):
    """Invalid configuration values."""

    @classmethod
    def invalid(cls, field_name: str, value: Any, reason: str) -> ConfigError:
        return cls(
            code=ErrorCode.CONFIG_INVALID,
            message=f"Invalid configuration '{field_name}'={value!r}: {reason}",
            context={"field": field_name, "value": str(value)[:100], "reason": reason},
        )

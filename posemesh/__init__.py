"""
Pose Telemetry Buffering

Client-side buffering of per-frame motion-tracking telemetry for a remote
hierarchical store:
- Frame Buffer: O(1) non-blocking append from the sampling loop
- Hybrid Flush: size, time and phase-boundary triggers; phase-pure batches
- Loss Detection: sliding-window rejection monitor with debounced warnings
- Recursive Reader: splits reads that exceed the store's size ceiling
- Store Adapters: in-memory (tests, demo) and Redis

Guarantees:
- Batch keys within a session strictly increase
- Every batch holds frames of exactly one phase
- A session's buffer is empty before its state is forgotten
"""

__version__ = "1.0.0"

# =============================================================================
# PUBLIC API EXPORTS
# =============================================================================
from posemesh.core.types import (
    Result,
    Ok,
    Err,
    Phase,
    Timestamp,
    SessionKey,
    SessionMetadata,
    FrameRecord,
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

# Storage exports
from posemesh.storage import (
    TreeStoreProtocol,
    InMemoryTreeStore,
    RedisTreeStore,
    SessionPaths,
)

# Session exports
from posemesh.session import (
    EventPhaseTracker,
    SessionRegistry,
    SessionState,
    DeviceIdentity,
    UserIdentity,
    OrgResolver,
    StaticOrgResolver,
)

# Write path exports
from posemesh.pipeline import FrameBuffer
from posemesh.pipeline.flush import FlushController
from posemesh.pipeline.sink import TelemetrySink
from posemesh.reliability import LossDetector, LossWarning

# Read path exports
from posemesh.reader import RecursiveReader, FetchResult

__all__ = [
    # Core
    "Result",
    "Ok",
    "Err",
    "Phase",
    "Timestamp",
    "SessionKey",
    "SessionMetadata",
    "FrameRecord",
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
    # Storage
    "TreeStoreProtocol",
    "InMemoryTreeStore",
    "RedisTreeStore",
    "SessionPaths",
    # Session
    "EventPhaseTracker",
    "SessionRegistry",
    "SessionState",
    "DeviceIdentity",
    "UserIdentity",
    "OrgResolver",
    "StaticOrgResolver",
    # Write path
    "FrameBuffer",
    "FlushController",
    "TelemetrySink",
    "LossDetector",
    "LossWarning",
    # Read path
    "RecursiveReader",
    "FetchResult",
]

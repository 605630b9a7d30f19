"""
Configuration Management for Pose Telemetry Buffering

Provides validated configuration with sensible defaults.
Supports environment variable overrides.

Design:
- Immutable after construction
- Fail-fast on invalid configuration
- Type-safe with dataclasses
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

from posemesh.core.types import Result, Ok, Err
from posemesh.core.errors import ConfigError
from posemesh.core import constants as C


class FailedFlushPolicy(Enum):
    """What happens to the frames of a rejected batch write."""
    RETAIN = "retain"  # Put back at the head of the buffer for the next trigger
    DROP = "drop"      # Count as lost


@dataclass(frozen=True)
class FlushConfig:
    """Hybrid flush (size / time / phase-boundary) configuration."""

    size_ceiling: int = C.DEFAULT_SIZE_CEILING
    flush_interval_ms: int = C.DEFAULT_FLUSH_INTERVAL_MS
    min_batch_size: int = C.DEFAULT_MIN_BATCH_SIZE
    frame_rate: int = C.DEFAULT_FRAME_RATE
    failed_flush_policy: FailedFlushPolicy = FailedFlushPolicy.RETAIN
    compress_payloads: bool = False
    compress_threshold_bytes: int = C.COMPRESS_THRESHOLD_BYTES

    @property
    def frame_period_s(self) -> float:
        """Sampling period derived from the frame rate."""
        return 1.0 / self.frame_rate

    @property
    def flush_interval_s(self) -> float:
        return self.flush_interval_ms / C.SECOND_MS


@dataclass(frozen=True)
class LossDetectorConfig:
    """Sliding-window data loss detection."""

    check_interval_s: float = C.LOSS_CHECK_INTERVAL_S
    data_loss_threshold_s: float = C.LOSS_THRESHOLD_S


@dataclass(frozen=True)
class ReaderConfig:
    """Recursive split-read configuration."""

    max_depth: int = C.DEFAULT_READ_DEPTH
    child_list_limit: int = C.CHILD_LIST_LIMIT
    concurrency: int = C.READ_CONCURRENCY


@dataclass(frozen=True)
class PathConfig:
    """Roots of the stored hierarchy."""

    telemetry_root: str = C.TELEMETRY_ROOT
    event_root: Optional[str] = C.EVENT_ROOT


@dataclass(frozen=True)
class RedisConfig:
    """
    Redis connection configuration for the tree store adapter.

    Attributes:
        host: Redis server hostname or IP address.
        port: Redis server port (1-65535).
        password: Optional authentication password.
        db: Logical database index.
        namespace: Prefix for every key the adapter writes.
        max_read_bytes: Size ceiling enforced on whole-subtree reads.
        socket_timeout_ms: Socket read/write timeout in milliseconds.
        ssl: Enable TLS encryption for connections.
    """

    host: str = "localhost"
    port: int = 6379
    password: Optional[str] = None
    db: int = 0
    namespace: str = "posemesh"
    max_read_bytes: int = C.DEFAULT_READ_CEILING_BYTES
    socket_timeout_ms: int = 5000
    connect_timeout_ms: int = 2000
    ssl: bool = False

    def __post_init__(self) -> None:
        if not (1 <= self.port <= 65535):
            raise ValueError(f"port must be in [1, 65535], got {self.port}")
        if self.max_read_bytes <= 0:
            raise ValueError(f"max_read_bytes must be > 0, got {self.max_read_bytes}")

    def get_connection_kwargs(self) -> dict[str, Any]:
        """Keyword arguments for redis.asyncio.Redis."""
        return {
            "host": self.host,
            "port": self.port,
            "db": self.db,
            "password": self.password,
            "ssl": self.ssl,
            "socket_timeout": self.socket_timeout_ms / 1000,
            "socket_connect_timeout": self.connect_timeout_ms / 1000,
            "decode_responses": True,
        }


@dataclass(frozen=True)
class PoseMeshConfig:
    """Root configuration."""

    flush: FlushConfig = field(default_factory=FlushConfig)
    loss: LossDetectorConfig = field(default_factory=LossDetectorConfig)
    reader: ReaderConfig = field(default_factory=ReaderConfig)
    paths: PathConfig = field(default_factory=PathConfig)
    redis: RedisConfig = field(default_factory=RedisConfig)

    @classmethod
    def from_env(cls) -> Result[PoseMeshConfig, str]:
        """
        Load configuration from environment variables.

        Environment variables are prefixed with POSEMESH_.
        Example: POSEMESH_SIZE_CEILING, POSEMESH_REDIS_HOST
        """
        try:
            flush = FlushConfig(
                size_ceiling=int(os.getenv("POSEMESH_SIZE_CEILING", str(C.DEFAULT_SIZE_CEILING))),
                flush_interval_ms=int(os.getenv(
                    "POSEMESH_FLUSH_INTERVAL_MS", str(C.DEFAULT_FLUSH_INTERVAL_MS),
                )),
                min_batch_size=int(os.getenv("POSEMESH_MIN_BATCH_SIZE", str(C.DEFAULT_MIN_BATCH_SIZE))),
                frame_rate=int(os.getenv("POSEMESH_FRAME_RATE", str(C.DEFAULT_FRAME_RATE))),
                failed_flush_policy=FailedFlushPolicy(
                    os.getenv("POSEMESH_FAILED_FLUSH_POLICY", FailedFlushPolicy.RETAIN.value)
                ),
                compress_payloads=os.getenv("POSEMESH_COMPRESS", "0").lower() in {"1", "true", "yes"},
            )

            reader = ReaderConfig(
                max_depth=int(os.getenv("POSEMESH_READ_DEPTH", str(C.DEFAULT_READ_DEPTH))),
            )

            paths = PathConfig(
                telemetry_root=os.getenv("POSEMESH_TELEMETRY_ROOT", C.TELEMETRY_ROOT),
                event_root=os.getenv("POSEMESH_EVENT_ROOT", C.EVENT_ROOT) or None,
            )

            redis = RedisConfig(
                host=os.getenv("POSEMESH_REDIS_HOST", "localhost"),
                port=int(os.getenv("POSEMESH_REDIS_PORT", "6379")),
                password=os.getenv("POSEMESH_REDIS_PASSWORD") or None,
                db=int(os.getenv("POSEMESH_REDIS_DB", "0")),
                namespace=os.getenv("POSEMESH_REDIS_NAMESPACE", "posemesh"),
            )

            return Ok(cls(flush=flush, reader=reader, paths=paths, redis=redis))
        except (ValueError, TypeError) as e:
            return Err(f"Configuration error: {e}")

    def validate(self) -> Result[None, ConfigError]:
        """Validate configuration invariants."""
        f = self.flush
        if f.frame_rate <= 0:
            return Err(ConfigError.invalid("frame_rate", f.frame_rate, "must be > 0"))
        if f.size_ceiling <= 0:
            return Err(ConfigError.invalid("size_ceiling", f.size_ceiling, "must be > 0"))
        if f.size_ceiling > C.MAX_FRAMES_PER_BATCH:
            return Err(ConfigError.invalid(
                "size_ceiling", f.size_ceiling,
                f"batch keys hold at most {C.MAX_FRAMES_PER_BATCH} frames",
            ))
        if f.flush_interval_ms <= 0:
            return Err(ConfigError.invalid("flush_interval_ms", f.flush_interval_ms, "must be > 0"))
        if not 0 < f.min_batch_size <= f.size_ceiling:
            return Err(ConfigError.invalid(
                "min_batch_size", f.min_batch_size, "must be in (0, size_ceiling]",
            ))
        if self.loss.check_interval_s <= 0:
            return Err(ConfigError.invalid(
                "check_interval_s", self.loss.check_interval_s, "must be > 0",
            ))
        if self.loss.data_loss_threshold_s < 0:
            return Err(ConfigError.invalid(
                "data_loss_threshold_s", self.loss.data_loss_threshold_s, "must be >= 0",
            ))
        if not 0 <= self.reader.max_depth <= C.MAX_READ_DEPTH:
            return Err(ConfigError.invalid(
                "max_depth", self.reader.max_depth, f"must be in [0, {C.MAX_READ_DEPTH}]",
            ))
        if self.reader.concurrency <= 0:
            return Err(ConfigError.invalid("concurrency", self.reader.concurrency, "must be > 0"))
        return Ok(None)

"""
System-Wide Constants for Pose Telemetry Buffering

All magic numbers and configuration defaults centralized here.
"""

from typing import Final

# =============================================================================
# SIZE AND TIME UNITS
# =============================================================================
KB: Final[int] = 1024
MB: Final[int] = 1024 * KB

SECOND_MS: Final[int] = 1000
NS_PER_MS: Final[int] = 1_000_000

# =============================================================================
# SAMPLING
# =============================================================================
DEFAULT_FRAME_RATE: Final[int] = 12

# =============================================================================
# HYBRID FLUSH
# =============================================================================
DEFAULT_SIZE_CEILING: Final[int] = 50
DEFAULT_FLUSH_INTERVAL_MS: Final[int] = 8 * SECOND_MS
DEFAULT_MIN_BATCH_SIZE: Final[int] = 5

# =============================================================================
# BATCH KEYS
# =============================================================================
BATCH_TIMESTAMP_DIGITS: Final[int] = 15
BATCH_INDEX_DIGITS: Final[int] = 5
MAX_FRAMES_PER_BATCH: Final[int] = 10 ** BATCH_INDEX_DIGITS

# =============================================================================
# LOSS DETECTION
# =============================================================================
LOSS_CHECK_INTERVAL_S: Final[float] = 10.0
LOSS_THRESHOLD_S: Final[float] = 2.0

# =============================================================================
# RECURSIVE READS
# =============================================================================
DEFAULT_READ_DEPTH: Final[int] = 4
MAX_READ_DEPTH: Final[int] = 8
CHILD_LIST_LIMIT: Final[int] = 5000
READ_CONCURRENCY: Final[int] = 8
DEFAULT_READ_CEILING_BYTES: Final[int] = 256 * MB

# =============================================================================
# PATHS
# =============================================================================
TELEMETRY_ROOT: Final[str] = "_PoseData"
EVENT_ROOT: Final[str] = "_GameData"
FRAMES_SEGMENT: Final[str] = "frames"
MAX_SEGMENT_CHARS: Final[int] = 64
DEVICE_ID_PREFIX_CHARS: Final[int] = 8

# =============================================================================
# PAYLOAD COMPRESSION
# =============================================================================
COMPRESS_THRESHOLD_BYTES: Final[int] = 4 * KB
COMPRESSED_PREFIX: Final[str] = "lz4:"

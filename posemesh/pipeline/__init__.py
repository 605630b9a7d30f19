"""
Pipeline module: Frame buffering, hybrid flush and the host-facing sink.

Provides:
- FrameBuffer: phase-segmented FIFO of frames awaiting a write
- encode_payload / decode_payload: pose serialization (numpy, lz4)

FlushController (posemesh.pipeline.flush) and TelemetrySink
(posemesh.pipeline.sink) depend on the session registry and are
exported from the top-level package.
"""

from posemesh.pipeline.buffer import FrameBuffer
from posemesh.pipeline.codec import encode_payload, decode_payload

__all__ = [
    "FrameBuffer",
    "encode_payload",
    "decode_payload",
]

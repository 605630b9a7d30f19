"""
Pose Payload Codec

Turns whatever the pose detector hands over into the string stored in a
frame record's ``pose`` field:

- dicts, lists, scalars and dataclasses -> JSON
- numpy arrays (and numpy scalars) -> nested lists via tolist()
- JSON above the compression threshold -> "lz4:" + base64(lz4 frame)
"""

from __future__ import annotations

import base64
import dataclasses
import json
from typing import Any

import lz4.frame
import numpy as np

from posemesh.core.errors import WriteError
from posemesh.core import constants as C


def _to_jsonable(value: Any) -> Any:
    """json.dumps default hook for numpy and dataclass values."""
    if isinstance(value, (np.ndarray, np.generic)):
        return value.tolist()
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return dataclasses.asdict(value)
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def encode_payload(
    pose: Any,
    compress: bool = False,
    threshold_bytes: int = C.COMPRESS_THRESHOLD_BYTES,
) -> str:
    """
    Serialize a pose to its stored string form.

    Strings are stored as-is, so an already-serialized pose is not
    double-encoded. A string that starts with the compressed prefix is
    JSON-quoted instead so decode_payload gives it back unchanged.

    Raises:
        WriteError: If the pose cannot be represented as JSON
    """
    if isinstance(pose, str) and not pose.startswith(C.COMPRESSED_PREFIX):
        text = pose
    else:
        try:
            text = json.dumps(pose, default=_to_jsonable, separators=(",", ":"))
        except (TypeError, ValueError) as e:
            raise WriteError.serialization_failed(type(pose).__name__, e) from e

    if compress and len(text) > threshold_bytes:
        packed = lz4.frame.compress(text.encode("utf-8"))
        return C.COMPRESSED_PREFIX + base64.b64encode(packed).decode("ascii")
    return text


def decode_payload(stored: str) -> Any:
    """
    Inverse of encode_payload.

    Returns the parsed JSON value; text that is not JSON comes back as-is.
    """
    if stored.startswith(C.COMPRESSED_PREFIX):
        packed = base64.b64decode(stored[len(C.COMPRESSED_PREFIX):])
        stored = lz4.frame.decompress(packed).decode("utf-8")
    try:
        return json.loads(stored)
    except json.JSONDecodeError:
        return stored

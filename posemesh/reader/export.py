"""
Frame Export: JSON dump and flat CSV

Works on trees returned by RecursiveReader. Frames are found wherever a
node has a ``frames`` child whose grandchildren are batch keys:

    .../{recording_id}/frames/{phase}/batch_<ms>_frame_<idx> -> frame record

Event logs flatten to one row per scalar leaf:

    .../{recording_id}/"{phase} Begin GMT" -> GMT string
"""

from __future__ import annotations

import csv
import json
import re
from dataclasses import dataclass
from typing import Any, Iterable, Iterator, Sequence, TextIO, Union

from posemesh.core import constants as C
from posemesh.core.types import parse_batch_key
from posemesh.pipeline.codec import decode_payload
from posemesh.storage.protocols import join_path

CSV_COLUMNS: tuple[str, ...] = (
    "session_path",
    "phase",
    "batch_key",
    "batch_millis",
    "frame_index",
    "utc_time",
    "unix_ms",
    "since_session_start_ms",
    "since_last_frame_ms",
    "pose",
)

EVENT_CSV_COLUMNS: tuple[str, ...] = ("session_path", "event", "value")

MULTI_DEVICE_LABEL = "MULTI_DEVICE"

_FILENAME_UNSAFE = re.compile(r"[^A-Za-z0-9-]")


@dataclass(frozen=True, slots=True)
class FrameRow:
    """One exported frame."""
    session_path: str
    phase: str
    batch_key: str
    batch_millis: int
    frame_index: int
    utc_time: str
    unix_ms: int
    since_session_start_ms: int
    since_last_frame_ms: int
    pose: str

    def as_row(self) -> list[Any]:
        return [getattr(self, column) for column in CSV_COLUMNS]


@dataclass(frozen=True, slots=True)
class EventRow:
    """One event log entry, e.g. a phase marker."""
    session_path: str
    event: str
    value: Any

    def as_row(self) -> list[Any]:
        return [self.session_path, self.event, self.value]


def iter_frame_rows(
    tree: Any,
    base_path: str = "",
    decode: bool = False,
) -> Iterator[FrameRow]:
    """
    Yield every frame under ``tree`` in path, phase and batch-key order.

    With ``decode`` the pose column holds plain JSON even for lz4-packed
    payloads.
    """
    if not isinstance(tree, dict):
        return
    frames = tree.get(C.FRAMES_SEGMENT)
    if isinstance(frames, dict):
        for phase in sorted(frames):
            batches = frames[phase]
            if not isinstance(batches, dict):
                continue
            for batch_key in sorted(batches):
                parsed = parse_batch_key(batch_key)
                record = batches[batch_key]
                if parsed is None or not isinstance(record, dict):
                    continue
                pose = record.get("pose", "")
                if decode and isinstance(pose, str):
                    pose = json.dumps(decode_payload(pose), separators=(",", ":"))
                yield FrameRow(
                    session_path=base_path,
                    phase=phase,
                    batch_key=batch_key,
                    batch_millis=parsed[0],
                    frame_index=parsed[1],
                    utc_time=str(record.get("timestamp", "")),
                    unix_ms=int(record.get("unixTimestamp", 0)),
                    since_session_start_ms=int(record.get("timeSinceGameStart", 0)),
                    since_last_frame_ms=int(record.get("timeSinceLastEvent", 0)),
                    pose=pose,
                )
    for key in sorted(tree):
        if key == C.FRAMES_SEGMENT:
            continue
        yield from iter_frame_rows(tree[key], join_path(base_path, key), decode)


def iter_event_rows(tree: Any, base_path: str = "") -> Iterator[EventRow]:
    """Yield every scalar leaf of an event log tree in path order."""
    if not isinstance(tree, dict):
        return
    for key in sorted(tree):
        value = tree[key]
        if isinstance(value, dict):
            yield from iter_event_rows(value, join_path(base_path, key))
        elif value is not None:
            yield EventRow(session_path=base_path, event=key, value=value)


def write_csv(
    rows: Iterable[Union[FrameRow, EventRow]],
    fp: TextIO,
    columns: Sequence[str] = CSV_COLUMNS,
) -> int:
    """Write rows with a header; returns the number of data rows."""
    writer = csv.writer(fp)
    writer.writerow(columns)
    count = 0
    for row in rows:
        writer.writerow(row.as_row())
        count += 1
    return count


def write_json(tree: Any, fp: TextIO) -> None:
    json.dump(tree, fp, indent=2, sort_keys=True)
    fp.write("\n")


def device_label(day_tree: Any) -> str:
    """
    Label for export file names: the device slug if the tree
    ({date}/{user}/{device}/...) holds one device, else MULTI_DEVICE.
    """
    slugs: set[str] = set()
    if isinstance(day_tree, dict):
        for users in day_tree.values():
            if not isinstance(users, dict):
                continue
            for devices in users.values():
                if isinstance(devices, dict):
                    slugs.update(devices)
    return next(iter(slugs)) if len(slugs) == 1 else MULTI_DEVICE_LABEL


def export_filename(group: str, label: str, kind: str, extension: str) -> str:
    """e.g. ``level_1__ipad-1a2b3c4d__pose_data.csv``"""
    return (
        f"{_FILENAME_UNSAFE.sub('_', group)}__{_FILENAME_UNSAFE.sub('_', label)}"
        f"__{kind}.{extension}"
    )

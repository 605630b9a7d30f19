"""
Reader module: Split reads of oversized subtrees, frame export and
day-range maintenance of a group.
"""

from posemesh.reader.recursive import RecursiveReader, FetchResult
from posemesh.reader.export import (
    FrameRow,
    EventRow,
    iter_frame_rows,
    iter_event_rows,
    write_csv,
    write_json,
    device_label,
    export_filename,
)
from posemesh.reader.group import GroupExport, export_group, remove_day_range

__all__ = [
    "RecursiveReader",
    "FetchResult",
    "FrameRow",
    "EventRow",
    "iter_frame_rows",
    "iter_event_rows",
    "write_csv",
    "write_json",
    "device_label",
    "export_filename",
    "GroupExport",
    "export_group",
    "remove_day_range",
]

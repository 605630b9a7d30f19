"""
Group Exports and Day-Range Removal

A group's data lives in two trees keyed by day bucket:

    {telemetry_root}/{org}/{group}/{YYYY-MM-DD}/...    frames and metadata
    {event_root}/{group}/{YYYY-MM-DD}/...              phase markers

An export reads both trees over the same DayRange so the event log lines
up with the frames it describes. Removal deletes whole day buckets.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from posemesh.core import constants as C
from posemesh.core.errors import StoreError
from posemesh.core.types import DayRange, Err, Ok, Result
from posemesh.reader.export import (
    EVENT_CSV_COLUMNS,
    device_label,
    export_filename,
    iter_event_rows,
    iter_frame_rows,
    write_csv,
    write_json,
)
from posemesh.reader.recursive import FetchResult, RecursiveReader
from posemesh.storage.paths import GroupPaths
from posemesh.storage.protocols import TreeStoreProtocol, join_path

logger = logging.getLogger(__name__)

POSE_DATA = "pose_data"
EVENT_LOG = "event_log"


@dataclass(frozen=True, slots=True)
class GroupExport:
    """Poses and (if configured) the event log of one group over a DayRange."""
    group: str
    paths: GroupPaths
    days: DayRange
    poses: FetchResult
    events: Optional[FetchResult] = None

    @property
    def device_label(self) -> str:
        if self.events is not None and self.events.value:
            return device_label(self.events.value)
        return device_label(self.poses.value)

    @property
    def skipped(self) -> tuple[str, ...]:
        extra = self.events.skipped if self.events is not None else ()
        return self.poses.skipped + extra

    def filename(self, kind: str, extension: str) -> str:
        """e.g. ``level_1__ipad-0f3c9a7e__pose_data_2023_11_14_to_last.csv``"""
        return export_filename(
            self.group, self.device_label, f"{kind}_{self.days.label}", extension,
        )

    def write(self, directory: Path, fmt: str = "json", decode: bool = False) -> list[Path]:
        """
        Write the pose file and, when present, the event log file.

        Returns the paths written.
        """
        directory.mkdir(parents=True, exist_ok=True)
        written: list[Path] = []

        pose_file = directory / self.filename(POSE_DATA, fmt)
        with pose_file.open("w", newline="", encoding="utf-8") as fp:
            if fmt == "csv":
                write_csv(iter_frame_rows(self.poses.value, self.paths.pose_path, decode), fp)
            else:
                write_json(self.poses.value, fp)
        written.append(pose_file)

        if self.events is not None:
            event_file = directory / self.filename(EVENT_LOG, fmt)
            with event_file.open("w", newline="", encoding="utf-8") as fp:
                if fmt == "csv":
                    rows = iter_event_rows(self.events.value, self.paths.event_path or "")
                    write_csv(rows, fp, EVENT_CSV_COLUMNS)
                else:
                    write_json(self.events.value, fp)
            written.append(event_file)

        return written


async def export_group(
    reader: RecursiveReader,
    paths: GroupPaths,
    group: str,
    days: DayRange = DayRange(),
    max_depth: Optional[int] = None,
) -> Result[GroupExport, StoreError]:
    """Read a group's poses and event log over ``days``."""
    if paths.event_path is None:
        poses = await reader.fetch_range(paths.pose_path, days, max_depth)
        if poses.is_err():
            return Err(poses.error)
        return Ok(GroupExport(group=group, paths=paths, days=days, poses=poses.value))

    poses, events = await asyncio.gather(
        reader.fetch_range(paths.pose_path, days, max_depth),
        reader.fetch_range(paths.event_path, days, max_depth),
    )
    if poses.is_err():
        return Err(poses.error)
    if events.is_err():
        return Err(events.error)
    return Ok(GroupExport(
        group=group,
        paths=paths,
        days=days,
        poses=poses.value,
        events=events.value,
    ))


async def remove_day_range(
    store: TreeStoreProtocol,
    paths: GroupPaths,
    days: DayRange,
    include_events: bool = False,
    dry_run: bool = False,
    limit: int = C.CHILD_LIST_LIMIT,
) -> Result[list[str], StoreError]:
    """
    Delete every day bucket inside ``days``.

    Pose buckets always; event log buckets only with ``include_events``.
    Stops at the first failed removal.

    Returns:
        The bucket paths removed (or, with ``dry_run``, that would be).
    """
    roots = [paths.pose_path]
    if include_events and paths.event_path is not None:
        roots.append(paths.event_path)

    targets: list[str] = []
    for root in roots:
        listed = await store.list_child_keys(root, limit)
        if listed.is_err():
            return Err(listed.error)
        targets.extend(join_path(root, day) for day in days.select(listed.value))

    if dry_run:
        return Ok(targets)

    for target in targets:
        result = await store.remove(target)
        if result.is_err():
            logger.error(f"Removing '{target}' failed: {result.error}")
            return Err(result.error)
        logger.info(f"Removed '{target}'")
    return Ok(targets)

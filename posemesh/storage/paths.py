"""
Store Path Layout

Telemetry for one recording lives under:

    {telemetry_root}/{org_id}/{group}/{YYYY-MM-DD}/{user_name}/{device_slug}/
        {login_epoch}/{recording_id}                      <- SessionMetadata
        {login_epoch}/{recording_id}/frames/{phase}/      <- batch keys

and its phase markers under:

    {event_root}/{group}/{YYYY-MM-DD}/{user_name}/{device_slug}/
        {login_epoch}/{recording_id}/"{phase} Begin GMT"

The day buckets directly under a group are what date-range exports and
removals select on.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Optional

from posemesh.core import constants as C
from posemesh.core.config import PathConfig
from posemesh.core.types import SessionKey, SessionMetadata, Timestamp
from posemesh.storage.protocols import join_path

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9._-]")


def sanitize_segment(value: object, fallback: str = "unknown") -> str:
    """Replace characters outside [A-Za-z0-9._-] with '_' and cap the length."""
    cleaned = _UNSAFE_CHARS.sub("_", str(value))[:C.MAX_SEGMENT_CHARS]
    return cleaned or fallback


def device_slug(nickname: str, device_id: str) -> str:
    """``<nickname>-<first 8 chars of device id>``, sanitized."""
    prefix = sanitize_segment(device_id)[:C.DEVICE_ID_PREFIX_CHARS]
    return sanitize_segment(f"{sanitize_segment(nickname)}-{prefix}")


def phase_marker_key(phase: str) -> str:
    return f"{sanitize_segment(phase)} Begin GMT"


@dataclass(frozen=True, slots=True)
class GroupPaths:
    """Roots of one group's day buckets, for poses and phase markers."""

    pose_path: str
    event_path: Optional[str]

    @classmethod
    def build(
        cls,
        org_id: str,
        group_id: str,
        config: PathConfig = PathConfig(),
    ) -> GroupPaths:
        group = sanitize_segment(group_id)
        return cls(
            pose_path=join_path(config.telemetry_root, sanitize_segment(org_id), group),
            event_path=join_path(config.event_root, group) if config.event_root else None,
        )


@dataclass(frozen=True, slots=True)
class SessionPaths:
    """Resolved store paths for one session."""

    metadata_path: str
    event_log_path: Optional[str]

    @classmethod
    def build(
        cls,
        key: SessionKey,
        metadata: SessionMetadata,
        org_id: str,
        group_id: str,
        config: PathConfig = PathConfig(),
        date_source: Optional[Timestamp] = None,
    ) -> SessionPaths:
        """
        Compute paths for a session.

        The date bucket comes from ``date_source`` (defaults to the
        metadata's session start) so every frame of one recording lands
        in one day folder, even across midnight.
        """
        group = GroupPaths.build(org_id, group_id, config)
        bucket = (date_source or metadata.session_start).date_bucket()
        tail = join_path(
            bucket,
            sanitize_segment(metadata.user_name),
            device_slug(metadata.device_nickname, key.device_id),
            str(key.login_epoch),
            sanitize_segment(key.recording_id),
        )
        return cls(
            metadata_path=join_path(group.pose_path, tail),
            event_log_path=join_path(group.event_path, tail) if group.event_path else None,
        )

    def frames_path(self, phase: str) -> str:
        return join_path(self.metadata_path, C.FRAMES_SEGMENT, sanitize_segment(phase))

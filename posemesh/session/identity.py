"""
Identity Collaborators

- DeviceIdentity: stable per-device id and nickname, persisted as JSON
- UserIdentity: authenticated user, name derived from the email
- OrgResolver: async lookup of the organization a user records under
"""

from __future__ import annotations

import json
import logging
import platform
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol, Union, runtime_checkable
from uuid import uuid4

from posemesh.storage.paths import device_slug, sanitize_segment

logger = logging.getLogger(__name__)


# =============================================================================
# DEVICE IDENTITY
# =============================================================================
@dataclass(frozen=True, slots=True)
class DeviceIdentity:
    """Per-device identity that survives restarts."""

    device_id: str
    nickname: str

    @property
    def slug(self) -> str:
        return device_slug(self.nickname, self.device_id)

    @classmethod
    def generate(cls) -> DeviceIdentity:
        return cls(
            device_id=str(uuid4()),
            nickname=sanitize_segment(platform.system() or "device", fallback="device"),
        )

    @classmethod
    def load_or_create(cls, path: Union[str, Path]) -> DeviceIdentity:
        """
        Read the identity file at ``path``, creating it when missing.

        A file that cannot be parsed is replaced. A missing or blank
        nickname is regenerated while the device id is kept.
        """
        path = Path(path)
        stored: dict[str, str] = {}
        if path.exists():
            try:
                loaded = json.loads(path.read_text(encoding="utf-8"))
                if isinstance(loaded, dict):
                    stored = loaded
            except (OSError, json.JSONDecodeError) as e:
                logger.warning(f"Replacing unreadable device identity at {path}: {e}")

        fresh = cls.generate()
        device_id = str(stored.get("device_id") or "").strip() or fresh.device_id
        nickname = str(stored.get("nickname") or "").strip() or fresh.nickname
        identity = cls(device_id=device_id, nickname=sanitize_segment(nickname))

        if stored != identity.to_dict():
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(json.dumps(identity.to_dict(), indent=2), encoding="utf-8")
            logger.info(f"Persisted device identity {identity.slug} to {path}")
        return identity

    def to_dict(self) -> dict[str, str]:
        return {"device_id": self.device_id, "nickname": self.nickname}


# =============================================================================
# USER IDENTITY
# =============================================================================
@dataclass(frozen=True, slots=True)
class UserIdentity:
    """Authenticated user as seen by the telemetry layer."""

    user_id: str
    email: str

    @property
    def user_name(self) -> str:
        """Local part of the email; the user id when there is no email."""
        local = self.email.split("@", 1)[0].strip() if self.email else ""
        return local or self.user_id


# =============================================================================
# ORGANIZATION RESOLUTION
# =============================================================================
@runtime_checkable
class OrgResolver(Protocol):
    """Resolves the organization the current user records under."""

    async def current_org(self) -> str:
        ...


class StaticOrgResolver:
    """OrgResolver returning a fixed organization id."""

    __slots__ = ("_org_id",)

    def __init__(self, org_id: str = "default") -> None:
        self._org_id = org_id

    async def current_org(self) -> str:
        return self._org_id

"""
Session Module: Per-Session State, Phases and Identity

Provides:
- SessionRegistry: per-session state and one-time metadata writes
- EventPhaseTracker: current phase slot (or host-supplied provider)
- DeviceIdentity / UserIdentity / OrgResolver: who and where a session records
"""

from posemesh.session.phase import (
    EventPhaseTracker,
    PhaseTransition,
    PhaseProvider,
)
from posemesh.session.identity import (
    DeviceIdentity,
    UserIdentity,
    OrgResolver,
    StaticOrgResolver,
)
from posemesh.session.registry import (
    SessionRegistry,
    SessionState,
    SessionStats,
)

__all__ = [
    "EventPhaseTracker",
    "PhaseTransition",
    "PhaseProvider",
    "DeviceIdentity",
    "UserIdentity",
    "OrgResolver",
    "StaticOrgResolver",
    "SessionRegistry",
    "SessionState",
    "SessionStats",
]

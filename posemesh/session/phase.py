"""
Event Phase Tracking

Holds the phase tag frames are captured under. The host's game flow
decides when phases change; this module only records the current value
and its transitions. A ``provider`` callable, when supplied, is asked on
every read and takes precedence over the stored slot.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Optional

from posemesh.core.types import Phase, Timestamp

PhaseProvider = Callable[[], Phase]


@dataclass(frozen=True, slots=True)
class PhaseTransition:
    """One observed phase change."""
    previous: Phase
    current: Phase
    at: Timestamp


class EventPhaseTracker:
    """
    Current phase of one session.

    Usage:
        tracker = EventPhaseTracker()
        tracker.set_phase("warmup")
        tracker.get_phase()          # "warmup"

        # Or let the host own the value:
        tracker = EventPhaseTracker(provider=lambda: game.current_level)
    """

    __slots__ = ("_phase", "_provider", "_transitions")

    def __init__(self, provider: Optional[PhaseProvider] = None) -> None:
        self._phase: Phase = None
        self._provider = provider
        self._transitions: list[PhaseTransition] = []

    def set_phase(
        self,
        phase: Phase,
        at: Optional[Timestamp] = None,
    ) -> Optional[PhaseTransition]:
        """
        Store ``phase``. Returns the transition, or None if unchanged.

        An empty string is treated as None.
        """
        phase = phase or None
        previous = self._phase
        if phase == previous:
            return None
        self._phase = phase
        transition = PhaseTransition(previous, phase, at or Timestamp.now())
        self._transitions.append(transition)
        return transition

    def get_phase(self) -> Phase:
        if self._provider is not None:
            return self._provider() or None
        return self._phase

    def set_provider(self, provider: Optional[PhaseProvider]) -> None:
        self._provider = provider

    @property
    def has_provider(self) -> bool:
        return self._provider is not None

    @property
    def transitions(self) -> tuple[PhaseTransition, ...]:
        return tuple(self._transitions)

"""
Shared fixtures for the posemesh test suite.
"""

from __future__ import annotations

from typing import Any, Callable, Optional

import pytest

from posemesh.core import constants as C
from posemesh.core.config import FlushConfig, LossDetectorConfig, PathConfig, PoseMeshConfig
from posemesh.core.types import SessionKey, SessionMetadata, Timestamp
from posemesh.pipeline.sink import TelemetrySink
from posemesh.storage.memory_store import InMemoryTreeStore
from posemesh.storage.protocols import split_path

BASE_MILLIS = 1_700_000_000_000
DEVICE_ID = "0f3c9a7e-1111-2222-3333-444455556666"


def fixed_clock(millis: int = BASE_MILLIS) -> Callable[[], Timestamp]:
    """Clock that never advances; batch keys must still increase."""
    return lambda: Timestamp.from_millis(millis)


def node_at(tree: Any, path: str) -> Any:
    node = tree
    for segment in split_path(path):
        if not isinstance(node, dict) or segment not in node:
            return None
        node = node[segment]
    return node


@pytest.fixture
def session_key() -> SessionKey:
    return SessionKey(
        user_id="user-1",
        device_id=DEVICE_ID,
        login_epoch=1_700_000_000,
        recording_id="rec-1",
    )


@pytest.fixture
def metadata() -> SessionMetadata:
    return SessionMetadata(
        user_id="user-1",
        user_name="ada",
        device_id=DEVICE_ID,
        device_nickname="ipad",
        frame_rate=12,
        login_time="Tue, 14 Nov 2023 22:13:20 GMT",
        session_start=Timestamp.from_millis(BASE_MILLIS),
    )


@pytest.fixture
def store() -> InMemoryTreeStore:
    return InMemoryTreeStore()


@pytest.fixture
def make_sink(store):
    """
    Build a TelemetrySink over the ``store`` fixture.

    Keyword arguments not listed below go to FlushConfig. Phase markers
    are off unless ``events=True`` so held writes never block mark_phase.
    """

    def factory(
        events: bool = False,
        loss: Optional[LossDetectorConfig] = None,
        clock: Optional[Callable[[], Timestamp]] = None,
        monotonic: Optional[Callable[[], float]] = None,
        on_loss_warning: Optional[Callable] = None,
        **flush: Any,
    ) -> TelemetrySink:
        config = PoseMeshConfig(
            flush=FlushConfig(**flush),
            loss=loss or LossDetectorConfig(),
            paths=PathConfig(event_root=C.EVENT_ROOT if events else None),
        )
        return TelemetrySink(
            store,
            config,
            on_loss_warning=on_loss_warning,
            clock=clock or Timestamp.now,
            monotonic=monotonic,
        )

    return factory

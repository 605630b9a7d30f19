"""
Unit Tests: Session Registry, Phase Tracking and Identity

Tests:
    - One-time metadata writes, including concurrent initialize()
    - Phase slot, provider precedence and transitions
    - Device identity persistence
"""

import asyncio
import json

import pytest

from posemesh.core.errors import ErrorCode, SessionError
from posemesh.session import (
    DeviceIdentity,
    EventPhaseTracker,
    OrgResolver,
    SessionRegistry,
    StaticOrgResolver,
    UserIdentity,
)
from posemesh.storage import InMemoryTreeStore, OperationType, SessionPaths


@pytest.fixture
def paths(session_key, metadata) -> SessionPaths:
    return SessionPaths.build(session_key, metadata, "org", "game")


class TestSessionRegistry:
    """Tests for SessionRegistry."""

    @pytest.mark.asyncio
    async def test_initialize_writes_once(self, store, session_key, metadata, paths):
        registry = SessionRegistry(store)
        assert await registry.initialize(session_key, metadata, paths) is True
        assert await registry.initialize(session_key, metadata, paths) is False
        assert store.operation_count(OperationType.WRITE) == 1
        assert registry.is_initialized(session_key)
        stored = (await store.read(paths.metadata_path)).unwrap()
        assert stored["userName"] == "ada"

    @pytest.mark.asyncio
    async def test_concurrent_initialize_shares_one_write(self, session_key, metadata, paths):
        store = InMemoryTreeStore(latency_s=0.01)
        registry = SessionRegistry(store)
        results = await asyncio.gather(
            *(registry.initialize(session_key, metadata, paths) for _ in range(5))
        )
        assert sorted(results) == [False, False, False, False, True]
        assert store.operation_count(OperationType.WRITE) == 1

    @pytest.mark.asyncio
    async def test_forget_allows_fresh_initialize(self, store, session_key, metadata, paths):
        registry = SessionRegistry(store)
        await registry.initialize(session_key, metadata, paths)
        registry.forget(session_key)
        assert session_key not in registry
        assert not registry.is_initialized(session_key)
        assert await registry.initialize(session_key, metadata, paths) is True
        assert registry.is_initialized(session_key)
        assert store.operation_count(OperationType.WRITE) == 2

    @pytest.mark.asyncio
    async def test_metadata_write_failure(self, store, session_key, metadata, paths):
        registry = SessionRegistry(store)
        store.inject_failure(OperationType.WRITE, count=1)
        with pytest.raises(SessionError) as excinfo:
            await registry.initialize(session_key, metadata, paths)
        assert excinfo.value.code is ErrorCode.SESSION_METADATA_WRITE_FAILED
        assert not registry.is_initialized(session_key)
        assert await registry.initialize(session_key, metadata, paths) is True

    def test_state_for_is_lazy(self, store, session_key):
        registry = SessionRegistry(store, default_frame_rate=30)
        assert registry.get(session_key) is None
        state = registry.state_for(session_key)
        assert registry.state_for(session_key) is state
        assert state.frame_rate == 30
        assert not state.initialized
        assert len(registry) == 1

    @pytest.mark.asyncio
    async def test_attach_takes_frame_rate(self, store, session_key, metadata, paths):
        registry = SessionRegistry(store, default_frame_rate=30)
        await registry.initialize(session_key, metadata, paths)
        assert registry.get(session_key).frame_rate == 12

    def test_stats(self, store, session_key):
        stats = SessionRegistry(store).state_for(session_key).stats()
        assert stats.to_dict()["buffered"] == 0
        assert stats.initialized is False


class TestEventPhaseTracker:
    """Tests for EventPhaseTracker."""

    def test_set_and_get(self):
        tracker = EventPhaseTracker()
        assert tracker.get_phase() is None
        transition = tracker.set_phase("warmup")
        assert transition.previous is None
        assert transition.current == "warmup"
        assert tracker.get_phase() == "warmup"

    def test_unchanged_is_none(self):
        tracker = EventPhaseTracker()
        tracker.set_phase("a")
        assert tracker.set_phase("a") is None
        assert len(tracker.transitions) == 1

    def test_empty_string_clears(self):
        tracker = EventPhaseTracker()
        tracker.set_phase("a")
        transition = tracker.set_phase("")
        assert transition.current is None
        assert tracker.get_phase() is None

    def test_provider_wins(self):
        current = {"phase": "level-2"}
        tracker = EventPhaseTracker(provider=lambda: current["phase"])
        tracker.set_phase("ignored")
        assert tracker.get_phase() == "level-2"
        current["phase"] = ""
        assert tracker.get_phase() is None
        tracker.set_provider(None)
        assert tracker.get_phase() == "ignored"
        assert not tracker.has_provider


class TestIdentity:
    """Tests for device and user identity."""

    def test_user_name_from_email(self):
        assert UserIdentity("u1", "ada.l@example.com").user_name == "ada.l"
        assert UserIdentity("u1", "").user_name == "u1"

    def test_generate(self):
        device = DeviceIdentity.generate()
        assert len(device.device_id) == 36
        assert device.nickname
        assert device.slug.endswith(device.device_id[:8])

    def test_load_or_create_persists(self, tmp_path):
        path = tmp_path / "nested" / "device.json"
        first = DeviceIdentity.load_or_create(path)
        second = DeviceIdentity.load_or_create(path)
        assert first == second
        assert json.loads(path.read_text()) == first.to_dict()

    def test_blank_nickname_regenerated(self, tmp_path):
        path = tmp_path / "device.json"
        path.write_text(json.dumps({"device_id": "abc-123", "nickname": "  "}))
        device = DeviceIdentity.load_or_create(path)
        assert device.device_id == "abc-123"
        assert device.nickname.strip()
        assert json.loads(path.read_text())["nickname"] == device.nickname

    def test_corrupt_file_replaced(self, tmp_path):
        path = tmp_path / "device.json"
        path.write_text("{not json")
        device = DeviceIdentity.load_or_create(path)
        assert json.loads(path.read_text())["device_id"] == device.device_id

    @pytest.mark.asyncio
    async def test_static_org_resolver(self):
        resolver = StaticOrgResolver("acme")
        assert isinstance(resolver, OrgResolver)
        assert await resolver.current_org() == "acme"

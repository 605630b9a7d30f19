"""
Telemetry Sink: Host-Facing Facade

Wires the session registry, flush controller, loss detector and store
together behind the handful of calls a capture loop needs.

Usage:
    store = InMemoryTreeStore()
    async with TelemetrySink(store, PoseMeshConfig()) as sink:
        await sink.initialize_session(key, metadata, group_id="level-1")
        sink.start_auto_flush(key)
        sink.start_sampling(key, detector.latest_pose)

        await sink.mark_phase(key, "warmup")
        ...
        await sink.mark_phase(key, None)      # stop recording
        await sink.end_session(key)
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Optional

from posemesh.core.config import PoseMeshConfig
from posemesh.core.errors import ConfigError, WriteError
from posemesh.core.types import Phase, SessionKey, SessionMetadata, Timestamp
from posemesh.observability.logging import log_context
from posemesh.observability.metrics import TelemetryMetrics
from posemesh.pipeline.codec import encode_payload
from posemesh.pipeline.flush import FlushController
from posemesh.reliability.loss_detector import LossDetector, LossWarningCallback
from posemesh.session.identity import OrgResolver, StaticOrgResolver
from posemesh.session.phase import PhaseProvider, PhaseTransition
from posemesh.session.registry import SessionRegistry, SessionStats
from posemesh.storage.paths import SessionPaths, phase_marker_key
from posemesh.storage.protocols import TreeStoreProtocol

logger = logging.getLogger(__name__)

PoseProvider = Callable[[], Any]


class TelemetrySink:
    """
    Facade over the telemetry write path.

    Producer-facing calls (append and the sampler) never raise; lifecycle
    calls (initialize_session, end_session) raise typed errors.
    """

    __slots__ = (
        "_store",
        "_config",
        "_org_resolver",
        "_metrics",
        "_registry",
        "_loss",
        "_controller",
    )

    def __init__(
        self,
        store: TreeStoreProtocol,
        config: PoseMeshConfig = PoseMeshConfig(),
        org_resolver: Optional[OrgResolver] = None,
        metrics: Optional[TelemetryMetrics] = None,
        on_loss_warning: Optional[LossWarningCallback] = None,
        clock: Callable[[], Timestamp] = Timestamp.now,
        monotonic: Optional[Callable[[], float]] = None,
    ) -> None:
        validation = config.validate()
        if validation.is_err():
            raise validation.error

        self._store = store
        self._config = config
        self._org_resolver = org_resolver or StaticOrgResolver()
        self._metrics = metrics or TelemetryMetrics()
        self._registry = SessionRegistry(store, config.flush.frame_rate)
        loss_kwargs = {"monotonic": monotonic} if monotonic is not None else {}
        self._loss = LossDetector(
            config.loss,
            on_warning=on_loss_warning,
            metrics=self._metrics,
            **loss_kwargs,
        )
        self._controller = FlushController(
            self._registry,
            store,
            self._loss,
            config.flush,
            metrics=self._metrics,
            clock=clock,
        )

    # -------------------------------------------------------------------------
    # Accessors
    # -------------------------------------------------------------------------

    @property
    def registry(self) -> SessionRegistry:
        return self._registry

    @property
    def controller(self) -> FlushController:
        return self._controller

    @property
    def loss_detector(self) -> LossDetector:
        return self._loss

    @property
    def metrics(self) -> TelemetryMetrics:
        return self._metrics

    @property
    def store(self) -> TreeStoreProtocol:
        return self._store

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def initialize_session(
        self,
        key: SessionKey,
        metadata: SessionMetadata,
        group_id: str = "default",
        phase_provider: Optional[PhaseProvider] = None,
    ) -> bool:
        """
        Resolve the session's paths and write its metadata once.

        Returns True if this call wrote the metadata.

        Raises:
            ConfigError: metadata.frame_rate is not positive
            SessionError: The metadata write was rejected
        """
        if metadata.frame_rate <= 0:
            raise ConfigError.invalid("frame_rate", metadata.frame_rate, "must be > 0")

        org_id = await self._org_resolver.current_org()
        paths = SessionPaths.build(key, metadata, org_id, group_id, self._config.paths)
        if phase_provider is not None:
            self._registry.state_for(key).phase.set_provider(phase_provider)
        with log_context(session_key=str(key)):
            return await self._registry.initialize(key, metadata, paths)

    async def end_session(self, key: SessionKey) -> None:
        with log_context(session_key=str(key)):
            await self._controller.end_session(key)

    async def close(self) -> None:
        """End every open session."""
        for key in self._registry.keys():
            await self.end_session(key)

    async def __aenter__(self) -> TelemetrySink:
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.close()

    # -------------------------------------------------------------------------
    # Capture
    # -------------------------------------------------------------------------

    def append(self, key: SessionKey, pose: Any) -> bool:
        """
        Serialize and buffer one pose. Returns False when nothing was buffered.
        """
        state = self._registry.get(key)
        if state is not None and state.phase.get_phase() is None:
            return False
        try:
            payload = encode_payload(
                pose,
                compress=self._config.flush.compress_payloads,
                threshold_bytes=self._config.flush.compress_threshold_bytes,
            )
        except WriteError as e:
            logger.warning(f"[{key}] Frame skipped: {e}")
            return False
        return self._controller.append(key, payload)

    def flush(self, key: SessionKey) -> Optional[asyncio.Task]:
        return self._controller.flush(key)

    def start_auto_flush(self, key: SessionKey) -> asyncio.Task:
        return self._controller.start_auto_flush(key)

    async def stop_auto_flush(self, key: SessionKey) -> None:
        await self._controller.stop_auto_flush(key)

    def start_sampling(
        self,
        key: SessionKey,
        pose_provider: PoseProvider,
        frame_rate: Optional[int] = None,
    ) -> asyncio.Task:
        """
        Call ``pose_provider`` every 1/frame_rate seconds and append its
        result. A provider returning None skips that tick.
        """
        state = self._registry.state_for(key)
        if state.sampler_task is not None and not state.sampler_task.done():
            return state.sampler_task
        rate = frame_rate or state.frame_rate
        state.sampler_task = asyncio.create_task(
            self._sample_loop(key, pose_provider, 1.0 / rate),
            name=f"posemesh-sampler-{key}",
        )
        return state.sampler_task

    async def _sample_loop(
        self,
        key: SessionKey,
        pose_provider: PoseProvider,
        period_s: float,
    ) -> None:
        loop = asyncio.get_running_loop()
        next_tick = loop.time()
        while True:
            if self._registry.get(key) is None:
                logger.warning(f"[{key}] Sampler fired for a forgotten session")
                return
            try:
                pose = pose_provider()
            except Exception:
                logger.exception(f"[{key}] Pose provider failed; tick skipped")
                pose = None
            if pose is not None:
                self.append(key, pose)

            next_tick += period_s
            # Skip missed ticks instead of bursting to catch up
            delay = next_tick - loop.time()
            if delay < 0:
                next_tick = loop.time()
                delay = 0
            await asyncio.sleep(delay)

    # -------------------------------------------------------------------------
    # Phases
    # -------------------------------------------------------------------------

    async def mark_phase(self, key: SessionKey, phase: Phase) -> Optional[PhaseTransition]:
        """
        Set the session's phase.

        On a change the boundary trigger is evaluated immediately and, for
        a non-null phase with an event log configured, a
        "<phase> Begin GMT" marker is written. Marker failures are logged.
        """
        state = self._registry.state_for(key)
        transition = state.phase.set_phase(phase, at=Timestamp.now())
        if transition is None:
            return None

        self._controller.force_phase_check(key)

        if transition.current is not None and state.paths is not None:
            event_log = state.paths.event_log_path
            if event_log is not None:
                result = await self._store.patch_children(
                    event_log,
                    {phase_marker_key(transition.current): transition.at.to_gmt_string()},
                )
                if result.is_err():
                    logger.warning(f"[{key}] Phase marker not written: {result.error}")
        return transition

    def current_phase(self, key: SessionKey) -> Phase:
        state = self._registry.get(key)
        return state.phase.get_phase() if state is not None else None

    # -------------------------------------------------------------------------
    # Introspection
    # -------------------------------------------------------------------------

    def buffer_size(self, key: SessionKey) -> int:
        return self._controller.buffer_size(key)

    def stats(self, key: SessionKey) -> Optional[SessionStats]:
        state = self._registry.get(key)
        return state.stats() if state is not None else None

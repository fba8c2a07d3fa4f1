"""Main application entry-point for twin-agent."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import signal
from enum import Enum
from typing import Any, Dict, Optional, Set

from . import constants, health
from .auth import ConnectionString
from .commands import CommandDispatcher
from .config import AgentConfig, require_connection_string
from .core import ManagedRemoteLink, SampleSource, StateDocument
from .health import HealthReporter, HealthServer
from .hub import IotHubLink, LinkError
from .logging import configure_logging
from .sensor import SimulatedEnvironmentSensor
from .telemetry import CadenceController, InvalidCadenceError, TelemetryPublisher
from .telemetry.publisher import Sleeper
from .twin import StateSyncHandler

LOGGER = logging.getLogger(__name__)


class InitialSyncError(RuntimeError):
    """Raised when the first desired-state fetch fails; telemetry never starts."""


class AgentState(str, Enum):
    UNINITIALIZED = "uninitialized"
    SYNCED = "synced"
    RUNNING = "running"
    STOPPED = "stopped"


class TwinAgentApp:
    """Coordinates agent startup and shutdown.

    Startup order is fixed: connect and fetch the twin, seed the cadence,
    subscribe to desired-state changes, register commands, then open the
    telemetry gate. If the first fetch fails the agent stays
    ``UNINITIALIZED`` and nothing is published.

    The link and sample source can be injected for testing.
    """

    def __init__(
        self,
        config: AgentConfig,
        *,
        link: Optional[ManagedRemoteLink] = None,
        source: Optional[SampleSource] = None,
        sleep: Optional[Sleeper] = None,
    ) -> None:
        self._config = config
        if link is None:
            credentials = ConnectionString.parse(require_connection_string(config))
            link = IotHubLink(
                credentials, config.hub, resilience=config.resilience
            )
        self._link: ManagedRemoteLink = link

        self._health = HealthReporter()
        self._health_server: Optional[HealthServer] = None
        self._cadence = CadenceController(config.telemetry.default_refresh_rate_seconds)
        self._publisher = TelemetryPublisher(
            self._link,
            source or SimulatedEnvironmentSensor(config.sensor),
            self._cadence,
            alert_threshold=config.telemetry.temperature_alert_threshold,
            sleep=sleep,
        )
        self._state_sync = StateSyncHandler(
            self._link,
            self._cadence,
            on_report_result=self._on_report_result,
        )
        self._commands = CommandDispatcher.with_defaults(
            response_timeout=config.commands.response_timeout_seconds
        )
        self._health.attach_metrics(self._metrics)
        self._state = AgentState.UNINITIALIZED
        self._shutdown_event: Optional[asyncio.Event] = None
        self._background: Set[asyncio.Task[Any]] = set()

    @property
    def state(self) -> AgentState:
        return self._state

    @property
    def cadence(self) -> CadenceController:
        return self._cadence

    @property
    def publisher(self) -> TelemetryPublisher:
        return self._publisher

    @property
    def state_sync(self) -> StateSyncHandler:
        return self._state_sync

    @property
    def commands(self) -> CommandDispatcher:
        return self._commands

    @property
    def health(self) -> HealthReporter:
        return self._health

    async def run(self) -> None:
        """Start the agent and block until shutdown is requested."""

        self._shutdown_event = asyncio.Event()
        LOGGER.info("%s starting with config: %s", constants.APP_NAME, self._config.path)

        try:
            await self.start()
            await self._shutdown_event.wait()
        except asyncio.CancelledError:
            LOGGER.info("%s received shutdown signal", constants.APP_NAME)
            raise
        finally:
            await self.stop()

    def request_stop(self) -> None:
        if self._shutdown_event is not None:
            self._shutdown_event.set()

    async def start(self) -> None:
        if self._state is not AgentState.UNINITIALIZED:
            raise RuntimeError(f"Agent cannot start from state {self._state.value}")

        document = await self._initial_sync()
        self._seed_cadence(document)
        await self._transition_state(
            AgentState.SYNCED, detail=f"refresh rate {self._cadence.get()}s"
        )
        await self._activate()

    async def stop(self) -> None:
        if self._state is AgentState.STOPPED:
            return

        await self._publisher.stop()
        await self._health.update(health.TELEMETRY, False, "shutdown")

        grace = self._config.resilience.shutdown_grace_seconds
        if self._background:
            await asyncio.wait(set(self._background), timeout=grace)
        await self._link.drain(grace)

        try:
            await self._link.close()
        except LinkError as exc:
            LOGGER.warning("Error closing hub link: %s", exc)
        await self._health.update(health.LINK, False, "shutdown")

        if self._health_server is not None:
            await self._health_server.stop()
            self._health_server = None

        if self._state is not AgentState.UNINITIALIZED:
            await self._transition_state(AgentState.STOPPED, detail="shutdown complete")

    async def report_connectivity(self) -> bool:
        return await self._state_sync.report_connectivity(
            self._config.hub.connectivity_type
        )

    # ------------------------------------------------------------------
    # Startup phases
    # ------------------------------------------------------------------
    async def _initial_sync(self) -> StateDocument:
        await self._health.set_agent_state(
            AgentState.UNINITIALIZED.value, healthy=False, detail="fetching device twin"
        )
        self._link.add_connection_listener(self._on_connection_changed)

        try:
            await self._link.connect()
            document = await self._link.fetch_state()
        except LinkError as exc:
            LOGGER.error(
                "Initial device twin sync failed; telemetry will not start: %s", exc
            )
            await self._health.update(health.LINK, False, str(exc))
            raise InitialSyncError(str(exc)) from exc

        return document

    def _seed_cadence(self, document: StateDocument) -> None:
        value = document.desired.get(constants.REFRESH_RATE_KEY)
        if value is None:
            LOGGER.info(
                "Desired state has no %s; keeping default of %ds",
                constants.REFRESH_RATE_KEY,
                self._cadence.get(),
            )
            return
        try:
            self._cadence.set(value)
        except InvalidCadenceError as exc:
            LOGGER.warning("Ignoring initial refresh rate: %s", exc)

    async def _activate(self) -> None:
        self._link.subscribe(self._state_sync)
        await self._health.update(health.STATE_SYNC, True, None)

        self._commands.attach(self._link)
        await self._health.update(health.COMMANDS, True, ", ".join(self._commands.names))

        self._publisher.mark_ready()
        self._publisher.start()
        await self._health.update(health.TELEMETRY, True, None)

        if self._config.hub.report_connectivity_on_start:
            self._spawn(self.report_connectivity())

        await self._start_health_server()
        await self._transition_state(AgentState.RUNNING, detail="telemetry loop started")

    async def _start_health_server(self) -> None:
        resilience = self._config.resilience
        if not resilience.health_enabled or resilience.health_port <= 0:
            return

        server = HealthServer(self._health, resilience.health_host, resilience.health_port)
        try:
            await server.start()
        except OSError as exc:
            LOGGER.error("Failed to start health endpoint: %s", exc)
            await self._health.update(health.HEALTH_ENDPOINT, False, str(exc))
        else:
            self._health_server = server
            await self._health.update(health.HEALTH_ENDPOINT, True, None)

    # ------------------------------------------------------------------
    # Callbacks
    # ------------------------------------------------------------------
    async def _transition_state(
        self, state: AgentState, *, detail: Optional[str] = None
    ) -> None:
        previous = self._state
        self._state = state
        LOGGER.info(
            "Agent state transition %s -> %s (%s)",
            previous.value,
            state.value,
            detail or state.value,
        )
        await self._health.set_agent_state(
            state.value,
            healthy=state in (AgentState.SYNCED, AgentState.RUNNING),
            detail=detail,
        )

    async def _on_connection_changed(self, connected: bool, detail: Optional[str]) -> None:
        await self._health.update(health.LINK, connected, detail)

    async def _on_report_result(self, source: str, error: Optional[str]) -> None:
        if source == "state-sync":
            await self._health.update(health.STATE_SYNC, error is None, error)

    def _metrics(self) -> Dict[str, Any]:
        last = self._publisher.last_published_at
        return {
            "refreshRateSeconds": self._cadence.get(),
            "telemetryPublished": self._publisher.published_count,
            "telemetryFailed": self._publisher.failed_count,
            "lastTelemetryAt": last.isoformat(timespec="seconds") if last else None,
            "desiredChangesReceived": self._state_sync.changes_received,
            "reportFailures": self._state_sync.report_failures,
            "commandsHandled": self._commands.handled_count,
        }

    def _spawn(self, coro: Any) -> None:
        task = asyncio.ensure_future(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    @classmethod
    def start_service(cls, config: AgentConfig) -> int:
        """Run the agent until SIGINT/SIGTERM. Returns a process exit code."""

        configure_logging(config.logging)
        instance = cls(config)

        async def _main() -> None:
            loop = asyncio.get_running_loop()
            for signum in (signal.SIGINT, signal.SIGTERM):
                with contextlib.suppress(NotImplementedError):
                    loop.add_signal_handler(signum, instance.request_stop)
            await instance.run()

        try:
            asyncio.run(_main())
        except InitialSyncError:
            return 1
        except KeyboardInterrupt:
            LOGGER.info("%s received shutdown signal", constants.APP_NAME)
        return 0

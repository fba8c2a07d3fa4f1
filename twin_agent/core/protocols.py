"""Protocol definitions for the hub link and sample sources."""

from __future__ import annotations

from typing import Any, Awaitable, Callable, Mapping, Optional, Protocol

from .models import (
    CommandInvocation,
    CommandResponse,
    StateDocument,
    TelemetryEvent,
    TelemetrySample,
)

DesiredStateCallback = Callable[[Mapping[str, Any]], Awaitable[None]]
CommandCallback = Callable[[CommandInvocation], Awaitable[CommandResponse]]


class RemoteLink(Protocol):
    """Bidirectional channel to the remote hub."""

    async def publish(self, event: TelemetryEvent) -> None:
        """Send one telemetry event."""
        ...

    def subscribe(self, callback: DesiredStateCallback) -> None:
        """Route every future desired-state change to ``callback``."""
        ...

    def register_command_handler(self, name: str, handler: CommandCallback) -> None:
        """Route invocations of command ``name`` to ``handler``."""
        ...

    async def report_state(self, patch: Mapping[str, Any]) -> None:
        """Merge ``patch`` into the reported state document."""
        ...

    async def fetch_state(self) -> StateDocument:
        """Retrieve the full twin document."""
        ...


class SampleSource(Protocol):
    def read(self) -> TelemetrySample: ...


class ManagedRemoteLink(RemoteLink, Protocol):
    """RemoteLink with the lifecycle hooks the agent drives."""

    async def connect(self) -> None: ...

    async def close(self) -> None: ...

    async def drain(self, timeout: float) -> None:
        """Wait for in-flight handler invocations to finish."""
        ...

    def add_connection_listener(
        self, listener: Callable[[bool, Optional[str]], Awaitable[None] | None]
    ) -> None: ...

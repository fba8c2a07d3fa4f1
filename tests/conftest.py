import asyncio
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Set

import pytest

from twin_agent.core import (
    CommandInvocation,
    CommandResponse,
    StateDocument,
    TelemetryEvent,
    TelemetrySample,
)
from twin_agent.hub import PublishError


class FakeLink:
    """In-memory hub link recording every call made by the agent."""

    def __init__(self, *, twin: Optional[Dict[str, Any]] = None) -> None:
        self.twin = twin if twin is not None else {"desired": {}, "reported": {}}
        self.calls: List[str] = []
        self.published: List[TelemetryEvent] = []
        self.reports: List[Dict[str, Any]] = []
        self.desired_callbacks: List[Callable[[Mapping[str, Any]], Awaitable[Any]]] = []
        self.command_handlers: Dict[str, Any] = {}
        self.connection_listeners: List[Any] = []
        self.fetch_error: Optional[Exception] = None
        self.report_error: Optional[Exception] = None
        self.report_gate: Optional[asyncio.Event] = None
        self.tasks: Set[asyncio.Task[Any]] = set()
        self.publish_failures = 0
        self.closed = False
        self.drained = False

    async def connect(self) -> None:
        self.calls.append("connect")
        for listener in self.connection_listeners:
            await listener(True, None)

    async def close(self) -> None:
        self.calls.append("close")
        self.closed = True

    async def drain(self, timeout: float) -> None:
        self.drained = True
        pending = [task for task in self.tasks if not task.done()]
        if pending:
            _, late = await asyncio.wait(pending, timeout=timeout)
            for task in late:
                task.cancel()

    def add_connection_listener(self, listener) -> None:
        self.connection_listeners.append(listener)

    async def fetch_state(self) -> StateDocument:
        self.calls.append("fetch_state")
        if self.fetch_error is not None:
            raise self.fetch_error
        return StateDocument.from_twin(self.twin)

    async def publish(self, event: TelemetryEvent) -> None:
        if self.publish_failures > 0:
            self.publish_failures -= 1
            raise PublishError("broker unavailable")
        self.calls.append("publish")
        self.published.append(event)

    def subscribe(self, callback) -> None:
        self.calls.append("subscribe")
        self.desired_callbacks.append(callback)

    def register_command_handler(self, name: str, handler) -> None:
        self.calls.append(f"register:{name}")
        self.command_handlers[name] = handler

    async def report_state(self, patch: Mapping[str, Any]) -> None:
        if self.report_gate is not None:
            await self.report_gate.wait()
        if self.report_error is not None:
            raise self.report_error
        self.calls.append("report")
        self.reports.append(dict(patch))

    # test helpers ---------------------------------------------------
    def dispatch(self, change: Mapping[str, Any]) -> None:
        """Deliver ``change`` as a background task, the way the hub link does."""
        for callback in self.desired_callbacks:
            task = asyncio.ensure_future(callback(change))
            self.tasks.add(task)
            task.add_done_callback(self.tasks.discard)

    async def deliver(self, change: Mapping[str, Any]) -> List[Any]:
        return [await callback(change) for callback in self.desired_callbacks]

    async def invoke(self, name: str, payload: bytes = b"") -> CommandResponse:
        handler = self.command_handlers[name]
        return await handler(CommandInvocation(name=name, payload=payload))

    async def wait_for_published(self, count: int, timeout: float = 1.0) -> None:
        async def _poll() -> None:
            while len(self.published) < count:
                await asyncio.sleep(0)

        await asyncio.wait_for(_poll(), timeout=timeout)


class RecordingSleep:
    """Stands in for ``asyncio.sleep`` in the publish loop.

    Records each requested delay and returns immediately for the first
    ``limit`` calls, then blocks until the loop is stopped.
    """

    def __init__(self, limit: int = 1000) -> None:
        self.delays: List[float] = []
        self.limit = limit
        self.on_sleep: Optional[Callable[[int], None]] = None

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)
        if self.on_sleep is not None:
            self.on_sleep(len(self.delays))
        if len(self.delays) >= self.limit:
            await asyncio.Event().wait()
        await asyncio.sleep(0)


class FixedSource:
    def __init__(self, temperature: float = 25.0, humidity: float = 70.0) -> None:
        self.temperature = temperature
        self.humidity = humidity
        self.reads = 0

    def read(self) -> TelemetrySample:
        self.reads += 1
        return TelemetrySample(temperature=self.temperature, humidity=self.humidity)


@pytest.fixture
def fake_link() -> FakeLink:
    return FakeLink()


@pytest.fixture
def recording_sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def fixed_source() -> FixedSource:
    return FixedSource()

"""Agent health: component status, lifecycle state and counters.

``/healthz`` answers 200 while every component is healthy and the agent is
SYNCED or RUNNING, 503 otherwise. The body carries the per-component
detail plus whatever counters the agent registered as metrics.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Mapping, Optional

from aiohttp import web

LOGGER = logging.getLogger(__name__)

LINK = "link"
TELEMETRY = "telemetry"
STATE_SYNC = "state-sync"
COMMANDS = "commands"
HEALTH_ENDPOINT = "health-endpoint"

MetricsProvider = Callable[[], Mapping[str, Any]]


def _isoformat(moment: datetime) -> str:
    return moment.isoformat(timespec="seconds")


@dataclass(slots=True)
class ComponentStatus:
    healthy: bool
    detail: Optional[str] = None
    since: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class HealthReporter:
    def __init__(self) -> None:
        self._components: Dict[str, ComponentStatus] = {}
        self._agent_state = "uninitialized"
        self._agent_status = ComponentStatus(healthy=False)
        self._metrics: Optional[MetricsProvider] = None
        self._lock = asyncio.Lock()

    @property
    def agent_state(self) -> str:
        return self._agent_state

    def attach_metrics(self, provider: MetricsProvider) -> None:
        self._metrics = provider

    async def update(
        self, name: str, healthy: bool, detail: Optional[str] = None
    ) -> None:
        async with self._lock:
            current = self._components.get(name)
            if current is not None and current.healthy != healthy:
                LOGGER.info(
                    "Component %s is now %s%s",
                    name,
                    "healthy" if healthy else "unhealthy",
                    f" ({detail})" if detail else "",
                )
            self._components[name] = ComponentStatus(healthy=healthy, detail=detail)

    async def set_agent_state(
        self, state: str, *, healthy: bool, detail: Optional[str] = None
    ) -> None:
        async with self._lock:
            self._agent_state = state
            self._agent_status = ComponentStatus(healthy=healthy, detail=detail)

    async def snapshot(self) -> Dict[str, object]:
        async with self._lock:
            components = [
                {
                    "name": name,
                    "healthy": status.healthy,
                    "detail": status.detail,
                    "updatedAt": _isoformat(status.since),
                }
                for name, status in self._components.items()
            ]
            agent = self._agent_status
            state = self._agent_state

        healthy = agent.healthy and all(item["healthy"] for item in components)
        payload: Dict[str, object] = {
            "status": "ok" if healthy else "degraded",
            "agentState": {
                "state": state,
                "healthy": agent.healthy,
                "detail": agent.detail,
                "updatedAt": _isoformat(agent.since),
            },
            "components": components,
        }

        if self._metrics is not None:
            try:
                payload["metrics"] = dict(self._metrics())
            except Exception:
                LOGGER.exception("Metrics provider failed")
        return payload


class HealthServer:
    """Serves the reporter's snapshot on ``GET /healthz``."""

    def __init__(self, reporter: HealthReporter, host: str, port: int) -> None:
        self._reporter = reporter
        self._host = host
        self._port = port
        self._runner: Optional[web.AppRunner] = None

    async def start(self) -> None:
        app = web.Application()
        app.router.add_get("/healthz", self._handle_health)

        runner = web.AppRunner(app, access_log=None)
        await runner.setup()
        try:
            await web.TCPSite(runner, self._host, self._port).start()
        except OSError:
            await runner.cleanup()
            raise
        self._runner = runner
        LOGGER.info(
            "Health endpoint listening on http://%s:%s/healthz", self._host, self._port
        )

    async def stop(self) -> None:
        runner, self._runner = self._runner, None
        if runner is None:
            return
        with contextlib.suppress(RuntimeError):
            await runner.cleanup()

    async def _handle_health(self, request: web.Request) -> web.Response:
        snapshot = await self._reporter.snapshot()
        return web.json_response(
            snapshot, status=200 if snapshot["status"] == "ok" else 503
        )

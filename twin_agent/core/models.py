"""Domain models for telemetry, device state and commands."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Mapping


@dataclass(frozen=True, slots=True)
class StateDocument:
    """Snapshot of the device twin.

    ``desired`` is owned by the hub and only read by the agent; ``reported``
    is what the agent last pushed and is kept for diagnostics only.
    """

    desired: Mapping[str, Any] = field(default_factory=dict)
    reported: Mapping[str, Any] = field(default_factory=dict)

    @classmethod
    def from_twin(cls, document: Mapping[str, Any]) -> "StateDocument":
        desired = document.get("desired")
        reported = document.get("reported")
        return cls(
            desired=dict(desired) if isinstance(desired, Mapping) else {},
            reported=dict(reported) if isinstance(reported, Mapping) else {},
        )


@dataclass(frozen=True, slots=True)
class TelemetrySample:
    temperature: float
    humidity: float
    observed_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass(frozen=True, slots=True)
class TelemetryEvent:
    body: bytes
    properties: Dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class CommandInvocation:
    name: str
    payload: bytes = b""


@dataclass(frozen=True, slots=True)
class CommandResponse:
    payload: bytes = b""
    status_code: int = 200

"""Core primitives for twin-agent."""

from .models import (
    CommandInvocation,
    CommandResponse,
    StateDocument,
    TelemetryEvent,
    TelemetrySample,
)
from .protocols import (
    CommandCallback,
    DesiredStateCallback,
    ManagedRemoteLink,
    RemoteLink,
    SampleSource,
)
from .utils import utc_timestamp

__all__ = [
    "CommandCallback",
    "CommandInvocation",
    "CommandResponse",
    "DesiredStateCallback",
    "ManagedRemoteLink",
    "RemoteLink",
    "SampleSource",
    "StateDocument",
    "TelemetryEvent",
    "TelemetrySample",
    "utc_timestamp",
]

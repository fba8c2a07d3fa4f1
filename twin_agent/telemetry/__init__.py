"""Telemetry cadence and publishing."""

from .cadence import CadenceController, InvalidCadenceError, coerce_cadence
from .publisher import TelemetryPublisher, build_event

__all__ = [
    "CadenceController",
    "InvalidCadenceError",
    "TelemetryPublisher",
    "build_event",
    "coerce_cadence",
]

"""Adapter modules for external integrations."""

from .mqtt import MQTTClient, MQTTConnectionError, MQTTSettings

__all__ = [
    "MQTTClient",
    "MQTTConnectionError",
    "MQTTSettings",
]

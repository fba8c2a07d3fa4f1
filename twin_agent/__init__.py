"""twin-agent: a telemetry device kept in step with its device twin."""

__version__ = "0.1.0"

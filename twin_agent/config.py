"""Configuration loader for twin-agent."""

from __future__ import annotations

import os
from configparser import ConfigParser, Error as ConfigParserError
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional

from . import constants


class ConfigurationError(RuntimeError):
    """Raised when a required configuration value is missing or malformed."""


@dataclass(slots=True)
class HubConfig:
    connection_string: Optional[str] = None
    broker_port: int = constants.DEFAULT_BROKER_PORT
    api_version: str = constants.DEFAULT_API_VERSION
    sas_ttl_seconds: int = 3600
    request_timeout_seconds: float = 30.0
    keepalive_seconds: int = 60
    connectivity_type: str = "cellular"
    report_connectivity_on_start: bool = False


@dataclass(slots=True)
class TelemetryConfig:
    default_refresh_rate_seconds: int = constants.DEFAULT_REFRESH_RATE_SECONDS
    temperature_alert_threshold: float = constants.DEFAULT_TEMPERATURE_ALERT_THRESHOLD


@dataclass(slots=True)
class SensorConfig:
    min_temperature: float = 20.0
    temperature_span: float = 15.0
    min_humidity: float = 60.0
    humidity_span: float = 20.0
    seed: Optional[int] = None


@dataclass(slots=True)
class CommandConfig:
    response_timeout_seconds: float = 30.0


@dataclass(slots=True)
class LoggingConfig:
    level: str = "INFO"
    path: Optional[Path] = None
    log_network: bool = False


@dataclass(slots=True)
class ResilienceConfig:
    connect_timeout_seconds: float = 30.0
    reconnect_initial_seconds: float = 1.0
    reconnect_max_seconds: float = 30.0
    reconnect_jitter_ratio: float = 0.5
    shutdown_grace_seconds: float = 10.0
    health_enabled: bool = False
    health_host: str = "127.0.0.1"
    health_port: int = 0


@dataclass(slots=True)
class AgentConfig:
    hub: HubConfig
    telemetry: TelemetryConfig
    sensor: SensorConfig
    commands: CommandConfig
    logging: LoggingConfig
    resilience: ResilienceConfig
    raw: ConfigParser
    path: Path


def load_config(
    path: Optional[Path] = None, *, environ: Optional[Mapping[str, str]] = None
) -> AgentConfig:
    """Load configuration from disk, applying defaults where necessary.

    The device connection string may come from the ``[hub]`` section or from
    the ``DEVICE_CONNECTION_STRING`` environment variable; the environment
    wins when both are present.
    """

    config_path = path or constants.DEFAULT_CONFIG_PATH
    env = os.environ if environ is None else environ
    try:
        return _read_config(config_path, env)
    except (ConfigParserError, ValueError) as exc:
        raise ConfigurationError(f"Invalid configuration in {config_path}: {exc}") from exc


def _read_config(config_path: Path, env: Mapping[str, str]) -> AgentConfig:
    parser = ConfigParser(interpolation=None)
    parser.read_dict(
        {
            "hub": {
                "broker_port": str(constants.DEFAULT_BROKER_PORT),
                "api_version": constants.DEFAULT_API_VERSION,
                "sas_ttl_seconds": "3600",
                "request_timeout_seconds": "30.0",
                "keepalive_seconds": "60",
                "connectivity_type": "cellular",
                "report_connectivity_on_start": "false",
            },
            "telemetry": {
                "default_refresh_rate_seconds": str(
                    constants.DEFAULT_REFRESH_RATE_SECONDS
                ),
                "temperature_alert_threshold": str(
                    constants.DEFAULT_TEMPERATURE_ALERT_THRESHOLD
                ),
            },
            "sensor": {
                "min_temperature": "20.0",
                "temperature_span": "15.0",
                "min_humidity": "60.0",
                "humidity_span": "20.0",
            },
            "commands": {
                "response_timeout_seconds": "30.0",
            },
            "logging": {
                "level": "INFO",
                "log_network": "false",
            },
            "resilience": {
                "connect_timeout_seconds": "30.0",
                "reconnect_initial_seconds": "1.0",
                "reconnect_max_seconds": "30.0",
                "reconnect_jitter_ratio": "0.5",
                "shutdown_grace_seconds": "10.0",
                "health_enabled": "false",
                "health_host": "127.0.0.1",
                "health_port": "0",
            },
        }
    )

    if config_path.exists():
        parser.read(config_path)

    connection_string = env.get(constants.CONNECTION_STRING_ENV) or parser.get(
        "hub", "connection_string", fallback=None
    )

    hub = HubConfig(
        connection_string=connection_string.strip() if connection_string else None,
        broker_port=parser.getint(
            "hub", "broker_port", fallback=constants.DEFAULT_BROKER_PORT
        ),
        api_version=parser.get(
            "hub", "api_version", fallback=constants.DEFAULT_API_VERSION
        ),
        sas_ttl_seconds=max(
            60, parser.getint("hub", "sas_ttl_seconds", fallback=3600)
        ),
        request_timeout_seconds=max(
            1.0, parser.getfloat("hub", "request_timeout_seconds", fallback=30.0)
        ),
        keepalive_seconds=max(
            5, parser.getint("hub", "keepalive_seconds", fallback=60)
        ),
        connectivity_type=parser.get("hub", "connectivity_type", fallback="cellular"),
        report_connectivity_on_start=parser.getboolean(
            "hub", "report_connectivity_on_start", fallback=False
        ),
    )

    telemetry_defaults = TelemetryConfig()
    try:
        refresh_rate = parser.getint(
            "telemetry",
            "default_refresh_rate_seconds",
            fallback=telemetry_defaults.default_refresh_rate_seconds,
        )
    except ValueError:
        refresh_rate = telemetry_defaults.default_refresh_rate_seconds
    if refresh_rate <= 0:
        refresh_rate = telemetry_defaults.default_refresh_rate_seconds

    telemetry = TelemetryConfig(
        default_refresh_rate_seconds=refresh_rate,
        temperature_alert_threshold=parser.getfloat(
            "telemetry",
            "temperature_alert_threshold",
            fallback=telemetry_defaults.temperature_alert_threshold,
        ),
    )

    seed_value = parser.get("sensor", "seed", fallback="").strip()
    sensor = SensorConfig(
        min_temperature=parser.getfloat("sensor", "min_temperature", fallback=20.0),
        temperature_span=max(
            0.0, parser.getfloat("sensor", "temperature_span", fallback=15.0)
        ),
        min_humidity=parser.getfloat("sensor", "min_humidity", fallback=60.0),
        humidity_span=max(
            0.0, parser.getfloat("sensor", "humidity_span", fallback=20.0)
        ),
        seed=int(seed_value) if seed_value else None,
    )

    commands = CommandConfig(
        response_timeout_seconds=max(
            0.1,
            parser.getfloat("commands", "response_timeout_seconds", fallback=30.0),
        ),
    )

    log_path_value = parser.get("logging", "path", fallback="").strip()
    logging_config = LoggingConfig(
        level=parser.get("logging", "level", fallback="INFO"),
        path=Path(log_path_value).expanduser() if log_path_value else None,
        log_network=parser.getboolean("logging", "log_network", fallback=False),
    )

    resilience = ResilienceConfig(
        connect_timeout_seconds=max(
            1.0,
            parser.getfloat("resilience", "connect_timeout_seconds", fallback=30.0),
        ),
        reconnect_initial_seconds=max(
            0.1,
            parser.getfloat("resilience", "reconnect_initial_seconds", fallback=1.0),
        ),
        reconnect_max_seconds=max(
            0.1,
            parser.getfloat("resilience", "reconnect_max_seconds", fallback=30.0),
        ),
        reconnect_jitter_ratio=max(
            0.0,
            min(
                1.0,
                parser.getfloat("resilience", "reconnect_jitter_ratio", fallback=0.5),
            ),
        ),
        shutdown_grace_seconds=max(
            0.0,
            parser.getfloat("resilience", "shutdown_grace_seconds", fallback=10.0),
        ),
        health_enabled=parser.getboolean(
            "resilience", "health_enabled", fallback=False
        ),
        health_host=parser.get("resilience", "health_host", fallback="127.0.0.1"),
        health_port=parser.getint("resilience", "health_port", fallback=0),
    )

    return AgentConfig(
        hub=hub,
        telemetry=telemetry,
        sensor=sensor,
        commands=commands,
        logging=logging_config,
        resilience=resilience,
        raw=parser,
        path=config_path,
    )


def require_connection_string(config: AgentConfig) -> str:
    """Return the device connection string or fail before anything starts."""

    value = config.hub.connection_string
    if not value:
        raise ConfigurationError(
            f"The {constants.CONNECTION_STRING_ENV} environment variable is missing"
        )
    return value

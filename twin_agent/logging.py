"""Log setup for the agent process.

Every module logs under ``twin_agent.*``. The paho client's own chatter is
routed to ``twin_agent.adapters.mqtt.paho`` and, together with the aiohttp
access log of the health endpoint, counts as wire traffic: it is held at
WARNING unless ``[logging] log_network`` is enabled.
"""

from __future__ import annotations

import logging

from .config import LoggingConfig

LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"

WIRE_LOGGERS = ("paho", "twin_agent.adapters.mqtt.paho", "aiohttp.access")


def configure_logging(settings: LoggingConfig) -> None:
    """Install console (and optionally file) handlers on the root logger.

    Existing root handlers are replaced, so calling this twice does not
    duplicate output.
    """

    logging.captureWarnings(True)

    root = logging.getLogger()
    for handler in list(root.handlers):
        root.removeHandler(handler)

    level = getattr(logging, settings.level.upper(), logging.INFO)
    logging.basicConfig(level=level, format=LOG_FORMAT)

    if settings.path:
        settings.path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(settings.path)
        file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
        root.addHandler(file_handler)

    wire_level = logging.NOTSET if settings.log_network else logging.WARNING
    for name in WIRE_LOGGERS:
        logging.getLogger(name).setLevel(wire_level)

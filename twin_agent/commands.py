"""Direct method handling for twin-agent."""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Awaitable, Callable, Dict, Optional

from . import constants
from .core import CommandInvocation, CommandResponse, RemoteLink

LOGGER = logging.getLogger(__name__)

CommandHandlerFunc = Callable[[CommandInvocation], Awaitable[CommandResponse]]


class CommandConfigurationError(RuntimeError):
    """Raised when a command handler cannot be registered."""


def _error_response(status_code: int, message: str) -> CommandResponse:
    return CommandResponse(
        payload=json.dumps({"message": message}).encode("utf-8"),
        status_code=status_code,
    )


async def update_firmware(invocation: CommandInvocation) -> CommandResponse:
    """Acknowledge a firmware update request.

    The sample device has nothing to flash, so the request is only logged.
    """
    LOGGER.info(
        "Method %s handled with body %s",
        invocation.name,
        invocation.payload.decode("utf-8", errors="replace") or "<empty>",
    )
    return CommandResponse(payload=b"", status_code=200)


class CommandDispatcher:
    """Routes command invocations to handlers by name.

    Handlers run with a time limit and never share state with the telemetry
    loop; a handler that raises or overruns yields an error response instead
    of propagating.
    """

    def __init__(self, *, response_timeout: float = 30.0) -> None:
        self._response_timeout = response_timeout
        self._handlers: Dict[str, CommandHandlerFunc] = {}
        self.handled_count = 0

    @classmethod
    def with_defaults(cls, *, response_timeout: float = 30.0) -> "CommandDispatcher":
        dispatcher = cls(response_timeout=response_timeout)
        dispatcher.register(constants.UPDATE_FIRMWARE_COMMAND, update_firmware)
        return dispatcher

    @property
    def names(self) -> list[str]:
        return sorted(self._handlers)

    def register(self, name: str, handler: CommandHandlerFunc) -> None:
        if not name:
            raise CommandConfigurationError("Command name cannot be empty")
        if name in self._handlers:
            raise CommandConfigurationError(f"Command {name!r} already registered")
        self._handlers[name] = handler

    def attach(self, link: RemoteLink) -> None:
        for name in self._handlers:
            link.register_command_handler(name, self.dispatch)
        LOGGER.info("Registered command handlers: %s", ", ".join(self.names))

    async def dispatch(self, invocation: CommandInvocation) -> CommandResponse:
        self.handled_count += 1
        handler: Optional[CommandHandlerFunc] = self._handlers.get(invocation.name)
        if handler is None:
            LOGGER.warning("Unknown command %s", invocation.name)
            return _error_response(501, "method not implemented")

        try:
            response = await asyncio.wait_for(
                handler(invocation), timeout=self._response_timeout
            )
        except asyncio.TimeoutError:
            LOGGER.error(
                "Command %s did not complete within %.1fs",
                invocation.name,
                self._response_timeout,
            )
            return _error_response(504, "command timed out")
        except Exception as exc:
            LOGGER.exception("Command %s failed", invocation.name)
            return _error_response(500, str(exc) or exc.__class__.__name__)

        LOGGER.info(
            "Command %s completed with status %d", invocation.name, response.status_code
        )
        return response

"""Tests for the command dispatcher."""

import asyncio
import json

import pytest

from twin_agent.commands import CommandConfigurationError, CommandDispatcher
from twin_agent.core import CommandInvocation, CommandResponse


@pytest.mark.asyncio
async def test_update_firmware_returns_empty_success():
    dispatcher = CommandDispatcher.with_defaults()

    response = await dispatcher.dispatch(
        CommandInvocation(name="UpdateFirmware", payload=b'{"version": "1.2"}')
    )

    assert response == CommandResponse(payload=b"", status_code=200)
    assert dispatcher.handled_count == 1


@pytest.mark.asyncio
async def test_unknown_command_is_not_implemented():
    dispatcher = CommandDispatcher.with_defaults()

    response = await dispatcher.dispatch(CommandInvocation(name="Reboot"))

    assert response.status_code == 501
    assert json.loads(response.payload) == {"message": "method not implemented"}


@pytest.mark.asyncio
async def test_slow_handler_times_out():
    dispatcher = CommandDispatcher(response_timeout=0.05)

    async def slow(invocation: CommandInvocation) -> CommandResponse:
        await asyncio.sleep(5)
        return CommandResponse()

    dispatcher.register("Slow", slow)

    response = await dispatcher.dispatch(CommandInvocation(name="Slow"))

    assert response.status_code == 504


@pytest.mark.asyncio
async def test_failing_handler_returns_server_error():
    dispatcher = CommandDispatcher()

    async def broken(invocation: CommandInvocation) -> CommandResponse:
        raise ValueError("bad payload")

    dispatcher.register("Broken", broken)

    response = await dispatcher.dispatch(CommandInvocation(name="Broken"))

    assert response.status_code == 500
    assert json.loads(response.payload) == {"message": "bad payload"}


def test_register_rejects_duplicates_and_empty_names():
    dispatcher = CommandDispatcher.with_defaults()

    async def handler(invocation: CommandInvocation) -> CommandResponse:
        return CommandResponse()

    with pytest.raises(CommandConfigurationError):
        dispatcher.register("UpdateFirmware", handler)
    with pytest.raises(CommandConfigurationError):
        dispatcher.register("", handler)


@pytest.mark.asyncio
async def test_attach_registers_with_link(fake_link):
    dispatcher = CommandDispatcher.with_defaults()

    dispatcher.attach(fake_link)

    assert fake_link.calls == ["register:UpdateFirmware"]
    response = await fake_link.invoke("UpdateFirmware")
    assert response.status_code == 200

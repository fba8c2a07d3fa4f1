"""Tests for agent startup, runtime and shutdown."""

import asyncio
from pathlib import Path

import pytest

from twin_agent.app import AgentState, InitialSyncError, TwinAgentApp
from twin_agent.config import AgentConfig, ConfigurationError, load_config
from twin_agent.hub import ReportStateError, StateFetchError


def _config(tmp_path: Path, body: str = "") -> AgentConfig:
    path = tmp_path / "twin-agent.cfg"
    path.write_text(body)
    return load_config(path, environ={})


def _app(tmp_path, link, source, sleep, body: str = "") -> TwinAgentApp:
    return TwinAgentApp(_config(tmp_path, body), link=link, source=source, sleep=sleep)


def test_missing_connection_string_fails_before_start(tmp_path):
    with pytest.raises(ConfigurationError):
        TwinAgentApp(_config(tmp_path))


@pytest.mark.asyncio
async def test_startup_seeds_cadence_then_publishes(
    tmp_path, fake_link, fixed_source, recording_sleep
):
    fake_link.twin = {"desired": {"refreshRateInSeconds": 10}, "reported": {}}
    app = _app(tmp_path, fake_link, fixed_source, recording_sleep)

    await app.start()
    await fake_link.wait_for_published(2)

    assert app.state is AgentState.RUNNING
    assert app.cadence.get() == 10
    assert recording_sleep.delays[0] == 10
    assert fake_link.calls[:5] == [
        "connect",
        "fetch_state",
        "subscribe",
        "register:UpdateFirmware",
        "publish",
    ]

    await app.stop()


@pytest.mark.asyncio
async def test_absent_refresh_rate_keeps_default(
    tmp_path, fake_link, fixed_source, recording_sleep
):
    app = _app(tmp_path, fake_link, fixed_source, recording_sleep)

    await app.start()
    await fake_link.wait_for_published(1)

    assert app.cadence.get() == 60
    await app.stop()


@pytest.mark.asyncio
async def test_invalid_initial_refresh_rate_keeps_default(
    tmp_path, fake_link, fixed_source, recording_sleep
):
    fake_link.twin = {"desired": {"refreshRateInSeconds": "not-a-number"}}
    app = _app(
        tmp_path,
        fake_link,
        fixed_source,
        recording_sleep,
        "[telemetry]\ndefault_refresh_rate_seconds = 45\n",
    )

    await app.start()

    assert app.state is AgentState.RUNNING
    assert app.cadence.get() == 45
    await app.stop()


@pytest.mark.asyncio
async def test_failed_initial_fetch_never_publishes(
    tmp_path, fake_link, fixed_source, recording_sleep
):
    fake_link.fetch_error = StateFetchError("No response from hub within 30.0s")
    app = _app(tmp_path, fake_link, fixed_source, recording_sleep)

    with pytest.raises(InitialSyncError):
        await app.start()
    await asyncio.sleep(0.05)

    assert app.state is AgentState.UNINITIALIZED
    assert fake_link.published == []
    assert "subscribe" not in fake_link.calls
    assert not app.publisher.running

    await app.stop()
    assert app.state is AgentState.UNINITIALIZED
    assert fake_link.closed


@pytest.mark.asyncio
async def test_desired_change_applies_to_running_loop(
    tmp_path, fake_link, fixed_source
):
    fake_link.twin = {"desired": {"refreshRateInSeconds": 10}}
    delays: list[float] = []
    parked = asyncio.Event()
    release = asyncio.Event()

    async def sleep(seconds: float) -> None:
        delays.append(seconds)
        if len(delays) == 1:
            parked.set()
            await release.wait()
        elif len(delays) >= 2:
            await asyncio.Event().wait()

    app = _app(tmp_path, fake_link, fixed_source, sleep)
    await app.start()
    await asyncio.wait_for(parked.wait(), timeout=1.0)

    results, response = await asyncio.gather(
        fake_link.deliver({"refreshRateInSeconds": 5}),
        fake_link.invoke("UpdateFirmware", b"{}"),
    )
    release.set()
    await fake_link.wait_for_published(2)
    await asyncio.sleep(0)

    assert results == [True]
    assert response.status_code == 200
    assert response.payload == b""
    assert app.cadence.get() == 5
    assert delays[:2] == [10, 5]
    assert list(fake_link.reports[0]) == ["lastDesiredPropertyChangeReceivedAt"]

    await app.stop()


@pytest.mark.asyncio
async def test_invalid_desired_change_still_acknowledged(
    tmp_path, fake_link, fixed_source, recording_sleep
):
    fake_link.twin = {"desired": {"refreshRateInSeconds": 10}}
    app = _app(tmp_path, fake_link, fixed_source, recording_sleep)
    await app.start()

    await fake_link.deliver({"refreshRateInSeconds": "not-a-number"})

    assert app.cadence.get() == 10
    assert len(fake_link.reports) == 1
    await app.stop()


@pytest.mark.asyncio
async def test_report_failure_marks_health_degraded(
    tmp_path, fake_link, fixed_source, recording_sleep
):
    fake_link.report_error = ReportStateError("Hub responded with status 400")
    app = _app(tmp_path, fake_link, fixed_source, recording_sleep)
    await app.start()

    results = await fake_link.deliver({"refreshRateInSeconds": 15})

    assert results == [False]
    assert app.cadence.get() == 15
    assert app.state is AgentState.RUNNING
    snapshot = await app.health.snapshot()
    components = {item["name"]: item for item in snapshot["components"]}
    assert components["state-sync"]["healthy"] is False
    assert snapshot["metrics"]["reportFailures"] == 1
    assert snapshot["metrics"]["refreshRateSeconds"] == 15
    await app.stop()


@pytest.mark.asyncio
async def test_connectivity_reported_on_start_when_enabled(
    tmp_path, fake_link, fixed_source, recording_sleep
):
    app = _app(
        tmp_path,
        fake_link,
        fixed_source,
        recording_sleep,
        "[hub]\nreport_connectivity_on_start = true\n",
    )

    await app.start()
    await app.stop()

    assert {"connectivity": {"type": "cellular"}} in fake_link.reports


@pytest.mark.asyncio
async def test_stop_closes_link_and_stops_publishing(
    tmp_path, fake_link, fixed_source, recording_sleep
):
    app = _app(tmp_path, fake_link, fixed_source, recording_sleep)
    await app.start()
    await fake_link.wait_for_published(1)

    await app.stop()
    published = len(fake_link.published)
    await asyncio.sleep(0.05)

    assert app.state is AgentState.STOPPED
    assert fake_link.closed
    assert fake_link.drained
    assert not app.publisher.running
    assert len(fake_link.published) == published

    with pytest.raises(RuntimeError):
        await app.start()


@pytest.mark.asyncio
async def test_run_stops_when_requested(
    tmp_path, fake_link, fixed_source, recording_sleep
):
    app = _app(tmp_path, fake_link, fixed_source, recording_sleep)

    runner = asyncio.create_task(app.run())
    await fake_link.wait_for_published(1)
    app.request_stop()
    await asyncio.wait_for(runner, timeout=1.0)

    assert app.state is AgentState.STOPPED


@pytest.mark.asyncio
async def test_stop_lets_in_flight_report_finish_before_close(
    tmp_path, fake_link, fixed_source, recording_sleep
):
    gate = asyncio.Event()
    fake_link.report_gate = gate
    app = _app(tmp_path, fake_link, fixed_source, recording_sleep)
    await app.start()

    fake_link.dispatch({"refreshRateInSeconds": 5})
    await asyncio.sleep(0)

    stopping = asyncio.create_task(app.stop())
    await asyncio.sleep(0.05)
    assert not stopping.done()
    assert not fake_link.closed

    gate.set()
    await asyncio.wait_for(stopping, timeout=1.0)

    assert app.state is AgentState.STOPPED
    assert app.cadence.get() == 5
    assert list(fake_link.reports[0]) == ["lastDesiredPropertyChangeReceivedAt"]
    assert fake_link.calls.index("report") < fake_link.calls.index("close")


@pytest.mark.asyncio
async def test_stop_gives_up_on_report_after_grace(
    tmp_path, fake_link, fixed_source, recording_sleep
):
    fake_link.report_gate = asyncio.Event()
    app = _app(
        tmp_path,
        fake_link,
        fixed_source,
        recording_sleep,
        "[resilience]\nshutdown_grace_seconds = 0.05\n",
    )
    await app.start()

    fake_link.dispatch({"refreshRateInSeconds": 5})
    await asyncio.sleep(0)
    await asyncio.wait_for(app.stop(), timeout=1.0)

    assert app.state is AgentState.STOPPED
    assert fake_link.closed
    assert fake_link.reports == []

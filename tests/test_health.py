import aiohttp
import pytest

from twin_agent.health import HealthReporter, HealthServer


@pytest.mark.asyncio
async def test_health_reporter_snapshot():
    reporter = HealthReporter()

    await reporter.update("link", True)
    await reporter.update("telemetry", False, "stopped")

    snapshot = await reporter.snapshot()

    assert snapshot["status"] == "degraded"
    component_list = snapshot.get("components", [])
    assert isinstance(component_list, list)
    components = {item["name"]: item for item in component_list}
    assert components["link"]["healthy"] is True
    assert components["telemetry"]["healthy"] is False
    assert components["telemetry"]["detail"] == "stopped"


@pytest.mark.asyncio
async def test_health_reporter_agent_state_affects_status():
    reporter = HealthReporter()

    await reporter.update("link", True)
    await reporter.set_agent_state("uninitialized", healthy=False, detail="fetching")

    snapshot = await reporter.snapshot()

    assert snapshot["status"] == "degraded"
    agent = snapshot.get("agentState")
    assert agent is not None
    assert agent["state"] == "uninitialized"
    assert agent["healthy"] is False
    assert agent["detail"] == "fetching"


@pytest.mark.asyncio
async def test_health_server_serves_snapshot(unused_tcp_port):
    reporter = HealthReporter()
    await reporter.update("link", True)
    await reporter.set_agent_state("running", healthy=True)

    host = "127.0.0.1"
    port = unused_tcp_port
    server = HealthServer(reporter, host, port)
    await server.start()

    try:
        async with aiohttp.ClientSession() as session:
            async with session.get(f"http://{host}:{port}/healthz") as response:
                payload = await response.json()
                assert response.status == 200
                assert payload["status"] == "ok"
                assert payload["agentState"]["state"] == "running"

            await reporter.update("link", False, "disconnected (rc=7)")
            async with session.get(f"http://{host}:{port}/healthz") as response:
                assert response.status == 503
    finally:
        await server.stop()


@pytest.mark.asyncio
async def test_health_reporter_includes_metrics():
    reporter = HealthReporter()
    await reporter.set_agent_state("running", healthy=True)
    reporter.attach_metrics(lambda: {"telemetryPublished": 3})

    snapshot = await reporter.snapshot()

    assert snapshot["status"] == "ok"
    assert snapshot["metrics"] == {"telemetryPublished": 3}


@pytest.mark.asyncio
async def test_health_reporter_survives_broken_metrics():
    reporter = HealthReporter()

    def broken():
        raise RuntimeError("counter unavailable")

    reporter.attach_metrics(broken)

    snapshot = await reporter.snapshot()

    assert "metrics" not in snapshot
    assert snapshot["agentState"]["state"] == "uninitialized"

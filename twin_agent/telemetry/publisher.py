"""Telemetry publish loop."""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Optional

from .. import constants
from ..core import RemoteLink, SampleSource, TelemetryEvent, TelemetrySample
from ..hub import LinkError
from .cadence import CadenceController

LOGGER = logging.getLogger(__name__)

Sleeper = Callable[[float], Awaitable[None]]


def build_event(
    sample: TelemetrySample,
    *,
    alert_threshold: float = constants.DEFAULT_TEMPERATURE_ALERT_THRESHOLD,
) -> TelemetryEvent:
    """Serialise a sample into a telemetry event.

    The alert flag travels as an event property rather than in the JSON body
    so the hub can route on it without parsing the payload.
    """
    body = json.dumps(
        {"temperature": sample.temperature, "humidity": sample.humidity}
    ).encode("utf-8")
    alert = "true" if sample.temperature > alert_threshold else "false"
    return TelemetryEvent(
        body=body,
        properties={constants.TEMPERATURE_ALERT_PROPERTY: alert},
    )


class TelemetryPublisher:
    """Reads the sensor and publishes one event per cadence tick."""

    def __init__(
        self,
        link: RemoteLink,
        source: SampleSource,
        cadence: CadenceController,
        *,
        alert_threshold: float = constants.DEFAULT_TEMPERATURE_ALERT_THRESHOLD,
        sleep: Optional[Sleeper] = None,
    ) -> None:
        self._link = link
        self._source = source
        self._cadence = cadence
        self._alert_threshold = alert_threshold
        self._sleep: Sleeper = sleep or asyncio.sleep

        self._ready = asyncio.Event()
        self._stop_event = asyncio.Event()
        self._worker: Optional[asyncio.Task[None]] = None

        self.published_count = 0
        self.failed_count = 0
        self.last_published_at: Optional[datetime] = None

    @property
    def ready(self) -> bool:
        return self._ready.is_set()

    @property
    def running(self) -> bool:
        return self._worker is not None and not self._worker.done()

    def mark_ready(self) -> None:
        """Open the gate once the initial desired state is known."""
        self._ready.set()

    def start(self) -> None:
        if self.running:
            LOGGER.warning("Telemetry publisher already running")
            return
        self._stop_event.clear()
        self._worker = asyncio.create_task(self._run(), name="telemetry-publisher")

    async def stop(self, timeout: float = 5.0) -> None:
        self._stop_event.set()
        worker = self._worker
        if worker is None:
            return
        try:
            await asyncio.wait_for(asyncio.shield(worker), timeout=timeout)
        except asyncio.TimeoutError:
            worker.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await worker
        except asyncio.CancelledError:
            if not worker.cancelled():
                raise
        except Exception:
            LOGGER.exception("Telemetry loop had already failed")
        finally:
            self._worker = None

    async def publish_once(self) -> bool:
        """Read one sample and publish it. Returns False on failure."""
        try:
            sample = self._source.read()
        except Exception:
            self.failed_count += 1
            LOGGER.exception("Sample source failed; skipping this tick")
            return False

        event = build_event(sample, alert_threshold=self._alert_threshold)

        try:
            await self._link.publish(event)
        except LinkError as exc:
            self.failed_count += 1
            LOGGER.warning("Telemetry publish failed: %s", exc)
            return False
        except Exception:
            self.failed_count += 1
            LOGGER.exception("Unexpected error publishing telemetry")
            return False

        self.published_count += 1
        self.last_published_at = datetime.now(timezone.utc)
        LOGGER.info("Sent telemetry message: %s", event.body.decode("utf-8"))
        return True

    async def _run(self) -> None:
        await self._until_stopped(self._ready.wait())

        while not self._stop_event.is_set():
            # Re-read every cycle; a change made during the sleep applies next tick.
            interval = self._cadence.get()
            await self.publish_once()
            if self._stop_event.is_set():
                break
            try:
                await self._until_stopped(self._sleep(interval))
            except Exception:
                LOGGER.exception(
                    "Waiting %ss between publishes failed; retrying after %ss",
                    interval,
                    constants.DEFAULT_REFRESH_RATE_SECONDS,
                )
                await self._until_stopped(
                    asyncio.sleep(constants.DEFAULT_REFRESH_RATE_SECONDS)
                )

        LOGGER.info("Telemetry loop stopped")

    async def _until_stopped(self, awaitable: Awaitable[Any]) -> None:
        """Await ``awaitable`` but return early once stop() is called."""
        waiter = asyncio.ensure_future(awaitable)
        stopper = asyncio.ensure_future(self._stop_event.wait())
        try:
            await asyncio.wait({waiter, stopper}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in (waiter, stopper):
                if not task.done():
                    task.cancel()
        if waiter.done() and not waiter.cancelled():
            waiter.result()

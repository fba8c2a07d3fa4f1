"""Desired-state synchronisation and reported-state patches."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional

from . import constants
from .core import RemoteLink, utc_timestamp
from .hub import LinkError
from .telemetry import CadenceController, InvalidCadenceError

LOGGER = logging.getLogger(__name__)

ReportListener = Callable[[str, Optional[str]], Awaitable[None]]


def build_change_ack(now: Optional[datetime] = None) -> Dict[str, Any]:
    return {constants.LAST_CHANGE_RECEIVED_KEY: utc_timestamp(now)}


def build_connectivity_patch(connectivity_type: str = "cellular") -> Dict[str, Any]:
    return {"connectivity": {"type": connectivity_type}}


class StateSyncHandler:
    """Applies desired-state changes and acknowledges them in reported state.

    Each invocation stands alone. Overlapping invocations are safe because
    the only shared write goes through :meth:`CadenceController.set`.
    """

    def __init__(
        self,
        link: RemoteLink,
        cadence: CadenceController,
        *,
        clock: Optional[Callable[[], datetime]] = None,
        on_report_result: Optional[ReportListener] = None,
    ) -> None:
        self._link = link
        self._cadence = cadence
        self._clock = clock
        self._on_report_result = on_report_result
        self.changes_received = 0
        self.report_failures = 0

    async def __call__(self, change: Mapping[str, Any]) -> bool:
        return await self.handle_change(change)

    async def handle_change(self, change: Mapping[str, Any]) -> bool:
        """Process one desired-state change. Returns True if the ack was reported."""
        self.changes_received += 1
        visible = {key: value for key, value in change.items() if not key.startswith("$")}
        LOGGER.info("Desired property change: %s", visible)

        if constants.REFRESH_RATE_KEY in change:
            self.apply_refresh_rate(change[constants.REFRESH_RATE_KEY])
        else:
            LOGGER.debug("Change carries no %s; cadence untouched", constants.REFRESH_RATE_KEY)

        patch = build_change_ack(self._clock() if self._clock else None)
        LOGGER.info("Sending current time as reported property")
        return await self._report(patch, "state-sync")

    def apply_refresh_rate(self, value: Any) -> bool:
        try:
            return self._cadence.set(value)
        except InvalidCadenceError as exc:
            LOGGER.warning("Ignoring desired refresh rate: %s", exc)
            return False

    async def report_connectivity(self, connectivity_type: str = "cellular") -> bool:
        LOGGER.info("Sending connectivity data as reported property")
        return await self._report(build_connectivity_patch(connectivity_type), "connectivity")

    async def _report(self, patch: Mapping[str, Any], source: str) -> bool:
        try:
            await self._link.report_state(patch)
        except LinkError as exc:
            self.report_failures += 1
            LOGGER.error("Reporting state (%s) failed: %s", source, exc)
            await self._notify(source, str(exc))
            return False

        await self._notify(source, None)
        return True

    async def _notify(self, source: str, error: Optional[str]) -> None:
        if self._on_report_result is None:
            return
        try:
            await self._on_report_result(source, error)
        except Exception:
            LOGGER.exception("Report result listener raised an exception")

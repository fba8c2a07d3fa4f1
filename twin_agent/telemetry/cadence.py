"""Publish cadence ownership.

The refresh rate is the only value shared between the telemetry loop and
the desired-state handler. This module keeps it behind a small controller
so neither side touches a bare variable:

- ``get()`` returns the last committed value without waiting
- ``set()`` validates, commits and notifies listeners only on change
- listeners are informational and never drive publishing
"""

from __future__ import annotations

import logging
import threading
from typing import Any, Callable, List

from .. import constants

LOGGER = logging.getLogger(__name__)

CadenceListener = Callable[[int, int], None]


def _describe(value: Any) -> str:
    try:
        text = repr(value)
    except ValueError:
        # int repr refuses values past sys.get_int_max_str_digits()
        return f"<{type(value).__name__} too large to display>"
    return text if len(text) <= 40 else text[:37] + "..."


class InvalidCadenceError(ValueError):
    """Raised when a refresh rate is not a positive whole number of seconds."""

    def __init__(self, value: Any) -> None:
        super().__init__(
            f"Invalid refresh rate {_describe(value)}; expected an integer between 1 and "
            f"{constants.MAX_REFRESH_RATE_SECONDS}"
        )
        self.value = value


def coerce_cadence(value: Any) -> int:
    """Normalise a desired-state refresh rate into seconds.

    Raises:
        InvalidCadenceError: If the value is not an integer, an integral
            float or a string holding one, or falls outside
            1..MAX_REFRESH_RATE_SECONDS.
    """
    if isinstance(value, bool):
        raise InvalidCadenceError(value)

    if isinstance(value, int):
        seconds = value
    elif isinstance(value, float):
        if not value.is_integer():
            raise InvalidCadenceError(value)
        seconds = int(value)
    elif isinstance(value, str):
        try:
            seconds = int(value.strip())
        except ValueError as exc:
            raise InvalidCadenceError(value) from exc
    else:
        raise InvalidCadenceError(value)

    if not 0 < seconds <= constants.MAX_REFRESH_RATE_SECONDS:
        raise InvalidCadenceError(value)
    return seconds


class CadenceController:
    """Single owner of the telemetry refresh rate.

    Thread-safety: ``get`` and ``set`` may be called from any thread. The
    lock only guards the integer swap; listeners run after it is released.
    """

    def __init__(self, initial: int = constants.DEFAULT_REFRESH_RATE_SECONDS) -> None:
        self._seconds = coerce_cadence(initial)
        self._lock = threading.Lock()
        self._listeners: List[CadenceListener] = []

    def get(self) -> int:
        with self._lock:
            return self._seconds

    def set(self, value: Any) -> bool:
        """Commit ``value`` if it differs from the current refresh rate.

        Returns True when the value changed. Equal values are a silent no-op.
        """
        seconds = coerce_cadence(value)

        with self._lock:
            previous = self._seconds
            if seconds == previous:
                return False
            self._seconds = seconds

        LOGGER.info(
            "New refresh rate is %ds, previous refresh rate was %ds",
            seconds,
            previous,
        )
        for listener in list(self._listeners):
            try:
                listener(seconds, previous)
            except Exception:
                LOGGER.exception("Cadence listener raised an exception")
        return True

    def add_listener(self, listener: CadenceListener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: CadenceListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

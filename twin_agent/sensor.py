"""Simulated environment sensor."""

from __future__ import annotations

import random
from typing import Optional

from .config import SensorConfig
from .core import TelemetrySample


class SimulatedEnvironmentSensor:
    """Produces temperature and humidity readings around a configurable floor.

    A real deployment would swap this for a driver that talks to the
    hardware; the agent only relies on ``read()``.
    """

    def __init__(
        self,
        config: Optional[SensorConfig] = None,
        *,
        rng: Optional[random.Random] = None,
    ) -> None:
        self.config = config or SensorConfig()
        self._rng = rng or random.Random(self.config.seed)

    def read_temperature(self) -> float:
        return self.config.min_temperature + self._rng.random() * self.config.temperature_span

    def read_humidity(self) -> float:
        return self.config.min_humidity + self._rng.random() * self.config.humidity_span

    def read(self) -> TelemetrySample:
        return TelemetrySample(
            temperature=self.read_temperature(),
            humidity=self.read_humidity(),
        )

"""Simulated devices for running a test without hardware."""

from __future__ import annotations

import asyncio
import contextlib
import math
import random
from typing import Optional

from loguru import logger

from lactate_engine.core.errors import ControllerCommandError, DeviceConnectionError
from lactate_engine.core.trainer import TrainerStatus
from lactate_engine.telemetry.hub import MetricUpdate, UpdateCallback

# device type -> metric -> (low, high) steady-state range
SIMULATED_RANGES: dict[str, dict[str, tuple[float, float]]] = {
    "heart_rate": {"heart_rate": (120.0, 170.0)},
    "moxy": {"smo2": (60.0, 80.0), "thb": (80.0, 90.0)},
    "core_temp": {"core_temp": (37.0, 39.0)},
    "vo2master": {"vo2": (30.0, 40.0), "vco2": (25.0, 33.0), "ventilation": (60.0, 90.0)},
}


class _SimulatedEmitter:
    def __init__(self, device_type: str, interval_sec: float, seed: int) -> None:
        self.device_type = device_type
        self._interval_sec = interval_sec
        self._rng = random.Random(seed)
        self._callback: Optional[UpdateCallback] = None
        self._task: Optional[asyncio.Task[None]] = None
        self._connected = False
        self._tick = 0

    @property
    def is_connected(self) -> bool:
        return self._connected

    def on_update(self, callback: UpdateCallback) -> None:
        self._callback = callback

    async def connect(self) -> None:
        if self._connected:
            return
        self._connected = True
        self._task = asyncio.create_task(self._loop())
        logger.debug("[SIM] {} connected", self.device_type)

    async def disconnect(self) -> None:
        self._connected = False
        if self._task is not None:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
            self._task = None

    async def _loop(self) -> None:
        while self._connected:
            self._tick += 1
            update = self._next_update()
            if self._callback is not None:
                self._callback(update)
            await asyncio.sleep(self._interval_sec)

    def _next_update(self) -> MetricUpdate:
        raise NotImplementedError


class SimulatedSensor(_SimulatedEmitter):
    """Heart rate, muscle oxygen, core temperature or gas exchange sensor."""

    def __init__(
        self,
        device_type: str,
        interval_sec: float = 1.0,
        seed: int = 20260225,
        fail_connect: bool = False,
    ) -> None:
        if device_type not in SIMULATED_RANGES:
            raise ValueError(
                f"Unknown simulated device '{device_type}'. "
                f"Use one of: {', '.join(sorted(SIMULATED_RANGES))}"
            )
        super().__init__(device_type, interval_sec, seed)
        self._fail_connect = fail_connect
        self._values = {
            name: (low + high) / 2.0 for name, (low, high) in SIMULATED_RANGES[device_type].items()
        }

    async def connect(self) -> None:
        if self._fail_connect:
            raise DeviceConnectionError(self.device_type, "simulated connection failure")
        await super().connect()

    def _next_update(self) -> MetricUpdate:
        update: dict[str, Optional[float]] = {}
        for name, (low, high) in SIMULATED_RANGES[self.device_type].items():
            span = high - low
            drift = self._rng.uniform(-0.05, 0.05) * span
            value = max(low, min(high, self._values[name] + drift))
            self._values[name] = value
            update[name] = round(value, 2)
        return update


class SimulatedTrainer(_SimulatedEmitter):
    """Smart trainer that tracks its ERG target; also a ``TrainerController``."""

    def __init__(
        self,
        interval_sec: float = 1.0,
        seed: int = 20260225,
        refuse_commands: bool = False,
    ) -> None:
        super().__init__("bike_trainer", interval_sec, seed)
        self._status: TrainerStatus = "disconnected"
        self._refuse_commands = refuse_commands
        self._target_watts = 100
        self._power = 100.0
        self._cadence = 85.0
        self._speed = 28.0

    @property
    def status(self) -> TrainerStatus:
        return self._status

    @property
    def target_watts(self) -> int:
        return self._target_watts

    async def connect(self) -> None:
        await super().connect()
        self._status = "ready"

    async def disconnect(self) -> None:
        await super().disconnect()
        self._status = "disconnected"

    async def request_control(self) -> None:
        self._check("request control")
        self._status = "controlled"

    async def start(self) -> None:
        self._check("start")

    async def set_erg_watts(self, watts: int) -> None:
        self._check(f"set ERG {watts}W")
        if self._status != "controlled":
            raise ControllerCommandError("Control not granted. Call request_control() first.")
        self._target_watts = max(0, min(2000, int(watts)))
        logger.debug("[SIM] ERG target {}W", self._target_watts)

    def _check(self, action: str) -> None:
        if not self._connected:
            raise ControllerCommandError(f"Cannot {action}: not connected")
        if self._refuse_commands:
            raise ControllerCommandError(f"Trainer refused to {action}")

    def _next_update(self) -> MetricUpdate:
        periodic = 6.0 * math.sin(self._tick / 5.0)
        target = float(self._target_watts) + periodic + self._rng.uniform(-4.0, 4.0)
        target = max(0.0, target)
        self._power += max(-30.0, min(30.0, (target - self._power) * 0.30))

        if self._target_watts == 0:
            cadence_target = 0.0
        else:
            cadence_target = 70.0 + (self._power / 8.8) + self._rng.uniform(-4.0, 4.0)
        self._cadence += max(-5.5, min(5.5, (cadence_target - self._cadence) * 0.55))
        self._cadence = max(0.0, min(128.0, self._cadence))
        speed_target = 0.0 if self._cadence == 0 else 14.0 + (self._power / 11.0)
        self._speed += max(-2.8, min(2.8, (speed_target - self._speed) * 0.40))
        self._speed = max(0.0, self._speed)

        return {
            "power": int(round(self._power)),
            "cadence": round(self._cadence, 1),
            "speed": round(self._speed, 1),
        }

"""Canonical live-metric snapshot fed by interchangeable device adapters."""

from __future__ import annotations

import math
import time
from dataclasses import dataclass, field, replace
from typing import Awaitable, Callable, Mapping, Optional, Protocol

from loguru import logger

from lactate_engine.core.errors import DeviceConnectionError
from lactate_engine.core.state import Phase

METRIC_FIELDS: tuple[str, ...] = (
    "power",
    "cadence",
    "speed",
    "heart_rate",
    "smo2",
    "thb",
    "core_temp",
    "vo2",
    "vco2",
    "ventilation",
)
# Zeroed while recovering: the athlete is not pedalling against a target.
RECOVERY_ZEROED_FIELDS: tuple[str, ...] = ("power", "cadence", "speed")

MetricUpdate = Mapping[str, Optional[float]]
UpdateCallback = Callable[[MetricUpdate], None]
LinkLostCallback = Callable[[str], None]
DeviceLostCallback = Callable[[str, Optional[str]], None]


@dataclass(frozen=True)
class LiveSnapshot:
    power: Optional[float] = None
    cadence: Optional[float] = None
    speed: Optional[float] = None
    heart_rate: Optional[float] = None
    smo2: Optional[float] = None
    thb: Optional[float] = None
    core_temp: Optional[float] = None
    vo2: Optional[float] = None
    vco2: Optional[float] = None
    ventilation: Optional[float] = None
    timestamp: Optional[float] = None

    def metrics(self) -> dict[str, Optional[float]]:
        return {name: getattr(self, name) for name in METRIC_FIELDS}


class TelemetryEmitter(Protocol):
    """Push source of partial metric updates (BLE, simulated, bridges...)."""

    async def connect(self) -> None: ...

    def on_update(self, callback: UpdateCallback) -> None: ...

    async def disconnect(self) -> None: ...


@dataclass
class DeviceStatus:
    device_type: str
    connected: bool = False
    last_update: Optional[float] = None
    last_error: Optional[str] = None
    fields: dict[str, Optional[float]] = field(default_factory=dict)


class HeartRateSmoother:
    """Exponential smoothing of heart rate for display."""

    def __init__(self, alpha: float = 0.3) -> None:
        self._alpha = alpha
        self._value: Optional[float] = None

    @property
    def value(self) -> Optional[float]:
        return self._value

    def update(self, heart_rate: Optional[float]) -> Optional[float]:
        if heart_rate is None:
            return self._value
        if self._value is None:
            self._value = float(heart_rate)
        else:
            self._value += self._alpha * (float(heart_rate) - self._value)
        return self._value

    def reset(self) -> None:
        self._value = None


class TelemetryHub:
    """Owns the single live snapshot; every write goes through ``apply_update``."""

    def __init__(
        self,
        clock: Callable[[], float] = time.time,
        heart_rate_smoothing: float = 0.3,
        record_smoothed_heart_rate: bool = False,
        on_device_lost: DeviceLostCallback | None = None,
    ) -> None:
        self._clock = clock
        self._on_device_lost = on_device_lost
        self._snapshot = LiveSnapshot()
        self._phase: Optional[Phase] = None
        self._adapters: dict[str, TelemetryEmitter] = {}
        self._devices: dict[str, DeviceStatus] = {}
        self._smoother = HeartRateSmoother(heart_rate_smoothing)
        self._record_smoothed_heart_rate = record_smoothed_heart_rate

    @property
    def phase(self) -> Optional[Phase]:
        return self._phase

    @property
    def devices(self) -> dict[str, DeviceStatus]:
        return dict(self._devices)

    def register_adapter(self, device_type: str, emitter: TelemetryEmitter) -> None:
        if device_type in self._adapters:
            raise ValueError(f"Adapter already registered for {device_type}")
        self._adapters[device_type] = emitter
        self._devices[device_type] = DeviceStatus(device_type=device_type)

        def _on_update(partial: MetricUpdate) -> None:
            self.apply_update(device_type, partial)

        emitter.on_update(_on_update)

        # Adapters that can notice an unsolicited link drop report it here.
        on_link_lost = getattr(emitter, "on_link_lost", None)
        if on_link_lost is not None:
            on_link_lost(lambda reason: self.mark_disconnected(device_type, reason))

    async def connect_all(self) -> list[DeviceConnectionError]:
        return await self._for_each_adapter("connect", lambda e: e.connect(), connected=True)

    async def disconnect_all(self) -> list[DeviceConnectionError]:
        return await self._for_each_adapter(
            "disconnect", lambda e: e.disconnect(), connected=False
        )

    async def _for_each_adapter(
        self,
        action: str,
        call: Callable[[TelemetryEmitter], Awaitable[None]],
        *,
        connected: bool,
    ) -> list[DeviceConnectionError]:
        failures: list[DeviceConnectionError] = []
        for device_type, emitter in self._adapters.items():
            status = self._devices[device_type]
            try:
                await call(emitter)
            except DeviceConnectionError as exc:
                status.connected = False
                status.last_error = str(exc)
                failures.append(exc)
                logger.warning("Device {} {} failed: {}", device_type, action, exc)
                continue
            status.connected = connected
            status.last_error = None
            logger.info("Device {} {}ed", device_type, action)
        return failures

    def apply_update(self, device_type: str, partial: MetricUpdate) -> LiveSnapshot:
        """Merge ``partial`` into the snapshot, field by field (last write wins)."""
        changes: dict[str, Optional[float]] = {}
        for name, value in partial.items():
            if name not in METRIC_FIELDS:
                logger.debug("Ignoring unknown metric {!r} from {}", name, device_type)
                continue
            if value is not None and (
                isinstance(value, bool)
                or not isinstance(value, (int, float))
                or not math.isfinite(value)
            ):
                logger.debug("Ignoring invalid {}={!r} from {}", name, value, device_type)
                continue
            changes[name] = value

        status = self._devices.get(device_type)
        if status is None:
            status = self._devices[device_type] = DeviceStatus(device_type=device_type)
        status.connected = True
        status.last_update = self._clock()
        status.fields.update(changes)

        if "heart_rate" in changes:
            smoothed = self._smoother.update(changes["heart_rate"])
            if self._record_smoothed_heart_rate and smoothed is not None:
                changes["heart_rate"] = round(smoothed, 1)

        changes.update(self._phase_overrides(changes))
        self._snapshot = replace(self._snapshot, timestamp=self._clock(), **changes)
        return self._snapshot

    def set_phase(self, phase: Optional[Phase]) -> None:
        """Apply the phase-aware override from now on (None disables it)."""
        self._phase = phase
        overrides = self._phase_overrides({name: None for name in RECOVERY_ZEROED_FIELDS})
        if overrides:
            self._snapshot = replace(self._snapshot, **overrides)

    def _phase_overrides(self, changes: Mapping[str, Optional[float]]) -> dict[str, float]:
        if self._phase != "recovery":
            return {}
        return {name: 0 for name in RECOVERY_ZEROED_FIELDS if name in changes}

    def mark_disconnected(self, device_type: str, reason: str | None = None) -> None:
        status = self._devices.get(device_type)
        if status is None:
            return
        status.connected = False
        status.last_error = reason
        logger.warning("Device {} lost: {}", device_type, reason or "disconnected")
        if self._on_device_lost is not None:
            self._on_device_lost(device_type, reason)

    def snapshot(self) -> LiveSnapshot:
        return self._snapshot

    def display_snapshot(self) -> LiveSnapshot:
        """Snapshot with smoothed heart rate; never used for recording."""
        smoothed = self._smoother.value
        if smoothed is None:
            return self._snapshot
        return replace(self._snapshot, heart_rate=round(smoothed, 1))

    def reset(self) -> None:
        self._snapshot = LiveSnapshot()
        self._smoother.reset()

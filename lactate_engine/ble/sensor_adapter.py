"""BLE sensors exposing a standard GATT measurement characteristic."""

from __future__ import annotations

import contextlib
import importlib
from dataclasses import dataclass, replace
from typing import Any, Callable, Optional

from loguru import logger

from lactate_engine.ble.constants import (
    CSC_MEASUREMENT_CHAR_UUID,
    CYCLING_POWER_MEASUREMENT_CHAR_UUID,
    CYCLING_POWER_SERVICE_UUID,
    CYCLING_SPEED_CADENCE_SERVICE_UUID,
    FTMS_SERVICE_UUID,
    HEALTH_THERMOMETER_SERVICE_UUID,
    HEART_RATE_MEASUREMENT_CHAR_UUID,
    HEART_RATE_SERVICE_UUID,
    TEMPERATURE_MEASUREMENT_CHAR_UUID,
)
from lactate_engine.ble.gatt_decoder import (
    CscMeasurement,
    CyclingPowerMeasurement,
    decode_csc_measurement,
    decode_cycling_power,
    decode_health_thermometer,
    decode_heart_rate,
)
from lactate_engine.core.errors import DeviceConnectionError, DeviceParseError
from lactate_engine.telemetry.hub import LinkLostCallback, MetricUpdate, UpdateCallback

_bleak: Any
try:
    _bleak = importlib.import_module("bleak")
except ImportError:  # pragma: no cover - runtime dependency guard
    _bleak = None


@dataclass(frozen=True)
class GattProfile:
    service_uuid: str
    characteristic_uuid: str
    label: str


GATT_PROFILES: dict[str, GattProfile] = {
    "heart_rate": GattProfile(
        HEART_RATE_SERVICE_UUID, HEART_RATE_MEASUREMENT_CHAR_UUID, "Heart Rate (0x2A37)"
    ),
    "power_meter": GattProfile(
        CYCLING_POWER_SERVICE_UUID,
        CYCLING_POWER_MEASUREMENT_CHAR_UUID,
        "Cycling Power (0x2A63)",
    ),
    "core_temp": GattProfile(
        HEALTH_THERMOMETER_SERVICE_UUID,
        TEMPERATURE_MEASUREMENT_CHAR_UUID,
        "Health Thermometer (0x2A1C)",
    ),
    "speed_cadence": GattProfile(
        CYCLING_SPEED_CADENCE_SERVICE_UUID,
        CSC_MEASUREMENT_CHAR_UUID,
        "Cycling Speed and Cadence (0x2A5B)",
    ),
}

_SERVICE_LABELS: dict[str, str] = {
    HEART_RATE_SERVICE_UUID: "HR",
    CYCLING_POWER_SERVICE_UUID: "CP",
    HEALTH_THERMOMETER_SERVICE_UUID: "HT",
    CYCLING_SPEED_CADENCE_SERVICE_UUID: "CSC",
    FTMS_SERVICE_UUID: "FTMS",
}


@dataclass(frozen=True)
class ScannedDevice:
    name: str
    address: str
    rssi: int
    services: tuple[str, ...]

    @property
    def has_ftms(self) -> bool:
        return "FTMS" in self.services


def ensure_bleak_available() -> None:
    if _bleak is None:
        raise RuntimeError("bleak is not installed. Run: pip install bleak")


async def scan_devices(timeout: float = 5.0) -> list[ScannedDevice]:
    ensure_bleak_available()
    discovered = await _bleak.BleakScanner.discover(timeout=timeout, return_adv=True)
    devices: list[ScannedDevice] = []
    for _, (device, adv_data) in discovered.items():
        uuids = {u.lower() for u in (adv_data.service_uuids or [])}
        devices.append(
            ScannedDevice(
                name=device.name or "Unknown",
                address=device.address,
                rssi=adv_data.rssi,
                services=tuple(
                    label for uuid, label in _SERVICE_LABELS.items() if uuid in uuids
                ),
            )
        )
    devices.sort(key=lambda d: d.rssi, reverse=True)
    return devices


async def resolve_device(target: str, service_uuid: str, timeout: float) -> Optional[Any]:
    """Find a device by address/name, or the first advertising ``service_uuid``."""
    ensure_bleak_available()
    if target and target != "auto":
        return await _bleak.BleakScanner.find_device_by_filter(
            lambda d, _: (d.address.lower() == target.lower())
            or ((d.name or "").lower() == target.lower()),
            timeout=timeout,
        )
    return await _bleak.BleakScanner.find_device_by_filter(
        lambda _, adv: service_uuid in {u.lower() for u in (adv.service_uuids or [])},
        timeout=timeout,
    )


async def close_quietly(client: Any) -> None:
    """Drop a half-open connection after a failed setup."""
    if client is None:
        return
    with contextlib.suppress(Exception):
        await client.disconnect()


class GattSensorAdapter:
    """Push adapter for a heart-rate strap, power meter, thermometer or CSC sensor."""

    def __init__(
        self,
        device_type: str,
        target: str = "auto",
        connect_timeout: float = 25.0,
        client_factory: Callable[..., Any] | None = None,
        wheel_circumference_m: float = 2.1,
    ) -> None:
        if device_type not in GATT_PROFILES:
            raise ValueError(
                f"Unsupported BLE sensor '{device_type}'. "
                f"Use one of: {', '.join(sorted(GATT_PROFILES))}"
            )
        self.device_type = device_type
        self._profile = GATT_PROFILES[device_type]
        self._target = target
        self._connect_timeout = connect_timeout
        self._client_factory = client_factory
        self._wheel_circumference_m = wheel_circumference_m
        self._client: Optional[Any] = None
        self._callback: Optional[UpdateCallback] = None
        self._link_lost: Optional[LinkLostCallback] = None
        self._last_power: Optional[CyclingPowerMeasurement] = None
        self._last_csc: Optional[CscMeasurement] = None
        self.dropped_payloads = 0

    @property
    def is_connected(self) -> bool:
        return bool(self._client and self._client.is_connected)

    def on_update(self, callback: UpdateCallback) -> None:
        self._callback = callback

    def on_link_lost(self, callback: LinkLostCallback) -> None:
        self._link_lost = callback

    async def connect(self) -> None:
        client: Optional[Any] = None
        try:
            device = await resolve_device(
                self._target, self._profile.service_uuid, self._connect_timeout
            )
            if device is None and self._target != "auto":
                # Some sensors connect by address without advertising continuously.
                device = self._target
            if device is None:
                raise DeviceConnectionError(
                    self.device_type, f"no device advertising {self._profile.label}"
                )
            client = self._build_client(device)
            await client.connect(timeout=self._connect_timeout)
            await client.start_notify(
                self._profile.characteristic_uuid, self._handle_notification
            )
        except DeviceConnectionError:
            await close_quietly(client)
            raise
        except Exception as exc:
            await close_quietly(client)
            raise DeviceConnectionError(self.device_type, str(exc)) from exc
        self._client = client
        logger.info("{} connected ({})", self.device_type, self._profile.label)

    async def disconnect(self) -> None:
        client = self._client
        self._client = None
        self._last_power = None
        self._last_csc = None
        if client is None:
            return
        try:
            with contextlib.suppress(Exception):
                await client.stop_notify(self._profile.characteristic_uuid)
            await client.disconnect()
        except Exception as exc:
            raise DeviceConnectionError(self.device_type, str(exc)) from exc

    def _build_client(self, device: Any) -> Any:
        if self._client_factory is not None:
            return self._client_factory(device, disconnected_callback=self._on_disconnected)
        return _bleak.BleakClient(device, disconnected_callback=self._on_disconnected)

    def _on_disconnected(self, client: object) -> None:
        # Fired for our own disconnect() too; only a live client counts as lost.
        if self._client is None or client is not self._client:
            return
        self._client = None
        self._last_power = None
        self._last_csc = None
        logger.warning("{} disconnected unexpectedly", self.device_type)
        if self._link_lost is not None:
            self._link_lost("link lost")

    def _handle_notification(self, _sender: object, data: bytearray) -> None:
        payload = bytes(data)
        try:
            update = self._decode(payload)
        except DeviceParseError as exc:
            self.dropped_payloads += 1
            logger.warning(
                "Dropping {} payload {}: {}", self.device_type, payload.hex(" "), exc
            )
            return
        logger.debug("[{}] payload={} -> {}", self.device_type, payload.hex(" "), update)
        if self._callback is not None:
            self._callback(update)

    def _decode(self, payload: bytes) -> MetricUpdate:
        if self.device_type == "heart_rate":
            return decode_heart_rate(payload).as_update()
        if self.device_type == "core_temp":
            return decode_health_thermometer(payload).as_update()
        if self.device_type == "speed_cadence":
            return self._decode_csc(payload)
        measurement = decode_cycling_power(payload, previous=self._last_power)
        if measurement.crank_revolutions is not None:
            self._last_power = measurement
        return measurement.as_update()

    def _decode_csc(self, payload: bytes) -> MetricUpdate:
        measurement = decode_csc_measurement(
            payload, previous=self._last_csc, wheel_circumference_m=self._wheel_circumference_m
        )
        previous = self._last_csc
        if previous is not None:
            # Sensors may alternate wheel-only and crank-only notifications.
            if measurement.wheel_revolutions is None:
                measurement = replace(
                    measurement,
                    wheel_revolutions=previous.wheel_revolutions,
                    wheel_event_time=previous.wheel_event_time,
                )
            if measurement.crank_revolutions is None:
                measurement = replace(
                    measurement,
                    crank_revolutions=previous.crank_revolutions,
                    crank_event_time=previous.crank_event_time,
                )
        self._last_csc = measurement
        return measurement.as_update()

"""Async FTMS smart trainer: telemetry adapter and ERG controller."""

from __future__ import annotations

import asyncio
import importlib
import struct
from dataclasses import dataclass
from typing import Any, Callable, Optional

from loguru import logger

from lactate_engine.ble.constants import (
    CONTROL_RESULT_MESSAGES,
    CYCLING_POWER_MEASUREMENT_CHAR_UUID,
    FITNESS_MACHINE_CONTROL_POINT_CHAR_UUID,
    FTMS_SERVICE_UUID,
    INDOOR_BIKE_DATA_CHAR_UUID,
    OP_REQUEST_CONTROL,
    OP_RESPONSE_CODE,
    OP_SET_TARGET_POWER,
    OP_START_RESUME,
    RESULT_SUCCESS,
    SUPPORTED_POWER_RANGE_CHAR_UUID,
)
from lactate_engine.ble.gatt_decoder import (
    CyclingPowerMeasurement,
    decode_cycling_power,
    decode_indoor_bike_data,
)
from lactate_engine.ble.sensor_adapter import close_quietly, resolve_device
from lactate_engine.core.errors import (
    ControllerCommandError,
    DeviceConnectionError,
    DeviceParseError,
)
from lactate_engine.core.trainer import TrainerStatus
from lactate_engine.telemetry.hub import LinkLostCallback, UpdateCallback

_bleak: Any
try:
    _bleak = importlib.import_module("bleak")
except ImportError:  # pragma: no cover - runtime dependency guard
    _bleak = None

_MAX_TARGET_WATTS = 2000


@dataclass(frozen=True)
class ControlResponse:
    request_opcode: int
    result_code: int

    @property
    def success(self) -> bool:
        return self.result_code == RESULT_SUCCESS

    @property
    def message(self) -> str:
        return CONTROL_RESULT_MESSAGES.get(
            self.result_code, f"unknown result 0x{self.result_code:02X}"
        )


def parse_control_response(payload: bytes) -> Optional[ControlResponse]:
    """Parse a control point indication; None when it is not a response."""
    if len(payload) < 3 or payload[0] != OP_RESPONSE_CODE:
        return None
    return ControlResponse(request_opcode=payload[1], result_code=payload[2])


def normalize_power_target(
    requested_watts: int, min_watts: int, max_watts: int, increment_watts: int
) -> int:
    if increment_watts <= 0:
        increment_watts = 1

    clamped = min(max(requested_watts, min_watts), max_watts)
    steps = round((clamped - min_watts) / increment_watts)
    normalized = min_watts + (steps * increment_watts)
    return min(max(normalized, min_watts), max_watts)


def build_set_target_power_command(watts: int) -> bytes:
    clamped = max(0, min(_MAX_TARGET_WATTS, int(round(watts))))
    return bytes([OP_SET_TARGET_POWER]) + struct.pack("<h", clamped)


class FTMSTrainer:
    """Smart trainer over BLE FTMS.

    Control point commands run one at a time: a write waits until the previous
    one was confirmed or gave up. Each is bounded by ``command_timeout_sec``
    and retried up to ``command_attempts`` times before
    ``ControllerCommandError``.
    """

    def __init__(
        self,
        target: str = "auto",
        connect_timeout: float = 25.0,
        command_timeout_sec: float = 3.0,
        command_attempts: int = 3,
        retry_delay_sec: float = 1.0,
        ble_pair: bool = True,
        client_factory: Callable[..., Any] | None = None,
    ) -> None:
        self.device_type = "bike_trainer"
        self._target = target
        self._connect_timeout = connect_timeout
        self._command_timeout_sec = command_timeout_sec
        self._command_attempts = max(1, command_attempts)
        self._retry_delay_sec = retry_delay_sec
        self._ble_pair = ble_pair
        self._client_factory = client_factory
        self._client: Optional[Any] = None
        self._status: TrainerStatus = "disconnected"
        self._callback: Optional[UpdateCallback] = None
        self._link_lost: Optional[LinkLostCallback] = None
        self._indications_enabled = False
        self._pending: dict[int, asyncio.Future[ControlResponse]] = {}
        self._command_lock = asyncio.Lock()
        self._supported_power_range: Optional[tuple[int, int, int]] = None
        self._ftms_power_seen = False
        self._crank_cadence_seen = False
        self._last_power: Optional[CyclingPowerMeasurement] = None

    @property
    def status(self) -> TrainerStatus:
        return self._status

    @property
    def is_connected(self) -> bool:
        return bool(self._client and self._client.is_connected)

    @property
    def supported_power_range(self) -> Optional[tuple[int, int, int]]:
        return self._supported_power_range

    def on_update(self, callback: UpdateCallback) -> None:
        self._callback = callback

    def on_link_lost(self, callback: LinkLostCallback) -> None:
        self._link_lost = callback

    async def connect(self) -> None:
        client: Optional[Any] = None
        try:
            device = await resolve_device(self._target, FTMS_SERVICE_UUID, self._connect_timeout)
            if device is None and self._target != "auto":
                # BlueZ accepts a bare address for trainers that stopped advertising.
                device = self._target
            if device is None:
                raise DeviceConnectionError(self.device_type, "No FTMS device found")
            client = await self._open_client(device)
            await self._initialize(client)
        except DeviceConnectionError:
            self._reset_link()
            await close_quietly(client)
            raise
        except Exception as exc:
            self._reset_link()
            await close_quietly(client)
            raise DeviceConnectionError(self.device_type, str(exc)) from exc

    async def disconnect(self) -> None:
        client = self._client
        self._reset_link()
        if client is None:
            return
        try:
            await client.disconnect()
        except Exception as exc:
            raise DeviceConnectionError(self.device_type, str(exc)) from exc

    async def request_control(self) -> None:
        await self._command(bytes([OP_REQUEST_CONTROL]), "request control")
        self._status = "controlled"

    async def start(self) -> None:
        await self._command(bytes([OP_START_RESUME]), "start/resume")

    async def set_erg_watts(self, watts: int) -> None:
        if self._status == "disconnected":
            raise ControllerCommandError("Trainer disconnected")
        if self._status != "controlled":
            raise ControllerCommandError("Control not granted. Call request_control() first.")
        target = self._normalize_target_power(watts)
        await self._command(build_set_target_power_command(target), f"set ERG {target}W")

    async def _open_client(self, device: Any) -> Any:
        client = self._build_client(device, pair=self._ble_pair)
        try:
            await client.connect(timeout=self._connect_timeout)
        except Exception:
            # Some backends/devices refuse pairing from the API; retry plainly.
            if not self._ble_pair:
                raise
            await close_quietly(client)
            client = self._build_client(device, pair=False)
            try:
                await client.connect(timeout=self._connect_timeout)
            except Exception:
                await close_quietly(client)
                raise
        return client

    def _build_client(self, device: Any, *, pair: bool) -> Any:
        if self._client_factory is not None:
            return self._client_factory(device, disconnected_callback=self._on_disconnected)
        if pair:
            try:
                return _bleak.BleakClient(
                    device, pair=True, disconnected_callback=self._on_disconnected
                )
            except TypeError:
                logger.debug("[BLE] pair=True unsupported by current backend")
        return _bleak.BleakClient(device, disconnected_callback=self._on_disconnected)

    def _reset_link(self) -> None:
        self._client = None
        self._status = "disconnected"
        self._indications_enabled = False
        for future in self._pending.values():
            if not future.done():
                future.set_exception(ControllerCommandError("Trainer disconnected"))
        self._pending.clear()

    def _on_disconnected(self, client: object) -> None:
        # Fired for our own disconnect() too; only a live client counts as lost.
        if self._client is None or client is not self._client:
            return
        self._reset_link()
        logger.warning("FTMS trainer disconnected unexpectedly")
        if self._link_lost is not None:
            self._link_lost("link lost")

    async def _initialize(self, client: Any) -> None:
        self._client = client
        subscribed_any = False
        for uuid, handler, label in (
            (INDOOR_BIKE_DATA_CHAR_UUID, self._handle_indoor_bike_data, "Indoor Bike Data"),
            (
                CYCLING_POWER_MEASUREMENT_CHAR_UUID,
                self._handle_cycling_power,
                "Cycling Power Measurement",
            ),
        ):
            try:
                await client.start_notify(uuid, handler)
                subscribed_any = True
                logger.debug("[FTMS] subscribed to {}", label)
            except Exception as exc:
                logger.debug("[FTMS] {} unavailable: {}", label, exc)
        if not subscribed_any:
            raise DeviceConnectionError(
                self.device_type,
                "No compatible measurement characteristic found (expected 0x2AD2 and/or 0x2A63)",
            )

        try:
            await client.start_notify(
                FITNESS_MACHINE_CONTROL_POINT_CHAR_UUID, self._handle_control_point
            )
            self._indications_enabled = True
        except Exception as exc:  # pragma: no cover - BLE runtime variability
            logger.debug("[FTMS] control point indications unavailable: {}", exc)

        self._supported_power_range = await self._read_supported_power_range(client)
        self._status = "ready"
        logger.info("FTMS trainer ready")

    async def _read_supported_power_range(self, client: Any) -> Optional[tuple[int, int, int]]:
        try:
            raw = bytes(await client.read_gatt_char(SUPPORTED_POWER_RANGE_CHAR_UUID))
        except Exception as exc:  # pragma: no cover - optional BLE characteristic
            logger.debug("[FTMS] supported power range unavailable: {}", exc)
            return None
        if len(raw) < 6:
            logger.debug("[FTMS] supported power range payload too short: {}", raw.hex(" "))
            return None
        min_watts, max_watts, increment_watts = struct.unpack_from("<hhH", raw, 0)
        return min_watts, max_watts, max(1, increment_watts)

    def _normalize_target_power(self, watts: int) -> int:
        if self._supported_power_range is None or watts <= 0:
            return max(0, watts)
        min_watts, max_watts, increment_watts = self._supported_power_range
        normalized = normalize_power_target(watts, min_watts, max_watts, increment_watts)
        if normalized != watts:
            logger.debug(
                "[FTMS] adjusted ERG target {}W -> {}W (range {}-{}W, step {}W)",
                watts,
                normalized,
                min_watts,
                max_watts,
                increment_watts,
            )
        return normalized

    async def _command(self, command: bytes, description: str) -> None:
        async with self._command_lock:
            await self._command_with_retry(command, description)

    async def _command_with_retry(self, command: bytes, description: str) -> None:
        last_exc: Exception | None = None
        for attempt in range(1, self._command_attempts + 1):
            try:
                await asyncio.wait_for(
                    self._write_and_confirm(command), timeout=self._command_timeout_sec
                )
                return
            except Exception as exc:
                last_exc = exc
                logger.warning(
                    "[FTMS] {} failed (attempt {}/{}): {!r}",
                    description,
                    attempt,
                    self._command_attempts,
                    exc,
                )
            finally:
                self._pending.pop(command[0], None)
            if self._client is None:
                break
            if attempt < self._command_attempts:
                await asyncio.sleep(self._retry_delay_sec)
        raise ControllerCommandError(f"Unable to {description} via FTMS Control Point") from last_exc

    async def _write_and_confirm(self, command: bytes) -> None:
        if self._client is None:
            raise ControllerCommandError("Not connected")
        opcode = command[0]
        response: Optional[asyncio.Future[ControlResponse]] = None
        if self._indications_enabled:
            response = asyncio.get_running_loop().create_future()
            self._pending[opcode] = response
        await self._client.write_gatt_char(
            FITNESS_MACHINE_CONTROL_POINT_CHAR_UUID, command, response=True
        )
        if response is None:
            return
        result = await response
        if not result.success:
            raise ControllerCommandError(
                f"Control point opcode 0x{opcode:02X}: {result.message}"
            )

    def _handle_control_point(self, _sender: object, data: bytearray) -> None:
        payload = bytes(data)
        response = parse_control_response(payload)
        if response is None:
            logger.debug("[FTMS-CP] indication payload={}", payload.hex(" "))
            return
        logger.debug(
            "[FTMS-CP] response req=0x{:02X} result=0x{:02X}",
            response.request_opcode,
            response.result_code,
        )
        future = self._pending.get(response.request_opcode)
        if future is not None and not future.done():
            future.set_result(response)

    def _handle_indoor_bike_data(self, _sender: object, data: bytearray) -> None:
        payload = bytes(data)
        try:
            metrics = decode_indoor_bike_data(payload)
        except DeviceParseError as exc:
            logger.warning("Dropping Indoor Bike Data {}: {}", payload.hex(" "), exc)
            return
        update = metrics.as_update()
        if metrics.power is not None:
            self._ftms_power_seen = True
        if self._crank_cadence_seen:
            # Crank-derived cadence from 0x2A63 is preferred when available.
            update.pop("cadence", None)
        logger.debug("[FTMS] payload={} -> {}", payload.hex(" "), update)
        self._emit(update)

    def _handle_cycling_power(self, _sender: object, data: bytearray) -> None:
        payload = bytes(data)
        try:
            measurement = decode_cycling_power(payload, previous=self._last_power)
        except DeviceParseError as exc:
            logger.warning("Dropping Cycling Power Measurement {}: {}", payload.hex(" "), exc)
            return
        if measurement.crank_revolutions is not None:
            self._last_power = measurement
        update: dict[str, float | None] = {}
        if not self._ftms_power_seen:
            update["power"] = measurement.power
        if measurement.cadence is not None:
            self._crank_cadence_seen = True
            update["cadence"] = measurement.cadence
        logger.debug("[CPM] payload={} -> {}", payload.hex(" "), update)
        self._emit(update)

    def _emit(self, update: dict[str, float | None]) -> None:
        if update and self._callback is not None:
            self._callback(update)

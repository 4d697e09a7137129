"""Decoders for standard Bluetooth GATT measurement characteristics.

All functions here are pure: they take the raw notification payload and return
a typed measurement, or raise ``DeviceParseError`` when the payload cannot be
decoded. Callers drop the update and keep the connection alive.
"""

from __future__ import annotations

import math
import struct
from dataclasses import dataclass
from typing import Optional

from lactate_engine.ble.constants import (
    CP_FLAG_ACCUMULATED_TORQUE_PRESENT,
    CP_FLAG_CRANK_REVOLUTION_DATA_PRESENT,
    CP_FLAG_PEDAL_POWER_BALANCE_PRESENT,
    CP_FLAG_WHEEL_REVOLUTION_DATA_PRESENT,
    CSC_FLAG_CRANK_REVOLUTION_DATA_PRESENT,
    CSC_FLAG_WHEEL_REVOLUTION_DATA_PRESENT,
    HR_FLAG_VALUE_UINT16,
    HT_FLAG_FAHRENHEIT,
    parse_indoor_bike_flags,
)
from lactate_engine.core.errors import DeviceParseError

# IEEE-11073 32-bit FLOAT reserved mantissas
_FLOAT_NAN = 0x007FFFFF
_FLOAT_NRES = 0x800000
_FLOAT_POSITIVE_INFINITY = 0x7FFFFE
_FLOAT_NEGATIVE_INFINITY = 0x800002
_FLOAT_RESERVED = 0x800001
_FLOAT_SPECIAL_MANTISSAS = frozenset(
    {
        _FLOAT_NAN,
        _FLOAT_NRES,
        _FLOAT_POSITIVE_INFINITY,
        _FLOAT_NEGATIVE_INFINITY,
        _FLOAT_RESERVED,
    }
)

_CRANK_TICKS_PER_SECOND = 1024.0
_DEFAULT_WHEEL_CIRCUMFERENCE_M = 2.1
# Event time deltas outside this window (seconds) are stale or glitched.
_CSC_MIN_INTERVAL_SEC = 0.01
_CSC_MAX_INTERVAL_SEC = 10.0
_CSC_MAX_SPEED_KMH = 100.0
_CSC_MAX_CADENCE_RPM = 200.0


@dataclass(frozen=True)
class CyclingPowerMeasurement:
    power: int
    cadence: Optional[float] = None
    crank_revolutions: Optional[int] = None
    crank_event_time: Optional[int] = None

    def as_update(self) -> dict[str, float | None]:
        update: dict[str, float | None] = {"power": self.power}
        if self.cadence is not None:
            update["cadence"] = self.cadence
        return update


@dataclass(frozen=True)
class HeartRateMeasurement:
    heart_rate: int

    def as_update(self) -> dict[str, float | None]:
        return {"heart_rate": self.heart_rate}


@dataclass(frozen=True)
class TemperatureMeasurement:
    core_temp: float

    def as_update(self) -> dict[str, float | None]:
        return {"core_temp": self.core_temp}


@dataclass(frozen=True)
class IndoorBikeData:
    power: Optional[int] = None
    cadence: Optional[float] = None
    speed: Optional[float] = None

    def as_update(self) -> dict[str, float | None]:
        update: dict[str, float | None] = {}
        if self.power is not None:
            update["power"] = self.power
        if self.cadence is not None:
            update["cadence"] = self.cadence
        if self.speed is not None:
            update["speed"] = self.speed
        return update


@dataclass(frozen=True)
class CscMeasurement:
    wheel_revolutions: Optional[int] = None
    wheel_event_time: Optional[int] = None
    crank_revolutions: Optional[int] = None
    crank_event_time: Optional[int] = None
    speed: Optional[float] = None
    cadence: Optional[float] = None

    def as_update(self) -> dict[str, float | None]:
        update: dict[str, float | None] = {}
        if self.speed is not None:
            update["speed"] = self.speed
        if self.cadence is not None:
            update["cadence"] = self.cadence
        return update


def _revolution_rate(
    revolutions: int,
    event_time: int,
    previous_revolutions: Optional[int],
    previous_event_time: Optional[int],
    revolution_mask: int,
) -> Optional[tuple[int, float]]:
    """Revolutions and seconds elapsed since the previous event, or None."""
    if previous_revolutions is None or previous_event_time is None:
        return None
    delta_revs = (revolutions - previous_revolutions) & revolution_mask
    seconds = ((event_time - previous_event_time) & 0xFFFF) / _CRANK_TICKS_PER_SECOND
    if delta_revs <= 0 or not _CSC_MIN_INTERVAL_SEC < seconds < _CSC_MAX_INTERVAL_SEC:
        return None
    return delta_revs, seconds


def decode_csc_measurement(
    payload: bytes,
    previous: CscMeasurement | None = None,
    wheel_circumference_m: float = _DEFAULT_WHEEL_CIRCUMFERENCE_M,
) -> CscMeasurement:
    """Decode a CSC Measurement (0x2A5B).

    Wheel revolutions are cumulative uint32, crank revolutions uint16, and
    both event times uint16 in 1/1024 s; every counter may wrap between two
    notifications. Speed (km/h) and cadence (rpm) need a ``previous``
    measurement and are dropped when implausible.
    """
    if len(payload) < 1:
        raise DeviceParseError("CSC Measurement payload is empty")

    flags = payload[0]
    cursor = 1
    wheel_revs: Optional[int] = None
    wheel_time: Optional[int] = None
    if flags & CSC_FLAG_WHEEL_REVOLUTION_DATA_PRESENT:
        if cursor + 6 > len(payload):
            raise DeviceParseError(
                f"CSC Measurement flags wheel data but payload has {len(payload)} bytes"
            )
        wheel_revs, wheel_time = struct.unpack_from("<IH", payload, cursor)
        cursor += 6

    crank_revs: Optional[int] = None
    crank_time: Optional[int] = None
    if flags & CSC_FLAG_CRANK_REVOLUTION_DATA_PRESENT:
        if cursor + 4 > len(payload):
            raise DeviceParseError(
                f"CSC Measurement flags crank data but payload has {len(payload)} bytes"
            )
        crank_revs, crank_time = struct.unpack_from("<HH", payload, cursor)

    speed: Optional[float] = None
    if wheel_revs is not None and wheel_time is not None and previous is not None:
        rate = _revolution_rate(
            wheel_revs,
            wheel_time,
            previous.wheel_revolutions,
            previous.wheel_event_time,
            0xFFFFFFFF,
        )
        if rate is not None:
            delta_revs, seconds = rate
            speed = delta_revs * wheel_circumference_m / seconds * 3.6
            if not 0 <= speed <= _CSC_MAX_SPEED_KMH:
                speed = None

    cadence: Optional[float] = None
    if crank_revs is not None and crank_time is not None and previous is not None:
        rate = _revolution_rate(
            crank_revs,
            crank_time,
            previous.crank_revolutions,
            previous.crank_event_time,
            0xFFFF,
        )
        if rate is not None:
            delta_revs, seconds = rate
            cadence = delta_revs / seconds * 60.0
            if not 0 <= cadence <= _CSC_MAX_CADENCE_RPM:
                cadence = None

    return CscMeasurement(
        wheel_revolutions=wheel_revs,
        wheel_event_time=wheel_time,
        crank_revolutions=crank_revs,
        crank_event_time=crank_time,
        speed=speed,
        cadence=cadence,
    )


def decode_cycling_power(
    payload: bytes, previous: CyclingPowerMeasurement | None = None
) -> CyclingPowerMeasurement:
    """Decode a Cycling Power Measurement (0x2A63).

    Cadence is derived from crank revolution data when flag 0x20 is set and a
    previous measurement carrying crank data is supplied; otherwise it is None.
    """
    if len(payload) < 4:
        raise DeviceParseError(
            f"Cycling Power Measurement too short: {len(payload)} bytes"
        )

    flags = struct.unpack_from("<H", payload, 0)[0]
    power = struct.unpack_from("<h", payload, 2)[0]
    if not flags & CP_FLAG_CRANK_REVOLUTION_DATA_PRESENT:
        return CyclingPowerMeasurement(power=power)

    cursor = 4
    if flags & CP_FLAG_PEDAL_POWER_BALANCE_PRESENT:
        cursor += 1
    if flags & CP_FLAG_ACCUMULATED_TORQUE_PRESENT:
        cursor += 2
    if flags & CP_FLAG_WHEEL_REVOLUTION_DATA_PRESENT:
        cursor += 6
    if cursor + 4 > len(payload):
        # Crank data flagged but truncated; keep the power reading.
        return CyclingPowerMeasurement(power=power)

    crank_revs, crank_event_time = struct.unpack_from("<HH", payload, cursor)
    cadence: Optional[float] = None
    if (
        previous is not None
        and previous.crank_revolutions is not None
        and previous.crank_event_time is not None
    ):
        delta_revs = (crank_revs - previous.crank_revolutions) & 0xFFFF
        delta_ticks = (crank_event_time - previous.crank_event_time) & 0xFFFF
        if delta_ticks > 0:
            cadence = (delta_revs * 60.0 * _CRANK_TICKS_PER_SECOND) / delta_ticks
        elif delta_revs == 0 and power == 0:
            # Some trainers repeat identical crank samples while stopped.
            cadence = 0.0

    return CyclingPowerMeasurement(
        power=power,
        cadence=cadence,
        crank_revolutions=crank_revs,
        crank_event_time=crank_event_time,
    )


def decode_heart_rate(payload: bytes) -> HeartRateMeasurement:
    """Decode a Heart Rate Measurement (0x2A37)."""
    if len(payload) < 2:
        raise DeviceParseError(f"Heart Rate Measurement too short: {len(payload)} bytes")

    flags = payload[0]
    if flags & HR_FLAG_VALUE_UINT16:
        if len(payload) < 3:
            raise DeviceParseError(
                "Heart Rate Measurement flags a 16-bit value but payload has "
                f"{len(payload)} bytes"
            )
        return HeartRateMeasurement(heart_rate=struct.unpack_from("<H", payload, 1)[0])
    return HeartRateMeasurement(heart_rate=payload[1])


def decode_ieee11073_float(raw: int) -> float:
    """Decode an IEEE-11073 32-bit FLOAT (8-bit exponent, 24-bit mantissa)."""
    mantissa = raw & 0x00FFFFFF
    if mantissa in _FLOAT_SPECIAL_MANTISSAS:
        raise DeviceParseError(f"IEEE-11073 special value 0x{mantissa:06X}")
    exponent = (raw >> 24) & 0xFF
    if exponent >= 0x80:
        exponent -= 0x100
    if mantissa >= 0x800000:
        mantissa -= 0x1000000
    return mantissa * math.pow(10, exponent)


def decode_health_thermometer(payload: bytes) -> TemperatureMeasurement:
    """Decode a Temperature Measurement (0x2A1C) into degrees Celsius."""
    if len(payload) < 5:
        raise DeviceParseError(f"Temperature Measurement too short: {len(payload)} bytes")

    flags = payload[0]
    raw = struct.unpack_from("<I", payload, 1)[0]
    value = decode_ieee11073_float(raw)
    if flags & HT_FLAG_FAHRENHEIT:
        value = (value - 32.0) * 5.0 / 9.0
    return TemperatureMeasurement(core_temp=round(value, 2))


def _require_bytes(data: bytes, cursor: int, size: int) -> None:
    if cursor + size > len(data):
        raise DeviceParseError(
            f"Invalid Indoor Bike Data payload: expected {size} bytes at offset {cursor}"
        )


def _decode_indoor_bike_data(
    payload: bytes, *, speed_present: bool
) -> tuple[IndoorBikeData, int]:
    raw_flags = struct.unpack_from("<H", payload, 0)[0]
    flags = parse_indoor_bike_flags(raw_flags)
    cursor = 2

    speed: Optional[float] = None
    if speed_present:
        _require_bytes(payload, cursor, 2)
        speed = struct.unpack_from("<H", payload, cursor)[0] / 100.0
        cursor += 2

    if flags.average_speed_present:
        _require_bytes(payload, cursor, 2)
        cursor += 2

    cadence: Optional[float] = None
    if flags.instantaneous_cadence_present:
        _require_bytes(payload, cursor, 2)
        cadence = struct.unpack_from("<H", payload, cursor)[0] / 2.0
        cursor += 2

    # Fields between cadence and power, skipped by size.
    for present, size in (
        (flags.average_cadence_present, 2),
        (flags.total_distance_present, 3),
        (flags.resistance_level_present, 2),
    ):
        if present:
            _require_bytes(payload, cursor, size)
            cursor += size

    power: Optional[int] = None
    if flags.instantaneous_power_present:
        _require_bytes(payload, cursor, 2)
        power = struct.unpack_from("<h", payload, cursor)[0]
        cursor += 2

    for present, size in (
        (flags.average_power_present, 2),
        (flags.expended_energy_present, 5),
        (flags.heart_rate_present, 1),
        (flags.metabolic_equivalent_present, 1),
        (flags.elapsed_time_present, 2),
        (flags.remaining_time_present, 2),
    ):
        if present:
            _require_bytes(payload, cursor, size)
            cursor += size

    return IndoorBikeData(power=power, cadence=cadence, speed=speed), cursor


def _plausibility_score(metrics: IndoorBikeData) -> int:
    score = 0
    if metrics.cadence is not None and not 0 <= metrics.cadence <= 220:
        score += 1000
    if metrics.power is not None and not -200 <= metrics.power <= 3000:
        score += 1000
    if metrics.speed is not None and not 0 <= metrics.speed <= 130:
        score += 1000
    return score


def decode_indoor_bike_data(payload: bytes) -> IndoorBikeData:
    """Decode an FTMS Indoor Bike Data notification (0x2AD2)."""
    if len(payload) < 2:
        raise DeviceParseError("Indoor Bike Data payload too short")

    flags = parse_indoor_bike_flags(struct.unpack_from("<H", payload, 0)[0])
    # Speed is present when "more data" is clear; some devices get this wrong,
    # so both alignments are tried.
    preferred_speed_present = not flags.more_data
    candidates: list[tuple[int, int, IndoorBikeData]] = []
    errors: list[DeviceParseError] = []

    for speed_present in (preferred_speed_present, not preferred_speed_present):
        try:
            metrics, cursor = _decode_indoor_bike_data(payload, speed_present=speed_present)
        except DeviceParseError as exc:
            errors.append(exc)
            continue
        candidates.append((_plausibility_score(metrics), len(payload) - cursor, metrics))

    if not candidates:
        raise errors[0]

    # Prefer plausible values, then the tighter decode.
    candidates.sort(key=lambda item: (item[0], item[1]))
    return candidates[0][2]

from __future__ import annotations

import struct

import pytest

from lactate_engine.ble.constants import parse_indoor_bike_flags
from lactate_engine.ble.ftms_client import (
    build_set_target_power_command,
    normalize_power_target,
    parse_control_response,
)
from lactate_engine.ble.gatt_decoder import decode_indoor_bike_data
from lactate_engine.core.errors import DeviceParseError


def test_parse_indoor_bike_flags_power_and_cadence_present() -> None:
    flags = parse_indoor_bike_flags(0x0044)
    assert flags.instantaneous_cadence_present is True
    assert flags.instantaneous_power_present is True
    assert flags.average_speed_present is False


def test_decode_indoor_bike_data_power_and_cadence() -> None:
    # Flags: cadence + power present. "More Data" is not set, so payload starts with
    # instantaneous speed (2 bytes) before cadence and power.
    payload = (
        struct.pack("<H", 0x0044)
        + struct.pack("<H", 3000)  # 30.00 km/h instantaneous speed
        + struct.pack("<H", 176)   # 88.0 rpm cadence (0.5 rpm units)
        + struct.pack("<h", 182)   # 182 W
    )

    data = decode_indoor_bike_data(payload)

    assert data.cadence == 88.0
    assert data.power == 182
    assert data.speed == 30.0
    assert data.as_update() == {"power": 182, "cadence": 88.0, "speed": 30.0}


def test_decode_indoor_bike_data_negative_power() -> None:
    # Set "More Data" so instantaneous speed is not present.
    payload = struct.pack("<H", 0x0041) + struct.pack("<h", -10)

    data = decode_indoor_bike_data(payload)

    assert data.cadence is None
    assert data.speed is None
    assert data.power == -10


def test_decode_indoor_bike_data_fallback_when_speed_present_with_more_data_flag() -> None:
    # Device quirk: more_data is set but payload still includes instantaneous speed.
    payload = (
        struct.pack("<H", 0x0045)
        + struct.pack("<H", 2500)  # 25.00 km/h instantaneous speed
        + struct.pack("<H", 170)   # 85.0 rpm cadence
        + struct.pack("<h", 260)   # 260 W
    )

    data = decode_indoor_bike_data(payload)

    assert data.cadence == 85.0
    assert data.power == 260


def test_decode_indoor_bike_data_truncated_payload() -> None:
    with pytest.raises(DeviceParseError):
        decode_indoor_bike_data(struct.pack("<H", 0x0044) + b"\x01")


def test_normalize_power_target_clamps_to_supported_range() -> None:
    assert normalize_power_target(20, 30, 400, 5) == 30
    assert normalize_power_target(420, 30, 400, 5) == 400


def test_normalize_power_target_aligns_to_increment() -> None:
    assert normalize_power_target(33, 30, 400, 5) == 35
    assert normalize_power_target(32, 30, 400, 5) == 30


def test_build_set_target_power_command() -> None:
    assert build_set_target_power_command(250) == bytes([0x05, 0xFA, 0x00])
    assert build_set_target_power_command(-5) == bytes([0x05, 0x00, 0x00])
    assert build_set_target_power_command(5000) == bytes([0x05]) + struct.pack("<h", 2000)


def test_parse_control_response() -> None:
    ok = parse_control_response(bytes([0x80, 0x05, 0x01]))
    assert ok is not None
    assert ok.request_opcode == 0x05
    assert ok.success is True

    refused = parse_control_response(bytes([0x80, 0x00, 0x05]))
    assert refused is not None
    assert refused.success is False
    assert refused.message == "control not permitted"


def test_parse_control_response_ignores_other_indications() -> None:
    assert parse_control_response(bytes([0x05, 0xFA, 0x00])) is None
    assert parse_control_response(bytes([0x80, 0x05])) is None

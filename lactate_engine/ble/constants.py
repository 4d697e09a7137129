"""Bluetooth SIG UUIDs, FTMS opcodes and flag bits used by the sensor adapters."""

from __future__ import annotations

from dataclasses import dataclass

HEART_RATE_SERVICE_UUID = "0000180d-0000-1000-8000-00805f9b34fb"
HEART_RATE_MEASUREMENT_CHAR_UUID = "00002a37-0000-1000-8000-00805f9b34fb"
HEALTH_THERMOMETER_SERVICE_UUID = "00001809-0000-1000-8000-00805f9b34fb"
TEMPERATURE_MEASUREMENT_CHAR_UUID = "00002a1c-0000-1000-8000-00805f9b34fb"
CYCLING_POWER_SERVICE_UUID = "00001818-0000-1000-8000-00805f9b34fb"
CYCLING_POWER_MEASUREMENT_CHAR_UUID = "00002a63-0000-1000-8000-00805f9b34fb"
FTMS_SERVICE_UUID = "00001826-0000-1000-8000-00805f9b34fb"
INDOOR_BIKE_DATA_CHAR_UUID = "00002ad2-0000-1000-8000-00805f9b34fb"
FITNESS_MACHINE_CONTROL_POINT_CHAR_UUID = "00002ad9-0000-1000-8000-00805f9b34fb"
SUPPORTED_POWER_RANGE_CHAR_UUID = "00002ad8-0000-1000-8000-00805f9b34fb"
CYCLING_SPEED_CADENCE_SERVICE_UUID = "00001816-0000-1000-8000-00805f9b34fb"
CSC_MEASUREMENT_CHAR_UUID = "00002a5b-0000-1000-8000-00805f9b34fb"

# Fitness Machine Control Point opcodes (FTMS)
OP_REQUEST_CONTROL = 0x00
OP_SET_TARGET_POWER = 0x05
OP_START_RESUME = 0x07
OP_RESPONSE_CODE = 0x80

# Fitness Machine Control Point result codes
RESULT_SUCCESS = 0x01
RESULT_NOT_SUPPORTED = 0x02
RESULT_INVALID_PARAMETER = 0x03
RESULT_OPERATION_FAILED = 0x04
RESULT_CONTROL_NOT_PERMITTED = 0x05

CONTROL_RESULT_MESSAGES: dict[int, str] = {
    RESULT_SUCCESS: "success",
    RESULT_NOT_SUPPORTED: "operation not supported",
    RESULT_INVALID_PARAMETER: "invalid parameter",
    RESULT_OPERATION_FAILED: "operation failed",
    RESULT_CONTROL_NOT_PERMITTED: "control not permitted",
}

# Heart Rate Measurement flags
HR_FLAG_VALUE_UINT16 = 1 << 0

# Health Thermometer flags
HT_FLAG_FAHRENHEIT = 1 << 0

# Cycling Power Measurement flags
CP_FLAG_PEDAL_POWER_BALANCE_PRESENT = 1 << 0
CP_FLAG_ACCUMULATED_TORQUE_PRESENT = 1 << 2
CP_FLAG_WHEEL_REVOLUTION_DATA_PRESENT = 1 << 4
CP_FLAG_CRANK_REVOLUTION_DATA_PRESENT = 1 << 5

# CSC Measurement flags
CSC_FLAG_WHEEL_REVOLUTION_DATA_PRESENT = 1 << 0
CSC_FLAG_CRANK_REVOLUTION_DATA_PRESENT = 1 << 1

# Indoor Bike Data flags
FLAG_MORE_DATA = 1 << 0
FLAG_AVERAGE_SPEED_PRESENT = 1 << 1
FLAG_INSTANTANEOUS_CADENCE_PRESENT = 1 << 2
FLAG_AVERAGE_CADENCE_PRESENT = 1 << 3
FLAG_TOTAL_DISTANCE_PRESENT = 1 << 4
FLAG_RESISTANCE_LEVEL_PRESENT = 1 << 5
FLAG_INSTANTANEOUS_POWER_PRESENT = 1 << 6
FLAG_AVERAGE_POWER_PRESENT = 1 << 7
FLAG_EXPENDED_ENERGY_PRESENT = 1 << 8
FLAG_HEART_RATE_PRESENT = 1 << 9
FLAG_METABOLIC_EQUIVALENT_PRESENT = 1 << 10
FLAG_ELAPSED_TIME_PRESENT = 1 << 11
FLAG_REMAINING_TIME_PRESENT = 1 << 12


@dataclass(frozen=True)
class IndoorBikeDataFlags:
    more_data: bool
    average_speed_present: bool
    instantaneous_cadence_present: bool
    average_cadence_present: bool
    total_distance_present: bool
    resistance_level_present: bool
    instantaneous_power_present: bool
    average_power_present: bool
    expended_energy_present: bool
    heart_rate_present: bool
    metabolic_equivalent_present: bool
    elapsed_time_present: bool
    remaining_time_present: bool


def parse_indoor_bike_flags(raw_flags: int) -> IndoorBikeDataFlags:
    """Decode FTMS Indoor Bike Data flags into a typed structure."""
    return IndoorBikeDataFlags(
        more_data=bool(raw_flags & FLAG_MORE_DATA),
        average_speed_present=bool(raw_flags & FLAG_AVERAGE_SPEED_PRESENT),
        instantaneous_cadence_present=bool(raw_flags & FLAG_INSTANTANEOUS_CADENCE_PRESENT),
        average_cadence_present=bool(raw_flags & FLAG_AVERAGE_CADENCE_PRESENT),
        total_distance_present=bool(raw_flags & FLAG_TOTAL_DISTANCE_PRESENT),
        resistance_level_present=bool(raw_flags & FLAG_RESISTANCE_LEVEL_PRESENT),
        instantaneous_power_present=bool(raw_flags & FLAG_INSTANTANEOUS_POWER_PRESENT),
        average_power_present=bool(raw_flags & FLAG_AVERAGE_POWER_PRESENT),
        expended_energy_present=bool(raw_flags & FLAG_EXPENDED_ENERGY_PRESENT),
        heart_rate_present=bool(raw_flags & FLAG_HEART_RATE_PRESENT),
        metabolic_equivalent_present=bool(raw_flags & FLAG_METABOLIC_EQUIVALENT_PRESENT),
        elapsed_time_present=bool(raw_flags & FLAG_ELAPSED_TIME_PRESENT),
        remaining_time_present=bool(raw_flags & FLAG_REMAINING_TIME_PRESENT),
    )

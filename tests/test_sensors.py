"""Tests for clamped numeric sensors."""

import math

import pytest

from accessories import (
    EnergyImportSensor,
    PowerConsumptionSensor,
    PowerReturnSensor,
    VoltageSensor,
)
from fakes.fake_reader import make_registers
from obis_power_lib.models import DeviceIdentity

IDENTITY = DeviceIdentity(product_name="EMH eHZ", serial="1EMH0012345678")
FLOOR = 0.0001
CEILING = 100000.0


@pytest.mark.parametrize(
    "value, expected",
    [
        (874.0, 874.0),
        (0.0, FLOOR),
        (-10.0, FLOOR),
        (math.nan, FLOOR),
        (math.inf, FLOOR),
        (FLOOR / 2, FLOOR / 2),
        (250000.0, CEILING),
    ],
)
def test_power_consumption_clamp(value, expected) -> None:
    sensor = PowerConsumptionSensor(IDENTITY)

    sensor.publish_active_power(value)

    assert sensor.value == expected


def test_power_return_shows_export_magnitude() -> None:
    sensor = PowerReturnSensor(IDENTITY)

    sensor.publish_active_power(-1500.0)
    assert sensor.value == 1500.0
    assert sensor.raw == 1500.0

    sensor.publish_active_power(300.0)
    assert sensor.value == FLOOR


def test_initial_value_is_floor() -> None:
    sensor = PowerConsumptionSensor(IDENTITY)

    assert sensor.value == FLOOR
    assert math.isnan(sensor.raw)
    assert sensor.updated_at is None


def test_accessory_information() -> None:
    sensor = EnergyImportSensor(IDENTITY)

    assert sensor.manufacturer == "ObisPower"
    assert sensor.model == "EMH eHZ Energy Import"
    assert sensor.serial_number == "1EMH0012345678-energy-import-kwh"


def test_energy_import_reads_kwh() -> None:
    sensor = EnergyImportSensor(IDENTITY)

    sensor.publish_auxiliary(make_registers({"1-0:1.8.0*255": "12345.6789 kWh"}))
    assert sensor.value == pytest.approx(12345.6789)

    sensor.publish_auxiliary(make_registers({"1-0:1.8.0": "5000 Wh"}))
    assert sensor.value == pytest.approx(5.0)


def test_energy_import_missing_register_shows_floor() -> None:
    sensor = EnergyImportSensor(IDENTITY)

    sensor.publish_auxiliary({})

    assert sensor.value == FLOOR
    assert sensor.snapshot()["raw"] is None


@pytest.mark.parametrize("phase, code", [(1, "32.7.0"), (2, "52.7.0"), (3, "72.7.0")])
def test_voltage_phase_registers(phase, code) -> None:
    sensor = VoltageSensor(IDENTITY, phase)
    registers = make_registers({
        "1-0:32.7.0*255": "230.1 V",
        "1-0:52.7.0*255": "231.2 V",
        "1-0:72.7.0*255": "0.2293 kV",
    })

    sensor.publish_auxiliary(registers)

    assert sensor.name == f"Voltage L{phase}"
    assert sensor.code == code
    assert sensor.value == pytest.approx({1: 230.1, 2: 231.2, 3: 229.3}[phase])


def test_voltage_invalid_phase() -> None:
    with pytest.raises(ValueError):
        VoltageSensor(IDENTITY, 4)


def test_snapshot_fields() -> None:
    sensor = PowerConsumptionSensor(IDENTITY)
    sensor.publish_active_power(42.0)

    snapshot = sensor.snapshot()

    assert snapshot["kind"] == "power_consumption"
    assert snapshot["value"] == 42.0
    assert snapshot["unit"] == "W"
    assert snapshot["updated_at"] is not None

"""Tests for the active power fallback ladder.

Tests verify:
- Priority order (net total, import/export, phase import/export, phase sum)
- Both register id spellings
- kW scaling and comma decimals
- NaN/NOT_FOUND when nothing usable is present
"""

import math

import pytest

from fakes.fake_reader import make_registers
from obis_power_lib.models import Measurement, MeasurementValue, PowerSource
from obis_power_lib.resolver import resolve_active_power


def test_net_total_wins() -> None:
    """Test that a net total is returned as is, even beside import/export."""
    registers = make_registers({
        "1-0:16.7.0*255": "874 W",
        "1-0:1.7.0*255": "500 W",
        "1-0:2.7.0*255": "120 W",
    })

    result = resolve_active_power(registers)

    assert result.value == 874
    assert result.source == PowerSource.NET_TOTAL
    assert result.found


def test_negative_net_total_is_export() -> None:
    registers = make_registers({"1-0:16.7.0*255": "-1234.5 W"})

    result = resolve_active_power(registers)

    assert result.value == pytest.approx(-1234.5)
    assert result.source == PowerSource.NET_TOTAL


def test_net_total_short_spelling() -> None:
    """Test that the id without media selector is found too."""
    registers = make_registers({"1-0:16.7.0": "42 W"})

    result = resolve_active_power(registers)

    assert result.value == 42
    assert result.source == PowerSource.NET_TOTAL


def test_net_total_in_kw_is_scaled() -> None:
    registers = make_registers({"1-0:16.7.0*255": "1,5 kW"})

    assert resolve_active_power(registers).value == pytest.approx(1500.0)


def test_import_minus_export() -> None:
    registers = make_registers({"1-0:1.7.0*255": "500 W", "1-0:2.7.0*255": "120 W"})

    result = resolve_active_power(registers)

    assert result.value == 380
    assert result.source == PowerSource.IMPORT_MINUS_EXPORT


@pytest.mark.parametrize(
    "mapping, expected",
    [
        ({"1-0:1.7.0*255": "500 W"}, 500.0),
        ({"1-0:2.7.0": "120 W"}, -120.0),
        ({"1-0:1.7.0*255": "n/a", "1-0:2.7.0*255": "120 W"}, -120.0),
    ],
)
def test_import_export_missing_side_counts_as_zero(mapping, expected) -> None:
    result = resolve_active_power(make_registers(mapping))

    assert result.value == expected
    assert result.source == PowerSource.IMPORT_MINUS_EXPORT


def test_unparseable_net_total_falls_through() -> None:
    """Test that a net total without a number is treated as absent."""
    registers = make_registers({"1-0:16.7.0*255": "error", "1-0:1.7.0*255": "300 W"})

    result = resolve_active_power(registers)

    assert result.value == 300
    assert result.source == PowerSource.IMPORT_MINUS_EXPORT


def test_phase_import_export_sum() -> None:
    registers = make_registers({
        "1-0:21.7.0*255": "100 W",
        "1-0:41.7.0*255": "200 W",
        "1-0:61.7.0*255": "300 W",
        "1-0:22.7.0*255": "50 W",
    })

    result = resolve_active_power(registers)

    assert result.value == 550
    assert result.source == PowerSource.PHASE_IMPORT_EXPORT_SUM


def test_phase_export_only_is_negative() -> None:
    registers = make_registers({"1-0:22.7.0": "80 W", "1-0:42.7.0": "20 W"})

    result = resolve_active_power(registers)

    assert result.value == -100
    assert result.source == PowerSource.PHASE_IMPORT_EXPORT_SUM


def test_phase_instantaneous_sum() -> None:
    registers = make_registers({
        "1-0:36.7.0*255": "10 W",
        "1-0:56.7.0*255": "20 W",
        "1-0:76.7.0*255": "-5 W",
    })

    result = resolve_active_power(registers)

    assert result.value == 25
    assert result.source == PowerSource.PHASE_INSTANTANEOUS_SUM


def test_zero_phase_sums_are_not_found() -> None:
    """Test that all-zero phase values do not count as a result."""
    registers = make_registers({
        "1-0:21.7.0*255": "0 W",
        "1-0:22.7.0*255": "0 W",
        "1-0:36.7.0*255": "0 W",
    })

    result = resolve_active_power(registers)

    assert math.isnan(result.value)
    assert result.source == PowerSource.NOT_FOUND
    assert not result.found


def test_empty_map_is_not_found() -> None:
    result = resolve_active_power({})

    assert math.isnan(result.value)
    assert result.source == PowerSource.NOT_FOUND


def test_unrelated_registers_are_not_found() -> None:
    registers = make_registers({"1-0:1.8.0*255": "12345.6 kWh", "1-0:32.7.0*255": "230 V"})

    assert resolve_active_power(registers).source == PowerSource.NOT_FOUND


def test_structured_value_without_text() -> None:
    """Test that the first structured value is used when there is no rendering."""
    registers = {
        "1-0:16.7.0*255": Measurement(
            obis_id="1-0:16.7.0*255", text=None, values=(MeasurementValue(2.5, "kW"),)
        )
    }

    result = resolve_active_power(registers)

    assert result.value == pytest.approx(2500.0)
    assert result.source == PowerSource.NET_TOTAL

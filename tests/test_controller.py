"""Tests for MeterController orchestration with scripted readers."""

import time
from pathlib import Path

import pytest

from fakes.fake_reader import FakeReaderFactory, frame, read_error
from obis_power_lib.controller import MeterController, debug_override
from obis_power_lib.errors import InvalidOptionValue, ReadError
from obis_power_lib.models import LoopState, PlatformConfig, ValidationState

METER = {
    "1-0:96.50.1*1": "EMH",
    "1-0:96.1.0*255": "1EMH0012345678",
    "1-0:1.8.0*255": "12345.6 kWh",
    "1-0:16.7.0*255": "-874 W",
    "1-0:32.7.0*255": "230.1 V",
    "1-0:52.7.0*255": "231.2 V",
    "1-0:72.7.0*255": "229.3 V",
}


def make_config(tmp_path: Path, **kwargs) -> PlatformConfig:
    kwargs.setdefault("serial_port", "/dev/fake")
    kwargs.setdefault("poll_interval_s", 60.0)
    kwargs.setdefault("history_path", str(tmp_path))
    return PlatformConfig(**kwargs)


def wait_for(predicate, timeout: float = 2.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return False


@pytest.mark.parametrize(
    "env, configured, expected",
    [
        ({}, 1, 1),
        ({"OBIS_DEBUG": "2"}, 0, 2),
        ({"OBIS_DEBUG": "0"}, 2, 0),
        ({"OBIS_DEBUG": "7"}, 0, 2),
        ({"OBIS_DEBUG": "-1"}, 1, 1),
        ({"OBIS_DEBUG": "verbose"}, 1, 1),
    ],
)
def test_debug_override(env, configured, expected) -> None:
    assert debug_override(env, configured) == expected


def test_debug_override_read_at_construction(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.setenv("OBIS_DEBUG", "2")
    controller = MeterController(make_config(tmp_path), FakeReaderFactory())
    monkeypatch.setenv("OBIS_DEBUG", "0")

    assert controller.debug == 2


def test_initialize_full_pipeline(tmp_path: Path) -> None:
    """Test that validation, sensors, histories and the loop come up together."""
    factory = FakeReaderFactory([frame(METER)])
    controller = MeterController(make_config(tmp_path), factory, environ={})

    assert controller.initialize()
    try:
        assert controller.validation.state == ValidationState.SUCCEEDED
        assert controller.identity.serial == "1EMH0012345678"
        assert sorted(controller.sensors) == [
            "energy_import",
            "power_consumption",
            "power_return",
            "voltage_l1",
            "voltage_l2",
            "voltage_l3",
        ]
        assert sorted(controller.histories) == ["energy", "voltage"]
        assert controller.is_polling()

        sensors = controller.sensors
        assert wait_for(lambda: sensors["power_return"].value == 874.0)
        assert sensors["power_consumption"].value == 0.0001
        assert sensors["energy_import"].value == pytest.approx(12345.6)
        assert sensors["voltage_l3"].value == pytest.approx(229.3)
        assert sensors["power_return"].serial_number == "1EMH0012345678-power-return"

        energy = controller.histories["energy"]
        assert wait_for(lambda: len(energy) == 1)
        assert energy.get_latest()["power"] == -874.0
    finally:
        controller.shutdown()

    assert controller.loop.state == LoopState.STOPPED
    assert (tmp_path / "history_energy.csv").exists()


def test_hidden_sensors_are_not_built(tmp_path: Path) -> None:
    config = make_config(
        tmp_path,
        hide_power_return=True,
        hide_voltage=True,
        history_enabled=False,
    )
    controller = MeterController(config, FakeReaderFactory([frame(METER)]), environ={})

    assert controller.initialize()
    controller.shutdown()

    assert sorted(controller.sensors) == ["energy_import", "power_consumption"]
    assert controller.histories == {}


def test_missing_serial_port(tmp_path: Path) -> None:
    factory = FakeReaderFactory([frame(METER)])
    controller = MeterController(make_config(tmp_path, serial_port=""), factory, environ={})

    assert not controller.initialize()

    assert isinstance(controller.config_error, InvalidOptionValue)
    assert "serial_port" in str(controller.config_error)
    assert factory.opens == 0
    assert controller.loop is None


def test_invalid_option_value(tmp_path: Path) -> None:
    controller = MeterController(
        make_config(tmp_path, parity="sideways"), FakeReaderFactory(), environ={}
    )

    assert not controller.initialize()
    assert isinstance(controller.config_error, InvalidOptionValue)


def test_validation_failure_never_arms_loop(tmp_path: Path) -> None:
    factory = FakeReaderFactory([read_error("no echo")])
    controller = MeterController(make_config(tmp_path), factory, environ={})

    assert not controller.initialize()

    assert controller.validation.state == ValidationState.FAILED
    assert isinstance(controller.validation.error, ReadError)
    assert controller.loop is None
    assert controller.sensors == {}
    assert not controller.is_polling()
    assert controller.status()["error"] is not None


def test_shutdown_without_initialize(tmp_path: Path) -> None:
    controller = MeterController(make_config(tmp_path), FakeReaderFactory(), environ={})

    controller.shutdown()
    controller.shutdown()

    assert controller.status()["loop"] is None

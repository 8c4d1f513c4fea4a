"""Tests for the startup ValidationPhase state machine."""

import pytest

from fakes.fake_reader import FakeReaderFactory, empty_frame, frame, read_error
from obis_power_lib.acquisition import AcquisitionCycle
from obis_power_lib.errors import CycleTimeout, ReadError, TransportOpenError, ValidationFailed
from obis_power_lib.models import ObisOptions, ValidationState
from obis_power_lib.validation import ValidationPhase

OPTIONS = ObisOptions(transport_serial_port="/dev/null-meter", request_interval=0)

METER = {
    "1-0:96.50.1*1": "EMH",
    "1-0:96.1.0*255": "1EMH0012345678",
    "1-0:0.2.0*0": "03.02",
    "1-0:16.7.0*255": "874 W",
}


def test_success_captures_identity() -> None:
    phase = ValidationPhase(AcquisitionCycle(FakeReaderFactory([frame(METER)], sync=True)))
    assert phase.state == ValidationState.IDLE
    assert phase.identity is None

    assert phase.run(OPTIONS)

    assert phase.state == ValidationState.SUCCEEDED
    assert phase.identity is not None
    assert phase.identity.product_name == "EMH"
    assert phase.identity.serial == "1EMH0012345678"
    assert phase.identity.firmware_version == "03.02"
    assert phase.error is None


def test_missing_identity_fields_are_unknown() -> None:
    factory = FakeReaderFactory([frame({"1-0:16.7.0": "1 W"})], sync=True)
    phase = ValidationPhase(AcquisitionCycle(factory))

    assert phase.run(OPTIONS)

    assert phase.identity.serial == "Unknown"
    assert phase.identity.product_name == "Unknown"


def test_read_error_fails() -> None:
    factory = FakeReaderFactory([read_error("crc")], sync=True)
    phase = ValidationPhase(AcquisitionCycle(factory))

    assert not phase.run(OPTIONS)

    assert phase.state == ValidationState.FAILED
    assert isinstance(phase.error, ReadError)
    assert phase.identity is None


def test_timeout_fails() -> None:
    factory = FakeReaderFactory([empty_frame()])
    phase = ValidationPhase(AcquisitionCycle(factory), deadline_s=0.05)

    assert not phase.run(OPTIONS)

    assert phase.state == ValidationState.FAILED
    assert isinstance(phase.error, CycleTimeout)


def test_open_error_fails() -> None:
    factory = FakeReaderFactory(open_error=TransportOpenError("busy"))
    phase = ValidationPhase(AcquisitionCycle(factory))

    assert not phase.run(OPTIONS)

    assert isinstance(phase.error, TransportOpenError)


def test_runs_at_most_once() -> None:
    factory = FakeReaderFactory([frame(METER)], sync=True)
    phase = ValidationPhase(AcquisitionCycle(factory))
    phase.run(OPTIONS)

    with pytest.raises(ValidationFailed):
        phase.run(OPTIONS)

    assert factory.opens == 1
    assert phase.state == ValidationState.SUCCEEDED

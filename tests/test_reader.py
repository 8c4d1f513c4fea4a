"""Tests for MeasurementReader over FakeSerial and local files, and option validation."""

import threading
from pathlib import Path
from typing import List, Optional, Tuple

import pytest

from fakes.fake_serial import FakeSerial
from fakes.fake_sml import DEFAULT_SML_ENTRIES, DEFAULT_SML_FRAME, build_sml_frame
from obis_power_lib import protocol
from obis_power_lib.acquisition import AcquisitionCycle
from obis_power_lib.errors import InvalidOptionValue, ReadError, TransportOpenError
from obis_power_lib.models import ObisOptions, PlatformConfig, RegisterMap, Settled
from obis_power_lib.parsing import extract_device_identity, to_kwh, to_volts, to_watts
from obis_power_lib.reader import MeasurementReader
from obis_power_lib.resolver import resolve_active_power
from obis_power_lib.transport import Transport

D0_TELEGRAM = """/ESY5Q3DA1004 V3.04

1-0:96.1.0*255(1ESY1160123456)
1-0:1.8.0*255(00012345.6789*kWh)
1-0:16.7.0*255(000874.00*W)
!
"""


class Collector:
    """Reader callback that records calls and signals the first register map."""

    def __init__(self) -> None:
        self.calls: List[Tuple[Optional[Exception], RegisterMap]] = []
        self.got_frame = threading.Event()

    def __call__(self, error: Optional[Exception], registers: RegisterMap) -> None:
        self.calls.append((error, registers))
        self.got_frame.set()

    def first(self) -> Tuple[Optional[Exception], RegisterMap]:
        assert self.got_frame.wait(timeout=2.0), "No frame received"
        return self.calls[0]


def d0_options(**kwargs) -> ObisOptions:
    kwargs.setdefault("transport", protocol.TRANSPORT_SERIAL_REQUEST_RESPONSE)
    kwargs.setdefault("transport_serial_port", "/dev/fake")
    kwargs.setdefault("request_interval", 0.05)
    return ObisOptions(protocol=protocol.PROTOCOL_D0, **kwargs)


def sml_options(**kwargs) -> ObisOptions:
    kwargs.setdefault("transport_serial_port", "/dev/fake")
    kwargs.setdefault("request_interval", 0.05)
    return ObisOptions(protocol=protocol.PROTOCOL_SML, **kwargs)


def sml_file_options(path: Path, **kwargs) -> ObisOptions:
    return sml_options(
        transport=protocol.TRANSPORT_LOCAL_FILE, transport_local_file_path=str(path), **kwargs
    )


# ============================================================================
# D0 over serial
# ============================================================================


def test_d0_request_response() -> None:
    """Test that the reader sends the request and parses the answer."""
    fake_serial = FakeSerial()
    collector = Collector()
    reader = MeasurementReader.open(d0_options(), collector, serial_port=fake_serial)

    reader.process()
    error, registers = collector.first()
    reader.stop()

    assert error is None
    assert fake_serial.requests >= 1
    assert to_watts(registers["1-0:16.7.0*255"]) == 874
    assert "1-0:32.7.0*255" in registers


def test_d0_push_mode() -> None:
    fake_serial = FakeSerial(push_interval_s=0.05)
    collector = Collector()
    options = d0_options(transport=protocol.TRANSPORT_SERIAL_RESPONSE)
    reader = MeasurementReader.open(options, collector, serial_port=fake_serial)

    reader.process()
    error, registers = collector.first()
    reader.stop()

    assert error is None
    assert fake_serial.requests == 0
    assert resolve_active_power(registers).value == 874


def test_cycle_with_real_reader() -> None:
    """Test a full acquisition cycle against the fake meter."""
    fake_serial = FakeSerial(registers={"1-0:1.7.0*255": "0.5*kW", "1-0:2.7.0*255": "0.12*kW"})
    cycle = AcquisitionCycle(
        lambda options, callback: MeasurementReader.open(options, callback, serial_port=fake_serial)
    )

    outcome = cycle.run(d0_options(), deadline_s=2.0)

    assert isinstance(outcome, Settled)
    assert resolve_active_power(outcome.registers).value == pytest.approx(380.0)
    assert not fake_serial.is_open


def test_stop_is_idempotent_and_closes_port() -> None:
    fake_serial = FakeSerial()
    reader = MeasurementReader.open(d0_options(), Collector(), serial_port=fake_serial)

    reader.process()
    reader.stop()
    reader.stop()

    assert not fake_serial.is_open
    with pytest.raises(ReadError):
        reader.process()


def test_process_twice_raises() -> None:
    reader = MeasurementReader.open(d0_options(), Collector(), serial_port=FakeSerial())
    reader.process()
    try:
        with pytest.raises(ReadError):
            reader.process()
    finally:
        reader.stop()


def test_closed_port_reports_read_error() -> None:
    fake_serial = FakeSerial()
    fake_serial.close()
    collector = Collector()
    reader = MeasurementReader.open(d0_options(), collector, serial_port=fake_serial)

    reader.process()
    error, registers = collector.first()
    reader.stop()

    assert isinstance(error, ReadError)
    assert registers == {}


# ============================================================================
# SML
# ============================================================================


def test_local_sml_frame(tmp_path: Path) -> None:
    """Test decoding a full SML frame: scalers, units and identity octets."""
    frame_file = tmp_path / "frame.bin"
    frame_file.write_bytes(DEFAULT_SML_FRAME)
    collector = Collector()

    reader = MeasurementReader.open(sml_file_options(frame_file), collector)
    reader.process()
    error, registers = collector.first()
    reader.stop()

    assert error is None
    assert len(registers) == len(DEFAULT_SML_ENTRIES)
    assert to_watts(registers["1-0:16.7.0*255"]) == pytest.approx(874.0)
    assert resolve_active_power(registers).value == pytest.approx(874.0)
    assert to_kwh(registers["1-0:1.8.0*255"]) == pytest.approx(12345.6789)
    assert to_volts(registers["1-0:32.7.0*255"]) == pytest.approx(230.1)

    identity = extract_device_identity(registers)
    assert identity.product_name == "ZPA"
    assert identity.serial == "0a014553591103b5c3a2"
    assert identity.firmware_version == "v1.2"


def test_sml_frame_over_serial() -> None:
    fake_serial = FakeSerial(push_interval_s=0.05, sml_frame=DEFAULT_SML_FRAME)
    collector = Collector()
    reader = MeasurementReader.open(sml_options(), collector, serial_port=fake_serial)

    reader.process()
    error, registers = collector.first()
    reader.stop()

    assert error is None
    assert fake_serial.requests == 0
    assert resolve_active_power(registers).value == pytest.approx(874.0)
    assert extract_device_identity(registers).product_name == "ZPA"
    assert not fake_serial.is_open


def test_sml_cycle_over_serial() -> None:
    fake_serial = FakeSerial(push_interval_s=0.05, sml_frame=DEFAULT_SML_FRAME)
    cycle = AcquisitionCycle(
        lambda options, callback: MeasurementReader.open(options, callback, serial_port=fake_serial)
    )

    outcome = cycle.run(sml_options(), deadline_s=2.0)

    assert isinstance(outcome, Settled)
    assert to_watts(outcome.registers["1-0:16.7.0*255"]) == pytest.approx(874.0)


def test_sml_bad_crc_is_read_error(tmp_path: Path) -> None:
    frame_file = tmp_path / "frame.bin"
    frame_file.write_bytes(build_sml_frame(DEFAULT_SML_ENTRIES, corrupt_crc=True))
    collector = Collector()

    reader = MeasurementReader.open(sml_file_options(frame_file), collector)
    reader.process()
    error, registers = collector.first()
    reader.stop()

    assert isinstance(error, ReadError)
    assert "CRC" in str(error)
    assert registers == {}


def test_sml_bad_crc_ignored(tmp_path: Path) -> None:
    frame_file = tmp_path / "frame.bin"
    frame_file.write_bytes(build_sml_frame(DEFAULT_SML_ENTRIES, corrupt_crc=True))
    collector = Collector()

    reader = MeasurementReader.open(
        sml_file_options(frame_file, ignore_invalid_crc=True), collector
    )
    reader.process()
    error, registers = collector.first()
    reader.stop()

    assert error is None
    assert registers == {}


def test_sml_bad_crc_over_serial() -> None:
    fake_serial = FakeSerial(
        push_interval_s=0.05,
        sml_frame=build_sml_frame(DEFAULT_SML_ENTRIES, corrupt_crc=True),
    )
    collector = Collector()
    reader = MeasurementReader.open(sml_options(), collector, serial_port=fake_serial)

    reader.process()
    error, registers = collector.first()
    reader.stop()

    assert isinstance(error, ReadError)
    assert registers == {}


# ============================================================================
# Local file transport
# ============================================================================


def test_local_d0_file(tmp_path: Path) -> None:
    frame_file = tmp_path / "telegram.txt"
    frame_file.write_text(D0_TELEGRAM)
    options = d0_options(
        transport=protocol.TRANSPORT_LOCAL_FILE, transport_local_file_path=str(frame_file)
    )
    collector = Collector()

    reader = MeasurementReader.open(options, collector)
    reader.process()
    error, registers = collector.first()
    reader.stop()

    assert error is None
    assert set(registers) == {"1-0:96.1.0*255", "1-0:1.8.0*255", "1-0:16.7.0*255"}


def test_local_sml_file_without_frame_is_empty(tmp_path: Path) -> None:
    frame_file = tmp_path / "frame.bin"
    frame_file.write_bytes(b"\x00\x01\x02 not an sml frame")
    options = ObisOptions(
        transport=protocol.TRANSPORT_LOCAL_FILE,
        transport_local_file_path=str(frame_file),
        request_interval=0.05,
    )
    collector = Collector()

    reader = MeasurementReader.open(options, collector)
    reader.process()
    error, registers = collector.first()
    reader.stop()

    assert error is None
    assert registers == {}


def test_missing_local_file(tmp_path: Path) -> None:
    options = d0_options(
        transport=protocol.TRANSPORT_LOCAL_FILE,
        transport_local_file_path=str(tmp_path / "missing.txt"),
    )

    with pytest.raises(TransportOpenError):
        MeasurementReader.open(options, Collector())


def test_no_serial_port_configured() -> None:
    with pytest.raises(TransportOpenError):
        MeasurementReader.open(d0_options(transport_serial_port=""), Collector())


def test_transport_open_nonexistent_port() -> None:
    with pytest.raises(TransportOpenError):
        Transport.open("/dev/does-not-exist-obis", baud=9600)


# ============================================================================
# Options
# ============================================================================


@pytest.mark.parametrize(
    "kwargs",
    [
        {"protocol": "JsonEfrProtocol"},
        {"transport": "HttpRequestTransport"},
        {"transport_serial_baudrate": 0},
        {"transport_serial_data_bits": 9},
        {"transport_serial_stop_bits": 3},
        {"transport_serial_parity": "sideways"},
        {"request_interval": -1},
        {"debug": 3},
        {"fallback_medium": 256},
        {"input_encoding": "no-such-codec"},
    ],
)
def test_invalid_options(kwargs) -> None:
    with pytest.raises(InvalidOptionValue):
        ObisOptions(**kwargs)


def test_serial_defaults_per_protocol() -> None:
    assert ObisOptions().serial_settings == (9600, 8, "none", 1)
    assert ObisOptions(protocol=protocol.PROTOCOL_D0).serial_settings == (300, 7, "even", 1)
    assert ObisOptions(
        transport_serial_baudrate=19200, transport_serial_parity="ODD"
    ).serial_settings == (19200, 8, "odd", 1)


def test_platform_config_validate() -> None:
    assert not PlatformConfig().validate()
    assert PlatformConfig(serial_port="/dev/ttyUSB0").validate()
    assert not PlatformConfig(
        serial_port="/dev/ttyUSB0", transport=protocol.TRANSPORT_LOCAL_FILE
    ).validate()
    assert PlatformConfig(
        transport=protocol.TRANSPORT_LOCAL_FILE, local_file_path="frame.bin"
    ).validate()


def test_platform_config_debug_override() -> None:
    config = PlatformConfig(serial_port="/dev/ttyUSB0", debug=1)

    assert config.to_options().debug == 1
    assert config.to_options(debug=2).debug == 2


def test_option_defaults() -> None:
    options = ObisOptions()
    config = PlatformConfig()

    assert options.protocol == protocol.PROTOCOL_SML
    assert options.transport == protocol.TRANSPORT_SERIAL_RESPONSE
    assert options.request_interval == protocol.REQUEST_INTERVAL_S
    assert config.transport == protocol.TRANSPORT_SERIAL_RESPONSE
    assert config.poll_timeout_s == protocol.POLL_DEADLINE_S


def test_platform_config_passes_fallback_medium() -> None:
    config = PlatformConfig(serial_port="/dev/ttyUSB0", fallback_medium=6)

    assert PlatformConfig().to_options().fallback_medium == 1
    assert config.to_options().fallback_medium == 6


def test_fallback_medium_reaches_d0_ids(tmp_path: Path) -> None:
    frame_file = tmp_path / "telegram.txt"
    frame_file.write_text("/ESY5\n\n16.7.0(000874.00*W)\n!\n")
    config = PlatformConfig(
        protocol=protocol.PROTOCOL_D0,
        transport=protocol.TRANSPORT_LOCAL_FILE,
        local_file_path=str(frame_file),
        request_interval=0.05,
        fallback_medium=6,
    )
    collector = Collector()

    reader = MeasurementReader.open(config.to_options(), collector)
    reader.process()
    error, registers = collector.first()
    reader.stop()

    assert error is None
    assert set(registers) == {"6-0:16.7.0"}

"""Data models for the OBIS power meter library."""

from dataclasses import dataclass
from enum import Enum
from typing import Dict, Mapping, Optional, Tuple, Union

from obis_power_lib import protocol as obis_protocol
from obis_power_lib.errors import InvalidOptionValue


@dataclass(frozen=True)
class MeasurementValue:
    """One structured value of a measurement, as produced by a decoder."""

    value: Union[float, int, str]
    unit: str = ""


@dataclass(frozen=True)
class Measurement:
    """A single decoded meter register.

    Attributes:
        obis_id: Register id the decoder produced (e.g. "1-0:16.7.0*255").
        text: String rendering from the decoder (e.g. "874 W"), if any.
        values: Structured value/unit pairs, first one is the primary value.
    """

    obis_id: str
    text: Optional[str] = None
    values: Tuple[MeasurementValue, ...] = ()

    @classmethod
    def from_text(cls, obis_id: str, text: str) -> "Measurement":
        """Build a measurement from a rendering like "874 W" or "ZPA"."""
        match = obis_protocol.RE_NUMBER.search(text)
        if match is None:
            return cls(obis_id=obis_id, text=text, values=(MeasurementValue(text.strip()),))

        number = float(match.group(0).replace(",", "."))
        unit = text[match.end():].strip().lstrip("*").strip()
        return cls(obis_id=obis_id, text=text, values=(MeasurementValue(number, unit),))

    def value_to_string(self) -> Optional[str]:
        """String rendering of the value, or None if the decoder gave none."""
        return self.text

    def get_values(self) -> Tuple[MeasurementValue, ...]:
        """Structured values (may be empty)."""
        return self.values


RegisterMap = Dict[str, Measurement]


class PowerSource(Enum):
    """Which fallback strategy produced the active power value."""

    NET_TOTAL = "net_total"
    IMPORT_MINUS_EXPORT = "import_minus_export"
    PHASE_IMPORT_EXPORT_SUM = "phase_import_export_sum"
    PHASE_INSTANTANEOUS_SUM = "phase_instantaneous_sum"
    NOT_FOUND = "not_found"


@dataclass(frozen=True)
class ResolvedPower:
    """Active power in watts (negative means export) and its provenance."""

    value: float
    source: PowerSource

    @property
    def found(self) -> bool:
        return self.source != PowerSource.NOT_FOUND


@dataclass(frozen=True)
class DeviceIdentity:
    """Static identity fields captured once during validation."""

    product_name: str = obis_protocol.UNKNOWN
    product_type: str = obis_protocol.UNKNOWN
    serial: str = obis_protocol.UNKNOWN
    firmware_version: str = obis_protocol.UNKNOWN
    api_version: str = obis_protocol.UNKNOWN


# ============================================================================
# Cycle Outcomes
# ============================================================================


class CycleOutcome:
    """Result of one acquisition cycle. Exactly one subclass per cycle."""

    pass


@dataclass(frozen=True)
class Settled(CycleOutcome):
    """The reader delivered a non-empty register map."""

    registers: Mapping[str, Measurement]


@dataclass(frozen=True)
class Failed(CycleOutcome):
    """The reader could not be opened or reported an error."""

    error: Exception


@dataclass(frozen=True)
class TimedOut(CycleOutcome):
    """No register data arrived before the deadline."""

    deadline_s: float


# ============================================================================
# State Machines
# ============================================================================


class ValidationState(Enum):
    """Startup validation phase states."""

    IDLE = "idle"
    READING = "reading"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class LoopState(Enum):
    """Polling loop states."""

    STOPPED = "stopped"
    SCHEDULED = "scheduled"
    RUNNING = "running"


# ============================================================================
# Configuration
# ============================================================================


@dataclass
class ObisOptions:
    """Reader options: which protocol over which transport, and line settings.

    Attributes:
        protocol: "SmlProtocol" or "D0Protocol".
        transport: "SerialResponseTransport", "SerialRequestResponseTransport"
            or "LocalFileTransport".
        transport_serial_port: Serial device path (serial transports only).
        transport_serial_baudrate: Baud rate, protocol default if None.
        transport_serial_data_bits: 5-8, protocol default if None.
        transport_serial_stop_bits: 1, 1.5 or 2, protocol default if None.
        transport_serial_parity: none/even/odd/mark/space, protocol default if None.
        transport_local_file_path: File holding one frame (LocalFileTransport).
        request_interval: Seconds between frames within one reader session.
        input_encoding: Character encoding for D0 telegram lines.
        ignore_invalid_crc: Skip SML frames with bad CRC instead of failing.
        fallback_medium: Medium used for D0 ids sent without "A-B:" prefix.
        debug: Verbosity 0 (quiet), 1 (key previews), 2 (full dumps).
    """

    protocol: str = obis_protocol.PROTOCOL_SML
    transport: str = obis_protocol.TRANSPORT_SERIAL_RESPONSE
    transport_serial_port: str = ""
    transport_serial_baudrate: Optional[int] = None
    transport_serial_data_bits: Optional[int] = None
    transport_serial_stop_bits: Optional[float] = None
    transport_serial_parity: Optional[str] = None
    transport_local_file_path: str = ""
    request_interval: float = obis_protocol.REQUEST_INTERVAL_S
    input_encoding: str = "ascii"
    ignore_invalid_crc: bool = False
    fallback_medium: int = 1
    debug: int = 0

    def __post_init__(self) -> None:
        """Reject unknown selectors and out-of-range values."""
        if self.protocol not in obis_protocol.PROTOCOLS:
            raise InvalidOptionValue(
                f"protocol must be one of {obis_protocol.PROTOCOLS}, got {self.protocol!r}"
            )

        if self.transport not in obis_protocol.TRANSPORTS:
            raise InvalidOptionValue(
                f"transport must be one of {obis_protocol.TRANSPORTS}, got {self.transport!r}"
            )

        if self.transport_serial_baudrate is not None and self.transport_serial_baudrate <= 0:
            raise InvalidOptionValue(
                f"baudrate must be positive, got {self.transport_serial_baudrate}"
            )

        if self.transport_serial_data_bits is not None and not (
            5 <= self.transport_serial_data_bits <= 8
        ):
            raise InvalidOptionValue(
                f"data bits must be 5-8, got {self.transport_serial_data_bits}"
            )

        if self.transport_serial_stop_bits is not None and (
            self.transport_serial_stop_bits not in (1, 1.5, 2)
        ):
            raise InvalidOptionValue(
                f"stop bits must be 1, 1.5 or 2, got {self.transport_serial_stop_bits}"
            )

        if self.transport_serial_parity is not None:
            self.transport_serial_parity = self.transport_serial_parity.lower()
            if self.transport_serial_parity not in obis_protocol.PARITIES:
                raise InvalidOptionValue(
                    f"parity must be one of {obis_protocol.PARITIES}, "
                    f"got {self.transport_serial_parity!r}"
                )

        if self.request_interval < 0:
            raise InvalidOptionValue(
                f"request_interval must be >= 0, got {self.request_interval}"
            )

        if not 0 <= self.fallback_medium <= 255:
            raise InvalidOptionValue(
                f"fallback_medium must be 0-255, got {self.fallback_medium}"
            )

        if self.debug not in (0, 1, 2):
            raise InvalidOptionValue(f"debug must be 0, 1 or 2, got {self.debug}")

        try:
            "".encode(self.input_encoding)
        except LookupError as e:
            raise InvalidOptionValue(f"Unknown input encoding {self.input_encoding!r}") from e

    @property
    def serial_settings(self) -> Tuple[int, int, str, float]:
        """(baudrate, data bits, parity, stop bits) with protocol defaults filled in."""
        baud, bits, parity, stop = obis_protocol.SERIAL_DEFAULTS[self.protocol]
        return (
            self.transport_serial_baudrate or baud,
            self.transport_serial_data_bits or bits,
            self.transport_serial_parity or parity,
            self.transport_serial_stop_bits or stop,
        )


@dataclass
class PlatformConfig:
    """Service-level configuration: reader settings, scheduling and sinks."""

    serial_port: str = ""
    protocol: str = obis_protocol.PROTOCOL_SML
    transport: str = obis_protocol.TRANSPORT_SERIAL_RESPONSE
    baudrate: Optional[int] = None
    data_bits: Optional[int] = None
    stop_bits: Optional[float] = None
    parity: Optional[str] = None
    local_file_path: str = ""
    request_interval: float = obis_protocol.REQUEST_INTERVAL_S
    input_encoding: str = "ascii"
    ignore_invalid_crc: bool = False
    fallback_medium: int = 1
    debug: int = 0

    poll_interval_s: float = obis_protocol.POLL_INTERVAL_S
    validation_timeout_s: float = obis_protocol.VALIDATION_DEADLINE_S
    poll_timeout_s: float = obis_protocol.POLL_DEADLINE_S

    hide_power_consumption: bool = False
    hide_power_return: bool = False
    hide_energy_import: bool = False
    hide_voltage: bool = False

    history_enabled: bool = True
    history_path: str = "history"
    history_minutes: float = 10.0

    def validate(self) -> bool:
        """True if a meter source is configured for the selected transport."""
        if self.transport == obis_protocol.TRANSPORT_LOCAL_FILE:
            return bool(self.local_file_path)
        return bool(self.serial_port)

    def to_options(self, debug: Optional[int] = None) -> ObisOptions:
        """Build reader options, optionally overriding the debug level."""
        return ObisOptions(
            protocol=self.protocol,
            transport=self.transport,
            transport_serial_port=self.serial_port,
            transport_serial_baudrate=self.baudrate,
            transport_serial_data_bits=self.data_bits,
            transport_serial_stop_bits=self.stop_bits,
            transport_serial_parity=self.parity,
            transport_local_file_path=self.local_file_path,
            request_interval=self.request_interval,
            input_encoding=self.input_encoding,
            ignore_invalid_crc=self.ignore_invalid_crc,
            fallback_medium=self.fallback_medium,
            debug=self.debug if debug is None else debug,
        )

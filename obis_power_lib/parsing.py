"""Pure functions for turning decoder output into numbers and registers."""

import logging
import math
from decimal import Decimal
from typing import Any, Callable, Dict, Iterable, Mapping, Optional, Union

from obis_power_lib import protocol
from obis_power_lib.models import DeviceIdentity, Measurement, MeasurementValue, RegisterMap
from obis_power_lib.registers import find_measurement, find_register, id_spellings

logger = logging.getLogger(__name__)

UnitScale = Callable[[float, str], float]


# ============================================================================
# Numeric Extraction
# ============================================================================


def _scale_power(value: float, unit: str) -> float:
    # "kw" also covers "kwh"
    return value * 1000.0 if "kw" in unit else value


def _scale_energy(value: float, unit: str) -> float:
    if "wh" in unit and "kwh" not in unit:
        return value / 1000.0
    return value


def _scale_voltage(value: float, unit: str) -> float:
    return value * 1000.0 if "kv" in unit else value


def measurement_to_float(measurement: Optional[Measurement], scale: UnitScale) -> float:
    """Extract a number from a measurement, scaled by its unit marker.

    Prefers the leading signed decimal (comma or dot separator) in the string
    rendering and checks the lowercased rendering for unit markers. Falls back
    to the first structured value/unit pair.

    Args:
        measurement: Measurement or None
        scale: Function (value, lowercased unit text) -> scaled value

    Returns:
        Scaled float, or NaN if nothing numeric could be extracted
    """
    if measurement is None:
        return math.nan

    text = measurement.value_to_string()
    if text is not None:
        match = protocol.RE_NUMBER.search(str(text))
        if match:
            value = float(match.group(0).replace(",", "."))
            return scale(value, str(text).lower())

    values = measurement.get_values()
    if values:
        first = values[0]
        if isinstance(first.value, (int, float)) and not isinstance(first.value, bool):
            value = float(first.value)
            if math.isfinite(value):
                return scale(value, (first.unit or "").lower())

    return math.nan


def to_watts(measurement: Optional[Measurement]) -> float:
    """Power in W (kW renderings scaled x1000)."""
    return measurement_to_float(measurement, _scale_power)


def to_kwh(measurement: Optional[Measurement]) -> float:
    """Energy in kWh (Wh renderings scaled /1000)."""
    return measurement_to_float(measurement, _scale_energy)


def to_volts(measurement: Optional[Measurement]) -> float:
    """Voltage in V (kV renderings scaled x1000)."""
    return measurement_to_float(measurement, _scale_voltage)


def nan_to_zero(value: float) -> float:
    return value if math.isfinite(value) else 0.0


# ============================================================================
# D0 (IEC 62056-21) Telegrams
# ============================================================================


def parse_d0_line(line: str, fallback_medium: int = 1) -> Optional[Measurement]:
    """Parse one D0 data line into a measurement.

    Expected format: [A-B:]C.D.E[*F](<value>[*<unit>])
    Example: "1-0:1.8.0*255(002384.065*kWh)"

    Args:
        line: Raw telegram line (terminators stripped)
        fallback_medium: Medium used when the line has no "A-B:" prefix

    Returns:
        Measurement, or None for identification, end and noise lines
    """
    match = protocol.RE_D0_LINE.match(line)
    if not match:
        return None

    medium, channel, code, suffix, body = match.groups()
    if medium is None:
        medium, channel = str(fallback_medium), "0"

    obis_id = f"{medium}-{channel}:{code}"
    if suffix is not None:
        obis_id += f"*{suffix}"

    raw_value, _, unit = body.partition("*")
    raw_value = raw_value.strip()
    unit = unit.strip()

    try:
        value: Any = float(raw_value.replace(",", "."))
    except ValueError:
        value = raw_value

    text = f"{raw_value} {unit}".strip()
    return Measurement(obis_id=obis_id, text=text, values=(MeasurementValue(value, unit),))


def parse_d0_telegram(lines: Iterable[str], fallback_medium: int = 1) -> RegisterMap:
    """Parse all data lines of a D0 telegram into a register map.

    Args:
        lines: Telegram lines, identification and end lines included or not

    Returns:
        Register map keyed by id; later duplicates overwrite earlier ones
    """
    registers: RegisterMap = {}
    for line in lines:
        line = line.strip()
        if not line or line.startswith(protocol.D0_IDENT_PREFIX):
            continue
        if line.startswith(protocol.D0_END_PREFIX):
            break
        measurement = parse_d0_line(line, fallback_medium)
        if measurement is None:
            logger.debug(f"Skipping unparseable D0 line: {line!r}")
            continue
        registers[measurement.obis_id] = measurement
    return registers


# ============================================================================
# SML List Entries
# ============================================================================


def obis_id_from_hex(obis_hex: str) -> str:
    """Convert a 6-byte hex OBIS code ("0100100700ff") to "1-0:16.7.0*255"."""
    raw = bytes.fromhex(str(obis_hex))
    if len(raw) != 6:
        raise ValueError(f"OBIS code must be 6 bytes, got {len(raw)}: {obis_hex!r}")
    a, b, c, d, e, f = raw
    return f"{a}-{b}:{c}.{d}.{e}*{f}"


def format_number(value: Union[int, float]) -> str:
    """Plain decimal rendering without exponent ("5e-05" -> "0.00005")."""
    if isinstance(value, int) or not math.isfinite(value):
        return str(value)
    return format(Decimal(repr(value)), "f")


def octets_to_text(value: Union[bytes, str]) -> str:
    """Render an SML octet string as ASCII if every byte is printable, else as hex.

    Args:
        value: Raw bytes, or smllib's hex rendering of them

    Returns:
        "ZPA" for "5a5041"; non-printable strings (binary serials) stay hex
    """
    if isinstance(value, bytes):
        if value and all(0x20 <= byte < 0x7F for byte in value):
            return value.decode("ascii")
        return value.hex()

    # smllib already decodes alphanumeric octets; digit-only text is left alone
    if value.isdigit() or not protocol.RE_HEX_OCTETS.fullmatch(value):
        return value
    raw = bytes.fromhex(value)
    if all(0x20 <= byte < 0x7F for byte in raw):
        return raw.decode("ascii")
    return value


def sml_entry_to_measurement(entry: Any) -> Measurement:
    """Convert an smllib list entry to a measurement.

    Numeric values get the entry scaler applied; octet strings become text.
    """
    obis_id = obis_id_from_hex(entry.obis)
    unit = protocol.DLMS_UNITS.get(entry.unit, "") if entry.unit is not None else ""
    value = entry.value

    if isinstance(value, (int, float)) and not isinstance(value, bool):
        if entry.scaler:
            value = round(value * 10 ** entry.scaler, 6)
        text = f"{format_number(value)} {unit}".strip()
        return Measurement(obis_id=obis_id, text=text, values=(MeasurementValue(value, unit),))

    if isinstance(value, (bytes, str)):
        text = octets_to_text(value)
    else:
        text = "" if value is None else str(value)
    return Measurement(obis_id=obis_id, text=text, values=(MeasurementValue(text, unit),))


# ============================================================================
# Device Identity and Rendering
# ============================================================================


def _text_of(registers: Mapping[str, Measurement], obis_id: str) -> str:
    measurement = find_measurement(registers, id_spellings(obis_id))
    if measurement is None:
        return protocol.UNKNOWN
    text = measurement.value_to_string()
    if text is None or not str(text).strip():
        return protocol.UNKNOWN
    return str(text).strip()


def extract_device_identity(registers: Mapping[str, Measurement]) -> DeviceIdentity:
    """Pick product, serial and firmware fields out of a register map.

    Missing fields default to "Unknown".
    """
    product = _text_of(registers, protocol.ID_PRODUCT)
    firmware = _text_of(registers, protocol.ID_FIRMWARE)
    return DeviceIdentity(
        product_name=product,
        product_type=product,
        serial=_text_of(registers, protocol.ID_SERIAL),
        firmware_version=firmware,
        api_version=firmware,
    )


def render_registers(registers: Mapping[str, Measurement]) -> Dict[str, str]:
    """Map each register id to its string rendering (for logs and the API)."""
    rendered: Dict[str, str] = {}
    for obis_id, measurement in registers.items():
        text = measurement.value_to_string()
        if text is None and measurement.values:
            first = measurement.values[0]
            value = first.value
            if isinstance(value, (int, float)) and not isinstance(value, bool):
                value = format_number(value)
            text = f"{value} {first.unit}".strip()
        rendered[obis_id] = text or ""
    return rendered


def read_energy_import_kwh(registers: Mapping[str, Measurement]) -> float:
    return to_kwh(find_register(registers, protocol.ENERGY_IMPORT))

"""OBIS register ids, wire constants and timing defaults.

Register codes are kept in their short ``C.D.E`` form; ``registers.register_keys``
expands them into the spellings a decoder may produce.
"""

import re
from typing import Dict, Final, Tuple

# ============================================================================
# Register Id Spelling
# ============================================================================

# Electricity medium, channel 0 ("1-0:")
ELECTRICITY_PREFIX: Final[str] = "1-0:"

# Default media selector suffix emitted by most SML meters
MEDIA_SUFFIX: Final[str] = "255"

# ============================================================================
# Active Power Registers (W)
# ============================================================================

NET_TOTAL_POWER: Final[str] = "16.7.0"  # Sum active power, signed
IMPORT_POWER: Final[str] = "1.7.0"  # Active power +
EXPORT_POWER: Final[str] = "2.7.0"  # Active power -

PHASE_IMPORT_POWER: Final[Tuple[str, ...]] = ("21.7.0", "41.7.0", "61.7.0")
PHASE_EXPORT_POWER: Final[Tuple[str, ...]] = ("22.7.0", "42.7.0", "62.7.0")
PHASE_INSTANT_POWER: Final[Tuple[str, ...]] = ("36.7.0", "56.7.0", "76.7.0")

# ============================================================================
# Auxiliary Registers
# ============================================================================

ENERGY_IMPORT: Final[str] = "1.8.0"  # Time integral active power + (kWh)
ENERGY_EXPORT: Final[str] = "2.8.0"

VOLTAGE_L1: Final[str] = "32.7.0"
VOLTAGE_L2: Final[str] = "52.7.0"
VOLTAGE_L3: Final[str] = "72.7.0"

# ============================================================================
# Device Identity Registers (full ids, with their own media selectors)
# ============================================================================

ID_PRODUCT: Final[str] = "1-0:96.50.1*1"
ID_SERIAL: Final[str] = "1-0:96.1.0*255"
ID_FIRMWARE: Final[str] = "1-0:0.2.0*0"

UNKNOWN: Final[str] = "Unknown"

# ============================================================================
# Reader Selectors
# ============================================================================

PROTOCOL_SML: Final[str] = "SmlProtocol"
PROTOCOL_D0: Final[str] = "D0Protocol"
PROTOCOLS: Final[Tuple[str, ...]] = (PROTOCOL_SML, PROTOCOL_D0)

TRANSPORT_SERIAL_RESPONSE: Final[str] = "SerialResponseTransport"
TRANSPORT_SERIAL_REQUEST_RESPONSE: Final[str] = "SerialRequestResponseTransport"
TRANSPORT_LOCAL_FILE: Final[str] = "LocalFileTransport"
TRANSPORTS: Final[Tuple[str, ...]] = (
    TRANSPORT_SERIAL_RESPONSE,
    TRANSPORT_SERIAL_REQUEST_RESPONSE,
    TRANSPORT_LOCAL_FILE,
)
SERIAL_TRANSPORTS: Final[Tuple[str, ...]] = (
    TRANSPORT_SERIAL_RESPONSE,
    TRANSPORT_SERIAL_REQUEST_RESPONSE,
)

PARITIES: Final[Tuple[str, ...]] = ("none", "even", "odd", "mark", "space")

# (baudrate, data bits, parity, stop bits) when not configured
SERIAL_DEFAULTS: Final[Dict[str, Tuple[int, int, str, float]]] = {
    PROTOCOL_SML: (9600, 8, "none", 1),
    PROTOCOL_D0: (300, 7, "even", 1),
}

# ============================================================================
# D0 (IEC 62056-21) Framing
# ============================================================================

# Sign-on request sent by the request-response transport
D0_REQUEST: Final[bytes] = b"/?!\r\n"

D0_IDENT_PREFIX: Final[str] = "/"
D0_END_PREFIX: Final[str] = "!"

# 1-0:1.8.0*255(002384.065*kWh)  or  1.8.0(002384.065*kWh)
RE_D0_LINE = re.compile(
    r"^\s*(?:(\d+)-(\d+):)?(\d+\.\d+\.\d+)(?:\*(\d+))?\(([^)]*)\)"
)

# ============================================================================
# SML
# ============================================================================

SML_READ_CHUNK: Final[int] = 512

# DLMS unit codes as carried in SML list entries
DLMS_UNITS: Final[Dict[int, str]] = {
    8: "°",
    27: "W",
    28: "VA",
    29: "var",
    30: "Wh",
    31: "VAh",
    32: "varh",
    33: "A",
    35: "V",
    44: "Hz",
}

# ============================================================================
# Numeric Extraction
# ============================================================================

# Leading signed decimal, comma or dot separator, optional exponent
RE_NUMBER = re.compile(r"-?\d+(?:[.,]\d+)?(?:[eE][-+]?\d+)?")

# SML octet string in smllib's hex rendering
RE_HEX_OCTETS = re.compile(r"(?:[0-9a-fA-F]{2})+")

# ============================================================================
# Timing Defaults (seconds)
# ============================================================================

VALIDATION_DEADLINE_S: Final[float] = 130.0
POLL_DEADLINE_S: Final[float] = 30.0
POLL_INTERVAL_S: Final[float] = 60.0
REQUEST_INTERVAL_S: Final[float] = 10.0

SERIAL_READ_TIMEOUT_S: Final[float] = 0.2
READER_JOIN_TIMEOUT_S: Final[float] = 1.0

# Debug env var overriding the configured verbosity
DEBUG_ENV_VAR: Final[str] = "OBIS_DEBUG"

# Bounded preview of present keys when resolution fails
KEY_PREVIEW_LIMIT: Final[int] = 20

# ============================================================================
# Sensor Display Domain
# ============================================================================

SENSOR_FLOOR: Final[float] = 0.0001
SENSOR_CEILING: Final[float] = 100000.0

# ============================================================================
# Human Readable Names (subset, for tools/display_data.py)
# ============================================================================

OBIS_NAMES: Final[Dict[str, str]] = {
    "96.50.1": "Manufacturer",
    "96.1.0": "Serial number",
    "0.2.0": "Firmware version",
    "1.8.0": "Sum active energy + (Total)",
    "2.8.0": "Sum active energy - (Total)",
    "1.7.0": "Sum active power +",
    "2.7.0": "Sum active power -",
    "14.7.0": "Frequency",
    "16.7.0": "Sum active power (Total)",
    "21.7.0": "Active power + L1",
    "41.7.0": "Active power + L2",
    "61.7.0": "Active power + L3",
    "22.7.0": "Active power - L1",
    "42.7.0": "Active power - L2",
    "62.7.0": "Active power - L3",
    "36.7.0": "Active power L1",
    "56.7.0": "Active power L2",
    "76.7.0": "Active power L3",
    "31.7.0": "Current L1",
    "51.7.0": "Current L2",
    "71.7.0": "Current L3",
    "32.7.0": "Voltage L1",
    "52.7.0": "Voltage L2",
    "72.7.0": "Voltage L3",
    "97.97.0": "Error message",
}

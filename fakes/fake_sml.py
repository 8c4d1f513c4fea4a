"""SML frame builder for tests: what an SML meter's IR interface emits.

A frame is the escape/version start sequence, a list of SML list entries,
zero padding to a multiple of four, and the escape/end sequence carrying the
pad count and the CRC16 (X.25, as smllib checks it).
"""

from typing import Optional, Sequence

from smllib.crc import x25

SML_START = b"\x1b\x1b\x1b\x1b\x01\x01\x01\x01"
SML_END = b"\x1b\x1b\x1b\x1b\x1a"

# DLMS unit codes
UNIT_WH = 30
UNIT_W = 27
UNIT_V = 35


def sml_signed(value: int, size: int = 4) -> bytes:
    """Signed integer TL field plus big-endian value."""
    return bytes([0x50 | (size + 1)]) + value.to_bytes(size, "big", signed=True)


def sml_unsigned(value: int, size: int = 4) -> bytes:
    """Unsigned integer TL field plus big-endian value."""
    return bytes([0x60 | (size + 1)]) + value.to_bytes(size, "big", signed=False)


def sml_octets(data: bytes) -> bytes:
    """Octet string TL field (short form, up to 14 bytes)."""
    if len(data) > 14:
        raise ValueError(f"Octet string too long for short form: {len(data)}")
    return bytes([len(data) + 1]) + data


def sml_list_entry(
    obis: str,
    value: bytes,
    unit: Optional[int] = None,
    scaler: Optional[int] = None,
) -> bytes:
    """One SML_ListEntry: objName, status, valTime, unit, scaler, value, signature.

    Args:
        obis: 12 hex chars, e.g. "0100100700ff" for 1-0:16.7.0*255
        value: Encoded value field (sml_signed, sml_unsigned or sml_octets)
        unit: DLMS unit code or None
        scaler: Power-of-ten scaler or None
    """
    unit_field = b"\x01" if unit is None else bytes([0x62, unit])
    scaler_field = b"\x01" if scaler is None else bytes([0x52, scaler & 0xFF])
    return (
        b"\x77"
        + sml_octets(bytes.fromhex(obis))
        + b"\x01\x01"
        + unit_field
        + scaler_field
        + value
        + b"\x01"
    )


def build_sml_frame(entries: Sequence[bytes], corrupt_crc: bool = False) -> bytes:
    """Wrap list entries in a complete frame with padding and CRC."""
    body = bytes([0x70 | len(entries)]) + b"".join(entries)
    padding = (-len(body)) % 4
    message = SML_START + body + b"\x00" * padding + SML_END + bytes([padding])

    crc = x25.get_crc(message)
    if corrupt_crc:
        crc ^= 0xFFFF
    return message + crc.to_bytes(2, "big")


# ZPA meter, 874 W import, 230.1 V on L1
DEFAULT_SML_ENTRIES = (
    sml_list_entry("010060320101", sml_octets(b"ZPA")),
    sml_list_entry("0100600100ff", sml_octets(bytes.fromhex("0a014553591103b5c3a2"))),
    sml_list_entry("010000020000", sml_octets(b"v1.2")),
    sml_list_entry("0100010800ff", sml_unsigned(123456789), unit=UNIT_WH, scaler=-1),
    sml_list_entry("0100100700ff", sml_signed(8740), unit=UNIT_W, scaler=-1),
    sml_list_entry("0100200700ff", sml_unsigned(2301, size=2), unit=UNIT_V, scaler=-1),
)

DEFAULT_SML_FRAME = build_sml_frame(DEFAULT_SML_ENTRIES)

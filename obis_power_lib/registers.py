"""Register lookup across the id spellings a decoder may produce.

The same logical register can arrive as "1-0:16.7.0*255" or "1-0:16.7.0"
depending on meter firmware and decoder. Lookups try an ordered list of
spellings instead of branching at every call site.
"""

from typing import Iterable, Mapping, Optional, Tuple

from obis_power_lib import protocol
from obis_power_lib.models import Measurement


def register_keys(code: str, suffix: str = protocol.MEDIA_SUFFIX) -> Tuple[str, str]:
    """Spellings for an electricity register given by its short code.

    Args:
        code: Short register code, e.g. "16.7.0"
        suffix: Media selector appended to the first spelling

    Returns:
        ("1-0:<code>*<suffix>", "1-0:<code>")
    """
    base = f"{protocol.ELECTRICITY_PREFIX}{code}"
    return (f"{base}*{suffix}", base)


def id_spellings(obis_id: str) -> Tuple[str, ...]:
    """Spellings for a full id: as given, then without its media selector."""
    if "*" in obis_id:
        return (obis_id, obis_id.split("*", 1)[0])
    return (obis_id,)


def find_measurement(
    registers: Mapping[str, Measurement], keys: Iterable[str]
) -> Optional[Measurement]:
    """Return the first measurement present under any of the keys, in order."""
    for key in keys:
        measurement = registers.get(key)
        if measurement is not None:
            return measurement
    return None


def find_register(registers: Mapping[str, Measurement], code: str) -> Optional[Measurement]:
    """Look up an electricity register by short code, probing both spellings."""
    return find_measurement(registers, register_keys(code))


def short_code(obis_id: str) -> str:
    """Reduce "1-0:16.7.0*255" to "16.7.0" (ids without prefix pass through)."""
    code = obis_id.split(":", 1)[-1]
    return code.split("*", 1)[0]


def obis_name(obis_id: str) -> str:
    """Human-readable name of a register, e.g. "Sum active power (Total)"."""
    return protocol.OBIS_NAMES.get(short_code(obis_id), "Unknown register")

"""Active power resolution across heterogeneous meter register sets.

Meter firmware differs in what it exposes: some send a signed net total,
some only split import/export, some only per-phase values. The resolver
walks a strict-priority ladder and returns the first finite result.
"""

import math
from typing import Iterable, Mapping

from obis_power_lib import protocol
from obis_power_lib.models import Measurement, PowerSource, ResolvedPower
from obis_power_lib.parsing import nan_to_zero, to_watts
from obis_power_lib.registers import find_register


def _watts(registers: Mapping[str, Measurement], code: str) -> float:
    return to_watts(find_register(registers, code))


def _sum_watts(registers: Mapping[str, Measurement], codes: Iterable[str]) -> float:
    return sum(nan_to_zero(_watts(registers, code)) for code in codes)


def resolve_active_power(registers: Mapping[str, Measurement]) -> ResolvedPower:
    """Derive one active power value (W) from whatever registers are present.

    Ladder, first match wins:
        1. 16.7.0 net total, returned as is
        2. 1.7.0 import minus 2.7.0 export, a missing side counts as 0
        3. per-phase import (21/41/61.7.0) minus per-phase export (22/42/62.7.0)
        4. per-phase instantaneous sum (36/56/76.7.0)
        5. NaN with source NOT_FOUND

    Unparseable measurements count as absent for direct returns and as 0 in sums.

    Args:
        registers: Register map from one read

    Returns:
        ResolvedPower with value in watts (negative means export)
    """
    net_total = _watts(registers, protocol.NET_TOTAL_POWER)
    if math.isfinite(net_total):
        return ResolvedPower(net_total, PowerSource.NET_TOTAL)

    imported = _watts(registers, protocol.IMPORT_POWER)
    exported = _watts(registers, protocol.EXPORT_POWER)
    if math.isfinite(imported) or math.isfinite(exported):
        return ResolvedPower(
            nan_to_zero(imported) - nan_to_zero(exported),
            PowerSource.IMPORT_MINUS_EXPORT,
        )

    phase_import = _sum_watts(registers, protocol.PHASE_IMPORT_POWER)
    phase_export = _sum_watts(registers, protocol.PHASE_EXPORT_POWER)
    if phase_import != 0 or phase_export != 0:
        return ResolvedPower(phase_import - phase_export, PowerSource.PHASE_IMPORT_EXPORT_SUM)

    phase_instant = _sum_watts(registers, protocol.PHASE_INSTANT_POWER)
    if phase_instant != 0:
        return ResolvedPower(phase_instant, PowerSource.PHASE_INSTANTANEOUS_SUM)

    return ResolvedPower(math.nan, PowerSource.NOT_FOUND)

"""Schema normalization for meter history samples.

Each history keeps a fixed set of columns. Samples are never rejected:
missing, non-numeric and non-finite fields are stored as 0.0, duplicate
timestamps are kept as separate rows.
"""

import math
from datetime import datetime, timezone
from typing import Any, Dict, Mapping

# Column names and dtypes. "timestamp" is UTC ISO 8601.
ENERGY_SCHEMA = {
    "timestamp": str,
    "power": float,  # Active power in W (negative means export)
    "energy": float,  # Imported energy counter in kWh
}

VOLTAGE_SCHEMA = {
    "timestamp": str,
    "l1": float,  # Phase voltages in V
    "l2": float,
    "l3": float,
}


def _clean(value: Any) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return 0.0
    return number if math.isfinite(number) else 0.0


def sample_to_row(
    timestamp_s: int, fields: Mapping[str, Any], schema: Mapping[str, type]
) -> Dict[str, Any]:
    """Convert a timestamped sample into a row with every schema column.

    Args:
        timestamp_s: Unix timestamp in whole seconds
        fields: Field values keyed by column name; unknown keys are ignored
        schema: Target schema (must contain "timestamp")

    Returns:
        Dictionary with all schema keys, ready for DataFrame append
    """
    ts = datetime.fromtimestamp(int(timestamp_s), tz=timezone.utc)

    row: Dict[str, Any] = {"timestamp": ts.isoformat()}
    for column in schema:
        if column == "timestamp":
            continue
        row[column] = _clean(fields.get(column))

    return row

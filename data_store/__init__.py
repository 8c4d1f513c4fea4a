"""DataFrame history layer for meter samples."""

from data_store.history import EnergyHistory, VoltageHistory
from data_store.schemas import ENERGY_SCHEMA, VOLTAGE_SCHEMA, sample_to_row
from data_store.store import HistoryStore, safe_name

__all__ = [
    "ENERGY_SCHEMA",
    "VOLTAGE_SCHEMA",
    "sample_to_row",
    "HistoryStore",
    "safe_name",
    "EnergyHistory",
    "VoltageHistory",
]

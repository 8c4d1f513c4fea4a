"""Numeric sensor sinks fed by the polling loop."""

from accessories.sensors import (
    EnergyImportSensor,
    NumericSensor,
    PowerConsumptionSensor,
    PowerReturnSensor,
    VoltageSensor,
)

__all__ = [
    "NumericSensor",
    "PowerConsumptionSensor",
    "PowerReturnSensor",
    "EnergyImportSensor",
    "VoltageSensor",
]

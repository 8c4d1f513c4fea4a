"""Numeric sensors exposing meter values as clamped display values.

The display domain is that of a generic numeric sensor tile: strictly
positive and bounded above. Values at or below zero show the floor, values
above the ceiling show the ceiling. The unclamped value is kept alongside.
"""

import logging
import math
import threading
from datetime import datetime, timezone
from typing import Any, Dict, Mapping, Optional

from obis_power_lib import protocol
from obis_power_lib.models import DeviceIdentity, Measurement
from obis_power_lib.parsing import read_energy_import_kwh, to_volts
from obis_power_lib.registers import find_register

logger = logging.getLogger(__name__)

MANUFACTURER = "ObisPower"


class NumericSensor:
    """Thread-safe holder for one displayed number plus accessory information."""

    kind = "numeric"

    def __init__(
        self,
        name: str,
        identity: DeviceIdentity,
        serial_suffix: str,
        model_suffix: str = "",
        unit: str = "",
        floor: float = protocol.SENSOR_FLOOR,
        ceiling: float = protocol.SENSOR_CEILING,
    ) -> None:
        """Initialize sensor showing the floor value.

        Args:
            name: Display name
            identity: Device identity captured during validation (shared, read-only)
            serial_suffix: Appended to the meter serial to make this sensor's serial
            model_suffix: Appended to the product name to make the model string
            unit: Unit of the displayed value
            floor: Smallest displayable value, shown for values <= 0
            ceiling: Largest displayable value
        """
        self.name = name
        self.identity = identity
        self.manufacturer = MANUFACTURER
        self.model = f"{identity.product_name} {model_suffix}".strip()
        self.serial_number = f"{identity.serial}-{serial_suffix}"
        self.unit = unit
        self._floor = floor
        self._ceiling = ceiling

        self._lock = threading.Lock()
        self._value = floor
        self._raw = math.nan
        self._updated_at: Optional[datetime] = None

    def clamp(self, value: float) -> float:
        """Map any float into [floor, ceiling]; non-finite and <= 0 become floor."""
        if not math.isfinite(value) or value <= 0:
            return self._floor
        return min(value, self._ceiling)

    def _update(self, raw: float, display: float) -> None:
        with self._lock:
            self._raw = raw
            self._value = display
            self._updated_at = datetime.now(timezone.utc)
        logger.debug(f"{self.name}: {display:g} {self.unit} (raw {raw:g})")

    @property
    def value(self) -> float:
        """Current display value."""
        with self._lock:
            return self._value

    @property
    def raw(self) -> float:
        """Last unclamped value (NaN if never set or unparseable)."""
        with self._lock:
            return self._raw

    @property
    def updated_at(self) -> Optional[datetime]:
        with self._lock:
            return self._updated_at

    def snapshot(self) -> Dict[str, Any]:
        """Sensor state as a plain dict."""
        with self._lock:
            raw = self._raw if math.isfinite(self._raw) else None
            return {
                "name": self.name,
                "kind": self.kind,
                "value": self._value,
                "raw": raw,
                "unit": self.unit,
                "manufacturer": self.manufacturer,
                "model": self.model,
                "serial_number": self.serial_number,
                "updated_at": self._updated_at.isoformat() if self._updated_at else None,
            }


class PowerConsumptionSensor(NumericSensor):
    """Shows active power drawn from the grid (positive values only)."""

    kind = "power_consumption"

    def __init__(self, identity: DeviceIdentity, name: str = "Power Consumption") -> None:
        super().__init__(name, identity, "power-consumption", unit="W")

    def publish_active_power(self, value: float) -> None:
        self._update(value, self.clamp(value))


class PowerReturnSensor(NumericSensor):
    """Shows power fed into the grid, i.e. the magnitude of negative active power."""

    kind = "power_return"

    def __init__(self, identity: DeviceIdentity, name: str = "Power Return") -> None:
        super().__init__(name, identity, "power-return", unit="W")

    def publish_active_power(self, value: float) -> None:
        returned = -value if value < 0 else 0.0
        self._update(returned, self.clamp(returned))


class EnergyImportSensor(NumericSensor):
    """Shows the imported energy counter (1.8.0) in kWh."""

    kind = "energy_import"

    def __init__(self, identity: DeviceIdentity, name: str = "Energy Import (Total, kWh)") -> None:
        super().__init__(name, identity, "energy-import-kwh", "Energy Import", unit="kWh")

    def publish_auxiliary(self, registers: Mapping[str, Measurement]) -> None:
        kwh = read_energy_import_kwh(registers)
        self._update(kwh, self.clamp(kwh))


class VoltageSensor(NumericSensor):
    """Shows one phase voltage in V."""

    kind = "voltage"

    def __init__(self, identity: DeviceIdentity, phase: int) -> None:
        codes = {1: protocol.VOLTAGE_L1, 2: protocol.VOLTAGE_L2, 3: protocol.VOLTAGE_L3}
        if phase not in codes:
            raise ValueError(f"phase must be 1, 2 or 3, got {phase}")

        super().__init__(
            f"Voltage L{phase}", identity, f"voltage-l{phase}", "Voltage", unit="V"
        )
        self.phase = phase
        self.code = codes[phase]

    def publish_auxiliary(self, registers: Mapping[str, Measurement]) -> None:
        volts = to_volts(find_register(registers, self.code))
        self._update(volts, self.clamp(volts))

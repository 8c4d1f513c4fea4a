"""History sinks subscribed to the polling loop."""

import logging
import math
import time
from typing import Mapping

from data_store.store import HistoryStore
from obis_power_lib import protocol
from obis_power_lib.models import Measurement
from obis_power_lib.parsing import read_energy_import_kwh, to_volts
from obis_power_lib.registers import find_register

logger = logging.getLogger(__name__)


class EnergyHistory:
    """Records active power and imported energy once per successful tick.

    The energy counter comes from the auxiliary fan-out, which the polling
    loop delivers before the resolved power of the same tick.
    """

    def __init__(self, store: HistoryStore) -> None:
        self.store = store
        self._energy_kwh = math.nan

    def publish_auxiliary(self, registers: Mapping[str, Measurement]) -> None:
        self._energy_kwh = read_energy_import_kwh(registers)

    def publish_active_power(self, value: float) -> None:
        self.add(value, self._energy_kwh)

    def add(self, power_w: float, energy_kwh: float) -> None:
        self.store.record_sample(round(time.time()), {"power": power_w, "energy": energy_kwh})


class VoltageHistory:
    """Records the three phase voltages once per successful tick."""

    def __init__(self, store: HistoryStore) -> None:
        self.store = store

    def publish_auxiliary(self, registers: Mapping[str, Measurement]) -> None:
        self.store.record_sample(
            round(time.time()),
            {
                "l1": to_volts(find_register(registers, protocol.VOLTAGE_L1)),
                "l2": to_volts(find_register(registers, protocol.VOLTAGE_L2)),
                "l3": to_volts(find_register(registers, protocol.VOLTAGE_L3)),
            },
        )

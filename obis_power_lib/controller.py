"""Platform orchestration: validation, sinks and the polling loop."""

import logging
import os
import threading
from typing import Any, Dict, Mapping, Optional

from accessories.sensors import (
    EnergyImportSensor,
    NumericSensor,
    PowerConsumptionSensor,
    PowerReturnSensor,
    VoltageSensor,
)
from data_store.history import EnergyHistory, VoltageHistory
from data_store.schemas import ENERGY_SCHEMA, VOLTAGE_SCHEMA
from data_store.store import HistoryStore
from obis_power_lib import protocol
from obis_power_lib.acquisition import AcquisitionCycle
from obis_power_lib.errors import InvalidOptionValue
from obis_power_lib.models import DeviceIdentity, LoopState, ObisOptions, PlatformConfig
from obis_power_lib.poller import PollingLoop
from obis_power_lib.reader import ReaderFactory
from obis_power_lib.validation import ValidationPhase

logger = logging.getLogger(__name__)


def debug_override(environ: Mapping[str, str], configured: int) -> int:
    """Debug level from OBIS_DEBUG if it parses as a non-negative int, else configured.

    Levels above 2 behave like 2.
    """
    raw = environ.get(protocol.DEBUG_ENV_VAR)
    if raw is None:
        return configured

    try:
        level = int(raw)
    except ValueError:
        logger.warning(f"Ignoring {protocol.DEBUG_ENV_VAR}={raw!r}: not an integer")
        return configured

    if level < 0:
        logger.warning(f"Ignoring {protocol.DEBUG_ENV_VAR}={raw!r}: negative")
        return configured

    return min(level, 2)


class MeterController:
    """Owns one meter: validates it once, then polls it and feeds the sinks.

    initialize() runs the startup validation read on the calling thread
    (up to validation_timeout_s). Only when it succeeds are sensors and
    histories built with the captured identity and the polling loop armed.
    """

    def __init__(
        self,
        config: PlatformConfig,
        reader_factory: Optional[ReaderFactory] = None,
        environ: Optional[Mapping[str, str]] = None,
    ) -> None:
        """Initialize controller (reads nothing from the meter yet).

        Args:
            config: Platform configuration
            reader_factory: Reader factory for the acquisition cycle.
                           Defaults to MeasurementReader.open.
            environ: Environment for the debug override. Defaults to os.environ.
        """
        self.config = config
        self.debug = debug_override(
            os.environ if environ is None else environ, config.debug
        )

        self._cycle = AcquisitionCycle(reader_factory)
        self._validation = ValidationPhase(self._cycle, config.validation_timeout_s)
        self._options: Optional[ObisOptions] = None
        self._loop: Optional[PollingLoop] = None
        self._sensors: Dict[str, NumericSensor] = {}
        self._histories: Dict[str, HistoryStore] = {}
        self._config_error: Optional[Exception] = None
        self._lock = threading.Lock()

    # ========================================================================
    # Lifecycle
    # ========================================================================

    def initialize(self) -> bool:
        """Validate configuration and meter, then start polling.

        Returns:
            True if the polling loop is armed
        """
        if not self.config.validate():
            self._config_error = InvalidOptionValue(
                "Configuration error. Please provide your power meter serial_port"
            )
            logger.error(str(self._config_error))
            return False

        try:
            options = self.config.to_options(debug=self.debug)
        except InvalidOptionValue as e:
            self._config_error = e
            logger.error(f"Configuration error: {e}")
            return False

        if not self._validation.run(options):
            logger.error(
                f"Meter validation failed, polling not started: {self._validation.error}"
            )
            return False

        identity = self._validation.identity or DeviceIdentity()

        with self._lock:
            self._options = options
            self._build_sensors(identity)
            if self.config.history_enabled:
                self._build_histories()

            loop = PollingLoop(
                self._cycle,
                options,
                interval_s=self.config.poll_interval_s,
                deadline_s=self.config.poll_timeout_s,
            )
            self._subscribe(loop)
            self._loop = loop

        logger.info(
            f"Meter {identity.product_name} (serial {identity.serial}) ready, "
            f"{len(self._sensors)} sensor(s), {len(self._histories)} history(ies)"
        )
        loop.start()
        return True

    def shutdown(self) -> None:
        """Stop polling and flush histories. Safe to call more than once."""
        with self._lock:
            loop = self._loop
            histories = list(self._histories.values())

        if loop is not None:
            loop.stop()

        for store in histories:
            try:
                store.close()
            except Exception as e:
                logger.error(f"Failed to flush history {store.name}: {e}", exc_info=True)

        logger.info("Meter controller shut down")

    # ========================================================================
    # Accessors
    # ========================================================================

    @property
    def identity(self) -> Optional[DeviceIdentity]:
        return self._validation.identity

    @property
    def validation(self) -> ValidationPhase:
        return self._validation

    @property
    def loop(self) -> Optional[PollingLoop]:
        """Polling loop, None until initialize() succeeded."""
        return self._loop

    @property
    def sensors(self) -> Dict[str, NumericSensor]:
        with self._lock:
            return dict(self._sensors)

    @property
    def histories(self) -> Dict[str, HistoryStore]:
        with self._lock:
            return dict(self._histories)

    @property
    def config_error(self) -> Optional[Exception]:
        return self._config_error

    def is_polling(self) -> bool:
        loop = self._loop
        return loop is not None and loop.state != LoopState.STOPPED

    def status(self) -> Dict[str, Any]:
        """Controller state as a plain dict."""
        loop = self._loop
        error = self._config_error or self._validation.error
        return {
            "validation": self._validation.state.value,
            "error": str(error) if error else None,
            "debug": self.debug,
            "sensors": sorted(self.sensors),
            "histories": sorted(self.histories),
            "loop": loop.status() if loop is not None else None,
        }

    # ========================================================================
    # Internal
    # ========================================================================

    def _build_sensors(self, identity: DeviceIdentity) -> None:
        if not self.config.hide_power_consumption:
            self._sensors["power_consumption"] = PowerConsumptionSensor(identity)
        if not self.config.hide_power_return:
            self._sensors["power_return"] = PowerReturnSensor(identity)
        if not self.config.hide_energy_import:
            self._sensors["energy_import"] = EnergyImportSensor(identity)
        if not self.config.hide_voltage:
            for phase in (1, 2, 3):
                self._sensors[f"voltage_l{phase}"] = VoltageSensor(identity, phase)

    def _build_histories(self) -> None:
        flush_s = self.config.history_minutes * 60 if self.config.history_minutes > 0 else None
        path = self.config.history_path or None
        if path is None:
            flush_s = None

        self._histories["energy"] = HistoryStore(
            "energy", ENERGY_SCHEMA, storage_path=path, auto_flush_interval_s=flush_s
        )
        self._histories["voltage"] = HistoryStore(
            "voltage", VOLTAGE_SCHEMA, storage_path=path, auto_flush_interval_s=flush_s
        )

    def _subscribe(self, loop: PollingLoop) -> None:
        for sensor in self._sensors.values():
            if hasattr(sensor, "publish_auxiliary"):
                loop.subscribe_auxiliary(sensor)
            if hasattr(sensor, "publish_active_power"):
                loop.subscribe_active_power(sensor)

        if "energy" in self._histories:
            energy = EnergyHistory(self._histories["energy"])
            loop.subscribe_auxiliary(energy)
            loop.subscribe_active_power(energy)
        if "voltage" in self._histories:
            loop.subscribe_auxiliary(VoltageHistory(self._histories["voltage"]))

"""Startup validation: one long read to prove the line works and capture identity."""

import logging
import threading
from typing import Optional

from obis_power_lib import protocol
from obis_power_lib.acquisition import AcquisitionCycle
from obis_power_lib.errors import CycleTimeout, ObisPowerError, ValidationFailed
from obis_power_lib.models import (
    DeviceIdentity,
    Failed,
    ObisOptions,
    Settled,
    TimedOut,
    ValidationState,
)
from obis_power_lib.parsing import extract_device_identity

logger = logging.getLogger(__name__)


class ValidationPhase:
    """Runs at most once per startup: IDLE -> READING -> SUCCEEDED | FAILED."""

    def __init__(
        self,
        cycle: AcquisitionCycle,
        deadline_s: float = protocol.VALIDATION_DEADLINE_S,
    ) -> None:
        """Initialize validation phase.

        Args:
            cycle: Acquisition cycle runner
            deadline_s: Deadline for the first frame. Long, since noisy lines can
                       take a while to deliver a clean one.
        """
        self._cycle = cycle
        self._deadline_s = deadline_s
        self._state = ValidationState.IDLE
        self._identity: Optional[DeviceIdentity] = None
        self._error: Optional[Exception] = None
        self._lock = threading.Lock()

    @property
    def state(self) -> ValidationState:
        return self._state

    @property
    def identity(self) -> Optional[DeviceIdentity]:
        """Captured identity, None until the phase has succeeded."""
        return self._identity

    @property
    def error(self) -> Optional[Exception]:
        """Why the phase failed, None otherwise."""
        return self._error

    def run(self, options: ObisOptions) -> bool:
        """Perform the validation read.

        Args:
            options: Reader options

        Returns:
            True if registers were read and identity captured

        Raises:
            ValidationFailed: If the phase has already run
        """
        with self._lock:
            if self._state != ValidationState.IDLE:
                raise ValidationFailed(
                    f"Validation already ran (state: {self._state.value})"
                )
            self._state = ValidationState.READING

        logger.info(f"Validating meter connection (deadline {self._deadline_s:.0f}s)...")
        outcome = self._cycle.run(options, self._deadline_s)

        if isinstance(outcome, Settled) and len(outcome.registers) > 0:
            self._identity = extract_device_identity(outcome.registers)
            self._state = ValidationState.SUCCEEDED
            logger.info(
                f"Meter validated: {len(outcome.registers)} register(s), "
                f"identity={self._identity}"
            )
            return True

        if isinstance(outcome, Failed):
            self._error = outcome.error
        elif isinstance(outcome, TimedOut):
            self._error = CycleTimeout(f"No meter data within {outcome.deadline_s:.0f}s")
        else:
            self._error = ObisPowerError("Validation read returned no registers")

        self._state = ValidationState.FAILED
        logger.error(f"Meter validation failed: {self._error}")
        return False

"""One bounded request/response exchange with the meter.

The cycle races the reader callback against a deadline. A one-shot
settlement guard decides the outcome: the first terminal event wins and
every later firing is a no-op. The reader is stopped exactly once, by the
thread that called ``run()``, after the outcome is known.
"""

import logging
import threading
import time
from typing import Optional

from obis_power_lib import protocol
from obis_power_lib.errors import ReadError, TransportOpenError
from obis_power_lib.models import (
    CycleOutcome,
    Failed,
    ObisOptions,
    RegisterMap,
    Settled,
    TimedOut,
)
from obis_power_lib.reader import MeasurementReader, ReaderFactory, ReaderHandle

logger = logging.getLogger(__name__)


class Settlement:
    """Thread-safe one-shot holder for a cycle outcome."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._done = threading.Event()
        self._outcome: Optional[CycleOutcome] = None

    def settle(self, outcome: CycleOutcome) -> bool:
        """Record the outcome if none is recorded yet.

        Returns:
            True if this call settled the cycle, False if it was already settled
        """
        with self._lock:
            if self._outcome is not None:
                return False
            self._outcome = outcome
        self._done.set()
        return True

    def wait(self, timeout: float) -> bool:
        """Block until settled or timeout. Returns True if settled."""
        return self._done.wait(timeout=timeout)

    @property
    def settled(self) -> bool:
        return self._done.is_set()

    @property
    def outcome(self) -> Optional[CycleOutcome]:
        with self._lock:
            return self._outcome


class AcquisitionCycle:
    """Runs one reader session until the first register map, error, or deadline."""

    def __init__(self, reader_factory: Optional[ReaderFactory] = None) -> None:
        """Initialize cycle runner.

        Args:
            reader_factory: Callable (options, callback) -> reader handle.
                           Defaults to MeasurementReader.open.
        """
        self._reader_factory: ReaderFactory = reader_factory or MeasurementReader.open

    def run(self, options: ObisOptions, deadline_s: float) -> CycleOutcome:
        """Perform one acquisition attempt.

        Args:
            options: Reader options
            deadline_s: Seconds to wait for a non-empty register map

        Returns:
            Settled(registers), Failed(error) or TimedOut(deadline_s)
        """
        settlement = Settlement()
        started = time.monotonic()

        def on_frame(error: Optional[Exception], registers: RegisterMap) -> None:
            if settlement.settled:
                logger.debug("Ignoring reader callback after settlement")
                return

            if error is not None:
                if not isinstance(error, ReadError):
                    error = ReadError(str(error))
                if settlement.settle(Failed(error)):
                    logger.debug(f"Cycle settled with read error: {error}")
                return

            if not registers:
                logger.debug("Reader delivered an empty register map, still waiting")
                return

            if settlement.settle(Settled(dict(registers))):
                logger.debug(f"Cycle settled with {len(registers)} register(s)")

        try:
            handle = self._reader_factory(options, on_frame)
        except TransportOpenError as e:
            logger.error(f"Cannot open meter transport: {e}")
            return Failed(e)

        try:
            handle.process()
        except Exception as e:
            settlement.settle(Failed(e if isinstance(e, ReadError) else ReadError(str(e))))
            logger.error(f"Reader failed to start: {e}")

        if not settlement.wait(timeout=deadline_s):
            if settlement.settle(TimedOut(deadline_s)):
                logger.debug(f"Cycle timed out after {deadline_s:.3f}s")

        self._stop_quietly(handle)

        outcome = settlement.outcome
        assert outcome is not None
        elapsed = time.monotonic() - started
        logger.debug(f"Cycle finished in {elapsed:.3f}s: {type(outcome).__name__}")
        return outcome

    @staticmethod
    def _stop_quietly(handle: ReaderHandle) -> None:
        """Stop the reader; the outcome is already decided, so errors are only logged."""
        try:
            handle.stop()
        except Exception as e:
            logger.error(f"Error stopping reader (ignored): {e}", exc_info=True)


def read_once(
    options: ObisOptions,
    deadline_s: float = protocol.POLL_DEADLINE_S,
    reader_factory: Optional[ReaderFactory] = None,
) -> CycleOutcome:
    """Convenience wrapper: run a single acquisition cycle."""
    return AcquisitionCycle(reader_factory).run(options, deadline_s)

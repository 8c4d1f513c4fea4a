"""Fixed-interval polling loop with subscriber fan-out."""

import logging
import threading
import time
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Mapping, Optional, Protocol

from obis_power_lib import protocol
from obis_power_lib.acquisition import AcquisitionCycle
from obis_power_lib.errors import CycleTimeout, ObisPowerError, ResolutionNotFound
from obis_power_lib.models import (
    CycleOutcome,
    Failed,
    LoopState,
    Measurement,
    ObisOptions,
    RegisterMap,
    ResolvedPower,
    Settled,
    TimedOut,
)
from obis_power_lib.parsing import render_registers
from obis_power_lib.resolver import resolve_active_power

logger = logging.getLogger(__name__)


class AuxiliarySink(Protocol):
    """Consumer of the full register map of each successful tick."""

    def publish_auxiliary(self, registers: Mapping[str, Measurement]) -> None:
        ...


class ActivePowerSink(Protocol):
    """Consumer of the resolved active power (W) of each successful tick."""

    def publish_active_power(self, value: float) -> None:
        ...


Resolver = Callable[[Mapping[str, Measurement]], ResolvedPower]


class PollingLoop:
    """Runs an acquisition cycle every interval and fans results out.

    STOPPED -> start() -> SCHEDULED <-> RUNNING (per tick) -> stop() -> STOPPED

    Ticks never overlap: they run back to back on one thread, and a tick that
    outlasts the interval delays the next one instead of running beside it.
    Results that arrive after stop() are dropped.
    """

    def __init__(
        self,
        cycle: AcquisitionCycle,
        options: ObisOptions,
        interval_s: float = protocol.POLL_INTERVAL_S,
        deadline_s: float = protocol.POLL_DEADLINE_S,
        resolver: Resolver = resolve_active_power,
        stop_timeout_s: float = 1.0,
    ) -> None:
        """Initialize loop (does not start automatically).

        Args:
            cycle: Acquisition cycle runner
            options: Reader options for every tick
            interval_s: Seconds between tick starts
            deadline_s: Per-tick read deadline
            resolver: Register map -> ResolvedPower
            stop_timeout_s: How long stop() waits for the loop thread
        """
        if interval_s <= 0:
            raise ValueError(f"interval_s must be positive, got {interval_s}")

        self._cycle = cycle
        self._options = options
        self._interval_s = interval_s
        self._deadline_s = deadline_s
        self._resolver = resolver
        self._stop_timeout_s = stop_timeout_s

        self._state = LoopState.STOPPED
        self._state_lock = threading.Lock()
        self._tick_lock = threading.Lock()
        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()
        # Bumped on start/stop; a tick only publishes if its epoch is still current
        self._epoch = 0

        self._auxiliary_sinks: List[AuxiliarySink] = []
        self._power_sinks: List[ActivePowerSink] = []

        self._latest_registers: Optional[RegisterMap] = None
        self._latest_power: Optional[ResolvedPower] = None
        self._latest_at: Optional[datetime] = None
        self._last_error: Optional[Exception] = None
        self._ticks = 0
        self._failed_ticks = 0

    # ========================================================================
    # Subscribers
    # ========================================================================

    def subscribe_auxiliary(self, sink: AuxiliarySink) -> None:
        self._auxiliary_sinks.append(sink)

    def subscribe_active_power(self, sink: ActivePowerSink) -> None:
        self._power_sinks.append(sink)

    # ========================================================================
    # Lifecycle
    # ========================================================================

    def start(self) -> None:
        """Run one tick immediately, then one every interval.

        Raises:
            ObisPowerError: If already running
        """
        with self._state_lock:
            if self._state != LoopState.STOPPED:
                raise ObisPowerError(f"Polling loop already running (state: {self._state.value})")

            self._epoch += 1
            self._stop_event = threading.Event()
            self._state = LoopState.SCHEDULED
            self._thread = threading.Thread(
                target=self._loop,
                args=(self._stop_event, self._epoch),
                name="PollingLoop",
                daemon=True,
            )
            self._thread.start()

        logger.info(f"Polling loop started (interval {self._interval_s:g}s, deadline {self._deadline_s:g}s)")

    def stop(self) -> None:
        """Cancel the schedule. Idempotent; an in-flight tick finishes but publishes nothing."""
        with self._state_lock:
            if self._state == LoopState.STOPPED and self._thread is None:
                return

            self._epoch += 1
            self._stop_event.set()
            self._state = LoopState.STOPPED
            thread = self._thread
            self._thread = None

        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=self._stop_timeout_s)
            if thread.is_alive():
                logger.debug("Polling thread still finishing an in-flight cycle")

        logger.info("Polling loop stopped")

    def tick(self) -> Optional[ResolvedPower]:
        """Run one tick on the calling thread.

        Returns:
            The published ResolvedPower, or None if the tick failed or was skipped
        """
        return self._run_tick(self._epoch)

    # ========================================================================
    # Status
    # ========================================================================

    @property
    def state(self) -> LoopState:
        return self._state

    @property
    def latest_registers(self) -> Optional[RegisterMap]:
        """Register map of the last successful tick (the one snapshot kept)."""
        return self._latest_registers

    @property
    def latest_power(self) -> Optional[ResolvedPower]:
        return self._latest_power

    @property
    def latest_at(self) -> Optional[datetime]:
        return self._latest_at

    @property
    def last_error(self) -> Optional[Exception]:
        return self._last_error

    def status(self) -> Dict[str, Any]:
        """Snapshot of loop counters and latest value."""
        power = self._latest_power
        return {
            "state": self._state.value,
            "interval_s": self._interval_s,
            "ticks": self._ticks,
            "failed_ticks": self._failed_ticks,
            "last_error": str(self._last_error) if self._last_error else None,
            "latest_power_w": power.value if power else None,
            "latest_source": power.source.value if power else None,
            "latest_at": self._latest_at.isoformat() if self._latest_at else None,
        }

    # ========================================================================
    # Internal: Scheduling
    # ========================================================================

    def _loop(self, stop_event: threading.Event, epoch: int) -> None:
        """Background thread: tick, then wait out the rest of the interval."""
        logger.debug(f"Polling thread started (thread {threading.get_ident()})")

        while not stop_event.is_set():
            started = time.monotonic()
            self._run_tick(epoch)

            remaining = max(0.0, self._interval_s - (time.monotonic() - started))
            if stop_event.wait(timeout=remaining):
                break

        logger.debug("Polling thread finished")

    def _is_current(self, epoch: int) -> bool:
        with self._state_lock:
            return epoch == self._epoch

    def _mark(self, epoch: int, state: LoopState) -> None:
        with self._state_lock:
            if epoch == self._epoch and self._state != LoopState.STOPPED:
                self._state = state

    # ========================================================================
    # Internal: Tick
    # ========================================================================

    def _run_tick(self, epoch: int) -> Optional[ResolvedPower]:
        if not self._tick_lock.acquire(blocking=False):
            logger.warning("Previous tick still in flight, skipping this one")
            return None

        try:
            self._mark(epoch, LoopState.RUNNING)
            outcome = self._cycle.run(self._options, self._deadline_s)
            return self._handle_outcome(outcome, epoch)
        except Exception as e:
            # Contained to this tick; the schedule keeps going
            logger.error(f"Unexpected error during tick: {e}", exc_info=True)
            self._record_failure(e)
            return None
        finally:
            self._mark(epoch, LoopState.SCHEDULED)
            self._tick_lock.release()

    def _handle_outcome(self, outcome: CycleOutcome, epoch: int) -> Optional[ResolvedPower]:
        self._ticks += 1

        if isinstance(outcome, Failed):
            self._record_failure(outcome.error)
            logger.error(f"Cannot read meter, skipping tick: {outcome.error}")
            return None

        if isinstance(outcome, TimedOut):
            error = CycleTimeout(f"No meter data within {outcome.deadline_s:g}s")
            self._record_failure(error)
            logger.error(f"{error}, skipping tick")
            return None

        assert isinstance(outcome, Settled)
        registers: RegisterMap = dict(outcome.registers)
        if not self._is_current(epoch):
            logger.debug("Discarding tick result that arrived after stop")
            return None

        self._log_registers(registers)
        self._latest_registers = registers

        for aux_sink in list(self._auxiliary_sinks):
            self._deliver(aux_sink.publish_auxiliary, registers)

        resolved = self._resolver(registers)
        if not resolved.found:
            error = ResolutionNotFound(list(registers), protocol.KEY_PREVIEW_LIMIT)
            self._record_failure(error)
            logger.error(str(error))
            return None

        self._latest_power = resolved
        self._latest_at = datetime.now(timezone.utc)

        for power_sink in list(self._power_sinks):
            self._deliver(power_sink.publish_active_power, resolved.value)

        logger.debug(f"Active power {resolved.value:g} W ({resolved.source.value})")
        return resolved

    def _deliver(self, publish: Callable[[Any], None], payload: Any) -> None:
        try:
            publish(payload)
        except Exception as e:
            logger.error(f"Subscriber {publish!r} failed: {e}", exc_info=True)

    def _record_failure(self, error: Exception) -> None:
        self._failed_ticks += 1
        self._last_error = error

    def _log_registers(self, registers: RegisterMap) -> None:
        if self._options.debug >= 2:
            for obis_id, text in render_registers(registers).items():
                logger.debug(f"  {obis_id} = {text}")
        elif self._options.debug >= 1:
            keys = list(registers)[: protocol.KEY_PREVIEW_LIMIT]
            logger.debug(f"Read {len(registers)} register(s): {keys}")

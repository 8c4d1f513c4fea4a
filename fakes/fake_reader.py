"""Scripted measurement reader for exercising acquisition cycles without a meter.

A FakeReaderFactory hands out one FakeReader per cycle. Each reader plays a
script of ReaderEvents: every event waits its delay, then invokes the callback
with either an error or a register map. Like a real reader whose stop() is
best-effort, a threaded FakeReader keeps playing its script after stop().
"""

import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional, Sequence

from obis_power_lib.models import Measurement, ObisOptions, RegisterMap
from obis_power_lib.reader import ReaderCallback

logger = logging.getLogger(__name__)


def make_registers(mapping: Mapping[str, str]) -> RegisterMap:
    """Build a register map from {obis_id: rendering}, e.g. {"1-0:16.7.0*255": "874 W"}."""
    return {obis_id: Measurement.from_text(obis_id, text) for obis_id, text in mapping.items()}


@dataclass
class ReaderEvent:
    """One scripted callback invocation."""

    delay_s: float = 0.0
    error: Optional[Exception] = None
    registers: RegisterMap = field(default_factory=dict)


def frame(mapping: Mapping[str, str], delay_s: float = 0.0) -> ReaderEvent:
    """Event delivering the given registers."""
    return ReaderEvent(delay_s=delay_s, registers=make_registers(mapping))


def empty_frame(delay_s: float = 0.0) -> ReaderEvent:
    """Event delivering an empty register map."""
    return ReaderEvent(delay_s=delay_s)


def read_error(message: str = "simulated read error", delay_s: float = 0.0) -> ReaderEvent:
    """Event delivering an error."""
    return ReaderEvent(delay_s=delay_s, error=RuntimeError(message))


class FakeReader:
    """Reader handle that plays a fixed script of events."""

    def __init__(
        self,
        options: ObisOptions,
        callback: ReaderCallback,
        events: Sequence[ReaderEvent],
        sync: bool = False,
        process_error: Optional[Exception] = None,
        stop_error: Optional[Exception] = None,
        on_active_change: Optional["FakeReaderFactory"] = None,
    ) -> None:
        self.options = options
        self._callback = callback
        self._events = list(events)
        self._sync = sync
        self._process_error = process_error
        self._stop_error = stop_error
        self._factory = on_active_change

        self.process_calls = 0
        self.stop_calls = 0
        self.delivered = 0
        self._started = False
        self._thread: Optional[threading.Thread] = None

    def process(self) -> None:
        self.process_calls += 1
        if self._process_error is not None:
            raise self._process_error

        self._started = True
        if self._factory is not None:
            self._factory._reader_started()

        if self._sync:
            self._play()
            return

        self._thread = threading.Thread(target=self._play, name="FakeReader", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self.stop_calls += 1
        if self.stop_calls == 1 and self._factory is not None and self._started:
            self._factory._reader_stopped()
        if self._stop_error is not None:
            raise self._stop_error

    def join(self, timeout: float = 2.0) -> None:
        """Wait for the script to finish playing (threaded mode)."""
        if self._thread is not None:
            self._thread.join(timeout=timeout)

    def _play(self) -> None:
        for event in self._events:
            if event.delay_s > 0:
                time.sleep(event.delay_s)
            self.delivered += 1
            self._callback(event.error, dict(event.registers))


class FakeReaderFactory:
    """Reader factory handing out FakeReaders.

    Each call consumes the next script; the last script repeats once the
    list is exhausted.
    """

    def __init__(
        self,
        *scripts: Sequence[ReaderEvent],
        sync: bool = False,
        open_error: Optional[Exception] = None,
        process_error: Optional[Exception] = None,
        stop_error: Optional[Exception] = None,
    ) -> None:
        self._scripts: List[Sequence[ReaderEvent]] = list(scripts) or [[]]
        self._sync = sync
        self.open_error = open_error
        self._process_error = process_error
        self._stop_error = stop_error

        self.readers: List[FakeReader] = []
        self.opens = 0
        self._lock = threading.Lock()
        self._active = 0
        self.max_active = 0

    def __call__(self, options: ObisOptions, callback: ReaderCallback) -> FakeReader:
        with self._lock:
            self.opens += 1
            if self.open_error is not None:
                raise self.open_error

            index = min(len(self.readers), len(self._scripts) - 1)
            reader = FakeReader(
                options,
                callback,
                self._scripts[index],
                sync=self._sync,
                process_error=self._process_error,
                stop_error=self._stop_error,
                on_active_change=self,
            )
            self.readers.append(reader)
        logger.debug(f"FakeReaderFactory opened reader #{len(self.readers)}")
        return reader

    @property
    def total_stops(self) -> int:
        return sum(reader.stop_calls for reader in self.readers)

    def stop_counts(self) -> Dict[int, int]:
        """{reader index: stop() calls}"""
        return {i: reader.stop_calls for i, reader in enumerate(self.readers)}

    def _reader_started(self) -> None:
        with self._lock:
            self._active += 1
            self.max_active = max(self.max_active, self._active)

    def _reader_stopped(self) -> None:
        with self._lock:
            self._active -= 1

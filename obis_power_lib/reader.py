"""Measurement reader: one session of frames from the meter.

A reader is opened synchronously (so a bad device path fails immediately),
then ``process()`` starts a background thread that reads frame after frame
and invokes the callback with ``(error, registers)`` for each one. The
callback may fire many times, including with an empty register map while
the meter has not sent a full frame yet. ``stop()`` ends the session.
"""

import logging
import threading
from pathlib import Path
from typing import Any, Callable, List, Optional, Protocol, Tuple

from smllib import SmlStreamReader
from smllib.errors import CrcError

from obis_power_lib import parsing, protocol
from obis_power_lib.errors import ReadError, TransportOpenError
from obis_power_lib.models import ObisOptions, RegisterMap
from obis_power_lib.transport import SerialLike, Transport

logger = logging.getLogger(__name__)

ReaderCallback = Callable[[Optional[Exception], RegisterMap], None]


class ReaderHandle(Protocol):
    """Protocol for a reader session (allows test doubles)."""

    def process(self) -> None:
        """Begin reading; the callback fires from now on."""
        ...

    def stop(self) -> None:
        """Best-effort cancel. Idempotent, must not raise."""
        ...


ReaderFactory = Callable[[ObisOptions, ReaderCallback], ReaderHandle]


class MeasurementReader:
    """Reads SML or D0 frames over a serial port or from a local file."""

    def __init__(
        self,
        options: ObisOptions,
        callback: ReaderCallback,
        transport: Optional[Transport] = None,
    ) -> None:
        """Initialize reader. Use open() to create one from options.

        Args:
            options: Validated reader options
            callback: Invoked as callback(error, registers) once per frame
            transport: Opened transport (None for LocalFileTransport)
        """
        self._options = options
        self._callback = callback
        self._transport = transport

        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()
        self._lock = threading.Lock()
        self._stopped = False
        self._frames = 0

    @classmethod
    def open(
        cls,
        options: ObisOptions,
        callback: ReaderCallback,
        serial_port: Optional[SerialLike] = None,
    ) -> "MeasurementReader":
        """Open the configured transport and return a reader bound to it.

        Args:
            options: Reader options
            callback: Frame callback, see class docstring
            serial_port: Pre-configured serial port object (for testing). If given,
                        port settings in options are ignored.

        Raises:
            TransportOpenError: If the device or file cannot be opened
        """
        if options.transport == protocol.TRANSPORT_LOCAL_FILE:
            path = Path(options.transport_local_file_path)
            if not options.transport_local_file_path or not path.is_file():
                raise TransportOpenError(f"Local meter file not found: {path}")
            return cls(options, callback)

        if serial_port is not None:
            return cls(options, callback, Transport(serial_port, encoding=options.input_encoding))

        if not options.transport_serial_port:
            raise TransportOpenError("No serial port configured")

        baud, data_bits, parity, stop_bits = options.serial_settings
        transport = Transport.open(
            options.transport_serial_port,
            baud=baud,
            data_bits=data_bits,
            parity=parity,
            stop_bits=stop_bits,
            encoding=options.input_encoding,
        )
        return cls(options, callback, transport)

    @property
    def frames(self) -> int:
        """Number of frames delivered to the callback so far."""
        return self._frames

    def process(self) -> None:
        """Start the background read loop.

        Raises:
            ReadError: If the reader was already stopped or is already processing
        """
        with self._lock:
            if self._stopped:
                raise ReadError("Reader already stopped")
            if self._thread is not None:
                raise ReadError("Reader already processing")

            self._thread = threading.Thread(
                target=self._read_loop,
                name="ObisReader",
                daemon=True,
            )
            self._thread.start()
        logger.debug(
            f"Started reader thread ({self._options.protocol} via {self._options.transport})"
        )

    def stop(self) -> None:
        """Stop reading and close the transport. Idempotent, never raises."""
        with self._lock:
            if self._stopped:
                return
            self._stopped = True

        self._stop_event.set()

        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=protocol.READER_JOIN_TIMEOUT_S)
            if thread.is_alive():
                logger.warning("Reader thread did not stop cleanly")

        if self._transport is not None:
            try:
                self._transport.close()
            except Exception as e:
                logger.warning(f"Error closing transport: {e}")

        logger.debug(f"Reader stopped after {self._frames} frame(s)")

    # ========================================================================
    # Internal: Read Loop
    # ========================================================================

    def _read_loop(self) -> None:
        """Background thread: read a frame, report it, wait request_interval, repeat."""
        while not self._stop_event.is_set():
            try:
                registers = self._read_frame()
            except ReadError as e:
                self._emit(e, {})
            except Exception as e:
                self._emit(ReadError(f"Unexpected reader failure: {e}"), {})
            else:
                if registers is None:
                    break  # Stop requested mid-frame
                self._emit(None, registers)

            if self._stop_event.wait(timeout=self._options.request_interval):
                break

        logger.debug("Reader loop finished")

    def _emit(self, error: Optional[Exception], registers: RegisterMap) -> None:
        self._frames += 1
        try:
            self._callback(error, registers)
        except Exception as e:
            logger.error(f"Reader callback raised: {e}", exc_info=True)

    def _read_frame(self) -> Optional[RegisterMap]:
        """Read one frame. Returns None if stop was requested first."""
        if self._options.transport == protocol.TRANSPORT_LOCAL_FILE:
            return self._read_local_file()

        assert self._transport is not None
        if self._options.protocol == protocol.PROTOCOL_SML:
            return self._read_sml_frame(self._transport)
        return self._read_d0_telegram(self._transport)

    def _read_local_file(self) -> RegisterMap:
        path = Path(self._options.transport_local_file_path)
        try:
            data = path.read_bytes()
        except OSError as e:
            raise ReadError(f"Failed to read {path}: {e}") from e

        if self._options.protocol == protocol.PROTOCOL_SML:
            stream = SmlStreamReader()
            stream.add(data)
            frame, _ = self._pop_sml_frame(stream)
            return self._sml_frame_to_registers(frame) if frame is not None else {}

        lines = data.decode(self._options.input_encoding, errors="replace").splitlines()
        return parsing.parse_d0_telegram(lines, self._options.fallback_medium)

    def _read_sml_frame(self, transport: Transport) -> Optional[RegisterMap]:
        """Feed serial bytes to an SML stream reader until one frame completes."""
        transport.flush_input()
        stream = SmlStreamReader()

        while not self._stop_event.is_set():
            chunk = transport.read_chunk()
            if not chunk:
                continue

            stream.add(chunk)
            frame, skipped = self._pop_sml_frame(stream)
            if skipped:
                stream = SmlStreamReader()
                continue

            if frame is not None:
                return self._sml_frame_to_registers(frame)

        return None

    def _pop_sml_frame(self, stream: SmlStreamReader) -> Tuple[Any, bool]:
        """Pop the next complete frame, if any.

        Returns:
            (frame or None, True if a frame with bad CRC was dropped)

        Raises:
            ReadError: On decoder failure, or bad CRC unless ignore_invalid_crc
        """
        try:
            return stream.get_frame(), False
        except CrcError as e:
            if not self._options.ignore_invalid_crc:
                raise ReadError(f"SML frame failed CRC check: {e}") from e
            logger.debug(f"Ignoring SML frame with invalid CRC: {e}")
            return None, True
        except Exception as e:
            raise ReadError(f"Invalid SML frame: {e}") from e

    def _sml_frame_to_registers(self, frame: Any) -> RegisterMap:
        try:
            entries = frame.get_obis()
        except Exception as e:
            raise ReadError(f"Failed to decode SML frame: {e}") from e

        registers: RegisterMap = {}
        for entry in entries:
            try:
                measurement = parsing.sml_entry_to_measurement(entry)
            except (ValueError, TypeError) as e:
                logger.debug(f"Skipping SML entry {entry!r}: {e}")
                continue
            registers[measurement.obis_id] = measurement
        return registers

    def _read_d0_telegram(self, transport: Transport) -> Optional[RegisterMap]:
        """Read lines from identification ("/") to end ("!") and parse them."""
        transport.flush_input()
        if self._options.transport == protocol.TRANSPORT_SERIAL_REQUEST_RESPONSE:
            transport.write_bytes(protocol.D0_REQUEST)

        lines: List[str] = []
        started = False

        while not self._stop_event.is_set():
            line = transport.readline()
            if line is None:
                continue

            if line.startswith(protocol.D0_IDENT_PREFIX):
                # New telegram; anything before it was a partial one
                started = True
                lines = []
                continue

            if not started:
                continue

            if line.startswith(protocol.D0_END_PREFIX):
                return parsing.parse_d0_telegram(lines, self._options.fallback_medium)

            lines.append(line)

        return None

"""Fake serial port that simulates an optical-head meter (D0, or SML push).

Supports both D0 transports:
- Request-response: the meter answers "/?!\\r\\n" with one telegram
- Push: the meter sends a telegram every push_interval_s on its own

A telegram is an identification line, an empty line, one "id(value*unit)"
line per register, and an end line "!". With sml_frame set, the push thread
sends that binary frame instead, the way SML meters broadcast unprompted.
"""

import logging
import queue
import threading
from typing import Dict, Mapping, Optional

logger = logging.getLogger(__name__)

DEFAULT_REGISTERS = {
    "1-0:96.1.0*255": "1ESY1160123456",
    "1-0:1.8.0*255": "00012345.6789*kWh",
    "1-0:2.8.0*255": "00000123.4000*kWh",
    "1-0:16.7.0*255": "000874.00*W",
    "1-0:32.7.0*255": "230.1*V",
    "1-0:52.7.0*255": "231.4*V",
    "1-0:72.7.0*255": "229.8*V",
}


class FakeSerial:
    """Deterministic simulator of a D0 meter behind an optical head.

    Implements the wire behavior the reader depends on:
    - Request "/?!" answered with a full telegram (request mode)
    - Periodic unsolicited telegrams (push mode)
    - CRLF line terminators
    - reset_input_buffer() discards everything not yet read
    """

    def __init__(
        self,
        registers: Optional[Mapping[str, str]] = None,
        identification: str = "/ESY5Q3DA1004 V3.04",
        push_interval_s: Optional[float] = None,
        timeout: float = 0.05,
        sml_frame: Optional[bytes] = None,
    ) -> None:
        """Initialize fake meter.

        Args:
            registers: {obis_id: raw value}, written as "obis_id(raw value)"
            identification: First telegram line, must start with "/"
            push_interval_s: If set, push a telegram every N seconds (push mode)
            timeout: Readline timeout in seconds
            sml_frame: If set, push this SML frame instead of D0 telegrams
        """
        self.registers: Dict[str, str] = dict(
            DEFAULT_REGISTERS if registers is None else registers
        )
        self.identification = identification
        self.timeout = timeout
        self.sml_frame = sml_frame
        self.requests = 0
        self.telegrams_sent = 0

        self._output_queue: "queue.Queue[bytes]" = queue.Queue()
        self._pending = bytearray()
        self._input_buffer = bytearray()
        self._lock = threading.Lock()

        self.is_open = True

        self._push_interval = push_interval_s
        self._stop_pushing = threading.Event()
        self._push_thread: Optional[threading.Thread] = None
        if push_interval_s is not None:
            self._start_push_thread()

    def close(self) -> None:
        """Close the fake serial port."""
        self.is_open = False
        self._stop_push_thread()
        logger.debug("FakeSerial closed")

    def write(self, data: bytes) -> int:
        """Write data to the meter (from host perspective).

        Returns:
            Number of bytes written
        """
        if not self.is_open:
            raise RuntimeError("Port is closed")

        self._input_buffer.extend(data)
        logger.debug(f"FakeSerial received: {data!r}")

        while b"\n" in self._input_buffer:
            end = self._input_buffer.index(b"\n") + 1
            command = bytes(self._input_buffer[:end])
            del self._input_buffer[:end]
            self._handle_command(command.strip())

        return len(data)

    def read(self, size: int = 1) -> bytes:
        """Read up to size bytes, or b"" on timeout."""
        if not self.is_open:
            raise RuntimeError("Port is closed")

        with self._lock:
            if not self._pending:
                try:
                    self._pending.extend(self._output_queue.get(timeout=self.timeout))
                except queue.Empty:
                    return b""
            chunk = bytes(self._pending[:size])
            del self._pending[:size]
            return chunk

    def readline(self) -> bytes:
        """Read one line from meter output.

        Returns:
            Line as bytes with CRLF terminator, or b"" on timeout
        """
        if not self.is_open:
            raise RuntimeError("Port is closed")

        with self._lock:
            if self._pending:
                line = bytes(self._pending)
                self._pending.clear()
                return line

        try:
            return self._output_queue.get(timeout=self.timeout)
        except queue.Empty:
            return b""

    def flush(self) -> None:
        """Flush output buffer (no-op, writes are immediate)."""
        pass

    def reset_input_buffer(self) -> None:
        """Discard unread meter output."""
        with self._lock:
            self._pending.clear()
            while True:
                try:
                    self._output_queue.get_nowait()
                except queue.Empty:
                    break
        logger.debug("FakeSerial input buffer flushed")

    def set_register(self, obis_id: str, raw_value: str) -> None:
        """Change a register value for subsequent telegrams."""
        self.registers[obis_id] = raw_value

    def send_telegram(self) -> None:
        """Queue one full telegram."""
        self._send_line(self.identification)
        self._send_line("")
        for obis_id, raw_value in list(self.registers.items()):
            self._send_line(f"{obis_id}({raw_value})")
        self._send_line("!")
        self.telegrams_sent += 1

    def send_frame(self, data: bytes) -> None:
        """Queue raw bytes, e.g. one binary SML frame."""
        self._output_queue.put(bytes(data))
        self.telegrams_sent += 1

    # ========================================================================
    # Internal
    # ========================================================================

    def _handle_command(self, command: bytes) -> None:
        if command == b"/?!":
            self.requests += 1
            self.send_telegram()
        else:
            logger.debug(f"FakeSerial ignoring unknown command {command!r}")

    def _send_line(self, text: str) -> None:
        self._output_queue.put(text.encode("ascii") + b"\r\n")

    def _start_push_thread(self) -> None:
        self._stop_pushing.clear()
        self._push_thread = threading.Thread(
            target=self._push_loop,
            name="FakeMeterPush",
            daemon=True,
        )
        self._push_thread.start()

    def _stop_push_thread(self) -> None:
        if self._push_thread and self._push_thread.is_alive():
            self._stop_pushing.set()
            self._push_thread.join(timeout=2.0)
            self._push_thread = None

    def _push_loop(self) -> None:
        assert self._push_interval is not None
        while not self._stop_pushing.is_set():
            if self.sml_frame is not None:
                self.send_frame(self.sml_frame)
            else:
                self.send_telegram()
            if self._stop_pushing.wait(timeout=self._push_interval):
                break

"""Serial transport layer for meter communication."""

import logging
from typing import Optional, Protocol

from obis_power_lib import protocol
from obis_power_lib.errors import ReadError, TransportOpenError

logger = logging.getLogger(__name__)


class SerialLike(Protocol):
    """Protocol for serial port interface (allows test doubles)."""

    def write(self, data: bytes) -> int:
        """Write bytes to serial port."""
        ...

    def read(self, size: int = 1) -> bytes:
        """Read up to size bytes from serial port."""
        ...

    def readline(self) -> bytes:
        """Read a line from serial port."""
        ...

    def flush(self) -> None:
        """Flush output buffer (force transmission)."""
        ...

    def reset_input_buffer(self) -> None:
        """Flush input buffer."""
        ...

    def close(self) -> None:
        """Close serial port."""
        ...

    @property
    def is_open(self) -> bool:
        """Check if port is open."""
        ...


class Transport:
    """Wrapper around pyserial with meter-specific helpers.

    Reads raw chunks for binary SML streams and decoded lines for D0 telegrams.
    """

    def __init__(self, serial_port: SerialLike, encoding: str = "ascii") -> None:
        """Initialize transport with a serial port instance.

        Args:
            serial_port: Object implementing SerialLike protocol
                        (e.g., serial.Serial or FakeSerial for testing)
            encoding: Character encoding for line reads
        """
        self._port = serial_port
        self._encoding = encoding

    @classmethod
    def open(
        cls,
        port: str,
        baud: int = 9600,
        data_bits: int = 8,
        parity: str = "none",
        stop_bits: float = 1,
        timeout_s: float = protocol.SERIAL_READ_TIMEOUT_S,
        encoding: str = "ascii",
    ) -> "Transport":
        """Open a real serial port (requires pyserial).

        Args:
            port: Serial port device name (e.g., "/dev/ttyUSB0")
            baud: Baud rate. SML meters push at 9600, D0 starts at 300.
            data_bits: 5-8
            parity: "none", "even", "odd", "mark" or "space"
            stop_bits: 1, 1.5 or 2
            timeout_s: Read timeout in seconds. Short so stop() stays responsive.
            encoding: Character encoding for line reads

        Returns:
            Transport instance wrapping opened serial port

        Raises:
            TransportOpenError: If port cannot be opened
        """
        import serial

        parities = {
            "none": serial.PARITY_NONE,
            "even": serial.PARITY_EVEN,
            "odd": serial.PARITY_ODD,
            "mark": serial.PARITY_MARK,
            "space": serial.PARITY_SPACE,
        }
        stop_bit_map = {
            1: serial.STOPBITS_ONE,
            1.5: serial.STOPBITS_ONE_POINT_FIVE,
            2: serial.STOPBITS_TWO,
        }

        try:
            ser = serial.Serial(
                port=port,
                baudrate=baud,
                bytesize=data_bits,
                parity=parities[parity],
                stopbits=stop_bit_map[stop_bits],
                timeout=timeout_s,
                rtscts=False,
                dsrdtr=False,
                xonxoff=False
            )
            logger.info(
                f"Opened serial port {port} at {baud} baud "
                f"({data_bits}{parity[0].upper()}{stop_bits:g}), timeout={timeout_s}s"
            )
            return cls(ser, encoding=encoding)
        except Exception as e:
            raise TransportOpenError(f"Failed to open {port} at {baud} baud: {e}") from e

    def close(self) -> None:
        """Close the serial port."""
        if self._port.is_open:
            self._port.close()
            logger.info("Closed serial port")

    @property
    def is_open(self) -> bool:
        """Check if port is currently open."""
        return self._port.is_open

    def write_bytes(self, data: bytes) -> None:
        """Write raw bytes to port.

        Raises:
            ReadError: If port is closed or write fails
        """
        if not self._port.is_open:
            raise ReadError("Serial port is not open")

        try:
            sent = self._port.write(data)
            self._port.flush()
            logger.debug(f"Sent {sent} bytes: {data!r}")
        except Exception as e:
            raise ReadError(f"Failed to write to port: {e}") from e

    def read_chunk(self, size: int = protocol.SML_READ_CHUNK) -> bytes:
        """Read up to size bytes; empty bytes on timeout.

        Raises:
            ReadError: If port is closed or read fails
        """
        if not self._port.is_open:
            raise ReadError("Serial port is not open")

        try:
            return self._port.read(size)
        except Exception as e:
            raise ReadError(f"Failed to read from port: {e}") from e

    def readline(self) -> Optional[str]:
        """Read one line, terminators stripped.

        Returns:
            Decoded line, or None on timeout/no data

        Raises:
            ReadError: If port is closed or read fails
        """
        if not self._port.is_open:
            raise ReadError("Serial port is not open")

        try:
            line_bytes = self._port.readline()
            if not line_bytes:
                return None

            line = line_bytes.decode(self._encoding, errors="replace").rstrip("\r\n")
            logger.debug(f"Received line: {line!r}")
            return line

        except Exception as e:
            raise ReadError(f"Failed to read line: {e}") from e

    def flush_input(self) -> None:
        """Discard all pending input, e.g. a half frame before resyncing.

        Raises:
            ReadError: If port is closed
        """
        if not self._port.is_open:
            raise ReadError("Serial port is not open")

        try:
            self._port.reset_input_buffer()
            logger.debug("Flushed input buffer")
        except Exception as e:
            raise ReadError(f"Failed to flush input: {e}") from e

"""Serial-port transport for VM and hardware consoles.

Wraps a pyserial port as a ``ConsoleStream`` so the session engine can drive
a console attached to a local serial line: a QEMU ``-serial pty`` device, a
USB-UART adapter, or a console server's local tty.

Cross-platform: works on both Windows (COMx) and Linux
(/dev/ttyUSB*, /dev/ttyS*, /dev/ttyACM*, /dev/pts/*).

Default line settings: 115200 8N1 (no flow control).
"""

from __future__ import annotations

import logging
import platform
from typing import List, Optional

import serial
import serial.tools.list_ports
from typeguard import typechecked

from . import (
    SERIAL_BAUD_RATE,
    SERIAL_BYTESIZE,
    SERIAL_PARITY,
    SERIAL_READ_TIMEOUT,
    SERIAL_RX_BUFFER_SIZE,
    SERIAL_STOPBITS,
    SERIAL_WRITE_TIMEOUT,
)
from .exceptions import ConfigurationError, ConsoleTransportError
from .transport import ConsoleStream, ConsoleTransport

logger = logging.getLogger("vm_console_tools.serial_comm")

_IS_WINDOWS = platform.system() == "Windows"

# Map string parity values to pyserial constants
_PARITY_MAP = {
    "N": serial.PARITY_NONE,
    "E": serial.PARITY_EVEN,
    "O": serial.PARITY_ODD,
    "M": serial.PARITY_MARK,
    "S": serial.PARITY_SPACE,
}

# Map integer stopbits to pyserial constants
_STOPBITS_MAP = {
    1: serial.STOPBITS_ONE,
    2: serial.STOPBITS_TWO,
}

# Map integer bytesize to pyserial constants
_BYTESIZE_MAP = {
    5: serial.FIVEBITS,
    6: serial.SIXBITS,
    7: serial.SEVENBITS,
    8: serial.EIGHTBITS,
}


def _write_all(ser: serial.Serial, data: bytes, port_name: str) -> int:
    """Write *all* bytes to the serial port and flush the OS transmit buffer.

    Does **not** catch pyserial exceptions: ``serial.SerialTimeoutException``,
    ``serial.SerialException`` and ``OSError`` propagate to the caller.

    Raises:
        ConsoleTransportError: If a short write is detected.
    """
    n = ser.write(data)
    if n != len(data):
        raise ConsoleTransportError(
            f"Short write on {port_name}: wrote {n}/{len(data)} bytes. "
            f"The device stopped accepting data before the write timeout."
        )
    ser.flush()
    return n


class SerialConnectionManager:
    """Manages a serial port connection with automatic resource cleanup.

    Example::

        with SerialConnectionManager("/dev/ttyUSB0") as mgr:
            stream = SerialConsoleStream(mgr)
            stream.write(b"\\n", timeout_s=5)
    """

    def __init__(
        self,
        port: str,
        baud_rate: int = SERIAL_BAUD_RATE,
        bytesize: int = SERIAL_BYTESIZE,
        parity: str = SERIAL_PARITY,
        stopbits: int = SERIAL_STOPBITS,
        write_timeout: Optional[float] = SERIAL_WRITE_TIMEOUT,
        xonxoff: bool = False,
        rtscts: bool = False,
        rx_buffer_size: int = SERIAL_RX_BUFFER_SIZE,
    ) -> None:
        """Initialize serial connection manager.

        Args:
            port: Serial port path, e.g. ``/dev/ttyUSB0`` (Linux) or ``COM3`` (Windows).
            baud_rate: Baud rate (default: 115200).
            bytesize: Number of data bits (5, 6, 7, or 8; default: 8).
            parity: ``"N"``, ``"E"``, ``"O"``, ``"M"`` or ``"S"`` (default ``"N"``).
            stopbits: Number of stop bits (1 or 2; default: 1).
            write_timeout: Initial write timeout in seconds.  Console streams
                replace it per write with the session's send budget.
            xonxoff: Enable software flow control (XON/XOFF).
            rtscts: Enable hardware (RTS/CTS) flow control.
            rx_buffer_size: OS receive buffer size in bytes.  ``0`` (default)
                leaves the driver default untouched.  On Windows the default
                is often only 4 KB, too small for a chatty boot log.

        Raises:
            ConfigurationError: If any line setting is invalid.
        """
        self.port = port
        self.baud_rate = baud_rate
        self.write_timeout = write_timeout
        self.xonxoff = xonxoff
        self.rtscts = rtscts
        self.rx_buffer_size = rx_buffer_size
        self._serial: Optional[serial.Serial] = None

        if bytesize not in _BYTESIZE_MAP:
            valid = ", ".join(str(k) for k in sorted(_BYTESIZE_MAP))
            raise ConfigurationError(
                f"Invalid bytesize {bytesize!r} for port {port}. Must be one of: {valid}."
            )
        self.bytesize = _BYTESIZE_MAP[bytesize]

        parity_upper = parity.upper()
        if parity_upper not in _PARITY_MAP:
            valid = ", ".join(f'"{k}"' for k in sorted(_PARITY_MAP))
            raise ConfigurationError(
                f"Invalid parity {parity!r} for port {port}. Must be one of: {valid}."
            )
        self.parity = _PARITY_MAP[parity_upper]

        if stopbits not in _STOPBITS_MAP:
            valid = ", ".join(str(k) for k in sorted(_STOPBITS_MAP))
            raise ConfigurationError(
                f"Invalid stopbits {stopbits!r} for port {port}. Must be one of: {valid}."
            )
        self.stopbits = _STOPBITS_MAP[stopbits]

        if baud_rate <= 0:
            raise ConfigurationError(
                f"Invalid baud rate {baud_rate!r} for port {port}. "
                f"Common values: 9600, 19200, 38400, 57600, 115200."
            )

        if write_timeout is not None and write_timeout < 0:
            raise ConfigurationError(
                f"Invalid write_timeout {write_timeout!r} for port {port}. "
                f"Must be None (blocking) or a non-negative number."
            )

        logger.debug(
            "[SERIAL-INIT] Configured %s — %d %d%s%s (write_timeout=%s, xonxoff=%s, rtscts=%s)",
            port, baud_rate, bytesize, parity_upper, stopbits,
            write_timeout, xonxoff, rtscts,
        )

    def open(self, context: str) -> None:
        """Open the serial port.

        Raises:
            ConsoleTransportError: If the port cannot be opened.  The message
                includes the OS-level reason and a platform-specific hint.
        """
        if self.is_open():
            logger.debug("[SERIAL-OPEN] [%s] Port %s is already open — skipping", context, self.port)
            return

        logger.info("[SERIAL-OPEN] [%s] Opening %s at %d baud ...", context, self.port, self.baud_rate)

        try:
            self._serial = serial.Serial(
                port=self.port,
                baudrate=self.baud_rate,
                bytesize=self.bytesize,
                parity=self.parity,
                stopbits=self.stopbits,
                timeout=SERIAL_READ_TIMEOUT,
                write_timeout=self.write_timeout,
                xonxoff=self.xonxoff,
                rtscts=self.rtscts,
            )
            if self.rx_buffer_size > 0 and hasattr(self._serial, "set_buffer_size"):
                # Only the Windows backend exposes set_buffer_size
                self._serial.set_buffer_size(rx_size=self.rx_buffer_size, tx_size=self.rx_buffer_size)
            logger.info("[SERIAL-OPEN] [%s] Successfully opened %s", context, self.port)

        except (serial.SerialException, OSError) as exc:
            msg = (
                f"[{context}] Failed to open serial port {self.port} at {self.baud_rate} baud: {exc}. "
                f"{self._platform_hint()}"
            )
            logger.error("[SERIAL-OPEN] FAILED — %s", msg)
            raise ConsoleTransportError(msg) from exc

    def is_open(self) -> bool:
        """Check whether the serial port is currently open."""
        return self._serial is not None and self._serial.is_open

    def close(self) -> None:
        """Close the serial port if open."""
        was_open = self.is_open()

        if self._serial is not None:
            try:
                self._serial.close()
            except Exception as exc:
                logger.warning("[SERIAL-CLOSE] Error closing port %s: %s", self.port, exc)
            finally:
                self._serial = None

        if was_open:
            logger.info("[SERIAL-CLOSE] Closed %s", self.port)
        else:
            logger.debug("[SERIAL-CLOSE] close() called on already-closed port %s", self.port)

    def get_serial(self) -> serial.Serial:
        """Return the underlying ``serial.Serial`` object.

        Raises:
            ConsoleTransportError: If the port is not open.
        """
        if self._serial is None or not self._serial.is_open:
            raise ConsoleTransportError(
                f"Cannot access serial port {self.port}: port is not open. "
                f"Call open() or use the context manager first."
            )
        return self._serial

    # ---- Context manager ----

    def __enter__(self) -> SerialConnectionManager:
        self.open(context=f"Opening {self.port}")
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:  # type: ignore[no-untyped-def]
        self.close()

    # ---- Helpers ----

    @staticmethod
    def list_available_ports() -> List[str]:
        """Return the serial ports visible to the operating system."""
        descriptions = []
        for p in serial.tools.list_ports.comports():
            descriptions.append(f"{p.device} — {p.description}")
            logger.debug("[SERIAL-LIST] Found port: %s (%s)", p.device, p.description)
        return descriptions

    def _platform_hint(self) -> str:
        available = ", ".join(p.device for p in serial.tools.list_ports.comports()) or "none"
        if _IS_WINDOWS:
            return (
                "On Windows: verify the COM port number in Device Manager and make "
                "sure no other application (PuTTY, TeraTerm) has the port open. "
                f"Available ports: {available}."
            )
        return (
            "On Linux: verify the device path exists (for QEMU, check the "
            "'char device redirected to /dev/pts/N' line), that your user is in "
            "the 'dialout' group, and that no other process (minicom, screen, "
            f"virsh console) holds the port. Available ports: {available}."
        )


@typechecked
class SerialConsoleStream(ConsoleStream):
    """``ConsoleStream`` over an open ``SerialConnectionManager``."""

    def __init__(self, connection_manager: SerialConnectionManager) -> None:
        self.connection_manager = connection_manager

    def describe(self) -> str:
        return f"serial:{self.connection_manager.port}"

    def read(self, size: int) -> bytes:
        port_name = self.connection_manager.port
        ser = self.connection_manager.get_serial()
        try:
            waiting = ser.in_waiting
            if waiting <= 0:
                return b""
            return ser.read(min(waiting, size))
        except (serial.SerialException, OSError) as exc:
            raise ConsoleTransportError(
                f"Serial read error on {port_name}: {exc}. "
                f"The device may have been disconnected."
            ) from exc

    def write(self, data: bytes, timeout_s: float) -> None:
        port_name = self.connection_manager.port
        ser = self.connection_manager.get_serial()
        try:
            ser.write_timeout = timeout_s
            _write_all(ser, data, port_name)
        except serial.SerialTimeoutException as exc:
            raise ConsoleTransportError(
                f"Write of {len(data)} bytes to {port_name} timed out after {timeout_s:.1f}s"
            ) from exc
        except (serial.SerialException, OSError) as exc:
            raise ConsoleTransportError(
                f"Serial write error on {port_name}: {exc}. "
                f"The device may have been disconnected."
            ) from exc

    def close(self) -> None:
        self.connection_manager.close()


@typechecked
class SerialConsoleTransport(ConsoleTransport):
    """Opens a serial port as a console stream."""

    def __init__(
        self,
        port: str,
        baud_rate: int = SERIAL_BAUD_RATE,
        bytesize: int = SERIAL_BYTESIZE,
        parity: str = SERIAL_PARITY,
        stopbits: int = SERIAL_STOPBITS,
        xonxoff: bool = False,
        rtscts: bool = False,
    ) -> None:
        # Line settings are validated here so a bad config fails before any I/O
        self.connection_manager = SerialConnectionManager(
            port,
            baud_rate=baud_rate,
            bytesize=bytesize,
            parity=parity,
            stopbits=stopbits,
            xonxoff=xonxoff,
            rtscts=rtscts,
        )

    def describe(self) -> str:
        return f"serial:{self.connection_manager.port}"

    def open_stream(self, timeout_s: float) -> ConsoleStream:
        # Opening a local tty does not block, timeout_s only bounds remote transports
        self.connection_manager.open(context=f"console on {self.connection_manager.port}")
        return SerialConsoleStream(self.connection_manager)

"""Transport abstraction: a duplex byte stream bound to one remote console.

Concrete adapters live next to the library they wrap:

- ``serial_comm.SerialConsoleTransport``: a local or USB serial port
- ``connection.SSHConsoleTransport``: an SSH channel (interactive shell or a
  console command such as ``virsh console <vm>``)

Anything else (a websocket to a cluster's serial-console endpoint, a telnet
console server, ...) only needs to implement the two small classes below.
"""

from __future__ import annotations

import abc


class ConsoleStream(abc.ABC):
    """A duplex byte stream bound to one console.

    The reader side is drained by a single background thread owned by
    ``ConsoleSession``; the writer side is used from the caller's thread.
    """

    @abc.abstractmethod
    def read(self, size: int) -> bytes:
        """Return up to *size* bytes from the console output side.

        Must not block for much longer than the adapter's poll interval.
        Returns ``b""`` when nothing arrived yet.

        Raises:
            ConsoleTransportError: On EOF or any I/O failure.
        """

    @abc.abstractmethod
    def write(self, data: bytes, timeout_s: float) -> None:
        """Write *all* of *data* to the console input side within *timeout_s*.

        Raises:
            ConsoleTransportError: On short writes, timeouts or I/O failures.
        """

    @abc.abstractmethod
    def close(self) -> None:
        """Close both directions.  ``ConsoleSession`` calls this exactly once."""

    def describe(self) -> str:
        """Human readable name used in log lines and error messages."""
        return type(self).__name__


class ConsoleTransport(abc.ABC):
    """Factory for ``ConsoleStream`` objects bound to one console."""

    @abc.abstractmethod
    def open_stream(self, timeout_s: float) -> ConsoleStream:
        """Establish the stream within *timeout_s* seconds.

        Raises:
            ConsoleTransportError: If the console cannot be reached.
        """

    def describe(self) -> str:
        """Human readable name used in log lines and error messages."""
        return type(self).__name__

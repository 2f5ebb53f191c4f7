"""SSH transport: a console reached through an SSH channel.

Two flavours are supported:

- an interactive shell on the remote host (the remote login shell *is* the
  console, e.g. a console server that drops you onto the serial line), and
- a console command run under a PTY on a hypervisor, e.g.
  ``virsh console --force vm-under-test``.

Unknown host keys are auto-accepted.
"""

from __future__ import annotations

import logging
import socket
import time
from typing import Optional

import paramiko
from typeguard import typechecked

from . import SSH_PORT, TERMINAL_COLUMNS, TERMINAL_ROWS
from .exceptions import ConsoleTransportError
from .transport import ConsoleStream, ConsoleTransport

logger = logging.getLogger("vm_console_tools.connection")


class SSHConnectionManager:
    """Manages an SSH connection with auto-approval of host keys."""

    def __init__(
        self,
        hostname: str,
        username: str,
        password: str,
        port: int = SSH_PORT,
    ) -> None:
        """Initialize SSH connection manager.

        Args:
            hostname: IP address or hostname of the SSH endpoint
            username: SSH username
            password: SSH password
            port: SSH port (default: 22)
        """
        self.hostname = hostname
        self.username = username
        self.password = password
        self.port = port
        self.ssh_client: Optional[paramiko.SSHClient] = None

    def _get_ssh_client(self) -> paramiko.SSHClient:
        """Get or create SSH client with auto-approval policy."""
        if self.ssh_client is None:
            self.ssh_client = paramiko.SSHClient()
            self.ssh_client.set_missing_host_key_policy(paramiko.AutoAddPolicy())

        return self.ssh_client

    def connect(self, context: str, timeout_s: float) -> None:
        """Establish the SSH connection within *timeout_s* seconds.

        Raises:
            ConsoleTransportError: If the connection fails or times out.
        """
        logger.info(
            "[CONNECT] [%s] Attempting SSH connection to %s@%s:%d (timeout=%.1fs) ...",
            context, self.username, self.hostname, self.port, timeout_s,
        )
        start_time = time.monotonic()

        try:
            self._get_ssh_client().connect(
                hostname=self.hostname,
                port=self.port,
                username=self.username,
                password=self.password,
                timeout=timeout_s,
                banner_timeout=timeout_s,
                auth_timeout=timeout_s,
                look_for_keys=False,
                allow_agent=False,
            )
        except socket.timeout as e:
            elapsed = time.monotonic() - start_time
            msg = (
                f"[{context}] Connection to {self.hostname}:{self.port} timed out "
                f"after {elapsed:.1f}s (limit {timeout_s:.1f}s)"
            )
            logger.error("[CONNECT] TIMEOUT — %s", msg)
            raise ConsoleTransportError(msg) from e
        except paramiko.AuthenticationException as e:
            msg = f"[{context}] Authentication failed for {self.username}@{self.hostname}:{self.port}: {e}"
            logger.error("[CONNECT] AUTH FAILED — %s", msg)
            raise ConsoleTransportError(msg) from e
        except paramiko.SSHException as e:
            msg = f"[{context}] SSH error connecting to {self.hostname}:{self.port}: {e}"
            logger.error("[CONNECT] SSH ERROR — %s", msg)
            raise ConsoleTransportError(msg) from e
        except OSError as e:
            msg = f"[{context}] OS/network error connecting to {self.hostname}:{self.port}: {e}"
            logger.error("[CONNECT] OS ERROR — %s", msg)
            raise ConsoleTransportError(msg) from e

        logger.info(
            "[CONNECT] [%s] Connected to %s@%s:%d in %.2fs",
            context, self.username, self.hostname, self.port, time.monotonic() - start_time,
        )

    def is_connected(self) -> bool:
        """Check if SSH connection is active."""
        if self.ssh_client is None:
            return False
        transport = self.ssh_client.get_transport()
        return transport is not None and transport.is_active()

    def open_console_channel(
        self,
        context: str,
        timeout_s: float,
        command: Optional[str] = None,
    ) -> paramiko.Channel:
        """Open a PTY channel running *command*, or an interactive shell.

        Raises:
            ConsoleTransportError: If the channel cannot be opened.
        """
        target = f"{self.username}@{self.hostname}:{self.port}"
        if not self.is_connected():
            msg = f"[{context}] Cannot open console channel: not connected to {target}"
            logger.error("[CHANNEL] %s", msg)
            raise ConsoleTransportError(msg)

        transport = self._get_ssh_client().get_transport()
        try:
            channel = transport.open_session(timeout=timeout_s)
            channel.get_pty(term="vt100", width=TERMINAL_COLUMNS, height=TERMINAL_ROWS)
            if command:
                channel.exec_command(command)
            else:
                channel.invoke_shell()
        except (paramiko.SSHException, OSError) as e:
            msg = (
                f"[{context}] Failed to open console channel on {target} "
                f"({command or 'interactive shell'}): {e}"
            )
            logger.error("[CHANNEL] ERROR — %s", msg)
            raise ConsoleTransportError(msg) from e

        logger.info(
            "[CHANNEL] [%s] Console channel open on %s (%s)",
            context, target, command or "interactive shell",
        )
        return channel

    def disconnect(self) -> None:
        """Close SSH connection if open."""
        was_connected = self.is_connected()
        target = f"{self.username}@{self.hostname}:{self.port}"

        if self.ssh_client is not None:
            try:
                self.ssh_client.close()
            except Exception as exc:
                logger.warning("[DISCONNECT] Error closing connection to %s: %s", target, exc)
            finally:
                self.ssh_client = None

        if was_connected:
            logger.info("[DISCONNECT] Disconnected from %s", target)
        else:
            logger.debug("[DISCONNECT] disconnect() called on already-closed connection to %s", target)


@typechecked
class SSHConsoleStream(ConsoleStream):
    """``ConsoleStream`` over a paramiko channel.

    Closing the stream closes the channel and the whole SSH connection.
    """

    def __init__(self, connection_manager: SSHConnectionManager, channel: paramiko.Channel) -> None:
        self.connection_manager = connection_manager
        self.channel = channel

    def describe(self) -> str:
        mgr = self.connection_manager
        return f"ssh:{mgr.username}@{mgr.hostname}:{mgr.port}"

    def read(self, size: int) -> bytes:
        try:
            if self.channel.recv_ready():
                return self.channel.recv(size)
            if self.channel.closed or self.channel.eof_received:
                raise ConsoleTransportError(
                    f"Console channel {self.describe()} was closed by the remote end"
                )
            return b""
        except (paramiko.SSHException, OSError) as exc:
            raise ConsoleTransportError(f"SSH read error on {self.describe()}: {exc}") from exc

    def write(self, data: bytes, timeout_s: float) -> None:
        try:
            self.channel.settimeout(timeout_s)
            self.channel.sendall(data)
        except socket.timeout as exc:
            raise ConsoleTransportError(
                f"Write of {len(data)} bytes to {self.describe()} timed out after {timeout_s:.1f}s"
            ) from exc
        except (paramiko.SSHException, OSError) as exc:
            raise ConsoleTransportError(f"SSH write error on {self.describe()}: {exc}") from exc

    def close(self) -> None:
        try:
            self.channel.close()
        finally:
            self.connection_manager.disconnect()


@typechecked
class SSHConsoleTransport(ConsoleTransport):
    """Opens a console over SSH.

    Example::

        transport = SSHConsoleTransport(
            "hypervisor.lab", "admin", "secret",
            console_command="virsh console --force vm-under-test",
        )
    """

    def __init__(
        self,
        hostname: str,
        username: str,
        password: str,
        port: int = SSH_PORT,
        console_command: Optional[str] = None,
    ) -> None:
        self.hostname = hostname
        self.username = username
        self.password = password
        self.port = port
        self.console_command = console_command

    def describe(self) -> str:
        return f"ssh:{self.username}@{self.hostname}:{self.port}"

    def open_stream(self, timeout_s: float) -> ConsoleStream:
        context = f"console via {self.describe()}"
        start = time.monotonic()
        manager = SSHConnectionManager(self.hostname, self.username, self.password, port=self.port)
        manager.connect(context, timeout_s)

        remaining = timeout_s - (time.monotonic() - start)
        try:
            if remaining <= 0:
                raise ConsoleTransportError(
                    f"[{context}] Connect budget of {timeout_s:.1f}s exhausted before "
                    f"the console channel could be opened"
                )
            channel = manager.open_console_channel(context, remaining, command=self.console_command)
        except ConsoleTransportError:
            manager.disconnect()
            raise
        return SSHConsoleStream(manager, channel)

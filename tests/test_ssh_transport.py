"""
SSH transport test suite.

Uses a real in-process SSH server built on paramiko's ServerInterface. Its
shell and exec channels are wired to a ``FedoraConsole``, so the login
automation runs end to end over a real SSH channel with no system sshd and
no mocking.

Run with full visibility:
    pytest tests/test_ssh_transport.py -v -s
"""

from __future__ import annotations

import platform
import socket
import sys
import threading
import time
from typing import Dict, List, Optional

import pytest

# ---------------------------------------------------------------------------
# Dependency gate — report clearly if anything is missing
# ---------------------------------------------------------------------------
_MISSING: List[str] = []

try:
    import paramiko
except ImportError:
    _MISSING.append("paramiko")

try:
    from typeguard import TypeCheckError
except ImportError:
    _MISSING.append("typeguard")

if _MISSING:
    print(
        "\n"
        "=" * 72 + "\n"
        "  MISSING REQUIRED LIBRARIES\n"
        "=" * 72 + "\n"
        f"  The following packages are not installed: {', '.join(_MISSING)}\n"
        f"  Install them with:  pip install {' '.join(_MISSING)}\n"
        "=" * 72 + "\n",
        file=sys.stderr,
    )
    pytest.skip(
        f"Required libraries missing: {', '.join(_MISSING)}",
        allow_module_level=True,
    )

from vm_console_tools.connection import (
    SSHConnectionManager,
    SSHConsoleStream,
    SSHConsoleTransport,
)
from vm_console_tools.exceptions import ConsoleTransportError
from vm_console_tools.login import ConsoleLogin, ConsoleTarget, LoginTimeouts
from vm_console_tools.types import Outcome

from console_fixtures import FedoraConsole

# ---------------------------------------------------------------------------
# Report environment
# ---------------------------------------------------------------------------
print(
    "\n"
    "+" * 72 + "\n"
    f"  Platform : {platform.system()} {platform.release()}\n"
    f"  Python   : {sys.version.split()[0]}\n"
    f"  paramiko : {paramiko.__version__}\n"
    "+" * 72
)

# ---------------------------------------------------------------------------
# Test-only credentials (used by the in-process SSH server, never real hosts)
# ---------------------------------------------------------------------------
TEST_HOST = "127.0.0.1"
TEST_USER = "hypervisor-admin"
TEST_PASS = "testpass"
TEST_USERS = {TEST_USER: TEST_PASS}

# Console command that makes the server hang up right away
HANGUP_COMMAND = "virsh console --force gone-vm"

FAST = LoginTimeouts(connect_s=5.0, probe_s=0.5, login_s=3.0, login_retry_s=3.0, configure_s=3.0)


# ═══════════════════════════════════════════════════════════════════════════
#  IN-PROCESS SSH SERVER  (paramiko ServerInterface)
# ═══════════════════════════════════════════════════════════════════════════

class _ConsoleSSHServer(paramiko.ServerInterface):
    """SSH server whose shell and exec channels are a VM console."""

    def __init__(self, owner: ConsoleSSHTestServer) -> None:
        self.owner = owner

    # -- authentication ----------------------------------------------------

    def get_allowed_auths(self, username: str) -> str:
        return "password"

    def check_auth_password(self, username: str, password: str) -> int:
        if self.owner.users.get(username) == password:
            print(f"    [SERVER] Auth OK for user={username!r}")
            return paramiko.AUTH_SUCCESSFUL
        print(f"    [SERVER] Auth REJECTED for user={username!r}")
        return paramiko.AUTH_FAILED

    # -- channel handling --------------------------------------------------

    def check_channel_request(self, kind: str, chanid: int) -> int:
        if kind == "session":
            return paramiko.OPEN_SUCCEEDED
        return paramiko.OPEN_FAILED_ADMINISTRATIVELY_PROHIBITED

    def check_channel_pty_request(
        self, channel: paramiko.Channel, term: bytes, width: int, height: int,
        pixelwidth: int, pixelheight: int, modes: bytes,
    ) -> bool:
        self.owner.pty_sizes.append((width, height))
        return True

    def check_channel_shell_request(self, channel: paramiko.Channel) -> bool:
        print("    [SERVER] shell request")
        self.owner.serve(channel)
        return True

    def check_channel_exec_request(self, channel: paramiko.Channel, command: bytes) -> bool:
        cmd_str = command.decode("utf-8") if isinstance(command, bytes) else command
        print(f"    [SERVER] exec request: {cmd_str!r}")
        self.owner.commands.append(cmd_str)
        if cmd_str == HANGUP_COMMAND:
            threading.Thread(target=self.owner.hang_up, args=(channel,), daemon=True).start()
        else:
            self.owner.serve(channel)
        return True


class ConsoleSSHTestServer:
    """
    Manages a single in-process SSH server on an OS-assigned port.

    Set ``console`` before each test; every channel opened afterwards talks
    to it.
    """

    def __init__(self, host: str = TEST_HOST, users: Optional[Dict[str, str]] = None) -> None:
        self.host = host
        self.users = users or dict(TEST_USERS)
        self.host_key = paramiko.RSAKey.generate(2048)
        self.console: FedoraConsole = FedoraConsole()
        self.commands: List[str] = []
        self.pty_sizes: List[tuple] = []
        self._server_socket: Optional[socket.socket] = None
        self._running = False
        self._accept_thread: Optional[threading.Thread] = None
        self._transports: List[paramiko.Transport] = []
        self._lock = threading.Lock()

    @property
    def port(self) -> int:
        if self._server_socket is None:
            raise RuntimeError("Server not started")
        return self._server_socket.getsockname()[1]

    def reset(self, console: FedoraConsole) -> None:
        self.console = console
        self.commands.clear()
        self.pty_sizes.clear()

    # -- lifecycle ---------------------------------------------------------

    def start(self) -> None:
        self._server_socket = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        self._server_socket.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        self._server_socket.settimeout(1.0)
        self._server_socket.bind((self.host, 0))  # OS picks a free port
        self._server_socket.listen(5)
        self._running = True

        self._accept_thread = threading.Thread(target=self._accept_loop, daemon=True)
        self._accept_thread.start()
        print(f"  [SERVER] STARTED on {self.host}:{self.port}")

    def stop(self) -> None:
        self._running = False

        # Close every active transport so client threads unblock
        with self._lock:
            for t in list(self._transports):
                t.close()
            self._transports.clear()

        if self._server_socket:
            self._server_socket.close()
            self._server_socket = None

        if self._accept_thread:
            self._accept_thread.join(timeout=5)
            self._accept_thread = None
        print("  [SERVER] STOPPED")

    # -- accept loop -------------------------------------------------------

    def _accept_loop(self) -> None:
        while self._running:
            try:
                client_sock, _ = self._server_socket.accept()  # type: ignore[union-attr]
            except socket.timeout:
                continue
            except OSError:
                break
            threading.Thread(target=self._handle_client, args=(client_sock,), daemon=True).start()

    def _handle_client(self, client_sock: socket.socket) -> None:
        transport = paramiko.Transport(client_sock)
        transport.add_server_key(self.host_key)
        with self._lock:
            self._transports.append(transport)
        try:
            transport.start_server(server=_ConsoleSSHServer(self))
            # Keep alive until client disconnects or server shuts down
            while self._running and transport.is_active():
                time.sleep(0.1)
        except (paramiko.SSHException, EOFError, OSError) as exc:
            print(f"    [SERVER] client session ended: {exc}")
        finally:
            with self._lock:
                if transport in self._transports:
                    self._transports.remove(transport)
            transport.close()

    # -- console channels --------------------------------------------------

    def serve(self, channel: paramiko.Channel) -> None:
        console = self.console
        threading.Thread(target=self._pump, args=(channel, console), daemon=True).start()

    @staticmethod
    def _pump(channel: paramiko.Channel, console: FedoraConsole) -> None:
        channel.settimeout(0.1)
        while not channel.closed:
            try:
                data = channel.recv(4096)
            except socket.timeout:
                continue
            except (paramiko.SSHException, OSError):
                return
            if not data:
                return
            reply = console(data.decode("utf-8"))
            if reply:
                channel.sendall(reply.encode("utf-8"))

    @staticmethod
    def hang_up(channel: paramiko.Channel) -> None:
        time.sleep(0.1)
        channel.sendall(b"error: failed to get domain 'gone-vm'\r\n")
        channel.send_exit_status(1)
        channel.close()

    # -- context manager ---------------------------------------------------

    def __enter__(self) -> ConsoleSSHTestServer:
        self.start()
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.stop()


class BlackHoleServer:
    """
    TCP server that accepts connections but never sends an SSH banner.
    Forces paramiko into its banner timeout.
    """

    def __init__(self, host: str = TEST_HOST) -> None:
        self.host = host
        self._sock: Optional[socket.socket] = None
        self._held: List[socket.socket] = []
        self._running = False
        self._thread: Optional[threading.Thread] = None

    @property
    def port(self) -> int:
        if self._sock is None:
            raise RuntimeError("BlackHoleServer not started")
        return self._sock.getsockname()[1]

    def start(self) -> None:
        self._sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        self._sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        self._sock.settimeout(0.5)
        self._sock.bind((self.host, 0))
        self._sock.listen(5)
        self._running = True
        self._thread = threading.Thread(target=self._hold, daemon=True)
        self._thread.start()

    def _hold(self) -> None:
        while self._running:
            try:
                conn, _ = self._sock.accept()  # type: ignore[union-attr]
            except socket.timeout:
                continue
            except OSError:
                break
            self._held.append(conn)

    def stop(self) -> None:
        self._running = False
        for conn in self._held:
            conn.close()
        if self._sock:
            self._sock.close()
        if self._thread:
            self._thread.join(timeout=5)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _report(label: str, detail: str = "") -> None:
    if detail:
        print(f"  [{label}] {detail}")
    else:
        print(f"  [{label}]")


def _closed_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind((TEST_HOST, 0))
        return s.getsockname()[1]


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture(scope="module")
def ssh_server():
    srv = ConsoleSSHTestServer()
    srv.start()
    yield srv
    srv.stop()


@pytest.fixture()
def black_hole():
    srv = BlackHoleServer()
    srv.start()
    yield srv
    srv.stop()


def _transport(server: ConsoleSSHTestServer, **kwargs) -> SSHConsoleTransport:
    kwargs.setdefault("password", TEST_PASS)
    return SSHConsoleTransport(TEST_HOST, TEST_USER, port=server.port, **kwargs)


# ═══════════════════════════════════════════════════════════════════════════
#  TESTS — Login over SSH
# ═══════════════════════════════════════════════════════════════════════════

class TestSSHLogin:
    """ConsoleLogin end to end over real SSH channels."""

    def test_interactive_shell_console(self, ssh_server):
        _report("TEST", "Remote shell is the console")
        console = FedoraConsole(hostname="vm-1")
        ssh_server.reset(console)
        login = ConsoleLogin(_transport(ssh_server), ConsoleTarget("vm-1"), timeouts=FAST)
        result = login.ensure_logged_in()
        _report("RESULT", f"outcome={result.outcome.value} attempts={result.login_attempts}")
        assert result.outcome is Outcome.LOGGED_IN
        assert console.state == "root"
        assert ssh_server.pty_sizes == [(500, 500)]
        assert ssh_server.commands == []
        _report("PASS", "Logged in over an interactive channel")

    def test_console_command(self, ssh_server):
        _report("TEST", "virsh console on a hypervisor")
        console = FedoraConsole(hostname="vm-1")
        ssh_server.reset(console)
        transport = _transport(ssh_server, console_command="virsh console --force vm-1")
        result = ConsoleLogin(transport, ConsoleTarget("vm-1"), timeouts=FAST).ensure_logged_in()
        assert result.outcome is Outcome.LOGGED_IN
        assert ssh_server.commands == ["virsh console --force vm-1"]
        _report("PASS", "Console command executed under a PTY")

    def test_already_logged_in(self, ssh_server):
        ssh_server.reset(FedoraConsole(state="user"))
        result = ConsoleLogin(_transport(ssh_server), ConsoleTarget("vm-1"), timeouts=FAST).ensure_logged_in()
        assert result.outcome is Outcome.ALREADY_LOGGED_IN

    def test_wrong_guest_password(self, ssh_server):
        ssh_server.reset(FedoraConsole(password="other"))
        result = ConsoleLogin(_transport(ssh_server), ConsoleTarget("vm-1"), timeouts=FAST).ensure_logged_in()
        assert result.outcome is Outcome.PERMISSION_DENIED
        assert result.login_attempts == 1

    def test_console_hangs_up(self, ssh_server):
        _report("TEST", "Console command exits immediately")
        ssh_server.reset(FedoraConsole())
        transport = _transport(ssh_server, console_command=HANGUP_COMMAND)
        result = ConsoleLogin(transport, ConsoleTarget("gone-vm"), timeouts=FAST).ensure_logged_in()
        _report("RESULT", f"outcome={result.outcome.value}: {result.error[:80]}")
        assert result.outcome is Outcome.TRANSPORT_ERROR
        assert "failed to get domain" in result.transcript
        _report("PASS", "Remote hang-up reported with transcript")


# ═══════════════════════════════════════════════════════════════════════════
#  TESTS — Connection Failures
# ═══════════════════════════════════════════════════════════════════════════

class TestSSHConnectionFailures:
    """Unreachable or rejecting endpoints become transport errors."""

    def test_wrong_ssh_password(self, ssh_server):
        _report("TEST", "SSH authentication rejected")
        transport = _transport(ssh_server, password="wrong")
        with pytest.raises(ConsoleTransportError, match="Authentication failed"):
            transport.open_stream(timeout_s=5.0)
        result = ConsoleLogin(transport, ConsoleTarget("vm-1"), timeouts=FAST).ensure_logged_in()
        assert result.outcome is Outcome.TRANSPORT_ERROR
        _report("PASS", "Auth failure mapped to transport error")

    def test_connection_refused(self):
        transport = SSHConsoleTransport(TEST_HOST, TEST_USER, TEST_PASS, port=_closed_port())
        result = ConsoleLogin(transport, ConsoleTarget("vm-1"), timeouts=FAST).ensure_logged_in()
        assert result.outcome is Outcome.TRANSPORT_ERROR
        assert result.transcript == ""

    def test_connect_timeout_bounded(self, black_hole):
        _report("TEST", "Server never sends a banner, 1s connect budget")
        transport = SSHConsoleTransport(TEST_HOST, TEST_USER, TEST_PASS, port=black_hole.port)
        start = time.monotonic()
        with pytest.raises(ConsoleTransportError):
            transport.open_stream(timeout_s=1.0)
        elapsed = time.monotonic() - start
        _report("RESULT", f"elapsed={elapsed:.3f}s")
        assert elapsed < 1.0 + 3.0
        _report("PASS", "Connect budget honoured")

    def test_channel_without_connection(self):
        mgr = SSHConnectionManager(TEST_HOST, TEST_USER, TEST_PASS)
        assert not mgr.is_connected()
        with pytest.raises(ConsoleTransportError, match="not connected"):
            mgr.open_console_channel("no connection", timeout_s=1.0)
        mgr.disconnect()


# ═══════════════════════════════════════════════════════════════════════════
#  TESTS — Stream Behaviour
# ═══════════════════════════════════════════════════════════════════════════

class TestSSHConsoleStream:

    def test_close_disconnects(self, ssh_server):
        ssh_server.reset(FedoraConsole())
        stream = _transport(ssh_server).open_stream(timeout_s=5.0)
        assert isinstance(stream, SSHConsoleStream)
        assert stream.connection_manager.is_connected()
        assert stream.describe() == f"ssh:{TEST_USER}@{TEST_HOST}:{ssh_server.port}"
        stream.close()
        assert not stream.connection_manager.is_connected()

    def test_typeguard_rejects_bad_channel(self):
        mgr = SSHConnectionManager(TEST_HOST, TEST_USER, TEST_PASS)
        with pytest.raises((TypeError, TypeCheckError)):
            SSHConsoleStream(mgr, "not a channel")  # type: ignore[arg-type]

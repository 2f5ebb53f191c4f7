"""Command-line interface for VM console tools."""

from __future__ import annotations

import argparse
import logging
import os
import sys
from typing import Dict, List, Optional

from . import SERIAL_BAUD_RATE, SSH_PORT
from . import config
from .config import ConsoleLoginConfig
from .connection import SSHConsoleTransport
from .exceptions import ConfigurationError
from .login import ConsoleLogin, LoginResult
from .serial_comm import SerialConnectionManager, SerialConsoleTransport
from .transport import ConsoleTransport

_TRANSCRIPT_TAIL_CHARS = 2000

# CLI flag -> environment variable understood by ConsoleLoginConfig
_OVERRIDES = {
    "target": config.TARGET_NAME_ENV,
    "user": config.USERNAME_ENV,
    "password": config.PASSWORD_ENV,
    "escalation_command": config.ESCALATION_COMMAND_ENV,
    "connect_timeout": config.CONNECT_TIMEOUT_ENV,
    "probe_timeout": config.PROBE_TIMEOUT_ENV,
    "login_timeout": config.LOGIN_TIMEOUT_ENV,
    "login_retry_timeout": config.LOGIN_RETRY_TIMEOUT_ENV,
    "configure_timeout": config.CONFIGURE_TIMEOUT_ENV,
}


def build_config(args) -> ConsoleLoginConfig:
    """Environment first, command-line flags on top."""
    env: Dict[str, str] = dict(os.environ)
    for attr, env_name in _OVERRIDES.items():
        value = getattr(args, attr, None)
        if value is not None:
            env[env_name] = value
    if args.alias:
        env[config.HOST_ALIASES_ENV] = ",".join(args.alias)
    return ConsoleLoginConfig.from_env(env)


def run_login(args, transport: ConsoleTransport) -> int:
    """Run the login orchestrator and report its outcome."""
    try:
        login_config = build_config(args)
    except ConfigurationError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 2

    login = ConsoleLogin(
        transport,
        login_config.target,
        credentials=login_config.credentials,
        timeouts=login_config.timeouts,
        on_data=(lambda chunk: print(chunk, end="", flush=True)) if args.stream else None,
    )
    result = login.ensure_logged_in()
    _print_result(result, args.stream)
    return 0 if result.succeeded else 1


def _print_result(result: LoginResult, streamed: bool) -> None:
    if streamed:
        print()
    print(
        f"Outcome: {result.outcome.value} "
        f"(login attempts: {result.login_attempts}, {result.elapsed_seconds:.1f}s)"
    )
    if not result.succeeded:
        print(f"Error: {result.error}", file=sys.stderr)
        if not streamed:
            tail = result.transcript[-_TRANSCRIPT_TAIL_CHARS:] or "(empty)"
            print(f"Transcript tail:\n{tail}", file=sys.stderr)


def command_serial_login(args) -> int:
    """Log in over a serial port."""
    try:
        transport = SerialConsoleTransport(args.serial_port, baud_rate=args.baud_rate)
    except ConfigurationError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 2
    return run_login(args, transport)


def command_ssh_login(args) -> int:
    """Log in to a console reached over SSH."""
    transport = SSHConsoleTransport(
        hostname=args.host,
        username=args.ssh_user,
        password=args.ssh_password or os.environ.get("CONSOLE_SSH_PASSWORD", ""),
        port=args.port,
        console_command=args.console_command,
    )
    return run_login(args, transport)


def command_serial_list(args) -> int:
    """List available serial ports."""
    ports = SerialConnectionManager.list_available_ports()
    if not ports:
        print("No serial ports found.")
    else:
        print("Available serial ports:")
        for p in ports:
            print(f"  {p}")
    return 0


def _add_login_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--target", type=str, default=None,
        help="VM name as shown in its prompts (env: CONSOLE_TARGET_NAME)",
    )
    parser.add_argument(
        "--alias", type=str, action="append", default=None,
        help="Generic hostname the console may show instead of the VM name; "
             "repeatable (default: localhost, fedora)",
    )
    parser.add_argument("--user", type=str, default=None, help="Guest account (default: fedora)")
    parser.add_argument("--password", type=str, default=None, help="Guest password (default: fedora)")
    parser.add_argument(
        "--escalation-command", type=str, default=None,
        help="Command that turns the user shell into a root shell (default: 'sudo su')",
    )
    for stage, default in (
        ("connect", "10s"), ("probe", "5s"), ("login", "2m"),
        ("login-retry", "1m"), ("configure", "30s"),
    ):
        parser.add_argument(
            f"--{stage}-timeout", type=str, default=None,
            help=f"{stage} budget, seconds or a duration like 1m30s (default: {default})",
        )
    parser.add_argument(
        "--stream", action="store_true", default=False,
        help="Stream console output to stdout as it arrives",
    )
    parser.add_argument(
        "-v", "--verbose", action="store_true", default=False,
        help="Log every step to stderr",
    )


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point for CLI."""
    parser = argparse.ArgumentParser(
        description="VM Console Tools - log in to virtual machine serial consoles"
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    # Serial login
    serial_parser = subparsers.add_parser("serial-login", help="Log in over a serial port")
    serial_parser.add_argument(
        "--serial-port", type=str, required=True,
        help="Serial port path (e.g. /dev/pts/3, /dev/ttyUSB0 or COM3)",
    )
    serial_parser.add_argument(
        "--baud-rate", type=int, default=SERIAL_BAUD_RATE,
        help=f"Baud rate (default: {SERIAL_BAUD_RATE})",
    )
    _add_login_arguments(serial_parser)
    serial_parser.set_defaults(func=command_serial_login)

    # SSH login
    ssh_parser = subparsers.add_parser("ssh-login", help="Log in to a console reached over SSH")
    ssh_parser.add_argument("--host", type=str, required=True, help="SSH host")
    ssh_parser.add_argument("--port", type=int, default=SSH_PORT, help=f"SSH port (default: {SSH_PORT})")
    ssh_parser.add_argument("--ssh-user", type=str, required=True, help="SSH username")
    ssh_parser.add_argument(
        "--ssh-password", type=str, default=None,
        help="SSH password (env: CONSOLE_SSH_PASSWORD)",
    )
    ssh_parser.add_argument(
        "--console-command", type=str, default=None,
        help="Command that attaches to the console, e.g. 'virsh console --force vm1'. "
             "Without it the remote shell itself is the console.",
    )
    _add_login_arguments(ssh_parser)
    ssh_parser.set_defaults(func=command_ssh_login)

    # Serial list
    serial_list_parser = subparsers.add_parser("serial-list", help="List available serial ports")
    serial_list_parser.set_defaults(func=command_serial_list)

    args = parser.parse_args(argv)

    if getattr(args, "verbose", False):
        logging.basicConfig(
            level=logging.DEBUG,
            format="%(asctime)s | %(levelname)-7s | %(name)s | %(message)s",
            datefmt="%H:%M:%S",
        )
        logging.getLogger("paramiko").setLevel(logging.WARNING)

    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())

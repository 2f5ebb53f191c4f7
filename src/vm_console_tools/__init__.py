"""
VM Console Tools - unattended login over virtual machine serial consoles

This package automates the login dance on a character-stream console such as
a VM serial port reached through a remote streaming transport.  It includes:

- **Pattern-driven session engine** with priority-ordered regex matching,
  per-batch deadlines and a background reader thread
- **Login orchestrator** that probes for an existing shell, logs in,
  escalates to root and retries once on timing races
- **Post-login configurator** that fixes terminal geometry and kernel log
  verbosity, confirming each step through ``echo $?``
- **Transport adapters** for serial ports (pyserial) and SSH channels
  (paramiko)

Every failure is reported with the transcript captured from the console.
"""

import logging

logging.getLogger("vm_console_tools").addHandler(logging.NullHandler())

__version__ = "0.1.0"

# Timeout settings (seconds).
# Overridable per run via environment variables, see config.ConsoleLoginConfig:
#   CONSOLE_CONNECT_TIMEOUT / CONSOLE_PROBE_TIMEOUT / CONSOLE_LOGIN_TIMEOUT
#   CONSOLE_LOGIN_RETRY_TIMEOUT / CONSOLE_CONFIGURE_TIMEOUT
CONSOLE_CONNECT_TIMEOUT_S = 10.0
CONSOLE_PROBE_TIMEOUT_S = 5.0
CONSOLE_LOGIN_TIMEOUT_S = 120.0
CONSOLE_LOGIN_RETRY_TIMEOUT_S = 60.0
CONSOLE_CONFIGURE_TIMEOUT_S = 30.0

# Default guest account.  The stock Fedora cloud images ship fedora/fedora.
# Override via CONSOLE_USERNAME / CONSOLE_PASSWORD - no secrets in the codebase.
DEFAULT_USERNAME = "fedora"
DEFAULT_PASSWORD = "fedora"

# Hostnames a console may present when DHCP did not hand out the VM's name
DEFAULT_HOST_ALIASES = ("localhost", "fedora")

# Login dialogue
LOGIN_CASE_RETRIES = 10
ESCALATION_COMMAND = "sudo su"

# Post-login shell configuration
TERMINAL_COLUMNS = 500
TERMINAL_ROWS = 500
DMESG_CONSOLE_LEVEL = 1

# Shell prompt of either a regular user or root
PROMPT_EXPRESSION = r"(\$ |\# )"
CRLF = "\r\n"

# Session engine settings
CONSOLE_POLL_INTERVAL_S = 0.01    # reader-thread sleep when the stream is idle
CONSOLE_READ_CHUNK_SIZE = 4096    # max bytes per stream read
CONSOLE_READER_JOIN_TIMEOUT_S = 2.0
CONSOLE_ENCODING = "utf-8"

# SSH transport
SSH_PORT = 22

# Serial communication settings
SERIAL_BAUD_RATE = 115200
SERIAL_BYTESIZE = 8       # 8 data bits
SERIAL_PARITY = "N"       # No parity
SERIAL_STOPBITS = 1       # 1 stop bit
SERIAL_READ_TIMEOUT = 0   # seconds - non-blocking; timing managed by the reader thread
SERIAL_WRITE_TIMEOUT = 10  # seconds - replaced per write by the session send budget
SERIAL_RX_BUFFER_SIZE = 0  # 0 leaves the driver default untouched

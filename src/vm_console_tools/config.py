"""Login configuration from environment variables or ConfigMap-style data.

All values are strings, as they arrive from ``os.environ`` or a Kubernetes
ConfigMap.  Durations accept plain seconds (``"90"``) or Go-style strings
(``"90s"``, ``"2m"``, ``"1m30s"``, ``"500ms"``, ``"250us"``, ``"10ns"``).  Alias
lists are separated by commas or newlines.

=============================== ============================= =========
Variable                        Meaning                       Default
=============================== ============================= =========
CONSOLE_TARGET_NAME             VM name shown in prompts      required
CONSOLE_HOST_ALIASES            generic hostnames             localhost,fedora
CONSOLE_USERNAME                guest account                 fedora
CONSOLE_PASSWORD                guest password                fedora
CONSOLE_ESCALATION_COMMAND      root escalation               sudo su
CONSOLE_CONNECT_TIMEOUT         connect budget                10s
CONSOLE_PROBE_TIMEOUT           already-logged-in probe       5s
CONSOLE_LOGIN_TIMEOUT           first login attempt           2m
CONSOLE_LOGIN_RETRY_TIMEOUT     second login attempt          1m
CONSOLE_CONFIGURE_TIMEOUT       post-login configuration      30s
=============================== ============================= =========
"""

from __future__ import annotations

import dataclasses
import math
import os
import re
from typing import Mapping, Optional, Tuple

from . import (
    CONSOLE_CONFIGURE_TIMEOUT_S,
    CONSOLE_CONNECT_TIMEOUT_S,
    CONSOLE_LOGIN_RETRY_TIMEOUT_S,
    CONSOLE_LOGIN_TIMEOUT_S,
    CONSOLE_PROBE_TIMEOUT_S,
    DEFAULT_HOST_ALIASES,
    DEFAULT_PASSWORD,
    DEFAULT_USERNAME,
    ESCALATION_COMMAND,
)
from .exceptions import ConfigurationError
from .login import ConsoleTarget, LoginCredentials, LoginTimeouts

TARGET_NAME_ENV = "CONSOLE_TARGET_NAME"
HOST_ALIASES_ENV = "CONSOLE_HOST_ALIASES"
USERNAME_ENV = "CONSOLE_USERNAME"
PASSWORD_ENV = "CONSOLE_PASSWORD"
ESCALATION_COMMAND_ENV = "CONSOLE_ESCALATION_COMMAND"
CONNECT_TIMEOUT_ENV = "CONSOLE_CONNECT_TIMEOUT"
PROBE_TIMEOUT_ENV = "CONSOLE_PROBE_TIMEOUT"
LOGIN_TIMEOUT_ENV = "CONSOLE_LOGIN_TIMEOUT"
LOGIN_RETRY_TIMEOUT_ENV = "CONSOLE_LOGIN_RETRY_TIMEOUT"
CONFIGURE_TIMEOUT_ENV = "CONSOLE_CONFIGURE_TIMEOUT"

_DURATION_PART = re.compile(r"(\d+(?:\.\d*)?|\.\d+)(ns|us|\u00b5s|\u03bcs|ms|s|m|h)")
_UNIT_SECONDS = {
    "ns": 1e-9,
    "us": 1e-6,
    "\u00b5s": 1e-6,
    "\u03bcs": 1e-6,
    "ms": 0.001,
    "s": 1.0,
    "m": 60.0,
    "h": 3600.0,
}


def parse_duration(raw: str, name: str) -> float:
    """Parse *raw* into seconds; *name* is used in error messages.

    Raises:
        ConfigurationError: If the value is empty, malformed or not positive.
    """
    text = raw.strip()
    if not text:
        raise ConfigurationError(f"{name} is empty")

    try:
        seconds = float(text)
    except ValueError:
        seconds = 0.0
        pos = 0
        for part in _DURATION_PART.finditer(text):
            if part.start() != pos:
                break
            seconds += float(part.group(1)) * _UNIT_SECONDS[part.group(2)]
            pos = part.end()
        if pos == 0 or pos != len(text):
            raise ConfigurationError(
                f"{name} is illegal: {raw!r} (expected seconds or a duration like '1m30s')"
            )

    if not math.isfinite(seconds) or seconds <= 0:
        raise ConfigurationError(f"{name} must be a positive duration, got {raw!r}")
    return seconds


def parse_list(raw: str) -> Tuple[str, ...]:
    """Split on commas and newlines, dropping blanks."""
    return tuple(item.strip() for item in re.split(r"[,\n]", raw) if item.strip())


@dataclasses.dataclass(frozen=True)
class ConsoleLoginConfig:
    """Typed login parameters."""
    target: ConsoleTarget
    credentials: LoginCredentials
    timeouts: LoginTimeouts

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> ConsoleLoginConfig:
        """Build a config from *env* (default: ``os.environ``).

        Raises:
            ConfigurationError: If a value is missing or illegal.
        """
        if env is None:
            env = os.environ

        name = env.get(TARGET_NAME_ENV)
        if name is None:
            raise ConfigurationError(f"{TARGET_NAME_ENV} is missing")
        name = name.strip()
        if not name:
            raise ConfigurationError(f"{TARGET_NAME_ENV} is empty")

        aliases = DEFAULT_HOST_ALIASES
        if HOST_ALIASES_ENV in env:
            aliases = parse_list(env[HOST_ALIASES_ENV])
            if not aliases:
                raise ConfigurationError(f"{HOST_ALIASES_ENV} does not name any host")

        username = _non_empty(env, USERNAME_ENV, DEFAULT_USERNAME)
        password = _non_empty(env, PASSWORD_ENV, DEFAULT_PASSWORD)
        escalation = _non_empty(env, ESCALATION_COMMAND_ENV, ESCALATION_COMMAND)

        return cls(
            target=ConsoleTarget(name=name, aliases=aliases),
            credentials=LoginCredentials(
                username=username,
                password=password,
                escalation_command=escalation,
            ),
            timeouts=LoginTimeouts(
                connect_s=_duration(env, CONNECT_TIMEOUT_ENV, CONSOLE_CONNECT_TIMEOUT_S),
                probe_s=_duration(env, PROBE_TIMEOUT_ENV, CONSOLE_PROBE_TIMEOUT_S),
                login_s=_duration(env, LOGIN_TIMEOUT_ENV, CONSOLE_LOGIN_TIMEOUT_S),
                login_retry_s=_duration(env, LOGIN_RETRY_TIMEOUT_ENV, CONSOLE_LOGIN_RETRY_TIMEOUT_S),
                configure_s=_duration(env, CONFIGURE_TIMEOUT_ENV, CONSOLE_CONFIGURE_TIMEOUT_S),
            ),
        )


def _non_empty(env: Mapping[str, str], name: str, default: str) -> str:
    value = env.get(name)
    if value is None:
        return default
    if not value.strip():
        raise ConfigurationError(f"{name} is empty")
    return value


def _duration(env: Mapping[str, str], name: str, default: float) -> float:
    raw = env.get(name)
    if raw is None:
        return default
    return parse_duration(raw, name)

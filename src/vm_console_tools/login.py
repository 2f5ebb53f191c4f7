"""Login orchestration for VM serial consoles.

``ConsoleLogin.ensure_logged_in`` drives a console from whatever state it is
in to a configured root shell:

1. Open the session within the connect budget.
2. Flush with a newline, then probe for a shell prompt.  If one shows up the
   console is already logged in and nothing else is sent.
3. Run the login batch: answer the login banner and the password prompt,
   stop on ``Login incorrect``, and on the user prompt escalate with
   ``sudo su``.
4. A timeout (login banners get ripped apart by asynchronous daemon output)
   retries the whole login batch once with the retry budget.  A rejected
   password is never retried.
5. Configure the shell (see ``configure.py``).

The session is closed on every path and the caller always gets a
``LoginResult`` with the transcript, never an exception.
"""

from __future__ import annotations

import dataclasses
import logging
import re
import time
from typing import Callable, Optional, Sequence, Tuple

from typeguard import typechecked

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
    LOGIN_CASE_RETRIES,
    PROMPT_EXPRESSION,
)
from .configure import DEFAULT_SETTINGS, ConsoleConfigurator, ShellSetting
from .exceptions import (
    ConsoleError,
    ConsolePermissionDeniedError,
    ConsoleProtocolMismatchError,
    ConsoleTimeoutError,
    ConsoleTransportError,
)
from .session import Batch, ConsoleSession, Expect, Pattern, Send, open_session
from .transport import ConsoleTransport
from .types import MatchKind, Outcome

logger = logging.getLogger("vm_console_tools.login")

_TRANSCRIPT_LOG_CHARS = 1000


# ---------------------------------------------------------------------------
# Login parameters
# ---------------------------------------------------------------------------


@dataclasses.dataclass(frozen=True)
class ConsoleTarget:
    """The VM behind the console and the hostnames its prompts may show.

    A VM that did not get its hostname from DHCP presents as one of the
    generic *aliases* instead of *name*, so every prompt pattern accepts all
    of them.
    """
    name: str
    aliases: Tuple[str, ...] = DEFAULT_HOST_ALIASES

    def __post_init__(self) -> None:
        object.__setattr__(self, "aliases", tuple(self.aliases))
        if not self.name and not any(self.aliases):
            raise ValueError("ConsoleTarget needs a name or at least one host alias")

    @property
    def host_expression(self) -> str:
        names = list(dict.fromkeys(self.aliases + (self.name,)))
        return "(" + "|".join(re.escape(n) for n in names if n) + ")"


@dataclasses.dataclass(frozen=True)
class LoginCredentials:
    username: str = DEFAULT_USERNAME
    password: str = dataclasses.field(default=DEFAULT_PASSWORD, repr=False)
    escalation_command: str = ESCALATION_COMMAND


@dataclasses.dataclass(frozen=True)
class LoginTimeouts:
    """Per-stage budgets in seconds."""
    connect_s: float = CONSOLE_CONNECT_TIMEOUT_S
    probe_s: float = CONSOLE_PROBE_TIMEOUT_S
    login_s: float = CONSOLE_LOGIN_TIMEOUT_S
    login_retry_s: float = CONSOLE_LOGIN_RETRY_TIMEOUT_S
    configure_s: float = CONSOLE_CONFIGURE_TIMEOUT_S

    def __post_init__(self) -> None:
        for field in dataclasses.fields(self):
            value = getattr(self, field.name)
            if not value > 0:
                raise ValueError(f"LoginTimeouts.{field.name} must be positive, got {value!r}")


@dataclasses.dataclass(frozen=True)
class LoginResult:
    """Terminal result of one ``ensure_logged_in`` run.

    Attributes:
        outcome: What happened.
        transcript: Everything the console printed during the run.
        login_attempts: Login batches started (0 when the probe succeeded
            or the session never opened).
        elapsed_seconds: Wall-clock time of the whole run.
        error: The failure message, empty on success.
    """
    outcome: Outcome
    transcript: str
    login_attempts: int
    elapsed_seconds: float
    error: str = ""

    @property
    def succeeded(self) -> bool:
        return self.outcome.succeeded


# ---------------------------------------------------------------------------
# Prompt expressions and batches
# ---------------------------------------------------------------------------


def user_prompt_expression(target: ConsoleTarget, username: str) -> str:
    return r"\[" + re.escape(username) + "@" + target.host_expression + r" ~\]\$ "


def root_prompt_expression(target: ConsoleTarget, username: str) -> str:
    # root keeps the user's home as working directory after "sudo su"
    return r"\[root@" + target.host_expression + " " + re.escape(username) + r"\]\# "


def shell_prompt_expression(target: ConsoleTarget, username: str) -> str:
    return (
        "(" + user_prompt_expression(target, username)
        + "|" + root_prompt_expression(target, username) + ")"
    )


def probe_batch(target: ConsoleTarget, credentials: LoginCredentials, timeout_s: float) -> Batch:
    """Newline, then the user or root prompt of an already logged-in shell."""
    return Batch(
        steps=(
            Send("\n"),
            Expect.regex(shell_prompt_expression(target, credentials.username)),
        ),
        timeout_s=timeout_s,
    )


def login_batch(target: ConsoleTarget, credentials: LoginCredentials, timeout_s: float) -> Batch:
    """The full login dialogue followed by privilege escalation."""
    return Batch(
        steps=(
            Send("\n"),
            Expect((
                # A bare "login: " would also match "Last failed login: ..." lines
                Pattern(
                    target.host_expression + " login: ",
                    send=credentials.username + "\n",
                    kind=MatchKind.CONTINUE,
                    retries=LOGIN_CASE_RETRIES,
                ),
                Pattern(
                    r"Password:",
                    send=credentials.password + "\n",
                    kind=MatchKind.CONTINUE,
                    retries=LOGIN_CASE_RETRIES,
                    redact=True,
                ),
                Pattern(r"Login incorrect", kind=MatchKind.PERMISSION_DENIED),
                Pattern(user_prompt_expression(target, credentials.username)),
            )),
            Send(credentials.escalation_command + "\n"),
            Expect.regex(PROMPT_EXPRESSION),
        ),
        timeout_s=timeout_s,
    )


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------


@dataclasses.dataclass
class _LoginRun:
    """Mutable bookkeeping of one ``ensure_logged_in`` call."""
    context: str
    attempts: int = 0


@typechecked
class ConsoleLogin:
    """Ensures an authenticated, configured root shell on a VM console.

    Example::

        login = ConsoleLogin(
            SerialConsoleTransport("/dev/ttyUSB0"),
            ConsoleTarget("vm-under-test"),
        )
        result = login.ensure_logged_in()
        if not result.succeeded:
            print(result.outcome, result.transcript[-500:])

    One instance may be reused; every call opens its own session and keeps
    its own retry bookkeeping.
    """

    def __init__(
        self,
        transport: ConsoleTransport,
        target: ConsoleTarget,
        credentials: Optional[LoginCredentials] = None,
        timeouts: Optional[LoginTimeouts] = None,
        settings: Sequence[ShellSetting] = DEFAULT_SETTINGS,
        on_data: Optional[Callable[[str], None]] = None,
        log: Optional[logging.Logger] = None,
    ) -> None:
        """Initialize the login orchestrator.

        Args:
            transport: Opens the console stream.
            target: The VM and the host aliases its prompts may show.
            credentials: Guest account (default: fedora/fedora, ``sudo su``).
            timeouts: Stage budgets (default: 10s/5s/2m/1m/30s).
            settings: Post-login shell settings, applied in order.
            on_data: Streaming callback for console output.
            log: Diagnostic sink; defaults to the module logger.
        """
        self.transport = transport
        self.target = target
        self.credentials = credentials or LoginCredentials()
        self.timeouts = timeouts or LoginTimeouts()
        self.settings = tuple(settings)
        self.on_data = on_data
        self.log = log or logger

    def ensure_logged_in(self) -> LoginResult:
        """Bring the console to a configured root shell.

        Returns:
            A ``LoginResult``.  Errors are reported through its ``outcome``
            and ``error``, never raised.
        """
        run = _LoginRun(context=f"login to {self.target.name}")
        start = time.monotonic()

        try:
            session = open_session(
                self.transport,
                context=run.context,
                timeout_s=self.timeouts.connect_s,
                on_data=self.on_data,
            )
        except ConsoleTransportError as exc:
            self.log.error("[LOGIN] [%s] Could not open console: %s", run.context, exc)
            return LoginResult(
                outcome=Outcome.TRANSPORT_ERROR,
                transcript=exc.transcript,
                login_attempts=0,
                elapsed_seconds=time.monotonic() - start,
                error=str(exc),
            )

        error = ""
        try:
            outcome = self._drive(session, run)
        except ConsoleError as exc:
            outcome = _outcome_for(exc)
            error = str(exc)
        finally:
            session.close()

        result = LoginResult(
            outcome=outcome,
            transcript=session.transcript,
            login_attempts=run.attempts,
            elapsed_seconds=time.monotonic() - start,
            error=error,
        )
        if result.succeeded:
            self.log.info(
                "[LOGIN] [%s] %s after %d login attempt(s) in %.2fs",
                run.context, outcome.value, run.attempts, result.elapsed_seconds,
            )
        else:
            self.log.error(
                "[LOGIN] [%s] FAILED (%s) after %d login attempt(s) in %.2fs: %s",
                run.context, outcome.value, run.attempts, result.elapsed_seconds, error,
            )
        return result

    def _drive(self, session: ConsoleSession, run: _LoginRun) -> Outcome:
        session.send("\n", context=f"{run.context} / flush")

        if self._probe(session, run):
            return Outcome.ALREADY_LOGGED_IN

        self._authenticate(session, run)

        ConsoleConfigurator(session, self.settings, log=self.log).configure(
            context=f"{run.context} / configure",
            timeout_s=self.timeouts.configure_s,
        )
        return Outcome.LOGGED_IN

    def _probe(self, session: ConsoleSession, run: _LoginRun) -> bool:
        batch = probe_batch(self.target, self.credentials, self.timeouts.probe_s)
        try:
            session.run_batch(batch, context=f"{run.context} / probe")
        except ConsoleTimeoutError:
            self.log.info("[LOGIN] [%s] No shell prompt, logging in", run.context)
            return False
        self.log.info("[LOGIN] [%s] Console is already logged in", run.context)
        return True

    def _authenticate(self, session: ConsoleSession, run: _LoginRun) -> None:
        deadlines = (self.timeouts.login_s, self.timeouts.login_retry_s)

        for attempt, timeout_s in enumerate(deadlines, 1):
            run.attempts = attempt
            batch = login_batch(self.target, self.credentials, timeout_s)
            try:
                session.run_batch(batch, context=f"{run.context} / attempt {attempt}")
                return
            except ConsolePermissionDeniedError as exc:
                self.log.error(
                    "[LOGIN] [%s] Failed to log in: %s\nTranscript tail:\n%s",
                    run.context, exc, exc.transcript[-_TRANSCRIPT_LOG_CHARS:],
                )
                raise
            except ConsoleTimeoutError as exc:
                self.log.warning(
                    "[LOGIN] [%s] Login attempt %d/%d failed: %s\nTranscript tail:\n%s",
                    run.context, attempt, len(deadlines), exc,
                    exc.transcript[-_TRANSCRIPT_LOG_CHARS:],
                )
                if attempt == len(deadlines):
                    raise


def _outcome_for(exc: ConsoleError) -> Outcome:
    if isinstance(exc, ConsolePermissionDeniedError):
        return Outcome.PERMISSION_DENIED
    if isinstance(exc, ConsoleProtocolMismatchError):
        return Outcome.PROTOCOL_MISMATCH
    if isinstance(exc, ConsoleTimeoutError):
        return Outcome.TIMEOUT
    return Outcome.TRANSPORT_ERROR

"""Post-login shell configuration confirmed through ``echo $?``."""

from __future__ import annotations

import dataclasses
import logging
import time
from typing import List, Optional, Sequence

from typeguard import typechecked

from . import (
    CONSOLE_CONFIGURE_TIMEOUT_S,
    CRLF,
    DMESG_CONSOLE_LEVEL,
    PROMPT_EXPRESSION,
    TERMINAL_COLUMNS,
    TERMINAL_ROWS,
)
from .exceptions import ConsoleProtocolMismatchError, ConsoleTimeoutError
from .session import Batch, BatchResult, ConsoleSession, Expect, Pattern, Send
from .types import MatchKind

logger = logging.getLogger("vm_console_tools.configure")


def ret_value(code: str, prompt: str = PROMPT_EXPRESSION) -> str:
    """Regex for the output of ``echo $?`` printing *code*, then the prompt.

    *code* is inserted verbatim, so it may itself be an expression such as
    ``r"\\d+"``.
    """
    return "\n" + code + CRLF + ".*" + prompt


@dataclasses.dataclass(frozen=True)
class ShellSetting:
    """A shell command and the exit status that confirms it worked."""
    command: str
    expected_status: int = 0
    prompt: str = PROMPT_EXPRESSION

    def batch(self, timeout_s: float) -> Batch:
        return Batch(
            steps=(
                Send(self.command + "\n"),
                Expect.regex(self.prompt),
                Send("echo $?\n"),
                Expect((
                    Pattern(ret_value(str(self.expected_status), self.prompt)),
                    Pattern(ret_value(r"\d+", self.prompt), kind=MatchKind.MISMATCH),
                )),
            ),
            timeout_s=timeout_s,
        )


DEFAULT_SETTINGS = (
    ShellSetting(f"stty cols {TERMINAL_COLUMNS} rows {TERMINAL_ROWS}"),
    ShellSetting(f"dmesg -n {DMESG_CONSOLE_LEVEL}"),
)


@typechecked
class ConsoleConfigurator:
    """Puts a freshly logged-in shell into a known state.

    Settings run in order under one shared deadline.  Nothing is retried: a
    failed confirmation means the session is in a state a retry would not
    fix.
    """

    def __init__(
        self,
        session: ConsoleSession,
        settings: Sequence[ShellSetting] = DEFAULT_SETTINGS,
        log: Optional[logging.Logger] = None,
    ) -> None:
        self.session = session
        self.settings = tuple(settings)
        self.log = log or logger

    def configure(
        self,
        context: str,
        timeout_s: float = CONSOLE_CONFIGURE_TIMEOUT_S,
    ) -> List[BatchResult]:
        """Apply every setting.

        Returns:
            One ``BatchResult`` per setting.

        Raises:
            ConsoleProtocolMismatchError: A command reported another exit status.
            ConsoleTimeoutError: The prompt or the status never showed up.
            ConsoleTransportError: The stream failed.
        """
        deadline = time.monotonic() + timeout_s
        results: List[BatchResult] = []

        self.log.info(
            "[CONFIGURE] [%s] Applying %d shell settings on %s (timeout=%.1fs)",
            context, len(self.settings), self.session.name, timeout_s,
        )

        for setting in self.settings:
            remaining = deadline - time.monotonic()
            setting_ctx = f"{context} / {setting.command!r}"
            if remaining <= 0:
                msg = (
                    f"[{setting_ctx}] Timeout ({timeout_s:.1f}s) expired on "
                    f"{self.session.name} before the setting could run"
                )
                self.log.error("[CONFIGURE] TIMEOUT — %s", msg)
                raise ConsoleTimeoutError(msg, transcript=self.session.transcript)

            try:
                results.append(self.session.run_batch(setting.batch(remaining), context=setting_ctx))
            except (ConsoleProtocolMismatchError, ConsoleTimeoutError) as exc:
                self.log.error(
                    "[CONFIGURE] [%s] Console configuration error: %s\nTranscript tail:\n%s",
                    setting_ctx, exc, exc.transcript[-1000:],
                )
                raise

            self.log.info("[CONFIGURE] [%s] Confirmed exit status %d", setting_ctx, setting.expected_status)

        return results

"""Pattern-driven session engine for character-stream consoles.

A ``ConsoleSession`` owns one ``ConsoleStream``.  A background reader thread
drains the console output into a queue so that sending keystrokes and waiting
for output never block each other.  On top of that the session offers three
primitives:

- ``send``: write literal text to the console.
- ``expect_one_of``: wait for the first *declared* pattern that matches the
  accumulated output.  Declaration order is the tie-break, not arrival order.
- ``run_batch``: run an ordered list of send/expect steps under a single
  deadline.

Every error raised from here carries the session transcript.
"""

from __future__ import annotations

import codecs
import dataclasses
import logging
import queue
import re
import threading
import time
from typing import Callable, List, Optional, Sequence, Tuple, Union

from typeguard import typechecked

from . import (
    CONSOLE_CONNECT_TIMEOUT_S,
    CONSOLE_ENCODING,
    CONSOLE_POLL_INTERVAL_S,
    CONSOLE_READ_CHUNK_SIZE,
    CONSOLE_READER_JOIN_TIMEOUT_S,
)
from .exceptions import (
    ConsolePermissionDeniedError,
    ConsoleProtocolMismatchError,
    ConsoleRetryBudgetError,
    ConsoleTimeoutError,
    ConsoleTransportError,
)
from .transport import ConsoleStream, ConsoleTransport
from .types import MatchKind

logger = logging.getLogger("vm_console_tools.session")

# Oldest unmatched output is dropped past this size
_MAX_BUFFER_CHARS = 64 * 1024


def _tail(text: str, limit: int = 200) -> str:
    return text[-limit:] if text else "(empty)"


# ---------------------------------------------------------------------------
# Batch building blocks
# ---------------------------------------------------------------------------


@dataclasses.dataclass(frozen=True)
class Pattern:
    """A regular expression plus what to do when it matches.

    Attributes:
        regex: The expression, given as a string or a compiled pattern.
            Searched (not anchored) against the accumulated output.
        send: Literal text to send when the pattern matches (``""`` = none).
        kind: What the match means for the running batch.
        retries: How many times a ``CONTINUE`` pattern may be chosen within
            one batch step before the step fails.
        redact: Keep ``send`` out of the logs (passwords).
    """
    regex: "re.Pattern[str]"
    send: str = ""
    kind: MatchKind = MatchKind.SUCCESS
    retries: int = 0
    redact: bool = False

    def __post_init__(self) -> None:
        if isinstance(self.regex, str):
            object.__setattr__(self, "regex", re.compile(self.regex))
        if self.retries < 0:
            raise ValueError(f"Pattern {self.regex.pattern!r}: retries must be >= 0")

    @property
    def expression(self) -> str:
        return self.regex.pattern


@dataclasses.dataclass(frozen=True)
class Send:
    """Batch step: send literal text."""
    data: str
    redact: bool = False


@dataclasses.dataclass(frozen=True)
class Expect:
    """Batch step: wait for the best match among *patterns*."""
    patterns: Tuple[Pattern, ...]

    def __post_init__(self) -> None:
        object.__setattr__(self, "patterns", tuple(self.patterns))
        if not self.patterns:
            raise ValueError("Expect step needs at least one pattern")

    @classmethod
    def regex(cls, expression: str) -> Expect:
        """Single ``SUCCESS`` pattern, the common "wait for the prompt" step."""
        return cls((Pattern(expression),))


Step = Union[Send, Expect]


@dataclasses.dataclass(frozen=True)
class Batch:
    """Ordered send/expect steps sharing one deadline of ``timeout_s``."""
    steps: Tuple[Step, ...]
    timeout_s: float

    def __post_init__(self) -> None:
        object.__setattr__(self, "steps", tuple(self.steps))
        if self.timeout_s <= 0:
            raise ValueError(f"Batch timeout must be positive, got {self.timeout_s!r}")


@dataclasses.dataclass(frozen=True)
class ExpectMatch:
    """Which pattern matched and the output it consumed."""
    index: int
    pattern: Pattern
    output: str
    groups: Tuple[Optional[str], ...]


@dataclasses.dataclass(frozen=True)
class BatchResult:
    """Every match observed by a successful batch, in order."""
    matches: Tuple[ExpectMatch, ...]
    elapsed_seconds: float

    @property
    def output(self) -> str:
        return "".join(m.output for m in self.matches)


# ---------------------------------------------------------------------------
# Session
# ---------------------------------------------------------------------------


@typechecked
class ConsoleSession:
    """Owns one console stream for the lifetime of a login run.

    Example::

        session = open_session(transport, context="login to vm-1")
        try:
            session.send("\\n", context="wake up")
            match = session.expect_one_of(
                [Pattern(r"login: "), Pattern(r"\\$ ")],
                context="find prompt",
                timeout_s=5,
            )
        finally:
            session.close()
    """

    def __init__(
        self,
        stream: ConsoleStream,
        send_timeout_s: float,
        on_data: Optional[Callable[[str], None]] = None,
        encoding: str = CONSOLE_ENCODING,
        poll_interval_s: float = CONSOLE_POLL_INTERVAL_S,
    ) -> None:
        """Wrap *stream* and start draining it.

        Args:
            stream: An open console stream.  The session takes ownership.
            send_timeout_s: Budget for each individual write.
            on_data: Optional streaming callback invoked with each decoded
                chunk as it is consumed.  Errors raised by it are logged and
                swallowed.
            encoding: Console character encoding.
            poll_interval_s: Reader-thread sleep while the stream is idle.
        """
        self.stream = stream
        self.name = stream.describe()
        self.send_timeout_s = send_timeout_s
        self.on_data = on_data
        self.encoding = encoding
        self.poll_interval_s = poll_interval_s

        self._queue: queue.Queue = queue.Queue()
        self._decoder = codecs.getincrementaldecoder(encoding)("replace")
        self._buffer = ""
        self._transcript: List[str] = []
        self._reader_error: Optional[ConsoleTransportError] = None
        self._stop = threading.Event()
        self._close_lock = threading.Lock()
        self._closed = False

        self._reader = threading.Thread(
            target=self._read_loop,
            name=f"console-reader[{self.name}]",
            daemon=True,
        )
        self._reader.start()
        logger.debug("[SESSION] Reader thread started for %s", self.name)

    # ------------------------------------------------------------------
    # Background reader
    # ------------------------------------------------------------------

    def _read_loop(self) -> None:
        while not self._stop.is_set():
            try:
                chunk = self.stream.read(CONSOLE_READ_CHUNK_SIZE)
            except ConsoleTransportError as exc:
                if not self._stop.is_set():
                    self._queue.put(exc)
                return
            except Exception as exc:
                if not self._stop.is_set():
                    self._queue.put(ConsoleTransportError(
                        f"Unexpected {type(exc).__name__} reading from {self.name}: {exc}"
                    ))
                return

            if chunk:
                self._queue.put(chunk)
            else:
                self._stop.wait(self.poll_interval_s)

    def _feed(self, chunk: bytes) -> None:
        text = self._decoder.decode(chunk, False)
        if not text:
            return
        self._transcript.append(text)
        self._buffer += text
        if len(self._buffer) > _MAX_BUFFER_CHARS:
            self._buffer = self._buffer[-_MAX_BUFFER_CHARS:]

        logger.debug("[READ] +%d bytes from %s: %r", len(chunk), self.name, text)

        if self.on_data is not None:
            try:
                self.on_data(text)
            except Exception as cb_exc:
                logger.warning(
                    "[READ] on_data callback raised %s: %s",
                    type(cb_exc).__name__, cb_exc,
                )

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    @property
    def transcript(self) -> str:
        """Everything the console printed that this session has consumed."""
        return "".join(self._transcript)

    def is_closed(self) -> bool:
        return self._closed

    def _assert_open(self, operation: str, context: str) -> None:
        if self._closed:
            msg = f"[{context}] Cannot {operation} on {self.name}: session is closed"
            logger.error("[SESSION] %s", msg)
            raise ConsoleTransportError(msg, transcript=self.transcript)
        if self._reader_error is not None:
            msg = (
                f"[{context}] Cannot {operation} on {self.name}: the console stream "
                f"already failed: {self._reader_error}"
            )
            logger.error("[SESSION] %s", msg)
            raise ConsoleTransportError(msg, transcript=self.transcript)

    def _write(self, data: Union[str, bytes], context: str, timeout_s: float, redact: bool) -> None:
        encoded = data.encode(self.encoding) if isinstance(data, str) else data
        shown = "<redacted>" if redact else repr(data)
        try:
            self.stream.write(encoded, timeout_s)
        except ConsoleTransportError as exc:
            msg = f"[{context}] Failed to send {len(encoded)} bytes to {self.name}: {exc}"
            logger.error("[SEND] ERROR — %s", msg)
            raise ConsoleTransportError(msg, transcript=self.transcript) from exc
        except Exception as exc:
            msg = (
                f"[{context}] Failed to send {len(encoded)} bytes to {self.name}: "
                f"{type(exc).__name__}: {exc}"
            )
            logger.error("[SEND] ERROR — %s", msg)
            raise ConsoleTransportError(msg, transcript=self.transcript) from exc
        logger.debug("[SEND] [%s] Sent %d bytes to %s: %s", context, len(encoded), self.name, shown)

    def _match_buffer(self, patterns: Sequence[Pattern]) -> Optional[ExpectMatch]:
        for index, pattern in enumerate(patterns):
            found = pattern.regex.search(self._buffer)
            if found is not None:
                output = self._buffer
                self._buffer = ""
                return ExpectMatch(
                    index=index,
                    pattern=pattern,
                    output=output,
                    groups=found.groups(),
                )
        return None

    def _expect_until(
        self,
        patterns: Sequence[Pattern],
        context: str,
        deadline: float,
        timeout_s: float,
    ) -> ExpectMatch:
        start = time.monotonic()

        while True:
            match = self._match_buffer(patterns)
            if match is not None:
                logger.info(
                    "[EXPECT] [%s] Pattern #%d %r matched on %s after %.3fs",
                    context, match.index, match.pattern.expression,
                    self.name, time.monotonic() - start,
                )
                return match

            remaining = deadline - time.monotonic()
            if remaining <= 0:
                break
            try:
                item = self._queue.get(timeout=remaining)
            except queue.Empty:
                break

            if isinstance(item, ConsoleTransportError):
                self._reader_error = item
                self._buffer = ""
                msg = (
                    f"[{context}] Console stream {self.name} failed while waiting for "
                    f"{[p.expression for p in patterns]}: {item}"
                )
                logger.error("[EXPECT] TRANSPORT ERROR — %s", msg)
                raise ConsoleTransportError(msg, transcript=self.transcript) from item
            self._feed(item)

        # Partial progress is discarded, the next expect starts from fresh output
        unmatched = self._buffer
        self._buffer = ""
        msg = (
            f"[{context}] Timeout ({timeout_s:.1f}s) expired on {self.name} before any of "
            f"{[p.expression for p in patterns]} matched. "
            f"Output tail: {_tail(unmatched)!r}"
        )
        logger.warning("[EXPECT] TIMEOUT — %s", msg)
        raise ConsoleTimeoutError(msg, transcript=self.transcript)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def send(self, data: Union[str, bytes], context: str, redact: bool = False) -> None:
        """Write literal text (or raw bytes) to the console.

        Args:
            data: Text to send.  No newline is appended.
            context: Description of the purpose, embedded into error messages.
            redact: Keep *data* out of the logs.

        Raises:
            ConsoleTransportError: If the session is closed or the write fails.
        """
        self._assert_open("send", context)
        self._write(data, context, self.send_timeout_s, redact)

    def expect_one_of(
        self,
        patterns: Sequence[Pattern],
        context: str,
        timeout_s: float,
    ) -> ExpectMatch:
        """Wait until one of *patterns* matches the accumulated output.

        After every chunk the patterns are evaluated in declaration order
        against the whole unmatched buffer; the first one that matches wins.
        The matched buffer is consumed.

        Args:
            patterns: Candidate patterns, highest priority first.
            context: Description of the purpose, embedded into error messages.
            timeout_s: Deadline for the whole wait.

        Returns:
            The ``ExpectMatch`` describing the winning pattern.

        Raises:
            ConsoleTimeoutError: If nothing matched before the deadline.  The
                unmatched output is dropped.
            ConsoleTransportError: If the stream failed or the session is
                closed.
        """
        if not patterns:
            raise ValueError(f"[{context}] expect_one_of needs at least one pattern")
        self._assert_open("expect", context)
        return self._expect_until(patterns, context, time.monotonic() + timeout_s, timeout_s)

    def run_batch(self, batch: Batch, context: str) -> BatchResult:
        """Run *batch* step by step under its single deadline.

        ``Send`` steps write their text.  ``Expect`` steps wait for their
        patterns with whatever time is left on the batch deadline, then act
        on the winner's ``kind``:

        - ``SUCCESS``: send the pattern's text (if any), go to the next step.
        - ``CONTINUE``: spend one retry, send the pattern's text, keep
          matching the same step.
        - ``PERMISSION_DENIED`` / ``MISMATCH``: abort the batch.

        Returns:
            A ``BatchResult`` with every match in order.

        Raises:
            ConsoleTimeoutError: If the deadline expired.
            ConsoleRetryBudgetError: If a ``CONTINUE`` pattern ran out of retries.
            ConsolePermissionDeniedError: On a ``PERMISSION_DENIED`` match.
            ConsoleProtocolMismatchError: On a ``MISMATCH`` match.
            ConsoleTransportError: If the stream failed.
        """
        self._assert_open("run_batch", context)
        start = time.monotonic()
        deadline = start + batch.timeout_s
        matches: List[ExpectMatch] = []

        logger.info(
            "[BATCH] [%s] Running %d steps on %s (timeout=%.1fs)",
            context, len(batch.steps), self.name, batch.timeout_s,
        )

        for step_no, step in enumerate(batch.steps, 1):
            step_ctx = f"{context} / step {step_no}"

            if isinstance(step, Send):
                self._send_before(deadline, step.data, step_ctx, batch.timeout_s, step.redact)
                continue

            budgets = [p.retries for p in step.patterns]
            while True:
                match = self._expect_until(step.patterns, step_ctx, deadline, batch.timeout_s)
                matches.append(match)
                pattern = match.pattern

                if pattern.kind is MatchKind.PERMISSION_DENIED:
                    msg = (
                        f"[{context}] Console {self.name} rejected the credentials "
                        f"(matched {pattern.expression!r}). "
                        f"Output tail: {_tail(match.output)!r}"
                    )
                    logger.error("[BATCH] PERMISSION DENIED — %s", msg)
                    raise ConsolePermissionDeniedError(msg, transcript=self.transcript)

                if pattern.kind is MatchKind.MISMATCH:
                    msg = (
                        f"[{context}] Console {self.name} answered with unexpected output "
                        f"(matched {pattern.expression!r}). "
                        f"Output tail: {_tail(match.output)!r}"
                    )
                    logger.error("[BATCH] MISMATCH — %s", msg)
                    raise ConsoleProtocolMismatchError(msg, transcript=self.transcript)

                if pattern.kind is MatchKind.CONTINUE:
                    if budgets[match.index] <= 0:
                        msg = (
                            f"[{context}] Pattern {pattern.expression!r} matched more than "
                            f"{pattern.retries} times on {self.name} without progress. "
                            f"Output tail: {_tail(match.output)!r}"
                        )
                        logger.warning("[BATCH] RETRIES EXCEEDED — %s", msg)
                        raise ConsoleRetryBudgetError(msg, transcript=self.transcript)
                    budgets[match.index] -= 1

                if pattern.send:
                    self._send_before(deadline, pattern.send, step_ctx, batch.timeout_s, pattern.redact)

                if pattern.kind is MatchKind.SUCCESS:
                    break

        elapsed = time.monotonic() - start
        logger.info(
            "[BATCH] [%s] Completed on %s — %d matches in %.3fs",
            context, self.name, len(matches), elapsed,
        )
        return BatchResult(matches=tuple(matches), elapsed_seconds=elapsed)

    def _send_before(
        self,
        deadline: float,
        data: str,
        context: str,
        timeout_s: float,
        redact: bool,
    ) -> None:
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            msg = f"[{context}] Timeout ({timeout_s:.1f}s) expired on {self.name} before sending"
            logger.warning("[BATCH] TIMEOUT — %s", msg)
            raise ConsoleTimeoutError(msg, transcript=self.transcript)
        self._write(data, context, min(self.send_timeout_s, remaining), redact)

    def close(self) -> None:
        """Stop the reader and close the stream.  Only the first call acts."""
        with self._close_lock:
            if self._closed:
                logger.debug("[SESSION-CLOSE] close() called on already-closed %s", self.name)
                return
            self._closed = True

        # The reader must be gone before the stream is torn down under it
        self._stop.set()
        self._reader.join(timeout=CONSOLE_READER_JOIN_TIMEOUT_S)
        if self._reader.is_alive():
            logger.warning(
                "[SESSION-CLOSE] Reader thread for %s still running after %.1fs",
                self.name, CONSOLE_READER_JOIN_TIMEOUT_S,
            )

        try:
            self.stream.close()
        except Exception as exc:
            logger.warning("[SESSION-CLOSE] Error closing %s: %s", self.name, exc)

        # Keep late output for the transcript
        while True:
            try:
                item = self._queue.get_nowait()
            except queue.Empty:
                break
            if isinstance(item, bytes):
                self._feed(item)

        logger.info("[SESSION-CLOSE] Closed %s", self.name)

    # ---- Context manager ----

    def __enter__(self) -> ConsoleSession:
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:  # type: ignore[no-untyped-def]
        self.close()


def open_session(
    transport: ConsoleTransport,
    context: str,
    timeout_s: float = CONSOLE_CONNECT_TIMEOUT_S,
    on_data: Optional[Callable[[str], None]] = None,
    poll_interval_s: float = CONSOLE_POLL_INTERVAL_S,
) -> ConsoleSession:
    """Open a console stream within *timeout_s* and wrap it in a session.

    The time spent connecting is subtracted from *timeout_s*; what is left
    becomes the session's per-write budget.

    Raises:
        ConsoleTransportError: If the stream cannot be opened in time.
    """
    logger.info(
        "[SESSION-OPEN] [%s] Opening console via %s (timeout=%.1fs) ...",
        context, transport.describe(), timeout_s,
    )
    start = time.monotonic()
    try:
        stream = transport.open_stream(timeout_s)
    except ConsoleTransportError:
        raise
    except Exception as exc:
        msg = (
            f"[{context}] Could not open console via {transport.describe()}: "
            f"{type(exc).__name__}: {exc}"
        )
        logger.error("[SESSION-OPEN] ERROR — %s", msg)
        raise ConsoleTransportError(msg) from exc
    elapsed = time.monotonic() - start
    remaining = timeout_s - elapsed

    if remaining <= 0:
        try:
            stream.close()
        except Exception as exc:
            logger.warning("[SESSION-OPEN] Error closing late stream %s: %s", stream.describe(), exc)
        msg = (
            f"[{context}] Console {stream.describe()} opened after {elapsed:.1f}s, "
            f"exhausting the {timeout_s:.1f}s connect budget"
        )
        logger.error("[SESSION-OPEN] TIMEOUT — %s", msg)
        raise ConsoleTransportError(msg)

    logger.info(
        "[SESSION-OPEN] [%s] Opened %s in %.3fs (send budget %.1fs)",
        context, stream.describe(), elapsed, remaining,
    )
    return ConsoleSession(
        stream,
        send_timeout_s=remaining,
        on_data=on_data,
        poll_interval_s=poll_interval_s,
    )

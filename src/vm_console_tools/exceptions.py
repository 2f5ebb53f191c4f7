"""Custom exceptions for console sessions and login automation."""

from __future__ import annotations


class ConsoleToolsError(Exception):
    """Common base exception for all vm_console_tools errors."""
    pass


class ConfigurationError(ConsoleToolsError):
    """Exception for missing or illegal configuration values."""
    pass


class ConsoleError(ConsoleToolsError):
    """Base exception for failures observed on a console session.

    Attributes:
        transcript: Everything the console printed during the session up to
            the failure.  Empty when no session was ever opened.
    """

    def __init__(self, message: str, *, transcript: str = "") -> None:
        super().__init__(message)
        self.transcript = transcript


class ConsoleTransportError(ConsoleError):
    """Exception for transport failures.

    Raised when the console stream cannot be opened, when a read or write
    fails, or when the remote end closes the stream.
    """
    pass


class ConsoleTimeoutError(ConsoleError):
    """Exception for expect deadlines that expired without a match."""
    pass


class ConsoleRetryBudgetError(ConsoleTimeoutError):
    """A continue-pattern matched more often than its retry budget allows.

    Subclasses ``ConsoleTimeoutError`` because the session ends up in the same
    ambiguous state: the expected progression was never observed.
    """
    pass


class ConsolePermissionDeniedError(ConsoleError):
    """Exception for credentials explicitly rejected by the console."""
    pass


class ConsoleProtocolMismatchError(ConsoleError):
    """Exception for a shell confirmation that reported an unexpected value.

    Raised by the post-login configurator when ``echo $?`` prints an exit
    status other than the expected one.
    """
    pass

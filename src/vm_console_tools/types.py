"""Type definitions for VM Console Tools."""

import enum


class MatchKind(enum.Enum):
    """What matching a pattern means for the running batch."""

    CONTINUE = "continue"                    # send, then keep matching the same step
    SUCCESS = "success"                      # send, then advance to the next step
    PERMISSION_DENIED = "permission-denied"  # abort the batch
    MISMATCH = "mismatch"                    # abort the batch


class Outcome(enum.Enum):
    """Terminal result of one login orchestrator run."""

    LOGGED_IN = "logged-in"
    ALREADY_LOGGED_IN = "already-logged-in"
    PERMISSION_DENIED = "permission-denied"
    TIMEOUT = "timeout"
    TRANSPORT_ERROR = "transport-error"
    PROTOCOL_MISMATCH = "protocol-mismatch"

    @property
    def succeeded(self) -> bool:
        return self in (Outcome.LOGGED_IN, Outcome.ALREADY_LOGGED_IN)

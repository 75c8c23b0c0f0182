"""
Exception hierarchy for the coordination substrate.

Only CheckpointIntegrityError and StartupError are allowed to halt a
node; every other failure path is logged and degrades gracefully.
"""


class CoordinationError(Exception):
    """Base class for coordination errors."""
    pass


class CheckpointIntegrityError(CoordinationError):
    """Raised when a checkpoint's digest does not match its payload."""

    def __init__(self, checkpoint_id: str, expected: str, actual: str):
        super().__init__(
            f"Checkpoint integrity check failed for {checkpoint_id}: "
            f"expected {expected}, got {actual}"
        )
        self.checkpoint_id = checkpoint_id
        self.expected = expected
        self.actual = actual


class RecoveryError(CoordinationError):
    """Raised when recovery cannot restore a checkpoint."""
    pass


class DuplicateOperationError(CoordinationError):
    """
    Raised by replay handlers when an operation's effect already exists.

    Recovery treats it as a successful no-op.
    """
    pass


class PeerUnavailableError(CoordinationError):
    """Raised by transports when a peer cannot be reached."""
    pass


class StartupError(CoordinationError):
    """Raised when a node cannot complete its startup sequence."""
    pass

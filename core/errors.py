"""Error types raised by the contextual update engine."""

from typing import Optional


class ContextualUpdateError(Exception):
    """Base error for contextual update operations."""
    pass


class LLMNotAvailableError(RuntimeError):
    """LLM not available error."""
    pass


class InterpretationError(ContextualUpdateError):
    """Interpretation backend failed or returned something unusable."""

    def __init__(self, message: str, original_error: Optional[Exception] = None):
        super().__init__(message)
        self.original_error = original_error


class CommandError(ContextualUpdateError):
    """A command in a batch could not be accepted."""

    def __init__(self, index: int, reason: str):
        super().__init__(f"Command {index}: {reason}")
        self.index = index
        self.reason = reason


class CommandValidationError(CommandError):
    """Batch is structurally invalid for the document it targets."""
    pass


class CommandApplyError(CommandError):
    """Command failed while executing against the intermediate document."""
    pass


class NoPendingUndo(ContextualUpdateError):
    """Undo requested with an empty journal."""
    pass


class ClarificationStateError(ContextualUpdateError):
    """Operation is not legal in the current clarification state."""
    pass


class SessionBusyError(ContextualUpdateError):
    """Another apply or undo is still running for this case."""
    pass


class CaseNotFoundError(ContextualUpdateError):
    """Case id is unknown to the store."""
    pass

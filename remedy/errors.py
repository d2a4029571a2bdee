"""Exception hierarchy for remedy."""

from __future__ import annotations


class RemedyError(Exception):
    """Base class for all remedy errors."""


class WorkflowError(RemedyError):
    """Raised when a resolution cannot be started or driven."""


class WorkflowAlreadyRunningError(WorkflowError):
    """Raised when start() is called while the resolution is in flight."""


class StepExecutionError(RemedyError):
    """Raised by a step work provider when the step's work fails."""

    def __init__(self, message: str, step_id: str = ""):
        super().__init__(message)
        self.step_id = step_id


class StepNotTerminalError(RemedyError):
    """Raised when a correction is attempted on a step that is still running."""


class FeedbackPersistenceError(RemedyError):
    """Raised when a feedback write could not be durably recorded."""


class ValidationError(RemedyError):
    """Raised when a correction would save nothing new."""


class IssueNotFoundError(RemedyError):
    """Raised when the issue feed has no record for an id."""


class IssueFeedError(RemedyError):
    """Raised when the issue feed could not be read or updated."""

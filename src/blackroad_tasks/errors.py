"""Error taxonomy shared by storage, coordination and the HTTP layer."""

from __future__ import annotations


class TaskMarketError(Exception):
    """Base class for every error raised by the coordination core."""


class ValidationError(TaskMarketError):
    """Malformed input. Never retried automatically."""


class NotFoundError(TaskMarketError):
    """Unknown task or subscription id."""


class ConflictError(TaskMarketError):
    """The task was not in the expected state (lost update or claim race).

    Callers may re-read the task and retry the whole operation.
    """

    def __init__(self, message: str, *, current_status: str | None = None) -> None:
        super().__init__(message)
        self.current_status = current_status


class ForbiddenError(TaskMarketError):
    """The caller lacks the required relationship to the task."""

"""Exception hierarchy for the file-processing pipeline.

Four failure kinds unwind to the invocation boundary, where the Celery
worker decides whether to retry:

* :class:`ProcessingAborted`   — a task declined to continue.
* :class:`TransportError`      — the download or a callback report failed.
* :class:`ProcessingCancelled` — the invocation was told to stop.
* :class:`TaskError`           — a task's own backend (e.g. clamd) failed.

A remote 404 is not an error; it is reported and the invocation succeeds.
"""

from __future__ import annotations


class ProcessingError(Exception):
    """Base class for all pipeline failures."""


class ProcessingAborted(ProcessingError):
    """Raised when a task returns ``False`` from ``process``.

    Attributes:
        task_type: Kind of the task that stopped the chain.
    """

    def __init__(self, task_type: object, message: str = "Conversion aborted") -> None:
        super().__init__(message)
        self.task_type = task_type


class TransportError(ProcessingError):
    """Raised when an HTTP exchange with the file host or callback fails.

    Wraps the original exception to identify which stage failed while
    preserving the full cause chain via ``__cause__``.

    Attributes:
        stage: ``"download"`` or ``"report"``.
        original: The exception that triggered the failure.
    """

    def __init__(self, stage: str, original: Exception) -> None:
        super().__init__(f"{stage} failed: {original}")
        self.stage = stage
        self.original = original


class ProcessingCancelled(ProcessingError):
    """Raised when the invocation's cancellation token fires."""

    def __init__(self, message: str = "Processing cancelled") -> None:
        super().__init__(message)


class TaskError(ProcessingError):
    """Raised by a task when a collaborator it depends on fails."""

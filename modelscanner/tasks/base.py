"""Abstract job-task interface.

Every processing step the worker can run implements :class:`JobTask`.  The
pipeline depends only on this interface; concrete tasks are registered once
at process start (see :func:`modelscanner.tasks.default_tasks`).

Usage::

    from modelscanner.tasks.base import JobTask, JobTaskType

    class MyTask(JobTask):
        task_type = JobTaskType.PARSE_METADATA

        async def process(self, file_path, result, cancel):
            result.update(myField=...)
            return True
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from enum import Enum
from pathlib import Path
from typing import ClassVar, Iterable, Sequence

from modelscanner.core.cancellation import CancellationToken
from modelscanner.core.scan_result import ScanResult


class JobTaskType(str, Enum):
    """Kinds of processing a caller can request."""

    HASH = "hash"
    SCAN = "scan"
    PICKLE_SCAN = "pickle_scan"
    PARSE_METADATA = "parse_metadata"


class JobTask(ABC):
    """A named unit of work run against the local copy of a file.

    Class attributes:
        task_type: Kind used both for ordering and request-set membership.
        mutates_file: ``True`` when the task may rewrite the file's bytes.
            Such tasks always run before tasks that rely on the bytes being
            stable.

    Implementations must not delete or move the file; its lifecycle belongs
    to the pipeline.  Each task runs at most once per invocation and never
    concurrently with another task of the same invocation.
    """

    task_type: ClassVar[JobTaskType]
    mutates_file: ClassVar[bool] = False

    @abstractmethod
    async def process(
        self,
        file_path: Path,
        result: ScanResult,
        cancel: CancellationToken,
    ) -> bool:
        """Run the task and record its output on *result*.

        Returns:
            ``True`` to let the chain proceed, ``False`` to abort the
            invocation.
        """

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.task_type.value})"


def order_tasks(tasks: Iterable[JobTask]) -> tuple[JobTask, ...]:
    """Return *tasks* with every file-mutating task first.

    The sort is stable, so registration order is preserved within each group.
    """
    return tuple(sorted(tasks, key=lambda task: 0 if task.mutates_file else 1))


def parse_task_types(values: Sequence[str]) -> frozenset[JobTaskType]:
    """Convert wire-format task kinds into a requested-task set.

    Raises:
        ValueError: If any value is not a known task kind.
    """
    return frozenset(JobTaskType(value) for value in values)

"""Job tasks for the ModelScanner worker.

Public re-exports for the tasks package::

    from modelscanner.tasks import JobTask, JobTaskType, default_tasks
"""

from __future__ import annotations

from modelscanner.tasks.base import JobTask, JobTaskType, order_tasks, parse_task_types
from modelscanner.tasks.hash import HashTask
from modelscanner.tasks.metadata import MetadataTask
from modelscanner.tasks.pickle_scan import PickleScanTask


def default_tasks(clamav_host: str = "", clamav_port: int = 3310) -> list[JobTask]:
    """Return the task registration used by the worker.

    The ClamAV task is included only when *clamav_host* is non-empty, so the
    worker can run without a local ``clamd`` (development, unit tests).
    """
    tasks: list[JobTask] = [HashTask()]
    if clamav_host:
        from modelscanner.tasks.clamav import ClamAVScanTask

        tasks.append(ClamAVScanTask(host=clamav_host, port=clamav_port))
    tasks.append(PickleScanTask())
    tasks.append(MetadataTask())
    return tasks


__all__ = [
    "HashTask",
    "JobTask",
    "JobTaskType",
    "MetadataTask",
    "PickleScanTask",
    "default_tasks",
    "order_tasks",
    "parse_task_types",
]

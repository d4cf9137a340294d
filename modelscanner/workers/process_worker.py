"""Celery process worker — run the file-processing pipeline for queued jobs.

This module wraps :class:`~modelscanner.core.processor.FileProcessor` in
three Celery tasks, one per priority lane:

* :func:`process_file_task`                — queue ``default``
* :func:`process_file_low_prio_task`       — queue ``low-prio``
* :func:`process_file_extra_low_prio_task` — queue ``x-low-prio``

All three accept the same keyword arguments (``file_url``, ``callback_url``
and ``tasks``, a list of task-kind strings such as ``["hash", "scan"]``) and
return the final result payload.

**Retry policy**

Transport failures (download or callback) and task aborts are retried up to
``settings.task_max_retries`` times after ``settings.task_retry_countdown_seconds``.
Cancellation and unexpected errors are not retried.  Reports already
delivered by a failed attempt are not rolled back; the callback endpoint
simply receives fresh snapshots from the retry.

**Runtime**

Each worker thread (one per process under the default prefork pool) lazily
creates a private event loop, one long-lived :class:`httpx.AsyncClient` and
one :class:`FileProcessor`, reused across invocations and closed on
``worker_process_shutdown``.  On ``worker_shutting_down`` every in-flight
invocation of this process is cancelled; each still deletes its local copy.

**Usage**::

    from modelscanner.workers.process_worker import process_file_low_prio_task

    process_file_low_prio_task.delay(
        file_url="https://example.com/files/model.safetensors",
        callback_url="https://example.com/api/scan-results",
        tasks=["hash", "pickle_scan"],
    )
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import threading
from dataclasses import dataclass
from typing import Any, Iterator

import httpx
from celery.signals import worker_process_shutdown, worker_shutting_down

from modelscanner.celery_app import QUEUE_DEFAULT, QUEUE_EXTRA_LOW_PRIO, QUEUE_LOW_PRIO, celery_app
from modelscanner.config import settings
from modelscanner.core.cancellation import CancellationToken
from modelscanner.core.errors import ProcessingAborted, ProcessingCancelled, TransportError
from modelscanner.core.processor import FileProcessor
from modelscanner.tasks import default_tasks, parse_task_types

logger = logging.getLogger(__name__)

#: Failures that earn the invocation another attempt.
_RETRYABLE_EXCEPTIONS: tuple[type[Exception], ...] = (
    TransportError,
    ProcessingAborted,
)


# ---------------------------------------------------------------------------
# Per-thread runtime
# ---------------------------------------------------------------------------


@dataclass
class _Runtime:
    loop: asyncio.AbstractEventLoop
    http_client: httpx.AsyncClient
    processor: FileProcessor


_local = threading.local()
_runtimes: list[_Runtime] = []
_in_flight: dict[CancellationToken, asyncio.AbstractEventLoop] = {}
_lock = threading.Lock()


def _build_processor(http_client: httpx.AsyncClient) -> FileProcessor:
    """Construct a :class:`FileProcessor` from the current settings."""
    return FileProcessor(
        http_client=http_client,
        tasks=default_tasks(settings.clamav_host, settings.clamav_port),
        temp_folder=settings.temp_folder,
        always_invalidate=settings.always_invalidate,
        chunk_size=settings.download_chunk_size,
    )


def _get_runtime() -> _Runtime:
    runtime = getattr(_local, "runtime", None)
    if runtime is None:
        loop = asyncio.new_event_loop()
        http_client = httpx.AsyncClient(
            timeout=settings.http_timeout_seconds,
            follow_redirects=True,
        )
        runtime = _Runtime(loop, http_client, _build_processor(http_client))
        _local.runtime = runtime
        with _lock:
            _runtimes.append(runtime)
        logger.info("Worker runtime initialised: temp_folder=%s", settings.temp_folder)
    return runtime


@contextlib.contextmanager
def _track(token: CancellationToken, loop: asyncio.AbstractEventLoop) -> Iterator[None]:
    with _lock:
        _in_flight[token] = loop
    try:
        yield
    finally:
        with _lock:
            _in_flight.pop(token, None)


@worker_shutting_down.connect
def _cancel_in_flight(**kwargs: Any) -> None:
    with _lock:
        in_flight = list(_in_flight.items())
    for token, loop in in_flight:
        token.cancel_threadsafe(loop)
    if in_flight:
        logger.info("Cancelling %d in-flight invocation(s) for shutdown", len(in_flight))


@worker_process_shutdown.connect
def _close_runtimes(**kwargs: Any) -> None:
    with _lock:
        runtimes = list(_runtimes)
        _runtimes.clear()
    for runtime in runtimes:
        if runtime.loop.is_running():
            continue
        runtime.loop.run_until_complete(runtime.http_client.aclose())
        runtime.loop.close()


# ---------------------------------------------------------------------------
# Task body
# ---------------------------------------------------------------------------


def _process(task: Any, file_url: str, callback_url: str, tasks: list[str]) -> dict[str, Any]:
    requested = parse_task_types(tasks)
    runtime = _get_runtime()
    token = CancellationToken()

    with _track(token, runtime.loop):
        try:
            result = runtime.loop.run_until_complete(
                runtime.processor.run(file_url, callback_url, requested, token)
            )
        except _RETRYABLE_EXCEPTIONS as exc:
            logger.warning(
                "%s: retry %d/%d in %ds: url=%s error=%s",
                task.name,
                task.request.retries + 1,
                settings.task_max_retries,
                settings.task_retry_countdown_seconds,
                file_url,
                exc,
            )
            raise task.retry(
                exc=exc,
                countdown=settings.task_retry_countdown_seconds,
                max_retries=settings.task_max_retries,
            )
        except ProcessingCancelled:
            logger.info("%s: cancelled (no retry): url=%s", task.name, file_url)
            raise
        except Exception:
            logger.exception("%s: unexpected error (no retry): url=%s", task.name, file_url)
            raise

    logger.info(
        "%s: complete url=%s fileExists=%s",
        task.name,
        file_url,
        result.file_exists.value,
    )
    return result.to_payload()


# ---------------------------------------------------------------------------
# Celery tasks
# ---------------------------------------------------------------------------


@celery_app.task(
    name="modelscanner.workers.process_worker.process_file",
    bind=True,
    queue=QUEUE_DEFAULT,
)
def process_file_task(
    self: Any,
    *,
    file_url: str,
    callback_url: str,
    tasks: list[str],
) -> dict[str, Any]:
    """Celery task: process *file_url* on the default lane."""
    return _process(self, file_url, callback_url, tasks)


@celery_app.task(
    name="modelscanner.workers.process_worker.process_file_low_prio",
    bind=True,
    queue=QUEUE_LOW_PRIO,
)
def process_file_low_prio_task(
    self: Any,
    *,
    file_url: str,
    callback_url: str,
    tasks: list[str],
) -> dict[str, Any]:
    """Celery task: process *file_url* on the ``low-prio`` lane."""
    return _process(self, file_url, callback_url, tasks)


@celery_app.task(
    name="modelscanner.workers.process_worker.process_file_extra_low_prio",
    bind=True,
    queue=QUEUE_EXTRA_LOW_PRIO,
)
def process_file_extra_low_prio_task(
    self: Any,
    *,
    file_url: str,
    callback_url: str,
    tasks: list[str],
) -> dict[str, Any]:
    """Celery task: process *file_url* on the ``x-low-prio`` lane."""
    return _process(self, file_url, callback_url, tasks)

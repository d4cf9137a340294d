"""FileProcessor — download a remote file once and run the requested task chain.

:meth:`FileProcessor.run` is the single entry point for one invocation:

1. **download** — streaming GET of the file URL.  A 404 is reported once as
   ``fileExists = 0`` and ends the invocation successfully.
2. **cache**    — the local copy is written only when it is missing or the
   ``always_invalidate`` flag is set (see :mod:`~modelscanner.core.download_cache`).
3. **tasks**    — registered tasks run in fixed order (file-mutating tasks
   first); tasks that were not requested are skipped without a report.
4. **report**   — after every executed task the full result snapshot is
   posted to the callback URL.
5. **cleanup**  — the local copy is deleted on every exit path.

Every step is wrapped in an OpenTelemetry span.  The processor holds no
per-invocation state, so one instance serves every invocation in a worker
process.

Usage::

    async with httpx.AsyncClient(follow_redirects=True) as client:
        processor = FileProcessor(
            http_client=client,
            tasks=default_tasks(),
            temp_folder=settings.temp_folder,
        )
        result = await processor.run(
            file_url,
            callback_url,
            frozenset({JobTaskType.HASH}),
            CancellationToken(),
        )
"""

from __future__ import annotations

import contextlib
import logging
from pathlib import Path
from typing import Iterable

import httpx
from opentelemetry import trace
from opentelemetry.trace import Status, StatusCode
from prometheus_client import Counter

from modelscanner.core import download_cache
from modelscanner.core.cancellation import CancellationToken
from modelscanner.core.errors import (
    ProcessingAborted,
    ProcessingCancelled,
    TransportError,
)
from modelscanner.core.reporter import CallbackReporter
from modelscanner.core.scan_result import FileExists, ScanResult
from modelscanner.tasks.base import JobTask, JobTaskType, order_tasks

logger = logging.getLogger(__name__)

tracer = trace.get_tracer("modelscanner.processor")

#: Labels: ``outcome`` ("completed" | "not_found" | "aborted" | "cancelled" | "failed").
invocations_total = Counter(
    "modelscanner_invocations_total",
    "Total number of file-processing invocations by outcome",
    ["outcome"],
)


class FileProcessor:
    """Runs the download → task → report chain for one file at a time.

    Args:
        http_client: Shared client used for the download.  Owned by the
            caller; the processor never closes it.
        tasks: Task registration.  Reordered once so that file-mutating
            tasks come first.
        temp_folder: Directory for the transient local copy.
        always_invalidate: Re-download even when a local copy exists.
        chunk_size: Streaming chunk size for the download.
        reporter: Callback reporter; defaults to one sharing *http_client*.
    """

    def __init__(
        self,
        *,
        http_client: httpx.AsyncClient,
        tasks: Iterable[JobTask],
        temp_folder: Path,
        always_invalidate: bool = False,
        chunk_size: int = 1024 * 1024,
        reporter: CallbackReporter | None = None,
    ) -> None:
        self._http_client = http_client
        self._tasks = order_tasks(tasks)
        self._temp_folder = Path(temp_folder)
        self._always_invalidate = always_invalidate
        self._chunk_size = chunk_size
        self._reporter = reporter or CallbackReporter(http_client)

    @property
    def tasks(self) -> tuple[JobTask, ...]:
        return self._tasks

    async def run(
        self,
        file_url: str,
        callback_url: str,
        requested_tasks: frozenset[JobTaskType],
        cancel: CancellationToken,
    ) -> ScanResult:
        """Process *file_url* and report to *callback_url*.

        Returns:
            The final :class:`ScanResult` (also delivered to the callback).

        Raises:
            ProcessingAborted: A task returned ``False``.
            TransportError: The download or a report failed.
            ProcessingCancelled: *cancel* fired.
        """
        result = ScanResult(url=file_url)

        with tracer.start_as_current_span("modelscanner.process_file") as span:
            span.set_attribute("file.url", file_url)
            span.set_attribute(
                "tasks.requested", sorted(t.value for t in requested_tasks)
            )
            try:
                await self._run(file_url, callback_url, requested_tasks, cancel, result)
            except ProcessingAborted as exc:
                invocations_total.labels(outcome="aborted").inc()
                span.set_status(Status(StatusCode.ERROR, str(exc)))
                logger.warning(
                    "Processing aborted by task %s: url=%s",
                    exc.task_type,
                    file_url,
                )
                raise
            except ProcessingCancelled:
                invocations_total.labels(outcome="cancelled").inc()
                span.set_status(Status(StatusCode.ERROR, "cancelled"))
                logger.info("Processing cancelled: url=%s", file_url)
                raise
            except Exception as exc:
                invocations_total.labels(outcome="failed").inc()
                span.record_exception(exc)
                span.set_status(Status(StatusCode.ERROR, str(exc)))
                raise

        outcome = "not_found" if result.file_exists is FileExists.ABSENT else "completed"
        invocations_total.labels(outcome=outcome).inc()
        return result

    async def _run(
        self,
        file_url: str,
        callback_url: str,
        requested_tasks: frozenset[JobTaskType],
        cancel: CancellationToken,
        result: ScanResult,
    ) -> None:
        self._temp_folder.mkdir(parents=True, exist_ok=True)

        registered = {task.task_type for task in self._tasks}
        for missing in sorted(t.value for t in requested_tasks - registered):
            logger.warning(
                "Requested task %s is not registered on this worker; it will not run",
                missing,
            )

        async with contextlib.AsyncExitStack() as cleanup:
            file_path = await cancel.run(self._fetch(file_url, result, cleanup))
            if file_path is None:
                await self._reporter.report(callback_url, result, cancel)
                return

            for task in self._tasks:
                if task.task_type not in requested_tasks:
                    logger.info(
                        "Skipping over task %s as it was not requested",
                        task.task_type.value,
                    )
                    continue

                logger.info("Executing %s", task.task_type.value)
                with tracer.start_as_current_span(
                    f"modelscanner.task.{task.task_type.value}"
                ):
                    continue_processing = await cancel.run(
                        task.process(file_path, result, cancel)
                    )
                if not continue_processing:
                    raise ProcessingAborted(task.task_type)

                await self._reporter.report(callback_url, result, cancel)

    async def _fetch(
        self,
        file_url: str,
        result: ScanResult,
        cleanup: contextlib.AsyncExitStack,
    ) -> Path | None:
        """Download *file_url* into the temp folder unless a reusable copy exists.

        Sets ``result.file_exists``.  The local path is pushed onto *cleanup*
        before any bytes are written, so a partial copy is still removed.

        Returns:
            The local path, or ``None`` when the remote file does not exist.
        """
        logger.info("Downloading %s", file_url)
        try:
            async with self._http_client.stream("GET", file_url) as response:
                if response.status_code == httpx.codes.NOT_FOUND:
                    result.file_exists = FileExists.ABSENT
                    return None
                response.raise_for_status()
                result.file_exists = FileExists.PRESENT

                file_path = self._temp_folder / download_cache.local_filename(
                    file_url, response.headers
                )
                cleanup.callback(_remove_local_copy, file_path)

                if download_cache.needs_download(file_path, self._always_invalidate):
                    written = await download_cache.write_body(
                        response, file_path, self._chunk_size
                    )
                    logger.debug("Downloaded %d bytes to %s", written, file_path)
                else:
                    logger.info("Reusing existing local copy %s", file_path)
                return file_path
        except httpx.HTTPError as exc:
            raise TransportError("download", exc) from exc


def _remove_local_copy(file_path: Path) -> None:
    file_path.unlink(missing_ok=True)
    logger.debug("Removed local copy %s", file_path)

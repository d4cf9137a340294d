"""Integration tests for :mod:`modelscanner.workers.process_worker`.

All tests run against the Celery application in **eager mode**
(``task_always_eager=True``) so no broker or worker process is required.
The per-thread runtime is replaced with one whose HTTP client talks to an
in-process :class:`httpx.MockTransport`.

Coverage targets
----------------
* Each priority lane is registered on its own queue and runs the pipeline.
* The return value is the final result payload.
* Transport failures and aborts are retried once, then fail.
* Cancellation and invalid task kinds fail without retry.
* The shutdown signal cancels in-flight invocations.
* The lazily-built runtime is reused and closed on process shutdown.
"""

from __future__ import annotations

import asyncio
import json
from pathlib import Path
from unittest.mock import patch

import httpx
import pytest

from modelscanner.celery_app import celery_app
from modelscanner.core.cancellation import CancellationToken
from modelscanner.core.errors import ProcessingCancelled
from modelscanner.core.processor import FileProcessor
from modelscanner.tasks import default_tasks
from modelscanner.tasks.base import JobTask, JobTaskType
from modelscanner.workers import process_worker
from modelscanner.workers.process_worker import (
    process_file_extra_low_prio_task,
    process_file_low_prio_task,
    process_file_task,
)

FILE_URL = "https://files.example.com/models/lora.safetensors"
CALLBACK_URL = "https://api.example.com/scan-results"


# ---------------------------------------------------------------------------
# Fixtures and helpers
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def celery_eager():
    """Force Celery to execute tasks eagerly (synchronously, in-process)."""
    celery_app.conf.update(
        task_always_eager=True,
        task_eager_propagates=False,  # catch exceptions in the result
    )
    yield
    celery_app.conf.update(
        task_always_eager=False,
        task_eager_propagates=False,
    )


class _Remote:
    def __init__(self, *, status: int = 200, callback_status: int = 200) -> None:
        self.status = status
        self.callback_status = callback_status
        self.downloads = 0
        self.reports: list[dict] = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        if request.method == "GET":
            self.downloads += 1
            return httpx.Response(self.status, content=b"\x80\x02}q\x00.")
        self.reports.append(json.loads(request.content))
        return httpx.Response(self.callback_status)


class _FixedTask(JobTask):
    task_type = JobTaskType.PARSE_METADATA

    def __init__(self, *, proceed: bool = True, raises: Exception | None = None) -> None:
        self._proceed = proceed
        self._raises = raises

    async def process(self, file_path, result, cancel) -> bool:
        if self._raises is not None:
            raise self._raises
        return self._proceed


@pytest.fixture
def make_runtime(temp_folder: Path):
    """Patch the worker runtime; returns a factory taking a remote and tasks."""
    created = []
    patcher = None

    def _make(remote: _Remote, tasks: list[JobTask] | None = None):
        nonlocal patcher
        loop = asyncio.new_event_loop()
        client = httpx.AsyncClient(transport=httpx.MockTransport(remote.handler))
        processor = FileProcessor(
            http_client=client,
            tasks=default_tasks() if tasks is None else tasks,
            temp_folder=temp_folder,
        )
        runtime = process_worker._Runtime(loop, client, processor)
        created.append(runtime)
        patcher = patch.object(process_worker, "_get_runtime", return_value=runtime)
        patcher.start()
        return runtime

    yield _make

    if patcher is not None:
        patcher.stop()
    for runtime in created:
        runtime.loop.run_until_complete(runtime.http_client.aclose())
        runtime.loop.close()


def _kwargs(tasks: list[str]) -> dict:
    return {"file_url": FILE_URL, "callback_url": CALLBACK_URL, "tasks": tasks}


# ---------------------------------------------------------------------------
# Happy paths
# ---------------------------------------------------------------------------


class TestLanes:
    @pytest.mark.parametrize(
        ("task", "queue"),
        [
            (process_file_task, "default"),
            (process_file_low_prio_task, "low-prio"),
            (process_file_extra_low_prio_task, "x-low-prio"),
        ],
    )
    def test_lane_queue_and_registration(self, task, queue):
        assert task.queue == queue
        assert task.name in celery_app.tasks

    @pytest.mark.parametrize(
        "task",
        [process_file_task, process_file_low_prio_task, process_file_extra_low_prio_task],
    )
    def test_every_lane_runs_the_pipeline(self, task, make_runtime, temp_folder):
        remote = _Remote()
        make_runtime(remote)

        payload = task.apply(kwargs=_kwargs(["hash", "pickle_scan"])).get()

        assert payload["url"] == FILE_URL
        assert payload["fileExists"] == 1
        assert "hashes" in payload
        assert payload["picklescanExitCode"] == 0
        assert "metadata" not in payload
        assert len(remote.reports) == 2
        assert remote.reports[-1] == payload
        assert list(temp_folder.iterdir()) == []


class TestNotFound:
    def test_missing_file_returns_absent_payload(self, make_runtime):
        remote = _Remote(status=404)
        make_runtime(remote)

        payload = process_file_task.apply(kwargs=_kwargs(["hash"])).get()

        assert payload == {"url": FILE_URL, "fileExists": 0}
        assert remote.reports == [payload]


# ---------------------------------------------------------------------------
# Failure handling
# ---------------------------------------------------------------------------


class TestRetryPolicy:
    def test_callback_failure_is_retried_once(self, make_runtime):
        remote = _Remote(callback_status=500)
        make_runtime(remote)

        result = process_file_task.apply(kwargs=_kwargs(["hash"]))

        assert result.failed()
        assert remote.downloads == 2

    def test_download_failure_is_retried_once(self, make_runtime):
        remote = _Remote(status=502)
        make_runtime(remote)

        result = process_file_low_prio_task.apply(kwargs=_kwargs(["hash"]))

        assert result.failed()
        assert remote.downloads == 2
        assert remote.reports == []

    def test_abort_is_retried_once(self, make_runtime):
        remote = _Remote()
        make_runtime(remote, tasks=[_FixedTask(proceed=False)])

        result = process_file_task.apply(kwargs=_kwargs(["parse_metadata"]))

        assert result.failed()
        assert remote.downloads == 2

    def test_cancellation_is_not_retried(self, make_runtime):
        remote = _Remote()
        make_runtime(remote, tasks=[_FixedTask(raises=ProcessingCancelled())])

        result = process_file_task.apply(kwargs=_kwargs(["parse_metadata"]))

        assert result.failed()
        assert remote.downloads == 1

    def test_unexpected_error_is_not_retried(self, make_runtime):
        remote = _Remote()
        make_runtime(remote, tasks=[_FixedTask(raises=RuntimeError("bug"))])

        result = process_file_task.apply(kwargs=_kwargs(["parse_metadata"]))

        assert result.failed()
        assert remote.downloads == 1

    def test_unknown_task_kind_fails_before_download(self, make_runtime):
        remote = _Remote()
        make_runtime(remote)

        result = process_file_task.apply(kwargs=_kwargs(["hash", "convert"]))

        assert result.failed()
        assert remote.downloads == 0


# ---------------------------------------------------------------------------
# Runtime and signals
# ---------------------------------------------------------------------------


class TestRuntime:
    def test_shutdown_cancels_in_flight_invocations(self):
        loop = asyncio.new_event_loop()
        token = CancellationToken()
        try:
            with process_worker._track(token, loop):
                process_worker._cancel_in_flight()
                loop.run_until_complete(asyncio.sleep(0))
            assert token.cancelled
            assert token not in process_worker._in_flight
        finally:
            loop.close()

    def test_runtime_is_reused_and_closed(self):
        runtime = process_worker._get_runtime()
        try:
            assert process_worker._get_runtime() is runtime
            assert [t.task_type for t in runtime.processor.tasks][0] is JobTaskType.HASH
        finally:
            process_worker._close_runtimes()
            del process_worker._local.runtime

        assert runtime.loop.is_closed()
        assert runtime.http_client.is_closed

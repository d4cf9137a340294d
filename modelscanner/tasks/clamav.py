"""ClamAV content-scan task.

Connects to a running ``clamd`` daemon via TCP socket and delegates file
scanning to it.  The daemon must be able to read the worker's temp folder
(shared volume); only the path is sent over the socket.

Recorded fields:

* ``clamscanExitCode`` — ``0`` clean, ``1`` threat found (the ``clamscan``
  CLI convention).
* ``clamscanOutput``   — one ``"<path>: <signature> FOUND"`` line per
  threat, or ``"<path>: OK"`` when clean.
"""
from __future__ import annotations

import asyncio
import logging
from pathlib import Path

import clamd

from modelscanner.core.cancellation import CancellationToken
from modelscanner.core.errors import TaskError
from modelscanner.core.scan_result import ScanResult
from modelscanner.tasks.base import JobTask, JobTaskType

logger = logging.getLogger(__name__)

# ClamAV reports detected threats with this status string.
_STATUS_FOUND = "FOUND"
_STATUS_ERROR = "ERROR"


class ClamAVScanTask(JobTask):
    """Scan the local copy with the ClamAV daemon (``clamd``).

    A new socket connection is established for each scan by the
    underlying ``clamd`` library; no persistent connection state is held
    in this class.

    Args:
        host: Hostname or IP address of the ``clamd`` daemon.
        port: TCP port the ``clamd`` daemon listens on.
    """

    task_type = JobTaskType.SCAN

    def __init__(self, host: str = "clamav", port: int = 3310) -> None:
        self._host = host
        self._port = port
        self._client = clamd.ClamdNetworkSocket(host=host, port=port)

    async def process(
        self,
        file_path: Path,
        result: ScanResult,
        cancel: CancellationToken,
    ) -> bool:
        response = await asyncio.to_thread(self._scan, file_path)

        lines: list[str] = []
        infected = False
        for scanned_path, (status, signature) in (response or {}).items():
            if status == _STATUS_ERROR:
                raise TaskError(f"ClamAV could not scan {scanned_path}: {signature}")
            if status == _STATUS_FOUND:
                infected = True
                logger.warning(
                    "ClamAV detected threat",
                    extra={"file": scanned_path, "threat": signature},
                )
                lines.append(f"{scanned_path}: {signature} {status}")
            else:
                lines.append(f"{scanned_path}: {status}")

        result.update(
            clamscanExitCode=1 if infected else 0,
            clamscanOutput="\n".join(lines),
        )
        return True

    def _scan(self, file_path: Path) -> dict:
        try:
            return self._client.scan(str(file_path))
        except clamd.ConnectionError as exc:
            raise TaskError(
                f"ClamAV daemon unreachable at {self._host}:{self._port}"
            ) from exc
        except Exception as exc:  # noqa: BLE001
            raise TaskError(f"ClamAV scan failed: {exc}") from exc

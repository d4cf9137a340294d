"""Hashing task.

Computes the digests model hosts use to identify a file:

* ``SHA256`` — full-file SHA-256, upper-case hex.
* ``AutoV1`` — first 8 hex chars of the SHA-256 of the 64 KiB block at
  offset 1 MiB (the legacy checkpoint "short hash").
* ``AutoV2`` — first 10 hex chars of ``SHA256``.
* ``CRC32``  — zlib CRC-32, upper-case hex, zero-padded to 8 chars.
* ``BLAKE2B`` — full-file BLAKE2b-256, upper-case hex.

The task is registered as file-mutating so that it always runs ahead of the
content scanners; conversion steps that rewrite the file hook in here.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import zlib
from pathlib import Path

from modelscanner.core.cancellation import CancellationToken
from modelscanner.core.scan_result import ScanResult
from modelscanner.tasks.base import JobTask, JobTaskType

logger = logging.getLogger(__name__)

_CHUNK_SIZE = 1024 * 1024
_AUTOV1_OFFSET = 0x100000
_AUTOV1_LENGTH = 0x10000


def compute_hashes(file_path: Path, cancel: CancellationToken | None = None) -> dict[str, str]:
    """Return the hash set for *file_path*.

    Reads the file in 1 MiB chunks, polling *cancel* between chunks.
    """
    sha256 = hashlib.sha256()
    blake2b = hashlib.blake2b(digest_size=32)
    crc = 0

    with file_path.open("rb") as fh:
        while True:
            chunk = fh.read(_CHUNK_SIZE)
            if not chunk:
                break
            if cancel is not None:
                cancel.raise_if_cancelled()
            sha256.update(chunk)
            blake2b.update(chunk)
            crc = zlib.crc32(chunk, crc)

        fh.seek(_AUTOV1_OFFSET)
        autov1 = hashlib.sha256(fh.read(_AUTOV1_LENGTH)).hexdigest()[:8]

    full = sha256.hexdigest().upper()
    return {
        "SHA256": full,
        "AutoV1": autov1.upper(),
        "AutoV2": full[:10],
        "CRC32": f"{crc & 0xFFFFFFFF:08X}",
        "BLAKE2B": blake2b.hexdigest().upper(),
    }


class HashTask(JobTask):
    task_type = JobTaskType.HASH
    mutates_file = True

    async def process(
        self,
        file_path: Path,
        result: ScanResult,
        cancel: CancellationToken,
    ) -> bool:
        hashes = await asyncio.to_thread(compute_hashes, file_path, cancel)
        logger.debug("Hashed %s: SHA256=%s", file_path.name, hashes["SHA256"])
        result.update(hashes=hashes)
        return True

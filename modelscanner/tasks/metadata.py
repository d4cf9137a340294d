"""Safetensors metadata task.

A ``.safetensors`` file starts with an 8-byte little-endian header length
followed by a JSON header; training tools store free-form string metadata
under its ``__metadata__`` key.  The task records that mapping as
``metadata`` (``None`` for other formats or an unreadable header).
"""

from __future__ import annotations

import asyncio
import json
import logging
import struct
from pathlib import Path
from typing import Any

from modelscanner.core.cancellation import CancellationToken
from modelscanner.core.scan_result import ScanResult
from modelscanner.tasks.base import JobTask, JobTaskType

logger = logging.getLogger(__name__)

_HEADER_LENGTH = struct.Struct("<Q")
_MAX_HEADER_BYTES = 100 * 1024 * 1024


def read_safetensors_metadata(file_path: Path) -> dict[str, Any] | None:
    with file_path.open("rb") as fh:
        prefix = fh.read(_HEADER_LENGTH.size)
        if len(prefix) < _HEADER_LENGTH.size:
            return None
        (length,) = _HEADER_LENGTH.unpack(prefix)
        if length == 0 or length > _MAX_HEADER_BYTES:
            return None
        raw = fh.read(length)

    if len(raw) < length:
        return None
    try:
        header = json.loads(raw)
    except (UnicodeDecodeError, json.JSONDecodeError):
        return None
    if not isinstance(header, dict):
        return None
    metadata = header.get("__metadata__")
    return metadata if isinstance(metadata, dict) else {}


class MetadataTask(JobTask):
    task_type = JobTaskType.PARSE_METADATA

    async def process(
        self,
        file_path: Path,
        result: ScanResult,
        cancel: CancellationToken,
    ) -> bool:
        metadata = None
        if file_path.suffix.lower() == ".safetensors":
            metadata = await asyncio.to_thread(read_safetensors_metadata, file_path)
            if metadata is None:
                logger.warning("Unreadable safetensors header: %s", file_path.name)
        result.update(metadata=metadata)
        return True

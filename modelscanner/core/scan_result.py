"""ScanResult — shared state object for one file-processing invocation.

:class:`ScanResult` is created by :class:`~modelscanner.core.processor.FileProcessor`
with only the source URL set, then passed by reference to each requested
task in turn.  Tasks record their output in :attr:`ScanResult.fields`; the
reporter serialises the whole record after every task, so the callback
endpoint always receives a full-state snapshot rather than a delta.

Usage::

    from modelscanner.core.scan_result import FileExists, ScanResult

    result = ScanResult(url="https://example.com/model.safetensors")
    result.file_exists = FileExists.PRESENT
    result.update(hashes={"SHA256": "..."})
    result.to_payload()
    # {"url": "...", "fileExists": 1, "hashes": {"SHA256": "..."}}
"""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

_RESERVED_KEYS = frozenset({"url", "fileExists"})


class FileExists(Enum):
    """Tri-state existence flag for the remote file."""

    UNKNOWN = None
    ABSENT = 0
    PRESENT = 1


@dataclass
class ScanResult:
    """Mutable result record carried through the task chain.

    Attributes:
        url: The remote file URL this invocation processes.
        file_exists: Whether the remote file was found.  ``UNKNOWN`` until
            the download response headers have been read.
        fields: Task-specific output keyed by wire name (e.g. ``"hashes"``,
            ``"clamscanExitCode"``).  Grows as tasks run.
    """

    url: str
    file_exists: FileExists = FileExists.UNKNOWN
    fields: dict[str, Any] = field(default_factory=dict)

    def update(self, **values: Any) -> None:
        """Merge task output into :attr:`fields`.

        Raises:
            ValueError: If a key collides with one of the fixed payload keys.
        """
        clash = _RESERVED_KEYS.intersection(values)
        if clash:
            raise ValueError(f"Reserved result keys cannot be set by tasks: {sorted(clash)}")
        self.fields.update(values)

    def to_payload(self) -> dict[str, Any]:
        """Return a JSON-serialisable snapshot of the current state."""
        payload: dict[str, Any] = {
            "url": self.url,
            "fileExists": self.file_exists.value,
        }
        payload.update(copy.deepcopy(self.fields))
        return payload

"""Local-copy naming and the fetch-or-reuse policy for downloads.

The local copy of a remote file lives in the configured temp folder under a
name taken from the response's ``Content-Disposition`` filename, falling back
to the last segment of the URL path.  A copy that already exists under that
name is reused unless the operator has set ``ALWAYS_INVALIDATE``.
"""

from __future__ import annotations

import logging
from email.message import Message
from pathlib import Path, PurePosixPath
from urllib.parse import unquote, urlsplit

import httpx

logger = logging.getLogger(__name__)

_FALLBACK_NAME = "download"


def attachment_filename(headers: httpx.Headers) -> str | None:
    """Return the filename declared by a ``Content-Disposition`` header, if any.

    Both the plain ``filename`` and the RFC 5987 ``filename*`` forms are
    understood; surrounding quotes are removed.
    """
    value = headers.get("content-disposition")
    if not value:
        return None
    message = Message()
    message["content-disposition"] = value
    filename = message.get_filename()
    if filename is None:
        return None
    return filename.strip().strip('"') or None


def local_filename(url: str, headers: httpx.Headers) -> str:
    """Derive the local filename for *url* given its response *headers*.

    Only the final path component is kept, so a header such as
    ``filename="../../etc/passwd"`` cannot place the copy outside the temp
    folder.
    """
    raw = attachment_filename(headers)
    if raw is None:
        raw = unquote(urlsplit(url).path)
    name = PurePosixPath(raw.replace("\\", "/")).name
    if name in ("", ".", ".."):
        return _FALLBACK_NAME
    return name


def needs_download(path: Path, always_invalidate: bool) -> bool:
    """Return ``True`` when *path* must be (re)written from the response body."""
    if always_invalidate:
        return True
    return not path.exists()


async def write_body(response: httpx.Response, path: Path, chunk_size: int) -> int:
    """Stream *response*'s body into *path*, replacing any prior content.

    Returns:
        The number of bytes written.
    """
    logger.info("Temporary storage: %s", path)
    written = 0
    with path.open("wb") as fh:
        async for chunk in response.aiter_bytes(chunk_size):
            fh.write(chunk)
            written += len(chunk)
    return written

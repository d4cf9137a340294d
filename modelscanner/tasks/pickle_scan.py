"""Pickle import scan task.

Pickled model checkpoints can import and call arbitrary Python callables
when loaded.  This task walks the pickle opcode stream with
:mod:`pickletools` (without ever unpickling) and lists every global the
stream would import, flagging the ones known to allow code execution.

Both bare pickle files and zip-based checkpoints (PyTorch ``.pt`` / ``.ckpt``
archives, whose object graph lives in ``*/data.pkl``) are scanned.  Files
that are neither are recorded as clean with no imports.

Recorded fields:

* ``picklescanExitCode`` — ``0`` clean, ``1`` dangerous import found,
  ``2`` the pickle stream could not be parsed (imports found before the
  malformed opcode are still listed).
* ``picklescanGlobalImports`` — sorted ``"module.name"`` strings.
* ``picklescanDangerousImports`` — the subset flagged as dangerous.
"""

from __future__ import annotations

import asyncio
import io
import logging
import pickletools
import zipfile
from pathlib import Path
from typing import IO, Iterable

from modelscanner.core.cancellation import CancellationToken
from modelscanner.core.scan_result import ScanResult
from modelscanner.tasks.base import JobTask, JobTaskType

logger = logging.getLogger(__name__)

_PICKLE_SUFFIXES = frozenset({".pkl", ".pickle", ".pt", ".pth", ".bin", ".ckpt", ".joblib"})

# First byte of every protocol >= 2 pickle.
_PROTO_OPCODE = b"\x80"

#: module -> names considered dangerous ("*" means every name in the module).
DANGEROUS_GLOBALS: dict[str, frozenset[str]] = {
    "builtins": frozenset(
        {"eval", "exec", "compile", "open", "getattr", "apply", "__import__", "breakpoint"}
    ),
    "__builtin__": frozenset({"eval", "exec", "compile", "open", "getattr", "apply", "__import__"}),
    "os": frozenset({"*"}),
    "posix": frozenset({"*"}),
    "nt": frozenset({"*"}),
    "subprocess": frozenset({"*"}),
    "sys": frozenset({"*"}),
    "shutil": frozenset({"*"}),
    "socket": frozenset({"*"}),
    "runpy": frozenset({"*"}),
    "webbrowser": frozenset({"*"}),
    "pty": frozenset({"*"}),
    "asyncio": frozenset({"*"}),
    "pickle": frozenset({"*"}),
    "_pickle": frozenset({"*"}),
    "operator": frozenset({"attrgetter", "methodcaller"}),
    "requests.api": frozenset({"*"}),
    "aiohttp.client": frozenset({"*"}),
    "torch.hub": frozenset({"*"}),
}

_STRING_OPCODES = frozenset(
    {
        "STRING",
        "BINSTRING",
        "SHORT_BINSTRING",
        "UNICODE",
        "BINUNICODE",
        "SHORT_BINUNICODE",
        "BINUNICODE8",
    }
)
_PUT_OPCODES = frozenset({"PUT", "BINPUT", "LONG_BINPUT"})
_GET_OPCODES = frozenset({"GET", "BINGET", "LONG_BINGET"})


class PickleParseError(Exception):
    """Raised when an opcode stream is malformed."""


def is_dangerous(module: str, name: str) -> bool:
    names = DANGEROUS_GLOBALS.get(module)
    if names is None:
        return False
    return "*" in names or name in names


def _at_next_pickle(stream: IO[bytes]) -> bool:
    """Peek one byte: ``True`` when another protocol >= 2 pickle starts here."""
    head = stream.read(1)
    if not head:
        return False
    stream.seek(-1, io.SEEK_CUR)
    return head == _PROTO_OPCODE


def scan_pickle_stream(
    stream: IO[bytes],
    found: set[tuple[str, str]] | None = None,
) -> set[tuple[str, str]]:
    """Collect every ``(module, name)`` global imported by the pickles in *stream*.

    The stream is read opcode by opcode, never buffered whole.  After the
    first pickle, parsing continues only while the next byte opens another
    protocol >= 2 pickle; anything else (the raw storage bytes of a legacy
    torch checkpoint, for example) ends the scan.

    Globals are added to *found* as they are met, so a caller passing its
    own set keeps them even when a later opcode is malformed.

    Raises:
        PickleParseError: If the opcode stream is malformed.
    """
    if found is None:
        found = set()

    first = True
    while first or _at_next_pickle(stream):
        first = False
        strings: list[str] = []
        memo: dict[int, str | None] = {}
        # Value pushed by the previous opcode when it was a string.
        last_string: str | None = None
        try:
            for opcode, arg, _pos in pickletools.genops(stream):
                name = opcode.name
                if name == "MEMOIZE":
                    memo[len(memo)] = last_string
                    continue
                if name in _PUT_OPCODES:
                    memo[int(arg)] = last_string
                    continue

                last_string = None
                if name in _STRING_OPCODES:
                    last_string = arg.decode("latin-1") if isinstance(arg, bytes) else str(arg)
                    strings.append(last_string)
                elif name in _GET_OPCODES:
                    last_string = memo.get(int(arg))
                    if last_string is not None:
                        strings.append(last_string)
                elif name in ("GLOBAL", "INST"):
                    module, _, attr = str(arg).partition(" ")
                    found.add((module, attr))
                elif name == "STACK_GLOBAL":
                    if len(strings) < 2:
                        raise PickleParseError("STACK_GLOBAL without module and name on the stack")
                    found.add((strings[-2], strings[-1]))
        except ValueError as exc:
            raise PickleParseError(str(exc)) from exc
    return found


def _zip_pickle_members(archive: zipfile.ZipFile) -> Iterable[str]:
    for member in archive.namelist():
        if member.endswith(".pkl"):
            yield member


def scan_file(file_path: Path) -> tuple[set[tuple[str, str]], bool]:
    """Scan *file_path* for pickle imports.

    A malformed pickle sets ``parse_failed`` but does not discard globals
    already found, and in a zip checkpoint the remaining members are still
    scanned.

    Returns:
        ``(globals, parse_failed)``.
    """
    found: set[tuple[str, str]] = set()
    parse_failed = False

    if zipfile.is_zipfile(file_path):
        with zipfile.ZipFile(file_path) as archive:
            for member in _zip_pickle_members(archive):
                with archive.open(member) as fh:
                    try:
                        scan_pickle_stream(fh, found)
                    except PickleParseError as exc:
                        logger.warning("Unparseable pickle %s in %s: %s", member, file_path.name, exc)
                        parse_failed = True
        return found, parse_failed

    with file_path.open("rb") as fh:
        head = fh.read(1)
        if file_path.suffix.lower() not in _PICKLE_SUFFIXES and head != _PROTO_OPCODE:
            return found, False
        fh.seek(0)
        try:
            scan_pickle_stream(fh, found)
        except PickleParseError as exc:
            logger.warning("Unparseable pickle %s: %s", file_path.name, exc)
            parse_failed = True
    return found, parse_failed


class PickleScanTask(JobTask):
    task_type = JobTaskType.PICKLE_SCAN

    async def process(
        self,
        file_path: Path,
        result: ScanResult,
        cancel: CancellationToken,
    ) -> bool:
        found, parse_failed = await asyncio.to_thread(scan_file, file_path)

        imports = sorted(f"{module}.{name}" for module, name in found)
        dangerous = sorted(
            f"{module}.{name}" for module, name in found if is_dangerous(module, name)
        )
        if parse_failed:
            exit_code = 2
        elif dangerous:
            exit_code = 1
            logger.warning(
                "Dangerous pickle imports in %s: %s", file_path.name, ", ".join(dangerous)
            )
        else:
            exit_code = 0

        result.update(
            picklescanExitCode=exit_code,
            picklescanGlobalImports=imports,
            picklescanDangerousImports=dangerous,
        )
        return True

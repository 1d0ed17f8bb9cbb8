"""Small filesystem helpers used by the record store and the module journal."""

import hashlib
import json
import logging
import os
from pathlib import Path
from typing import Any, NamedTuple, Optional, Union

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]


class FileRead(NamedTuple):
    """Result of reading a file that may legitimately not exist."""

    found: bool
    text: str = ""


def read_text(path: PathLike) -> FileRead:
    """Read a text file.

    A missing file is a normal outcome and yields ``FileRead(found=False)``.
    Any other OSError propagates.
    """
    try:
        with open(path, "r", encoding="utf-8") as f:
            return FileRead(True, f.read())
    except FileNotFoundError:
        return FileRead(False)


def stat_mtime(path: PathLike) -> Optional[float]:
    """Return the file's modification time, or None if it does not exist."""
    try:
        return os.stat(path).st_mtime
    except FileNotFoundError:
        return None


def write_atomic(path: PathLike, text: str) -> None:
    """Write text to path through a temp file and an atomic replace."""
    path = Path(path)
    temp_path = path.with_suffix(path.suffix + ".tmp")
    try:
        with temp_path.open("w", encoding="utf-8") as f:
            f.write(text)
        temp_path.replace(path)
    finally:
        temp_path.unlink(missing_ok=True)


def content_hash(payload: Any) -> str:
    """sha256 of the canonical JSON serialization of payload."""
    serialized = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(serialized.encode("utf-8")).hexdigest()

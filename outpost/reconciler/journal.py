"""
Module State Journal

Durable record of what has been applied to each installed module. Every
module lives in ``<modules_dir>/<name>-<version>`` and keeps its journal in
``.outpost/state.json`` inside that directory:

    {
        "install":   {"time": ...},
        "configure": {"data": {...}, "hash": "...", "time": ...},
        "start":     {"started": true, "time": ...}
    }
"""

import json
import logging
import re
import shutil
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

from outpost.errors import JournalError
from outpost.fsutil import content_hash, read_text, write_atomic

logger = logging.getLogger(__name__)

STATE_DIR = ".outpost"
STATE_FILE = "state.json"

MODULE_DIR_PATTERN = re.compile(r"^(.+)-(\d+\.\d+\.\d+(-.*)?)$")


def split_fullname(fullname: str) -> Tuple[str, str]:
    """Split ``name@version``."""
    name, sep, version = fullname.rpartition("@")
    if not sep or not name or not version:
        raise ValueError(f"invalid module fullname '{fullname}', expected name@version")
    return name, version


def module_dirname(fullname: str) -> str:
    name, version = split_fullname(fullname)
    return f"{name}-{version}"


def parse_module_dirname(dirname: str) -> Optional[str]:
    """Return the fullname for a module directory name, or None if it is not one."""
    match = MODULE_DIR_PATTERN.match(dirname)
    if not match:
        return None
    return f"{match.group(1)}@{match.group(2)}"


@dataclass
class InstalledModuleState:
    """What the journal knows about one installed module."""

    fullname: str
    directory: Path
    configure: Optional[Dict[str, Any]] = None
    started: bool = False
    installed_at: Optional[float] = None

    @property
    def config_data(self) -> Any:
        return self.configure.get("data") if self.configure else None

    @property
    def config_hash(self) -> Optional[str]:
        if not self.configure:
            return None
        stored = self.configure.get("hash")
        if stored:
            return stored
        return content_hash(self.configure.get("data"))

    @classmethod
    def from_state(cls, fullname: str, directory: Path, state: Dict[str, Any]):
        start = state.get("start")
        install = state.get("install") or {}
        return cls(
            fullname=fullname,
            directory=directory,
            configure=state.get("configure"),
            started=bool(isinstance(start, dict) and start.get("started") is True),
            installed_at=install.get("time"),
        )


class ModuleStateJournal:
    """Reads and writes the per-module state files."""

    def __init__(self, modules_dir):
        self.modules_dir = Path(modules_dir)

    def module_dir(self, fullname: str) -> Path:
        try:
            return self.modules_dir / module_dirname(fullname)
        except ValueError as e:
            raise JournalError(str(e))

    def _state_file(self, module_dir: Path) -> Path:
        return module_dir / STATE_DIR / STATE_FILE

    def _read_state(self, module_dir: Path) -> Dict[str, Any]:
        path = self._state_file(module_dir)
        try:
            result = read_text(path)
        except OSError as e:
            raise JournalError(f"error reading state file {path}: {e}")
        if not result.found or not result.text.strip():
            return {}
        try:
            state = json.loads(result.text)
        except ValueError as e:
            raise JournalError(f"error parsing state file {path}: {e}")
        if not isinstance(state, dict):
            raise JournalError(f"state file {path} does not hold an object")
        return state

    def _write_state(self, module_dir: Path, state: Dict[str, Any]) -> None:
        path = self._state_file(module_dir)
        try:
            path.parent.mkdir(mode=0o700, parents=True, exist_ok=True)
            write_atomic(path, json.dumps(state))
        except OSError as e:
            raise JournalError(f"error writing state file {path}: {e}")

    def save(self, fullname: str, key: str, data: Any) -> None:
        module_dir = self.module_dir(fullname)
        state = self._read_state(module_dir)
        state[key] = data
        self._write_state(module_dir, state)

    def load(self, fullname: str, key: Optional[str] = None) -> Any:
        """Load one entry of a module's journal, or the whole journal when key is None."""
        state = self._read_state(self.module_dir(fullname))
        if key:
            return state.get(key)
        return state

    def remove(self, fullname: str, key: str) -> None:
        module_dir = self.module_dir(fullname)
        state = self._read_state(module_dir)
        if key in state:
            del state[key]
            self._write_state(module_dir, state)

    def forget(self, fullname: str) -> None:
        """Drop a module's whole journal."""
        state_dir = self.module_dir(fullname) / STATE_DIR
        try:
            shutil.rmtree(state_dir)
        except FileNotFoundError:
            pass
        except OSError as e:
            raise JournalError(f"error removing {state_dir}: {e}")

    def record_install(self, fullname: str) -> None:
        self.save(fullname, "install", {"time": time.time()})

    def record_configure(self, fullname: str, payload: Any) -> None:
        self.save(
            fullname,
            "configure",
            {"data": payload, "hash": content_hash(payload), "time": time.time()},
        )

    def record_started(self, fullname: str, started: bool) -> None:
        self.save(fullname, "start", {"started": bool(started), "time": time.time()})

    def installed(self) -> Dict[str, InstalledModuleState]:
        """Scan the modules directory for installed modules.

        A directory counts as a module when its name is ``<name>-<x.y.z>`` and
        it holds a journal directory. A missing modules directory means nothing
        is installed.

        Raises:
            JournalError: on any other read failure
        """
        if not self.modules_dir.exists():
            return {}
        try:
            entries = sorted(self.modules_dir.iterdir())
        except OSError as e:
            raise JournalError(f"error reading modules directory {self.modules_dir}: {e}")

        modules: Dict[str, InstalledModuleState] = {}
        for entry in entries:
            fullname = parse_module_dirname(entry.name)
            if fullname is None or not (entry / STATE_DIR).is_dir():
                continue
            state = self._read_state(entry)
            modules[fullname] = InstalledModuleState.from_state(fullname, entry, state)

        logger.debug(f"Found {len(modules)} installed modules")
        return modules

"""
Process records and their on-disk store.

Each monitored process owns a directory under the monitor dir. Records and
logs live in separate subtrees so no process name can collide with the logs:

    <monitor_dir>/processes/<name>/process.json   normalized MonitoredProcess
    <monitor_dir>/processes/<name>/pid            decimal pid, absent when not running
    <monitor_dir>/logs/<name>.log                 process output

Processes with a custom pid file write that file themselves; the store only
reads it.
"""

import json
import logging
import shutil
import signal
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, List, Optional

from outpost.errors import RecordStoreError
from outpost.fsutil import read_text, write_atomic

logger = logging.getLogger(__name__)

RECORD_FILE = "process.json"
PID_FILE = "pid"


@dataclass
class HealthCheck:
    """A health check attached to a monitored process."""

    type: str
    parameters: Dict[str, Any] = field(default_factory=dict)
    # Private evaluation state (throttling timestamps, cached results); never persisted
    state: Dict[str, Any] = field(default_factory=dict, repr=False, compare=False)

    @classmethod
    def from_dict(cls, data: Any) -> "HealthCheck":
        if isinstance(data, HealthCheck):
            return data
        if not isinstance(data, dict) or not data.get("type"):
            raise ValueError(f"health check needs a type: {data!r}")
        parameters = data.get("parameters")
        if parameters is None:
            parameters = {k: v for k, v in data.items() if k != "type"}
        return cls(type=data["type"], parameters=dict(parameters))

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.type, "parameters": dict(self.parameters)}


@dataclass
class MonitoredProcess:
    """A process kept alive by the supervisor."""

    name: str
    cmd: str
    cwd: str
    log_file: str
    pid_file: str
    args: List[str] = field(default_factory=list)
    env: Dict[str, str] = field(default_factory=dict)
    uid: Optional[int] = None
    gid: Optional[int] = None
    module: Optional[str] = None
    timeout: int = 10
    stop_signal: int = int(signal.SIGTERM)
    checks: List[HealthCheck] = field(default_factory=list)
    custom_pid_file: bool = False

    # Runtime bookkeeping, mutated only by the supervisor
    pid: Optional[int] = None
    running: bool = False
    started_at: Optional[float] = None
    last_start_attempt: Optional[float] = None
    starting: bool = False
    suppressed: bool = False
    suppress_time: Optional[float] = None
    suppressed_until: Optional[float] = None
    force_killed: bool = False

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["checks"] = [check.to_dict() for check in self.checks]
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MonitoredProcess":
        known = {f.name for f in fields(cls)}
        values = {k: v for k, v in data.items() if k in known}
        values["checks"] = [HealthCheck.from_dict(c) for c in data.get("checks") or []]
        values["starting"] = False
        return cls(**values)

    def clear_backoff(self) -> None:
        self.suppressed = False
        self.suppress_time = None
        self.suppressed_until = None
        self.force_killed = False


def parse_pid(text: str) -> Optional[int]:
    """Parse pid file content. Anything but a positive integer is None."""
    text = text.strip()
    if not text:
        return None
    try:
        pid = int(text)
    except ValueError:
        return None
    return pid if pid > 0 else None


class ProcessRecordStore:
    """Durable per-process metadata and pid files."""

    def __init__(self, monitor_dir):
        self.monitor_dir = Path(monitor_dir)
        self.records_dir = self.monitor_dir / "processes"
        self.logs_dir = self.monitor_dir / "logs"

    def ensure_dirs(self) -> None:
        try:
            self.monitor_dir.mkdir(parents=True, exist_ok=True)
            self.records_dir.mkdir(parents=True, exist_ok=True)
            self.logs_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise RecordStoreError(f"error creating monitor directory {self.monitor_dir}: {e}")

    def record_dir(self, name: str) -> Path:
        return self.records_dir / name

    def default_pid_file(self, name: str) -> Path:
        return self.record_dir(name) / PID_FILE

    def default_log_file(self, name: str) -> Path:
        return self.logs_dir / f"{name}.log"

    def save(self, proc: MonitoredProcess) -> None:
        """Persist the record and, for default pid files, the pid."""
        record_dir = self.record_dir(proc.name)
        try:
            record_dir.mkdir(parents=True, exist_ok=True)
            write_atomic(record_dir / RECORD_FILE, json.dumps(proc.to_dict(), indent=2))
            if not proc.custom_pid_file:
                pid_path = Path(proc.pid_file)
                if proc.pid:
                    write_atomic(pid_path, str(proc.pid))
                else:
                    pid_path.unlink(missing_ok=True)
        except OSError as e:
            raise RecordStoreError(f"error saving process record '{proc.name}': {e}")

    def read_pid(self, pid_file) -> Optional[int]:
        try:
            result = read_text(pid_file)
        except OSError as e:
            raise RecordStoreError(f"error reading pid file {pid_file}: {e}")
        if not result.found:
            return None
        pid = parse_pid(result.text)
        if pid is None and result.text.strip():
            logger.warning(f"Discarding garbage pid file content in {pid_file}: {result.text!r}")
        return pid

    def load_all(self) -> List[MonitoredProcess]:
        """Load every persisted record, with ``pid`` taken from its pid file."""
        if not self.records_dir.exists():
            return []

        processes = []
        try:
            entries = sorted(p for p in self.records_dir.iterdir() if p.is_dir())
        except OSError as e:
            raise RecordStoreError(f"error listing {self.records_dir}: {e}")

        for entry in entries:
            try:
                result = read_text(entry / RECORD_FILE)
            except OSError as e:
                raise RecordStoreError(f"error reading process record {entry}: {e}")
            if not result.found:
                continue
            try:
                proc = MonitoredProcess.from_dict(json.loads(result.text))
            except (ValueError, TypeError, AttributeError) as e:
                logger.warning(f"Skipping corrupt process record {entry}: {e}")
                continue
            proc.pid = self.read_pid(proc.pid_file)
            processes.append(proc)

        return processes

    def delete(self, proc: MonitoredProcess) -> None:
        """Remove the record directory and any custom pid file."""
        try:
            shutil.rmtree(self.record_dir(proc.name))
        except FileNotFoundError:
            pass
        except OSError as e:
            raise RecordStoreError(f"error deleting process record '{proc.name}': {e}")
        if proc.custom_pid_file:
            try:
                Path(proc.pid_file).unlink(missing_ok=True)
            except OSError as e:
                raise RecordStoreError(f"error deleting pid file {proc.pid_file}: {e}")

"""
Log rotation for supervised process output.

Children keep their log file open in append mode, so rotation copies the
current content into a gzip archive and truncates the live file in place.
A file rotates when it grows past ``max_size_mb`` or when ``max_age_hours``
have passed since it was registered or last rotated.
"""

import gzip
import logging
import shutil
import threading
import time
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional

from outpost.supervisor.tasks import RepeatingTask

logger = logging.getLogger(__name__)


@dataclass
class LogRotationPolicy:
    """Configuration for log rotation."""

    max_size_mb: float = 10.0  # Rotate once the file is larger than this
    max_age_hours: float = 24.0  # Rotate at least this often
    keep: int = 5  # Archives retained per log file


class LogRotator:
    """Tracks registered log files and rotates them on a schedule."""

    def __init__(self, policy: Optional[LogRotationPolicy] = None, interval: float = 60.0):
        """Initialize the rotator.

        Args:
            policy: Rotation policy
            interval: Seconds between checks of the registered files
        """
        self.policy = policy or LogRotationPolicy()
        self.interval = interval
        self._files: Dict[Path, float] = {}
        self._lock = threading.Lock()
        self._task: Optional[RepeatingTask] = None

    @property
    def registered(self) -> List[Path]:
        with self._lock:
            return list(self._files)

    def register(self, log_file) -> None:
        """Start rotating a log file. Registering twice keeps the original schedule."""
        path = Path(log_file)
        with self._lock:
            if path in self._files:
                return
            self._files[path] = time.time()
        logger.debug(f"Registered {path} for rotation")
        self._ensure_task()

    def unregister(self, log_file) -> None:
        with self._lock:
            self._files.pop(Path(log_file), None)
            empty = not self._files
        if empty and self._task:
            self._task.cancel()
            self._task = None

    def stop(self) -> None:
        """Forget every registered file and stop the rotation task."""
        with self._lock:
            self._files.clear()
        if self._task:
            self._task.cancel()
            self._task = None

    def _ensure_task(self) -> None:
        if self._task is None or not self._task.active:
            self._task = RepeatingTask("log-rotation", self.interval, self.check_all)
            self._task.start()

    def check_all(self, now: Optional[float] = None) -> int:
        """Rotate every registered file that is due. Returns the number rotated."""
        now = now if now is not None else time.time()
        rotated = 0
        for path in self.registered:
            with self._lock:
                last_rotated = self._files.get(path)
            if last_rotated is None:
                continue
            try:
                if self.is_due(path, last_rotated, now):
                    self.rotate(path)
                    rotated += 1
                    with self._lock:
                        if path in self._files:
                            self._files[path] = now
            except OSError as e:
                logger.warning(f"Could not rotate {path}: {e}")
        return rotated

    def is_due(self, path: Path, last_rotated: float, now: float) -> bool:
        try:
            size = path.stat().st_size
        except FileNotFoundError:
            return False
        if size == 0:
            return False
        if size > self.policy.max_size_mb * 1024 * 1024:
            return True
        return (now - last_rotated) / 3600 >= self.policy.max_age_hours

    def rotate(self, path: Path) -> Path:
        """Archive the current content of path and truncate it.

        Returns:
            Path of the archive that was written
        """
        stamp = datetime.now().strftime("%Y%m%d-%H%M%S")
        archive = path.with_name(f"{path.name}.{stamp}.gz")
        counter = 1
        while archive.exists():
            archive = path.with_name(f"{path.name}.{stamp}-{counter}.gz")
            counter += 1

        with open(path, "rb") as src, gzip.open(archive, "wb") as dst:
            shutil.copyfileobj(src, dst)
        with open(path, "r+b") as f:
            f.truncate(0)

        logger.info(f"Rotated {path.name} -> {archive.name}")
        self._prune(path)
        return archive

    def archives(self, path: Path) -> List[Path]:
        """Archives of path, oldest first."""
        archives = path.parent.glob(f"{path.name}.*.gz")
        return sorted(archives, key=lambda p: (p.stat().st_mtime, p.name))

    def _prune(self, path: Path) -> None:
        archives = self.archives(path)
        excess = len(archives) - self.policy.keep
        for old in archives[: max(excess, 0)]:
            old.unlink(missing_ok=True)
            logger.debug(f"Deleted old archive {old.name}")

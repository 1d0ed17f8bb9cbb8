"""Cancellable fixed-period background tasks."""

import logging
import threading
from typing import Callable, Optional

logger = logging.getLogger(__name__)


class RepeatingTask:
    """Run ``fn`` every ``interval`` seconds on a daemon thread until cancelled.

    The first run happens one interval after ``start()``. Exceptions raised by
    ``fn`` are logged and do not end the task.
    """

    def __init__(self, name: str, interval: float, fn: Callable[[], None]):
        self.name = name
        self.interval = interval
        self.fn = fn
        self._cancelled = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def active(self) -> bool:
        return (
            self._thread is not None
            and self._thread.is_alive()
            and not self._cancelled.is_set()
        )

    def start(self) -> None:
        if self.active:
            return
        self._cancelled.clear()
        self._thread = threading.Thread(target=self._run, name=f"task-{self.name}", daemon=True)
        self._thread.start()

    def cancel(self, wait: Optional[float] = None) -> None:
        """Stop the task. With ``wait`` set, join the thread for at most that long."""
        self._cancelled.set()
        thread = self._thread
        if wait is not None and thread and thread is not threading.current_thread():
            thread.join(timeout=wait)

    def _run(self) -> None:
        while not self._cancelled.wait(self.interval):
            try:
                self.fn()
            except Exception as e:
                logger.error(f"Task '{self.name}' failed: {e}", exc_info=True)

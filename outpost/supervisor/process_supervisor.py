"""
Process Supervisor - keeps long-running processes alive

Monitors and manages module processes with:
- One repeating supervision task per process
- Crash-loop backoff when a process dies shortly after each start
- Pluggable health checks that force a stop-and-restart cycle
- Detached children that survive supervisor restarts
- Persisted process records so supervision resumes after an agent restart
- Log rotation for each process's output file

Usage:
    supervisor = ProcessSupervisor(monitor_dir, modules_dir)
    supervisor.start()
    supervisor.monitor({"name": "my-server", "module": "my-server-1.0.0", "args": ["server.py"]})
    supervisor.unmonitor({"name": "my-server", "timeout": 10})
    supervisor.stop()
"""

import logging
import os
import signal
import subprocess
import sys
import threading
import time
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Optional, Union

import psutil

from outpost.errors import (
    InvalidSpecError,
    OutpostError,
    PidFileTimeoutError,
    ProcessStartError,
    ProcessStopError,
)
from outpost.supervisor import health_checks
from outpost.supervisor.log_rotation import LogRotator
from outpost.supervisor.records import HealthCheck, MonitoredProcess, ProcessRecordStore
from outpost.supervisor.tasks import RepeatingTask

logger = logging.getLogger(__name__)

CHECK_INTERVAL = 2  # seconds between supervision ticks
RESTART_WINDOW = 10  # a start attempt this recent triggers backoff
INITIAL_BACKOFF = 5
MAX_BACKOFF = 30
STABLE_UPTIME = 30  # uptime after which backoff bookkeeping is cleared
PID_POLL_INTERVAL = 0.5
STOP_POLL_INTERVAL = 1
KILL_GRACE = 5  # seconds allowed after SIGKILL
DEFAULT_TIMEOUT = 10


def pid_alive(pid: Optional[int]) -> bool:
    """Non-destructive liveness probe. Zombies are reaped and count as dead."""
    if not pid:
        return False
    if not psutil.pid_exists(pid):
        return False
    try:
        if psutil.Process(pid).status() == psutil.STATUS_ZOMBIE:
            _reap(pid)
            return False
    except psutil.NoSuchProcess:
        return False
    except psutil.AccessDenied:
        return True
    return True


def _reap(pid: int) -> None:
    try:
        os.waitpid(pid, os.WNOHANG)
    except ChildProcessError:
        pass


def resolve_signal(value: Union[str, int, None]) -> int:
    """Accept a signal name ("SIGTERM", "term") or number."""
    if value is None:
        return int(signal.SIGTERM)
    if isinstance(value, str) and not value.isdigit():
        name = value.upper()
        if not name.startswith("SIG"):
            name = "SIG" + name
        sig = getattr(signal, name, None)
        if not isinstance(sig, signal.Signals):
            raise InvalidSpecError(f"unknown stop signal '{value}'")
        return int(sig)
    try:
        return int(signal.Signals(int(value)))
    except (TypeError, ValueError):
        raise InvalidSpecError(f"unknown stop signal '{value}'")


def _field(spec: Dict[str, Any], name: str, alias: str) -> Any:
    value = spec.get(name)
    return value if value is not None else spec.get(alias)


class ProcessSupervisor:
    """Supervises a registry of monitored processes keyed by name."""

    def __init__(
        self,
        monitor_dir,
        modules_dir=None,
        check_interval: float = CHECK_INTERVAL,
        default_timeout: int = DEFAULT_TIMEOUT,
        rotator: Optional[LogRotator] = None,
    ):
        """Initialize the supervisor.

        Args:
            monitor_dir: Directory holding process records and logs
            modules_dir: Directory that module paths in monitor requests are relative to
            check_interval: Seconds between supervision ticks of each process
            default_timeout: Stop/pid-file budget used when a request has none
            rotator: Log rotator for process output files
        """
        self.store = ProcessRecordStore(monitor_dir)
        self.modules_dir = Path(modules_dir) if modules_dir else None
        self.check_interval = check_interval
        self.default_timeout = default_timeout
        self.rotator = rotator or LogRotator()

        self.processes: Dict[str, MonitoredProcess] = {}
        self.tasks: Dict[str, RepeatingTask] = {}
        self._lock = threading.RLock()
        self._proc_locks: Dict[str, threading.RLock] = {}

    # ------------------------------------------------------------------
    # Public contract
    # ------------------------------------------------------------------

    def start(self, purge: bool = False) -> None:
        """Load persisted records and resume (or purge) their supervision.

        Raises:
            RecordStoreError: if the monitor directory cannot be read
        """
        logger.info("Starting process supervisor")
        self.store.ensure_dirs()
        records = self.store.load_all()

        with self._lock:
            for proc in records:
                if proc.pid and not pid_alive(proc.pid):
                    logger.info(f"Discarding stale pid {proc.pid} for '{proc.name}'")
                    proc.pid = None
                proc.running = proc.pid is not None
                self.processes[proc.name] = proc

        logger.info(f"Loaded {len(records)} monitored processes")

        for proc in records:
            if purge:
                try:
                    self.unmonitor({"name": proc.name, "timeout": proc.timeout})
                    continue
                except OutpostError as e:
                    logger.error(f"Error purging '{proc.name}': {e}")
                    if not self.monitored(proc.name):
                        continue
            if proc.running:
                self.rotator.register(proc.log_file)
            self._supervise(proc, raise_errors=False)

    def stop(self) -> None:
        """Stop supervising. The supervised processes keep running."""
        logger.info("Stopping process supervisor")
        with self._lock:
            tasks = list(self.tasks.values())
            self.tasks.clear()
            self.processes.clear()
            self._proc_locks.clear()
        for task in tasks:
            task.cancel()
        self.rotator.stop()

    def monitor(self, spec: Dict[str, Any]) -> MonitoredProcess:
        """Start supervising a process. Monitoring a known name only resumes supervision.

        Raises:
            InvalidSpecError: if the request has no name or no resolvable cwd
            ProcessStartError: if the first start attempt fails (supervision continues)
            RecordStoreError: if the record cannot be persisted
        """
        if not isinstance(spec, dict) or not spec.get("name"):
            raise InvalidSpecError(f"monitor request requires a process name: {spec!r}")

        name = str(spec["name"])
        with self._lock:
            proc = self.processes.get(name)
            if proc is not None:
                task = self.tasks.get(name)
                if task and task.active:
                    logger.debug(f"'{name}' is already monitored")
                    return proc
            else:
                proc = self._normalize(spec)
                self.store.save(proc)
                self.processes[name] = proc
                logger.info(f"Monitoring new process '{name}'")

        self._supervise(proc, raise_errors=True)
        return proc

    def unmonitor(self, spec: Union[Dict[str, Any], str]) -> None:
        """Stop a process and forget it. Unknown names are a no-op.

        Raises:
            InvalidSpecError: if no name is given or the timeout is not an integer
            ProcessStopError: if the process survives the stop budget
            RecordStoreError: if the record cannot be deleted

        The process stays monitored whenever an error is raised.
        """
        if isinstance(spec, str):
            spec = {"name": spec}
        if not isinstance(spec, dict) or not spec.get("name"):
            raise InvalidSpecError(f"unmonitor request requires a process name: {spec!r}")

        name = str(spec["name"])
        with self._lock:
            proc = self.processes.get(name)
        if proc is None:
            logger.debug(f"'{name}' is not monitored, nothing to unmonitor")
            return

        timeout = spec.get("timeout")
        if timeout is None:
            timeout = proc.timeout
        try:
            timeout = int(timeout)
        except (TypeError, ValueError):
            raise InvalidSpecError(f"process '{name}': invalid timeout {timeout!r}")

        with self._lock:
            task = self.tasks.pop(name, None)
        if task:
            task.cancel()

        with self._proc_lock(name):
            try:
                self._stop_process(proc, timeout)
                self.store.delete(proc)
            except OutpostError:
                # still registered, so supervision resumes
                self._ensure_task(proc)
                raise
            self.rotator.unregister(proc.log_file)
            with self._lock:
                self.processes.pop(name, None)
                self._proc_locks.pop(name, None)

        logger.info(f"Stopped monitoring '{name}'")

    def monitored(self, name: str) -> bool:
        with self._lock:
            return name in self.processes

    def summary(self) -> Dict[str, Dict[str, Any]]:
        """Snapshot of the registry with freshly probed liveness."""
        with self._lock:
            procs = list(self.processes.values())
        result = {}
        for proc in procs:
            proc.running = pid_alive(proc.pid)
            result[proc.name] = proc.to_dict()
        return result

    # ------------------------------------------------------------------
    # Supervision
    # ------------------------------------------------------------------

    def _normalize(self, spec: Dict[str, Any]) -> MonitoredProcess:
        name = str(spec["name"])
        if "/" in name or name in (".", ".."):
            raise InvalidSpecError(f"invalid process name '{name}'")

        cwd = spec.get("cwd")
        if not cwd:
            module = spec.get("module")
            if not module or self.modules_dir is None:
                raise InvalidSpecError(f"process '{name}' requires a cwd or a module path")
            cwd = self.modules_dir / module

        args = spec.get("args") or []
        if not isinstance(args, (list, tuple)):
            raise InvalidSpecError(f"process '{name}': args must be a list")
        env = spec.get("env") or {}
        if not isinstance(env, dict):
            raise InvalidSpecError(f"process '{name}': env must be a mapping")

        timeout = spec.get("timeout")
        if timeout is None:
            timeout = self.default_timeout
        try:
            timeout = int(timeout)
        except (TypeError, ValueError):
            raise InvalidSpecError(f"process '{name}': invalid timeout {timeout!r}")

        try:
            checks = [HealthCheck.from_dict(c) for c in spec.get("checks") or []]
        except ValueError as e:
            raise InvalidSpecError(f"process '{name}': {e}")

        pid_file = _field(spec, "pid_file", "pidFile")
        log_file = _field(spec, "log_file", "logFile")
        uid = spec.get("uid")
        gid = spec.get("gid")

        return MonitoredProcess(
            name=name,
            cmd=spec.get("cmd") or sys.executable,
            cwd=str(cwd),
            log_file=str(log_file or self.store.default_log_file(name)),
            pid_file=str(pid_file or self.store.default_pid_file(name)),
            custom_pid_file=bool(pid_file),
            args=[str(a) for a in args],
            env={str(k): str(v) for k, v in env.items()},
            uid=os.getuid() if uid is None else int(uid),
            gid=os.getgid() if gid is None else int(gid),
            module=spec.get("module"),
            timeout=timeout,
            stop_signal=resolve_signal(_field(spec, "stop_signal", "stopSignal")),
            checks=checks,
        )

    def _proc_lock(self, name: str) -> threading.RLock:
        with self._lock:
            lock = self._proc_locks.get(name)
            if lock is None:
                lock = self._proc_locks[name] = threading.RLock()
            return lock

    def _supervise(self, proc: MonitoredProcess, raise_errors: bool) -> None:
        """Run one tick now, then keep ticking on the repeating task."""
        try:
            self._tick(proc)
        except OutpostError as e:
            if raise_errors:
                raise
            logger.error(f"Error supervising '{proc.name}': {e}")
        finally:
            self._ensure_task(proc)

    def _ensure_task(self, proc: MonitoredProcess) -> None:
        name = proc.name
        with self._lock:
            if name not in self.processes:
                return
            task = self.tasks.get(name)
            if task and task.active:
                return
            task = RepeatingTask(name, self.check_interval, lambda: self._tick_by_name(name))
            self.tasks[name] = task
        task.start()

    def _tick_by_name(self, name: str) -> None:
        with self._lock:
            proc = self.processes.get(name)
        if proc is not None:
            self._tick(proc)

    def _tick(self, proc: MonitoredProcess) -> None:
        """One supervision tick: health-check a live process or (re)start a dead one."""
        with self._proc_lock(proc.name):
            with self._lock:
                # unmonitored while this tick was waiting for the lock
                removed = self.processes.get(proc.name) is not proc
            if proc.starting or removed:
                return
            now = time.time()

            if pid_alive(proc.pid):
                proc.running = True
                failed = health_checks.run_checks(proc, now)
                if failed is not None:
                    logger.warning(
                        f"Health check '{failed.type}' failed for '{proc.name}', stopping process"
                    )
                    self._stop_process(proc, proc.timeout)
                    self.store.save(proc)
                    return
                if proc.started_at and now - proc.started_at > STABLE_UPTIME:
                    if proc.suppress_time is not None or proc.force_killed:
                        logger.debug(f"'{proc.name}' is stable, clearing backoff")
                        proc.clear_backoff()
                return

            proc.running = False
            if proc.pid is not None:
                logger.warning(f"'{proc.name}' (pid {proc.pid}) is not running")
                proc.pid = None
                self.store.save(proc)

            if proc.suppressed:
                if now < proc.suppressed_until:
                    return
                proc.suppressed = False
                proc.suppressed_until = None
            elif (
                proc.last_start_attempt is not None
                and now - proc.last_start_attempt < RESTART_WINDOW
            ):
                backoff = proc.suppress_time or INITIAL_BACKOFF
                proc.suppressed = True
                proc.suppressed_until = now + backoff
                proc.suppress_time = min(backoff * 2, MAX_BACKOFF)
                logger.warning(
                    f"'{proc.name}' restarted within {RESTART_WINDOW}s, "
                    f"suppressing restarts for {backoff}s"
                )
                return

            self._start_process(proc, now)

    def _start_process(self, proc: MonitoredProcess, now: float) -> None:
        logger.info(f"'{proc.name}' is not running - starting process")
        proc.starting = True
        proc.last_start_attempt = now
        try:
            pid = self._spawn(proc)
        finally:
            proc.starting = False

        proc.pid = pid
        proc.started_at = time.time()
        proc.running = True
        self.store.save(proc)
        self.rotator.register(proc.log_file)
        logger.info(f"Process '{proc.name}' started with pid {pid}")

    def _spawn(self, proc: MonitoredProcess) -> int:
        """Launch the detached child and return its pid."""
        log_path = Path(proc.log_file)
        command = [proc.cmd] + list(proc.args)

        env = os.environ.copy()
        env.update(proc.env)

        popen_kwargs: Dict[str, Any] = {}
        if proc.uid is not None and proc.uid != os.getuid():
            popen_kwargs["user"] = proc.uid
        if proc.gid is not None and proc.gid != os.getgid():
            popen_kwargs["group"] = proc.gid

        try:
            log_path.parent.mkdir(parents=True, exist_ok=True)
            if proc.custom_pid_file:
                pid_path = Path(proc.pid_file)
                pid_path.parent.mkdir(parents=True, exist_ok=True)
                pid_path.write_text("")

            with open(log_path, "a") as log_handle:
                log_handle.write(
                    f"\n===== {datetime.now().isoformat()} starting {proc.name}: "
                    f"{' '.join(command)} =====\n"
                )
                log_handle.flush()
                child = subprocess.Popen(
                    command,
                    cwd=proc.cwd,
                    env=env,
                    stdin=subprocess.DEVNULL,
                    stdout=log_handle,
                    stderr=subprocess.STDOUT,
                    start_new_session=True,
                    **popen_kwargs,
                )
        except (OSError, subprocess.SubprocessError, ValueError) as e:
            logger.error(f"Error starting process '{proc.name}': {e}")
            raise ProcessStartError(proc.name, str(e))

        if not proc.custom_pid_file:
            return child.pid
        return self._wait_for_pid_file(proc, child)

    def _wait_for_pid_file(self, proc: MonitoredProcess, child: subprocess.Popen) -> int:
        polls = max(int(proc.timeout), 1)
        for _ in range(polls):
            time.sleep(PID_POLL_INTERVAL)
            pid = self.store.read_pid(proc.pid_file)
            if pid:
                return pid
        logger.error(f"Timed out waiting for '{proc.name}' to write {proc.pid_file}")
        self._kill_session(proc, child)
        raise PidFileTimeoutError(proc.name, proc.pid_file, polls)

    def _kill_session(self, proc: MonitoredProcess, child: subprocess.Popen) -> None:
        """Kill a child that never became supervised, along with its session."""
        # start_new_session makes the child its own process group leader
        try:
            os.killpg(child.pid, signal.SIGKILL)
        except ProcessLookupError:
            pass
        except PermissionError as e:
            logger.error(f"Not allowed to kill '{proc.name}' (pid {child.pid}): {e}")
            return
        try:
            child.wait(timeout=KILL_GRACE)
        except subprocess.TimeoutExpired:
            logger.error(f"'{proc.name}' (pid {child.pid}) did not exit after SIGKILL")

    def _stop_process(self, proc: MonitoredProcess, timeout: int) -> None:
        """Signal the process and wait for it to exit, escalating once to SIGKILL.

        A negative timeout waits indefinitely for the stop signal to take effect.
        """
        pid = proc.pid
        if not pid:
            proc.running = False
            return

        sig_name = signal.Signals(proc.stop_signal).name
        logger.info(f"Stopping '{proc.name}' (pid {pid}) with {sig_name}")
        if not self._send_signal(proc, pid, proc.stop_signal):
            self._mark_stopped(proc)
            return

        remaining = timeout
        killed = False
        while True:
            if not pid_alive(pid):
                self._mark_stopped(proc)
                return
            if timeout < 0 or remaining > 0:
                time.sleep(STOP_POLL_INTERVAL)
                remaining -= STOP_POLL_INTERVAL
                continue
            if killed:
                logger.error(f"Could not stop '{proc.name}' (pid {pid})")
                raise ProcessStopError(proc.name, pid)

            logger.warning(f"'{proc.name}' did not stop within {timeout}s, sending SIGKILL")
            proc.force_killed = True
            killed = True
            if not self._send_signal(proc, pid, signal.SIGKILL):
                self._mark_stopped(proc)
                return
            remaining = KILL_GRACE

    def _send_signal(self, proc: MonitoredProcess, pid: int, sig: int) -> bool:
        """Returns False when the process no longer exists."""
        try:
            psutil.Process(pid).send_signal(sig)
            return True
        except psutil.NoSuchProcess:
            return False
        except psutil.AccessDenied as e:
            logger.error(f"Not allowed to signal '{proc.name}' (pid {pid}): {e}")
            raise ProcessStopError(proc.name, pid)

    def _mark_stopped(self, proc: MonitoredProcess) -> None:
        logger.info(f"Process '{proc.name}' stopped")
        proc.pid = None
        proc.running = False

"""
Process Supervisor Tests

Covers monitor/unmonitor, crash-loop backoff, stop escalation, custom pid
files, reload of persisted records and a real spawn of a short-lived child.
"""
import json
import shutil
import signal
import subprocess
import sys
import time
from unittest.mock import Mock, call, patch

import pytest

from outpost.errors import (
    InvalidSpecError,
    PidFileTimeoutError,
    ProcessStartError,
    ProcessStopError,
    RecordStoreError,
)
from outpost.supervisor import ProcessSupervisor, pid_alive
from outpost.supervisor.process_supervisor import (
    INITIAL_BACKOFF,
    KILL_GRACE,
    MAX_BACKOFF,
    resolve_signal,
)
from outpost.supervisor.records import MonitoredProcess

PS = "outpost.supervisor.process_supervisor"


def register(supervisor, tmp_path, **spec) -> MonitoredProcess:
    """Add a normalized process to the registry without ticking it."""
    spec.setdefault("name", "web")
    spec.setdefault("cwd", str(tmp_path))
    proc = supervisor._normalize(spec)
    supervisor.processes[proc.name] = proc
    return proc


class TestResolveSignal:
    """Stop signal parsing."""

    def test_names(self):
        assert resolve_signal("SIGINT") == signal.SIGINT
        assert resolve_signal("term") == signal.SIGTERM
        assert resolve_signal(None) == signal.SIGTERM

    def test_numbers(self):
        assert resolve_signal(9) == signal.SIGKILL
        assert resolve_signal("9") == signal.SIGKILL

    def test_unknown(self):
        with pytest.raises(InvalidSpecError):
            resolve_signal("SIGBOGUS")
        with pytest.raises(InvalidSpecError):
            resolve_signal(100000)


class TestNormalize:
    """Defaults and validation applied to monitor requests."""

    def test_defaults(self, supervisor, tmp_path):
        proc = supervisor._normalize({"name": "web", "cwd": str(tmp_path)})

        assert proc.cmd == sys.executable
        assert proc.args == []
        assert proc.timeout == 10
        assert proc.stop_signal == signal.SIGTERM
        assert proc.log_file == str(supervisor.store.default_log_file("web"))
        assert proc.pid_file == str(supervisor.store.default_pid_file("web"))
        assert proc.custom_pid_file is False

    def test_cwd_from_module(self, supervisor, modules_dir):
        proc = supervisor._normalize({"name": "web", "module": "web-1.0.0"})
        assert proc.cwd == str(modules_dir / "web-1.0.0")

    def test_requires_cwd_or_module(self, supervisor):
        with pytest.raises(InvalidSpecError):
            supervisor._normalize({"name": "web"})

    def test_camel_case_fields(self, supervisor, tmp_path):
        proc = supervisor._normalize(
            {
                "name": "web",
                "cwd": str(tmp_path),
                "pidFile": str(tmp_path / "web.pid"),
                "logFile": str(tmp_path / "web.log"),
                "stopSignal": "SIGINT",
            }
        )
        assert proc.custom_pid_file is True
        assert proc.pid_file == str(tmp_path / "web.pid")
        assert proc.log_file == str(tmp_path / "web.log")
        assert proc.stop_signal == signal.SIGINT

    def test_rejects_bad_values(self, supervisor, tmp_path):
        base = {"name": "web", "cwd": str(tmp_path)}
        with pytest.raises(InvalidSpecError):
            supervisor._normalize({**base, "name": "../web"})
        with pytest.raises(InvalidSpecError):
            supervisor._normalize({**base, "args": "server.py"})
        with pytest.raises(InvalidSpecError):
            supervisor._normalize({**base, "timeout": "soon"})
        with pytest.raises(InvalidSpecError):
            supervisor._normalize({**base, "checks": [{"minutes": 5}]})


class TestMonitor:
    """monitor() behaviour."""

    def test_missing_name_persists_nothing(self, supervisor, monitor_dir):
        with pytest.raises(InvalidSpecError):
            supervisor.monitor({"cmd": "sleep", "args": ["10"]})

        assert supervisor.processes == {}
        assert not monitor_dir.exists() or list(monitor_dir.iterdir()) == []

    def test_monitor_twice_spawns_once(self, supervisor, tmp_path):
        spec = {"name": "web", "cwd": str(tmp_path)}
        with patch(f"{PS}.pid_alive", side_effect=lambda pid: pid == 4242), patch.object(
            supervisor, "_spawn", return_value=4242
        ) as spawn:
            first = supervisor.monitor(spec)
            second = supervisor.monitor(spec)

        assert spawn.call_count == 1
        assert first is second
        assert list(supervisor.processes) == ["web"]
        assert first.pid == 4242
        assert first.running is True
        assert supervisor.tasks["web"].active

    def test_monitor_persists_record_and_pid(self, supervisor, tmp_path, monitor_dir):
        with patch(f"{PS}.pid_alive", return_value=False), patch.object(
            supervisor, "_spawn", return_value=4242
        ):
            supervisor.monitor({"name": "web", "cwd": str(tmp_path), "args": ["a.py"]})

        record = json.loads((monitor_dir / "processes" / "web" / "process.json").read_text())
        assert record["name"] == "web"
        assert record["args"] == ["a.py"]
        assert (monitor_dir / "processes" / "web" / "pid").read_text() == "4242"

    def test_spawn_failure_keeps_entry(self, supervisor, tmp_path):
        with patch(f"{PS}.subprocess.Popen", side_effect=OSError("no such file")):
            with pytest.raises(ProcessStartError):
                supervisor.monitor({"name": "web", "cwd": str(tmp_path), "cmd": "/nope"})

        assert supervisor.monitored("web")
        proc = supervisor.processes["web"]
        assert proc.pid is None
        assert proc.starting is False
        assert proc.last_start_attempt is not None
        assert supervisor.tasks["web"].active


class TestBackoff:
    """Crash-loop suppression."""

    def setup_method(self):
        self.clock = 0.0
        self.spawned = 0

    def _spawn(self, proc):
        self.spawned += 1
        return 100 + self.spawned

    def _tick_at(self, supervisor, proc, now):
        self.clock = now
        supervisor._tick(proc)

    def test_backoff_sequence(self, supervisor, tmp_path):
        proc = register(supervisor, tmp_path)
        backoffs = []

        with patch(f"{PS}.time") as mock_time, patch(
            f"{PS}.pid_alive", return_value=False
        ), patch.object(supervisor, "_spawn", side_effect=self._spawn):
            mock_time.time.side_effect = lambda: self.clock

            # t=0 first start, then every retry dies before the next tick
            self._tick_at(supervisor, proc, 0)
            now = 2.0
            for _ in range(5):
                self._tick_at(supervisor, proc, now)
                assert proc.suppressed
                backoffs.append(proc.suppressed_until - now)

                spawned = self.spawned
                self._tick_at(supervisor, proc, proc.suppressed_until - 1)
                assert self.spawned == spawned

                now = proc.suppressed_until
                self._tick_at(supervisor, proc, now)
                assert self.spawned == spawned + 1
                now += 1

        assert backoffs == [INITIAL_BACKOFF, 10, 20, MAX_BACKOFF, MAX_BACKOFF]

    def test_no_backoff_outside_restart_window(self, supervisor, tmp_path):
        proc = register(supervisor, tmp_path)

        with patch(f"{PS}.time") as mock_time, patch(
            f"{PS}.pid_alive", return_value=False
        ), patch.object(supervisor, "_spawn", side_effect=self._spawn):
            mock_time.time.side_effect = lambda: self.clock
            self._tick_at(supervisor, proc, 0)
            self._tick_at(supervisor, proc, 60)

        assert self.spawned == 2
        assert proc.suppressed is False

    def test_stable_uptime_clears_backoff(self, supervisor, tmp_path):
        proc = register(supervisor, tmp_path)
        proc.pid = 4242
        proc.started_at = 1.0
        proc.suppress_time = 20
        proc.force_killed = True

        with patch(f"{PS}.time") as mock_time, patch(f"{PS}.pid_alive", return_value=True):
            mock_time.time.side_effect = lambda: self.clock
            self._tick_at(supervisor, proc, 10)
            assert proc.suppress_time == 20
            self._tick_at(supervisor, proc, 32)

        assert proc.suppress_time is None
        assert proc.force_killed is False

    def test_tick_skips_while_starting(self, supervisor, tmp_path):
        proc = register(supervisor, tmp_path)
        proc.starting = True

        with patch.object(supervisor, "_spawn") as spawn:
            supervisor._tick(proc)

        spawn.assert_not_called()

    def test_failed_health_check_stops_process(self, supervisor, tmp_path):
        proc = register(
            supervisor, tmp_path, checks=[{"type": "max-uptime", "parameters": {"minutes": 1}}]
        )
        proc.pid = 4242
        proc.started_at = time.time() - 120

        with patch(f"{PS}.pid_alive", return_value=True), patch.object(
            supervisor, "_stop_process"
        ) as stop:
            supervisor._tick(proc)

        stop.assert_called_once_with(proc, proc.timeout)


class TestUnmonitor:
    """unmonitor() and the stop escalation."""

    def test_unknown_name_is_noop(self, supervisor):
        supervisor.unmonitor({"name": "ghost"})
        supervisor.unmonitor("ghost")

    def test_requires_name(self, supervisor):
        with pytest.raises(InvalidSpecError):
            supervisor.unmonitor({"timeout": 5})

    def test_graceful_stop(self, supervisor, tmp_path, monitor_dir):
        proc = register(supervisor, tmp_path)
        proc.pid = 555
        supervisor.store.save(proc)

        with patch(f"{PS}.time"), patch(f"{PS}.pid_alive", side_effect=[True, False]), patch.object(
            supervisor, "_send_signal", return_value=True
        ) as send:
            supervisor.unmonitor({"name": "web"})

        send.assert_called_once_with(proc, 555, signal.SIGTERM)
        assert not supervisor.monitored("web")
        assert not (monitor_dir / "processes" / "web").exists()
        assert proc.force_killed is False

    def test_escalates_once_then_fails(self, supervisor, tmp_path):
        proc = register(supervisor, tmp_path, timeout=3)
        proc.pid = 555

        with patch(f"{PS}.time") as mock_time, patch(
            f"{PS}.pid_alive", return_value=True
        ), patch.object(supervisor, "_send_signal", return_value=True) as send:
            with pytest.raises(ProcessStopError):
                supervisor.unmonitor({"name": "web"})

        assert send.call_args_list == [
            call(proc, 555, signal.SIGTERM),
            call(proc, 555, signal.SIGKILL),
        ]
        assert mock_time.sleep.call_count == 3 + KILL_GRACE
        assert proc.force_killed is True
        assert supervisor.monitored("web")
        assert supervisor.tasks["web"].active

    def test_kill_succeeds(self, supervisor, tmp_path):
        proc = register(supervisor, tmp_path, timeout=3)
        proc.pid = 555

        with patch(f"{PS}.time"), patch(
            f"{PS}.pid_alive", side_effect=[True] * 4 + [False]
        ), patch.object(supervisor, "_send_signal", return_value=True) as send:
            supervisor.unmonitor({"name": "web"})

        assert send.call_count == 2
        assert proc.force_killed is True
        assert not supervisor.monitored("web")

    def test_request_timeout_overrides_record(self, supervisor, tmp_path):
        proc = register(supervisor, tmp_path, timeout=30)
        proc.pid = 555

        with patch(f"{PS}.time") as mock_time, patch(
            f"{PS}.pid_alive", return_value=True
        ), patch.object(supervisor, "_send_signal", return_value=True):
            with pytest.raises(ProcessStopError):
                supervisor.unmonitor({"name": "web", "timeout": 1})

        assert mock_time.sleep.call_count == 1 + KILL_GRACE

    def test_negative_timeout_never_kills(self, supervisor, tmp_path):
        proc = register(supervisor, tmp_path, timeout=-1)
        proc.pid = 555

        with patch(f"{PS}.time") as mock_time, patch(
            f"{PS}.pid_alive", side_effect=[True] * 20 + [False]
        ), patch.object(supervisor, "_send_signal", return_value=True) as send:
            supervisor.unmonitor("web")

        send.assert_called_once_with(proc, 555, signal.SIGTERM)
        assert mock_time.sleep.call_count == 20

    def test_already_gone(self, supervisor, tmp_path):
        proc = register(supervisor, tmp_path)
        proc.pid = 555

        with patch.object(supervisor, "_send_signal", return_value=False):
            supervisor.unmonitor("web")

        assert proc.pid is None
        assert not supervisor.monitored("web")

    def test_invalid_timeout_keeps_supervision(self, supervisor, tmp_path):
        proc = register(supervisor, tmp_path)
        proc.pid = 555
        supervisor._ensure_task(proc)

        with patch.object(supervisor, "_send_signal") as send:
            with pytest.raises(InvalidSpecError):
                supervisor.unmonitor({"name": "web", "timeout": "soon"})

        send.assert_not_called()
        assert supervisor.monitored("web")
        assert supervisor.tasks["web"].active

    def test_numeric_string_timeout(self, supervisor, tmp_path):
        proc = register(supervisor, tmp_path, timeout=30)
        proc.pid = 555

        with patch(f"{PS}.time") as mock_time, patch(
            f"{PS}.pid_alive", return_value=True
        ), patch.object(supervisor, "_send_signal", return_value=True):
            with pytest.raises(ProcessStopError):
                supervisor.unmonitor({"name": "web", "timeout": "2"})

        assert mock_time.sleep.call_count == 2 + KILL_GRACE

    def test_delete_failure_keeps_supervision(self, supervisor, tmp_path):
        proc = register(supervisor, tmp_path)
        proc.pid = 555
        supervisor._ensure_task(proc)

        with patch.object(supervisor, "_send_signal", return_value=False), patch.object(
            supervisor.store, "delete", side_effect=RecordStoreError("disk full")
        ):
            with pytest.raises(RecordStoreError):
                supervisor.unmonitor("web")

        assert supervisor.monitored("web")
        assert supervisor.tasks["web"].active

    def test_process_named_logs_keeps_other_logs(self, supervisor, tmp_path, monitor_dir):
        with patch(f"{PS}.pid_alive", return_value=False), patch.object(
            supervisor, "_spawn", side_effect=[101, 102]
        ):
            supervisor.monitor({"name": "web", "cwd": str(tmp_path)})
            supervisor.monitor({"name": "logs", "cwd": str(tmp_path)})
        web_log = monitor_dir / "logs" / "web.log"
        web_log.parent.mkdir(parents=True, exist_ok=True)
        web_log.write_text("output\n")

        with patch.object(supervisor, "_send_signal", return_value=False):
            supervisor.unmonitor("logs")

        assert not supervisor.monitored("logs")
        assert supervisor.monitored("web")
        assert web_log.read_text() == "output\n"
        assert (monitor_dir / "processes" / "web" / "process.json").exists()


class TestCustomPidFile:
    """Processes that write their own pid file."""

    def test_pid_file_timeout(self, supervisor, tmp_path):
        pid_file = tmp_path / "run" / "web.pid"
        pid_file.parent.mkdir()
        pid_file.write_text("999")
        proc = register(supervisor, tmp_path, pidFile=str(pid_file), timeout=2)

        with patch(f"{PS}.subprocess.Popen", return_value=Mock(pid=4321)) as popen, patch(
            f"{PS}.time"
        ) as mock_time, patch(f"{PS}.os.killpg") as killpg:
            with pytest.raises(PidFileTimeoutError) as exc_info:
                supervisor._spawn(proc)

        assert exc_info.value.polls == 2
        assert mock_time.sleep.call_count == 2
        # the unsupervised child and its session are killed and reaped
        killpg.assert_called_once_with(4321, signal.SIGKILL)
        popen.return_value.wait.assert_called_once_with(timeout=KILL_GRACE)
        # truncated before the spawn, so the stale pid is never picked up
        assert pid_file.read_text() == ""

    def test_pid_file_timeout_with_child_already_gone(self, supervisor, tmp_path):
        proc = register(supervisor, tmp_path, pidFile=str(tmp_path / "web.pid"), timeout=1)

        with patch(f"{PS}.subprocess.Popen", return_value=Mock(pid=4321)), patch(
            f"{PS}.time"
        ), patch(f"{PS}.os.killpg", side_effect=ProcessLookupError):
            with pytest.raises(PidFileTimeoutError):
                supervisor._spawn(proc)

    def test_pid_read_from_file(self, supervisor, tmp_path):
        pid_file = tmp_path / "web.pid"
        proc = register(supervisor, tmp_path, pidFile=str(pid_file))

        def fake_popen(*args, **kwargs):
            pid_file.write_text("4321\n")
            return Mock(pid=1)

        with patch(f"{PS}.subprocess.Popen", side_effect=fake_popen), patch(f"{PS}.time"):
            assert supervisor._spawn(proc) == 4321

    def test_store_leaves_custom_pid_file_alone(self, supervisor, tmp_path):
        pid_file = tmp_path / "web.pid"
        pid_file.write_text("4321")
        proc = register(supervisor, tmp_path, pidFile=str(pid_file))
        proc.pid = None

        supervisor.store.save(proc)

        assert pid_file.read_text() == "4321"


class TestLifecycle:
    """start(), stop() and summary()."""

    def _persist(self, supervisor, tmp_path, pid):
        proc = supervisor._normalize({"name": "web", "cwd": str(tmp_path)})
        proc.pid = pid
        supervisor.store.save(proc)
        return proc

    def test_start_restarts_stale_record(self, supervisor, tmp_path):
        self._persist(supervisor, tmp_path, 999999)

        with patch(f"{PS}.pid_alive", return_value=False), patch.object(
            supervisor, "_spawn", return_value=77
        ) as spawn:
            supervisor.start()

        spawn.assert_called_once()
        assert supervisor.processes["web"].pid == 77
        assert supervisor.tasks["web"].active

    def test_start_resumes_running_record(self, supervisor, tmp_path):
        proc = self._persist(supervisor, tmp_path, 4242)

        with patch(f"{PS}.pid_alive", side_effect=lambda pid: pid == 4242), patch.object(
            supervisor, "_spawn"
        ) as spawn:
            supervisor.start()

        spawn.assert_not_called()
        assert supervisor.processes["web"].running is True
        assert supervisor.rotator.registered == [supervisor.store.default_log_file("web")]
        assert proc.log_file == str(supervisor.rotator.registered[0])

    def test_start_with_purge(self, supervisor, tmp_path, monitor_dir):
        self._persist(supervisor, tmp_path, 4242)
        alive = {4242}

        def send(proc, pid, sig):
            alive.discard(pid)
            return True

        with patch(f"{PS}.time"), patch(
            f"{PS}.pid_alive", side_effect=lambda pid: pid in alive
        ), patch.object(supervisor, "_send_signal", side_effect=send), patch.object(
            supervisor, "_spawn"
        ) as spawn:
            supervisor.start(purge=True)

        spawn.assert_not_called()
        assert supervisor.processes == {}
        assert supervisor.tasks == {}
        assert not (monitor_dir / "processes" / "web").exists()

    def test_stop_cancels_tasks_and_keeps_records(self, supervisor, tmp_path, monitor_dir):
        with patch(f"{PS}.pid_alive", return_value=False), patch.object(
            supervisor, "_spawn", return_value=4242
        ):
            supervisor.monitor({"name": "web", "cwd": str(tmp_path)})
        task = supervisor.tasks["web"]

        supervisor.stop()

        assert not task.active
        assert supervisor.processes == {}
        assert (monitor_dir / "processes" / "web" / "process.json").exists()

    def test_summary(self, supervisor, tmp_path):
        proc = register(supervisor, tmp_path)
        proc.pid = 4242

        with patch(f"{PS}.pid_alive", return_value=True):
            summary = supervisor.summary()

        assert summary["web"]["pid"] == 4242
        assert summary["web"]["running"] is True


@pytest.mark.skipif(shutil.which("sleep") is None, reason="sleep binary not available")
class TestRealProcess:
    """Spawns a short-lived child for real."""

    def test_spawn_and_unmonitor(self, monitor_dir, tmp_path):
        supervisor = ProcessSupervisor(monitor_dir, check_interval=3600)
        try:
            proc = supervisor.monitor(
                {"name": "sleeper", "cwd": str(tmp_path), "cmd": "sleep", "args": ["30"]}
            )
            assert pid_alive(proc.pid)

            supervisor.unmonitor({"name": "sleeper", "timeout": 5})

            assert not supervisor.monitored("sleeper")
            log_text = (monitor_dir / "logs" / "sleeper.log").read_text()
            assert "starting sleeper: sleep 30" in log_text
        finally:
            supervisor.stop()

    def test_pid_file_timeout_leaves_no_child(self, monitor_dir, tmp_path):
        supervisor = ProcessSupervisor(monitor_dir, check_interval=3600)
        real_popen = subprocess.Popen
        children = []

        def spawn(*args, **kwargs):
            child = real_popen(*args, **kwargs)
            children.append(child)
            return child

        try:
            with patch(f"{PS}.subprocess.Popen", side_effect=spawn):
                with pytest.raises(PidFileTimeoutError):
                    supervisor.monitor(
                        {
                            "name": "silent",
                            "cwd": str(tmp_path),
                            "cmd": "sleep",
                            "args": ["30"],
                            "pidFile": str(tmp_path / "silent.pid"),
                            "timeout": 1,
                        }
                    )

            [child] = children
            assert child.poll() is not None
        finally:
            supervisor.stop()

"""
Process Supervisor Module

Keeps module processes alive: crash-loop backoff, health checks, persisted
process records and log rotation.

Usage:
    from outpost.supervisor import ProcessSupervisor

    supervisor = ProcessSupervisor(monitor_dir, modules_dir)
    supervisor.start()
    supervisor.monitor({"name": "my-server", "module": "my-server-1.0.0"})
"""

from .health_checks import register_check, run_checks
from .log_rotation import LogRotationPolicy, LogRotator
from .process_supervisor import ProcessSupervisor, pid_alive
from .records import HealthCheck, MonitoredProcess, ProcessRecordStore

__all__ = [
    "HealthCheck",
    "LogRotationPolicy",
    "LogRotator",
    "MonitoredProcess",
    "ProcessRecordStore",
    "ProcessSupervisor",
    "pid_alive",
    "register_check",
    "run_checks",
]

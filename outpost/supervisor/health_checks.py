"""
Health Check System

Health checks are evaluated on every supervision tick while a process is
running. A failing check asks the supervisor to stop the process; the next
tick restarts it.

Handlers are looked up by check type. Register new types with::

    @register_check("my-check")
    def my_check(proc, check, now):
        return True  # healthy
"""

import logging
import os
import time
from typing import Callable, Dict, Optional

import requests

from outpost.fsutil import stat_mtime
from outpost.supervisor.records import HealthCheck, MonitoredProcess

logger = logging.getLogger(__name__)

CheckHandler = Callable[[MonitoredProcess, HealthCheck, float], bool]

_HANDLERS: Dict[str, CheckHandler] = {}


def register_check(check_type: str) -> Callable[[CheckHandler], CheckHandler]:
    """Decorator registering a handler for a health check type."""

    def decorator(fn: CheckHandler) -> CheckHandler:
        _HANDLERS[check_type] = fn
        return fn

    return decorator


def unregister_check(check_type: str) -> None:
    _HANDLERS.pop(check_type, None)


def registered_types():
    return sorted(_HANDLERS)


def run_checks(proc: MonitoredProcess, now: Optional[float] = None) -> Optional[HealthCheck]:
    """Evaluate every check attached to proc.

    Returns:
        The first failing check, or None when all pass. Unknown types are
        skipped with a warning.
    """
    now = now if now is not None else time.time()
    for check in proc.checks:
        handler = _HANDLERS.get(check.type)
        if handler is None:
            logger.warning(f"Skipping unknown health check type '{check.type}' for '{proc.name}'")
            continue
        try:
            healthy = handler(proc, check, now)
        except Exception as e:
            logger.error(f"Health check '{check.type}' errored for '{proc.name}': {e}")
            healthy = False
        if not healthy:
            return check
    return None


@register_check("max-uptime")
def check_max_uptime(proc: MonitoredProcess, check: HealthCheck, now: float) -> bool:
    """Fail once the process has been up longer than ``minutes``."""
    limit = check.parameters.get("minutes")
    if not limit or limit <= 0 or not proc.started_at:
        return True
    uptime_minutes = (now - proc.started_at) / 60
    if uptime_minutes > limit:
        logger.info(
            f"'{proc.name}' has been up {uptime_minutes:.1f} minutes, "
            f"exceeding max uptime of {limit}"
        )
        return False
    return True


@register_check("file-staleness")
def check_file_staleness(proc: MonitoredProcess, check: HealthCheck, now: float) -> bool:
    """Fail when ``file`` has not been modified for ``seconds``.

    The file is stat'ed at most once per third of the threshold. A file that
    does not exist yet passes.
    """
    path = check.parameters.get("file")
    threshold = check.parameters.get("seconds")
    if not path or not threshold or threshold <= 0:
        return True

    last_probed = check.state.get("last_probed")
    if last_probed is not None and now - last_probed < threshold / 3:
        return check.state.get("healthy", True)

    if not os.path.isabs(path):
        path = os.path.join(proc.cwd, path)

    mtime = stat_mtime(path)
    healthy = mtime is None or now - mtime <= threshold
    if not healthy:
        logger.info(f"'{proc.name}': {path} not modified for {now - mtime:.0f}s")

    check.state["last_probed"] = now
    check.state["healthy"] = healthy
    return healthy


@register_check("http")
def check_http(proc: MonitoredProcess, check: HealthCheck, now: float) -> bool:
    """Fail when ``url`` does not answer with the expected status."""
    url = check.parameters.get("url")
    if not url:
        return True
    timeout = check.parameters.get("timeout", 5)
    expected_status = check.parameters.get("status", 200)

    try:
        response = requests.get(url, timeout=timeout)
    except requests.RequestException as e:
        logger.info(f"HTTP health check for '{proc.name}' failed: {e}")
        return False

    if response.status_code != expected_status:
        logger.info(
            f"HTTP health check for '{proc.name}' failed: "
            f"status {response.status_code} != {expected_status}"
        )
        return False
    return True

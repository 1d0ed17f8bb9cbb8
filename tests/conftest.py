"""
Pytest fixtures for outpost tests
"""
import os
import sys

import pytest

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from outpost.config import ENV_VARS  # noqa: E402
from outpost.reconciler import ModuleStateJournal  # noqa: E402
from outpost.supervisor import ProcessSupervisor  # noqa: E402


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    """Run every test without OUTPOST_* variables from the outer environment."""
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def monitor_dir(tmp_path):
    return tmp_path / "monitor"


@pytest.fixture
def modules_dir(tmp_path):
    path = tmp_path / "modules"
    path.mkdir()
    return path


@pytest.fixture
def supervisor(monitor_dir, modules_dir):
    """Supervisor whose repeating tasks never fire during a test."""
    sup = ProcessSupervisor(monitor_dir, modules_dir, check_interval=3600)
    yield sup
    sup.stop()


@pytest.fixture
def journal(modules_dir):
    return ModuleStateJournal(modules_dir)

"""
Outpost Agent

Wires the agent settings, the process supervisor and the reconciliation
pipeline together:

    agent = Agent.from_environment()
    agent.start()
    report = agent.apply_state(desired)
    ...
    agent.stop()

Command handlers (install, configure, start, ...) belong to the module
executor and are passed in; the agent only journals their outcome.
"""

import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from outpost.config import AgentSettings, load_settings, validate_config
from outpost.errors import OutpostError
from outpost.fsutil import read_text, write_atomic
from outpost.logging_config import setup_logging
from outpost.reconciler import (
    CommandDispatcher,
    DispatchReport,
    ModuleStateJournal,
    ReconciliationEngine,
)
from outpost.reconciler.dispatcher import CommandHandler
from outpost.reconciler.engine import CommandType
from outpost.supervisor import LogRotator, ProcessSupervisor

logger = logging.getLogger(__name__)


class Agent:
    """One outpost agent instance."""

    def __init__(
        self,
        settings: AgentSettings,
        handlers: Optional[Dict[CommandType, CommandHandler]] = None,
    ):
        self.settings = settings
        self.supervisor = ProcessSupervisor(
            settings.monitor_dir,
            settings.modules_dir,
            check_interval=settings.check_interval,
            default_timeout=settings.stop_timeout,
            rotator=LogRotator(settings.log_rotation),
        )
        self.journal = ModuleStateJournal(settings.modules_dir)
        self.engine = ReconciliationEngine(self.journal)
        self.dispatcher = CommandDispatcher(self.journal, handlers)
        self.started = False

    @classmethod
    def from_environment(cls, config_path: Optional[Path] = None, **kwargs) -> "Agent":
        """Validate the environment, load settings and set up logging."""
        validate_config()
        settings = load_settings(config_path)
        setup_logging(settings.log_level, settings.log_file)
        return cls(settings, **kwargs)

    def start(self) -> Optional[DispatchReport]:
        """Start supervision.

        When the settings fingerprint differs from the one recorded by the
        previous run, every monitored process is purged and all installed
        modules are reconfigured.

        Returns:
            The reconfigure report when a purge happened, else None. The new
            fingerprint is only recorded when that reconfigure succeeded.

        Raises:
            OSError: if the previous fingerprint cannot be read
            RecordStoreError: if the monitor directory cannot be read
        """
        root = self.settings.root
        root.mkdir(parents=True, exist_ok=True)

        fingerprint = self.settings.fingerprint()
        previous = read_text(self.settings.fingerprint_file)
        purge = previous.found and previous.text.strip() not in ("", fingerprint)
        if purge:
            logger.info("Agent settings changed since the last run, purging monitored processes")

        self.supervisor.start(purge=purge)
        self.started = True

        report = None
        if purge:
            report = self.dispatcher.run(self.engine.reconfigure())
            if not report.success:
                # the old fingerprint stays, so the next start purges and retries
                logger.warning(f"Reconfigure finished with {len(report.failed)} failed commands")

        if report is None or report.success:
            write_atomic(self.settings.fingerprint_file, fingerprint)
        logger.info(f"Agent started (root {root})")
        return report

    def stop(self) -> None:
        """Stop supervising. Supervised processes keep running."""
        if not self.started:
            return
        self.supervisor.stop()
        self.started = False
        logger.info("Agent stopped")

    def apply_state(self, desired: Union[str, List[Any]]) -> DispatchReport:
        """Reconcile installed modules with the declared state.

        Raises:
            InvalidStateError: if desired cannot be parsed
            JournalError: if installed state cannot be read
        """
        commands = self.engine.calculate(desired)
        report = self.dispatcher.run(commands)
        logger.info(
            f"Applied state: {len(report.executed)} executed, "
            f"{len(report.failed)} failed, {len(report.skipped)} skipped"
        )
        return report

    def handle_monitor(self, info: Dict[str, Any]) -> Optional[str]:
        """Monitor request from a module script. Returns an error message or None."""
        try:
            self.supervisor.monitor(info)
        except OutpostError as e:
            logger.error(f"monitor request failed: {e}")
            return str(e)
        return None

    def handle_unmonitor(self, info: Dict[str, Any]) -> Optional[str]:
        """Unmonitor request from a module script. Returns an error message or None."""
        try:
            self.supervisor.unmonitor(info)
        except OutpostError as e:
            logger.error(f"unmonitor request failed: {e}")
            return str(e)
        return None

"""
Serial execution of reconciliation plans.

The dispatcher hands each command to the handler registered for its type,
strictly one at a time, and records successful outcomes in the module
journal so the next reconciliation pass sees them. When a command fails,
the rest of that module's commands are skipped; other modules go on.
"""

import logging
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Tuple

from outpost.errors import UnknownCommandError
from outpost.reconciler.engine import Command, CommandType
from outpost.reconciler.journal import ModuleStateJournal

logger = logging.getLogger(__name__)

CommandHandler = Callable[[Command], None]


def _type_name(command: Command) -> str:
    return getattr(command.type, "value", str(command.type))


@dataclass
class DispatchReport:
    """Outcome of running a plan."""

    executed: List[Command] = field(default_factory=list)
    failed: List[Tuple[Command, Exception]] = field(default_factory=list)
    skipped: List[Command] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return not self.failed


class CommandDispatcher:
    """Runs commands through per-type handlers."""

    def __init__(
        self,
        journal: ModuleStateJournal,
        handlers: Optional[Dict[CommandType, CommandHandler]] = None,
    ):
        self.journal = journal
        self.handlers: Dict[CommandType, CommandHandler] = dict(handlers or {})

    def register(self, command_type: CommandType, handler: CommandHandler) -> None:
        self.handlers[command_type] = handler

    def execute(self, command: Command) -> None:
        """Run one command and journal its outcome.

        Raises:
            UnknownCommandError: if no handler exists for the command type
        """
        handler = self.handlers.get(command.type)
        if handler is None:
            raise UnknownCommandError(_type_name(command))

        logger.info(f"Running {command.type.value} for {command.module}")
        handler(command)
        self._journal(command)

    def _journal(self, command: Command) -> None:
        if command.type == CommandType.INSTALL:
            self.journal.record_install(command.module)
        elif command.type == CommandType.UNINSTALL:
            self.journal.forget(command.module)
        elif command.type == CommandType.CONFIGURE:
            self.journal.record_configure(command.module, command.config)
        elif command.type == CommandType.START:
            self.journal.record_started(command.module, True)
        elif command.type == CommandType.STOP:
            self.journal.record_started(command.module, False)

    def run(self, commands: List[Command]) -> DispatchReport:
        """Execute a plan serially."""
        report = DispatchReport()
        failed_modules = set()

        for command in commands:
            if command.module in failed_modules:
                logger.debug(
                    f"Skipping {_type_name(command)} for {command.module} after earlier failure"
                )
                report.skipped.append(command)
                continue
            try:
                self.execute(command)
                report.executed.append(command)
            except Exception as e:
                logger.error(f"{_type_name(command)} failed for {command.module}: {e}")
                report.failed.append((command, e))
                failed_modules.add(command.module)

        return report

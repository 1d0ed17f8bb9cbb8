"""
State Reconciliation Engine

Compares the declared state of a set of modules with what the journal says
is installed and produces the ordered list of commands that moves one to the
other. The plan is always ordered install, uninstall, stop, configure, start:
a module is stopped before it is reconfigured and configured before it is
(re)started.

Usage:
    engine = ReconciliationEngine(journal)
    commands = engine.calculate([
        {"fullname": "my-server@1.0.0", "configure": {"data": {"port": 8080}}, "start": True},
    ])
"""

import json
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from outpost.errors import InvalidStateError
from outpost.fsutil import content_hash
from outpost.reconciler.journal import ModuleStateJournal, split_fullname

logger = logging.getLogger(__name__)


class CommandType(Enum):
    """Command types, in plan order."""

    INSTALL = "install"
    UNINSTALL = "uninstall"
    STOP = "stop"
    CONFIGURE = "configure"
    START = "start"


PLAN_ORDER = list(CommandType)

_MISSING = object()


@dataclass(frozen=True)
class Command:
    """One step of a reconciliation plan."""

    type: CommandType
    module: str
    config: Any = None

    def to_dict(self) -> Dict[str, Any]:
        data = {"type": self.type.value, "module": self.module}
        if self.type == CommandType.CONFIGURE:
            data["config"] = self.config
        return data


@dataclass
class ModuleDescriptor:
    """A module as declared in the desired state."""

    fullname: str
    configure: Any = _MISSING
    start: Optional[bool] = None

    @property
    def has_configure(self) -> bool:
        return self.configure is not _MISSING

    @classmethod
    def parse(cls, entry: Any) -> "ModuleDescriptor":
        if not isinstance(entry, dict):
            raise InvalidStateError(f"invalid module entry {entry!r}: expected an object")

        fullname = entry.get("fullname")
        if not fullname:
            name, version = entry.get("name"), entry.get("version")
            if not name or not version:
                raise InvalidStateError(
                    f"invalid module entry {entry!r}: needs fullname or name and version"
                )
            fullname = f"{name}@{version}"
        try:
            split_fullname(fullname)
        except ValueError as e:
            raise InvalidStateError(str(e))

        descriptor = cls(fullname=fullname)
        if entry.get("configure") is not None:
            descriptor.configure = _configure_payload(entry["configure"])
        if entry.get("start") is not None:
            descriptor.start = _start_flag(fullname, entry["start"])
        return descriptor


def _configure_payload(configure: Any) -> Any:
    """The payload of a configure entry: ``data`` when present, else the entry itself."""
    if isinstance(configure, dict) and "data" in configure:
        return configure["data"]
    return configure


def _start_flag(fullname: str, start: Any) -> bool:
    if isinstance(start, bool):
        return start
    if isinstance(start, dict):
        data = start.get("data", start)
        if isinstance(data, dict) and isinstance(data.get("started"), bool):
            return data["started"]
    raise InvalidStateError(f"invalid start value for {fullname}: {start!r}")


def parse_desired(desired: Union[str, List[Any]]) -> List[ModuleDescriptor]:
    """Validate declared state. Accepts a list or its JSON text."""
    if isinstance(desired, (str, bytes)):
        try:
            desired = json.loads(desired)
        except ValueError as e:
            raise InvalidStateError(f"error parsing state: {e}")
    if not isinstance(desired, list):
        raise InvalidStateError("invalid state object. expected array.")

    descriptors = []
    seen = set()
    for entry in desired:
        descriptor = ModuleDescriptor.parse(entry)
        if descriptor.fullname in seen:
            raise InvalidStateError(f"module {descriptor.fullname} is declared more than once")
        seen.add(descriptor.fullname)
        descriptors.append(descriptor)
    return descriptors


class ReconciliationEngine:
    """Turns declared module state into an ordered command plan."""

    def __init__(self, journal: ModuleStateJournal):
        self.journal = journal

    def calculate(self, desired: Union[str, List[Any]]) -> List[Command]:
        """Compute the plan that brings installed modules to the declared state.

        Raises:
            InvalidStateError: if the declared state cannot be parsed
            JournalError: if the installed state cannot be read (no plan is produced)
        """
        descriptors = parse_desired(desired)
        installed = self.journal.installed()
        plan: Dict[CommandType, List[Command]] = {t: [] for t in PLAN_ORDER}

        for d in descriptors:
            current = installed.pop(d.fullname, None)
            if current is None:
                plan[CommandType.INSTALL].append(Command(CommandType.INSTALL, d.fullname))

            started = current.started if current else False

            if d.has_configure:
                applied_hash = current.config_hash if current else None
                if content_hash(d.configure) != applied_hash:
                    if started:
                        plan[CommandType.STOP].append(Command(CommandType.STOP, d.fullname))
                    plan[CommandType.CONFIGURE].append(
                        Command(CommandType.CONFIGURE, d.fullname, d.configure)
                    )
                    started = False

            if d.start is True and not started:
                plan[CommandType.START].append(Command(CommandType.START, d.fullname))
            elif d.start is False and started:
                plan[CommandType.STOP].append(Command(CommandType.STOP, d.fullname))

        for fullname in installed:
            plan[CommandType.UNINSTALL].append(Command(CommandType.UNINSTALL, fullname))

        commands = [command for t in PLAN_ORDER for command in plan[t]]
        if commands:
            logger.info(f"Reconciliation produced {len(commands)} commands")
        else:
            logger.debug("State is already satisfied")
        return commands

    def reconfigure(self) -> List[Command]:
        """Force every installed module through stop, configure and (if it was running) start."""
        installed = self.journal.installed()
        stops, configures, starts = [], [], []
        for fullname, module in installed.items():
            stops.append(Command(CommandType.STOP, fullname))
            configures.append(Command(CommandType.CONFIGURE, fullname, module.config_data))
            if module.started:
                starts.append(Command(CommandType.START, fullname))
        logger.info(f"Reconfiguring {len(installed)} installed modules")
        return stops + configures + starts

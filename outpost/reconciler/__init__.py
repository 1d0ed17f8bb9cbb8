"""
State Reconciliation Module

Diffs declared module state against the module state journal and runs the
resulting command plan.
"""

from .dispatcher import CommandDispatcher, DispatchReport
from .engine import Command, CommandType, ModuleDescriptor, ReconciliationEngine, parse_desired
from .journal import InstalledModuleState, ModuleStateJournal

__all__ = [
    "Command",
    "CommandDispatcher",
    "CommandType",
    "DispatchReport",
    "InstalledModuleState",
    "ModuleDescriptor",
    "ModuleStateJournal",
    "ReconciliationEngine",
    "parse_desired",
]

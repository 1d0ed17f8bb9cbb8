"""
Error types shared by the outpost agent.

Every public operation either returns normally or raises one of these.
"""


class OutpostError(Exception):
    """Base class for all agent errors."""

    pass


class InvalidSpecError(OutpostError):
    """Raised when a monitor request is malformed or incomplete."""

    pass


class ProcessStartError(OutpostError):
    """Raised when a monitored process could not be spawned."""

    def __init__(self, name: str, reason: str):
        self.name = name
        self.reason = reason
        super().__init__(f"error starting process '{name}': {reason}")


class PidFileTimeoutError(ProcessStartError):
    """Raised when a custom pid file never yields a pid."""

    def __init__(self, name: str, pid_file, polls: int):
        self.pid_file = pid_file
        self.polls = polls
        super().__init__(name, f"timed out waiting for pid file {pid_file} after {polls} polls")


class ProcessStopError(OutpostError):
    """Raised when a process is still alive after the stop budget and a hard kill."""

    def __init__(self, name: str, pid: int):
        self.name = name
        self.pid = pid
        super().__init__(f"could not stop process '{name}' (pid {pid})")


class RecordStoreError(OutpostError):
    """Raised when a process record cannot be read or written."""

    pass


class InvalidStateError(OutpostError):
    """Raised when declared module state cannot be parsed."""

    pass


class JournalError(OutpostError):
    """Raised when the module state journal cannot be read or written."""

    pass


class UnknownCommandError(OutpostError):
    """Raised when no handler is registered for a command type."""

    def __init__(self, command_type: str):
        self.command_type = command_type
        super().__init__(f"{command_type} is not a valid command type")

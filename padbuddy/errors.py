"""
Error taxonomy for command orchestration and liveness.

Only DispatchError (and NodeBusyError) reach an operator synchronously.
Everything else is raised and handled inside the subsystem: terminal
command outcomes are recorded and notified, rejected readings are counted,
and malformed schedules are disabled and flagged.
"""

from typing import Optional


class PadBuddyError(Exception):
    """Base class for orchestrator errors"""


class DispatchError(PadBuddyError):
    """A command could not be written to the control channel.

    The command never existed; nothing was audited for it.
    """

    def __init__(self, message: str, device_id: Optional[str] = None):
        super().__init__(message)
        self.device_id = device_id


class NodeBusyError(DispatchError):
    """The target node still has an outstanding (non-terminal) command"""

    def __init__(self, device_id: str, node_id: str, slot: str, command_id: Optional[str]):
        super().__init__(
            f"{device_id}/{node_id}/{slot} is busy with command {command_id}",
            device_id=device_id,
        )
        self.node_id = node_id
        self.slot = slot
        self.command_id = command_id


class DeviceOfflineWarning(UserWarning):
    """Advisory: a command was dispatched to a device last seen offline"""


class CommandFailed(PadBuddyError):
    """The device reported an explicit error for a command"""

    def __init__(self, command_id: str, reason: Optional[str] = None):
        super().__init__(f"Command {command_id} failed: {reason or 'unknown error'}")
        self.command_id = command_id
        self.reason = reason


class CommandTimedOut(PadBuddyError):
    """The device never reported a terminal status for a command"""

    def __init__(self, command_id: str, timeout_seconds: Optional[float] = None):
        super().__init__(f"Command {command_id} timed out after {timeout_seconds}s")
        self.command_id = command_id
        self.timeout_seconds = timeout_seconds


class CommandSuperseded(PadBuddyError):
    """The command record was deleted or replaced before it reached a terminal state"""

    def __init__(self, command_id: str):
        super().__init__(f"Command {command_id} was removed from its slot before completing")
        self.command_id = command_id


class InvalidTransition(PadBuddyError):
    """A lifecycle transition that the command state machine forbids"""


class ReadingRejected(PadBuddyError):
    """Base for sensor readings that are dropped before persistence"""

    reason = "rejected"


class EmptyReadingRejected(ReadingRejected):
    reason = "all_values_null"


class StaleReadingRejected(ReadingRejected):
    reason = "stale"

    def __init__(self, age_ms: int):
        super().__init__(f"Reading is {age_ms / 1000:.0f}s old")
        self.age_ms = age_ms


class DuplicateReadingRejected(ReadingRejected):
    reason = "near_duplicate"


class ScheduleComputationError(PadBuddyError):
    """A schedule's recurrence cannot produce a next execution instant"""

    def __init__(self, message: str, schedule_id: Optional[str] = None):
        super().__init__(message)
        self.schedule_id = schedule_id

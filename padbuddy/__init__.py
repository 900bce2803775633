"""PadBuddy device command orchestration and liveness monitoring"""

from .core import Orchestrator
from .errors import (
    CommandFailed,
    CommandSuperseded,
    CommandTimedOut,
    DeviceOfflineWarning,
    DispatchError,
    NodeBusyError,
    ScheduleComputationError,
)
from .models import CommandNode, LivenessState, ScheduleDefinition, SensorReading

__all__ = [
    'Orchestrator',
    'CommandFailed', 'CommandSuperseded', 'CommandTimedOut', 'DeviceOfflineWarning', 'DispatchError',
    'NodeBusyError', 'ScheduleComputationError',
    'CommandNode', 'LivenessState', 'ScheduleDefinition', 'SensorReading',
]

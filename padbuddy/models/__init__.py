"""Models package"""

from .command import (
    Channel,
    CHANNEL_SLOTS,
    CommandNode,
    CommandRecord,
    CommandState,
    TERMINAL_STATES,
)
from .liveness import LivenessState
from .schedule import Recurrence, RecurrenceType, ScheduleDefinition
from .sensor_data import Decision, SensorReading, SensorValues
from .audit import AlertSeverity, AuditEntry, AuditKind, CommandStats, DeviceAlert, command_audit_entry

__all__ = [
    'Channel', 'CHANNEL_SLOTS', 'CommandNode', 'CommandRecord', 'CommandState', 'TERMINAL_STATES',
    'LivenessState',
    'Recurrence', 'RecurrenceType', 'ScheduleDefinition',
    'Decision', 'SensorReading', 'SensorValues',
    'AlertSeverity', 'AuditEntry', 'AuditKind', 'CommandStats', 'DeviceAlert', 'command_audit_entry',
]

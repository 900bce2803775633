"""Audit log, alert and statistics models"""

from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field


class AuditKind(str, Enum):
    COMMAND = "command"
    LIVENESS = "liveness"
    SENSOR = "sensor"
    SCHEDULE = "schedule"
    SYSTEM = "system"


class AlertSeverity(str, Enum):
    CRITICAL = "critical"
    WARNING = "warning"
    INFO = "info"


class AuditEntry(BaseModel):
    device_id: str = Field(alias="deviceId")
    kind: AuditKind
    event: str
    timestamp: int  # epoch ms
    status: Optional[str] = None
    command_id: Optional[str] = Field(default=None, alias="commandId")
    schedule_id: Optional[str] = Field(default=None, alias="scheduleId")
    details: Dict[str, Any] = Field(default_factory=dict)

    class Config:
        populate_by_name = True

    def to_document(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json")


class DeviceAlert(BaseModel):
    device_id: str = Field(alias="deviceId")
    type: str
    severity: AlertSeverity
    message: str
    timestamp: int
    resolved: bool = False
    resolved_at: Optional[int] = Field(default=None, alias="resolvedAt")
    notified: bool = False

    class Config:
        populate_by_name = True


class CommandStats(BaseModel):
    total: int = 0
    successful: int = 0
    failed: int = 0
    timed_out: int = Field(default=0, alias="timedOut")
    average_response_time_ms: Optional[float] = Field(default=None, alias="averageResponseTimeMs")

    class Config:
        populate_by_name = True


def command_audit_entry(record, event: str, timestamp: int, **details: Any) -> AuditEntry:
    """Audit entry describing a CommandRecord at a lifecycle step"""
    body = {
        'nodeId': record.node_id,
        'slot': record.slot,
        'action': record.action,
        'params': record.params,
        'requestedBy': record.requested_by,
        'requestedAt': record.requested_at,
    }
    if record.actual_state is not None:
        body['actualState'] = record.actual_state
    if record.error:
        body['error'] = record.error
    if record.is_terminal and record.completed_at and record.sent_at:
        body['responseTimeMs'] = record.completed_at - record.sent_at
    body.update(details)
    return AuditEntry(
        device_id=record.device_id,
        kind=AuditKind.COMMAND,
        event=event,
        timestamp=timestamp,
        status=record.state.value,
        command_id=record.id,
        schedule_id=record.schedule_id,
        details=body,
    )

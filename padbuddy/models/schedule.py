"""Scheduled command models"""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field

from .command import CommandNode


class RecurrenceType(str, Enum):
    ONCE = "once"
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"


class Recurrence(BaseModel):
    """When a schedule fires.

    Fields are loosely typed on purpose: schedules are edited in the web app
    and a malformed one must still load so it can be disabled and flagged.
    """
    type: str
    at: Optional[datetime] = None               # once
    time: Optional[str] = None                  # "HH:MM" for daily/weekly/monthly
    day_of_week: Optional[int] = Field(default=None, alias="dayOfWeek")    # 0 = Sunday
    day_of_month: Optional[int] = Field(default=None, alias="dayOfMonth")  # 1-31
    timezone: Optional[str] = None

    class Config:
        populate_by_name = True


class ScheduleDefinition(BaseModel):
    id: str = ""  # assigned on enqueue
    device_id: str = Field(alias="deviceId")
    node_id: str = Field(alias="nodeId")
    slot: str
    action: str
    params: Dict[str, Any] = Field(default_factory=dict)
    recurrence: Recurrence
    enabled: bool = True
    next_execution_at: Optional[datetime] = Field(default=None, alias="nextExecutionAt")
    last_executed_at: Optional[datetime] = Field(default=None, alias="lastExecutedAt")
    last_status: Optional[str] = Field(default=None, alias="lastStatus")
    error: Optional[str] = None
    created_by: Optional[str] = Field(default=None, alias="createdBy")

    class Config:
        populate_by_name = True

    @property
    def node(self) -> CommandNode:
        return CommandNode(device_id=self.device_id, node_id=self.node_id, slot=self.slot)

    def to_document(self) -> Dict[str, Any]:
        """Firestore document body (datetimes stay native)"""
        return self.model_dump(by_alias=True, exclude={"id"})

"""
Command models.

A command lives on the control channel at
    devices/{deviceId}/commands/{nodeId}/{slot}
and carries two status fields:
    status  - written by the device (and by dispatch/timeout)
    state   - lifecycle state owned by the orchestrator
"""

from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field


# =============================================================================
# ENUMS
# =============================================================================

class CommandState(str, Enum):
    PENDING = "pending"
    SENT = "sent"
    ACKNOWLEDGED = "acknowledged"
    COMPLETED = "completed"
    FAILED = "failed"
    TIMED_OUT = "timed_out"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES


TERMINAL_STATES = frozenset({CommandState.COMPLETED, CommandState.FAILED, CommandState.TIMED_OUT})


class Channel(str, Enum):
    """Physical node on a device that executes commands"""
    RELAY = "ESP32A"
    MOTOR = "ESP32B"
    SENSOR = "ESP32C"


# Slots each channel accepts
CHANNEL_SLOTS: Dict[Channel, frozenset] = {
    Channel.RELAY: frozenset({"relay1", "relay2", "relay3", "relay4"}),
    Channel.MOTOR: frozenset({"motor", "gps"}),
    Channel.SENSOR: frozenset({"npk", "scan"}),
}

SCHEDULER_REQUESTER = "scheduler"
TIMEOUT_ERROR_MESSAGE = "Timeout - no response from device"


# =============================================================================
# DATA MODELS
# =============================================================================

class CommandNode(BaseModel):
    """(device, channel, slot): the unit that accepts one outstanding command"""
    device_id: str = Field(alias="deviceId")
    node_id: str = Field(alias="nodeId")
    slot: str

    class Config:
        populate_by_name = True
        frozen = True

    @property
    def channel(self) -> Optional[Channel]:
        try:
            return Channel(self.node_id)
        except ValueError:
            return None

    def is_recognized(self) -> bool:
        channel = self.channel
        return channel is not None and self.slot in CHANNEL_SLOTS[channel]

    @property
    def is_relay(self) -> bool:
        return self.channel is Channel.RELAY

    @property
    def relay_number(self) -> Optional[int]:
        """1-4 for relay slots, None otherwise"""
        if not self.is_relay or not self.slot.startswith("relay"):
            return None
        return int(self.slot[len("relay"):])

    @property
    def path(self) -> str:
        return f"devices/{self.device_id}/commands/{self.node_id}/{self.slot}"

    def __str__(self) -> str:
        return f"{self.device_id}/{self.node_id}/{self.slot}"


class CommandRecord(BaseModel):
    id: str
    device_id: str = Field(alias="deviceId")
    node_id: str = Field(alias="nodeId")
    slot: str
    action: str
    params: Dict[str, Any] = Field(default_factory=dict)
    state: CommandState = CommandState.PENDING
    status: Optional[str] = None
    requested_at: int = Field(alias="requestedAt")
    sent_at: Optional[int] = Field(default=None, alias="sentAt")
    acknowledged_at: Optional[int] = Field(default=None, alias="acknowledgedAt")
    completed_at: Optional[int] = Field(default=None, alias="completedAt")
    executed_at: Optional[Any] = Field(default=None, alias="executedAt")
    actual_state: Optional[Any] = Field(default=None, alias="actualState")
    error: Optional[str] = None
    requested_by: str = Field(alias="requestedBy")
    schedule_id: Optional[str] = Field(default=None, alias="scheduleId")
    last_transition_id: Optional[str] = Field(default=None, alias="lastTransitionId")

    class Config:
        populate_by_name = True

    @property
    def node(self) -> CommandNode:
        return CommandNode(device_id=self.device_id, node_id=self.node_id, slot=self.slot)

    @property
    def is_terminal(self) -> bool:
        return self.state.is_terminal

    def to_wire(self) -> Dict[str, Any]:
        """Serialize for the control channel (camelCase, no nulls)"""
        return self.model_dump(by_alias=True, exclude_none=True, mode="json")

"""
Last-known-good relay state cache.

devices/{deviceId}/relays/{n} mirrors the state a relay reached the last
time a command on it completed. Relay firmware reads it after a reboot and
dashboards read it without waiting for a fresh command. It is written only
when the acknowledgment watcher observes a relay command reaching
completed, never from requests or failures.
"""

import logging
from typing import Any, Optional

from ..models.command import CommandRecord
from ..utils.timestamps import now_ms
from .control_channel import ControlChannel

logger = logging.getLogger(__name__)

_ON_VALUES = {"on", "true", "1", "high", "open"}
_OFF_VALUES = {"off", "false", "0", "low", "closed"}


def parse_relay_state(value: Any) -> Optional[bool]:
    """ON/OFF, booleans and 0/1 as a relay's boolean state"""
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value != 0
    if isinstance(value, str):
        text = value.strip().lower()
        if text in _ON_VALUES:
            return True
        if text in _OFF_VALUES:
            return False
    return None


class RelayStateCache:

    def __init__(self, control_channel: ControlChannel, clock=now_ms):
        self.control_channel = control_channel
        self.clock = clock

    @staticmethod
    def path(device_id: str, relay: int) -> str:
        return f"devices/{device_id}/relays/{relay}"

    async def record(self, record: CommandRecord, updated_by: str = "ack_watcher") -> Optional[bool]:
        """Mirror a completed relay command.

        Returns:
            the mirrored state, or None if it could not be determined
        """
        relay = record.node.relay_number
        if relay is None:
            return None

        state = parse_relay_state(record.actual_state)
        if state is None:
            state = parse_relay_state(record.action)
        if state is None:
            logger.warning(
                f"⚠️ Cannot mirror relay {relay} on {record.device_id}: "
                f"no usable state in actualState={record.actual_state!r} action={record.action!r}"
            )
            return None

        await self.control_channel.set(self.path(record.device_id, relay), {
            "state": "ON" if state else "OFF",
            "on": state,
            "lastUpdated": self.clock(),
            "updatedBy": updated_by,
            "commandId": record.id,
        })
        logger.info(f"Relay {relay} on {record.device_id} is {'ON' if state else 'OFF'}")
        return state

    async def last_known(self, device_id: str, relay: int) -> Optional[bool]:
        data = await self.control_channel.get(self.path(device_id, relay))
        if not isinstance(data, dict):
            return None
        if isinstance(data.get("on"), bool):
            return data["on"]
        return parse_relay_state(data.get("state"))

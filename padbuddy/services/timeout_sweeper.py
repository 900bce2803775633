"""
Timeout sweeper - backstop that guarantees every command terminates.

Every sweep period, scans devices/{id}/commands for every registered
device and forces records still sent/acknowledged more than the command
timeout after requestedAt to timed_out. The timeout status and error are
written onto the record itself, so a device that answers late sees a
rejected command. A command therefore reaches a terminal state within
command timeout + sweep period whether or not the device ever answers.
"""

import asyncio
import logging
import uuid
from typing import Any, Optional

from ..models.audit import command_audit_entry
from ..models.command import CommandNode, CommandState
from ..storage.audit_store import AuditStore
from ..utils.timestamps import now_ms
from .ack_watcher import AckWatcher
from .command_state import expire_if_overdue, won_transition
from .config_manager import ConfigManager
from .control_channel import ControlChannel
from .device_registry import DeviceRegistry
from .diagnostics import DiagnosticsService
from .notifications import NotificationSink, send_safely

logger = logging.getLogger(__name__)

_WAITING = (CommandState.SENT.value, CommandState.ACKNOWLEDGED.value)


def _is_overdue(raw: Any, now: int, timeout_ms: int) -> bool:
    if not isinstance(raw, dict) or raw.get("state") not in _WAITING:
        return False
    requested_at = raw.get("requestedAt")
    if not isinstance(requested_at, (int, float)):
        return False
    return now - requested_at > timeout_ms


class TimeoutSweeper:

    def __init__(
        self,
        control_channel: ControlChannel,
        registry: DeviceRegistry,
        audit_store: AuditStore,
        notifications: NotificationSink,
        watcher: AckWatcher,
        config_manager: Optional[ConfigManager] = None,
        diagnostics: Optional[DiagnosticsService] = None,
        clock=now_ms,
    ):
        self.control_channel = control_channel
        self.registry = registry
        self.audit_store = audit_store
        self.notifications = notifications
        self.watcher = watcher
        self.config_manager = config_manager or ConfigManager()
        self.diagnostics = diagnostics or DiagnosticsService()
        self.clock = clock
        self._running = False

    async def start(self):
        """Run the sweep loop until stop()"""
        self._running = True
        logger.info("Timeout sweeper started")

        while self._running:
            try:
                await self.sweep()
            except Exception as e:
                logger.error(f"Timeout sweep failed: {e}")

            await asyncio.sleep(self.config_manager.get_timeout_sweep_period())

    async def stop(self):
        self._running = False
        logger.info("Timeout sweeper stopped")

    async def sweep(self, now: Optional[int] = None) -> int:
        """Expire every overdue command fleet-wide.

        Returns:
            number of commands this sweep timed out
        """
        now = self.clock() if now is None else now
        expired = 0
        for device_id in await self.registry.list_devices():
            try:
                expired += await self._sweep_device(device_id, now)
            except Exception as e:
                self.diagnostics.record_error()
                logger.error(f"❌ Timeout sweep failed for {device_id}: {e}")
        self.diagnostics.record_sweep()
        if expired:
            logger.info(f"⏱️ Timeout sweep expired {expired} command(s)")
        return expired

    async def _sweep_device(self, device_id: str, now: int) -> int:
        tree = await self.control_channel.get(f"devices/{device_id}/commands")
        if not isinstance(tree, dict):
            return 0

        timeout_ms = int(self.config_manager.get_command_timeout() * 1000)
        expired = 0
        for node_id, slots in tree.items():
            if not isinstance(slots, dict):
                continue
            for slot, raw in slots.items():
                if not _is_overdue(raw, now, timeout_ms):
                    continue
                node = CommandNode(device_id=device_id, node_id=node_id, slot=slot)
                try:
                    if await self.expire(node, now):
                        expired += 1
                except Exception as e:
                    self.diagnostics.record_error()
                    logger.error(f"❌ Failed to expire command on {node}: {e}")
        return expired

    async def expire(self, node: CommandNode, now: int) -> bool:
        """Time out the node's command if it is still overdue.

        Returns:
            True if this call performed the transition
        """
        timeout_ms = int(self.config_manager.get_command_timeout() * 1000)
        token = uuid.uuid4().hex
        committed = await self.control_channel.transaction(
            node.path, lambda cur: expire_if_overdue(cur, token, now, timeout_ms)
        )
        record = won_transition(committed, token)
        if record is None or record.state is not CommandState.TIMED_OUT:
            return False

        elapsed_s = round((now - record.requested_at) / 1000, 1)
        logger.warning(f"⏱️ Command {record.id} on {node} timed out after {elapsed_s}s")

        try:
            await self.audit_store.append(command_audit_entry(
                record,
                "command_timeout",
                now,
                reason="timeout",
                actualState="TIMEOUT",
                timeoutSeconds=elapsed_s,
            ))
        except Exception as e:
            self.diagnostics.record_error()
            logger.error(f"❌ Failed to audit timeout of {record.id}: {e}")

        self.diagnostics.record_outcome(record.state.value)
        await send_safely(
            self.notifications.command_failed(record.device_id, record.id, "timeout"),
            f"commandFailed {record.id}",
        )
        self.watcher.settle(record)
        return True

"""
Command dispatcher.

Writes a new command record to devices/{deviceId}/commands/{nodeId}/{slot}
and hands back a CommandHandle. The write is a transaction that also
enforces one outstanding command per node: if the record already at the
path is still sent or acknowledged, the dispatch is rejected with
NodeBusyError and nothing is written.
"""

import asyncio
import logging
import uuid
import warnings
from typing import Any, Dict, Optional

from ..errors import CommandFailed, CommandTimedOut, DeviceOfflineWarning, DispatchError, NodeBusyError
from ..models.audit import command_audit_entry
from ..models.command import CommandNode, CommandRecord, CommandState
from ..storage.audit_store import AuditStore
from ..utils.timestamps import now_ms
from .ack_watcher import AckWatcher
from .command_state import apply_transition, won_transition
from .control_channel import ControlChannel
from .device_registry import DeviceRegistry
from .diagnostics import DiagnosticsService

logger = logging.getLogger(__name__)

_OUTSTANDING = {CommandState.SENT.value, CommandState.ACKNOWLEDGED.value, CommandState.PENDING.value}


class CommandHandle:
    """Caller's view of a dispatched command"""

    def __init__(self, record: CommandRecord, future: asyncio.Future, device_offline: bool = False):
        self.record = record
        self.device_offline = device_offline
        self._future = future

    @property
    def command_id(self) -> str:
        return self.record.id

    @property
    def node(self) -> CommandNode:
        return self.record.node

    @property
    def requested_at(self) -> int:
        return self.record.requested_at

    def done(self) -> bool:
        return self._future.done() and not self._future.cancelled()

    @property
    def state(self) -> CommandState:
        if self.done() and self._future.exception() is None:
            return self._future.result().state
        return self.record.state

    async def wait(self, timeout: Optional[float] = None) -> CommandRecord:
        """Wait for the terminal record.

        Raises:
            asyncio.TimeoutError: no terminal state within timeout
            CommandSuperseded: the record was deleted or replaced first
        """
        return await asyncio.wait_for(asyncio.shield(self._future), timeout)

    def raise_for_outcome(self) -> CommandRecord:
        """Return the completed record, raising for failed, timed-out or superseded commands"""
        if not self.done():
            raise RuntimeError(f"Command {self.command_id} has not reached a terminal state")
        record = self._future.result()
        if record.state is CommandState.FAILED:
            raise CommandFailed(record.id, record.error)
        if record.state is CommandState.TIMED_OUT:
            elapsed = None
            if record.completed_at:
                elapsed = round((record.completed_at - record.requested_at) / 1000, 1)
            raise CommandTimedOut(record.id, elapsed)
        return record


class CommandDispatcher:

    def __init__(
        self,
        control_channel: ControlChannel,
        registry: DeviceRegistry,
        audit_store: AuditStore,
        watcher: AckWatcher,
        liveness,
        diagnostics: Optional[DiagnosticsService] = None,
        clock=now_ms,
    ):
        """
        Args:
            liveness: anything with current(device_id) -> LivenessState
                (the heartbeat monitor in production)
        """
        self.control_channel = control_channel
        self.registry = registry
        self.audit_store = audit_store
        self.watcher = watcher
        self.liveness = liveness
        self.diagnostics = diagnostics or DiagnosticsService()
        self.clock = clock

    async def dispatch(
        self,
        node: CommandNode,
        action: str,
        params: Optional[Dict[str, Any]] = None,
        requested_by: str = "operator",
        schedule_id: Optional[str] = None,
    ) -> CommandHandle:
        """Write a command for a node.

        Raises:
            DispatchError: unknown node/device, or the write failed
            NodeBusyError: the node still has an outstanding command
        """
        if not node.is_recognized():
            raise DispatchError(f"Unrecognized command node {node}", device_id=node.device_id)

        try:
            known = await self.registry.is_known(node.device_id)
        except Exception as e:
            self.diagnostics.record_dispatch_error()
            raise DispatchError(f"Device lookup failed for {node.device_id}: {e}", node.device_id) from e
        if not known:
            raise DispatchError(f"Unknown device {node.device_id}", device_id=node.device_id)

        device_offline = not self.liveness.current(node.device_id).online
        if device_offline:
            logger.warning(f"⚠️ {node.device_id} is offline, dispatching {action} to {node} anyway")
            warnings.warn(
                f"Device {node.device_id} is offline; command may not be delivered",
                DeviceOfflineWarning,
                stacklevel=2,
            )

        now = self.clock()
        token = uuid.uuid4().hex
        pending = CommandRecord(
            id=uuid.uuid4().hex,
            device_id=node.device_id,
            node_id=node.node_id,
            slot=node.slot,
            action=action,
            params=params or {},
            requested_at=now,
            requested_by=requested_by,
            schedule_id=schedule_id,
        )
        sent = apply_transition(pending, CommandState.SENT, now, token)
        wire = sent.to_wire()
        claim_result = {"busy": False, "busy_with": None}

        def claim(current):
            # May run more than once if the transaction is retried
            if isinstance(current, dict) and current.get("state") in _OUTSTANDING:
                claim_result.update(busy=True, busy_with=current.get("id"))
                return current
            claim_result.update(busy=False, busy_with=None)
            return wire

        try:
            committed = await self.control_channel.transaction(node.path, claim)
        except Exception as e:
            self.diagnostics.record_dispatch_error()
            logger.error(f"❌ Failed to write command to {node}: {e}")
            raise DispatchError(f"Failed to write command to {node}: {e}", node.device_id) from e

        busy_with = claim_result["busy_with"]
        if claim_result["busy"]:
            logger.warning(f"⚠️ {node} busy with command {busy_with}, rejecting {action}")
            raise NodeBusyError(node.device_id, node.node_id, node.slot, busy_with)
        if won_transition(committed, token) is None:
            self.diagnostics.record_dispatch_error()
            raise DispatchError(f"Command write to {node} was not committed", node.device_id)

        future = await self.watcher.watch(sent)

        try:
            await self.audit_store.append(command_audit_entry(
                sent, "command_sent", now, deviceOffline=device_offline,
            ))
        except Exception as e:
            self.diagnostics.record_error()
            logger.error(f"❌ Failed to audit dispatch of {sent.id}: {e}")

        self.diagnostics.record_dispatch()
        logger.info(f"📤 Sent {action} to {node} (command {sent.id}, by {requested_by})")
        return CommandHandle(sent, future, device_offline=device_offline)

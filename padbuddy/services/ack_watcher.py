"""
Acknowledgment watcher.

Subscribes to each dispatched command's record on the control channel and
advances its lifecycle when the device writes back a status. The watcher
never blocks: change callbacks only schedule a task, and the task runs the
transition as a control channel transaction so duplicate notifications and
the timeout sweeper can never push a command past a terminal state.

Waiters (CommandHandle.wait) are settled whenever a terminal state is
observed on the record, whoever wrote it.
"""

import asyncio
import logging
import uuid
from typing import Any, Dict, Optional, Set

from ..errors import CommandSuperseded
from ..models.audit import command_audit_entry
from ..models.command import CommandRecord, CommandState
from ..storage.audit_store import AuditStore
from ..utils.timestamps import now_ms
from .command_state import (
    can_transition,
    resolve_device_update,
    state_for_device_status,
    won_transition,
)
from .control_channel import ControlChannel, Subscription
from .diagnostics import DiagnosticsService
from .notifications import NotificationSink, send_safely
from .relay_state import RelayStateCache

logger = logging.getLogger(__name__)


class AckWatcher:

    def __init__(
        self,
        control_channel: ControlChannel,
        audit_store: AuditStore,
        notifications: NotificationSink,
        relay_cache: RelayStateCache,
        diagnostics: Optional[DiagnosticsService] = None,
        clock=now_ms,
    ):
        self.control_channel = control_channel
        self.audit_store = audit_store
        self.notifications = notifications
        self.relay_cache = relay_cache
        self.diagnostics = diagnostics or DiagnosticsService()
        self.clock = clock

        self._waiters: Dict[str, asyncio.Future] = {}
        self._subscriptions: Dict[str, Subscription] = {}
        self._tasks: Set[asyncio.Task] = set()

    @property
    def watching(self) -> int:
        return len(self._waiters)

    async def watch(self, record: CommandRecord) -> asyncio.Future:
        """Start watching a freshly dispatched command.

        Returns:
            future resolved with the terminal CommandRecord
        """
        future = asyncio.get_running_loop().create_future()
        self._waiters[record.id] = future

        def on_change(path: str, value: Any):
            task = asyncio.create_task(self._on_change(record.id, value))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

        try:
            subscription = await self.control_channel.subscribe(record.node.path, on_change)
        except Exception as e:
            # The timeout sweeper still resolves the command and settles the waiter
            logger.error(f"❌ Could not watch command {record.id} on {record.node}: {e}")
            return future

        if future.done():
            subscription.close()
        else:
            self._subscriptions[record.id] = subscription
        return future

    async def _on_change(self, command_id: str, value: Any):
        try:
            await self.process(command_id, value)
        except Exception as e:
            self.diagnostics.record_error()
            logger.error(f"❌ Error processing update for command {command_id}: {e}", exc_info=True)

    async def process(self, command_id: str, value: Any) -> Optional[CommandRecord]:
        """Apply a change notification for a watched command.

        Returns:
            the record if this call performed a transition, else None
        """
        if not isinstance(value, dict) or value.get("id") != command_id:
            self.abandon(command_id)
            return None

        current = _state_of(value)
        if current is not None and current.is_terminal:
            self.settle(CommandRecord.model_validate(value))
            return None

        target = state_for_device_status(value.get("status"))
        if current is None or target is None or target is current or not can_transition(current, target):
            return None

        token = uuid.uuid4().hex
        now = self.clock()
        path = CommandRecord.model_validate(value).node.path
        committed = await self.control_channel.transaction(
            path, lambda cur: resolve_device_update(cur, command_id, token, now)
        )

        record = won_transition(committed, token)
        if record is not None:
            await self._after_transition(record)
            return record

        # Lost the race (sweeper or a duplicate notification got there first)
        if isinstance(committed, dict) and committed.get("id") == command_id:
            current = _state_of(committed)
            if current is not None and current.is_terminal:
                self.settle(CommandRecord.model_validate(committed))
        return None

    async def _after_transition(self, record: CommandRecord):
        """Audit, mirror and notify once per transition this watcher won"""
        logger.info(f"Command {record.id} on {record.node} → {record.state.value}")

        try:
            await self.audit_store.append(
                command_audit_entry(record, f"command_{record.state.value}", self.clock())
            )
        except Exception as e:
            self.diagnostics.record_error()
            logger.error(f"❌ Failed to audit command {record.id}: {e}")

        if record.state is CommandState.COMPLETED:
            self.diagnostics.record_outcome(record.state.value)
            if record.node.is_relay:
                try:
                    await self.relay_cache.record(record)
                except Exception as e:
                    self.diagnostics.record_error()
                    logger.error(f"❌ Failed to mirror relay state for {record.id}: {e}")

        elif record.state is CommandState.FAILED:
            self.diagnostics.record_outcome(record.state.value)
            logger.warning(f"❌ Command {record.id} failed on {record.node}: {record.error}")
            await send_safely(
                self.notifications.command_failed(record.device_id, record.id, record.error),
                f"commandFailed {record.id}",
            )

        if record.is_terminal:
            self.settle(record)

    def settle(self, record: CommandRecord):
        """Resolve waiters and stop watching a command in a terminal state"""
        future = self._waiters.pop(record.id, None)
        if future is not None and not future.done():
            future.set_result(record)
        subscription = self._subscriptions.pop(record.id, None)
        if subscription is not None:
            subscription.close()

    def abandon(self, command_id: str):
        """Stop watching a command whose record was deleted or overwritten.

        Waiters get CommandSuperseded; nothing else can settle them once the
        record is gone.
        """
        subscription = self._subscriptions.pop(command_id, None)
        if subscription is not None:
            subscription.close()
        future = self._waiters.pop(command_id, None)
        if future is None or future.done():
            return
        logger.warning(f"⚠️ Command {command_id} was removed from its slot before completing")
        future.set_exception(CommandSuperseded(command_id))
        # Waiting on a handle is optional, so mark the exception retrieved
        future.exception()

    async def close(self):
        for subscription in self._subscriptions.values():
            subscription.close()
        self._subscriptions.clear()
        for future in self._waiters.values():
            if not future.done():
                future.cancel()
        self._waiters.clear()
        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        logger.info("Acknowledgment watcher stopped")


def _state_of(value: Dict[str, Any]) -> Optional[CommandState]:
    try:
        return CommandState(value.get("state"))
    except ValueError:
        return None

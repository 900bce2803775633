"""
Schedule runner - fires due scheduled commands.

Every schedule period the runner lists enabled schedules and runs each due
one in its own task:
    dispatch -> wait (bounded by the command timeout) -> advance -> persist

A slot is consumed only once its command has been dispatched. Dispatch
errors (including a busy node) leave nextExecutionAt untouched so the slot
is retried on the next cycle instead of being skipped, and a schedule that
is still in flight is never started twice. Malformed recurrences are
disabled and flagged rather than retried forever.
"""

import asyncio
import logging
import uuid
from datetime import datetime
from typing import List, Optional, Set

from ..errors import CommandSuperseded, DispatchError, ScheduleComputationError
from ..models.audit import AuditEntry, AuditKind
from ..models.command import SCHEDULER_REQUESTER
from ..models.schedule import ScheduleDefinition
from ..storage.audit_store import AuditStore
from ..storage.schedule_store import ScheduleStore
from ..utils.timestamps import utc_now
from .config_manager import ConfigManager
from .diagnostics import DiagnosticsService
from .dispatcher import CommandDispatcher, CommandHandle
from .schedule_calculator import advance, due, first_execution

logger = logging.getLogger(__name__)


class ScheduleRunner:

    def __init__(
        self,
        schedule_store: ScheduleStore,
        dispatcher: CommandDispatcher,
        audit_store: AuditStore,
        config_manager: Optional[ConfigManager] = None,
        diagnostics: Optional[DiagnosticsService] = None,
        clock=utc_now,
    ):
        self.schedule_store = schedule_store
        self.dispatcher = dispatcher
        self.audit_store = audit_store
        self.config_manager = config_manager or ConfigManager()
        self.diagnostics = diagnostics or DiagnosticsService()
        self.clock = clock

        self._in_flight: Set[str] = set()
        self._tasks: Set[asyncio.Task] = set()
        self._running = False

    # ─────────────────────────────────────────────────────────────
    # Loop
    # ─────────────────────────────────────────────────────────────

    async def start(self):
        """Evaluate schedules every period until stop()"""
        self._running = True
        logger.info("Schedule runner started")

        while self._running:
            # Cycles overlap when commands are slow; _in_flight prevents double fires
            task = asyncio.create_task(self._cycle())
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

            await asyncio.sleep(self.config_manager.get_schedule_period())

    async def _cycle(self):
        try:
            await self.run_once()
        except Exception as e:
            logger.error(f"Schedule cycle failed: {e}")

    async def stop(self):
        self._running = False
        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        logger.info("Schedule runner stopped")

    async def run_once(self, now: Optional[datetime] = None) -> List[str]:
        """Run every schedule due at `now`.

        Returns:
            ids of schedules whose command was dispatched
        """
        now = now or self.clock()
        ready = []
        for schedule in await self.schedule_store.list_enabled():
            if schedule.next_execution_at is None:
                schedule = await self._initialize(schedule, now)
                if schedule is None:
                    continue
            if due(schedule, now) and schedule.id not in self._in_flight:
                ready.append(schedule)

        if not ready:
            return []
        logger.info(f"⏰ {len(ready)} schedule(s) due")
        results = await asyncio.gather(*(self._run_isolated(s, now) for s in ready))
        return [s.id for s, ran in zip(ready, results) if ran]

    async def _run_isolated(self, schedule: ScheduleDefinition, now: datetime) -> bool:
        self._in_flight.add(schedule.id)
        try:
            return await self.execute(schedule, now)
        except Exception as e:
            self.diagnostics.record_error()
            logger.error(f"❌ Schedule {schedule.id} failed: {e}", exc_info=True)
            return False
        finally:
            self._in_flight.discard(schedule.id)

    # ─────────────────────────────────────────────────────────────
    # One schedule
    # ─────────────────────────────────────────────────────────────

    async def execute(self, schedule: ScheduleDefinition, now: datetime) -> bool:
        """Dispatch one due schedule and advance it.

        Returns:
            True if a command was dispatched (and the slot consumed)
        """
        try:
            handle = await self.dispatcher.dispatch(
                schedule.node,
                schedule.action,
                schedule.params,
                requested_by=SCHEDULER_REQUESTER,
                schedule_id=schedule.id,
            )
        except DispatchError as e:
            logger.warning(f"⚠️ Schedule {schedule.id} not dispatched, retrying next cycle: {e}")
            return False

        status = await self._await_outcome(schedule, handle)
        self.diagnostics.record_schedule_run()

        # Re-read so edits made while the command ran (e.g. disable) are kept
        latest = await self.schedule_store.get(schedule.id) or schedule
        try:
            advanced = advance(latest, now)
        except ScheduleComputationError as e:
            await self.flag(latest, e)
            return True

        await self.schedule_store.persist(advanced.model_copy(update={
            "last_executed_at": now,
            "last_status": status,
        }))
        logger.info(
            f"Schedule {schedule.id} ran ({status}), next: "
            f"{advanced.next_execution_at.isoformat() if advanced.next_execution_at else 'none'}"
        )
        return True

    async def _await_outcome(self, schedule: ScheduleDefinition, handle: CommandHandle) -> str:
        timeout = self.config_manager.get_command_timeout()
        try:
            record = await handle.wait(timeout=timeout)
        except asyncio.TimeoutError:
            # The timeout sweeper will terminate the command
            logger.warning(f"⏱️ Schedule {schedule.id}: no result for {handle.command_id} within {timeout}s")
            return handle.state.value
        except CommandSuperseded as e:
            logger.warning(f"⚠️ Schedule {schedule.id}: {e}")
            return "superseded"
        return record.state.value

    async def _initialize(self, schedule: ScheduleDefinition, now: datetime) -> Optional[ScheduleDefinition]:
        """Fill in nextExecutionAt for schedules created without one"""
        try:
            initialized = schedule.model_copy(update={
                "next_execution_at": first_execution(schedule.recurrence, now),
            })
        except ScheduleComputationError as e:
            await self.flag(schedule, e)
            return None
        await self.schedule_store.persist(initialized)
        return initialized

    async def flag(self, schedule: ScheduleDefinition, error: ScheduleComputationError):
        """Disable a schedule whose recurrence cannot be computed"""
        logger.error(f"❌ Schedule {schedule.id} is malformed, disabling: {error}")
        self.diagnostics.record_schedule_flagged()
        await self.schedule_store.persist(schedule.model_copy(update={
            "enabled": False,
            "next_execution_at": None,
            "error": str(error),
        }))
        try:
            await self.audit_store.append(AuditEntry(
                device_id=schedule.device_id,
                kind=AuditKind.SCHEDULE,
                event="schedule_flagged",
                timestamp=int(self.clock().timestamp() * 1000),
                status="disabled",
                schedule_id=schedule.id,
                details={"error": str(error), "recurrence": schedule.recurrence.model_dump(by_alias=True, mode="json")},
            ))
        except Exception as e:
            self.diagnostics.record_error()
            logger.error(f"❌ Failed to audit flagged schedule {schedule.id}: {e}")

    # ─────────────────────────────────────────────────────────────
    # Enqueue / disable
    # ─────────────────────────────────────────────────────────────

    async def enqueue(self, definition: ScheduleDefinition, now: Optional[datetime] = None) -> ScheduleDefinition:
        """Validate and store a new or edited schedule.

        Raises:
            ScheduleComputationError: the recurrence is malformed
            ValueError: the target node is not a recognized channel/slot
        """
        if not definition.node.is_recognized():
            raise ValueError(f"Unrecognized command node {definition.node}")
        now = now or self.clock()
        schedule = definition.model_copy(update={
            "id": definition.id or uuid.uuid4().hex,
            "enabled": True,
            "error": None,
            "next_execution_at": first_execution(definition.recurrence, now),
        })
        await self.schedule_store.persist(schedule)
        logger.info(
            f"📅 Schedule {schedule.id} ({schedule.recurrence.type}) for {schedule.node}, "
            f"first run {schedule.next_execution_at.isoformat()}"
        )
        return schedule

    async def disable(self, schedule_id: str) -> Optional[ScheduleDefinition]:
        """Disable a schedule; takes effect on the next evaluation cycle"""
        schedule = await self.schedule_store.get(schedule_id)
        if schedule is None:
            logger.warning(f"Cannot disable unknown schedule {schedule_id}")
            return None
        disabled = schedule.model_copy(update={"enabled": False})
        await self.schedule_store.persist(disabled)
        logger.info(f"Schedule {schedule_id} disabled")
        return disabled

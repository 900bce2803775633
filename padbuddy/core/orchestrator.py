"""
Orchestrator - composes command dispatch, liveness and sensor ingestion
into the operations exposed to the web app and other collaborators.

LOOPS (run concurrently by start()):
  - timeout sweeper        every timeout_sweep_period_s
  - heartbeat sweep        every heartbeat_sweep_period_s
  - schedule runner        every schedule_period_s
  - sensor poll            every sensor_poll_period_s (backup for listeners)
  - audit retention        every retention_period_s

REACTIVE:
  - devices/{id}/heartbeat  -> record_heartbeat()
  - devices/{id}/npk        -> ingest_sensor_reading()
  - each dispatched command -> acknowledgment watcher
"""

import asyncio
import logging
from typing import Any, Dict, List, Optional, Set, Union

from .. import config
from ..models.audit import AuditEntry, AuditKind, CommandStats
from ..models.command import CommandNode
from ..models.liveness import LivenessState
from ..models.schedule import ScheduleDefinition
from ..models.sensor_data import Decision, SensorReading, SensorValues
from ..services.ack_watcher import AckWatcher
from ..services.command_stats import summarize_commands
from ..services.config_manager import ConfigManager
from ..services.control_channel import ControlChannel, Subscription
from ..services.device_registry import DeviceRegistry
from ..services.diagnostics import DiagnosticsService
from ..services.dispatcher import CommandDispatcher, CommandHandle
from ..services.heartbeat_monitor import HeartbeatMonitor
from ..services.notifications import NotificationSink
from ..services.relay_state import RelayStateCache
from ..services.schedule_runner import ScheduleRunner
from ..services.sensor_dedup import SensorDeduplicator
from ..services.timeout_sweeper import TimeoutSweeper
from ..storage.audit_store import AuditStore
from ..storage.liveness_store import LivenessStore
from ..storage.schedule_store import ScheduleStore
from ..utils.timestamps import now_ms, utc_now

logger = logging.getLogger(__name__)

DAY_MS = 24 * 60 * 60 * 1000


class Orchestrator:
    """Command orchestration and liveness for the device fleet"""

    def __init__(
        self,
        control_channel: ControlChannel,
        audit_store: AuditStore,
        schedule_store: ScheduleStore,
        liveness_store: LivenessStore,
        registry: DeviceRegistry,
        notifications: NotificationSink,
        config_manager: Optional[ConfigManager] = None,
        clock=now_ms,
        schedule_clock=utc_now,
    ):
        logger.info("Initializing PadBuddy orchestrator...")
        self.control_channel = control_channel
        self.audit_store = audit_store
        self.registry = registry
        self.config_manager = config_manager or ConfigManager()
        self.diagnostics = DiagnosticsService()
        self.clock = clock

        self.relay_cache = RelayStateCache(control_channel, clock=clock)
        self.watcher = AckWatcher(
            control_channel, audit_store, notifications, self.relay_cache,
            diagnostics=self.diagnostics, clock=clock,
        )
        self.heartbeats = HeartbeatMonitor(
            control_channel, registry, liveness_store, audit_store, notifications,
            config_manager=self.config_manager, diagnostics=self.diagnostics, clock=clock,
        )
        self.dispatcher = CommandDispatcher(
            control_channel, registry, audit_store, self.watcher, self.heartbeats,
            diagnostics=self.diagnostics, clock=clock,
        )
        self.sweeper = TimeoutSweeper(
            control_channel, registry, audit_store, notifications, self.watcher,
            config_manager=self.config_manager, diagnostics=self.diagnostics, clock=clock,
        )
        self.schedules = ScheduleRunner(
            schedule_store, self.dispatcher, audit_store,
            config_manager=self.config_manager, diagnostics=self.diagnostics, clock=schedule_clock,
        )
        self.dedup = SensorDeduplicator(self.config_manager)

        self.running = False
        self._subscriptions: List[Subscription] = []
        self._tasks: Set[asyncio.Task] = set()

    # =========================================================================
    # Exposed operations
    # =========================================================================

    async def dispatch(
        self,
        node: CommandNode,
        action: str,
        params: Optional[Dict[str, Any]] = None,
        requested_by: str = "operator",
    ) -> CommandHandle:
        """Send a command to a device node.

        Raises:
            DispatchError: the command could not be written (never existed)
            NodeBusyError: the node still has an outstanding command
        """
        return await self.dispatcher.dispatch(node, action, params, requested_by=requested_by)

    def current_liveness(self, device_id: str) -> LivenessState:
        return self.heartbeats.current(device_id)

    async def record_heartbeat(self, device_id: str, value: Any) -> LivenessState:
        return await self.heartbeats.record_heartbeat(device_id, value)

    async def ingest_sensor_reading(
        self,
        device_id: str,
        reading: Union[SensorReading, Dict[str, Any]],
    ) -> Decision:
        """Decide whether to keep a sensor push, logging it if accepted.

        Args:
            reading: a SensorReading, or the raw payload the device pushed
        """
        if not isinstance(reading, SensorReading):
            reading = SensorReading.from_payload(device_id, reading, self.clock())

        if not self.dedup.has_history(device_id):
            await self._seed_dedup(device_id)

        decision = self.dedup.accept(reading)
        self.diagnostics.record_reading(decision.accepted, decision.reason)
        if not decision.accepted:
            return decision

        try:
            await self.audit_store.append(AuditEntry(
                device_id=device_id,
                kind=AuditKind.SENSOR,
                event="sensor_reading",
                timestamp=reading.received_at,
                details={
                    "values": reading.values.model_dump(exclude_none=True),
                    "sourceTimestamp": reading.source_timestamp,
                    "receivedAt": reading.received_at,
                },
            ))
            logger.info(f"📊 Logged reading from {device_id}: {reading.values.model_dump(exclude_none=True)}")
        except Exception as e:
            self.diagnostics.record_error()
            logger.error(f"❌ Failed to log reading from {device_id}: {e}")
        return decision

    async def enqueue_schedule(self, definition: ScheduleDefinition) -> ScheduleDefinition:
        """Store a schedule and compute its first execution.

        Raises:
            ScheduleComputationError: the recurrence is malformed
        """
        return await self.schedules.enqueue(definition)

    async def disable_schedule(self, schedule_id: str) -> Optional[ScheduleDefinition]:
        return await self.schedules.disable(schedule_id)

    async def command_stats(self, device_id: str, days: int = 7) -> CommandStats:
        since = self.clock() - days * DAY_MS
        return summarize_commands(await self.audit_store.query(device_id, since))

    def health_summary(self) -> dict:
        summary = self.diagnostics.get_health_summary()
        summary["commands_watching"] = self.watcher.watching
        summary["intervals"] = self.config_manager.get_all_intervals()
        return summary

    async def purge_old_logs(self, now: Optional[int] = None) -> int:
        """Delete audit entries older than the retention window"""
        now = self.clock() if now is None else now
        cutoff = now - config.LOG_RETENTION_DAYS * DAY_MS
        deleted = await self.audit_store.purge_before(cutoff)
        logger.info(f"🧹 Purged {deleted} audit record(s) older than {config.LOG_RETENTION_DAYS} days")
        return deleted

    async def _seed_dedup(self, device_id: str):
        try:
            entry = await self.audit_store.latest(device_id, AuditKind.SENSOR)
        except Exception as e:
            logger.warning(f"Could not load last reading for {device_id}: {e}")
            return
        if entry is None or self.dedup.has_history(device_id):
            return
        details = entry.details
        self.dedup.remember(SensorReading(
            device_id=device_id,
            values=SensorValues(**details.get("values", {})),
            source_timestamp=details.get("sourceTimestamp"),
            received_at=details.get("receivedAt", entry.timestamp),
        ))

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def start(self):
        """Start listeners and run all loops until stop()"""
        try:
            logger.info("Starting PadBuddy orchestrator...")

            await self.config_manager.initialize()
            self.config_manager.listen_for_changes()
            logger.info(f"Configuration loaded: {self.config_manager.get_all_intervals()}")

            await self.heartbeats.load()
            await self._subscribe_devices()

            self.running = True
            await asyncio.gather(
                self.sweeper.start(),
                self.heartbeats.start(),
                self.schedules.start(),
                self._sensor_poll_loop(),
                self._retention_loop(),
            )
        except asyncio.CancelledError:
            logger.info("Orchestrator cancelled")
            raise
        except Exception as e:
            logger.error(f"Error starting orchestrator: {e}", exc_info=True)
            raise

    async def stop(self):
        """Stop loops and listeners"""
        if not self.running and not self._subscriptions:
            return
        logger.info("Stopping PadBuddy orchestrator...")
        self.running = False

        self.config_manager.stop_listening()
        await self.sweeper.stop()
        await self.heartbeats.stop()
        await self.schedules.stop()

        for subscription in self._subscriptions:
            subscription.close()
        self._subscriptions.clear()
        await self.watcher.close()

        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)

        logger.info(f"Orchestrator stopped - {self.diagnostics.get_health_summary()['status']}")

    async def _subscribe_devices(self):
        devices = await self.registry.list_devices()
        for device_id in devices:
            try:
                self._subscriptions.append(await self.control_channel.subscribe(
                    f"devices/{device_id}/heartbeat", self._heartbeat_callback(device_id),
                ))
                self._subscriptions.append(await self.control_channel.subscribe(
                    f"devices/{device_id}/npk", self._sensor_callback(device_id),
                ))
            except Exception as e:
                logger.error(f"❌ Could not subscribe to {device_id}: {e}")
        logger.info(f"👂 Listening to {len(devices)} device(s)")

    def _spawn(self, coro):
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def _heartbeat_callback(self, device_id: str):
        def on_change(path: str, value: Any):
            if value is not None:
                self._spawn(self._guarded(self.record_heartbeat(device_id, value), f"heartbeat from {device_id}"))
        return on_change

    def _sensor_callback(self, device_id: str):
        def on_change(path: str, value: Any):
            if isinstance(value, dict):
                self._spawn(self._guarded(self.ingest_sensor_reading(device_id, value), f"reading from {device_id}"))
        return on_change

    async def _guarded(self, coro, description: str):
        try:
            await coro
        except Exception as e:
            self.diagnostics.record_error()
            logger.error(f"❌ Error handling {description}: {e}", exc_info=True)

    async def _sensor_poll_loop(self):
        """Periodically re-read every device's NPK node (listener backup)"""
        logger.info("Starting sensor poll loop")

        while self.running:
            await asyncio.sleep(self.config_manager.get_sensor_poll_period())
            for device_id in await self._devices_or_empty():
                try:
                    payload = await self.control_channel.get(f"devices/{device_id}/npk")
                    if isinstance(payload, dict):
                        await self.ingest_sensor_reading(device_id, payload)
                except Exception as e:
                    self.diagnostics.record_error()
                    logger.error(f"❌ Sensor poll failed for {device_id}: {e}")

    async def _retention_loop(self):
        logger.info("Starting audit retention loop")

        while self.running:
            try:
                await self.purge_old_logs()
            except Exception as e:
                logger.error(f"Error in retention loop: {e}")

            await asyncio.sleep(self.config_manager.get_retention_period())

    async def _devices_or_empty(self) -> List[str]:
        try:
            return await self.registry.list_devices()
        except Exception as e:
            logger.error(f"Could not list devices: {e}")
            return []

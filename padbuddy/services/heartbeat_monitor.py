"""
Heartbeat liveness monitor.

Devices write devices/{deviceId}/heartbeat, either millis() since boot or
epoch milliseconds, or an object with heartbeat/lastSeen.

TWO ENTRY POINTS, SAME RULES:
  - record_heartbeat(): reactive, called for every heartbeat write
  - sweep(): periodic, re-reads every device's heartbeat and ages it

A heartbeat counts as a liveness signal only if it is strictly greater
than the previous value seen for that device. For wall-clock heartbeats
the device was seen at the reported instant; for boot counters it was
seen when we received the new value. A device is online while
now - lastHeartbeatAt < offline threshold.

TRANSITIONS (exactly once each, durable record first, then notify):
  online -> offline: persist, audit, open device_offline alert, offlineAlert
  offline -> online: persist, audit, resolve open alerts, recovered
A device's first heartbeat is persisted and audited without notifying.

The per-device LivenessState lives here and is reachable only through
current(); nothing else mutates it.
"""

import asyncio
import logging
from typing import Any, Dict, Optional

from ..models.audit import AlertSeverity, AuditEntry, AuditKind, DeviceAlert
from ..models.liveness import LivenessState
from ..storage.audit_store import AuditStore
from ..storage.liveness_store import LivenessStore
from ..utils.timestamps import now_ms, parse_number, to_epoch_ms
from .config_manager import ConfigManager
from .control_channel import ControlChannel
from .device_registry import DeviceRegistry
from .diagnostics import DiagnosticsService
from .notifications import NotificationSink, send_safely

logger = logging.getLogger(__name__)

OFFLINE_ALERT_TYPE = "device_offline"


def parse_heartbeat(value: Any) -> Optional[float]:
    """Extract the numeric heartbeat from a raw control channel value"""
    if isinstance(value, dict):
        for key in ("heartbeat", "lastSeen"):
            number = parse_number(value.get(key))
            if number is not None:
                return number
        return None
    return parse_number(value)


class HeartbeatMonitor:

    def __init__(
        self,
        control_channel: ControlChannel,
        registry: DeviceRegistry,
        liveness_store: LivenessStore,
        audit_store: AuditStore,
        notifications: NotificationSink,
        config_manager: Optional[ConfigManager] = None,
        diagnostics: Optional[DiagnosticsService] = None,
        clock=now_ms,
    ):
        self.control_channel = control_channel
        self.registry = registry
        self.liveness_store = liveness_store
        self.audit_store = audit_store
        self.notifications = notifications
        self.config_manager = config_manager or ConfigManager()
        self.diagnostics = diagnostics or DiagnosticsService()
        self.clock = clock

        self._states: Dict[str, LivenessState] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self._running = False

    # ─────────────────────────────────────────────────────────────
    # State access
    # ─────────────────────────────────────────────────────────────

    async def load(self):
        """Restore persisted states so a restart does not re-alert"""
        self._states.update(await self.liveness_store.load_all())

    def current(self, device_id: str, now: Optional[int] = None) -> LivenessState:
        """Liveness of a device as of now (a copy; never the live record)"""
        state = self._states.get(device_id)
        if state is None:
            return LivenessState(device_id=device_id)
        now = self.clock() if now is None else now
        age = state.age_ms(now)
        online = age is not None and 0 <= age < self._threshold_ms()
        return state.model_copy(update={"online": online})

    def _state(self, device_id: str) -> LivenessState:
        if device_id not in self._states:
            self._states[device_id] = LivenessState(device_id=device_id)
        return self._states[device_id]

    def _lock(self, device_id: str) -> asyncio.Lock:
        if device_id not in self._locks:
            self._locks[device_id] = asyncio.Lock()
        return self._locks[device_id]

    def _threshold_ms(self) -> int:
        return int(self.config_manager.get_offline_threshold() * 1000)

    # ─────────────────────────────────────────────────────────────
    # Entry points
    # ─────────────────────────────────────────────────────────────

    async def record_heartbeat(self, device_id: str, value: Any, now: Optional[int] = None) -> LivenessState:
        """Reactive path: a device wrote a heartbeat"""
        raw = parse_heartbeat(value)
        if raw is None:
            logger.warning(f"⚠️ Unreadable heartbeat from {device_id}: {value!r}")
            return self.current(device_id, now)

        now = self.clock() if now is None else now
        self.diagnostics.record_heartbeat()
        async with self._lock(device_id):
            state = self._state(device_id)
            if self._observe(state, raw, now):
                await self._evaluate(state, now)
        return self.current(device_id, now)

    async def start(self):
        """Run the periodic sweep until stop()"""
        self._running = True
        logger.info("Heartbeat monitor started")

        while self._running:
            try:
                await self.sweep()
            except Exception as e:
                logger.error(f"Heartbeat sweep failed: {e}")

            await asyncio.sleep(self.config_manager.get_heartbeat_sweep_period())

    async def stop(self):
        self._running = False
        logger.info("Heartbeat monitor stopped")

    async def sweep(self, now: Optional[int] = None) -> int:
        """Re-evaluate every device.

        Returns:
            number of online/offline transitions
        """
        now = self.clock() if now is None else now
        devices = set(await self.registry.list_devices()) | set(self._states)
        transitions = 0
        for device_id in sorted(devices):
            try:
                if await self._sweep_device(device_id, now):
                    transitions += 1
            except Exception as e:
                self.diagnostics.record_error()
                logger.error(f"❌ Heartbeat check failed for {device_id}: {e}")
        self.diagnostics.record_sweep()
        return transitions

    async def _sweep_device(self, device_id: str, now: int) -> bool:
        raw = parse_heartbeat(await self.control_channel.get(f"devices/{device_id}/heartbeat"))
        async with self._lock(device_id):
            state = self._state(device_id)
            if raw is not None:
                self._observe(state, raw, now)
            return await self._evaluate(state, now)

    # ─────────────────────────────────────────────────────────────
    # Rules
    # ─────────────────────────────────────────────────────────────

    def _observe(self, state: LivenessState, raw: float, now: int) -> bool:
        """Fold a heartbeat value into state. True if it was a liveness signal."""
        previous = state.last_heartbeat_value
        if previous is not None and raw <= previous:
            logger.debug(f"Heartbeat for {state.device_id} unchanged ({raw} <= {previous})")
            return False

        seen_at = to_epoch_ms(raw)
        if seen_at is None:
            seen_at = now
        if now - seen_at < 0:
            logger.warning(
                f"⚠️ Heartbeat for {state.device_id} is {(seen_at - now) / 1000:.0f}s in the future, "
                f"ignoring (clock skew?)"
            )
            return False

        state.last_heartbeat_value = raw
        state.last_heartbeat_at = seen_at
        return True

    async def _evaluate(self, state: LivenessState, now: int) -> bool:
        """Apply the online/offline rule. True if the device changed state."""
        age = state.age_ms(now)
        if age is None:
            return False
        if age < 0:
            logger.warning(f"⚠️ Negative heartbeat age for {state.device_id}, skipping")
            return False

        online = age < self._threshold_ms()
        first_seen = state.last_transition_at is None
        if online == state.online and not (first_seen and online):
            return False

        state.online = online
        state.last_transition_at = now
        await self._persist(state)

        if online and first_seen:
            logger.info(f"🟢 Device {state.device_id} seen for the first time")
            await self._audit(state, "device_first_seen", now, age)
        elif online:
            await self._on_recovered(state, now, age)
        else:
            await self._on_offline(state, now, age)
        if not first_seen:
            self.diagnostics.record_transition(online)
        return True

    # ─────────────────────────────────────────────────────────────
    # Transition side effects
    # ─────────────────────────────────────────────────────────────

    async def _on_offline(self, state: LivenessState, now: int, age: int):
        minutes_offline = round(age / 60000)
        logger.warning(f"🔴 Device {state.device_id} OFFLINE (no heartbeat for {minutes_offline} min)")
        await self._audit(state, "device_offline", now, age)

        alert_id = None
        try:
            alert_id = await self.audit_store.open_alert(DeviceAlert(
                device_id=state.device_id,
                type=OFFLINE_ALERT_TYPE,
                severity=AlertSeverity.CRITICAL,
                message=f"Device {state.device_id} is offline (no heartbeat for {minutes_offline} minutes)",
                timestamp=now,
            ))
        except Exception as e:
            self.diagnostics.record_error()
            logger.error(f"❌ Failed to open offline alert for {state.device_id}: {e}")

        delivered = await send_safely(
            self.notifications.offline_alert(state.device_id, minutes_offline),
            f"offlineAlert {state.device_id}",
        )
        if delivered and alert_id:
            try:
                await self.audit_store.mark_alert_notified(alert_id)
            except Exception as e:
                logger.warning(f"Could not mark alert {alert_id} notified: {e}")

    async def _on_recovered(self, state: LivenessState, now: int, age: int):
        logger.info(f"🟢 Device {state.device_id} back ONLINE")
        await self._audit(state, "device_online", now, age)
        try:
            await self.audit_store.resolve_alerts(state.device_id, OFFLINE_ALERT_TYPE, now)
        except Exception as e:
            self.diagnostics.record_error()
            logger.error(f"❌ Failed to resolve offline alerts for {state.device_id}: {e}")
        await send_safely(self.notifications.recovered(state.device_id), f"recovered {state.device_id}")

    async def _persist(self, state: LivenessState):
        # Save failures are logged; audit and notification still follow
        try:
            await self.liveness_store.save(state.model_copy())
        except Exception as e:
            self.diagnostics.record_error()
            logger.error(f"❌ Failed to persist liveness for {state.device_id}: {e}")
        try:
            await self.control_channel.update(f"devices/{state.device_id}/status", {
                "online": state.online,
                "lastChecked": state.last_transition_at,
                "lastHeartbeat": state.last_heartbeat_at,
            })
        except Exception as e:
            logger.warning(f"Could not mirror status for {state.device_id}: {e}")

    async def _audit(self, state: LivenessState, event: str, now: int, age: int):
        try:
            await self.audit_store.append(AuditEntry(
                device_id=state.device_id,
                kind=AuditKind.LIVENESS,
                event=event,
                timestamp=now,
                status="online" if state.online else "offline",
                details={
                    "lastHeartbeatAt": state.last_heartbeat_at,
                    "lastHeartbeatValue": state.last_heartbeat_value,
                    "ageSeconds": round(age / 1000),
                },
            ))
        except Exception as e:
            self.diagnostics.record_error()
            logger.error(f"❌ Failed to audit {event} for {state.device_id}: {e}")

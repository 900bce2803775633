"""In-memory stand-ins for the control channel, stores and collaborators"""

import asyncio
import copy
from typing import Any, Callable, Dict, List, Optional

from padbuddy.models.audit import AuditEntry, AuditKind, DeviceAlert
from padbuddy.models.liveness import LivenessState
from padbuddy.models.schedule import ScheduleDefinition
from padbuddy.services.control_channel import ControlChannel, Subscription
from padbuddy.services.device_registry import DeviceRegistry
from padbuddy.services.notifications import NotificationSink
from padbuddy.storage.audit_store import AuditStore
from padbuddy.storage.liveness_store import LivenessStore
from padbuddy.storage.schedule_store import ScheduleStore

# Fixed epoch-ms starting point for clocks (2024-05-01T00:00:00Z)
T0 = 1_714_521_600_000


class FakeClock:
    """Callable epoch-ms clock that only moves when told to"""

    def __init__(self, start: int = T0):
        self.now = start

    def __call__(self) -> int:
        return self.now

    def advance(self, seconds: float) -> int:
        self.now += int(seconds * 1000)
        return self.now


async def drain(rounds: int = 20):
    """Let scheduled callbacks and the tasks they spawn run"""
    for _ in range(rounds):
        await asyncio.sleep(0)


def _split(path: str) -> List[str]:
    return [part for part in path.strip("/").split("/") if part]


def _related(a: str, b: str) -> bool:
    pa, pb = _split(a), _split(b)
    n = min(len(pa), len(pb))
    return pa[:n] == pb[:n]


class _FakeSubscription(Subscription):
    def __init__(self, channel: "FakeControlChannel", path: str, callback):
        self.channel = channel
        self.path = path
        self.callback = callback
        self.closed = False

    def close(self):
        self.closed = True
        if self in self.channel.subscriptions:
            self.channel.subscriptions.remove(self)


class FakeControlChannel(ControlChannel):
    """Tree store with the same full-value notification contract"""

    def __init__(self):
        self.tree: Dict[str, Any] = {}
        self.subscriptions: List[_FakeSubscription] = []
        self.fail_writes = False
        self.fail_reads_under: Optional[str] = None
        self.writes: List[str] = []

    # -- tree helpers ------------------------------------------------------

    def read(self, path: str) -> Any:
        node: Any = self.tree
        for part in _split(path):
            if not isinstance(node, dict) or part not in node:
                return None
            node = node[part]
        return copy.deepcopy(node)

    def _write(self, path: str, value: Any):
        parts = _split(path)
        node = self.tree
        for part in parts[:-1]:
            if not isinstance(node.get(part), dict):
                node[part] = {}
            node = node[part]
        if value is None:
            node.pop(parts[-1], None)
        else:
            node[parts[-1]] = copy.deepcopy(value)
        self.writes.append(path)
        self._notify(path)

    def _notify(self, path: str):
        loop = asyncio.get_running_loop()
        for sub in list(self.subscriptions):
            if _related(sub.path, path):
                loop.call_soon(self._deliver, sub)

    def _deliver(self, sub: _FakeSubscription):
        if not sub.closed:
            sub.callback(sub.path, self.read(sub.path))

    def device_writes(self, path: str, values: Dict[str, Any]):
        """Simulate a device updating fields on a record"""
        current = self.read(path) or {}
        current.update(values)
        self._write(path, current)

    def device_deletes(self, path: str):
        """Simulate a device or web client clearing a record"""
        self._write(path, None)

    # -- ControlChannel ----------------------------------------------------

    async def get(self, path: str) -> Any:
        if self.fail_reads_under and path.startswith(self.fail_reads_under):
            raise ConnectionError(f"read failed: {path}")
        return self.read(path)

    async def set(self, path: str, value: Any):
        if self.fail_writes:
            raise ConnectionError(f"write failed: {path}")
        self._write(path, value)

    async def update(self, path: str, values: Dict[str, Any]):
        if self.fail_writes:
            raise ConnectionError(f"write failed: {path}")
        current = self.read(path) or {}
        current.update(values)
        self._write(path, current)

    async def transaction(self, path: str, update_fn: Callable[[Any], Any]) -> Any:
        if self.fail_writes:
            raise ConnectionError(f"transaction failed: {path}")
        current = self.read(path)
        new_value = update_fn(copy.deepcopy(current))
        if new_value != current:
            self._write(path, new_value)
        return copy.deepcopy(new_value)

    async def subscribe(self, path: str, callback) -> Subscription:
        sub = _FakeSubscription(self, path, callback)
        self.subscriptions.append(sub)
        asyncio.get_running_loop().call_soon(self._deliver, sub)
        return sub


class AutoResponder:
    """Device double that answers every sent command on a device"""

    def __init__(self, channel: FakeControlChannel, device_id: str, status: str = "completed",
                 actual_state: Any = "ON", error: Optional[str] = None):
        self.channel = channel
        self.device_id = device_id
        self.status = status
        self.actual_state = actual_state
        self.error = error
        self.answered: List[str] = []

    async def attach(self):
        await self.channel.subscribe(f"devices/{self.device_id}/commands", self._on_change)

    def _on_change(self, path: str, tree: Any):
        if not isinstance(tree, dict):
            return
        for node_id, slots in tree.items():
            for slot, record in (slots or {}).items():
                if isinstance(record, dict) and record.get("status") == "sent" \
                        and record.get("id") not in self.answered:
                    self.answered.append(record["id"])
                    reply = {"status": self.status, "actualState": self.actual_state}
                    if self.error:
                        reply["error"] = self.error
                    self.channel.device_writes(f"{path}/{node_id}/{slot}", reply)


class InMemoryAuditStore(AuditStore):

    def __init__(self):
        self.entries: List[AuditEntry] = []
        self.alerts: Dict[str, DeviceAlert] = {}
        self.fail_appends = False

    def events(self, event: Optional[str] = None) -> List[str]:
        return [e.event for e in self.entries if event is None or e.event == event]

    async def append(self, entry: AuditEntry):
        if self.fail_appends:
            raise ConnectionError("audit store unavailable")
        self.entries.append(entry)

    async def query(self, device_id: str, since: int) -> List[AuditEntry]:
        return sorted(
            (e for e in self.entries if e.device_id == device_id and e.timestamp >= since),
            key=lambda e: e.timestamp,
        )

    async def latest(self, device_id: str, kind: AuditKind) -> Optional[AuditEntry]:
        matches = [e for e in self.entries if e.device_id == device_id and e.kind is kind]
        return max(matches, key=lambda e: e.timestamp) if matches else None

    async def open_alert(self, alert: DeviceAlert) -> str:
        alert_id = f"alert-{len(self.alerts) + 1}"
        self.alerts[alert_id] = alert
        return alert_id

    async def mark_alert_notified(self, alert_id: str):
        self.alerts[alert_id] = self.alerts[alert_id].model_copy(update={"notified": True})

    async def resolve_alerts(self, device_id: str, alert_type: str, resolved_at: int) -> int:
        count = 0
        for alert_id, alert in self.alerts.items():
            if alert.device_id == device_id and alert.type == alert_type and not alert.resolved:
                self.alerts[alert_id] = alert.model_copy(update={"resolved": True, "resolved_at": resolved_at})
                count += 1
        return count

    async def purge_before(self, cutoff: int) -> int:
        before = len(self.entries)
        self.entries = [e for e in self.entries if e.timestamp >= cutoff]
        return before - len(self.entries)


class InMemoryScheduleStore(ScheduleStore):

    def __init__(self, schedules: Optional[List[ScheduleDefinition]] = None):
        self.schedules: Dict[str, ScheduleDefinition] = {s.id: s for s in schedules or []}
        self.persisted: List[ScheduleDefinition] = []

    async def list_enabled(self) -> List[ScheduleDefinition]:
        return [s for s in self.schedules.values() if s.enabled]

    async def persist(self, schedule: ScheduleDefinition):
        self.schedules[schedule.id] = schedule
        self.persisted.append(schedule)

    async def get(self, schedule_id: str) -> Optional[ScheduleDefinition]:
        return self.schedules.get(schedule_id)


class InMemoryLivenessStore(LivenessStore):

    def __init__(self, states: Optional[Dict[str, LivenessState]] = None):
        self.states: Dict[str, LivenessState] = dict(states or {})
        self.saves: List[LivenessState] = []

    async def load_all(self) -> Dict[str, LivenessState]:
        return {k: v.model_copy() for k, v in self.states.items()}

    async def save(self, state: LivenessState):
        self.states[state.device_id] = state
        self.saves.append(state)


class StaticRegistry(DeviceRegistry):

    def __init__(self, owners: Dict[str, str]):
        self.owners = owners
        self.fail = False

    async def is_known(self, device_id: str) -> bool:
        if self.fail:
            raise ConnectionError("registry unavailable")
        return device_id in self.owners

    async def owner_of(self, device_id: str) -> Optional[str]:
        return self.owners.get(device_id)

    async def list_devices(self) -> List[str]:
        return list(self.owners)


class RecordingNotificationSink(NotificationSink):

    def __init__(self):
        self.sent: List[tuple] = []
        self.fail = False

    def of_type(self, kind: str) -> List[tuple]:
        return [n for n in self.sent if n[0] == kind]

    async def offline_alert(self, device_id: str, minutes_offline: int):
        self._record(("offline", device_id, minutes_offline))

    async def command_failed(self, device_id: str, command_id: str, reason: str):
        self._record(("commandFailed", device_id, command_id, reason))

    async def recovered(self, device_id: str):
        self._record(("recovered", device_id))

    def _record(self, notification: tuple):
        if self.fail:
            raise ConnectionError("push service down")
        self.sent.append(notification)

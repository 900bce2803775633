"""
Shared fixtures for the orchestrator test suite.

Provides:
- clock: FakeClock (epoch ms, advanced explicitly)
- channel: FakeControlChannel (in-memory control channel tree)
- audit_store, schedule_store, liveness_store: in-memory stores
- registry: StaticRegistry with device "pad-1" owned by "user-1"
- notifications: RecordingNotificationSink
- config_manager: ConfigManager with the default intervals
- orchestrator: Orchestrator wired to all of the above
"""

from datetime import datetime, timezone

import pytest

from padbuddy.core.orchestrator import Orchestrator
from padbuddy.models.command import CommandNode
from padbuddy.services.config_manager import ConfigManager

from fakes import (
    FakeClock,
    FakeControlChannel,
    InMemoryAuditStore,
    InMemoryLivenessStore,
    InMemoryScheduleStore,
    RecordingNotificationSink,
    StaticRegistry,
)

DEVICE_ID = "pad-1"
OWNER_ID = "user-1"

INTERVALS = {
    "command_timeout_s": 30,
    "timeout_sweep_period_s": 60,
    "offline_threshold_s": 600,
    "heartbeat_sweep_period_s": 120,
    "staleness_window_s": 3600,
    "dedup_window_s": 300,
    "schedule_period_s": 60,
    "sensor_poll_period_s": 300,
    "retention_period_s": 86400,
}


# ===== Collaborator Fixtures =====

@pytest.fixture()
def clock():
    """Epoch-ms clock frozen at 2024-05-01T00:00:00Z"""
    return FakeClock()


@pytest.fixture()
def channel():
    return FakeControlChannel()


@pytest.fixture()
def audit_store():
    return InMemoryAuditStore()


@pytest.fixture()
def schedule_store():
    return InMemoryScheduleStore()


@pytest.fixture()
def liveness_store():
    return InMemoryLivenessStore()


@pytest.fixture()
def registry():
    """One registered device"""
    return StaticRegistry({DEVICE_ID: OWNER_ID})


@pytest.fixture()
def notifications():
    return RecordingNotificationSink()


@pytest.fixture()
def config_manager():
    """Intervals pinned to their documented defaults, independent of the environment"""
    return ConfigManager(overrides=dict(INTERVALS))


# ===== Orchestrator Fixtures =====

@pytest.fixture()
def schedule_now():
    """Mutable holder for the scheduler's wall clock"""
    return {"now": datetime(2024, 5, 1, 0, 0, tzinfo=timezone.utc)}


@pytest.fixture()
def orchestrator(channel, audit_store, schedule_store, liveness_store, registry,
                 notifications, config_manager, clock, schedule_now):
    """Orchestrator wired to in-memory collaborators and fake clocks"""
    return Orchestrator(
        channel,
        audit_store,
        schedule_store,
        liveness_store,
        registry,
        notifications,
        config_manager=config_manager,
        clock=clock,
        schedule_clock=lambda: schedule_now["now"],
    )


@pytest.fixture()
def relay1():
    return CommandNode(device_id=DEVICE_ID, node_id="ESP32A", slot="relay1")

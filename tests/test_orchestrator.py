"""Orchestrator: sensor ingestion, statistics, retention and listener wiring"""

import asyncio

import pytest

from padbuddy.models.audit import AuditEntry, AuditKind
from padbuddy.models.command import CommandNode

from fakes import T0, drain

DAY_MS = 24 * 60 * 60 * 1000


class TestIngestSensorReading:

    @pytest.mark.asyncio
    async def test_accepted_reading_is_logged(self, orchestrator, audit_store):
        decision = await orchestrator.ingest_sensor_reading("pad-1", {"n": 12, "p": 7, "k": 30, "timestamp": T0})

        assert decision.accepted
        [entry] = audit_store.entries
        assert entry.kind is AuditKind.SENSOR
        assert entry.event == "sensor_reading"
        assert entry.details["values"] == {"nitrogen": 12.0, "phosphorus": 7.0, "potassium": 30.0}
        assert entry.details["receivedAt"] == T0

    @pytest.mark.asyncio
    async def test_duplicate_push_is_not_logged(self, orchestrator, audit_store, clock):
        await orchestrator.ingest_sensor_reading("pad-1", {"nitrogen": 12, "timestamp": T0})
        clock.advance(60)
        decision = await orchestrator.ingest_sensor_reading("pad-1", {"nitrogen": 12, "timestamp": T0 + 60_000})

        assert decision.reason == "near_duplicate"
        assert len(audit_store.entries) == 1
        assert orchestrator.diagnostics.rejections_by_reason["near_duplicate"] == 1

    @pytest.mark.asyncio
    async def test_history_survives_restart(self, orchestrator, audit_store):
        await audit_store.append(AuditEntry(
            device_id="pad-1",
            kind=AuditKind.SENSOR,
            event="sensor_reading",
            timestamp=T0 - 60_000,
            details={"values": {"nitrogen": 12.0}, "sourceTimestamp": T0 - 60_000, "receivedAt": T0 - 60_000},
        ))

        decision = await orchestrator.ingest_sensor_reading("pad-1", {"nitrogen": 12, "timestamp": T0})

        assert not decision.accepted
        assert decision.reason == "near_duplicate"

    @pytest.mark.asyncio
    async def test_empty_push_is_rejected(self, orchestrator, audit_store):
        decision = await orchestrator.ingest_sensor_reading("pad-1", {"status": "idle"})
        assert decision.reason == "all_values_null"
        assert audit_store.entries == []


class TestCommandStats:

    @pytest.mark.asyncio
    async def test_stats_from_audit_log(self, orchestrator, channel, clock, relay1):
        await orchestrator.record_heartbeat("pad-1", 1000)
        relay2 = CommandNode(device_id="pad-1", node_id="ESP32A", slot="relay2")

        first = await orchestrator.dispatch(relay1, "on")
        await orchestrator.dispatch(relay2, "on")
        clock.advance(2)
        channel.device_writes(relay1.path, {"status": "completed", "actualState": "ON"})
        await first.wait(timeout=1)
        clock.advance(29)
        await orchestrator.sweeper.sweep()

        stats = await orchestrator.command_stats("pad-1")

        assert stats.total == 2
        assert stats.successful == 1
        assert stats.failed == 0
        assert stats.timed_out == 1
        assert stats.average_response_time_ms == 2000

    @pytest.mark.asyncio
    async def test_no_commands(self, orchestrator):
        stats = await orchestrator.command_stats("pad-1")
        assert stats.total == 0
        assert stats.average_response_time_ms is None


class TestMaintenance:

    @pytest.mark.asyncio
    async def test_purge_old_logs(self, orchestrator, audit_store, monkeypatch):
        monkeypatch.setattr("padbuddy.config.LOG_RETENTION_DAYS", 90)
        for age_days in (120, 91, 10):
            await audit_store.append(AuditEntry(
                device_id="pad-1", kind=AuditKind.SYSTEM, event="note", timestamp=T0 - age_days * DAY_MS,
            ))

        assert await orchestrator.purge_old_logs() == 2
        assert len(audit_store.entries) == 1

    @pytest.mark.asyncio
    async def test_health_summary(self, orchestrator, relay1):
        await orchestrator.record_heartbeat("pad-1", 1000)
        await orchestrator.dispatch(relay1, "on")

        summary = orchestrator.health_summary()

        assert summary["status"] == "healthy"
        assert summary["commands_dispatched"] == 1
        assert summary["commands_watching"] == 1
        assert summary["intervals"]["command_timeout_s"] == 30


class TestLifecycle:

    @pytest.mark.asyncio
    async def test_listeners_feed_heartbeat_and_sensor_paths(self, orchestrator, channel, audit_store):
        task = asyncio.create_task(orchestrator.start())
        await drain()

        await channel.set("devices/pad-1/heartbeat", 1000)
        await channel.set("devices/pad-1/npk", {"nitrogen": 10, "timestamp": T0})
        await drain()

        assert orchestrator.current_liveness("pad-1").online
        assert audit_store.events("sensor_reading") == ["sensor_reading"]

        await orchestrator.stop()
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        assert channel.subscriptions == []

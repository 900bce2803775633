"""Command dispatch: validation, one outstanding command per node, offline advisory"""

import pytest
import pytest_asyncio

from padbuddy.errors import DeviceOfflineWarning, DispatchError, NodeBusyError
from padbuddy.models.command import CommandNode, CommandState

from fakes import drain


@pytest_asyncio.fixture()
async def online(orchestrator):
    """pad-1 has sent a heartbeat just now"""
    await orchestrator.record_heartbeat("pad-1", 1000)
    return orchestrator


class TestDispatch:

    @pytest.mark.asyncio
    async def test_writes_sent_record_and_audits(self, online, channel, audit_store, relay1, clock):
        handle = await online.dispatch(relay1, "on", {"duration": 5})

        record = channel.read(relay1.path)
        assert record["id"] == handle.command_id
        assert record["state"] == "sent"
        assert record["status"] == "sent"
        assert record["action"] == "on"
        assert record["params"] == {"duration": 5}
        assert record["requestedAt"] == clock.now
        assert record["requestedBy"] == "operator"

        assert handle.state is CommandState.SENT
        assert not handle.done()
        assert not handle.device_offline

        sent = [e for e in audit_store.entries if e.event == "command_sent"]
        assert len(sent) == 1
        assert sent[0].command_id == handle.command_id
        assert sent[0].details["deviceOffline"] is False

    @pytest.mark.asyncio
    async def test_unrecognized_slot_is_rejected(self, online, channel, audit_store):
        node = CommandNode(device_id="pad-1", node_id="ESP32A", slot="motor")
        with pytest.raises(DispatchError):
            await online.dispatch(node, "on")
        assert channel.read("devices/pad-1/commands") is None
        assert audit_store.events("command_sent") == []

    @pytest.mark.asyncio
    async def test_unknown_device_is_rejected(self, online, channel, audit_store):
        node = CommandNode(device_id="ghost", node_id="ESP32B", slot="motor")
        with pytest.raises(DispatchError) as excinfo:
            await online.dispatch(node, "forward")
        assert excinfo.value.device_id == "ghost"
        assert channel.read("devices/ghost") is None
        assert audit_store.events("command_sent") == []

    @pytest.mark.asyncio
    async def test_write_failure_means_command_never_existed(self, online, channel, audit_store, relay1):
        channel.fail_writes = True
        with pytest.raises(DispatchError):
            await online.dispatch(relay1, "on")
        assert channel.read(relay1.path) is None
        assert audit_store.events("command_sent") == []
        assert online.watcher.watching == 0

    @pytest.mark.asyncio
    async def test_registry_failure_is_a_dispatch_error(self, online, registry, relay1):
        registry.fail = True
        with pytest.raises(DispatchError):
            await online.dispatch(relay1, "on")


class TestNodeBusy:

    @pytest.mark.asyncio
    async def test_second_command_on_busy_node_is_rejected(self, online, channel, relay1):
        first = await online.dispatch(relay1, "on")

        with pytest.raises(NodeBusyError) as excinfo:
            await online.dispatch(relay1, "off")

        assert excinfo.value.command_id == first.command_id
        assert isinstance(excinfo.value, DispatchError)
        assert channel.read(relay1.path)["id"] == first.command_id
        assert channel.read(relay1.path)["action"] == "on"

    @pytest.mark.asyncio
    async def test_other_slots_are_independent(self, online, relay1):
        await online.dispatch(relay1, "on")
        relay2 = CommandNode(device_id="pad-1", node_id="ESP32A", slot="relay2")
        handle = await online.dispatch(relay2, "on")
        assert handle.node == relay2

    @pytest.mark.asyncio
    async def test_node_is_free_again_after_terminal_state(self, online, channel, relay1):
        first = await online.dispatch(relay1, "on")
        channel.device_writes(relay1.path, {"status": "completed", "actualState": "ON"})
        await first.wait(timeout=1)

        second = await online.dispatch(relay1, "off")
        assert channel.read(relay1.path)["id"] == second.command_id


class TestOfflineAdvisory:

    @pytest.mark.asyncio
    async def test_offline_device_still_gets_the_command(self, orchestrator, channel, audit_store, relay1):
        with pytest.warns(DeviceOfflineWarning):
            handle = await orchestrator.dispatch(relay1, "on")

        assert handle.device_offline
        assert channel.read(relay1.path)["state"] == "sent"
        sent = [e for e in audit_store.entries if e.event == "command_sent"]
        assert sent[0].details["deviceOffline"] is True

    @pytest.mark.asyncio
    async def test_stale_heartbeat_counts_as_offline(self, orchestrator, clock, relay1):
        await orchestrator.record_heartbeat("pad-1", 1000)
        clock.advance(601)
        with pytest.warns(DeviceOfflineWarning):
            handle = await orchestrator.dispatch(relay1, "on")
        await drain()
        assert handle.device_offline

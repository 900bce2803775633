from unittest.mock import MagicMock

import pytest

from padbuddy.services.config_manager import ConfigManager


def firestore_with(document=None, error=None):
    """Mock sync Firestore client whose config/orchestrator doc holds `document`"""
    doc = MagicMock()
    doc.exists = document is not None
    doc.to_dict.return_value = document
    client = MagicMock()
    ref = client.collection.return_value.document.return_value
    if error:
        ref.get.side_effect = error
    else:
        ref.get.return_value = doc
    return client, ref


def test_defaults_cover_every_interval():
    manager = ConfigManager()
    assert set(manager.get_all_intervals()) == set(ConfigManager.INTERVAL_BOUNDS)


def test_overrides():
    manager = ConfigManager(overrides={"command_timeout_s": 12})
    assert manager.get_command_timeout() == 12


def test_apply_keeps_only_valid_values():
    manager = ConfigManager(overrides={"command_timeout_s": 30, "offline_threshold_s": 600})
    manager._apply({
        "command_timeout_s": "45",
        "offline_threshold_s": 5,
        "dedup_window_s": "soon",
        "unknown_key": 1,
    })
    assert manager.get_command_timeout() == 45.0
    assert manager.get_offline_threshold() == 600


def test_apply_with_nothing_valid_changes_nothing():
    manager = ConfigManager()
    before = manager.get_all_intervals()
    manager._apply({"schedule_period_s": 0})
    assert manager.get_all_intervals() == before


@pytest.mark.asyncio
async def test_initialize_loads_firestore_overrides():
    client, _ = firestore_with({"offline_threshold_s": 900})
    manager = ConfigManager(firestore_db=client)
    await manager.initialize()
    assert manager.get_offline_threshold() == 900.0


@pytest.mark.asyncio
async def test_initialize_keeps_defaults_on_error():
    client, _ = firestore_with(error=RuntimeError("unavailable"))
    manager = ConfigManager(firestore_db=client, overrides={"offline_threshold_s": 600})
    await manager.initialize()
    assert manager.get_offline_threshold() == 600


def test_live_updates_and_stop():
    client, ref = firestore_with({})
    manager = ConfigManager(firestore_db=client)
    manager.listen_for_changes()

    on_snapshot = ref.on_snapshot.call_args[0][0]
    doc = MagicMock()
    doc.exists = True
    doc.to_dict.return_value = {"schedule_period_s": 30}
    on_snapshot([doc], [], None)
    assert manager.get_schedule_period() == 30.0

    handle = ref.on_snapshot.return_value
    manager.stop_listening()
    handle.unsubscribe.assert_called_once()

"""Lifecycle state machine and the transaction bodies built on it"""

import warnings
from pathlib import Path

import pytest

import padbuddy
from padbuddy.errors import InvalidTransition
from padbuddy.models.command import CommandRecord, CommandState, TIMEOUT_ERROR_MESSAGE
from padbuddy.services.command_state import (
    apply_transition,
    can_transition,
    expire_if_overdue,
    resolve_device_update,
    state_for_device_status,
    won_transition,
)

from fakes import T0


def make_record(state=CommandState.SENT, status="sent", **extra):
    record = CommandRecord(
        id="cmd-1",
        device_id="pad-1",
        node_id="ESP32A",
        slot="relay1",
        action="on",
        state=state,
        status=status,
        requested_at=T0,
        sent_at=T0,
        requested_by="operator",
        last_transition_id="dispatch-token",
    )
    return {**record.to_wire(), **extra}


class TestTransitions:

    @pytest.mark.parametrize("terminal", [CommandState.COMPLETED, CommandState.FAILED, CommandState.TIMED_OUT])
    def test_nothing_leaves_a_terminal_state(self, terminal):
        assert terminal.is_terminal
        for dst in CommandState:
            assert not can_transition(terminal, dst)

    def test_sent_can_skip_acknowledgment(self):
        assert can_transition(CommandState.SENT, CommandState.COMPLETED)
        assert can_transition(CommandState.SENT, CommandState.ACKNOWLEDGED)
        assert not can_transition(CommandState.ACKNOWLEDGED, CommandState.SENT)
        assert not can_transition(CommandState.PENDING, CommandState.COMPLETED)

    def test_apply_transition_stamps_times(self):
        record = CommandRecord.model_validate(make_record())
        acked = apply_transition(record, CommandState.ACKNOWLEDGED, T0 + 500, "t1")
        assert acked.acknowledged_at == T0 + 500
        assert acked.last_transition_id == "t1"

        done = apply_transition(acked, CommandState.COMPLETED, T0 + 900, "t2")
        assert done.completed_at == T0 + 900
        assert done.is_terminal

    def test_apply_transition_rejects_illegal_move(self):
        record = CommandRecord.model_validate(make_record(state="completed", status="completed"))
        with pytest.raises(InvalidTransition):
            apply_transition(record, CommandState.FAILED, T0, "t")

    def test_device_status_aliases(self):
        assert state_for_device_status("completed") is CommandState.COMPLETED
        assert state_for_device_status(" Executed ") is CommandState.COMPLETED
        assert state_for_device_status("received") is CommandState.ACKNOWLEDGED
        assert state_for_device_status("error") is CommandState.FAILED
        assert state_for_device_status("sent") is None
        assert state_for_device_status(None) is None


class TestResolveDeviceUpdate:

    def test_completes_and_keeps_device_fields(self):
        current = make_record(status="completed", actualState="ON", executedAt=12345)
        result = resolve_device_update(current, "cmd-1", "tok", T0 + 2000)

        record = won_transition(result, "tok")
        assert record is not None
        assert record.state is CommandState.COMPLETED
        assert record.completed_at == T0 + 2000
        assert result["actualState"] == "ON"
        assert result["executedAt"] == 12345

    def test_failed_without_error_gets_default_reason(self):
        result = resolve_device_update(make_record(status="failed"), "cmd-1", "tok", T0 + 1)
        record = won_transition(result, "tok")
        assert record.state is CommandState.FAILED
        assert record.error

    def test_terminal_record_is_left_alone(self):
        current = make_record(state="timed_out", status="completed", error=TIMEOUT_ERROR_MESSAGE)
        assert resolve_device_update(current, "cmd-1", "tok", T0 + 1) == current
        assert won_transition(current, "tok") is None

    def test_superseded_record_is_left_alone(self):
        current = make_record(status="completed")
        assert resolve_device_update(current, "other-command", "tok", T0) == current

    def test_malformed_value_is_left_alone(self):
        assert resolve_device_update({"status": "completed"}, "cmd-1", "tok", T0) == {"status": "completed"}
        assert resolve_device_update(None, "cmd-1", "tok", T0) is None


class TestExpireIfOverdue:

    def test_not_overdue_at_exactly_the_timeout(self):
        current = make_record()
        assert expire_if_overdue(current, "tok", T0 + 30_000, 30_000) == current

    def test_overdue_record_times_out(self):
        result = expire_if_overdue(make_record(state="acknowledged"), "tok", T0 + 30_001, 30_000)
        record = won_transition(result, "tok")
        assert record.state is CommandState.TIMED_OUT
        assert record.status == "timeout"
        assert record.error == TIMEOUT_ERROR_MESSAGE

    def test_completed_record_never_times_out(self):
        current = make_record(state="completed", status="completed")
        assert expire_if_overdue(current, "tok", T0 + 120_000, 30_000) == current


def test_package_sources_compile_without_warnings():
    root = Path(padbuddy.__file__).parent
    for path in sorted(root.rglob("*.py")):
        with warnings.catch_warnings():
            warnings.simplefilter("error")
            compile(path.read_text(encoding="utf-8"), str(path), "exec")

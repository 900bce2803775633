"""
Command lifecycle state machine.

    pending -> sent -> acknowledged -> completed | failed | timed_out
               sent -> completed | failed | timed_out

completed, failed and timed_out are terminal. Nothing leaves a terminal
state, which is what makes redelivered device notifications and the
watcher/sweeper race harmless: every transition is computed by the pure
functions below inside a control channel transaction, against the value
that is actually committed.
"""

import logging
from typing import Any, Dict, Optional

from pydantic import ValidationError

from ..errors import InvalidTransition
from ..models.command import CommandRecord, CommandState, TIMEOUT_ERROR_MESSAGE

logger = logging.getLogger(__name__)

_TRANSITIONS = {
    CommandState.PENDING: frozenset({CommandState.SENT}),
    CommandState.SENT: frozenset({
        CommandState.ACKNOWLEDGED,
        CommandState.COMPLETED,
        CommandState.FAILED,
        CommandState.TIMED_OUT,
    }),
    CommandState.ACKNOWLEDGED: frozenset({
        CommandState.COMPLETED,
        CommandState.FAILED,
        CommandState.TIMED_OUT,
    }),
    CommandState.COMPLETED: frozenset(),
    CommandState.FAILED: frozenset(),
    CommandState.TIMED_OUT: frozenset(),
}

# Status strings firmware and the web client have written back
DEVICE_STATUS_STATES = {
    "acknowledged": CommandState.ACKNOWLEDGED,
    "received": CommandState.ACKNOWLEDGED,
    "executing": CommandState.ACKNOWLEDGED,
    "in_progress": CommandState.ACKNOWLEDGED,
    "processing": CommandState.ACKNOWLEDGED,
    "completed": CommandState.COMPLETED,
    "executed": CommandState.COMPLETED,
    "success": CommandState.COMPLETED,
    "done": CommandState.COMPLETED,
    "failed": CommandState.FAILED,
    "error": CommandState.FAILED,
}

DEFAULT_FAILURE_REASON = "Device reported failure"


def can_transition(src: CommandState, dst: CommandState) -> bool:
    return dst in _TRANSITIONS[src]


def state_for_device_status(status: Optional[str]) -> Optional[CommandState]:
    """Map a device-written status to the lifecycle state it requests"""
    if not isinstance(status, str):
        return None
    return DEVICE_STATUS_STATES.get(status.strip().lower())


def apply_transition(
    record: CommandRecord,
    dst: CommandState,
    now: int,
    token: str,
    **changes: Any,
) -> CommandRecord:
    """Return a copy of record moved to dst.

    Raises:
        InvalidTransition: dst is not reachable from the record's state
    """
    if not can_transition(record.state, dst):
        raise InvalidTransition(f"{record.id}: {record.state.value} -> {dst.value}")

    update: Dict[str, Any] = {"state": dst, "last_transition_id": token}
    if dst is CommandState.SENT:
        update["sent_at"] = now
        update["status"] = "sent"
    elif dst is CommandState.ACKNOWLEDGED:
        update["acknowledged_at"] = now
    else:
        update["completed_at"] = now
    update.update(changes)
    return record.model_copy(update=update)


def _parse(current: Any) -> Optional[CommandRecord]:
    if not isinstance(current, dict):
        return None
    try:
        return CommandRecord.model_validate(current)
    except ValidationError as e:
        logger.warning(f"⚠️ Ignoring malformed command record: {e}")
        return None


def _merge(current: Dict[str, Any], record: CommandRecord) -> Dict[str, Any]:
    # Keep fields the device wrote that the model does not know about
    return {**current, **record.to_wire()}


def resolve_device_update(current: Any, command_id: str, token: str, now: int) -> Any:
    """Transaction body for the acknowledgment watcher.

    Applies the transition requested by the device-written status, if it
    is legal. Returns current unchanged otherwise.
    """
    record = _parse(current)
    if record is None or record.id != command_id:
        return current

    target = state_for_device_status(record.status)
    if target is None or target is record.state or not can_transition(record.state, target):
        return current

    changes: Dict[str, Any] = {}
    if target is CommandState.FAILED:
        changes["error"] = record.error or DEFAULT_FAILURE_REASON
    return _merge(current, apply_transition(record, target, now, token, **changes))


def expire_if_overdue(current: Any, token: str, now: int, timeout_ms: int) -> Any:
    """Transaction body for the timeout sweeper"""
    record = _parse(current)
    if record is None:
        return current
    if record.state not in (CommandState.SENT, CommandState.ACKNOWLEDGED):
        return current
    if now - record.requested_at <= timeout_ms:
        return current

    expired = apply_transition(
        record,
        CommandState.TIMED_OUT,
        now,
        token,
        status="timeout",
        error=TIMEOUT_ERROR_MESSAGE,
    )
    return _merge(current, expired)


def won_transition(committed: Any, token: str) -> Optional[CommandRecord]:
    """The committed record if the writer holding token made the last transition"""
    record = _parse(committed)
    if record is None or record.last_transition_id != token:
        return None
    return record

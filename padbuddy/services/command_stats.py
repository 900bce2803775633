"""Per-device command statistics from the audit log"""

from typing import Iterable

from ..models.audit import AuditEntry, AuditKind, CommandStats

_TERMINAL_EVENTS = {
    "command_completed": "successful",
    "command_failed": "failed",
    "command_timeout": "timed_out",
}


def summarize_commands(entries: Iterable[AuditEntry]) -> CommandStats:
    """Count dispatched commands and their outcomes.

    total counts dispatches (command_sent); outcomes count terminal
    entries, so commands still in flight appear in total only.
    """
    counts = {"total": 0, "successful": 0, "failed": 0, "timed_out": 0}
    response_times = []
    for entry in entries:
        if entry.kind is not AuditKind.COMMAND:
            continue
        if entry.event == "command_sent":
            counts["total"] += 1
            continue
        outcome = _TERMINAL_EVENTS.get(entry.event)
        if outcome is None:
            continue
        counts[outcome] += 1
        response_time = entry.details.get("responseTimeMs")
        if outcome == "successful" and isinstance(response_time, (int, float)):
            response_times.append(response_time)

    average = sum(response_times) / len(response_times) if response_times else None
    return CommandStats(average_response_time_ms=average, **counts)

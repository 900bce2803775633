"""Diagnostics service - track operational metrics"""

import logging
from collections import Counter
from datetime import datetime
from typing import Optional

logger = logging.getLogger(__name__)


class DiagnosticsService:
    """Lightweight counters for the orchestrator's health summary"""

    def __init__(self):
        self.start_time = datetime.now()
        self.counters = {
            'commands_dispatched': 0,
            'dispatch_errors': 0,
            'commands_completed': 0,
            'commands_failed': 0,
            'commands_timed_out': 0,
            'heartbeats_processed': 0,
            'offline_transitions': 0,
            'recoveries': 0,
            'readings_accepted': 0,
            'readings_rejected': 0,
            'schedules_executed': 0,
            'schedules_flagged': 0,
            'total_errors': 0,
        }
        self.rejections_by_reason: Counter = Counter()
        self.last_sweep_at: Optional[datetime] = None
        logger.info("Diagnostics service initialized")

    def record_dispatch(self):
        self.counters['commands_dispatched'] += 1

    def record_dispatch_error(self):
        self.counters['dispatch_errors'] += 1
        self.counters['total_errors'] += 1

    def record_outcome(self, state: str):
        """Record a terminal command state ('completed', 'failed', 'timed_out')"""
        key = f"commands_{state}"
        if key in self.counters:
            self.counters[key] += 1

    def record_heartbeat(self):
        self.counters['heartbeats_processed'] += 1

    def record_transition(self, online: bool):
        self.counters['recoveries' if online else 'offline_transitions'] += 1

    def record_reading(self, accepted: bool, reason: Optional[str] = None):
        if accepted:
            self.counters['readings_accepted'] += 1
        else:
            self.counters['readings_rejected'] += 1
            self.rejections_by_reason[reason or 'unknown'] += 1

    def record_schedule_run(self):
        self.counters['schedules_executed'] += 1

    def record_schedule_flagged(self):
        self.counters['schedules_flagged'] += 1

    def record_error(self):
        self.counters['total_errors'] += 1

    def record_sweep(self):
        self.last_sweep_at = datetime.now()

    def get_uptime_seconds(self) -> int:
        return int((datetime.now() - self.start_time).total_seconds())

    def get_uptime_formatted(self) -> str:
        seconds = self.get_uptime_seconds()
        hours = seconds // 3600
        minutes = (seconds % 3600) // 60
        return f"{hours}h {minutes}m"

    def get_timeout_rate(self) -> float:
        """Timed-out commands as a percentage of resolved commands"""
        resolved = (
            self.counters['commands_completed']
            + self.counters['commands_failed']
            + self.counters['commands_timed_out']
        )
        if resolved == 0:
            return 0.0
        return (self.counters['commands_timed_out'] / resolved) * 100

    def get_health_summary(self) -> dict:
        """Get health summary with key metrics

        Returns:
            dict with health status and counters
        """
        timeout_rate = self.get_timeout_rate()

        if self.counters['total_errors'] > 50:
            status = "degraded"
        elif timeout_rate > 25.0:
            status = "degraded"
        else:
            status = "healthy"

        return {
            'status': status,
            'uptime_seconds': self.get_uptime_seconds(),
            'uptime_formatted': self.get_uptime_formatted(),
            'timeout_rate_percent': round(timeout_rate, 2),
            **self.counters,
            'rejections_by_reason': dict(self.rejections_by_reason),
            'last_sweep_at': self.last_sweep_at.isoformat() if self.last_sweep_at else None,
            'timestamp': datetime.now().isoformat(),
        }

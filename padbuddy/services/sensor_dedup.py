"""
Sensor reading deduplicator.

Decides, per reading, whether a sensor push is worth persisting:
    all_values_null   nothing was measured
    stale             the reading's own timestamp is older than the
                      staleness window (only for wall-clock timestamps;
                      boot-relative readings cannot be aged)
    near_duplicate    same values as the last accepted reading for the
                      device within the dedup window, or the same source
                      timestamp as that reading

Only the decision is made here. Persisting accepted readings and any
aggregation happen elsewhere.
"""

import logging
from typing import Dict, Optional

from ..errors import (
    DuplicateReadingRejected,
    EmptyReadingRejected,
    ReadingRejected,
    StaleReadingRejected,
)
from ..models.sensor_data import Decision, SensorReading
from .config_manager import ConfigManager

logger = logging.getLogger(__name__)


def elapsed_ms(earlier: SensorReading, later: SensorReading) -> float:
    """Time between two readings on the best clock both share"""
    if earlier.source_timestamp is not None and later.source_timestamp is not None:
        if earlier.has_absolute_timestamp and later.has_absolute_timestamp:
            return later.source_epoch_ms - earlier.source_epoch_ms
        if not earlier.has_absolute_timestamp and not later.has_absolute_timestamp:
            return later.source_timestamp - earlier.source_timestamp
    return later.received_at - earlier.received_at


class SensorDeduplicator:

    def __init__(self, config_manager: Optional[ConfigManager] = None):
        self.config_manager = config_manager or ConfigManager()
        self._last_accepted: Dict[str, SensorReading] = {}

    def has_history(self, device_id: str) -> bool:
        return device_id in self._last_accepted

    def remember(self, reading: SensorReading):
        """Seed the last accepted reading (e.g. from the audit log after a restart)"""
        self._last_accepted[reading.device_id] = reading

    def accept(self, reading: SensorReading) -> Decision:
        try:
            self._check(reading)
        except ReadingRejected as e:
            logger.debug(f"Reading from {reading.device_id} rejected ({e.reason}): {e}")
            return Decision.reject(e.reason, age_ms=getattr(e, "age_ms", None))
        self._last_accepted[reading.device_id] = reading
        return Decision.accept()

    def _check(self, reading: SensorReading):
        if reading.values.is_empty():
            raise EmptyReadingRejected("Reading has no sensor values")

        source_ms = reading.source_epoch_ms
        if source_ms is not None:
            age_ms = reading.received_at - source_ms
            if age_ms >= self.config_manager.get_staleness_window() * 1000:
                raise StaleReadingRejected(age_ms)

        previous = self._last_accepted.get(reading.device_id)
        if previous is None:
            return

        if reading.source_timestamp is not None and reading.source_timestamp == previous.source_timestamp:
            raise DuplicateReadingRejected("Same source timestamp as the last accepted reading")

        if reading.values != previous.values:
            return
        delta = elapsed_ms(previous, reading)
        if abs(delta) < self.config_manager.get_dedup_window() * 1000:
            raise DuplicateReadingRejected(f"Identical values {abs(delta) / 1000:.0f}s after the last reading")

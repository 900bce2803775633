"""
Configuration Manager for the orchestrator.
Holds the timing intervals every loop and component reads, with optional
live overrides from the Firestore document config/orchestrator.
"""

import asyncio
import logging
from typing import Dict, Optional

from google.cloud.firestore import Client as FirestoreClient

from .. import config

logger = logging.getLogger(__name__)


class ConfigManager:
    """Timing configuration with bounds checking and Firestore overrides."""

    # Defaults (seconds) - from environment, used when no override exists
    DEFAULT_INTERVALS = {
        "command_timeout_s": config.COMMAND_TIMEOUT_S,
        "timeout_sweep_period_s": config.TIMEOUT_SWEEP_PERIOD_S,
        "offline_threshold_s": config.OFFLINE_THRESHOLD_S,
        "heartbeat_sweep_period_s": config.HEARTBEAT_SWEEP_PERIOD_S,
        "staleness_window_s": config.STALENESS_WINDOW_S,
        "dedup_window_s": config.DEDUP_WINDOW_S,
        "schedule_period_s": config.SCHEDULE_PERIOD_S,
        "sensor_poll_period_s": config.SENSOR_POLL_PERIOD_S,
        "retention_period_s": config.RETENTION_PERIOD_S,
    }

    # Min/max bounds to prevent invalid configurations
    INTERVAL_BOUNDS = {
        "command_timeout_s": (5, 600),              # 5s to 10 min
        "timeout_sweep_period_s": (5, 600),
        "offline_threshold_s": (60, 86400),         # 1 min to 24 hours
        "heartbeat_sweep_period_s": (10, 3600),
        "staleness_window_s": (60, 86400),
        "dedup_window_s": (0, 3600),
        "schedule_period_s": (10, 600),
        "sensor_poll_period_s": (30, 86400),
        "retention_period_s": (3600, 7 * 86400),
    }

    CONFIG_COLLECTION = "config"
    CONFIG_DOCUMENT = "orchestrator"

    def __init__(
        self,
        firestore_db: Optional[FirestoreClient] = None,
        overrides: Optional[Dict[str, float]] = None,
    ):
        """
        Args:
            firestore_db: sync Firestore client for live overrides (optional)
            overrides: values applied on top of the defaults, e.g. from tests.
                These are not bounds-checked.
        """
        self.firestore_db = firestore_db
        self.intervals: Dict[str, float] = self.DEFAULT_INTERVALS.copy()
        if overrides:
            self.intervals.update(overrides)
        self._listener_handle = None

    def _config_ref(self):
        return self.firestore_db.collection(self.CONFIG_COLLECTION).document(self.CONFIG_DOCUMENT)

    async def initialize(self):
        """Load overrides from Firestore, keeping defaults on any failure."""
        if not self.firestore_db:
            logger.info(f"Using default intervals: {self.intervals}")
            return
        try:
            doc = await asyncio.to_thread(self._config_ref().get)
        except Exception as e:
            logger.warning(f"Failed to load config from Firestore: {e}")
            return
        if not doc.exists:
            logger.info(f"No config/{self.CONFIG_DOCUMENT} document, using defaults: {self.intervals}")
            return
        self._apply(doc.to_dict() or {})

    def _apply(self, raw: Dict[str, float]):
        validated = self._validate_config(raw)
        if not validated:
            logger.warning(f"✗ Config validation failed: {raw}")
            return
        old_intervals = self.intervals.copy()
        self.intervals.update(validated)
        logger.info(f"✓ Config UPDATED: {old_intervals} → {self.intervals}")

    def _validate_config(self, raw: Dict[str, float]) -> Optional[Dict[str, float]]:
        """
        Validate configuration values.
        Returns the valid subset, or None if nothing is valid.
        """
        validated = {}
        for key, value in raw.items():
            if key not in self.INTERVAL_BOUNDS:
                logger.warning(f"Unknown config key: {key}")
                continue

            try:
                value = float(value)
            except (ValueError, TypeError):
                logger.warning(f"Invalid value for {key}: {value}")
                continue

            min_val, max_val = self.INTERVAL_BOUNDS[key]
            if value < min_val or value > max_val:
                logger.warning(
                    f"Value out of bounds for {key}: {value} "
                    f"(expected {min_val}-{max_val})"
                )
                continue

            validated[key] = value

        return validated if validated else None

    def listen_for_changes(self):
        """Set up a Firestore listener for real-time config changes."""
        if not self.firestore_db:
            logger.debug("No Firestore client, config listener not started")
            return

        def on_snapshot(doc_snapshot, changes, read_time):
            try:
                for doc in doc_snapshot:
                    if doc.exists:
                        logger.info(f"✓ Config change detected in Firestore: {doc.to_dict()}")
                        self._apply(doc.to_dict() or {})
            except Exception as e:
                logger.error(f"✗ Error in on_snapshot callback: {e}", exc_info=True)

        try:
            self._listener_handle = self._config_ref().on_snapshot(on_snapshot)
            logger.info(f"✓ Listening for changes on config/{self.CONFIG_DOCUMENT}")
        except Exception as e:
            logger.error(f"✗ Failed to set up Firestore listener: {e}", exc_info=True)

    def stop_listening(self):
        """Stop listening to Firestore changes."""
        if self._listener_handle:
            try:
                self._listener_handle.unsubscribe()
            except Exception as e:
                logger.warning(f"Error stopping Firestore listener: {e}")
            finally:
                self._listener_handle = None
            logger.info("Firestore listener stopped")

    # Interval accessors - read on every use so overrides apply immediately
    def _get(self, key: str) -> float:
        return self.intervals.get(key, self.DEFAULT_INTERVALS[key])

    def get_command_timeout(self) -> float:
        return self._get("command_timeout_s")

    def get_timeout_sweep_period(self) -> float:
        return self._get("timeout_sweep_period_s")

    def get_offline_threshold(self) -> float:
        return self._get("offline_threshold_s")

    def get_heartbeat_sweep_period(self) -> float:
        return self._get("heartbeat_sweep_period_s")

    def get_staleness_window(self) -> float:
        return self._get("staleness_window_s")

    def get_dedup_window(self) -> float:
        return self._get("dedup_window_s")

    def get_schedule_period(self) -> float:
        return self._get("schedule_period_s")

    def get_sensor_poll_period(self) -> float:
        return self._get("sensor_poll_period_s")

    def get_retention_period(self) -> float:
        return self._get("retention_period_s")

    def get_all_intervals(self) -> Dict[str, float]:
        """Get all current intervals."""
        return self.intervals.copy()

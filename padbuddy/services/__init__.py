"""Services package"""

from .ack_watcher import AckWatcher
from .config_manager import ConfigManager
from .control_channel import ControlChannel, FirebaseControlChannel, Subscription
from .device_registry import DeviceRegistry, FirestoreDeviceRegistry
from .diagnostics import DiagnosticsService
from .dispatcher import CommandDispatcher, CommandHandle
from .heartbeat_monitor import HeartbeatMonitor
from .notifications import FirestoreNotificationSink, NotificationSink
from .relay_state import RelayStateCache
from .schedule_runner import ScheduleRunner
from .sensor_dedup import SensorDeduplicator
from .timeout_sweeper import TimeoutSweeper

__all__ = [
    'AckWatcher', 'ConfigManager', 'ControlChannel', 'FirebaseControlChannel', 'Subscription',
    'DeviceRegistry', 'FirestoreDeviceRegistry', 'DiagnosticsService',
    'CommandDispatcher', 'CommandHandle', 'HeartbeatMonitor',
    'FirestoreNotificationSink', 'NotificationSink', 'RelayStateCache',
    'ScheduleRunner', 'SensorDeduplicator', 'TimeoutSweeper',
]

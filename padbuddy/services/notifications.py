"""
Notification sink - operator-facing alerts.

Notifications are fire-and-forget. They are always sent after the state
change they describe has been recorded, and a delivery failure is logged
and never propagated back into the state machine or the liveness monitor.
"""

import logging
from abc import ABC, abstractmethod
from typing import Awaitable, Optional

from google.cloud import firestore
from google.cloud.firestore_v1 import AsyncClient

from .. import config
from ..utils.timestamps import now_ms
from .device_registry import DeviceRegistry

logger = logging.getLogger(__name__)


class NotificationSink(ABC):

    @abstractmethod
    async def offline_alert(self, device_id: str, minutes_offline: int):
        ...

    @abstractmethod
    async def command_failed(self, device_id: str, command_id: str, reason: str):
        ...

    @abstractmethod
    async def recovered(self, device_id: str):
        ...


async def send_safely(delivery: Awaitable, description: str) -> bool:
    """Await a sink call, logging instead of raising on failure"""
    try:
        await delivery
        return True
    except Exception as e:
        logger.warning(f"⚠️ Notification failed ({description}): {e}")
        return False


class FirestoreNotificationSink(NotificationSink):
    """Prepends to users/{ownerId}.notifications (newest first, capped)"""

    def __init__(
        self,
        registry: DeviceRegistry,
        client: Optional[AsyncClient] = None,
        inbox_limit: int = config.NOTIFICATION_INBOX_LIMIT,
    ):
        self.registry = registry
        self.firestore = client or firestore.AsyncClient()
        self.inbox_limit = inbox_limit

    async def offline_alert(self, device_id: str, minutes_offline: int):
        await self._push(device_id, {
            'type': 'offline',
            'title': 'Device Offline',
            'message': f"Device {device_id} has been offline for {minutes_offline} minutes",
            'minutesOffline': minutes_offline,
        })

    async def command_failed(self, device_id: str, command_id: str, reason: str):
        await self._push(device_id, {
            'type': 'commandFailed',
            'title': 'Command Failed',
            'message': f"Command on device {device_id} failed: {reason}",
            'commandId': command_id,
            'reason': reason,
        })

    async def recovered(self, device_id: str):
        await self._push(device_id, {
            'type': 'recovered',
            'title': 'Device Back Online',
            'message': f"Device {device_id} is back online",
        })

    async def _push(self, device_id: str, notification: dict):
        owner = await self.registry.owner_of(device_id)
        if not owner:
            logger.warning(f"No owner for {device_id}, dropping {notification['type']} notification")
            return

        user_ref = self.firestore.collection('users').document(owner)
        user_doc = await user_ref.get()
        if not user_doc.exists:
            logger.warning(f"User {owner} not found, dropping {notification['type']} notification")
            return

        inbox = (user_doc.to_dict() or {}).get('notifications') or []
        entry = {**notification, 'deviceId': device_id, 'timestamp': now_ms(), 'read': False}
        await user_ref.update({'notifications': [entry, *inbox][:self.inbox_limit]})
        logger.info(f"🔔 {notification['type']} notification queued for {owner} ({device_id})")

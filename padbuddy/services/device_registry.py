"""Device registry - which devices exist and who owns them"""

import logging
from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Tuple

from google.cloud import firestore
from google.cloud.firestore_v1 import AsyncClient

logger = logging.getLogger(__name__)


class DeviceRegistry(ABC):

    @abstractmethod
    async def is_known(self, device_id: str) -> bool:
        ...

    @abstractmethod
    async def owner_of(self, device_id: str) -> Optional[str]:
        ...

    @abstractmethod
    async def list_devices(self) -> List[str]:
        ...


class FirestoreDeviceRegistry(DeviceRegistry):
    """Registry over the devices collection.

    A device document is found by its deviceId field (the web app creates
    devices with auto ids) or else by document id. document_id() tells the
    liveness and audit stores which document that is, so nothing writes a
    second document for the same device. Owners never change while a device
    is registered, so lookups are cached for the process lifetime.
    """

    def __init__(self, client: Optional[AsyncClient] = None):
        self.firestore = client or firestore.AsyncClient()
        self._owners: Dict[str, Optional[str]] = {}
        self._doc_ids: Dict[str, str] = {}

    def _remember(self, device_id: str, doc_id: str, data: dict):
        self._doc_ids[device_id] = doc_id
        self._owners[device_id] = data.get('ownerId') or data.get('ownedBy')

    async def _load(self, device_id: str) -> Optional[Tuple[str, dict]]:
        query = self.firestore.collection('devices').where('deviceId', '==', device_id).limit(1)
        async for match in query.stream():
            return match.id, match.to_dict() or {}
        doc = await self.firestore.collection('devices').document(device_id).get()
        if doc.exists:
            return doc.id, doc.to_dict() or {}
        return None

    async def is_known(self, device_id: str) -> bool:
        if device_id in self._doc_ids:
            return True
        found = await self._load(device_id)
        if found is None:
            return False
        self._remember(device_id, *found)
        return True

    async def owner_of(self, device_id: str) -> Optional[str]:
        if not await self.is_known(device_id):
            return None
        return self._owners.get(device_id)

    async def document_id(self, device_id: str) -> str:
        """Id of the devices/ document holding a device (the device id if unregistered)"""
        if await self.is_known(device_id):
            return self._doc_ids[device_id]
        return device_id

    async def list_devices(self) -> List[str]:
        found: Dict[str, Tuple[str, dict]] = {}
        async for doc in self.firestore.collection('devices').stream():
            data = doc.to_dict() or {}
            device_id = data.get('deviceId') or doc.id
            if device_id in found:
                logger.warning(f"Device {device_id} has more than one document ({found[device_id][0]}, {doc.id})")
                # A deviceId field match wins, same as _load
                if not data.get('deviceId'):
                    continue
            found[device_id] = (doc.id, data)
        for device_id, (doc_id, data) in found.items():
            if device_id not in self._doc_ids:
                self._remember(device_id, doc_id, data)
        return list(found)

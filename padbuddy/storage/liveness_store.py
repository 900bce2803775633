"""Liveness store - persisted LivenessState on the device document"""

import logging
from abc import ABC, abstractmethod
from typing import Dict, Optional

from google.cloud import firestore
from google.cloud.firestore_v1 import AsyncClient
from pydantic import ValidationError

from ..models.liveness import LivenessState

logger = logging.getLogger(__name__)


class LivenessStore(ABC):

    @abstractmethod
    async def load_all(self) -> Dict[str, LivenessState]:
        ...

    @abstractmethod
    async def save(self, state: LivenessState):
        ...


class FirestoreLivenessStore(LivenessStore):
    """Liveness on the device document the registry resolves (see FirestoreDeviceRegistry)"""

    def __init__(self, client: Optional[AsyncClient] = None, registry=None):
        self.firestore = client or firestore.AsyncClient()
        self.registry = registry

    async def _device_doc(self, device_id: str):
        doc_id = await self.registry.document_id(device_id) if self.registry else device_id
        return self.firestore.collection('devices').document(doc_id)

    async def load_all(self) -> Dict[str, LivenessState]:
        states = {}
        async for doc in self.firestore.collection('devices').stream():
            data = doc.to_dict() or {}
            liveness = data.get('liveness')
            if not liveness:
                continue
            try:
                state = LivenessState.model_validate(liveness)
            except ValidationError as e:
                logger.warning(f"Ignoring malformed liveness on device {doc.id}: {e}")
                continue
            states[state.device_id] = state
        logger.info(f"Loaded liveness for {len(states)} device(s)")
        return states

    async def save(self, state: LivenessState):
        doc_ref = await self._device_doc(state.device_id)
        await doc_ref.set({
            'liveness': state.model_dump(by_alias=True),
            'status': 'online' if state.online else 'offline',
            'lastHeartbeat': state.last_heartbeat_at,
            'statusUpdatedAt': firestore.SERVER_TIMESTAMP,
        }, merge=True)

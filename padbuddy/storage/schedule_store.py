"""Schedule store - scheduledCommands/{scheduleId} in Firestore"""

import logging
from abc import ABC, abstractmethod
from typing import List, Optional

from google.cloud import firestore
from google.cloud.firestore_v1 import AsyncClient
from pydantic import ValidationError

from ..models.schedule import ScheduleDefinition

logger = logging.getLogger(__name__)

COLLECTION = 'scheduledCommands'


class ScheduleStore(ABC):

    @abstractmethod
    async def list_enabled(self) -> List[ScheduleDefinition]:
        ...

    @abstractmethod
    async def persist(self, schedule: ScheduleDefinition):
        ...

    @abstractmethod
    async def get(self, schedule_id: str) -> Optional[ScheduleDefinition]:
        ...


class FirestoreScheduleStore(ScheduleStore):

    def __init__(self, client: Optional[AsyncClient] = None):
        self.firestore = client or firestore.AsyncClient()

    async def list_enabled(self) -> List[ScheduleDefinition]:
        schedules = []
        query = self.firestore.collection(COLLECTION).where('enabled', '==', True)
        async for doc in query.stream():
            try:
                schedules.append(ScheduleDefinition.model_validate({'id': doc.id, **doc.to_dict()}))
            except ValidationError as e:
                # Unparseable documents would otherwise be skipped every cycle forever
                logger.error(f"❌ Schedule {doc.id} is malformed, disabling: {e}")
                await doc.reference.update({'enabled': False, 'error': f"Malformed schedule: {e}"})
        return schedules

    async def persist(self, schedule: ScheduleDefinition):
        await self.firestore.collection(COLLECTION).document(schedule.id).set(schedule.to_document())

    async def get(self, schedule_id: str) -> Optional[ScheduleDefinition]:
        doc = await self.firestore.collection(COLLECTION).document(schedule_id).get()
        if not doc.exists:
            return None
        return ScheduleDefinition.model_validate({'id': doc.id, **doc.to_dict()})

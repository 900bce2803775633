"""
Audit store - durable log of command, liveness, sensor and schedule events.

FIRESTORE LAYOUT:
  devices/{docId}/logs/{autoId}      AuditEntry (docId resolved by the registry)
  errors/{autoId}                    DeviceAlert (open until resolved)
"""

import logging
from abc import ABC, abstractmethod
from typing import List, Optional

from google.cloud import firestore
from google.cloud.firestore_v1 import AsyncClient
from pydantic import ValidationError

from ..models.audit import AuditEntry, AuditKind, DeviceAlert

logger = logging.getLogger(__name__)

# Firestore caps a write batch at 500 operations
BATCH_LIMIT = 500


class AuditStore(ABC):

    @abstractmethod
    async def append(self, entry: AuditEntry):
        ...

    @abstractmethod
    async def query(self, device_id: str, since: int) -> List[AuditEntry]:
        """Entries for a device with timestamp >= since, oldest first"""

    @abstractmethod
    async def latest(self, device_id: str, kind: AuditKind) -> Optional[AuditEntry]:
        ...

    @abstractmethod
    async def open_alert(self, alert: DeviceAlert) -> str:
        """Record an unresolved alert, returns its id"""

    @abstractmethod
    async def mark_alert_notified(self, alert_id: str):
        ...

    @abstractmethod
    async def resolve_alerts(self, device_id: str, alert_type: str, resolved_at: int) -> int:
        """Resolve every open alert of a type for a device, returns the count"""

    @abstractmethod
    async def purge_before(self, cutoff: int) -> int:
        """Delete log entries and resolved alerts older than cutoff"""


class FirestoreAuditStore(AuditStore):
    """AuditStore on Firestore (async client)"""

    def __init__(self, client: Optional[AsyncClient] = None, registry=None):
        self.firestore = client or firestore.AsyncClient()
        self.registry = registry

    async def _logs(self, device_id: str):
        doc_id = await self.registry.document_id(device_id) if self.registry else device_id
        return self.firestore.collection('devices').document(doc_id).collection('logs')

    async def append(self, entry: AuditEntry):
        logs = await self._logs(entry.device_id)
        await logs.add(entry.to_document())
        logger.debug(f"Audit [{entry.device_id}] {entry.event}")

    async def query(self, device_id: str, since: int) -> List[AuditEntry]:
        logs = await self._logs(device_id)
        query = logs.where('timestamp', '>=', since).order_by('timestamp')
        entries = []
        async for doc in query.stream():
            entry = self._parse(doc)
            if entry is not None:
                entries.append(entry)
        return entries

    async def latest(self, device_id: str, kind: AuditKind) -> Optional[AuditEntry]:
        logs = await self._logs(device_id)
        query = (
            logs
            .where('kind', '==', kind.value)
            .order_by('timestamp', direction=firestore.Query.DESCENDING)
            .limit(1)
        )
        async for doc in query.stream():
            return self._parse(doc)
        return None

    async def open_alert(self, alert: DeviceAlert) -> str:
        _, doc_ref = await self.firestore.collection('errors').add(
            alert.model_dump(by_alias=True, mode="json")
        )
        logger.info(f"🚨 Alert opened for {alert.device_id}: {alert.type} ({doc_ref.id})")
        return doc_ref.id

    async def mark_alert_notified(self, alert_id: str):
        await self.firestore.collection('errors').document(alert_id).update({'notified': True})

    async def resolve_alerts(self, device_id: str, alert_type: str, resolved_at: int) -> int:
        query = (
            self.firestore.collection('errors')
            .where('deviceId', '==', device_id)
            .where('type', '==', alert_type)
            .where('resolved', '==', False)
        )
        batch = self.firestore.batch()
        count = 0
        async for doc in query.stream():
            batch.update(doc.reference, {'resolved': True, 'resolvedAt': resolved_at})
            count += 1
        if count:
            await batch.commit()
            logger.info(f"✅ Resolved {count} {alert_type} alert(s) for {device_id}")
        return count

    async def purge_before(self, cutoff: int) -> int:
        deleted = await self._delete_in_batches(
            self.firestore.collection_group('logs').where('timestamp', '<', cutoff)
        )
        deleted += await self._delete_in_batches(
            self.firestore.collection('errors')
            .where('resolved', '==', True)
            .where('timestamp', '<', cutoff)
        )
        return deleted

    async def _delete_in_batches(self, query) -> int:
        total = 0
        while True:
            docs = await query.limit(BATCH_LIMIT).get()
            if not docs:
                return total
            batch = self.firestore.batch()
            for doc in docs:
                batch.delete(doc.reference)
            await batch.commit()
            total += len(docs)
            if len(docs) < BATCH_LIMIT:
                return total

    @staticmethod
    def _parse(doc) -> Optional[AuditEntry]:
        try:
            return AuditEntry.model_validate(doc.to_dict())
        except ValidationError as e:
            logger.warning(f"Skipping malformed audit entry {doc.id}: {e}")
            return None

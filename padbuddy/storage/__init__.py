# Storage module - Firestore-backed persistence
from .audit_store import AuditStore, FirestoreAuditStore
from .liveness_store import LivenessStore, FirestoreLivenessStore
from .schedule_store import ScheduleStore, FirestoreScheduleStore

__all__ = [
    'AuditStore', 'FirestoreAuditStore',
    'LivenessStore', 'FirestoreLivenessStore',
    'ScheduleStore', 'FirestoreScheduleStore',
]

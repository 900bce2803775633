"""Firebase initialization and production wiring"""

import logging
import os

import firebase_admin
from firebase_admin import credentials, firestore, firestore_async

from .. import config
from ..services.config_manager import ConfigManager
from ..services.control_channel import FirebaseControlChannel
from ..services.device_registry import FirestoreDeviceRegistry
from ..services.notifications import FirestoreNotificationSink
from ..storage.audit_store import FirestoreAuditStore
from ..storage.liveness_store import FirestoreLivenessStore
from ..storage.schedule_store import FirestoreScheduleStore
from .orchestrator import Orchestrator

logger = logging.getLogger(__name__)


def initialize_firebase() -> firebase_admin.App:
    """Initialize the default Firebase app (idempotent)"""
    if firebase_admin._apps:
        return firebase_admin.get_app()

    cred_path = config.FIREBASE_CREDENTIALS_PATH
    logger.info(f"Loading Firebase credentials from: {cred_path}")

    if not os.path.exists(cred_path):
        if not os.path.isabs(cred_path):
            abs_path = os.path.expanduser(f"~/{cred_path}")
            if not os.path.exists(abs_path):
                raise FileNotFoundError("Firebase credentials not found")
            cred_path = abs_path
        else:
            raise FileNotFoundError(f"Firebase credentials not found at {cred_path}")

    if not os.access(cred_path, os.R_OK):
        raise PermissionError("No read permission for Firebase credentials")

    cred = credentials.Certificate(cred_path)
    app = firebase_admin.initialize_app(cred, {
        "databaseURL": config.FIREBASE_DATABASE_URL,
        "projectId": config.FIREBASE_PROJECT_ID,
    })
    logger.info(f"✅ Connected to Firebase project {config.FIREBASE_PROJECT_ID}")
    return app


def create_orchestrator() -> Orchestrator:
    """Build an Orchestrator backed by Realtime Database and Firestore"""
    app = initialize_firebase()
    async_db = firestore_async.client(app)

    registry = FirestoreDeviceRegistry(async_db)
    return Orchestrator(
        control_channel=FirebaseControlChannel(app),
        audit_store=FirestoreAuditStore(async_db, registry),
        schedule_store=FirestoreScheduleStore(async_db),
        liveness_store=FirestoreLivenessStore(async_db, registry),
        registry=registry,
        notifications=FirestoreNotificationSink(registry, async_db),
        config_manager=ConfigManager(firestore_db=firestore.client(app)),
    )

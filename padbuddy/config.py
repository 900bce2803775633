"""Configuration for the PadBuddy orchestrator"""

import os
from pathlib import Path
from dotenv import load_dotenv

# Load environment variables from .env file
_repo_root = Path(__file__).parent.parent.resolve()
_env_file = _repo_root / ".env"
if _env_file.exists():
    load_dotenv(_env_file)

# Base directory
BASE_DIR = Path(__file__).parent.resolve()


def _env_float(name: str, default: float) -> float:
    """Read a numeric setting, falling back to the default on bad input"""
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError:
        return default


# Firebase
_default_creds = str(_repo_root / "firebase-key.json")
FIREBASE_CREDENTIALS_PATH = os.getenv("FIREBASE_CREDENTIALS_PATH", _default_creds)
FIREBASE_PROJECT_ID = os.getenv("FIREBASE_PROJECT_ID", "padbuddy")
FIREBASE_DATABASE_URL = os.getenv(
    "FIREBASE_DATABASE_URL",
    f"https://{FIREBASE_PROJECT_ID}-default-rtdb.firebaseio.com",
)

# Command lifecycle (seconds)
COMMAND_TIMEOUT_S = _env_float("COMMAND_TIMEOUT_S", 30)
TIMEOUT_SWEEP_PERIOD_S = _env_float("TIMEOUT_SWEEP_PERIOD_S", 60)

# Liveness (seconds)
OFFLINE_THRESHOLD_S = _env_float("OFFLINE_THRESHOLD_S", 600)
HEARTBEAT_SWEEP_PERIOD_S = _env_float("HEARTBEAT_SWEEP_PERIOD_S", 120)

# Sensor ingestion (seconds)
STALENESS_WINDOW_S = _env_float("STALENESS_WINDOW_S", 3600)
DEDUP_WINDOW_S = _env_float("DEDUP_WINDOW_S", 300)
SENSOR_POLL_PERIOD_S = _env_float("SENSOR_POLL_PERIOD_S", 300)

# Schedules
SCHEDULE_PERIOD_S = _env_float("SCHEDULE_PERIOD_S", 60)
SCHEDULE_TIMEZONE = os.getenv("SCHEDULE_TIMEZONE", "Asia/Manila")

# Audit retention
LOG_RETENTION_DAYS = int(_env_float("LOG_RETENTION_DAYS", 90))
RETENTION_PERIOD_S = _env_float("RETENTION_PERIOD_S", 86400)

# Notifications
NOTIFICATION_INBOX_LIMIT = int(_env_float("NOTIFICATION_INBOX_LIMIT", 50))

# Logging
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
LOG_FILE = os.getenv("LOG_FILE", "logs/orchestrator.log")

# Debug
DEBUG = os.getenv("DEBUG", "false").lower() == "true"

"""Utility helpers"""

from .logger import setup_logging
from .timestamps import now_ms, utc_now, to_epoch_ms, is_absolute

__all__ = ['setup_logging', 'now_ms', 'utc_now', 'to_epoch_ms', 'is_absolute']

"""
Configuration, models, events and scheduling shared by the pipeline
"""

from .config import TelemetryConfig, FileLoggingConfig
from .events import EventBus
from .exceptions import TelemetryError, PersistenceError, CipherError, ConfigValidationError
from .scheduler import Scheduler, Ticker, SystemClock, ManualClock

__all__ = [
    "TelemetryConfig",
    "FileLoggingConfig",
    "EventBus",
    "TelemetryError",
    "PersistenceError",
    "CipherError",
    "ConfigValidationError",
    "Scheduler",
    "Ticker",
    "SystemClock",
    "ManualClock"
]

#!/usr/bin/env python3
"""
Library Audit
Audit logging and security telemetry for library management systems
"""

__version__ = "0.1.0"
__description__ = "Audit & security telemetry pipeline"

from .core.config import TelemetryConfig
from .core.models import AuditLogEntry, LoginAttempt, LogOptions, SecurityEvent
from .service import TelemetryService

__all__ = [
    "TelemetryConfig",
    "TelemetryService",
    "AuditLogEntry",
    "LoginAttempt",
    "LogOptions",
    "SecurityEvent"
]

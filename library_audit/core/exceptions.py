"""
Error types for the audit & security telemetry pipeline
"""

from dataclasses import dataclass


class TelemetryError(Exception):
    """Base class for telemetry errors"""


class PersistenceError(TelemetryError):
    """Store unreachable or query failed"""


class CipherError(TelemetryError):
    """Encryption or decryption failed"""


@dataclass
class ConfigValidationError(TelemetryError):
    """Invalid telemetry configuration"""

    field: str
    message: str

    def __str__(self):
        return f"Config validation error in '{self.field}': {self.message}"

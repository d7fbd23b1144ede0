from .database import TelemetryDatabase

__all__ = ["TelemetryDatabase"]

"""
Audit intake, classification, encryption and retention
"""

from .cipher import SensitiveFieldCipher
from .logger import AuditLogger
from .retention import RetentionScheduler
from .risk import RiskClassifier

__all__ = ["SensitiveFieldCipher", "AuditLogger", "RetentionScheduler", "RiskClassifier"]

"""
Risk classification for audit entries
"""

import logging
from typing import List, Optional

from ..core.config import RISK_LEVELS
from ..core.models import AuditResult, LogOptions, RiskLevel

logger = logging.getLogger(__name__)

HIGH_RISK_ACTIONS = {"delete", "modify_permission", "export_data", "system_config"}
HIGH_RISK_ENTITIES = {"User", "Permission", "SystemConfig", "SecuritySetting"}

SENSITIVE_ENTITIES = {"User", "Permission", "Payment", "PersonalData"}
SENSITIVE_ACTIONS = {"create", "update", "view_sensitive"}

USER_ACTION_RISK = {
    "login": RiskLevel.LOW,
    "logout": RiskLevel.LOW,
    "view": RiskLevel.LOW,
    "create": RiskLevel.MEDIUM,
    "update": RiskLevel.MEDIUM,
    "delete": RiskLevel.HIGH,
    "export": RiskLevel.HIGH,
    "import": RiskLevel.HIGH,
    "permission_change": RiskLevel.CRITICAL,
    "system_config": RiskLevel.CRITICAL,
}


class RiskClassifier:
    """Deterministic risk level and security flag computation"""

    def calculate_risk_level(self, action: str, entity: str, result: Optional[str] = None,
                             security_flags: Optional[List[str]] = None) -> str:
        if action in HIGH_RISK_ACTIONS or entity in HIGH_RISK_ENTITIES:
            return RiskLevel.HIGH.value

        if result == AuditResult.FAILURE.value or security_flags:
            return RiskLevel.MEDIUM.value

        return RiskLevel.LOW.value

    def get_user_action_risk_level(self, action: str) -> str:
        return USER_ACTION_RISK.get(action, RiskLevel.LOW).value

    def analyze_security_flags(self, options: LogOptions) -> List[str]:
        """Flags derived from boolean hints, followed by explicit flags"""
        flags = []

        if options.ip_changed:
            flags.append("ip_changed")
        if options.unusual_time:
            flags.append("unusual_time")
        if (options.failed_attempts or 0) > 3:
            flags.append("multiple_failures")
        if options.suspicious_activity:
            flags.append("suspicious_activity")

        for flag in options.security_flags or []:
            if flag not in flags:
                flags.append(flag)

        return flags

    def should_encrypt(self, entity: str, action: str) -> bool:
        return entity in SENSITIVE_ENTITIES or action in SENSITIVE_ACTIONS

    def classify(self, action: str, entity: str, options: LogOptions) -> tuple:
        """
        Compute (risk_level, security_flags) for a new entry.

        A caller-supplied risk level can raise the computed level but never
        lower it.
        """
        flags = self.analyze_security_flags(options)
        level = self.calculate_risk_level(action, entity, options.result, flags)
        return self.apply_override(level, options.risk_level), flags

    def apply_override(self, level: str, override: Optional[str]) -> str:
        """Raise level to a caller hint; unknown hints are ignored"""
        if not override:
            return level
        if isinstance(override, RiskLevel):
            override = override.value
        if override not in RISK_LEVELS:
            logger.warning(f"Ignoring unknown risk level hint: {override!r}")
            return level
        return RiskLevel.highest(level, override)

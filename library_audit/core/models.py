"""
Data structures for audit entries, security events and login attempts
"""

import json
from dataclasses import dataclass, field, asdict
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional


class RiskLevel(Enum):
    """Audit entry risk levels"""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _RISK_ORDER.index(self)

    @classmethod
    def highest(cls, *levels: str) -> str:
        """Return the most severe of the given level names"""
        return max((cls(level) for level in levels), key=lambda level: level.rank).value


_RISK_ORDER = [RiskLevel.LOW, RiskLevel.MEDIUM, RiskLevel.HIGH, RiskLevel.CRITICAL]

# Security event severities share the risk vocabulary
Severity = RiskLevel


class AuditResult(Enum):
    SUCCESS = "success"
    FAILURE = "failure"


class UserRole(Enum):
    """Library roles, highest first"""
    ADMIN = "admin"
    LIBRARIAN = "librarian"
    PATRON = "patron"


ROLE_HIERARCHY = {
    UserRole.ADMIN.value: 3,
    UserRole.LIBRARIAN.value: 2,
    UserRole.PATRON.value: 1,
}


def is_higher_role(role: Optional[str], other: Optional[str]) -> bool:
    return ROLE_HIERARCHY.get(role or "", 0) > ROLE_HIERARCHY.get(other or "", 0)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


@dataclass
class AuditLogEntry:
    """Audit log entry; append-only once persisted"""
    action: str
    entity: str
    entity_id: Optional[str]
    description: str
    user_id: Optional[int] = None
    user_role: Optional[str] = None
    changes: Any = field(default_factory=dict)
    old_values: Any = field(default_factory=dict)
    new_values: Any = field(default_factory=dict)
    request_info: Dict[str, Any] = field(default_factory=dict)
    session_id: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    location: Dict[str, Any] = field(default_factory=dict)
    result: str = AuditResult.SUCCESS.value
    error_details: Dict[str, Any] = field(default_factory=dict)
    risk_level: str = RiskLevel.LOW.value
    security_flags: List[str] = field(default_factory=list)
    compliance_flags: List[str] = field(default_factory=list)
    correlation_id: Optional[str] = None
    parent_log_id: Optional[int] = None
    execution_time: Optional[float] = None
    resource_usage: Dict[str, Any] = field(default_factory=dict)
    is_encrypted: bool = False
    system_generated: bool = False
    alert_required: bool = False
    created_at: Optional[datetime] = None
    id: Optional[int] = None
    integrity_hash: Optional[str] = None

    @property
    def is_high_priority(self) -> bool:
        return self.risk_level in (RiskLevel.HIGH.value, RiskLevel.CRITICAL.value)

    @property
    def persisted(self) -> bool:
        return self.id is not None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["created_at"] = _iso(self.created_at)
        return data

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), default=str)


@dataclass
class SecurityEvent:
    """Detected threat or anomaly; read-only after creation"""
    event_type: str
    severity: str
    event_data: Dict[str, Any] = field(default_factory=dict)
    context_data: Dict[str, Any] = field(default_factory=dict)
    ip_address: Optional[str] = None
    user_id: Optional[int] = None
    user_agent: Optional[str] = None
    risk_score: float = 0
    is_blocked: bool = False
    created_at: Optional[datetime] = None
    id: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["created_at"] = _iso(self.created_at)
        return data


@dataclass
class LoginAttempt:
    """Login attempt recorded by the authentication flow"""
    username: str
    ip_address: str
    success: bool
    user_agent: Optional[str] = None
    device_fingerprint: Optional[str] = None
    location: Optional[Dict[str, Any]] = None
    created_at: Optional[datetime] = None
    id: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["created_at"] = _iso(self.created_at)
        return data


@dataclass
class User:
    id: int
    username: str
    role: str
    real_name: Optional[str] = None


@dataclass
class ThreatRule:
    """Fixed detection rule, loaded once at start"""
    rule_id: str
    type: str
    severity: str
    description: str
    threshold: Optional[int] = None
    time_window_seconds: Optional[int] = None
    patterns: List[str] = field(default_factory=list)


@dataclass
class LogOptions:
    """Optional fields accepted by AuditLogger.log()"""
    user_id: Optional[int] = None
    user_role: Optional[str] = None
    changes: Any = None
    old_values: Any = None
    new_values: Any = None
    request: Any = None
    session_id: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    location: Optional[Dict[str, Any]] = None
    result: str = AuditResult.SUCCESS.value
    error_details: Optional[Dict[str, Any]] = None
    compliance_flags: List[str] = field(default_factory=list)
    correlation_id: Optional[str] = None
    parent_log_id: Optional[int] = None
    execution_time: Optional[float] = None
    resource_usage: Optional[Dict[str, Any]] = None
    # Classification hints
    risk_level: Optional[str] = None
    security_flags: List[str] = field(default_factory=list)
    ip_changed: bool = False
    unusual_time: bool = False
    failed_attempts: int = 0
    suspicious_activity: bool = False
    severity: Optional[str] = None
    alert_required: bool = False
    system_generated: bool = False


@dataclass
class DataAccessOptions:
    record_count: int = 0
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None


@dataclass
class EscalationOptions:
    target_user_id: Optional[int] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None


@dataclass
class AuditLogQuery:
    keyword: str = ""
    user_id: Optional[int] = None
    action: Optional[str] = None
    actions: List[str] = field(default_factory=list)
    entity: Optional[str] = None
    entities: List[str] = field(default_factory=list)
    risk_level: Optional[str] = None
    risk_levels: List[str] = field(default_factory=list)
    result: Optional[str] = None
    ip_address: Optional[str] = None
    has_user: bool = False
    security_relevant: bool = False
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    limit: Optional[int] = 20
    offset: int = 0
    include_decrypted: bool = False


@dataclass
class SecurityEventQuery:
    keyword: str = ""
    event_type: Optional[str] = None
    severity: Optional[str] = None
    severities: List[str] = field(default_factory=list)
    user_id: Optional[int] = None
    ip_address: Optional[str] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    limit: Optional[int] = 20
    offset: int = 0


@dataclass
class LoginAttemptQuery:
    keyword: str = ""
    username: Optional[str] = None
    ip_address: Optional[str] = None
    success: Optional[bool] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    limit: Optional[int] = 20
    offset: int = 0

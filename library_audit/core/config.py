#!/usr/bin/env python3
"""
Telemetry configuration
Defaults, environment overrides and YAML loading for the audit pipeline
"""

import os
import logging
from dataclasses import dataclass, field, asdict
from pathlib import Path
from typing import Dict, Any, List, Optional

import yaml

from .exceptions import ConfigValidationError

logger = logging.getLogger(__name__)

RISK_LEVELS = ("low", "medium", "high", "critical")

DEFAULT_RETENTION_POLICIES = {
    "low": 30,
    "medium": 90,
    "high": 180,
    "critical": 365,
}

LOCAL_IPS = ("127.0.0.1", "::1")


@dataclass
class FileLoggingConfig:
    """JSON-lines audit trail written next to the database"""

    enabled: bool = False
    path: str = "security/audit.log"
    max_size_mb: int = 100
    backup_count: int = 10


@dataclass
class TelemetryConfig:
    """Configuration for the audit & security telemetry service"""

    db_path: str = "security/telemetry.db"

    # Cipher
    cipher_key: Optional[str] = None
    cipher_salt: str = "library_audit_salt"
    integrity_key: Optional[str] = None

    # Batch writer
    batch_size: int = 100
    flush_interval_ms: int = 5000

    # Retention
    retention_days: int = 90
    retention_policies: Dict[str, int] = field(
        default_factory=lambda: dict(DEFAULT_RETENTION_POLICIES)
    )
    per_level_retention: bool = False
    cleanup_interval_seconds: int = 24 * 60 * 60

    # Security monitoring
    whitelisted_ips: List[str] = field(default_factory=list)
    geoip_db_path: Optional[str] = None
    login_monitor_interval_seconds: int = 60
    intrusion_scan_interval_seconds: int = 600
    threat_analysis_interval_seconds: int = 3600

    file_logging: FileLoggingConfig = field(default_factory=FileLoggingConfig)

    @property
    def flush_interval_seconds(self) -> float:
        return self.flush_interval_ms / 1000.0

    @classmethod
    def from_env(cls, environ: Optional[Dict[str, str]] = None) -> "TelemetryConfig":
        """Build a config from defaults plus environment variables"""
        config = cls()
        config.apply_env(environ)
        config.validate()
        return config

    @classmethod
    def from_yaml(cls, path: str, environ: Optional[Dict[str, str]] = None) -> "TelemetryConfig":
        """
        Load config from a YAML file, then apply environment overrides

        Args:
            path: Path to the YAML file
            environ: Environment mapping, defaults to os.environ

        Returns:
            Validated configuration
        """
        config_path = Path(path)
        if not config_path.exists():
            raise ConfigValidationError("path", f"Config file not found: {path}")

        with open(config_path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}

        if not isinstance(data, dict):
            raise ConfigValidationError("root", "Config file must contain a mapping")

        config = cls.from_dict(data)
        config.apply_env(environ)
        config.validate()
        logger.info(f"Telemetry config loaded from {path}")
        return config

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TelemetryConfig":
        known = {f for f in cls.__dataclass_fields__}
        unknown = set(data) - known
        if unknown:
            raise ConfigValidationError(sorted(unknown)[0], "Unknown config option")

        values = dict(data)
        if "file_logging" in values:
            values["file_logging"] = FileLoggingConfig(**(values["file_logging"] or {}))
        if "retention_policies" in values:
            policies = dict(DEFAULT_RETENTION_POLICIES)
            policies.update(values["retention_policies"] or {})
            values["retention_policies"] = policies
        return cls(**values)

    def apply_env(self, environ: Optional[Dict[str, str]] = None) -> None:
        """Override fields from environment variables"""
        env = os.environ if environ is None else environ

        if env.get("AUDIT_ENCRYPTION_KEY"):
            self.cipher_key = env["AUDIT_ENCRYPTION_KEY"]
        if env.get("AUDIT_INTEGRITY_KEY"):
            self.integrity_key = env["AUDIT_INTEGRITY_KEY"]
        if env.get("AUDIT_DB_PATH"):
            self.db_path = env["AUDIT_DB_PATH"]
        if env.get("GEOIP_DB_PATH"):
            self.geoip_db_path = env["GEOIP_DB_PATH"]

        retention = env.get("AUDIT_LOG_RETENTION_DAYS")
        if retention:
            try:
                self.retention_days = int(retention)
            except ValueError:
                raise ConfigValidationError(
                    "retention_days", f"AUDIT_LOG_RETENTION_DAYS is not an integer: {retention}"
                )

        whitelist = env.get("WHITELISTED_IPS", "")
        if whitelist:
            for ip in whitelist.split(","):
                ip = ip.strip()
                if ip and ip not in self.whitelisted_ips:
                    self.whitelisted_ips.append(ip)

    def validate(self) -> None:
        if self.batch_size <= 0:
            raise ConfigValidationError("batch_size", "must be positive")
        if self.flush_interval_ms <= 0:
            raise ConfigValidationError("flush_interval_ms", "must be positive")
        if self.retention_days <= 0:
            raise ConfigValidationError("retention_days", "must be positive")

        for level in RISK_LEVELS:
            days = self.retention_policies.get(level)
            if not isinstance(days, int) or days <= 0:
                raise ConfigValidationError(
                    f"retention_policies.{level}", "must be a positive number of days"
                )

        for name in (
            "cleanup_interval_seconds",
            "login_monitor_interval_seconds",
            "intrusion_scan_interval_seconds",
            "threat_analysis_interval_seconds",
        ):
            if getattr(self, name) <= 0:
                raise ConfigValidationError(name, "must be positive")

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        # Never leak secrets into logs or reports
        for secret in ("cipher_key", "integrity_key"):
            if data.get(secret):
                data[secret] = "***"
        return data

#!/usr/bin/env python3
"""
Telemetry service
Composition root wiring the audit pipeline and the security monitor
"""

import logging
from typing import Any, Dict, Optional

from .audit.cipher import SensitiveFieldCipher
from .audit.logger import AuditLogger
from .audit.retention import RetentionScheduler
from .audit.risk import RiskClassifier
from .core.config import TelemetryConfig
from .core.events import ALERT_REQUIRED, EventBus
from .core.models import (
    AuditLogQuery,
    DataAccessOptions,
    EscalationOptions,
    LoginAttempt,
    LoginAttemptQuery,
    LogOptions,
    SecurityEventQuery,
)
from .core.scheduler import Scheduler, SystemClock
from .reporting import TelemetryReporter
from .security.geo import GeoLocator
from .security.intrusion import IntrusionAggregator
from .security.monitor import SecurityMonitor
from .security.patterns import InjectionDetector
from .security.recorder import SecurityEventRecorder
from .security.threat_analyzer import ThreatAnalyzer
from .storage.database import TelemetryDatabase

logger = logging.getLogger(__name__)


class TelemetryService:
    """
    One long-lived instance per process, passed to the request handlers
    that need it.

    Call sites use the delegating methods below; the components are also
    exposed as attributes for tests and advanced use.
    """

    def __init__(self, config: Optional[TelemetryConfig] = None, clock=None,
                 geo_locator=None, db: Optional[TelemetryDatabase] = None):
        self.config = config or TelemetryConfig()
        self.config.validate()
        self.clock = clock or SystemClock()
        self.running = False

        self.bus = EventBus()
        self.db = db or TelemetryDatabase(self.config.db_path, self.config.integrity_key)
        self.cipher = SensitiveFieldCipher(self.config.cipher_key, self.config.cipher_salt)
        self.classifier = RiskClassifier()
        self.scheduler = Scheduler(self.clock)

        self.audit = AuditLogger(
            self.db, self.bus,
            cipher=self.cipher,
            classifier=self.classifier,
            clock=self.clock,
            batch_size=self.config.batch_size,
            flush_interval=self.config.flush_interval_seconds,
            file_logging=self.config.file_logging
        )
        self.retention = RetentionScheduler(
            self.db, self.audit,
            clock=self.clock,
            retention_days=self.config.retention_days,
            policies=self.config.retention_policies,
            per_level=self.config.per_level_retention,
            interval=self.config.cleanup_interval_seconds
        )

        self.recorder = SecurityEventRecorder(self.db, self.bus, self.clock)
        self.intrusion = IntrusionAggregator(self.db, self.recorder, self.clock)
        self.monitor = SecurityMonitor(
            self.db, self.recorder, self.bus,
            intrusion=self.intrusion,
            clock=self.clock,
            whitelisted_ips=self.config.whitelisted_ips,
            login_monitor_interval=self.config.login_monitor_interval_seconds,
            intrusion_scan_interval=self.config.intrusion_scan_interval_seconds,
            threat_analysis_interval=self.config.threat_analysis_interval_seconds
        )

        self._owns_geo_locator = geo_locator is None
        self.geo_locator = geo_locator if geo_locator is not None else GeoLocator(self.config.geoip_db_path)
        self.analyzer = ThreatAnalyzer(
            self.db, self.recorder, self.bus, self.monitor.threat_rules,
            geo_locator=self.geo_locator, clock=self.clock
        )
        self.detector = InjectionDetector(self.recorder)
        self.reporter = TelemetryReporter(self.db, self.audit, self.cipher, self.clock)

        self.audit.schedule(self.scheduler)
        self.retention.schedule(self.scheduler)
        self.monitor.schedule(self.scheduler)

    @classmethod
    def from_env(cls, **kwargs) -> "TelemetryService":
        return cls(TelemetryConfig.from_env(), **kwargs)

    async def start(self) -> None:
        if self.running:
            return

        logger.info("Starting telemetry service")
        self.retention.initialize_retention_policies()
        await self.monitor.start()
        self.bus.add_observer(ALERT_REQUIRED, self._handle_alert_required)
        self.audit.start()
        self.scheduler.start()
        self.running = True
        logger.info(f"Telemetry service started with config {self.config.to_dict()}")

    async def stop(self) -> None:
        """Cancel every ticker, then drain the audit queue once"""
        if not self.running:
            return

        logger.info("Stopping telemetry service")
        await self.scheduler.stop()
        await self.audit.stop()
        await self.bus.drain()

        self.monitor.stop()
        self.bus.remove_observer(ALERT_REQUIRED, self._handle_alert_required)
        if self._owns_geo_locator:
            self.geo_locator.close()

        self.running = False
        logger.info("Telemetry service stopped")

    async def __aenter__(self) -> "TelemetryService":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.stop()

    def _handle_alert_required(self, entry) -> None:
        logger.warning(
            f"AUDIT ALERT: {entry.action} on {entry.entity} "
            f"(risk: {entry.risk_level}, correlation: {entry.correlation_id})"
        )

    # ------------------------------------------------------------------
    # Audit intake
    # ------------------------------------------------------------------

    async def log(self, action: str, entity: str, entity_id: Any, description: str,
                  options: Optional[LogOptions] = None) -> Dict[str, Any]:
        return await self.audit.log(action, entity, entity_id, description, options)

    async def log_user_action(self, action: str, user_id: Any, entity: str, entity_id: Any,
                              description: str, options: Optional[LogOptions] = None) -> Dict[str, Any]:
        return await self.audit.log_user_action(action, user_id, entity, entity_id, description, options)

    async def log_system_event(self, event: str, entity: str, description: str,
                               options: Optional[LogOptions] = None) -> Dict[str, Any]:
        return await self.audit.log_system_event(event, entity, description, options)

    async def log_security_event(self, event: str, severity: str, details: Optional[Dict[str, Any]] = None,
                                 options: Optional[LogOptions] = None) -> Dict[str, Any]:
        return await self.audit.log_security_event(event, severity, details, options)

    def get_statistics(self) -> Dict[str, Any]:
        return self.audit.get_statistics()

    async def cleanup_expired_logs(self) -> int:
        return await self.retention.cleanup_expired_logs()

    # ------------------------------------------------------------------
    # Threat detection
    # ------------------------------------------------------------------

    async def analyze_login_attempt(self, attempt: LoginAttempt) -> Dict[str, Any]:
        return await self.analyzer.analyze_login_attempt(attempt)

    async def detect_anomalous_data_access(self, user_id: int, entity: str, access_type: str,
                                           options: Optional[DataAccessOptions] = None) -> Dict[str, Any]:
        return await self.analyzer.detect_anomalous_data_access(user_id, entity, access_type, options)

    async def detect_privilege_escalation(self, user_id: int, action: str, target_entity: str,
                                          options: Optional[EscalationOptions] = None) -> Dict[str, Any]:
        return await self.analyzer.detect_privilege_escalation(user_id, action, target_entity, options)

    async def detect_sql_injection(self, request_data: Any) -> Dict[str, Any]:
        return await self.detector.detect_sql_injection(request_data)

    async def detect_xss_attempt(self, request_data: Any) -> Dict[str, Any]:
        return await self.detector.detect_xss_attempt(request_data)

    async def analyze_system_intrusion(self) -> Dict[str, Any]:
        return await self.intrusion.analyze_system_intrusion()

    def get_threat_intelligence(self) -> Dict[str, Any]:
        return self.monitor.get_threat_intelligence()

    def is_ip_blocked(self, ip: str) -> bool:
        return self.monitor.is_ip_blocked(ip)

    # ------------------------------------------------------------------
    # Queries and reports
    # ------------------------------------------------------------------

    async def search_logs(self, query: Optional[AuditLogQuery] = None) -> Dict[str, Any]:
        return await self.reporter.search_logs(query)

    async def search_events(self, query: Optional[SecurityEventQuery] = None) -> Dict[str, Any]:
        return await self.reporter.search_events(query)

    async def search_attempts(self, query: Optional[LoginAttemptQuery] = None) -> Dict[str, Any]:
        return await self.reporter.search_attempts(query)

    async def get_security_statistics(self, hours: int = 24) -> Dict[str, Any]:
        return await self.reporter.get_security_statistics(hours)

    async def get_threat_trends(self, days: int = 7):
        return await self.reporter.get_threat_trends(days)

    async def get_operation_trends(self, days: int = 7):
        return await self.reporter.get_operation_trends(days)

    async def get_suspicious_ips(self, hours: int = 24, limit: int = 10):
        return await self.reporter.get_suspicious_ips(hours, limit)

    async def generate_compliance_report(self, report_type: str, range_days: int = 30) -> Dict[str, Any]:
        return await self.reporter.generate_compliance_report(report_type, range_days)

    async def verify_data_integrity(self, log_id: Optional[int] = None) -> Dict[str, Any]:
        return await self.reporter.verify_data_integrity(log_id)

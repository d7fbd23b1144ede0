#!/usr/bin/env python3
"""
Security monitor
Threat rules, IP allow/block lists, event handlers and periodic scans
"""

import logging
from datetime import timedelta
from typing import Any, Dict, List, Optional, Set

from ..core.config import LOCAL_IPS
from ..core.events import BLOCK_IP, CRITICAL_THREAT, THREAT_DETECTED, EventBus
from ..core.models import LoginAttemptQuery, SecurityEventQuery, ThreatRule
from ..core.scheduler import SystemClock
from ..storage.database import TelemetryDatabase

logger = logging.getLogger(__name__)

BLOCK_LIST_HOURS = 24
SUSPICIOUS_ACTIVITY_TTL_HOURS = 24
SUSPICIOUS_ACTIVITY_MIN_COUNT = 3


def load_threat_rules() -> Dict[str, ThreatRule]:
    """Fixed detection rules keyed by rule id"""
    rules = [
        ThreatRule('brute_force', 'login_attempts', 'high',
                   'Repeated failed logins in a short window',
                   threshold=5, time_window_seconds=300),
        ThreatRule('port_scan', 'connection_attempts', 'medium',
                   'Large number of connection attempts',
                   threshold=50, time_window_seconds=60),
        ThreatRule('data_exfiltration', 'data_access', 'critical',
                   'Large data export',
                   threshold=1000, time_window_seconds=3600),
        ThreatRule('sql_injection', 'malicious_input', 'critical',
                   'SQL injection attempt',
                   patterns=['union select', 'drop table', 'exec(']),
        ThreatRule('xss_attack', 'malicious_input', 'high',
                   'XSS attempt',
                   patterns=['<script', 'javascript:', 'onerror=']),
    ]
    return {rule.rule_id: rule for rule in rules}


class SecurityMonitor:
    """Owns the in-memory security state of the process"""

    def __init__(self, db: TelemetryDatabase, recorder, bus: EventBus, intrusion=None,
                 clock=None, whitelisted_ips: Optional[List[str]] = None,
                 login_monitor_interval: float = 60, intrusion_scan_interval: float = 600,
                 threat_analysis_interval: float = 3600):
        self.db = db
        self.recorder = recorder
        self.bus = bus
        self.intrusion = intrusion
        self.clock = clock or SystemClock()
        self.configured_whitelist = list(whitelisted_ips or [])

        self.login_monitor_interval = login_monitor_interval
        self.intrusion_scan_interval = intrusion_scan_interval
        self.threat_analysis_interval = threat_analysis_interval

        self.threat_rules: Dict[str, ThreatRule] = load_threat_rules()
        self.whitelisted_ips: Set[str] = set()
        self.blocked_ips: Set[str] = set()
        self.suspicious_activities: Dict[str, Dict[str, Any]] = {}
        self._last_login_check = None

    async def start(self) -> None:
        await self.load_ip_lists()
        self.setup_event_listeners()
        logger.info(
            f"Security monitor started: {len(self.threat_rules)} threat rules, "
            f"{len(self.whitelisted_ips)} whitelisted, {len(self.blocked_ips)} blocked IPs"
        )

    def stop(self) -> None:
        self.bus.remove_observer(BLOCK_IP, self.handle_block_ip)
        self.bus.remove_observer(THREAT_DETECTED, self.block_threat_source)
        self.bus.remove_observer(CRITICAL_THREAT, self.handle_critical_event)
        logger.info("Security monitor stopped")

    def schedule(self, scheduler) -> None:
        scheduler.every("login_monitor", self.login_monitor_interval, self.monitor_login_attempts)
        scheduler.every("intrusion_scan", self.intrusion_scan_interval, self.monitor_system_intrusion)
        scheduler.every("threat_analysis", self.threat_analysis_interval, self.perform_threat_analysis)

    # ------------------------------------------------------------------
    # IP lists
    # ------------------------------------------------------------------

    async def load_ip_lists(self) -> None:
        self.whitelisted_ips.update(ip for ip in self.configured_whitelist if ip)
        self.whitelisted_ips.update(LOCAL_IPS)

        try:
            events = await self.db.find_security_events(SecurityEventQuery(
                event_type='ip_blocked',
                start_date=self.clock.now() - timedelta(hours=BLOCK_LIST_HOURS),
                limit=None
            ))
            for event in events:
                ip = (event.event_data or {}).get('ip_address')
                if ip:
                    self.blocked_ips.add(ip)
        except Exception as e:
            logger.error(f"Failed to load blocked IP list: {e}")

    def is_ip_whitelisted(self, ip: Optional[str]) -> bool:
        return ip in self.whitelisted_ips

    def is_ip_blocked(self, ip: Optional[str]) -> bool:
        return ip in self.blocked_ips

    # ------------------------------------------------------------------
    # Event handlers
    # ------------------------------------------------------------------

    def setup_event_listeners(self) -> None:
        self.bus.add_observer(BLOCK_IP, self.handle_block_ip)
        self.bus.add_observer(THREAT_DETECTED, self.block_threat_source)
        self.bus.add_observer(CRITICAL_THREAT, self.handle_critical_event)

    async def handle_block_ip(self, data: Any) -> bool:
        """Add an IP to the block list and record it; whitelisted IPs are never blocked"""
        if isinstance(data, dict):
            ip, reason = data.get('ip_address'), data.get('reason')
        else:
            ip, reason = data, None

        if not ip:
            return False
        if self.is_ip_whitelisted(ip):
            logger.info(f"Not blocking whitelisted IP {ip}")
            return False
        if ip in self.blocked_ips:
            return False

        self.blocked_ips.add(ip)
        logger.warning(f"Blocking IP {ip}: {reason or 'unspecified'}")

        try:
            await self.recorder.create_security_event(
                'ip_blocked',
                {'ip_address': ip, 'reason': reason},
                {'ip_address': ip}
            )
        except Exception as e:
            logger.error(f"Failed to record block of {ip}: {e}")
        return True

    def block_threat_source(self, threat: Dict[str, Any]) -> None:
        ip = (threat or {}).get('ip_address')
        if ip:
            self.bus.emit(BLOCK_IP, {
                'ip_address': ip,
                'reason': ','.join(threat.get('threats', [])) or 'threat_detected'
            })

    def handle_critical_event(self, event) -> None:
        logger.warning(
            f"CRITICAL SECURITY EVENT: {event.event_type} "
            f"(severity: {event.severity}, ip: {event.ip_address}, score: {event.risk_score})"
        )

    # ------------------------------------------------------------------
    # Periodic scans
    # ------------------------------------------------------------------

    async def monitor_login_attempts(self) -> None:
        """Track IPs with failed logins since the previous run"""
        now = self.clock.now()
        since = self._last_login_check or now - timedelta(seconds=self.login_monitor_interval)
        self._last_login_check = now

        groups = await self.db.group_login_attempts(
            ['ip_address'],
            LoginAttemptQuery(success=False, start_date=since, end_date=now)
        )
        for group in groups:
            activity = self.suspicious_activities.setdefault(group['ip_address'], {'count': 0})
            activity['count'] += group['count']
            activity['last_seen'] = now

        if groups:
            logger.debug(f"Failed logins from {len(groups)} IPs since {since.isoformat()}")

    async def monitor_system_intrusion(self) -> None:
        if self.intrusion is not None:
            await self.intrusion.analyze_system_intrusion()

    async def perform_threat_analysis(self) -> None:
        cutoff = self.clock.now() - timedelta(hours=SUSPICIOUS_ACTIVITY_TTL_HOURS)
        stale = [key for key, activity in self.suspicious_activities.items()
                 if activity['last_seen'] < cutoff]
        for key in stale:
            del self.suspicious_activities[key]

        logger.info(
            f"Threat analysis: {len(self.blocked_ips)} blocked IPs, "
            f"{len(self.suspicious_activities)} suspicious sources, {len(stale)} expired"
        )

    def get_threat_intelligence(self) -> Dict[str, Any]:
        intelligence = {
            'known_threats': [{
                'type': rule_id,
                'severity': rule.severity,
                'description': rule.description
            } for rule_id, rule in self.threat_rules.items()],
            'emerging_threats': [],
            'blocked_ips': sorted(self.blocked_ips),
            'suspicious_activities': [{
                'identifier': key,
                'count': activity['count'],
                'last_seen': activity['last_seen'].isoformat()
            } for key, activity in self.suspicious_activities.items()
                if activity['count'] > SUSPICIOUS_ACTIVITY_MIN_COUNT],
            'recommendations': []
        }

        if len(intelligence['blocked_ips']) > 50:
            intelligence['recommendations'].append('Consider stricter access control policies')
        if len(intelligence['suspicious_activities']) > 10:
            intelligence['recommendations'].append('Increase real-time monitoring and alerting')

        return intelligence

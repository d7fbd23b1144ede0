#!/usr/bin/env python3
"""
Login and access threat analysis
Additive risk scoring for login attempts, data access and privilege escalation
"""

import re
import logging
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from ..core.events import THREAT_DETECTED, EventBus
from ..core.models import (
    AuditLogQuery,
    DataAccessOptions,
    EscalationOptions,
    LoginAttempt,
    LoginAttemptQuery,
    SecurityEventQuery,
    ThreatRule,
    User,
    UserRole,
    is_higher_role,
)
from ..core.scheduler import SystemClock
from ..storage.database import TelemetryDatabase
from .geo import haversine_distance, has_coordinates

logger = logging.getLogger(__name__)

HISTORY_DAYS = 30
IMPOSSIBLE_TRAVEL_KMH = 1000

SUSPICIOUS_USER_AGENTS = [
    re.compile(pattern, re.IGNORECASE)
    for pattern in (r"bot", r"crawler", r"spider", r"scraper", r"curl", r"wget", r"python", r"java")
]

# Normal activity windows, [start, end) in local hours
LOGIN_HOURS = (6, 22)
BUSINESS_HOURS = (8, 18)

ACCESS_ACTIONS = ['view', 'read', 'export']
SENSITIVE_DATA_ENTITIES = {'User', 'UserPoints', 'Review'}
MIN_HOURLY_ACCESS_BASELINE = 10

ADMIN_ACTIONS = {'DELETE_USER', 'MODIFY_PERMISSIONS', 'ACCESS_AUDIT_LOGS', 'SYSTEM_CONFIG'}
SENSITIVE_ESCALATION_ACTIONS = ADMIN_ACTIONS
MAX_RECENT_ESCALATIONS = 3


class ThreatAnalyzer:
    """Per-call risk scoring; scores are additive and uncapped"""

    def __init__(self, db: TelemetryDatabase, recorder, bus: EventBus,
                 threat_rules: Dict[str, ThreatRule], geo_locator=None, clock=None):
        self.db = db
        self.recorder = recorder
        self.bus = bus
        self.threat_rules = threat_rules
        self.geo_locator = geo_locator
        self.clock = clock or SystemClock()

    # ------------------------------------------------------------------
    # Login attempts
    # ------------------------------------------------------------------

    async def analyze_login_attempt(self, attempt: LoginAttempt) -> Dict[str, Any]:
        """
        Score a login attempt

        Args:
            attempt: The attempt, usually already stored by the authentication flow

        Returns:
            Aggregate risk score, threats, recommendations, should_block and
            the individual sub-analyses
        """
        try:
            now = attempt.created_at or self.clock.now()
            analysis = {
                'risk_score': 0,
                'threats': [],
                'recommendations': [],
                'should_block': False
            }

            geo_analysis = await self.analyze_geolocation(attempt, now)
            analysis['risk_score'] += geo_analysis['risk_score']
            if geo_analysis['is_anomalous']:
                analysis['threats'].append(geo_analysis.get('reason', 'geo_location_anomaly'))
                analysis['recommendations'].append('verify_user_location')

            frequency_analysis = await self.analyze_login_frequency(attempt.ip_address, now)
            analysis['risk_score'] += frequency_analysis['risk_score']
            if frequency_analysis['is_brute_force']:
                analysis['threats'].append('brute_force_attack')
                analysis['should_block'] = True

            device_analysis = await self.analyze_device_fingerprint(attempt, now)
            analysis['risk_score'] += device_analysis['risk_score']
            if device_analysis['is_new_device']:
                analysis['threats'].append('new_device_login')
                analysis['recommendations'].append('verify_device')

            ua_analysis = self.analyze_user_agent(attempt.user_agent)
            analysis['risk_score'] += ua_analysis['risk_score']
            if ua_analysis['is_suspicious']:
                analysis['threats'].append('suspicious_user_agent')

            time_analysis = self.analyze_time_pattern(now)
            analysis['risk_score'] += time_analysis['risk_score']
            if time_analysis['is_unusual']:
                analysis['threats'].append('unusual_time_pattern')

            analysis.update({
                'geolocation': geo_analysis,
                'frequency': frequency_analysis,
                'device': device_analysis,
                'user_agent': ua_analysis,
                'time_pattern': time_analysis
            })

            if analysis['risk_score'] > 50 or analysis['threats']:
                await self.recorder.create_security_event('suspicious_login', analysis, attempt.to_dict())

            if analysis['should_block']:
                logger.warning(f"Brute force detected from {attempt.ip_address}, recommending block")
                self.bus.emit(THREAT_DETECTED, {
                    'ip_address': attempt.ip_address,
                    'username': attempt.username,
                    'threats': list(analysis['threats']),
                    'risk_score': analysis['risk_score']
                })

            return analysis

        except Exception as e:
            logger.error(f"Login attempt analysis failed: {e}")
            return {'risk_score': 0, 'threats': [], 'recommendations': [], 'should_block': False}

    async def analyze_geolocation(self, attempt: LoginAttempt, now: datetime) -> Dict[str, Any]:
        location = None
        if self.geo_locator is not None:
            location = await self.geo_locator.lookup(attempt.ip_address)
        if not location:
            location = attempt.location
        if not location:
            return {'risk_score': 0, 'is_anomalous': False}

        history = await self.db.login_history(
            attempt.username,
            since=now - timedelta(days=HISTORY_DAYS),
            before=now,
            with_location=True
        )

        is_new_location = not any(
            h.location.get('country') == location.get('country') and
            h.location.get('region') == location.get('region')
            for h in history
        )

        if history:
            last = history[0]
            if has_coordinates(last.location) and has_coordinates(location):
                distance = haversine_distance(
                    last.location['latitude'], last.location['longitude'],
                    location['latitude'], location['longitude']
                )
                hours = (now - last.created_at).total_seconds() / 3600
                if hours > 0:
                    speed = distance / hours
                else:
                    speed = float('inf') if distance > 0 else 0.0

                if speed > IMPOSSIBLE_TRAVEL_KMH:
                    return {
                        'risk_score': 80,
                        'is_anomalous': True,
                        'reason': 'impossible_travel',
                        'distance_km': round(distance, 1),
                        'speed_kmh': speed if speed == float('inf') else round(speed, 1),
                        'current_location': location
                    }

        return {
            'risk_score': 30 if is_new_location else 0,
            'is_anomalous': is_new_location,
            'current_location': location
        }

    async def analyze_login_frequency(self, ip_address: str, now: datetime) -> Dict[str, Any]:
        rule = self.threat_rules['brute_force']
        attempt_count = await self.db.count_login_attempts(LoginAttemptQuery(
            ip_address=ip_address,
            success=False,
            start_date=now - timedelta(seconds=rule.time_window_seconds)
        ))

        analysis = {'risk_score': 0, 'is_brute_force': False, 'attempt_count': attempt_count}
        if attempt_count >= rule.threshold:
            analysis['is_brute_force'] = True
            analysis['risk_score'] = 70
        elif attempt_count >= rule.threshold * 0.6:
            analysis['risk_score'] = 30
        return analysis

    async def analyze_device_fingerprint(self, attempt: LoginAttempt, now: datetime) -> Dict[str, Any]:
        if not attempt.device_fingerprint:
            return {'risk_score': 0, 'is_new_device': False, 'device_count': 0}

        history = await self.db.login_history(
            attempt.username,
            since=now - timedelta(days=HISTORY_DAYS),
            before=now,
            success=True,
            with_fingerprint=True
        )
        known = {h.device_fingerprint for h in history}
        is_new_device = attempt.device_fingerprint not in known

        return {
            'risk_score': 20 if is_new_device else 0,
            'is_new_device': is_new_device,
            'device_count': len(known)
        }

    def analyze_user_agent(self, user_agent: Optional[str]) -> Dict[str, Any]:
        is_suspicious = bool(user_agent) and any(p.search(user_agent) for p in SUSPICIOUS_USER_AGENTS)
        return {'risk_score': 25 if is_suspicious else 0, 'is_suspicious': is_suspicious}

    def analyze_time_pattern(self, now: datetime) -> Dict[str, Any]:
        start, end = LOGIN_HOURS
        is_unusual = not (start <= now.hour < end)
        return {'risk_score': 15 if is_unusual else 0, 'is_unusual': is_unusual, 'current_hour': now.hour}

    # ------------------------------------------------------------------
    # Data access
    # ------------------------------------------------------------------

    def is_outside_normal_hours(self, now: datetime) -> bool:
        if now.weekday() >= 5:
            return True
        start, end = BUSINESS_HOURS
        return not (start <= now.hour < end)

    async def get_user_access_pattern(self, user_id: int, entity: str, now: datetime) -> Dict[str, Any]:
        """Historical hourly access rate and prior access to the entity"""
        window_start = now - timedelta(days=HISTORY_DAYS)
        window_end = now - timedelta(hours=1)

        historical = await self.db.count_audit_logs(AuditLogQuery(
            user_id=user_id, entity=entity, actions=ACCESS_ACTIONS,
            start_date=window_start, end_date=window_end
        ))
        prior = await self.db.count_audit_logs(AuditLogQuery(
            user_id=user_id, entity=entity, end_date=window_end
        ))

        return {
            'average_hourly_access': max(historical / (HISTORY_DAYS * 24), MIN_HOURLY_ACCESS_BASELINE),
            'has_access_to_sensitive_data': prior > 0
        }

    async def detect_anomalous_data_access(self, user_id: int, entity: str, access_type: str,
                                           options: Optional[DataAccessOptions] = None) -> Dict[str, Any]:
        try:
            options = options or DataAccessOptions()
            now = self.clock.now()
            analysis = {'is_anomalous': False, 'reasons': [], 'risk_score': 0}

            pattern = await self.get_user_access_pattern(user_id, entity, now)

            if self.is_outside_normal_hours(now):
                analysis['is_anomalous'] = True
                analysis['reasons'].append('access_outside_normal_hours')
                analysis['risk_score'] += 20

            recent_access = await self.db.count_audit_logs(AuditLogQuery(
                user_id=user_id, entity=entity, actions=ACCESS_ACTIONS,
                start_date=now - timedelta(hours=1)
            ))
            if recent_access > pattern['average_hourly_access'] * 3:
                analysis['is_anomalous'] = True
                analysis['reasons'].append('excessive_access_frequency')
                analysis['risk_score'] += 30

            export_threshold = self.threat_rules['data_exfiltration'].threshold
            if access_type == 'export' and (options.record_count or 0) > export_threshold:
                analysis['is_anomalous'] = True
                analysis['reasons'].append('large_data_export')
                analysis['risk_score'] += 40

            if entity in SENSITIVE_DATA_ENTITIES:
                analysis['risk_score'] += 10
                if not pattern['has_access_to_sensitive_data']:
                    analysis['is_anomalous'] = True
                    analysis['reasons'].append('unusual_sensitive_data_access')
                    analysis['risk_score'] += 25

            if analysis['is_anomalous']:
                await self.recorder.create_security_event('data_access_violation', analysis, {
                    'user_id': user_id,
                    'entity': entity,
                    'access_type': access_type,
                    'record_count': options.record_count,
                    'ip_address': options.ip_address,
                    'user_agent': options.user_agent
                })

            return analysis

        except Exception as e:
            logger.error(f"Anomalous data access detection failed: {e}")
            return {'is_anomalous': False, 'reasons': [], 'risk_score': 0}

    # ------------------------------------------------------------------
    # Privilege escalation
    # ------------------------------------------------------------------

    def check_user_permission(self, user: User, action: str, target_entity: str) -> bool:
        if action in ADMIN_ACTIONS:
            return user.role == UserRole.ADMIN.value
        return True

    async def detect_privilege_escalation(self, user_id: int, action: str, target_entity: str,
                                          options: Optional[EscalationOptions] = None) -> Dict[str, Any]:
        try:
            options = options or EscalationOptions()
            now = self.clock.now()
            analysis = {'is_escalation': False, 'reasons': [], 'risk_score': 0}
            context = {
                'user_id': user_id,
                'requested_action': action,
                'target_entity': target_entity,
                'target_user_id': options.target_user_id,
                'ip_address': options.ip_address,
                'user_agent': options.user_agent
            }

            user = await self.db.get_user(user_id)
            if user is None:
                analysis.update({'is_escalation': True, 'reasons': ['user_not_found'], 'risk_score': 100})
                await self.recorder.create_security_event('privilege_escalation', analysis, context)
                return analysis

            context['user_role'] = user.role

            if not self.check_user_permission(user, action, target_entity):
                analysis['is_escalation'] = True
                analysis['reasons'].append('insufficient_permissions')
                analysis['risk_score'] += 60

            if options.target_user_id is not None:
                # Unparsable ids resolve to no user and skip the role comparison
                target = await self.db.get_user(options.target_user_id)
                if target is not None and target.id != user.id and is_higher_role(target.role, user.role):
                    analysis['is_escalation'] = True
                    analysis['reasons'].append('modify_higher_role_user')
                    analysis['risk_score'] += 80

            if action in SENSITIVE_ESCALATION_ACTIONS and user.role != UserRole.ADMIN.value:
                analysis['is_escalation'] = True
                analysis['reasons'].append('sensitive_action_attempt')
                analysis['risk_score'] += 70

            recent_attempts = await self.db.count_security_events(SecurityEventQuery(
                event_type='privilege_escalation',
                user_id=user.id,
                start_date=now - timedelta(hours=1)
            ))
            if recent_attempts > MAX_RECENT_ESCALATIONS:
                analysis['reasons'].append('multiple_escalation_attempts')
                analysis['risk_score'] += 30

            if analysis['is_escalation']:
                logger.warning(f"Privilege escalation attempt by user {user.id}: {analysis['reasons']}")
                await self.recorder.create_security_event('privilege_escalation', analysis, context)

            return analysis

        except Exception as e:
            logger.error(f"Privilege escalation detection failed: {e}")
            return {'is_escalation': False, 'reasons': [], 'risk_score': 0}


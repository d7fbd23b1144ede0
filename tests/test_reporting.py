#!/usr/bin/env python3
"""
Tests for searches, statistics and compliance reports
"""

import sqlite3
from datetime import timedelta
from unittest.mock import AsyncMock, patch

import pytest

from library_audit.core.events import LOG_CREATED
from library_audit.core.models import (
    AuditLogQuery,
    LoginAttempt,
    LoginAttemptQuery,
    LogOptions,
    SecurityEvent,
    SecurityEventQuery,
    User,
)
from library_audit.reporting import TelemetryReporter, compliance_query

from conftest import START


@pytest.fixture
def reporter(db, audit_logger, cipher, clock):
    return TelemetryReporter(db, audit_logger, cipher, clock)


async def seed_logs(audit_logger):
    await audit_logger.log('view', 'Book', 1, 'viewed Dune', LogOptions(user_id=7))
    await audit_logger.log('delete', 'Book', 2, 'removed damaged copy', LogOptions(user_id=7))
    await audit_logger.log('update', 'Book', 3, 'fixed title', LogOptions(security_flags=['manual_review']))
    await audit_logger.log('export', 'Loan', 'all', 'exported loans', LogOptions(user_id=8, result='failure'))
    await audit_logger.flush_log_queue()


class TestSearches:

    @pytest.mark.asyncio
    async def test_keyword_search_with_users(self, reporter, audit_logger, db):
        await db.create_user(User(7, 'marta', 'librarian', 'Marta Ruiz'))
        await seed_logs(audit_logger)

        result = await reporter.search_logs(AuditLogQuery(keyword='Dune'))

        assert result['count'] == 1
        row = result['rows'][0]
        assert row['action'] == 'view'
        assert row['user'] == {'id': 7, 'username': 'marta', 'real_name': 'Marta Ruiz', 'role': 'librarian'}

    @pytest.mark.asyncio
    async def test_pagination_newest_first(self, reporter, audit_logger, clock):
        for i in range(5):
            await audit_logger.log('view', 'Book', i, f'view {i}')
            await clock.advance(1)
        await audit_logger.flush_log_queue()

        page = await reporter.search_logs(AuditLogQuery(limit=2, offset=1))

        assert page['count'] == 5
        assert [row['entity_id'] for row in page['rows']] == ['3', '2']
        assert page['rows'][0]['user'] is None

    @pytest.mark.asyncio
    async def test_include_decrypted(self, reporter, audit_logger):
        await audit_logger.log('delete', 'User', 7, 'deleted account',
                               LogOptions(old_values={'email': 'reader@example.org'}))

        encrypted = await reporter.search_logs(AuditLogQuery(entity='User'))
        decrypted = await reporter.search_logs(AuditLogQuery(entity='User', include_decrypted=True))

        assert isinstance(encrypted['rows'][0]['old_values'], str)
        assert decrypted['rows'][0]['old_values'] == {'email': 'reader@example.org'}
        assert decrypted['rows'][0]['is_encrypted'] is True

    @pytest.mark.asyncio
    async def test_user_history(self, reporter, audit_logger):
        await seed_logs(audit_logger)

        history = await reporter.get_user_history(7, actions=['delete'])

        assert history['count'] == 1
        assert history['rows'][0]['description'] == 'removed damaged copy'

    @pytest.mark.asyncio
    async def test_event_and_attempt_search(self, reporter, recorder, db):
        await recorder.create_security_event('xss_attempt', {'risk_score': 40}, {'ip_address': '192.0.2.1'})
        await recorder.create_security_event('suspicious_login', {'risk_score': 60}, {'ip_address': '192.0.2.2'})
        await db.create_login_attempt(LoginAttempt('alice', '192.0.2.1', False, created_at=START))

        events = await reporter.search_events(SecurityEventQuery(severity='high'))
        attempts = await reporter.search_attempts(LoginAttemptQuery(keyword='alice'))

        assert events['count'] == 1
        assert events['rows'][0]['event_type'] == 'xss_attempt'
        assert attempts['count'] == 1
        assert attempts['rows'][0]['success'] is False

    @pytest.mark.asyncio
    async def test_high_priority_events(self, reporter, recorder):
        await recorder.create_security_event('suspicious_login', {})
        await recorder.create_security_event('sql_injection_attempt', {})
        await recorder.create_security_event('privilege_escalation', {}, {'user_id': 3})

        events = await reporter.get_high_priority_events()

        assert sorted(e['event_type'] for e in events) == ['privilege_escalation', 'sql_injection_attempt']
        single = await reporter.get_security_event(events[0]['id'])
        assert single['id'] == events[0]['id']
        assert await reporter.get_security_event(999) is None

    @pytest.mark.asyncio
    async def test_search_failure_is_fail_safe(self, reporter, db):
        with patch.object(db, 'find_audit_logs', AsyncMock(side_effect=RuntimeError('locked'))):
            assert await reporter.search_logs() == {'rows': [], 'count': 0}


class TestStatistics:

    @pytest.mark.asyncio
    async def test_security_statistics(self, reporter, audit_logger, recorder, db):
        await seed_logs(audit_logger)
        await recorder.create_security_event('xss_attempt', {})
        await recorder.create_security_event('xss_attempt', {})
        await recorder.create_security_event('suspicious_login', {})
        await db.create_login_attempt(LoginAttempt('alice', '192.0.2.1', True, created_at=START))
        await db.create_login_attempt(LoginAttempt('alice', '192.0.2.1', False, created_at=START))
        await db.create_login_attempt(LoginAttempt('bob', '192.0.2.2', False, created_at=START))

        stats = await reporter.get_security_statistics(24)

        assert stats['audit']['total'] == 4
        assert stats['audit']['by_risk_level'] == {'low': 1, 'medium': 2, 'high': 1}
        assert stats['audit']['by_result'] == {'success': 3, 'failure': 1}
        assert stats['security']['by_type'] == {'xss_attempt': 2, 'suspicious_login': 1}
        assert stats['security']['by_severity'] == {'high': 2, 'medium': 1}
        assert stats['authentication'] == {'successful': 1, 'failed': 2, 'total': 3}
        assert stats['period'] == '24 hours'

    @pytest.mark.asyncio
    async def test_threat_trends(self, reporter, db):
        for hours_ago in (1, 2, 49):
            await db.create_security_event(SecurityEvent(
                'xss_attempt', 'high', created_at=START - timedelta(hours=hours_ago)
            ))

        trends = await reporter.get_threat_trends(3)

        assert trends == [
            {'date': '2024-01-07', 'count': 1},
            {'date': '2024-01-08', 'count': 0},
            {'date': '2024-01-09', 'count': 2},
        ]

    @pytest.mark.asyncio
    async def test_operation_trends(self, reporter, audit_logger, clock):
        await seed_logs(audit_logger)
        await clock.advance(60)

        trends = await reporter.get_operation_trends(2)

        assert len(trends) == 2
        assert trends[0]['operations'] == {}
        assert trends[1]['operations'] == {'view': 1, 'delete': 1, 'update': 1, 'export': 1}

    @pytest.mark.asyncio
    async def test_suspicious_ips(self, reporter, db):
        for ip, count in (('192.0.2.1', 2), ('192.0.2.2', 5), ('192.0.2.3', 1)):
            for _ in range(count):
                await db.create_login_attempt(LoginAttempt('alice', ip, False, created_at=START))
        await db.create_login_attempt(LoginAttempt('alice', '192.0.2.9', True, created_at=START))

        top = await reporter.get_suspicious_ips(24, limit=2)

        assert top == [
            {'ip_address': '192.0.2.2', 'failed_attempts': 5},
            {'ip_address': '192.0.2.1', 'failed_attempts': 2},
        ]


class TestComplianceReports:

    def test_presets(self):
        assert compliance_query('security', START).security_relevant is True
        assert compliance_query('user_activity', START).has_user is True
        assert compliance_query('system_changes', START).entities == ['System', 'Configuration', 'Permission']
        assert compliance_query('data_access', START).actions == ['read', 'export', 'download']
        assert compliance_query('anything', START).limit is None

    @pytest.mark.asyncio
    async def test_security_report(self, reporter, audit_logger):
        await seed_logs(audit_logger)

        report = await reporter.generate_compliance_report('security', 30)

        assert report['metadata']['report_type'] == 'security'
        assert report['metadata']['time_range'] == 30
        assert report['metadata']['total_records'] == 2
        assert report['metadata']['report_id'].startswith('report_')
        assert sorted(row['action'] for row in report['data']) == ['delete', 'update']

    @pytest.mark.asyncio
    async def test_report_logs_itself(self, reporter, audit_logger):
        await seed_logs(audit_logger)

        report = await reporter.generate_compliance_report('user_activity')

        assert report['metadata']['total_records'] == 3
        self_log = [e for e in audit_logger.log_queue if e.action == 'compliance_report_generated']
        assert len(self_log) == 1
        assert self_log[0].entity == 'ComplianceReport'
        assert self_log[0].compliance_flags == ['compliance_report']
        assert self_log[0].changes['report_id'] == report['metadata']['report_id']

    @pytest.mark.asyncio
    async def test_nested_report_does_not_log_again(self, reporter, audit_logger, bus):
        nested = []

        async def report_on_report(entry):
            if entry.action == 'compliance_report_generated':
                nested.append(await reporter.generate_compliance_report('security'))

        bus.add_observer(LOG_CREATED, report_on_report)
        await reporter.generate_compliance_report('security')
        await bus.drain()

        assert len(nested) == 1
        assert 'error' not in nested[0]['metadata']
        assert len([e for e in audit_logger.log_queue if e.action == 'compliance_report_generated']) == 1

    @pytest.mark.asyncio
    async def test_report_failure(self, reporter, db):
        with patch.object(db, 'find_audit_logs', AsyncMock(side_effect=RuntimeError('locked'))):
            report = await reporter.generate_compliance_report('security')

        assert report['data'] == []
        assert report['metadata']['total_records'] == 0
        assert report['metadata']['error'] == 'locked'


class TestIntegrityVerification:

    @pytest.mark.asyncio
    async def test_all_valid(self, reporter, audit_logger):
        await seed_logs(audit_logger)

        results = await reporter.verify_data_integrity()

        assert results == {'total_checked': 4, 'integrity_valid': 4, 'integrity_invalid': 0, 'invalid_logs': []}
        self_log = [e for e in audit_logger.log_queue if e.action == 'integrity_verification']
        assert self_log[0].risk_level == 'low'

    @pytest.mark.asyncio
    async def test_tampered_entry_detected(self, reporter, audit_logger, db):
        await seed_logs(audit_logger)
        target = (await db.find_audit_logs(AuditLogQuery(action='view')))[0]

        with sqlite3.connect(db.db_path) as conn:
            conn.execute("UPDATE audit_logs SET user_id = 99 WHERE id = ?", (target.id,))
        conn.close()

        results = await reporter.verify_data_integrity()

        assert results['integrity_invalid'] == 1
        assert results['invalid_logs'][0]['id'] == target.id
        assert results['invalid_logs'][0]['action'] == 'view'

        flagged = await db.find_audit_logs(AuditLogQuery(action='integrity_verification'))
        assert len(flagged) == 1
        assert flagged[0].risk_level == 'high'

    @pytest.mark.asyncio
    async def test_single_entry(self, reporter, audit_logger, db):
        await seed_logs(audit_logger)
        target = (await db.find_audit_logs(AuditLogQuery(action='delete')))[0]

        results = await reporter.verify_data_integrity(target.id)
        missing = await reporter.verify_data_integrity(12345)

        assert results['total_checked'] == 1
        assert results['integrity_valid'] == 1
        assert missing['total_checked'] == 0

#!/usr/bin/env python3
"""
Tests for the audit intake and batch writer
"""

import asyncio
import json
import logging
from types import SimpleNamespace
from unittest.mock import AsyncMock, patch

import pytest

from library_audit.audit.logger import AuditLogger, extract_request_info
from library_audit.core.config import FileLoggingConfig
from library_audit.core.events import ALERT_REQUIRED, BATCH_PROCESSED, LOG_CREATED
from library_audit.core.exceptions import PersistenceError
from library_audit.core.models import AuditLogQuery, LogOptions
from library_audit.core.scheduler import Scheduler


async def stored_count(db) -> int:
    return await db.count_audit_logs(AuditLogQuery())


class TestAuditIntake:

    @pytest.mark.asyncio
    async def test_low_risk_entry_waits_for_batch(self, audit_logger, db):
        result = await audit_logger.log('create', 'Book', 42, 'created book', LogOptions())

        assert result['success'] is True
        entry = result['entry']
        assert entry.risk_level == 'low'
        assert entry.is_encrypted is False
        assert entry.id is None
        assert await stored_count(db) == 0
        assert len(audit_logger.log_queue) == 1

        assert await audit_logger.flush_log_queue() == 1
        assert await stored_count(db) == 1
        assert entry.persisted

    @pytest.mark.asyncio
    async def test_high_risk_entry_persisted_before_return(self, audit_logger, db):
        result = await audit_logger.log('delete', 'User', 7, 'deleted user', LogOptions())

        entry = result['entry']
        assert entry.risk_level == 'high'
        assert entry.is_encrypted is True
        assert entry.persisted
        assert await stored_count(db) == 1
        assert audit_logger.stats['high_risk_events'] == 1

    @pytest.mark.asyncio
    async def test_high_risk_entry_not_written_twice(self, audit_logger, db, bus):
        batches = []
        bus.add_observer(BATCH_PROCESSED, batches.append)

        await audit_logger.log('delete', 'User', 7, 'deleted user')
        await audit_logger.log('view', 'Book', 1, 'viewed book')

        assert await audit_logger.flush_log_queue() == 2
        assert await stored_count(db) == 2
        assert len(batches) == 1
        assert [e.action for e in batches[0]] == ['delete', 'view']

    @pytest.mark.asyncio
    async def test_sensitive_payload_encrypted_at_rest(self, audit_logger, db, cipher):
        result = await audit_logger.log('delete', 'User', 7, 'deleted user', LogOptions(
            old_values={'email': 'reader@example.org'}
        ))

        stored = await db.get_audit_log(result['entry'].id)
        assert stored.is_encrypted
        assert isinstance(stored.old_values, str)
        assert cipher.decrypt(stored.old_values) == {'email': 'reader@example.org'}

    @pytest.mark.asyncio
    async def test_sensitive_action_with_payload_encrypted(self, audit_logger):
        result = await audit_logger.log('update', 'Book', 3, 'renamed', LogOptions(
            changes={'title': 'New title'}
        ))
        assert result['entry'].is_encrypted is True

    @pytest.mark.asyncio
    async def test_unserializable_payload_not_flagged_encrypted(self, audit_logger, db):
        result = await audit_logger.log('delete', 'User', 7, 'deleted user', LogOptions(
            changes={'tags': {1, 2}}, old_values={'email': 'reader@example.org'}
        ))

        entry = result['entry']
        assert result['success'] is True
        assert entry.is_encrypted is False
        assert entry.changes == {'tags': {1, 2}}
        assert entry.old_values == {'email': 'reader@example.org'}

        stored = await db.get_audit_log(entry.id)
        assert stored.is_encrypted is False
        assert stored.old_values == {'email': 'reader@example.org'}

    @pytest.mark.asyncio
    async def test_no_encryption_without_key(self, db, bus, clock):
        plain_logger = AuditLogger(db, bus, clock=clock)
        result = await plain_logger.log('delete', 'User', 7, 'deleted user', LogOptions(old_values={'a': 1}))

        assert result['entry'].is_encrypted is False
        assert result['entry'].old_values == {'a': 1}

    @pytest.mark.asyncio
    async def test_log_created_emitted(self, audit_logger, bus):
        created = []
        bus.add_observer(LOG_CREATED, created.append)

        await audit_logger.log('view', 'Book', 1, 'viewed')
        await audit_logger.log('delete', 'Book', 1, 'deleted')

        assert [e.action for e in created] == ['view', 'delete']

    @pytest.mark.asyncio
    async def test_failure_returns_error(self, audit_logger):
        with patch.object(audit_logger.classifier, 'classify', side_effect=RuntimeError('classifier down')):
            result = await audit_logger.log('view', 'Book', 1, 'viewed')

        assert result == {'success': False, 'error': 'classifier down'}
        assert audit_logger.log_queue == []

    @pytest.mark.asyncio
    async def test_direct_write_failure_falls_back_to_batch(self, audit_logger, db):
        with patch.object(db, 'create_audit_log', AsyncMock(side_effect=PersistenceError('locked'))):
            result = await audit_logger.log('delete', 'Book', 1, 'deleted')

        assert result['success'] is True
        assert not result['entry'].persisted
        assert await audit_logger.flush_log_queue() == 1
        assert await stored_count(db) == 1

    @pytest.mark.asyncio
    async def test_unknown_risk_hint_ignored(self, audit_logger, caplog):
        with caplog.at_level(logging.WARNING):
            result = await audit_logger.log('view', 'Book', 1, 'viewed', LogOptions(risk_level='severe'))

        assert result['success'] is True
        assert result['entry'].risk_level == 'low'
        assert len(audit_logger.log_queue) == 1
        assert "Ignoring unknown risk level hint: 'severe'" in caplog.text

    @pytest.mark.asyncio
    async def test_known_risk_hint_raises_level(self, audit_logger):
        result = await audit_logger.log('view', 'Book', 1, 'viewed', LogOptions(risk_level='high'))
        assert result['entry'].risk_level == 'high'


class TestAuditWrappers:

    @pytest.mark.asyncio
    async def test_log_user_action(self, audit_logger):
        result = await audit_logger.log_user_action('permission_change', 5, 'Role', 1, 'granted librarian')

        entry = result['entry']
        assert entry.user_id == 5
        assert entry.risk_level == 'critical'
        assert entry.persisted

    @pytest.mark.asyncio
    async def test_log_user_action_with_unknown_hint(self, audit_logger):
        result = await audit_logger.log_user_action('delete', 5, 'Book', 1, 'removed copy',
                                                    LogOptions(risk_level='urgent'))

        assert result['success'] is True
        assert result['entry'].risk_level == 'high'

    @pytest.mark.asyncio
    async def test_log_system_event(self, audit_logger):
        result = await audit_logger.log_system_event('backup', 'Database', 'nightly backup')

        entry = result['entry']
        assert entry.user_id == 0
        assert entry.user_role == 'system'
        assert entry.entity_id == 'system'
        assert entry.system_generated is True

    @pytest.mark.asyncio
    async def test_critical_security_event_raises_alert(self, audit_logger, bus):
        alerts = []
        bus.add_observer(ALERT_REQUIRED, alerts.append)

        result = await audit_logger.log_security_event(
            'account_takeover', 'critical', {'message': 'Session hijack suspected'}
        )

        entry = result['entry']
        assert entry.entity == 'SecurityEvent'
        assert entry.description == 'Session hijack suspected'
        assert entry.risk_level == 'critical'
        assert entry.security_flags[:2] == ['account_takeover', 'critical']
        assert alerts == [entry]

    @pytest.mark.asyncio
    async def test_medium_security_event_is_high_risk_without_alert(self, audit_logger, bus):
        alerts = []
        bus.add_observer(ALERT_REQUIRED, alerts.append)

        result = await audit_logger.log_security_event('rate_limited', 'medium')

        assert result['entry'].risk_level == 'high'
        assert result['entry'].description == 'rate_limited'
        assert alerts == []


class TestBatchWriter:

    @pytest.mark.asyncio
    async def test_size_trigger(self, db, bus, clock):
        small = AuditLogger(db, bus, clock=clock, batch_size=3)
        for i in range(3):
            await small.log('view', 'Book', i, 'viewed')

        assert small.log_queue == []
        assert await stored_count(db) == 3
        assert small.stats['batches_processed'] == 1

    @pytest.mark.asyncio
    async def test_timer_trigger(self, audit_logger, db, clock, wait_until):
        scheduler = Scheduler(clock)
        audit_logger.schedule(scheduler)
        scheduler.start()
        await asyncio.sleep(0)

        await audit_logger.log('view', 'Book', 1, 'viewed')
        await clock.advance(4)
        assert await stored_count(db) == 0

        await clock.advance(1)
        await wait_until(lambda: audit_logger.stats['batches_processed'] == 1)
        assert await stored_count(db) == 1

        await scheduler.stop()

    @pytest.mark.asyncio
    async def test_failed_batch_is_dropped(self, audit_logger, db):
        await audit_logger.log('view', 'Book', 1, 'viewed')
        await audit_logger.log('view', 'Book', 2, 'viewed')

        with patch.object(db, 'create_audit_logs', AsyncMock(side_effect=PersistenceError('disk full'))):
            assert await audit_logger.flush_log_queue() == 0

        assert audit_logger.log_queue == []
        assert audit_logger.stats['batches_dropped'] == 1
        assert audit_logger.stats['events_dropped'] == 2
        assert await audit_logger.flush_log_queue() == 0
        assert await stored_count(db) == 0

    @pytest.mark.asyncio
    async def test_overlapping_flush_is_noop(self, audit_logger):
        await audit_logger.log('view', 'Book', 1, 'viewed')
        audit_logger.is_processing = True

        assert await audit_logger.flush_log_queue() == 0
        assert len(audit_logger.log_queue) == 1

    @pytest.mark.asyncio
    async def test_entries_logged_during_flush_go_to_next_batch(self, audit_logger, db, monkeypatch):
        original = db.create_audit_logs

        async def insert_while_logging(entries):
            await audit_logger.log('view', 'Book', 99, 'logged mid-flush')
            return await original(entries)

        monkeypatch.setattr(db, 'create_audit_logs', insert_while_logging)
        await audit_logger.log('view', 'Book', 1, 'viewed')

        assert await audit_logger.flush_log_queue() == 1
        assert [e.entity_id for e in audit_logger.log_queue] == ['99']

        monkeypatch.setattr(db, 'create_audit_logs', original)
        assert await audit_logger.flush_log_queue() == 1
        assert await stored_count(db) == 2

    @pytest.mark.asyncio
    async def test_stop_drains_queue(self, audit_logger, db):
        audit_logger.start()
        await audit_logger.log('view', 'Book', 1, 'viewed')
        await audit_logger.stop()

        assert await stored_count(db) == 1
        assert audit_logger.running is False

    @pytest.mark.asyncio
    async def test_stop_during_flush_reports_unwritten_entries(self, audit_logger, db, monkeypatch, caplog):
        audit_logger.start()
        await audit_logger.log('view', 'Book', 1, 'viewed')
        await audit_logger.log('view', 'Book', 2, 'viewed')
        audit_logger.is_processing = True
        monkeypatch.setattr(asyncio, 'sleep', AsyncMock())

        with caplog.at_level(logging.WARNING):
            await audit_logger.stop()

        assert '2 queued audit entries not written' in caplog.text
        assert len(audit_logger.log_queue) == 2
        assert await stored_count(db) == 0

    @pytest.mark.asyncio
    async def test_statistics(self, audit_logger):
        await audit_logger.log('view', 'Book', 1, 'viewed')
        await audit_logger.log('delete', 'Book', 1, 'deleted')

        stats = audit_logger.get_statistics()
        assert stats['events_logged'] == 2
        assert stats['high_risk_events'] == 1
        assert stats['queue_size'] == 2
        assert stats['uptime_seconds'] >= 0


class TestFileTrail:

    @pytest.mark.asyncio
    async def test_persisted_entries_written_as_json_lines(self, db, bus, clock, tmp_path):
        path = tmp_path / "logs" / "audit.log"
        file_logger = AuditLogger(db, bus, clock=clock,
                                  file_logging=FileLoggingConfig(enabled=True, path=str(path)))
        try:
            await file_logger.log('view', 'Book', 1, 'viewed')
            await file_logger.flush_log_queue()
        finally:
            trail = logging.getLogger('audit_file')
            for handler in list(trail.handlers):
                trail.removeHandler(handler)
                handler.close()

        line = path.read_text(encoding='utf-8').strip()
        payload = json.loads(line.split(' - AUDIT - INFO - ', 1)[1])
        assert payload['action'] == 'view'
        assert payload['entity_id'] == '1'


class TestRequestInfo:

    def test_from_mapping(self):
        info = extract_request_info({
            'method': 'POST',
            'path': '/api/books',
            'query': {'page': '2'},
            'headers': {'user-agent': 'Mozilla/5.0', 'x-forwarded-for': '10.1.1.1'},
            'ip': '192.0.2.10'
        })
        assert info['method'] == 'POST'
        assert info['path'] == '/api/books'
        assert info['query'] == {'page': '2'}
        assert info['headers']['user-agent'] == 'Mozilla/5.0'
        assert info['headers']['x-real-ip'] is None
        assert info['ip'] == '192.0.2.10'

    def test_from_object(self):
        request = SimpleNamespace(
            method='GET',
            url=SimpleNamespace(path='/api/users'),
            headers={'user-agent': 'curl/8.0'},
            client=SimpleNamespace(host='198.51.100.4'),
            query_params={}
        )
        info = extract_request_info(request)
        assert info['path'] == '/api/users'
        assert info['ip'] == '198.51.100.4'

    def test_missing_request(self):
        assert extract_request_info(None) == {}

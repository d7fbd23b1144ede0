#!/usr/bin/env python3
"""
Tests for SQL injection and XSS signature detection
"""

from types import SimpleNamespace
from unittest.mock import AsyncMock

import pytest

from library_audit.core.models import SecurityEventQuery
from library_audit.security.patterns import (
    InjectionDetector,
    SQL_INJECTION_PATTERNS,
    XSS_PATTERNS,
    iter_string_leaves,
    scan_request,
)


@pytest.fixture
def detector(recorder):
    return InjectionDetector(recorder)


class TestStringLeaves:

    def test_nested_paths(self):
        leaves = list(iter_string_leaves({
            'title': 'Dune',
            'filters': [{'author': 'Herbert'}, 'classic'],
            'page': 2,
            'available': True,
            'shelf': None
        }, 'query'))

        assert leaves == [
            ('query.title', 'Dune'),
            ('query.filters.0.author', 'Herbert'),
            ('query.filters.1', 'classic'),
        ]


class TestSqlInjectionSignatures:

    @pytest.mark.parametrize('payload', [
        "1' OR '1'='1",
        "x' UNION SELECT password FROM users",
        "Robert'); DROP TABLE students;--",
        "1 OR 1=1",
        "'; exec(xp_cmdshell)",
        "1; WAITFOR DELAY '0:0:5'",
        "SELECT * FROM users",
    ])
    def test_flagged(self, payload):
        patterns, fields = scan_request({'body': {'q': payload}}, SQL_INJECTION_PATTERNS)
        assert fields == ['body.q']
        assert len(patterns) == 1

    @pytest.mark.parametrize('payload', [
        "O'Brien",
        "The Lord of the Rings",
        "select a book from the new arrivals",
        "Rock and roll",
        "update: the sequel",
    ])
    def test_not_flagged(self, payload):
        assert scan_request({'query': {'q': payload}}, SQL_INJECTION_PATTERNS) == ([], [])

    def test_first_match_per_field(self):
        patterns, fields = scan_request({
            'query': {'a': "1' OR '1'='1 -- ", 'b': 'fine'},
            'params': {'id': "5 UNION SELECT 1"}
        }, SQL_INJECTION_PATTERNS)

        assert fields == ['query.a', 'params.id']
        assert len(patterns) == 2

    def test_missing_sections(self):
        assert scan_request({}, SQL_INJECTION_PATTERNS) == ([], [])
        assert scan_request(None, SQL_INJECTION_PATTERNS) == ([], [])


class TestXssSignatures:

    @pytest.mark.parametrize('payload', [
        "<script>alert(1)</script>",
        "<img src=x onerror=\"alert(1)\">",
        "<a href='javascript:alert(1)'>x</a>",
        "<iframe src='//evil.example'></iframe>",
        "eval(atob('YWxlcnQoMSk='))",
    ])
    def test_flagged(self, payload):
        patterns, fields = scan_request({'body': {'review': payload}}, XSS_PATTERNS)
        assert fields == ['body.review']

    @pytest.mark.parametrize('payload', [
        "Great book, 5 stars <3",
        "A story about scripts and scribes",
        "Evaluation of medieval manuscripts",
    ])
    def test_not_flagged(self, payload):
        assert scan_request({'body': {'review': payload}}, XSS_PATTERNS) == ([], [])


class TestInjectionDetector:

    @pytest.mark.asyncio
    async def test_sql_injection_recorded(self, detector, db):
        result = await detector.detect_sql_injection({
            'query': {'search': "1' OR '1'='1"},
            'ip_address': '192.0.2.40',
            'user_agent': 'sqlmap/1.7',
            'user_id': 12
        })

        assert result['is_injection'] is True
        assert result['suspicious_fields'] == ['query.search']

        events = await db.find_security_events(SecurityEventQuery(event_type='sql_injection_attempt'))
        assert len(events) == 1
        assert events[0].severity == 'critical'
        assert events[0].ip_address == '192.0.2.40'
        assert events[0].user_id == 12
        assert events[0].event_data['suspicious_fields'] == ['query.search']

    @pytest.mark.asyncio
    async def test_clean_request_not_recorded(self, detector, db):
        result = await detector.detect_sql_injection({'query': {'search': "O'Brien"}})

        assert result == {'is_injection': False, 'patterns': [], 'suspicious_fields': []}
        assert await db.count_security_events(SecurityEventQuery()) == 0

    @pytest.mark.asyncio
    async def test_request_object(self, detector, db):
        request = SimpleNamespace(
            query={}, params={},
            body={'comment': ["ok", "<script>document.cookie</script>"]},
            ip_address='198.51.100.20'
        )

        result = await detector.detect_xss_attempt(request)

        assert result['is_xss'] is True
        assert result['suspicious_fields'] == ['body.comment.1']
        events = await db.find_security_events(SecurityEventQuery(event_type='xss_attempt'))
        assert events[0].severity == 'high'

    @pytest.mark.asyncio
    async def test_recorder_failure_is_fail_safe(self):
        recorder = AsyncMock()
        recorder.create_security_event.side_effect = RuntimeError('db unavailable')
        detector = InjectionDetector(recorder)

        result = await detector.detect_xss_attempt({'body': {'x': '<script>x</script>'}})

        assert result == {'is_xss': False, 'patterns': [], 'suspicious_fields': []}

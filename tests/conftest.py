"""
Shared fixtures for the telemetry test suite
"""

import asyncio
from datetime import datetime

import pytest

from library_audit.audit.cipher import SensitiveFieldCipher
from library_audit.audit.logger import AuditLogger
from library_audit.core.config import TelemetryConfig
from library_audit.core.events import EventBus
from library_audit.core.scheduler import ManualClock
from library_audit.security.monitor import load_threat_rules
from library_audit.security.recorder import SecurityEventRecorder
from library_audit.storage.database import TelemetryDatabase

TEST_KEY = "test-audit-encryption-key"

# Wednesday, inside business and login hours
START = datetime(2024, 1, 10, 10, 0, 0)


class FakeGeoLocator:
    """IP -> location table standing in for a GeoIP database"""

    def __init__(self, table=None):
        self.table = dict(table or {})

    async def lookup(self, ip):
        return self.table.get(ip)

    def close(self):
        pass


@pytest.fixture
def clock():
    return ManualClock(START)


@pytest.fixture
def bus():
    return EventBus()


@pytest.fixture
def db(tmp_path):
    return TelemetryDatabase(str(tmp_path / "telemetry.db"), integrity_key="integrity-test-key")


@pytest.fixture
def cipher():
    return SensitiveFieldCipher(TEST_KEY)


@pytest.fixture
def audit_logger(db, bus, cipher, clock):
    return AuditLogger(db, bus, cipher=cipher, clock=clock, batch_size=100, flush_interval=5.0)


@pytest.fixture
def recorder(db, bus, clock):
    return SecurityEventRecorder(db, bus, clock)


@pytest.fixture
def threat_rules():
    return load_threat_rules()


@pytest.fixture
def config(tmp_path):
    return TelemetryConfig(db_path=str(tmp_path / "service.db"), cipher_key=TEST_KEY)


@pytest.fixture
def wait_until():
    """Poll a predicate while worker threads finish their sqlite calls"""
    async def _wait(predicate, timeout=5.0):
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while not predicate():
            if loop.time() > deadline:
                raise AssertionError("condition not met before timeout")
            await asyncio.sleep(0.01)
    return _wait


@pytest.fixture
def fake_geo():
    return FakeGeoLocator

"""
Scheduled retention cleanup of expired audit entries
"""

import logging
from datetime import timedelta
from typing import Dict, Optional

from ..core.config import DEFAULT_RETENTION_POLICIES, RISK_LEVELS
from ..core.models import LogOptions, RiskLevel
from ..core.scheduler import SystemClock
from ..storage.database import TelemetryDatabase

logger = logging.getLogger(__name__)

PROTECTED_LEVELS = (RiskLevel.HIGH.value, RiskLevel.CRITICAL.value)


class RetentionScheduler:
    """
    Deletes audit entries older than the retention window.

    By default one global window applies and high / critical entries are kept
    regardless of age. With `per_level` enabled every risk level is cleaned
    against its own policy instead.
    """

    def __init__(self, db: TelemetryDatabase, audit_logger, clock=None,
                 retention_days: int = 90, policies: Optional[Dict[str, int]] = None,
                 per_level: bool = False, interval: float = 24 * 60 * 60):
        self.db = db
        self.audit_logger = audit_logger
        self.clock = clock or SystemClock()
        self.retention_days = retention_days
        self.per_level = per_level
        self.interval = interval
        self._configured_policies = policies
        self.retention_policies: Dict[str, int] = {}

    def initialize_retention_policies(self) -> Dict[str, int]:
        policies = dict(DEFAULT_RETENTION_POLICIES)
        policies.update(self._configured_policies or {})
        self.retention_policies = policies
        logger.info(f"Retention policies initialized: {policies}")
        return policies

    def schedule(self, scheduler) -> None:
        if not self.retention_policies:
            self.initialize_retention_policies()
        scheduler.every("retention_cleanup", self.interval, self.perform_scheduled_cleanup)

    async def cleanup_expired_logs(self) -> int:
        """
        Delete expired audit entries

        Returns:
            Number of deleted rows, 0 on failure
        """
        try:
            if self.per_level:
                deleted = await self._cleanup_per_level()
            else:
                cutoff = self.clock.now() - timedelta(days=self.retention_days)
                deleted = await self.db.delete_audit_logs_before(cutoff, exclude_levels=PROTECTED_LEVELS)

            logger.info(f"Cleaned up {deleted} expired audit entries")

            await self.audit_logger.log_system_event(
                'audit_cleanup',
                'AuditLog',
                f"Cleaned up {deleted} expired audit entries",
                LogOptions(changes={'deleted_count': deleted})
            )
            return deleted

        except Exception as e:
            logger.error(f"Failed to clean up expired audit entries: {e}")
            return 0

    async def _cleanup_per_level(self) -> int:
        if not self.retention_policies:
            self.initialize_retention_policies()

        deleted = 0
        now = self.clock.now()
        for level in RISK_LEVELS:
            cutoff = now - timedelta(days=self.retention_policies[level])
            deleted += await self.db.delete_audit_logs_before(cutoff, risk_level=level)
        return deleted

    async def perform_scheduled_cleanup(self) -> None:
        logger.info("Starting scheduled audit cleanup")
        await self.cleanup_expired_logs()

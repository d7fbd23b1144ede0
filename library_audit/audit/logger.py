#!/usr/bin/env python3
"""
Audit event intake and batch writer
Buffers audit entries in memory and persists them in batches, with a direct
write path for high and critical risk entries
"""

import os
import uuid
import asyncio
import logging
from dataclasses import replace
from datetime import datetime
from logging.handlers import RotatingFileHandler
from typing import Any, Dict, List, Optional

from ..core.config import FileLoggingConfig
from ..core.events import ALERT_REQUIRED, BATCH_PROCESSED, LOG_CREATED, EventBus
from ..core.models import AuditLogEntry, LogOptions
from ..core.scheduler import SystemClock
from ..storage.database import TelemetryDatabase
from .cipher import SensitiveFieldCipher
from .risk import RiskClassifier, SENSITIVE_ENTITIES

logger = logging.getLogger(__name__)

REQUEST_HEADERS = ("user-agent", "x-forwarded-for", "x-real-ip")


def extract_request_info(request: Any) -> Dict[str, Any]:
    """Best-effort summary of an HTTP request (mapping or request object)"""
    if not request:
        return {}

    if isinstance(request, dict):
        get = request.get
    else:
        def get(name, default=None):
            return getattr(request, name, default)

    headers = get("headers") or {}
    try:
        header_info = {name: headers.get(name) for name in REQUEST_HEADERS}
    except AttributeError:
        header_info = {}

    ip = get("ip") or get("ip_address")
    client = get("client")
    if not ip and client is not None:
        ip = getattr(client, "host", None)

    path = get("path")
    url = get("url")
    if not path and url is not None:
        path = getattr(url, "path", None) or str(url)

    query = get("query") or get("query_params") or {}
    try:
        query = dict(query)
    except (TypeError, ValueError):
        query = {}

    return {
        "method": get("method"),
        "path": path,
        "query": query,
        "headers": header_info,
        "ip": ip,
    }


class AuditLogger:
    """Main audit intake with batched async persistence"""

    def __init__(self, db: TelemetryDatabase, bus: EventBus,
                 cipher: Optional[SensitiveFieldCipher] = None,
                 classifier: Optional[RiskClassifier] = None,
                 clock=None, batch_size: int = 100, flush_interval: float = 5.0,
                 file_logging: Optional[FileLoggingConfig] = None):
        self.db = db
        self.bus = bus
        self.cipher = cipher or SensitiveFieldCipher()
        self.classifier = classifier or RiskClassifier()
        self.clock = clock or SystemClock()
        self.batch_size = batch_size
        self.flush_interval = flush_interval

        self.log_queue: List[AuditLogEntry] = []
        self.is_processing = False
        self.running = False

        self.file_logger = None
        if file_logging and file_logging.enabled:
            self._setup_file_logging(file_logging)

        self.stats = {
            'events_logged': 0,
            'events_persisted': 0,
            'events_dropped': 0,
            'batches_processed': 0,
            'batches_dropped': 0,
            'high_risk_events': 0,
            'start_time': datetime.now()
        }

    def _setup_file_logging(self, config: FileLoggingConfig):
        """Setup JSON-lines file trail for persisted audit entries"""
        directory = os.path.dirname(config.path)
        if directory:
            os.makedirs(directory, exist_ok=True)

        handler = RotatingFileHandler(
            config.path,
            maxBytes=config.max_size_mb * 1024 * 1024,
            backupCount=config.backup_count
        )
        handler.setFormatter(logging.Formatter('%(asctime)s - AUDIT - %(levelname)s - %(message)s'))

        self.file_logger = logging.getLogger('audit_file')
        self.file_logger.addHandler(handler)
        self.file_logger.setLevel(logging.INFO)
        self.file_logger.propagate = False

    def schedule(self, scheduler) -> None:
        scheduler.every("audit_flush", self.flush_interval, self._on_flush_tick)

    def start(self) -> None:
        self.running = True
        logger.info("Audit logger started")

    async def stop(self) -> None:
        """Drain whatever is still queued; tickers are stopped by the owner"""
        for _ in range(100):
            if not self.is_processing:
                break
            await asyncio.sleep(0.05)

        if self.log_queue and self.is_processing:
            logger.warning(
                "Audit flush still in progress at shutdown, "
                f"{len(self.log_queue)} queued audit entries not written"
            )
        elif self.log_queue:
            logger.info(f"Draining {len(self.log_queue)} queued audit entries")
            await self.flush_log_queue()

        self.running = False
        logger.info("Audit logger stopped")

    async def _on_flush_tick(self) -> None:
        if self.log_queue:
            await self.flush_log_queue()

    # ------------------------------------------------------------------
    # Intake
    # ------------------------------------------------------------------

    async def log(self, action: str, entity: str, entity_id: Any, description: str,
                  options: Optional[LogOptions] = None) -> Dict[str, Any]:
        """Record an audit entry"""
        try:
            options = options or LogOptions()
            entry = self._build_entry(action, entity, entity_id, description, options)

            if entry.is_high_priority:
                await self._process_high_priority(entry)

            # Persisted high-risk entries stay in the queue for batch accounting
            self.log_queue.append(entry)
            self.stats['events_logged'] += 1

            self.bus.emit(LOG_CREATED, entry)

            if len(self.log_queue) >= self.batch_size:
                await self.flush_log_queue()

            return {'success': True, 'entry': entry}

        except Exception as e:
            logger.error(f"Failed to record audit entry {action}/{entity}: {e}")
            return {'success': False, 'error': str(e)}

    def _build_entry(self, action: str, entity: str, entity_id: Any, description: str,
                     options: LogOptions) -> AuditLogEntry:
        risk_level, security_flags = self.classifier.classify(action, entity, options)

        entry = AuditLogEntry(
            action=action,
            entity=entity,
            entity_id=str(entity_id) if entity_id is not None else None,
            description=description,
            user_id=options.user_id,
            user_role=options.user_role,
            changes=options.changes if options.changes is not None else {},
            old_values=options.old_values if options.old_values is not None else {},
            new_values=options.new_values if options.new_values is not None else {},
            request_info=extract_request_info(options.request),
            session_id=options.session_id,
            ip_address=options.ip_address,
            user_agent=options.user_agent,
            location=options.location or {},
            result=options.result or 'success',
            error_details=options.error_details or {},
            risk_level=risk_level,
            security_flags=security_flags,
            compliance_flags=list(options.compliance_flags or []),
            correlation_id=options.correlation_id or self.generate_correlation_id(),
            parent_log_id=options.parent_log_id,
            execution_time=options.execution_time,
            resource_usage=options.resource_usage or {},
            system_generated=options.system_generated,
            alert_required=options.alert_required,
            created_at=self.clock.now(),
        )

        if self.cipher.enabled and self._needs_encryption(entry):
            encrypted = self.cipher.encrypt_fields(entry.changes, entry.old_values, entry.new_values)
            if encrypted is not None:
                entry.changes, entry.old_values, entry.new_values = encrypted
                entry.is_encrypted = True

        return entry

    def _needs_encryption(self, entry: AuditLogEntry) -> bool:
        if not self.classifier.should_encrypt(entry.entity, entry.action):
            return False
        if entry.entity in SENSITIVE_ENTITIES:
            return True
        # Action-triggered encryption only applies when there is a payload
        return bool(entry.changes or entry.old_values or entry.new_values)

    async def _process_high_priority(self, entry: AuditLogEntry) -> None:
        """Persist immediately, outside the batch cycle"""
        self.stats['high_risk_events'] += 1
        logger.warning(
            f"HIGH RISK AUDIT EVENT: {entry.action} on {entry.entity} "
            f"(risk: {entry.risk_level}, user: {entry.user_id})"
        )
        try:
            await self.db.create_audit_log(entry)
            self.stats['events_persisted'] += 1
            self._write_file_trail([entry])

            if entry.alert_required:
                self.bus.emit(ALERT_REQUIRED, entry)
        except Exception as e:
            # The entry is still queued and will go out with the next batch
            logger.error(f"Failed to persist high priority audit entry: {e}")

    async def log_user_action(self, action: str, user_id: Any, entity: str, entity_id: Any,
                              description: str, options: Optional[LogOptions] = None) -> Dict[str, Any]:
        options = options or LogOptions()
        risk_level = self.classifier.get_user_action_risk_level(action)
        risk_level = self.classifier.apply_override(risk_level, options.risk_level)

        return await self.log(action, entity, entity_id, description,
                              replace(options, user_id=user_id, risk_level=risk_level))

    async def log_system_event(self, event: str, entity: str, description: str,
                               options: Optional[LogOptions] = None) -> Dict[str, Any]:
        options = options or LogOptions()
        return await self.log(event, entity, 'system', description, replace(
            options,
            user_id=0,
            user_role='system',
            system_generated=True
        ))

    async def log_security_event(self, event: str, severity: str, details: Optional[Dict[str, Any]] = None,
                                 options: Optional[LogOptions] = None) -> Dict[str, Any]:
        options = options or LogOptions()
        details = details or {}
        flags = [event, severity] + [f for f in options.security_flags if f not in (event, severity)]

        return await self.log(event, 'SecurityEvent', None, details.get('message') or event, replace(
            options,
            severity=severity,
            changes=details,
            risk_level='critical' if severity == 'critical' else 'high',
            security_flags=flags,
            alert_required=severity == 'critical'
        ))

    # ------------------------------------------------------------------
    # Batch writer
    # ------------------------------------------------------------------

    async def flush_log_queue(self) -> int:
        """
        Persist the current queue as one batch

        Returns:
            Number of entries taken from the queue, 0 when nothing was written
        """
        if self.is_processing or not self.log_queue:
            return 0

        self.is_processing = True
        try:
            batch = self.log_queue[:]
            self.log_queue.clear()

            pending = [entry for entry in batch if not entry.persisted]
            try:
                await asyncio.shield(self.db.create_audit_logs(pending))
            except Exception as e:
                self.stats['batches_dropped'] += 1
                self.stats['events_dropped'] += len(pending)
                logger.error(f"Failed to persist audit batch, dropping {len(pending)} entries: {e}")
                return 0

            self.stats['events_persisted'] += len(pending)
            self.stats['batches_processed'] += 1
            self._write_file_trail(pending)

            self.bus.emit(BATCH_PROCESSED, batch)
            logger.debug(f"Processed {len(batch)} audit entries ({len(pending)} written)")
            return len(batch)
        finally:
            self.is_processing = False

    def _write_file_trail(self, entries: List[AuditLogEntry]) -> None:
        if not self.file_logger:
            return
        for entry in entries:
            self.file_logger.info(entry.to_json())

    def generate_correlation_id(self) -> str:
        return f"audit_{int(self.clock.now().timestamp() * 1000)}_{uuid.uuid4().hex[:9]}"

    def get_statistics(self) -> Dict[str, Any]:
        """Runtime counters of the intake"""
        return {
            **self.stats,
            'queue_size': len(self.log_queue),
            'is_processing': self.is_processing,
            'uptime_seconds': (datetime.now() - self.stats['start_time']).total_seconds()
        }

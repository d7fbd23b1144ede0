"""
In-process observer registry for telemetry events
"""

import asyncio
import inspect
import logging
from typing import Any, Callable, Dict, List, Set

logger = logging.getLogger(__name__)

LOG_CREATED = "logCreated"
BATCH_PROCESSED = "batchProcessed"
ALERT_REQUIRED = "alertRequired"
CRITICAL_THREAT = "critical_threat"
BLOCK_IP = "block_ip"
THREAT_DETECTED = "threat_detected"

# Events that must reach at least one handler
REQUIRED_LISTENER_EVENTS = frozenset({ALERT_REQUIRED, CRITICAL_THREAT})


class EventBus:
    """
    Observer registry used instead of an event emitter.

    Handlers may be plain callables or coroutine functions; coroutine
    handlers are scheduled on the running loop and their failures are
    logged, never propagated to the publisher.
    """

    def __init__(self):
        self._observers: Dict[str, List[Callable[[Any], Any]]] = {}
        self._pending: Set[asyncio.Task] = set()

    def add_observer(self, event: str, callback: Callable[[Any], Any]) -> None:
        callbacks = self._observers.setdefault(event, [])
        if callback not in callbacks:
            callbacks.append(callback)

    def remove_observer(self, event: str, callback: Callable[[Any], Any]) -> None:
        callbacks = self._observers.get(event, [])
        if callback in callbacks:
            callbacks.remove(callback)

    def has_observers(self, event: str) -> bool:
        return bool(self._observers.get(event))

    def emit(self, event: str, data: Any = None) -> int:
        """
        Notify every observer of an event

        Args:
            event: Event name
            data: Event payload

        Returns:
            Number of observers notified
        """
        callbacks = list(self._observers.get(event, []))
        if not callbacks:
            if event in REQUIRED_LISTENER_EVENTS:
                logger.warning(f"No handler registered for '{event}' event: {data!r}")
            return 0

        for callback in callbacks:
            try:
                result = callback(data)
                if inspect.isawaitable(result):
                    self._schedule(event, result)
            except Exception as e:
                logger.error(f"Error in '{event}' observer callback: {e}")

        return len(callbacks)

    def _schedule(self, event: str, awaitable) -> None:
        task = asyncio.ensure_future(awaitable)
        self._pending.add(task)

        def _done(t: asyncio.Task) -> None:
            self._pending.discard(t)
            if not t.cancelled() and t.exception() is not None:
                logger.error(f"Error in '{event}' async observer: {t.exception()}")

        task.add_done_callback(_done)

    async def drain(self) -> None:
        """Wait for scheduled async handlers to finish"""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

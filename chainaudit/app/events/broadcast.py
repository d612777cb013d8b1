from __future__ import annotations

import logging
from typing import Dict, List

from chainaudit.app.events.emitter import AuditEventEmitter
from chainaudit.app.events.memory_emitter import MemoryQueueEventEmitter
from chainaudit.app.events.models import AuditEvent

logger = logging.getLogger(__name__)


class BroadcastNotifier(AuditEventEmitter):
    """
    Fan-out notifier keyed by audit id.

    The orchestrator publishes every job's events here; live-update
    transports (SSE) subscribe per job. Subscribers are dropped once
    they have seen a terminal event.
    """

    def __init__(self) -> None:
        self._subscribers: Dict[str, List[MemoryQueueEventEmitter]] = {}

    def subscribe(self, audit_id: str) -> MemoryQueueEventEmitter:
        queue = MemoryQueueEventEmitter(audit_id)
        self._subscribers.setdefault(audit_id, []).append(queue)
        return queue

    def unsubscribe(self, audit_id: str, queue: MemoryQueueEventEmitter) -> None:
        queues = self._subscribers.get(audit_id)
        if not queues:
            return
        if queue in queues:
            queues.remove(queue)
        if not queues:
            del self._subscribers[audit_id]

    def subscriber_count(self, audit_id: str) -> int:
        return len(self._subscribers.get(audit_id, []))

    async def emit(self, event: AuditEvent) -> None:
        for queue in list(self._subscribers.get(event.audit_id, [])):
            try:
                await queue.emit(event)
            except Exception:
                logger.warning(
                    "Dropping subscriber for %s after delivery failure",
                    event.audit_id,
                )
                self.unsubscribe(event.audit_id, queue)
                continue

            if queue.closed:
                self.unsubscribe(event.audit_id, queue)

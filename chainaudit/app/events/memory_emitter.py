from __future__ import annotations

import asyncio
from typing import AsyncIterator, Optional

from chainaudit.app.events.models import AuditEvent
from chainaudit.app.events.emitter import AuditEventEmitter


class MemoryQueueEventEmitter(AuditEventEmitter):
    """
    Per-subscriber event queue backing one SSE stream.

    Properties:
    - single-consumer
    - emission never blocks the pipeline
    - events are yielded in the order the orchestrator published them
    - the stream ends after the job's terminal event

    When bound to an audit id, events for other jobs are ignored.
    """

    def __init__(self, audit_id: Optional[str] = None) -> None:
        self.audit_id = audit_id
        self._queue: asyncio.Queue[Optional[AuditEvent]] = asyncio.Queue()
        self._closed = False
        self.delivered = 0

    @property
    def closed(self) -> bool:
        return self._closed

    async def emit(self, event: AuditEvent) -> None:
        if self._closed:
            return
        if self.audit_id is not None and event.audit_id != self.audit_id:
            return

        # Unbounded queue: put_nowait cannot raise QueueFull
        self._queue.put_nowait(event)
        self.delivered += 1

        if event.is_terminal:
            await self.close()

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._queue.put_nowait(None)

    async def stream(self) -> AsyncIterator[AuditEvent]:
        """Yield queued events until the sentinel left by close()."""
        while True:
            event = await self._queue.get()
            if event is None:
                return
            yield event

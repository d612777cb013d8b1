from __future__ import annotations

import logging
from typing import Protocol

from chainaudit.app.events.models import AuditEvent

logger = logging.getLogger(__name__)


class AuditEventEmitter(Protocol):
    """
    Interface for publishing audit lifecycle events.

    Implementations must be:
    - non-blocking (or minimally blocking)
    - fail-safe (emission failures must not crash the audit)
    - observational only
    """

    async def emit(self, event: AuditEvent) -> None:
        ...


class NullEventEmitter:
    """
    A safe no-op emitter.

    Used when:
    - nobody subscribes to live updates
    - tests that do not care about events
    """

    async def emit(self, event: AuditEvent) -> None:
        return


async def safe_emit(emitter: AuditEventEmitter, event: AuditEvent) -> None:
    """
    Emit through any emitter without letting its failure reach the caller.
    """
    try:
        await emitter.emit(event)
    except Exception:
        logger.exception(
            "Event emission failed for %s (%s)",
            event.audit_id,
            event.event_type.value,
        )

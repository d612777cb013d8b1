from .models import AuditEvent, AuditEventType
from .emitter import AuditEventEmitter, NullEventEmitter, safe_emit
from .memory_emitter import MemoryQueueEventEmitter
from .broadcast import BroadcastNotifier

__all__ = [
    "AuditEvent",
    "AuditEventType",
    "AuditEventEmitter",
    "NullEventEmitter",
    "MemoryQueueEventEmitter",
    "BroadcastNotifier",
    "safe_emit",
]

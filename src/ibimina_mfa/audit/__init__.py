"""Audit module for MFA decisions.

Event types, the best-effort recorder and an in-memory sink.
"""

from __future__ import annotations

from .events import AuditAction, AuditEvent
from .memory import InMemoryAuditSink
from .recorder import AuditRecorder

__all__: list[str] = [
    "AuditAction",
    "AuditEvent",
    "AuditRecorder",
    "InMemoryAuditSink",
]

"""Audit subsystem: append-only, session-indexed mutation log."""

from memrefine.audit.schemas import AuditAction
from memrefine.audit.schemas import AuditEntry
from memrefine.audit.schemas import RECORD_ACTIONS
from memrefine.audit.store import AuditLog

__all__ = [
    "AuditAction",
    "AuditEntry",
    "AuditLog",
    "RECORD_ACTIONS",
]

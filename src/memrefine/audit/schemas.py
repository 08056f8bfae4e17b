"""Audit entry types and data models."""

from __future__ import annotations

import time
import uuid
from enum import Enum
from typing import Any

from pydantic import BaseModel
from pydantic import Field


class AuditAction(str, Enum):
    """Mutations recorded in the audit log."""

    delete = "delete"
    update = "update"
    consolidate_merge = "consolidate_merge"
    consolidate_create = "consolidate_create"
    protect = "protect"
    unprotect = "unprotect"
    complete = "complete"
    rollback = "rollback"


# Actions whose ``before``/``after`` hold MemoryRecord snapshots.
RECORD_ACTIONS = frozenset(
    {
        AuditAction.delete,
        AuditAction.update,
        AuditAction.consolidate_merge,
        AuditAction.consolidate_create,
        AuditAction.protect,
        AuditAction.unprotect,
    }
)


class AuditEntry(BaseModel):
    """A single immutable audit log entry."""

    model_config = {"frozen": True}

    id: str = Field(
        default_factory=lambda: f"aud_{uuid.uuid4().hex}",
        description="Unique identifier, auto-generated as aud_{uuid4_hex}.",
    )
    session_id: str | None = Field(
        default=None,
        description="Refinement session that produced the mutation; None for admin actions.",
    )
    owner_id: str = Field(
        description="Agent whose memory was mutated.",
    )
    action: AuditAction = Field(
        description="Kind of mutation.",
    )
    subject_id: str = Field(
        description="Memory record (or owner) affected.",
    )
    before: dict[str, Any] | None = Field(
        default=None,
        description="State prior to the mutation, or None when the subject was created.",
    )
    after: dict[str, Any] | None = Field(
        default=None,
        description="State after the mutation, or None when the subject was removed.",
    )
    timestamp: float = Field(
        default_factory=time.time,
        description="Unix epoch when the mutation was recorded.",
    )

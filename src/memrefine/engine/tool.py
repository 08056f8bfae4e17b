"""Refinement tool: the action dispatcher the reasoning loop talks to.

One ``RefinementTool`` is bound to one owner and one session.  The loop
calls :meth:`RefinementTool.execute` with ``(action, params)`` once per
turn and always receives a dict with a ``type`` key.  Failures come back
as ``{"type": "error", ...}`` so the loop can correct itself and retry
within the same session.

Each action is a small handler class registered in ``_HANDLERS``.  Every
mutating handler commits its record writes and audit entries in a single
``MULTI/EXEC`` transaction.
"""

from __future__ import annotations

import logging
import time
import uuid
from abc import ABC
from abc import abstractmethod
from dataclasses import asdict
from dataclasses import dataclass
from time import perf_counter
from typing import Any
from typing import ClassVar

from memrefine.audit import AuditAction
from memrefine.audit import AuditEntry
from memrefine.audit import AuditLog
from memrefine.errors import NotFoundError
from memrefine.errors import ProtectedRecordError
from memrefine.errors import RefineryError
from memrefine.errors import SessionClosedError
from memrefine.errors import ValidationError
from memrefine.memory.schemas import MemoryCategory
from memrefine.memory.schemas import MemoryRecord
from memrefine.memory.store import MemoryStore
from memrefine.observability import record_latency

logger = logging.getLogger(__name__)

ACTIONS = ("search", "consolidate", "update", "delete", "protect", "complete")

TOOL_NAME = "refine_memory"
TOOL_DESCRIPTION = (
    "Memory refinement tool. Actions: search, consolidate, update, delete, "
    "protect, complete."
)

# JSON schema of the tool parameters, shared with function-calling loops.
TOOL_PARAMETERS: dict[str, Any] = {
    "type": "object",
    "properties": {
        "action": {
            "type": "string",
            "enum": list(ACTIONS),
            "description": "search, consolidate, update, delete, protect, or complete",
        },
        "query": {"type": "string", "description": "Search query (for search)"},
        "ids": {
            "type": "string",
            "description": "Comma-separated memory IDs (for consolidate, delete)",
        },
        "id": {
            "type": "string",
            "description": "Single memory ID (for update, delete, protect)",
        },
        "content": {
            "type": "string",
            "description": "New content (for consolidate, update)",
        },
        "summary": {
            "type": "string",
            "description": "Refinement summary (for complete)",
        },
    },
    "required": ["action"],
}


@dataclass
class SessionStats:
    """Mutation counters reported by ``complete``."""

    consolidated: int = 0
    created: int = 0
    updated: int = 0
    deleted: int = 0
    protected: int = 0

    def as_dict(self) -> dict[str, int]:
        return asdict(self)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _is_blank(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    if isinstance(value, (list, tuple)):
        return not value
    return False


def parse_ids(value: Any) -> list[str]:
    """Normalize a comma-separated string, a list, or a scalar into unique ids.

    A leading ``#`` (as printed in the briefing ledger) is tolerated.
    """
    if value is None:
        return []
    if isinstance(value, str):
        items = value.split(",")
    elif isinstance(value, (list, tuple, set)):
        items = list(value)
    else:
        # Numbers or booleans decoded from model-written JSON arguments.
        items = [value]
    ids: list[str] = []
    for item in items:
        cleaned = str(item).strip().lstrip("#").strip()
        if cleaned and cleaned not in ids:
            ids.append(cleaned)
    return ids


def error_result(message: str, **details: Any) -> dict:
    return {"type": "error", "error": message, **details}


# ---------------------------------------------------------------------------
# Action handlers
# ---------------------------------------------------------------------------


class ActionHandler(ABC):
    """One tool action: parameter contract plus execution."""

    name: ClassVar[str]
    required: ClassVar[tuple[str, ...]] = ()

    def missing_param(self, params: dict) -> str | None:
        for param in self.required:
            if _is_blank(params.get(param)):
                return param
        return None

    @abstractmethod
    async def run(self, tool: RefinementTool, params: dict) -> dict: ...


class SearchAction(ActionHandler):
    name = "search"
    required = ("query",)

    async def run(self, tool: RefinementTool, params: dict) -> dict:
        query = str(params["query"]).strip()
        records = await tool.store.search_core(tool.owner_id, query)
        results = [record.ledger_entry() for record in records]
        return {
            "type": "search_results",
            "query": query,
            "count": len(results),
            "results": results,
        }


class ConsolidateAction(ActionHandler):
    name = "consolidate"
    required = ("ids", "content")

    async def run(self, tool: RefinementTool, params: dict) -> dict:
        ids = parse_ids(params["ids"])
        if len(ids) < 2:
            raise ValidationError("consolidate requires at least 2 memory IDs")

        records = await tool.resolve_core(ids)
        protected = [record.id for record in records if record.protected]
        if protected:
            raise ProtectedRecordError(protected)

        earliest = min(record.created_at for record in records)
        merged = tool.store.build_record(
            tool.owner_id,
            params["content"],
            MemoryCategory.core,
            created_at=earliest,
        )

        async with tool.store.transaction() as tx:
            await tool.store.restore(merged, tx=tx)
            tool.stage_entry(
                tx,
                AuditAction.consolidate_create,
                merged.id,
                before=None,
                after=merged.snapshot(),
            )
            for record in records:
                await tool.store.destroy(record, tx=tx)
                tool.stage_entry(
                    tx,
                    AuditAction.consolidate_merge,
                    record.id,
                    before=record.snapshot(),
                    after={"merged_into": merged.id},
                )

        tool.stats.consolidated += len(records)
        tool.stats.created += 1
        return {
            "type": "consolidated",
            "id": merged.id,
            "merged_ids": [record.id for record in records],
            "merged_count": len(records),
            "content": merged.content,
            "token_estimate": merged.token_estimate,
        }


class UpdateAction(ActionHandler):
    name = "update"
    required = ("id", "content")

    async def run(self, tool: RefinementTool, params: dict) -> dict:
        (record,) = await tool.resolve_core(parse_ids(params["id"])[:1])

        async with tool.store.transaction() as tx:
            updated = await tool.store.update_content(record, params["content"], tx=tx)
            tool.stage_entry(
                tx,
                AuditAction.update,
                record.id,
                before=record.snapshot(),
                after=updated.snapshot(),
            )

        tool.stats.updated += 1
        return {
            "type": "updated",
            "id": updated.id,
            "content": updated.content,
            "token_estimate": updated.token_estimate,
        }


class DeleteAction(ActionHandler):
    name = "delete"

    def missing_param(self, params: dict) -> str | None:
        if _is_blank(params.get("id")) and _is_blank(params.get("ids")):
            return "id"
        return None

    async def run(self, tool: RefinementTool, params: dict) -> dict:
        ids = parse_ids(params.get("ids")) or parse_ids(params.get("id"))
        records = await tool.resolve_core(ids)
        protected = [record.id for record in records if record.protected]
        if protected:
            raise ProtectedRecordError(protected)

        async with tool.store.transaction() as tx:
            for record in records:
                await tool.store.destroy(record, tx=tx)
                tool.stage_entry(
                    tx,
                    AuditAction.delete,
                    record.id,
                    before=record.snapshot(),
                    after=None,
                )

        tool.stats.deleted += len(records)
        return {
            "type": "deleted",
            "ids": [record.id for record in records],
            "count": len(records),
        }


class ProtectAction(ActionHandler):
    name = "protect"
    required = ("id",)

    async def run(self, tool: RefinementTool, params: dict) -> dict:
        (record,) = await tool.resolve_core(parse_ids(params["id"])[:1])
        if record.protected:
            # No mutation, no audit entry: rollback must not clear a
            # protection granted before this session.
            return {
                "type": "protected",
                "id": record.id,
                "content": record.content,
                "already_protected": True,
            }

        async with tool.store.transaction() as tx:
            updated = await tool.store.set_protected(record, True, tx=tx)
            tool.stage_entry(
                tx,
                AuditAction.protect,
                record.id,
                before=record.snapshot(),
                after=updated.snapshot(),
            )

        tool.stats.protected += 1
        return {
            "type": "protected",
            "id": updated.id,
            "content": updated.content,
            "already_protected": False,
        }


class CompleteAction(ActionHandler):
    name = "complete"
    required = ("summary",)

    async def run(self, tool: RefinementTool, params: dict) -> dict:
        if tool.completion is not None:
            return {**tool.completion, "duplicate": True}

        summary = str(params["summary"]).strip()
        state = await tool.store.get_owner_state(tool.owner_id)
        now = time.time()
        journal = tool.store.build_record(
            tool.owner_id,
            f"Refinement session: {summary}",
            MemoryCategory.journal,
            created_at=now,
        )
        stats = tool.stats.as_dict()

        async with tool.store.transaction() as tx:
            await tool.store.restore(journal, tx=tx)
            await tool.store.advance_last_refined(tool.owner_id, now, tx=tx)
            tool.stage_entry(
                tx,
                AuditAction.complete,
                tool.owner_id,
                before={"last_refined_at": state.last_refined_at},
                after={
                    "last_refined_at": now,
                    "journal_id": journal.id,
                    "summary": summary,
                    "stats": stats,
                },
            )

        tool.completion = {
            "type": "refinement_complete",
            "summary": summary,
            "stats": stats,
            "journal_id": journal.id,
        }
        return {**tool.completion, "duplicate": False}


_HANDLERS: dict[str, ActionHandler] = {
    handler.name: handler
    for handler in (
        SearchAction(),
        ConsolidateAction(),
        UpdateAction(),
        DeleteAction(),
        ProtectAction(),
        CompleteAction(),
    )
}


# ---------------------------------------------------------------------------
# RefinementTool
# ---------------------------------------------------------------------------


class RefinementTool:
    """Action dispatcher bound to one owner and one refinement session."""

    def __init__(
        self,
        store: MemoryStore,
        audit: AuditLog,
        *,
        owner_id: str,
        session_id: str | None = None,
    ) -> None:
        self.store = store
        self.audit = audit
        self.owner_id = owner_id
        self.session_id = session_id or str(uuid.uuid4())
        self.stats = SessionStats()
        self.completion: dict | None = None

    @property
    def completed(self) -> bool:
        return self.completion is not None

    async def execute(self, action: str, params: dict | None = None) -> dict:
        """Run one action and return its structured result."""
        start = perf_counter()
        ok = False
        params = dict(params or {})
        logger.info(
            "[Refinement] Owner %s session %s: %s",
            self.owner_id,
            self.session_id,
            action,
        )
        try:
            handler = _HANDLERS.get(action)
            if handler is None:
                return error_result(
                    f"Invalid action '{action}'",
                    action=action,
                    allowed_actions=list(ACTIONS),
                )

            missing = handler.missing_param(params)
            if missing is not None:
                return error_result(
                    f"{missing} is required for {action}",
                    action=action,
                    missing=missing,
                )

            if self.completed and handler.name != "complete":
                return self._error_from(
                    action,
                    SessionClosedError(
                        f"Session {self.session_id} is already complete; "
                        f"'{action}' is not allowed"
                    ),
                )

            try:
                result = await handler.run(self, params)
            except RefineryError as exc:
                return self._error_from(action, exc)
            ok = True
            return result
        finally:
            record_latency(
                operation=f"refinement.{action}",
                duration_ms=(perf_counter() - start) * 1000,
                ok=ok,
            )

    def _error_from(self, action: str, exc: RefineryError) -> dict:
        details: dict[str, Any] = {"action": action, "code": exc.code}
        if isinstance(exc, ProtectedRecordError):
            details["protected_ids"] = exc.ids
        elif isinstance(exc, NotFoundError):
            details["ids"] = exc.ids
        logger.info(
            "[Refinement] Owner %s session %s: %s rejected (%s)",
            self.owner_id,
            self.session_id,
            action,
            exc,
        )
        return error_result(str(exc), **details)

    # -- helpers used by handlers --

    async def resolve_core(self, ids: list[str]) -> list[MemoryRecord]:
        """Fetch every id as one of the owner's core records, or raise naming the misses."""
        if not ids:
            raise ValidationError("at least one memory ID is required")
        found, missing = await self.store.find_many(self.owner_id, ids)
        records = [record for record in found if record.is_core]
        missing.extend(record.id for record in found if not record.is_core)
        if missing:
            label = ", ".join(f"#{rid}" for rid in missing)
            raise NotFoundError(f"Memory {label} not found", ids=missing)
        return records

    def stage_entry(
        self,
        tx,
        action: AuditAction,
        subject_id: str,
        *,
        before: dict | None,
        after: dict | None,
    ) -> AuditEntry:
        return self.audit.stage_append(
            tx,
            AuditEntry(
                session_id=self.session_id,
                owner_id=self.owner_id,
                action=action,
                subject_id=subject_id,
                before=before,
                after=after,
            ),
        )

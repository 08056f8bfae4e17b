"""Rollback engine: undo a refinement session from its audit entries.

The audit log is the only source of truth: every reversal is planned from
the ``before``/``after`` snapshots of the session's entries, never from the
current state of the store.  Entries are replayed most-recent-first and the
whole replay, plus the terminal ``rollback`` entry and the rejection
journal note, is queued on one ``MULTI/EXEC`` pipeline.

Each reversal is either "write this snapshot under its original id" or
"remove this id", so replaying an interrupted rollback is safe.
"""

from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass
from dataclasses import field
from time import perf_counter

from pydantic import ValidationError as PydanticValidationError
from redis.exceptions import RedisError  # type: ignore[import-untyped]

from memrefine.audit import AuditAction
from memrefine.audit import AuditEntry
from memrefine.audit import AuditLog
from memrefine.audit import RECORD_ACTIONS
from memrefine.errors import RefineryError
from memrefine.errors import RollbackError
from memrefine.memory.schemas import MemoryCategory
from memrefine.memory.schemas import MemoryRecord
from memrefine.memory.store import MemoryStore
from memrefine.observability import record_latency

logger = logging.getLogger(__name__)


@dataclass
class RollbackResult:
    """Summary of one rollback run."""

    session_id: str
    owner_id: str
    reversed_count: int = 0
    actions: dict[str, int] = field(default_factory=dict)
    already_rolled_back: bool = False
    journal_id: str | None = None


class RollbackEngine:
    """Reverse every mutation a session made, atomically."""

    def __init__(self, store: MemoryStore, audit: AuditLog) -> None:
        self.store = store
        self.audit = audit

    async def rollback(
        self,
        owner_id: str,
        session_id: str,
        *,
        reason: str = "circuit breaker tripped",
    ) -> RollbackResult:
        """Undo *session_id* for *owner_id*.

        Raises ``RollbackError`` if any reversal cannot be staged or the
        transaction fails.  A failure while staging, before ``EXEC``, applies
        nothing.  Redis does not undo the other queued commands when one of
        them fails at ``EXEC`` time (a WRONGTYPE reply or a Lua error), so a
        failure at that point may leave the session partly reversed.
        """
        start = perf_counter()
        ok = False
        try:
            result = await self._rollback(owner_id, session_id, reason=reason)
            ok = True
            return result
        except RollbackError:
            raise
        except (RefineryError, RedisError, PydanticValidationError) as exc:
            raise RollbackError(
                f"Rollback of session {session_id} failed: {exc}",
                session_id=session_id,
                owner_id=owner_id,
            ) from exc
        finally:
            record_latency(
                operation="refinement.rollback",
                duration_ms=(perf_counter() - start) * 1000,
                ok=ok,
            )

    async def _rollback(
        self, owner_id: str, session_id: str, *, reason: str
    ) -> RollbackResult:
        entries = await self.audit.for_session(session_id)
        result = RollbackResult(session_id=session_id, owner_id=owner_id)

        if any(entry.action == AuditAction.rollback for entry in entries):
            logger.info(
                "[Rollback] Session %s already rolled back; nothing to do",
                session_id,
            )
            result.already_rolled_back = True
            return result

        foreign = {entry.owner_id for entry in entries if entry.owner_id != owner_id}
        if foreign:
            raise RollbackError(
                f"Session {session_id} has entries for other owners: "
                f"{', '.join(sorted(foreign))}",
                session_id=session_id,
                owner_id=owner_id,
            )

        counts: Counter[str] = Counter()
        journal = self.store.build_record(
            owner_id,
            f"Refinement attempt rejected and rolled back ({reason}). "
            f"Session {session_id}: {len(entries)} change(s) reverted.",
            MemoryCategory.journal,
        )

        async with self.store.transaction() as tx:
            for entry in entries:
                await self._stage_reversal(tx, entry)
                counts[entry.action.value] += 1
            await self.store.restore(journal, tx=tx)
            self.audit.stage_append(
                tx,
                AuditEntry(
                    session_id=session_id,
                    owner_id=owner_id,
                    action=AuditAction.rollback,
                    subject_id=owner_id,
                    after={
                        "reason": reason,
                        "reversed": len(entries),
                        "actions": dict(counts),
                        "journal_id": journal.id,
                    },
                ),
            )

        result.reversed_count = len(entries)
        result.actions = dict(counts)
        result.journal_id = journal.id
        logger.info(
            "[Rollback] Owner %s session %s: reverted %d change(s) %s",
            owner_id,
            session_id,
            len(entries),
            dict(counts),
        )
        return result

    async def _stage_reversal(self, tx, entry: AuditEntry) -> None:
        if entry.action in RECORD_ACTIONS:
            if entry.before is not None:
                # delete, update, consolidate_merge, protect: put the prior
                # snapshot back under its original id.
                await self.store.restore(
                    MemoryRecord.model_validate(entry.before), tx=tx
                )
            else:
                # consolidate_create: the record did not exist before.
                await self.store.destroy(
                    MemoryRecord.model_validate(entry.after),
                    tx=tx,
                    override_protection=True,
                )
            return

        if entry.action == AuditAction.complete:
            after = entry.after or {}
            before = entry.before or {}
            journal_id = after.get("journal_id")
            if journal_id:
                journal = await self.store.find(entry.owner_id, journal_id)
                if journal is not None:
                    await self.store.destroy(journal, tx=tx, override_protection=True)
            if after.get("last_refined_at") is not None:
                self.store.stage_restore_last_refined(
                    tx,
                    entry.owner_id,
                    expected=after["last_refined_at"],
                    previous=before.get("last_refined_at"),
                )
            return

        raise RollbackError(
            f"Cannot reverse audit action {entry.action.value!r}",
            session_id=entry.session_id or "",
            owner_id=entry.owner_id,
        )

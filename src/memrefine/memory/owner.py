"""Owner facade: the refinement-related surface of an agent.

Wraps the store and audit log for one ``owner_id`` and exposes the
eligibility check plus the administrative protection toggle.
"""

from __future__ import annotations

import logging
import time

from memrefine.audit import AuditAction
from memrefine.audit import AuditEntry
from memrefine.audit import AuditLog
from memrefine.config import RefinementConfig
from memrefine.memory.schemas import MemoryRecord
from memrefine.memory.schemas import OwnerRefinementState
from memrefine.memory.store import MemoryStore

logger = logging.getLogger(__name__)


def is_refinement_due(
    state: OwnerRefinementState,
    *,
    core_mass: int,
    config: RefinementConfig,
    now: float | None = None,
) -> bool:
    """Staleness and budget are independent triggers."""
    current = time.time() if now is None else now
    if state.last_refined_at is None:
        return True
    if current - state.last_refined_at > config.refinement_interval_seconds:
        return True
    return core_mass > config.core_token_budget


class Owner:
    """Refinement view of one agent."""

    def __init__(
        self,
        store: MemoryStore,
        audit: AuditLog,
        owner_id: str,
        *,
        config: RefinementConfig | None = None,
    ) -> None:
        self.store = store
        self.audit = audit
        self.owner_id = owner_id
        self.config = config or store.config

    async def core_token_usage(self) -> int:
        return await self.store.sum_core_token_mass(self.owner_id)

    async def core_record_count(self) -> int:
        return len(await self.store.list_core(self.owner_id))

    async def state(self) -> OwnerRefinementState:
        return await self.store.get_owner_state(self.owner_id)

    async def refinement_threshold(self) -> float:
        return (await self.state()).refinement_threshold

    async def set_refinement_threshold(self, threshold: float) -> float:
        state = await self.store.set_refinement_threshold(self.owner_id, threshold)
        return state.refinement_threshold

    async def refinement_prompt(self) -> str:
        return (await self.state()).effective_refinement_prompt

    async def set_refinement_prompt(self, prompt: str | None) -> OwnerRefinementState:
        return await self.store.set_refinement_prompt(self.owner_id, prompt)

    async def last_refined_at(self) -> float | None:
        return (await self.state()).last_refined_at

    async def needs_refinement(self, *, now: float | None = None) -> bool:
        """True when stale or over budget; never for an owner without core records."""
        core = await self.store.list_core(self.owner_id)
        if not core:
            return False
        return is_refinement_due(
            await self.state(),
            core_mass=sum(record.token_estimate for record in core),
            config=self.config,
            now=now,
        )

    # ------------------------------------------------------------------
    # Administrative protection toggle
    # ------------------------------------------------------------------

    async def protect(self, record_id: str) -> MemoryRecord:
        return await self._set_protected(record_id, True)

    async def unprotect(self, record_id: str) -> MemoryRecord:
        return await self._set_protected(record_id, False)

    async def _set_protected(self, record_id: str, protected: bool) -> MemoryRecord:
        record = await self.store.get(self.owner_id, record_id)
        if record.protected == protected:
            return record
        action = AuditAction.protect if protected else AuditAction.unprotect
        async with self.store.transaction() as tx:
            updated = await self.store.set_protected(record, protected, tx=tx)
            self.audit.stage_append(
                tx,
                AuditEntry(
                    owner_id=self.owner_id,
                    action=action,
                    subject_id=record.id,
                    before=record.snapshot(),
                    after=updated.snapshot(),
                ),
            )
        logger.info(
            "Owner %s: memory %s %s by administrator",
            self.owner_id,
            record.id,
            action.value + "ed",
        )
        return updated

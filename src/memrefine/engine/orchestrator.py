"""Session orchestrator: eligibility, session driving, breaker, rollback.

``SessionOrchestrator.refine(owner_id)`` runs one refinement session under
the owner's lease; ``sweep()`` refines every eligible owner concurrently.
The orchestrator coordinates existing components and holds no state of
its own between sessions.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from dataclasses import field
from enum import Enum
from time import perf_counter

from memrefine.audit import AuditLog
from memrefine.config import LockConfig
from memrefine.config import RefinementConfig
from memrefine.engine.breaker import BreakerDecision
from memrefine.engine.breaker import evaluate
from memrefine.engine.briefing import build_briefing
from memrefine.engine.briefing import build_consent_prompt
from memrefine.engine.locking import OwnerLock
from memrefine.engine.reasoning import ReasoningLoop
from memrefine.engine.rollback import RollbackEngine
from memrefine.engine.rollback import RollbackResult
from memrefine.engine.tool import RefinementTool
from memrefine.errors import RefinementInProgressError
from memrefine.errors import RollbackError
from memrefine.memory.owner import Owner
from memrefine.memory.store import MemoryStore
from memrefine.observability import record_latency
from memrefine.observability import record_session_outcome

logger = logging.getLogger(__name__)


class SessionStatus(str, Enum):
    """How a refinement attempt ended."""

    accepted = "accepted"
    rolled_back = "rolled_back"
    incomplete = "incomplete"
    declined = "declined"
    skipped = "skipped"


@dataclass
class SessionOutcome:
    """Result of one ``refine`` call.

    A ``rolled_back`` session leaves the owner's ``last_refined_at`` at its
    pre-session value.  If the session reached ``complete``, that value was
    advanced provisionally and then put back by rollback, so a reader polling
    during the session may observe the later timestamp briefly.
    """

    owner_id: str
    status: SessionStatus
    session_id: str | None = None
    pre_mass: int = 0
    post_mass: int = 0
    completed: bool = False
    abandoned_reason: str | None = None
    breaker: BreakerDecision | None = None
    rollback: RollbackResult | None = None
    stats: dict[str, int] = field(default_factory=dict)

    def as_dict(self) -> dict:
        return {
            "owner_id": self.owner_id,
            "status": self.status.value,
            "session_id": self.session_id,
            "pre_mass": self.pre_mass,
            "post_mass": self.post_mass,
            "completed": self.completed,
            "abandoned_reason": self.abandoned_reason,
            "breaker": self.breaker.as_dict() if self.breaker else None,
            "reversed": self.rollback.reversed_count if self.rollback else 0,
            "stats": self.stats,
        }


class SessionOrchestrator:
    """Scheduled or on-demand entry point for memory refinement."""

    def __init__(
        self,
        store: MemoryStore,
        audit: AuditLog,
        reasoning_loop: ReasoningLoop,
        *,
        config: RefinementConfig | None = None,
        lock_config: LockConfig | None = None,
        lock_factory: Callable[[str], OwnerLock] | None = None,
        instructions: str | None = None,
    ) -> None:
        self.store = store
        self.audit = audit
        self.reasoning_loop = reasoning_loop
        self.config = config or store.config
        self.rollback_engine = RollbackEngine(store, audit)
        self.instructions = instructions
        self._lock_factory = lock_factory or (
            lambda owner_id: OwnerLock(
                store.redis,
                owner_id,
                config=lock_config,
                key_prefix=store.key_prefix,
            )
        )

    # ------------------------------------------------------------------
    # Eligibility
    # ------------------------------------------------------------------

    def owner(self, owner_id: str) -> Owner:
        return Owner(self.store, self.audit, owner_id, config=self.config)

    async def needs_refinement(self, owner_id: str) -> bool:
        return await self.owner(owner_id).needs_refinement()

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    async def sweep(self) -> list[SessionOutcome]:
        """Refine every eligible owner; one owner's failure does not stop the rest."""
        logger.info("[Refinement] Sweep starting")
        semaphore = asyncio.Semaphore(self.config.max_concurrent_sessions)

        async def _refine_one(owner_id: str) -> SessionOutcome | None:
            async with semaphore:
                try:
                    if not await self.needs_refinement(owner_id):
                        return None
                    logger.info("[Refinement] Owner %s needs refinement", owner_id)
                    return await self.refine(owner_id)
                except RefinementInProgressError:
                    logger.info(
                        "[Refinement] Owner %s already being refined; skipping",
                        owner_id,
                    )
                    return None
                except Exception:
                    logger.exception("[Refinement] Failed for owner %s", owner_id)
                    return None

        owners = await self.store.list_owners()
        results = await asyncio.gather(*(_refine_one(owner) for owner in owners))
        outcomes = [outcome for outcome in results if outcome is not None]
        logger.info("[Refinement] Sweep complete: %d session(s)", len(outcomes))
        return outcomes

    async def refine(self, owner_id: str) -> SessionOutcome:
        """Run one refinement session for *owner_id*.

        Raises ``RefinementInProgressError`` if a session already holds the
        owner's lease, and ``RollbackError`` if a tripped session could not
        be undone.
        """
        if not await self.store.list_core(owner_id):
            return self._finish(SessionOutcome(owner_id, SessionStatus.skipped))

        start = perf_counter()
        ok = False
        try:
            async with self._lock_factory(owner_id):
                outcome = await self._run_session(owner_id)
            ok = True
            return outcome
        finally:
            record_latency(
                operation="refinement.session",
                duration_ms=(perf_counter() - start) * 1000,
                ok=ok,
            )

    # ------------------------------------------------------------------
    # Session
    # ------------------------------------------------------------------

    async def _run_session(self, owner_id: str) -> SessionOutcome:
        core = await self.store.list_core(owner_id)
        if not core:
            return self._finish(SessionOutcome(owner_id, SessionStatus.skipped))

        state = await self.store.get_owner_state(owner_id)
        budget = self.config.core_token_budget
        pre_mass = sum(record.token_estimate for record in core)

        if self.config.require_consent:
            consent_prompt = build_consent_prompt(core, mass=pre_mass, budget=budget)
            if not await self.reasoning_loop.consents(consent_prompt):
                logger.info("[Refinement] Owner %s declined refinement", owner_id)
                return self._finish(
                    SessionOutcome(
                        owner_id,
                        SessionStatus.declined,
                        pre_mass=pre_mass,
                        post_mass=pre_mass,
                    )
                )

        session_id = str(uuid.uuid4())
        tool = RefinementTool(
            self.store, self.audit, owner_id=owner_id, session_id=session_id
        )
        briefing = build_briefing(
            core,
            mass=pre_mass,
            budget=budget,
            session_id=session_id,
            threshold=state.refinement_threshold,
            refinement_prompt=state.effective_refinement_prompt,
            instructions=self.instructions,
        )
        logger.info(
            "[Refinement] Owner %s session %s opened (mass %d / budget %d)",
            owner_id,
            session_id,
            pre_mass,
            budget,
        )

        abandoned_reason: str | None = None
        cancelled: asyncio.CancelledError | None = None
        try:
            await asyncio.wait_for(
                self.reasoning_loop.run(briefing, tool),
                timeout=self.config.session_timeout_seconds,
            )
        except asyncio.TimeoutError:
            abandoned_reason = "timeout"
        except asyncio.CancelledError as exc:
            abandoned_reason = "cancelled"
            cancelled = exc
        except Exception as exc:
            logger.exception(
                "[Refinement] Owner %s session %s: reasoning loop failed",
                owner_id,
                session_id,
            )
            abandoned_reason = f"error: {exc}"
        if abandoned_reason is None and not tool.completed:
            abandoned_reason = "not completed"

        outcome = await self._judge(
            owner_id,
            session_id,
            pre_mass=pre_mass,
            threshold=state.refinement_threshold,
            tool=tool,
            abandoned_reason=abandoned_reason,
        )
        if cancelled is not None:
            raise cancelled
        return outcome

    async def _judge(
        self,
        owner_id: str,
        session_id: str,
        *,
        pre_mass: int,
        threshold: float,
        tool: RefinementTool,
        abandoned_reason: str | None,
    ) -> SessionOutcome:
        """Run the breaker on the session result and roll back if it trips.

        Abandoned sessions are judged exactly like completed ones.
        """
        post_mass = await self.store.sum_core_token_mass(owner_id)
        decision = evaluate(pre_mass, post_mass, threshold)
        outcome = SessionOutcome(
            owner_id,
            SessionStatus.accepted,
            session_id=session_id,
            pre_mass=pre_mass,
            post_mass=post_mass,
            completed=tool.completed,
            abandoned_reason=abandoned_reason,
            breaker=decision,
            stats=tool.stats.as_dict(),
        )

        if decision.tripped:
            logger.info(
                "[Refinement] Owner %s session %s: circuit breaker tripped "
                "(%d -> %d tokens, ratio %.3f > %.3f); rolling back",
                owner_id,
                session_id,
                pre_mass,
                post_mass,
                decision.ratio,
                threshold,
            )
            reason = (
                f"token mass {pre_mass} -> {post_mass}, "
                f"ratio {decision.ratio:.3f} above threshold {threshold:.3f}"
            )
            try:
                outcome.rollback = await self.rollback_engine.rollback(
                    owner_id, session_id, reason=reason
                )
            except RollbackError:
                logger.critical(
                    "[Refinement] Owner %s session %s could not be rolled back; "
                    "memory state needs operator review",
                    owner_id,
                    session_id,
                )
                raise
            outcome.status = SessionStatus.rolled_back
            outcome.post_mass = await self.store.sum_core_token_mass(owner_id)
        elif not tool.completed:
            logger.warning(
                "[Refinement] Owner %s session %s ended without complete (%s); "
                "changes kept, owner stays eligible",
                owner_id,
                session_id,
                abandoned_reason,
            )
            outcome.status = SessionStatus.incomplete
        else:
            logger.info(
                "[Refinement] Owner %s session %s accepted: %d -> %d tokens %s",
                owner_id,
                session_id,
                pre_mass,
                post_mass,
                outcome.stats,
            )
        return self._finish(outcome)

    @staticmethod
    def _finish(outcome: SessionOutcome) -> SessionOutcome:
        record_session_outcome(outcome.status.value)
        return outcome

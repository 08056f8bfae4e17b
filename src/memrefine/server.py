"""memrefine FastMCP server.

Exposes the scheduler and administrator surfaces of the refinement engine:
saving memories, toggling protection, inspecting owner status, triggering
sessions, and reading a session's audit trail.  Call
``configure(redis_url=...)`` before using the server.
"""

from __future__ import annotations

import asyncio
import logging
from time import perf_counter

from fastmcp import FastMCP
from redis.asyncio import Redis  # type: ignore[import-untyped]

from memrefine.audit import AuditLog
from memrefine.config import LLMConfig
from memrefine.config import LockConfig
from memrefine.config import RefinementConfig
from memrefine.config import StoreConfig
from memrefine.engine import build_reasoning_loop
from memrefine.engine import ReasoningLoop
from memrefine.engine import SessionOrchestrator
from memrefine.engine import SessionOutcome
from memrefine.errors import RefinementInProgressError
from memrefine.errors import RefineryError
from memrefine.memory import MemoryStore
from memrefine.memory import Owner
from memrefine.observability import record_latency

logger = logging.getLogger(__name__)

mcp = FastMCP("memrefine")

# ---------------------------------------------------------------------------
# Backend instances (set via configure())
# ---------------------------------------------------------------------------

_redis: Redis | None = None
_store: MemoryStore | None = None
_audit: AuditLog | None = None
_orchestrator: SessionOrchestrator | None = None
_background: set[asyncio.Task] = set()


async def configure(
    redis_url: str | None = None,
    *,
    store_config: StoreConfig | None = None,
    refinement_config: RefinementConfig | None = None,
    lock_config: LockConfig | None = None,
    llm_config: LLMConfig | None = None,
    reasoning_loop: ReasoningLoop | None = None,
    instructions: str | None = None,
) -> None:
    """Initialize the Redis backend and the session orchestrator.

    Must be called before the MCP tools can function.
    """
    global _redis, _store, _audit, _orchestrator
    await shutdown()

    store_cfg = store_config or StoreConfig()
    refinement_cfg = refinement_config or RefinementConfig()
    loop = reasoning_loop or build_reasoning_loop(llm_config or LLMConfig())

    _redis = Redis.from_url(redis_url or store_cfg.redis_url)
    _store = MemoryStore(
        _redis, config=refinement_cfg, key_prefix=store_cfg.key_prefix
    )
    _audit = AuditLog(_redis, key_prefix=store_cfg.key_prefix)
    _orchestrator = SessionOrchestrator(
        _store,
        _audit,
        loop,
        config=refinement_cfg,
        lock_config=lock_config,
        instructions=instructions,
    )


async def shutdown() -> None:
    """Cancel queued sessions and close the Redis client."""
    global _redis, _store, _audit, _orchestrator
    for task in list(_background):
        task.cancel()
    if _background:
        await asyncio.gather(*_background, return_exceptions=True)
    _background.clear()
    if _redis is not None:
        try:
            await _redis.aclose()
        except RuntimeError:
            # Tests may reconfigure across event loops.
            pass
    _redis = None
    _store = None
    _audit = None
    _orchestrator = None


async def _reset_store() -> None:
    """Clear all memrefine keys (test cleanup)."""
    if _store is not None:
        await _store.clear()


def _get_orchestrator() -> SessionOrchestrator:
    if _orchestrator is None:
        raise RuntimeError("memrefine not configured. Call configure() first.")
    return _orchestrator


def _owner(owner_id: str) -> Owner:
    return _get_orchestrator().owner(owner_id)


def _rejected(exc: RefineryError) -> dict:
    return {"status": "rejected", "error_code": exc.code, "message": str(exc)}


# ---------------------------------------------------------------------------
# Tools
# ---------------------------------------------------------------------------


@mcp.tool
async def save_memory(owner_id: str, content: str, category: str = "core") -> dict:
    """Store a memory for an agent.

    Args:
        owner_id: Agent that owns the memory.
        content: Memory text (at most 10,000 characters).
        category: "core" (durable) or "journal" (expires after a week).
    """
    start = perf_counter()
    ok = False
    try:
        orchestrator = _get_orchestrator()
        try:
            record = await orchestrator.store.create(owner_id, content, category)
        except RefineryError as exc:
            return _rejected(exc)
        ok = True
        return {
            "status": "accepted",
            "memory": {**record.ledger_entry(), "category": record.category.value},
        }
    finally:
        record_latency(
            operation="mcp.save_memory",
            duration_ms=(perf_counter() - start) * 1000,
            ok=ok,
        )


@mcp.tool
async def protect_memory(owner_id: str, memory_id: str) -> dict:
    """Mark a memory as protected against deletion and consolidation.

    Args:
        owner_id: Agent that owns the memory.
        memory_id: Memory to protect.
    """
    try:
        record = await _owner(owner_id).protect(memory_id)
    except RefineryError as exc:
        return _rejected(exc)
    return {"status": "applied", "id": record.id, "protected": record.protected}


@mcp.tool
async def unprotect_memory(owner_id: str, memory_id: str) -> dict:
    """Remove the protection flag from a memory.

    Args:
        owner_id: Agent that owns the memory.
        memory_id: Memory to unprotect.
    """
    try:
        record = await _owner(owner_id).unprotect(memory_id)
    except RefineryError as exc:
        return _rejected(exc)
    return {"status": "applied", "id": record.id, "protected": record.protected}


@mcp.tool
async def refinement_status(owner_id: str) -> dict:
    """Report an agent's core token usage and refinement eligibility.

    ``last_refined_at`` reflects accepted sessions only.  While a session is
    running, a ``complete`` call sets it provisionally; if the circuit
    breaker then trips, rollback puts the pre-session value back.

    Args:
        owner_id: Agent to inspect.
    """
    owner = _owner(owner_id)
    state = await owner.state()
    return {
        "owner_id": owner_id,
        "core_memories": await owner.core_record_count(),
        "core_token_usage": await owner.core_token_usage(),
        "core_token_budget": owner.config.core_token_budget,
        "needs_refinement": await owner.needs_refinement(),
        "refinement_threshold": state.refinement_threshold,
        "last_refined_at": state.last_refined_at,
        "refinement_prompt": state.effective_refinement_prompt,
        "refinement_prompt_is_default": state.refinement_prompt is None,
    }


@mcp.tool
async def set_refinement_threshold(owner_id: str, threshold: float) -> dict:
    """Set the maximum post/pre core mass ratio an agent's sessions may end at.

    Args:
        owner_id: Agent to configure.
        threshold: Ratio greater than zero (1.0 rejects any growth).
    """
    try:
        value = await _owner(owner_id).set_refinement_threshold(threshold)
    except RefineryError as exc:
        return _rejected(exc)
    return {"status": "applied", "owner_id": owner_id, "refinement_threshold": value}


@mcp.tool
async def set_refinement_prompt(owner_id: str, prompt: str | None = None) -> dict:
    """Set the guidance shown to an agent at the start of its refinement sessions.

    Args:
        owner_id: Agent to configure.
        prompt: Refinement guidance; omit or leave blank to restore the default.
    """
    try:
        state = await _owner(owner_id).set_refinement_prompt(prompt)
    except RefineryError as exc:
        return _rejected(exc)
    return {
        "status": "applied",
        "owner_id": owner_id,
        "refinement_prompt": state.effective_refinement_prompt,
        "is_default": state.refinement_prompt is None,
    }


async def _run_refinement(owner_id: str | None) -> list[SessionOutcome]:
    orchestrator = _get_orchestrator()
    if owner_id is None:
        return await orchestrator.sweep()
    logger.info("[Refinement] Starting for owner %s", owner_id)
    return [await orchestrator.refine(owner_id)]


async def _run_refinement_in_background(owner_id: str | None) -> None:
    try:
        await _run_refinement(owner_id)
    except RefinementInProgressError as exc:
        logger.info("[Refinement] %s", exc)
    except Exception:
        logger.exception("[Refinement] Background refinement failed")


@mcp.tool
async def trigger_refinement(owner_id: str | None = None, wait: bool = False) -> dict:
    """Start a refinement session for one agent, or a sweep over all agents.

    Args:
        owner_id: Agent to refine; omit to sweep every eligible agent.
        wait: Block until the sessions finish and return their outcomes.
    """
    _get_orchestrator()
    if not wait:
        task = asyncio.create_task(_run_refinement_in_background(owner_id))
        _background.add(task)
        task.add_done_callback(_background.discard)
        return {"status": "queued", "owner_id": owner_id}

    try:
        outcomes = await _run_refinement(owner_id)
    except RefinementInProgressError as exc:
        return _rejected(exc)
    return {
        "status": "finished",
        "owner_id": owner_id,
        "sessions": [outcome.as_dict() for outcome in outcomes],
    }


@mcp.tool
async def session_audit(session_id: str) -> dict:
    """Return the audit trail of a refinement session, most recent first.

    Args:
        session_id: Session correlation id.
    """
    entries = await _get_orchestrator().audit.for_session(session_id)
    return {
        "session_id": session_id,
        "count": len(entries),
        "entries": [entry.model_dump(mode="json") for entry in entries],
    }

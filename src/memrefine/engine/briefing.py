"""Prompt construction for refinement sessions.

Builds the ledger-style briefing handed to the reasoning loop, and the short
consent question asked before a session opens.  Separate module because
the wording evolves independently of the session mechanics.
"""

from __future__ import annotations

import time
from datetime import datetime
from datetime import timezone

from memrefine.memory.schemas import DEFAULT_REFINEMENT_PROMPT
from memrefine.memory.schemas import MemoryRecord

_SECONDS_PER_DAY = 86400


def format_ledger_line(record: MemoryRecord, *, now: float) -> str:
    """``- #id (YYYY-MM-DD, Nd old, ~T tokens) [PROTECTED]: content``"""
    created = datetime.fromtimestamp(record.created_at, tz=timezone.utc)
    age_days = max(int((now - record.created_at) // _SECONDS_PER_DAY), 0)
    flag = " [PROTECTED]" if record.protected else ""
    return (
        f"- #{record.id} ({created:%Y-%m-%d}, {age_days}d old, "
        f"~{record.token_estimate} tokens){flag}: {record.content}"
    )


def format_status(records: list[MemoryRecord], *, mass: int, budget: int) -> str:
    if mass > budget:
        budget_line = f"Over budget by: {mass - budget} tokens"
    else:
        budget_line = "Within budget"
    return "\n".join(
        [
            f"- Core memories: {len(records)}",
            f"- Token usage: {mass} tokens",
            f"- Token budget: {budget} tokens",
            f"- {budget_line}",
        ]
    )


def build_briefing(
    records: list[MemoryRecord],
    *,
    mass: int,
    budget: int,
    session_id: str,
    threshold: float,
    refinement_prompt: str = DEFAULT_REFINEMENT_PROMPT,
    instructions: str | None = None,
    now: float | None = None,
) -> str:
    """Build the session briefing listing every core record.

    *refinement_prompt* is the owner's own guidance; *instructions* are
    operator-wide and appended after it.
    """
    current = time.time() if now is None else now
    ledger = "\n".join(format_ledger_line(record, now=current) for record in records)
    sections = [
        "# Memory Refinement Session",
        f"Session: {session_id}",
        (
            "You are reviewing your own core memories. Protected memories "
            "can be reworded but never deleted or merged."
        ),
        refinement_prompt.strip(),
    ]
    if instructions:
        sections.append(instructions.strip())
    sections.extend(
        [
            "## Current Status",
            format_status(records, mass=mass, budget=budget),
            (
                f"The session is accepted only if core token usage ends at or "
                f"below {threshold:.0%} of its current value; otherwise every "
                "change is rolled back."
            ),
            "## Your Core Memory Ledger",
            ledger or "(empty)",
            "## Tool",
            (
                "Call refine_memory once per step with an action: search(query), "
                "consolidate(ids, content), update(id, content), delete(id or ids), "
                "protect(id), complete(summary). When done, call complete with a "
                "brief summary. Completing with zero changes is fine."
            ),
        ]
    )
    return "\n\n".join(sections)


def build_consent_prompt(
    records: list[MemoryRecord], *, mass: int, budget: int
) -> str:
    """Ask whether the owner agrees to run a refinement session now."""
    return "\n\n".join(
        [
            "# Memory Refinement Request",
            (
                "A scheduled memory refinement session is about to run. Before "
                "it begins, you are being asked whether you consent to it."
            ),
            "## Current Status",
            format_status(records, mass=mass, budget=budget),
            (
                "Refinement reviews your core memories to remove duplication "
                "and tighten phrasing. Protected memories are never removed."
            ),
            (
                "Do you want to run memory refinement now? Reply with YES or NO "
                "as the first word of your response. You may briefly explain "
                "your reasoning after."
            ),
        ]
    )

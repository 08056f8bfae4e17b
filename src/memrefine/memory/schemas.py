"""Memory domain data models."""

from __future__ import annotations

import math
import time
import uuid
from enum import Enum

from pydantic import BaseModel
from pydantic import Field

# Cheap proxy for LLM token cost: four characters per token.
CHARS_PER_TOKEN = 4


def estimate_tokens(content: str) -> int:
    """Return ``ceil(len(content) / 4)``."""
    return math.ceil(len(content) / CHARS_PER_TOKEN)


def new_memory_id() -> str:
    return f"mem_{uuid.uuid4().hex}"


# Guidance used in the session briefing when an owner has not set its own.
DEFAULT_REFINEMENT_PROMPT = (
    "Merge exact and near duplicates, tighten wording within individual "
    "memories, and drop memories that are no longer useful. Doing nothing "
    "is a valid outcome."
)


class MemoryCategory(str, Enum):
    """Lifecycle class of a memory record."""

    core = "core"
    journal = "journal"


class MemoryRecord(BaseModel):
    """A unit of an owner's persisted knowledge."""

    id: str = Field(
        default_factory=new_memory_id,
        description="Unique identifier, auto-generated as mem_{uuid4_hex}.",
    )
    owner_id: str = Field(
        description="Agent that owns this memory.",
    )
    content: str = Field(
        description="Textual content of the memory.",
    )
    category: MemoryCategory = Field(
        default=MemoryCategory.core,
        description="core records are durable; journal records expire.",
    )
    protected: bool = Field(
        default=False,
        description="Protected records cannot be deleted or consolidated away.",
    )
    created_at: float = Field(
        default_factory=time.time,
        description="Unix epoch when the memory was created.",
    )

    @property
    def token_estimate(self) -> int:
        return estimate_tokens(self.content)

    @property
    def is_core(self) -> bool:
        return self.category == MemoryCategory.core

    def is_expired(self, *, window_seconds: float, now: float | None = None) -> bool:
        """Journal records older than *window_seconds* are hidden from reads."""
        if self.category != MemoryCategory.journal:
            return False
        current = time.time() if now is None else now
        return self.created_at < current - window_seconds

    def ledger_entry(self) -> dict:
        """Shape returned to the reasoning loop by ``search``."""
        return {
            "id": self.id,
            "content": self.content,
            "token_estimate": self.token_estimate,
            "protected": self.protected,
            "created_at": self.created_at,
        }

    def snapshot(self) -> dict:
        """Full JSON-safe state, as stored in audit ``before``/``after``."""
        return self.model_dump(mode="json")


class OwnerRefinementState(BaseModel):
    """Refinement bookkeeping held on the owning agent."""

    owner_id: str
    refinement_threshold: float = Field(
        default=1.0,
        gt=0,
        description="Maximum accepted post/pre core mass ratio.",
    )
    last_refined_at: float | None = Field(
        default=None,
        description="Unix epoch of the last accepted refinement session.",
    )
    refinement_prompt: str | None = Field(
        default=None,
        description="Owner-authored guidance for its refinement sessions.",
    )

    @property
    def effective_refinement_prompt(self) -> str:
        return self.refinement_prompt or DEFAULT_REFINEMENT_PROMPT

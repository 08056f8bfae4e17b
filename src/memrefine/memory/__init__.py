"""Memory domain: owner-scoped records, token mass, and owner state."""

from memrefine.memory.owner import is_refinement_due
from memrefine.memory.owner import Owner
from memrefine.memory.schemas import DEFAULT_REFINEMENT_PROMPT
from memrefine.memory.schemas import estimate_tokens
from memrefine.memory.schemas import MemoryCategory
from memrefine.memory.schemas import MemoryRecord
from memrefine.memory.schemas import OwnerRefinementState
from memrefine.memory.store import MemoryStore

__all__ = [
    "DEFAULT_REFINEMENT_PROMPT",
    "MemoryCategory",
    "MemoryRecord",
    "MemoryStore",
    "Owner",
    "OwnerRefinementState",
    "estimate_tokens",
    "is_refinement_due",
]

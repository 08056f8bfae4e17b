"""Engine domain: refinement tool, breaker, rollback, and session orchestration."""

from memrefine.engine.breaker import BreakerDecision
from memrefine.engine.breaker import evaluate
from memrefine.engine.briefing import build_briefing
from memrefine.engine.briefing import build_consent_prompt
from memrefine.engine.locking import OwnerLock
from memrefine.engine.orchestrator import SessionOrchestrator
from memrefine.engine.orchestrator import SessionOutcome
from memrefine.engine.orchestrator import SessionStatus
from memrefine.engine.reasoning import build_reasoning_loop
from memrefine.engine.reasoning import NoopReasoningLoop
from memrefine.engine.reasoning import OpenAICompatibleReasoningLoop
from memrefine.engine.reasoning import ReasoningError
from memrefine.engine.reasoning import ReasoningLoop
from memrefine.engine.rollback import RollbackEngine
from memrefine.engine.rollback import RollbackResult
from memrefine.engine.tool import ACTIONS
from memrefine.engine.tool import parse_ids
from memrefine.engine.tool import RefinementTool
from memrefine.engine.tool import SessionStats

__all__ = [
    "ACTIONS",
    "BreakerDecision",
    "NoopReasoningLoop",
    "OpenAICompatibleReasoningLoop",
    "OwnerLock",
    "ReasoningError",
    "ReasoningLoop",
    "RefinementTool",
    "RollbackEngine",
    "RollbackResult",
    "SessionOrchestrator",
    "SessionOutcome",
    "SessionStats",
    "SessionStatus",
    "build_briefing",
    "build_consent_prompt",
    "build_reasoning_loop",
    "evaluate",
    "parse_ids",
]

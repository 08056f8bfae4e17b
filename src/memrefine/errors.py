"""Domain exceptions shared by the store, the refinement tool, and the orchestrator."""

from __future__ import annotations

from collections.abc import Iterable


class RefineryError(Exception):
    """Base class for every error raised by memrefine."""

    code = "refinery_error"


class ValidationError(RefineryError):
    """Bad input shape or length handed to a store operation."""

    code = "validation_error"


class NotFoundError(RefineryError):
    """Reference to a record (or session) that does not exist for the owner."""

    code = "not_found"

    def __init__(self, message: str, *, ids: Iterable[str] = ()) -> None:
        super().__init__(message)
        self.ids = list(ids)


class ProtectedRecordError(RefineryError):
    """Attempt to destroy or consolidate away a protected record."""

    code = "protected_record"

    def __init__(self, ids: Iterable[str]) -> None:
        self.ids = list(ids)
        super().__init__(
            f"Cannot remove protected memories: {', '.join(self.ids)}"
        )


class SessionClosedError(RefineryError):
    """Action issued after the session already completed."""

    code = "session_closed"


class RefinementInProgressError(RefineryError):
    """Another refinement session holds the owner's lease."""

    code = "refinement_in_progress"


class RollbackError(RefineryError):
    """A session could not be rolled back; owner memory needs operator attention."""

    code = "rollback_failed"

    def __init__(self, message: str, *, session_id: str, owner_id: str) -> None:
        super().__init__(message)
        self.session_id = session_id
        self.owner_id = owner_id

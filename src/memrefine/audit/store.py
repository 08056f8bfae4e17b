"""Redis-backed append-only audit log.

Each entry is serialized once and pushed onto two lists:
``memrefine:audit:owner:{owner}`` (full history, admin actions included) and
``memrefine:audit:session:{session_id}`` (the per-session index rollback
reads).  Lists are only ever ``RPUSH``-ed, so entries are never edited.
"""

from __future__ import annotations

import logging

from pydantic import ValidationError
from redis.asyncio import Redis  # type: ignore[import-untyped]
from redis.asyncio.client import Pipeline  # type: ignore[import-untyped]

from memrefine.audit.schemas import AuditEntry

logger = logging.getLogger(__name__)


class AuditLog:
    """Session-indexed audit log sharing the memory store's Redis."""

    def __init__(self, redis: Redis, *, key_prefix: str = "memrefine") -> None:
        self._redis = redis
        self._prefix = key_prefix

    def _session_key(self, session_id: str) -> str:
        return f"{self._prefix}:audit:session:{session_id}"

    def _owner_key(self, owner_id: str) -> str:
        return f"{self._prefix}:audit:owner:{owner_id}"

    # ------------------------------------------------------------------
    # Write
    # ------------------------------------------------------------------

    def stage_append(self, tx: Pipeline, entry: AuditEntry) -> AuditEntry:
        """Queue *entry* on an open ``MULTI/EXEC`` pipeline."""
        line = entry.model_dump_json()
        tx.rpush(self._owner_key(entry.owner_id), line)
        if entry.session_id is not None:
            tx.rpush(self._session_key(entry.session_id), line)
        return entry

    async def append(self, entry: AuditEntry) -> AuditEntry:
        """Append *entry* in its own transaction."""
        async with self._redis.pipeline(transaction=True) as tx:
            self.stage_append(tx, entry)
            await tx.execute()
        return entry

    # ------------------------------------------------------------------
    # Read
    # ------------------------------------------------------------------

    async def for_session(self, session_id: str) -> list[AuditEntry]:
        """Return every entry of *session_id*, most recent first.

        Malformed lines raise: rollback must not act on a partial history.
        """
        raw = await self._redis.lrange(self._session_key(session_id), 0, -1)
        return [AuditEntry.model_validate_json(line) for line in reversed(raw)]

    async def for_owner(
        self, owner_id: str, *, limit: int | None = None
    ) -> list[AuditEntry]:
        """Return the owner's history, most recent first."""
        start = -limit if limit else 0
        raw = await self._redis.lrange(self._owner_key(owner_id), start, -1)
        entries: list[AuditEntry] = []
        for line_no, line in enumerate(reversed(raw), start=1):
            try:
                entries.append(AuditEntry.model_validate_json(line))
            except ValidationError:
                logger.warning(
                    "Skipping malformed audit entry %d for owner %s",
                    line_no,
                    owner_id,
                )
        return entries

    async def session_length(self, session_id: str) -> int:
        return await self._redis.llen(self._session_key(session_id))

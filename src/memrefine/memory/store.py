"""Redis-backed memory record store.

Records are stored as JSON strings keyed by ``memrefine:record:{owner}:{id}``.
A sorted set ``memrefine:records:{owner}`` indexes each owner's records by
``created_at``.  Owner refinement state lives in the hash
``memrefine:owner:{owner}`` and the set ``memrefine:owners`` lists every owner
that has ever stored a record.

Every write goes through a ``MULTI/EXEC`` pipeline.  Callers that need
several mutations (plus their audit entries) to commit together open one
with :meth:`MemoryStore.transaction` and pass it as ``tx=``.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from pydantic import ValidationError as PydanticValidationError
from redis.asyncio import Redis  # type: ignore[import-untyped]
from redis.asyncio.client import Pipeline  # type: ignore[import-untyped]

from memrefine.config import RefinementConfig
from memrefine.errors import NotFoundError
from memrefine.errors import ProtectedRecordError
from memrefine.errors import ValidationError
from memrefine.memory.schemas import MemoryCategory
from memrefine.memory.schemas import MemoryRecord
from memrefine.memory.schemas import OwnerRefinementState

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Lua scripts
# ---------------------------------------------------------------------------

# Advance last_refined_at only forwards.
_ADVANCE_SCRIPT = """
local current = redis.call("HGET", KEYS[1], "last_refined_at")
if (not current) or tonumber(current) < tonumber(ARGV[1]) then
    redis.call("HSET", KEYS[1], "last_refined_at", ARGV[1])
    return 1
end
return 0
"""

# Put back the pre-session value, unless someone else moved it meanwhile.
_RESTORE_SCRIPT = """
local current = redis.call("HGET", KEYS[1], "last_refined_at")
if current ~= ARGV[1] then
    return 0
end
if ARGV[2] == "" then
    redis.call("HDEL", KEYS[1], "last_refined_at")
else
    redis.call("HSET", KEYS[1], "last_refined_at", ARGV[2])
end
return 1
"""


def _decode(value: bytes | str) -> str:
    return value.decode() if isinstance(value, bytes) else value


def format_timestamp(value: float) -> str:
    """Canonical string form used for timestamps stored in Redis hashes."""
    return repr(float(value))


# ---------------------------------------------------------------------------
# MemoryStore
# ---------------------------------------------------------------------------


class MemoryStore:
    """Owner-scoped CRUD over ``MemoryRecord`` plus token-mass queries."""

    def __init__(
        self,
        redis: Redis,
        *,
        config: RefinementConfig | None = None,
        key_prefix: str = "memrefine",
    ) -> None:
        self._redis = redis
        self.config = config or RefinementConfig()
        self._prefix = key_prefix

    @property
    def redis(self) -> Redis:
        return self._redis

    @property
    def key_prefix(self) -> str:
        return self._prefix

    # -- keys --

    def _record_key(self, owner_id: str, record_id: str) -> str:
        return f"{self._prefix}:record:{owner_id}:{record_id}"

    def _index_key(self, owner_id: str) -> str:
        return f"{self._prefix}:records:{owner_id}"

    def _owner_key(self, owner_id: str) -> str:
        return f"{self._prefix}:owner:{owner_id}"

    @property
    def _owners_key(self) -> str:
        return f"{self._prefix}:owners"

    # -- transactions --

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[Pipeline]:
        """Yield a ``MULTI/EXEC`` pipeline that executes when the block exits.

        If the block raises, the queued commands are discarded.  Commands
        that fail inside ``EXEC`` do not undo the ones that succeeded.
        """
        async with self._redis.pipeline(transaction=True) as tx:
            yield tx
            await tx.execute()

    # -- validation --

    def _validate_content(self, content: str) -> str:
        if not isinstance(content, str) or not content.strip():
            raise ValidationError("content must not be empty")
        cleaned = content.strip()
        limit = self.config.max_content_length
        if len(cleaned) > limit:
            raise ValidationError(
                f"content is {len(cleaned)} characters; the maximum is {limit}"
            )
        return cleaned

    @staticmethod
    def _coerce_category(category: MemoryCategory | str) -> MemoryCategory:
        try:
            return MemoryCategory(category)
        except ValueError as exc:
            allowed = ", ".join(c.value for c in MemoryCategory)
            raise ValidationError(
                f"Invalid category {category!r}; expected one of: {allowed}"
            ) from exc

    def build_record(
        self,
        owner_id: str,
        content: str,
        category: MemoryCategory | str = MemoryCategory.core,
        *,
        created_at: float | None = None,
    ) -> MemoryRecord:
        """Validate inputs and return an unsaved record."""
        if not owner_id:
            raise ValidationError("owner_id must not be empty")
        fields: dict = {
            "owner_id": owner_id,
            "content": self._validate_content(content),
            "category": self._coerce_category(category),
        }
        if created_at is not None:
            fields["created_at"] = created_at
        try:
            return MemoryRecord(**fields)
        except PydanticValidationError as exc:
            raise ValidationError(str(exc)) from exc

    # -- staging --

    def _stage_save(self, tx: Pipeline, record: MemoryRecord) -> None:
        tx.set(self._record_key(record.owner_id, record.id), record.model_dump_json())
        tx.zadd(self._index_key(record.owner_id), {record.id: record.created_at})
        tx.sadd(self._owners_key, record.owner_id)

    def _stage_remove(self, tx: Pipeline, owner_id: str, record_id: str) -> None:
        tx.delete(self._record_key(owner_id, record_id))
        tx.zrem(self._index_key(owner_id), record_id)

    # -- write --

    async def create(
        self,
        owner_id: str,
        content: str,
        category: MemoryCategory | str = MemoryCategory.core,
        *,
        created_at: float | None = None,
        tx: Pipeline | None = None,
    ) -> MemoryRecord:
        """Validate and persist a new record."""
        record = self.build_record(owner_id, content, category, created_at=created_at)
        await self.restore(record, tx=tx)
        return record

    async def restore(self, record: MemoryRecord, *, tx: Pipeline | None = None) -> None:
        """Write *record* exactly as given, keeping its id.

        Used for creation and for resurrecting records from audit snapshots;
        writing the same snapshot twice is harmless.
        """
        if tx is not None:
            self._stage_save(tx, record)
            return
        async with self.transaction() as own_tx:
            self._stage_save(own_tx, record)

    async def update_content(
        self,
        record: MemoryRecord,
        new_content: str,
        *,
        tx: Pipeline | None = None,
    ) -> MemoryRecord:
        """Replace the content of *record* and return the updated copy."""
        updated = record.model_copy(
            update={"content": self._validate_content(new_content)}
        )
        await self.restore(updated, tx=tx)
        return updated

    async def set_protected(
        self,
        record: MemoryRecord,
        protected: bool,
        *,
        tx: Pipeline | None = None,
    ) -> MemoryRecord:
        updated = record.model_copy(update={"protected": protected})
        await self.restore(updated, tx=tx)
        return updated

    async def destroy(
        self,
        record: MemoryRecord,
        *,
        tx: Pipeline | None = None,
        override_protection: bool = False,
    ) -> None:
        """Remove *record* from the store.

        The protection flag is checked against the stored copy as well as the
        given one.  Only rollback passes ``override_protection`` to remove a
        record the session itself created.
        """
        stored = await self.find(record.owner_id, record.id)
        if not override_protection:
            if stored is None:
                raise NotFoundError(
                    f"Memory #{record.id} not found", ids=[record.id]
                )
            if stored.protected or record.protected:
                raise ProtectedRecordError([record.id])

        if tx is not None:
            self._stage_remove(tx, record.owner_id, record.id)
            return
        async with self.transaction() as own_tx:
            self._stage_remove(own_tx, record.owner_id, record.id)

    # -- read --

    async def find(self, owner_id: str, record_id: str) -> MemoryRecord | None:
        """Return the record, or ``None`` if it does not exist for *owner_id*."""
        raw = await self._redis.get(self._record_key(owner_id, record_id))
        if raw is None:
            return None
        return MemoryRecord.model_validate_json(raw)

    async def get(self, owner_id: str, record_id: str) -> MemoryRecord:
        record = await self.find(owner_id, record_id)
        if record is None:
            raise NotFoundError(f"Memory #{record_id} not found", ids=[record_id])
        return record

    async def find_many(
        self, owner_id: str, record_ids: list[str]
    ) -> tuple[list[MemoryRecord], list[str]]:
        """Batch-fetch records, returning ``(found, missing_ids)`` in input order."""
        if not record_ids:
            return [], []
        keys = [self._record_key(owner_id, rid) for rid in record_ids]
        raw_results = await self._redis.mget(keys)
        found: list[MemoryRecord] = []
        missing: list[str] = []
        for rid, raw in zip(record_ids, raw_results):
            if raw is None:
                missing.append(rid)
            else:
                found.append(MemoryRecord.model_validate_json(raw))
        return found, missing

    async def list_records(
        self,
        owner_id: str,
        *,
        category: MemoryCategory | None = None,
        include_expired: bool = False,
    ) -> list[MemoryRecord]:
        """Return the owner's records ordered by ``created_at`` (oldest first).

        Expired journal records are hidden unless *include_expired* is set.
        """
        ids = await self._redis.zrange(self._index_key(owner_id), 0, -1)
        if not ids:
            return []
        decoded_ids = [_decode(raw_id) for raw_id in ids]
        records, missing = await self.find_many(owner_id, decoded_ids)
        if missing:
            logger.warning(
                "Pruning %d dangling index entries for owner %s",
                len(missing),
                owner_id,
            )
            await self._redis.zrem(self._index_key(owner_id), *missing)

        window = self.config.journal_window_seconds
        results: list[MemoryRecord] = []
        for record in records:
            if category is not None and record.category != category:
                continue
            if not include_expired and record.is_expired(window_seconds=window):
                continue
            results.append(record)
        return results

    async def list_core(self, owner_id: str) -> list[MemoryRecord]:
        return await self.list_records(owner_id, category=MemoryCategory.core)

    async def search_core(self, owner_id: str, query: str) -> list[MemoryRecord]:
        """Case-insensitive substring search over the owner's core records."""
        needle = query.casefold()
        return [
            record
            for record in await self.list_core(owner_id)
            if needle in record.content.casefold()
        ]

    async def sum_core_token_mass(self, owner_id: str) -> int:
        """Return ``sum(ceil(len(content) / 4))`` over the owner's core records."""
        return sum(record.token_estimate for record in await self.list_core(owner_id))

    # -- owners --

    async def list_owners(self) -> list[str]:
        members = await self._redis.smembers(self._owners_key)
        return sorted(_decode(member) for member in members)

    async def get_owner_state(self, owner_id: str) -> OwnerRefinementState:
        raw = await self._redis.hgetall(self._owner_key(owner_id))
        fields = {_decode(k): _decode(v) for k, v in raw.items()}
        threshold = fields.get("refinement_threshold")
        last_refined = fields.get("last_refined_at")
        return OwnerRefinementState(
            owner_id=owner_id,
            refinement_threshold=(
                float(threshold)
                if threshold is not None
                else self.config.default_threshold
            ),
            last_refined_at=float(last_refined) if last_refined else None,
            refinement_prompt=fields.get("refinement_prompt") or None,
        )

    async def set_refinement_threshold(
        self, owner_id: str, threshold: float
    ) -> OwnerRefinementState:
        try:
            value = float(threshold)
        except (TypeError, ValueError) as exc:
            raise ValidationError("refinement_threshold must be a number") from exc
        if value <= 0:
            raise ValidationError("refinement_threshold must be greater than zero")
        await self._redis.hset(
            self._owner_key(owner_id), "refinement_threshold", repr(value)
        )
        return await self.get_owner_state(owner_id)

    async def set_refinement_prompt(
        self, owner_id: str, prompt: str | None
    ) -> OwnerRefinementState:
        """Store the owner's refinement guidance; ``None`` or blank restores the default."""
        key = self._owner_key(owner_id)
        if prompt is None or (isinstance(prompt, str) and not prompt.strip()):
            await self._redis.hdel(key, "refinement_prompt")
            return await self.get_owner_state(owner_id)
        value = self._validate_content(prompt)
        await self._redis.hset(key, "refinement_prompt", value)
        return await self.get_owner_state(owner_id)

    async def advance_last_refined(
        self, owner_id: str, at: float, *, tx: Pipeline | None = None
    ) -> None:
        """Move ``last_refined_at`` forward to *at*; never moves it back."""
        args = (_ADVANCE_SCRIPT, 1, self._owner_key(owner_id), format_timestamp(at))
        if tx is not None:
            tx.eval(*args)
            return
        await self._redis.eval(*args)

    def stage_restore_last_refined(
        self,
        tx: Pipeline,
        owner_id: str,
        *,
        expected: float,
        previous: float | None,
    ) -> None:
        """Queue a compare-and-set putting ``last_refined_at`` back to *previous*.

        Applies only while the stored value still equals *expected*.
        """
        tx.eval(
            _RESTORE_SCRIPT,
            1,
            self._owner_key(owner_id),
            format_timestamp(expected),
            format_timestamp(previous) if previous is not None else "",
        )

    async def clear(self) -> None:
        """Remove every key under this store's prefix (test helper)."""
        batch: list = []
        async for key in self._redis.scan_iter(match=f"{self._prefix}:*"):
            batch.append(key)
            if len(batch) >= 100:
                await self._redis.delete(*batch)
                batch.clear()
        if batch:
            await self._redis.delete(*batch)

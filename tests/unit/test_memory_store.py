"""Unit tests for the Redis-backed memory store."""

from __future__ import annotations

import time

import pytest

from memrefine.errors import NotFoundError
from memrefine.errors import ProtectedRecordError
from memrefine.errors import ValidationError
from memrefine.memory import DEFAULT_REFINEMENT_PROMPT
from memrefine.memory import MemoryCategory

OWNER = "agent-1"
EIGHT_DAYS = 8 * 24 * 3600


class TestCreate:
    async def test_create_and_get(self, store):
        record = await store.create(OWNER, "  Likes jazz  ")
        fetched = await store.get(OWNER, record.id)
        assert fetched == record
        assert fetched.content == "Likes jazz"
        assert fetched.category == MemoryCategory.core

    async def test_create_registers_owner(self, store):
        await store.create("agent-b", "x")
        await store.create("agent-a", "y")
        assert await store.list_owners() == ["agent-a", "agent-b"]

    async def test_rejects_empty_content(self, store):
        with pytest.raises(ValidationError, match="must not be empty"):
            await store.create(OWNER, "   ")

    async def test_rejects_too_long_content(self, store):
        with pytest.raises(ValidationError, match="maximum is 10000"):
            await store.create(OWNER, "x" * 10_001)

    async def test_accepts_content_at_limit(self, store):
        record = await store.create(OWNER, "x" * 10_000)
        assert record.token_estimate == 2500

    async def test_rejects_unknown_category(self, store):
        with pytest.raises(ValidationError, match="Invalid category"):
            await store.create(OWNER, "x", "scratch")

    async def test_rejects_empty_owner(self, store):
        with pytest.raises(ValidationError):
            await store.create("", "x")


class TestRead:
    async def test_get_missing_raises(self, store):
        with pytest.raises(NotFoundError) as exc_info:
            await store.get(OWNER, "mem_missing")
        assert exc_info.value.ids == ["mem_missing"]

    async def test_records_are_owner_scoped(self, store):
        record = await store.create(OWNER, "private")
        assert await store.find("agent-2", record.id) is None

    async def test_find_many_reports_missing(self, store):
        a = await store.create(OWNER, "a")
        b = await store.create(OWNER, "b")
        found, missing = await store.find_many(OWNER, [a.id, "mem_nope", b.id])
        assert [r.id for r in found] == [a.id, b.id]
        assert missing == ["mem_nope"]

    async def test_list_records_ordered_by_created_at(self, store):
        late = await store.create(OWNER, "late", created_at=2000.0)
        early = await store.create(OWNER, "early", created_at=1000.0)
        records = await store.list_records(OWNER)
        assert [r.id for r in records] == [early.id, late.id]

    async def test_expired_journal_is_hidden(self, store):
        old = await store.create(
            OWNER, "old note", "journal", created_at=time.time() - EIGHT_DAYS
        )
        fresh = await store.create(OWNER, "fresh note", "journal")
        visible = await store.list_records(OWNER)
        assert [r.id for r in visible] == [fresh.id]
        everything = await store.list_records(OWNER, include_expired=True)
        assert {r.id for r in everything} == {old.id, fresh.id}

    async def test_dangling_index_entries_are_pruned(self, store, redis_client):
        record = await store.create(OWNER, "will vanish")
        await redis_client.delete(f"{store.key_prefix}:record:{OWNER}:{record.id}")
        assert await store.list_records(OWNER) == []
        assert await redis_client.zcard(f"{store.key_prefix}:records:{OWNER}") == 0

    async def test_search_core_is_case_insensitive_and_core_only(self, store):
        hit = await store.create(OWNER, "Enjoys JAZZ concerts")
        await store.create(OWNER, "jazz night recap", "journal")
        await store.create(OWNER, "Plays chess")
        results = await store.search_core(OWNER, "jazz")
        assert [r.id for r in results] == [hit.id]


class TestTokenMass:
    async def test_sums_core_records_only(self, store):
        await store.create(OWNER, "x" * 400)
        await store.create(OWNER, "x" * 5)
        await store.create(OWNER, "x" * 4000, "journal")
        assert await store.sum_core_token_mass(OWNER) == 102

    async def test_empty_owner_has_zero_mass(self, store):
        assert await store.sum_core_token_mass("nobody") == 0


class TestDestroy:
    async def test_destroy_removes_record(self, store):
        record = await store.create(OWNER, "gone soon")
        await store.destroy(record)
        assert await store.find(OWNER, record.id) is None
        assert await store.list_records(OWNER) == []

    async def test_destroy_protected_raises(self, store):
        record = await store.create(OWNER, "keep")
        protected = await store.set_protected(record, True)
        with pytest.raises(ProtectedRecordError) as exc_info:
            await store.destroy(protected)
        assert exc_info.value.ids == [record.id]
        assert await store.find(OWNER, record.id) is not None

    async def test_destroy_checks_stored_protection(self, store):
        record = await store.create(OWNER, "keep")
        await store.set_protected(record, True)
        # Caller holds a stale unprotected copy.
        with pytest.raises(ProtectedRecordError):
            await store.destroy(record)

    async def test_destroy_missing_raises(self, store):
        record = await store.create(OWNER, "x")
        await store.destroy(record)
        with pytest.raises(NotFoundError):
            await store.destroy(record)

    async def test_override_protection(self, store):
        record = await store.set_protected(await store.create(OWNER, "x"), True)
        await store.destroy(record, override_protection=True)
        assert await store.find(OWNER, record.id) is None


class TestUpdate:
    async def test_update_content_keeps_identity(self, store):
        record = await store.create(OWNER, "old", created_at=1234.0)
        updated = await store.update_content(record, "new")
        fetched = await store.get(OWNER, record.id)
        assert fetched == updated
        assert fetched.content == "new"
        assert fetched.created_at == 1234.0

    async def test_update_validates_content(self, store):
        record = await store.create(OWNER, "old")
        with pytest.raises(ValidationError):
            await store.update_content(record, "")


class TestTransaction:
    async def test_failed_block_discards_queued_writes(self, store):
        with pytest.raises(RuntimeError):
            async with store.transaction() as tx:
                await store.create(OWNER, "queued", tx=tx)
                raise RuntimeError("boom")
        assert await store.list_records(OWNER) == []

    async def test_restore_resurrects_with_original_id(self, store):
        record = await store.create(OWNER, "phoenix")
        await store.destroy(record)
        await store.restore(record)
        assert await store.get(OWNER, record.id) == record


class TestOwnerState:
    async def test_defaults(self, store):
        state = await store.get_owner_state(OWNER)
        assert state.refinement_threshold == 1.0
        assert state.last_refined_at is None

    async def test_set_threshold(self, store):
        state = await store.set_refinement_threshold(OWNER, 0.8)
        assert state.refinement_threshold == 0.8

    async def test_refinement_prompt_defaults_and_resets(self, store):
        state = await store.get_owner_state(OWNER)
        assert state.refinement_prompt is None
        assert state.effective_refinement_prompt == DEFAULT_REFINEMENT_PROMPT

        state = await store.set_refinement_prompt(OWNER, "  Keep every birthday.  ")
        assert state.refinement_prompt == "Keep every birthday."
        assert state.effective_refinement_prompt == "Keep every birthday."

        state = await store.set_refinement_prompt(OWNER, "   ")
        assert state.refinement_prompt is None
        assert state.effective_refinement_prompt == DEFAULT_REFINEMENT_PROMPT

    async def test_rejects_oversized_refinement_prompt(self, store):
        with pytest.raises(ValidationError):
            await store.set_refinement_prompt(OWNER, "x" * 10_001)

    @pytest.mark.parametrize("bad", [0, -1, "abc"])
    async def test_rejects_invalid_threshold(self, store, bad):
        with pytest.raises(ValidationError):
            await store.set_refinement_threshold(OWNER, bad)

    async def test_last_refined_only_moves_forward(self, store):
        await store.advance_last_refined(OWNER, 2000.0)
        await store.advance_last_refined(OWNER, 1000.0)
        assert (await store.get_owner_state(OWNER)).last_refined_at == 2000.0
        await store.advance_last_refined(OWNER, 3000.5)
        assert (await store.get_owner_state(OWNER)).last_refined_at == 3000.5

    async def test_restore_last_refined_compare_and_set(self, store):
        await store.advance_last_refined(OWNER, 1000.0)
        await store.advance_last_refined(OWNER, 2000.0)
        async with store.transaction() as tx:
            store.stage_restore_last_refined(tx, OWNER, expected=2000.0, previous=1000.0)
        assert (await store.get_owner_state(OWNER)).last_refined_at == 1000.0

    async def test_restore_last_refined_skips_when_moved(self, store):
        await store.advance_last_refined(OWNER, 3000.0)
        async with store.transaction() as tx:
            store.stage_restore_last_refined(tx, OWNER, expected=2000.0, previous=None)
        assert (await store.get_owner_state(OWNER)).last_refined_at == 3000.0

    async def test_restore_last_refined_to_never(self, store):
        await store.advance_last_refined(OWNER, 2000.0)
        async with store.transaction() as tx:
            store.stage_restore_last_refined(tx, OWNER, expected=2000.0, previous=None)
        assert (await store.get_owner_state(OWNER)).last_refined_at is None


class TestClear:
    async def test_clear_removes_prefixed_keys_only(self, store, redis_client):
        await store.create(OWNER, "x")
        await redis_client.set("unrelated", "1")
        await store.clear()
        assert await store.list_owners() == []
        assert await redis_client.get("unrelated") == b"1"

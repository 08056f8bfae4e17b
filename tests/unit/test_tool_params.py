"""Unit tests for refinement tool parameter handling (no store access)."""

from __future__ import annotations

import pytest

from memrefine.engine import ACTIONS
from memrefine.engine import parse_ids
from memrefine.engine import RefinementTool
from memrefine.engine.tool import TOOL_PARAMETERS


class TestParseIds:
    def test_comma_separated_string(self):
        assert parse_ids("mem_1, mem_2,mem_3") == ["mem_1", "mem_2", "mem_3"]

    def test_list_input(self):
        assert parse_ids(["mem_1", "mem_2"]) == ["mem_1", "mem_2"]

    def test_hash_prefix_and_blanks_are_stripped(self):
        assert parse_ids("#mem_1, ,# mem_2,") == ["mem_1", "mem_2"]

    def test_duplicates_are_dropped_keeping_order(self):
        assert parse_ids("mem_2,mem_1,mem_2") == ["mem_2", "mem_1"]

    def test_none(self):
        assert parse_ids(None) == []

    @pytest.mark.parametrize(
        ("value", "expected"),
        [(5, ["5"]), (2.5, ["2.5"]), (True, ["True"]), ([7, "mem_1"], ["7", "mem_1"])],
    )
    def test_non_string_values(self, value, expected):
        assert parse_ids(value) == expected


class TestToolSchema:
    def test_action_enum_matches_dispatcher(self):
        assert TOOL_PARAMETERS["properties"]["action"]["enum"] == list(ACTIONS)
        assert TOOL_PARAMETERS["required"] == ["action"]


class TestParameterValidation:
    """Validation failures are answered before the store is touched."""

    @pytest.fixture()
    def tool(self):
        return RefinementTool(None, None, owner_id="agent-1", session_id="s-1")

    async def test_invalid_action(self, tool):
        result = await tool.execute("explode", {})
        assert result["type"] == "error"
        assert "Invalid action" in result["error"]
        assert result["allowed_actions"] == list(ACTIONS)

    @pytest.mark.parametrize(
        ("action", "params", "missing"),
        [
            ("search", {}, "query"),
            ("search", {"query": "   "}, "query"),
            ("consolidate", {"content": "merged"}, "ids"),
            ("consolidate", {"ids": "mem_1,mem_2"}, "content"),
            ("update", {"content": "new"}, "id"),
            ("update", {"id": "mem_1"}, "content"),
            ("delete", {}, "id"),
            ("delete", {"ids": []}, "id"),
            ("protect", {}, "id"),
            ("complete", {}, "summary"),
        ],
    )
    async def test_missing_required_param(self, tool, action, params, missing):
        result = await tool.execute(action, params)
        assert result["type"] == "error"
        assert result["missing"] == missing
        assert result["error"] == f"{missing} is required for {action}"

    async def test_fresh_tool_is_not_completed(self, tool):
        assert tool.completed is False
        assert tool.stats.as_dict() == {
            "consolidated": 0,
            "created": 0,
            "updated": 0,
            "deleted": 0,
            "protected": 0,
        }

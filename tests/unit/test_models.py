"""Unit tests for memory models and shared validators."""

from datetime import UTC, datetime

import pytest
from pydantic import ValidationError

from associative_memory.models.memory import MemoryAssociation, MemoryEntry
from associative_memory.models.mcp_inputs import SearchMemoryParams, StoreEpisodeParams, StoreMemoryParams
from associative_memory.models.validators import clamp_unit, coerce_timestamp, partition_key, validate_partition


class TestValidators:
    @pytest.mark.parametrize("raw,expected", [(1.5, 1.0), (-0.2, 0.0), ("0.3", 0.3), ("junk", 0.0), (float("nan"), 0.0)])
    def test_clamp_unit(self, raw, expected):
        assert clamp_unit(raw) == pytest.approx(expected)

    def test_coerce_timestamp_formats(self):
        expected = datetime(2024, 6, 10, 6, 13, 20, tzinfo=UTC).timestamp()
        assert coerce_timestamp(expected) == expected
        assert coerce_timestamp("2024-06-10T06:13:20Z") == pytest.approx(expected)
        assert coerce_timestamp(datetime(2024, 6, 10, 6, 13, 20, tzinfo=UTC)) == pytest.approx(expected)

    @pytest.mark.parametrize("raw", ["not a date", "", None, -5, True])
    def test_malformed_timestamps_become_none(self, raw):
        assert coerce_timestamp(raw) is None

    def test_partition(self):
        assert partition_key("personal", "alice") == "personal:alice"
        assert partition_key("global", None) == "global:"
        assert validate_partition("global", "ignored") is None
        with pytest.raises(ValueError):
            validate_partition("personal", None)
        with pytest.raises(ValueError):
            validate_partition("planet", "x")


class TestMemoryEntry:
    def test_malformed_stored_fields_degrade(self):
        entry = MemoryEntry.from_payload(
            {
                "id": "e1",
                "scope": "personal",
                "scope_owner_id": "alice",
                "content": "x",
                "importance": "oops",
                "last_accessed_at": "yesterday-ish",
                "partition": "personal:alice",
                "legacy_field": 1,
            }
        )
        assert entry.importance == 0.0
        assert entry.last_accessed_at is None

    def test_payload_carries_partition(self):
        entry = MemoryEntry(scope="team", scope_owner_id="core", content="x")
        assert entry.to_payload()["partition"] == "team:core"


class TestMemoryAssociation:
    def test_canonical_order(self):
        edge = MemoryAssociation(source_id="b", target_id="a", weight=0.5)
        assert (edge.source_id, edge.target_id) == ("a", "b")
        assert edge.other("a") == "b"
        assert edge.touches("b")

    def test_self_edge_rejected(self):
        with pytest.raises(ValidationError):
            MemoryAssociation(source_id="a", target_id="a", weight=0.5)


class TestToolInputs:
    def test_store_requires_owner_for_personal(self):
        with pytest.raises(ValidationError):
            StoreMemoryParams(content="x", scope="personal")

    def test_store_rejects_blank_content(self):
        with pytest.raises(ValidationError):
            StoreMemoryParams(content="   ", scope="global")

    def test_store_clamps_importance(self):
        assert StoreMemoryParams(content="x", scope="global", importance=3).importance == 1.0

    def test_search_all_mode_needs_no_partition(self):
        params = SearchMemoryParams(query="q", mode="all", user_id="alice")
        assert params.owner_id is None

    def test_search_limit_bounds(self):
        with pytest.raises(ValidationError):
            SearchMemoryParams(query="q", scope="global", limit=0)

    def test_episode_requires_owner_and_content(self):
        with pytest.raises(ValidationError):
            StoreEpisodeParams(session_id="s1", summary="x")
        with pytest.raises(ValidationError):
            StoreEpisodeParams(session_id="s1", user_id="alice")

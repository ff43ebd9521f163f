"""
Tests for consolidation: triggers, plan validation and parsing, applying plans,
pruning, the consolidation runner and question answering.
"""

import json

import pytest
from pydantic import ValidationError

from conftest import backdate
from projmem.consolidation import (
    ConsolidationPlan,
    InvalidPlanError,
    ask,
    parse_plan_response,
    run_consolidation,
    validate_plan,
)
from projmem.types import ARCHIVED_TAG, SUPERSEDED_TAG, Memory, MemoryType, utc_now

DECISIONS = [
    "Chose SQLite over Postgres for local dev",
    "Chose Postgres for production",
    "Invoices are immutable once sent",
    "Feature flags live in LaunchDarkly",
    "API versioning through URL prefix",
]


def _fill(store, n, type=MemoryType.PATTERN):
    """Append n distinct active records without going through dedup."""
    now = utc_now()
    for i in range(n):
        store.state.memories.append(Memory(
            id=f"mem_fill_{i}", type=type, content=f"Fill record {i}",
            created=now, updated=now,
        ))


@pytest.fixture
def decisions(store):
    return [store.add_memory("decision", text) for text in DECISIONS]


# ---------------------------------------------------------------------------
# Triggers
# ---------------------------------------------------------------------------

class TestNeedsConsolidation:

    def test_active_count_over_limit(self, store):
        _fill(store, 85)
        store.state.extraction_count = 3
        assert store.needs_consolidation() is True

    def test_active_count_at_limit(self, store):
        _fill(store, 80)
        assert store.needs_consolidation() is False

    def test_inactive_records_not_counted(self, store):
        _fill(store, 85)
        for m in store.state.memories[:10]:
            m.add_tag(ARCHIVED_TAG)
        assert store.needs_consolidation() is False

    def test_every_tenth_extraction(self, store):
        store.state.extraction_count = 10
        assert store.needs_consolidation() is True
        store.state.extraction_count = 20
        assert store.needs_consolidation() is True
        store.state.extraction_count = 11
        assert store.needs_consolidation() is False

    def test_zero_extractions(self, store):
        assert store.needs_consolidation() is False


class TestMemoriesForConsolidation:

    def test_grouped_by_type_active_only(self, store, decisions):
        store.add_memory("gotcha", "Cron runs in UTC")
        decisions[0].add_tag(ARCHIVED_TAG)
        grouped = store.get_memories_for_consolidation()
        assert set(grouped) == {"decision", "gotcha"}
        assert len(grouped["decision"]) == 4
        assert grouped["gotcha"][0] == {"id": store.get_memories(type="gotcha")[0].id,
                                        "content": "Cron runs in UTC"}


# ---------------------------------------------------------------------------
# Plan validation and parsing
# ---------------------------------------------------------------------------

class TestValidatePlan:

    def test_valid_partition(self):
        plan = validate_plan(
            {"keep": ["a"], "merge": [{"content": "ab", "sources": ["b", "c"]}], "drop": ["d"]},
            ["a", "b", "c", "d"],
        )
        assert isinstance(plan, ConsolidationPlan)
        assert plan.merge[0].tags == []

    def test_missing_id(self):
        with pytest.raises(InvalidPlanError) as exc_info:
            validate_plan({"keep": ["a"], "merge": [], "drop": []}, ["a", "b"])
        assert exc_info.value.missing == ["b"]

    def test_duplicated_id(self):
        with pytest.raises(InvalidPlanError) as exc_info:
            validate_plan({"keep": ["a"], "merge": [], "drop": ["a"]}, ["a"])
        assert exc_info.value.duplicated == ["a"]

    def test_unknown_id(self):
        with pytest.raises(InvalidPlanError) as exc_info:
            validate_plan({"keep": ["a", "zzz"], "merge": [], "drop": []}, ["a"])
        assert exc_info.value.unknown == ["zzz"]
        assert "unknown" in str(exc_info.value)

    def test_merge_without_sources_is_malformed(self):
        with pytest.raises(ValidationError):
            validate_plan({"keep": [], "merge": [{"content": "x", "sources": []}], "drop": []}, [])

    def test_invalid_plan_is_value_error(self):
        assert issubclass(InvalidPlanError, ValueError)


class TestParsePlanResponse:

    PLAN = {"keep": ["a"], "merge": [], "drop": ["b"]}

    def test_bare_json(self):
        assert parse_plan_response(json.dumps(self.PLAN)).drop == ["b"]

    def test_code_fence(self):
        text = "```json\n" + json.dumps(self.PLAN) + "\n```"
        assert parse_plan_response(text).keep == ["a"]

    def test_prose_around_json(self):
        text = "Here is the plan:\n" + json.dumps(self.PLAN) + "\nLet me know."
        assert parse_plan_response(text) is not None

    def test_missing_keys(self):
        assert parse_plan_response('{"keep": ["a"], "drop": []}') is None

    def test_not_json(self):
        assert parse_plan_response("{keep: a}") is None
        assert parse_plan_response("no plan today") is None

    def test_empty(self):
        assert parse_plan_response(None) is None
        assert parse_plan_response("") is None


# ---------------------------------------------------------------------------
# Applying plans
# ---------------------------------------------------------------------------

class TestApplyConsolidation:

    def test_drop_archives(self, store, decisions):
        outcome = store.apply_consolidation({"keep": [], "merge": [], "drop": [decisions[2].id]})
        assert ARCHIVED_TAG in decisions[2].tags
        assert outcome.archived == [decisions[2].id]
        assert decisions[2] not in store.get_active_memories()

    def test_merge_supersedes_sources_and_creates_record(self, store, decisions):
        a, b = decisions[0], decisions[1]
        outcome = store.apply_consolidation({
            "keep": [],
            "merge": [{"content": "SQLite locally, Postgres in production", "tags": ["db"],
                       "sources": [a.id, b.id]}],
            "drop": [],
        })
        assert SUPERSEDED_TAG in a.tags and SUPERSEDED_TAG in b.tags
        (merged,) = outcome.created
        assert merged.type is MemoryType.DECISION
        assert merged.merged_from == [a.id, b.id]
        assert merged.tags == ["db"]
        assert merged.confidence == 1.0
        assert merged.access_count == 0
        assert merged in store.get_active_memories()

    def test_merge_with_vanished_first_source_falls_back_to_context(self, store, decisions):
        outcome = store.apply_consolidation({
            "keep": [], "merge": [{"content": "Merged", "sources": ["mem_0_gone00", decisions[0].id]}], "drop": [],
        })
        assert outcome.created[0].type is MemoryType.CONTEXT

    def test_stamps_last_consolidation(self, store):
        assert store.state.last_consolidation is None
        store.apply_consolidation(ConsolidationPlan())
        assert store.state.last_consolidation is not None

    def test_prunes_archived_after_two_weeks(self, store, decisions):
        old, recent = decisions[0], decisions[1]
        old.add_tag(ARCHIVED_TAG)
        recent.add_tag(ARCHIVED_TAG)
        backdate(old, 15)
        backdate(recent, 13)

        outcome = store.apply_consolidation(ConsolidationPlan())

        assert outcome.pruned == [old.id]
        assert store.get_memory(old.id) is None
        assert store.get_memory(recent.id) is recent

    def test_old_superseded_records_are_not_pruned(self, store, decisions):
        decisions[0].add_tag(SUPERSEDED_TAG)
        backdate(decisions[0], 60)
        store.apply_consolidation(ConsolidationPlan())
        assert store.get_memory(decisions[0].id) is not None


# ---------------------------------------------------------------------------
# Runner
# ---------------------------------------------------------------------------

class TestRunConsolidation:

    def _plan(self, decisions):
        ids = [m.id for m in decisions]
        return json.dumps({
            "keep": ids[2:4],
            "merge": [{"content": "SQLite locally, Postgres in production", "tags": ["db"],
                       "sources": ids[0:2]}],
            "drop": [ids[4]],
        })

    def test_applies_valid_plan(self, store, decisions, scripted):
        provider = scripted(self._plan(decisions))
        report = run_consolidation(store, provider, min_group_size=5)

        assert set(report.applied) == {"decision"}
        assert report.skipped == {}
        assert report.changed == 2
        assert provider.calls[0]["max_tokens"] == 2048
        assert decisions[0].id in provider.calls[0]["user"]
        assert store.counts().active == 3

    def test_small_groups_are_not_sent(self, store, decisions, scripted):
        store.add_memory("gotcha", "Cron runs in UTC")
        provider = scripted(self._plan(decisions))
        run_consolidation(store, provider, min_group_size=5)
        assert len(provider.calls) == 1

    def test_invalid_plan_changes_nothing(self, store, decisions, scripted):
        provider = scripted(json.dumps({"keep": [decisions[0].id], "merge": [], "drop": []}))
        report = run_consolidation(store, provider, min_group_size=5)
        assert "missing" in report.skipped["decision"]
        assert report.changed == 0
        assert store.counts().active == 5
        assert store.state.last_consolidation is None

    def test_provider_error_skips_group(self, store, decisions, scripted):
        provider = scripted(RuntimeError("rate limited"))
        report = run_consolidation(store, provider, min_group_size=5)
        assert "rate limited" in report.skipped["decision"]
        assert store.counts().active == 5

    def test_no_response_skips_group(self, store, decisions, scripted):
        report = run_consolidation(store, scripted(), min_group_size=3)
        assert report.skipped == {"decision": "no usable plan in response"}


# ---------------------------------------------------------------------------
# Ask
# ---------------------------------------------------------------------------

class TestAsk:

    def test_no_matches_skips_provider(self, store, decisions, scripted):
        provider = scripted("unused")
        answer = ask(store, provider, "kubernetes helm charts")
        assert answer.memories == []
        assert not answer.synthesized
        assert provider.calls == []

    def test_synthesized_answer(self, store, decisions, scripted):
        provider = scripted("  SQLite locally, Postgres in production.  ")
        answer = ask(store, provider, "which database postgres?")
        assert answer.synthesized
        assert answer.text == "SQLite locally, Postgres in production."
        assert provider.calls[0]["max_tokens"] == 1024
        assert "Chose Postgres for production" in provider.calls[0]["user"]

    def test_fallback_when_no_answer(self, store, scripted):
        now = utc_now()
        for i in range(12):
            store.state.memories.append(Memory(
                id=f"mem_cache_{i}", type=MemoryType.PATTERN, content=f"Cache rule {i}",
                created=now, updated=now,
            ))
        answer = ask(store, scripted(), "cache")
        assert not answer.synthesized
        assert len(answer.memories) == 10

    def test_fallback_when_provider_fails(self, store, decisions, scripted):
        answer = ask(store, scripted(ConnectionError("offline")), "postgres")
        assert answer.text is None
        assert len(answer.memories) == 2

"""
Consolidation: merge overlapping memories and archive outdated ones.

The store proposes groups of active memories (one group per type). A
generation provider answers each group with a plan partitioning its ids into
keep / merge / drop. Plans are validated here before the store applies them,
so the store never sees a partial or inconsistent plan.
"""

import json
import logging
from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping, Optional, Union

from pydantic import BaseModel, Field, ValidationError

from .protocol import StoreProtocol
from .providers.base import (
    GenerationProvider,
    build_ask_prompt,
    build_consolidation_prompt,
    CONSOLIDATION_SYSTEM_PROMPT,
    ASK_SYSTEM_PROMPT,
)
from .types import Memory

logger = logging.getLogger(__name__)

ASK_SEARCH_LIMIT = 30
ASK_FALLBACK_LIMIT = 10


class MergeEntry(BaseModel):
    """One synthesized memory replacing its sources."""
    content: str = Field(min_length=1)
    tags: list[str] = Field(default_factory=list)
    sources: list[str] = Field(min_length=1)


class ConsolidationPlan(BaseModel):
    """Partition of one proposed group's ids."""
    keep: list[str] = Field(default_factory=list)
    merge: list[MergeEntry] = Field(default_factory=list)
    drop: list[str] = Field(default_factory=list)

    def referenced_ids(self) -> list[str]:
        """Every id the plan mentions, with repeats."""
        ids = list(self.keep) + list(self.drop)
        for m in self.merge:
            ids.extend(m.sources)
        return ids


class InvalidPlanError(ValueError):
    """A plan does not partition its proposed group."""

    def __init__(self, missing: list[str], duplicated: list[str], unknown: list[str]):
        self.missing = missing
        self.duplicated = duplicated
        self.unknown = unknown
        parts = []
        if missing:
            parts.append(f"missing {missing}")
        if duplicated:
            parts.append(f"duplicated {duplicated}")
        if unknown:
            parts.append(f"unknown {unknown}")
        super().__init__("Invalid consolidation plan: " + "; ".join(parts))


@dataclass
class ConsolidationOutcome:
    """What one apply_consolidation call did."""
    archived: list[str] = field(default_factory=list)
    superseded: list[str] = field(default_factory=list)
    created: list[Memory] = field(default_factory=list)
    pruned: list[str] = field(default_factory=list)


@dataclass
class ConsolidationReport:
    """Summary of a consolidation run across groups."""
    applied: dict[str, ConsolidationOutcome] = field(default_factory=dict)
    skipped: dict[str, str] = field(default_factory=dict)

    @property
    def changed(self) -> int:
        """Merged-plus-archived count, as reported to users."""
        return sum(len(o.created) + len(o.archived) for o in self.applied.values())


def coerce_plan(plan: Union[ConsolidationPlan, Mapping[str, Any]]) -> ConsolidationPlan:
    """Accept a plan model or a raw mapping (raises pydantic ValidationError)."""
    if isinstance(plan, ConsolidationPlan):
        return plan
    return ConsolidationPlan.model_validate(plan)


def validate_plan(
    plan: Union[ConsolidationPlan, Mapping[str, Any]],
    proposed_ids: Iterable[str],
) -> ConsolidationPlan:
    """
    Check that a plan places every proposed id exactly once.

    Args:
        plan: Plan as returned by the generation provider
        proposed_ids: Ids of the group that was proposed

    Returns:
        The plan as a ConsolidationPlan

    Raises:
        InvalidPlanError: If an id is missing, repeated, or was never proposed
        pydantic.ValidationError: If the plan doesn't have the expected shape
    """
    plan = coerce_plan(plan)
    proposed = list(proposed_ids)
    proposed_set = set(proposed)
    seen = Counter(plan.referenced_ids())

    missing = [i for i in proposed if i not in seen]
    duplicated = sorted(i for i, n in seen.items() if n > 1)
    unknown = sorted(i for i in seen if i not in proposed_set)
    if missing or duplicated or unknown:
        raise InvalidPlanError(missing, duplicated, unknown)
    return plan


def _strip_code_fence(text: str) -> str:
    text = text.strip()
    if text.startswith("```"):
        lines = text.split("\n")
        if lines[0].startswith("```"):
            lines = lines[1:]
        if lines and lines[-1].strip() == "```":
            lines = lines[:-1]
        text = "\n".join(lines).strip()
    return text


def parse_plan_response(text: Optional[str]) -> Optional[ConsolidationPlan]:
    """
    Parse a consolidation plan from generation output.

    Handles code fences and prose around the JSON object. Returns None if
    no well-formed plan can be found.
    """
    if not text:
        return None

    text = _strip_code_fence(text)
    start = text.find("{")
    end = text.rfind("}")
    if start == -1 or end < start:
        logger.warning("No JSON object in consolidation response")
        return None

    try:
        data = json.loads(text[start:end + 1])
    except json.JSONDecodeError:
        logger.warning("Failed to parse consolidation JSON")
        return None

    if not isinstance(data, dict) or not {"keep", "merge", "drop"} <= data.keys():
        logger.warning("Consolidation response lacks keep/merge/drop")
        return None

    try:
        return ConsolidationPlan.model_validate(data)
    except ValidationError as e:
        logger.warning("Consolidation plan has wrong shape: %s", e)
        return None


def run_consolidation(
    store: StoreProtocol,
    provider: GenerationProvider,
    min_group_size: int = 5,
) -> ConsolidationReport:
    """
    Consolidate every sufficiently large group of active memories.

    Each group is handled independently: a failure (no response, unparseable
    or invalid plan, provider error) skips that group and is recorded in the
    report. The caller holds the advisory lock.
    """
    report = ConsolidationReport()
    grouped = store.get_memories_for_consolidation()

    for type_name, memories in grouped.items():
        if len(memories) < min_group_size:
            continue

        prompt = build_consolidation_prompt(type_name, memories)
        try:
            response = provider.generate(CONSOLIDATION_SYSTEM_PROMPT, prompt, max_tokens=2048)
        except Exception as e:
            logger.warning("Consolidation call failed for %s: %s", type_name, e)
            report.skipped[type_name] = f"provider error: {e}"
            continue

        plan = parse_plan_response(response)
        if plan is None:
            report.skipped[type_name] = "no usable plan in response"
            continue

        try:
            plan = validate_plan(plan, [m["id"] for m in memories])
        except InvalidPlanError as e:
            logger.warning("Rejected plan for %s: %s", type_name, e)
            report.skipped[type_name] = str(e)
            continue

        report.applied[type_name] = store.apply_consolidation(plan)

    return report


@dataclass
class Answer:
    """Result of asking a question against project memory."""
    text: Optional[str]
    memories: list[Memory]

    @property
    def synthesized(self) -> bool:
        return self.text is not None


def ask(store: StoreProtocol, provider: GenerationProvider, question: str) -> Answer:
    """
    Answer a question from the memories that match it.

    When the provider returns nothing or fails, ``text`` is None and
    ``memories`` holds the raw matches (at most ten) for display instead.
    """
    matches = store.search_memories(question, ASK_SEARCH_LIMIT)
    if not matches:
        return Answer(text=None, memories=[])

    try:
        text = provider.generate(ASK_SYSTEM_PROMPT, build_ask_prompt(question, matches), max_tokens=1024)
    except Exception as e:
        logger.warning("Ask failed: %s", e)
        text = None

    if not text:
        return Answer(text=None, memories=matches[:ASK_FALLBACK_LIMIT])
    return Answer(text=text.strip(), memories=matches)

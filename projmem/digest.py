"""
Line-budgeted digest of project memory.

The digest is what an assistant reads first: a bounded summary of active,
still-confident memories grouped by type. Everything that doesn't fit is
reachable through search.
"""

import logging
import re
from pathlib import Path

from .persistence import atomic_write
from .types import TYPE_ORDER, Memory, MemoryType, ProjectState

logger = logging.getLogger(__name__)

# Nominal lines per section (sums to 140)
TYPE_LINE_BUDGET: dict[MemoryType, int] = {
    MemoryType.ARCHITECTURE: 25,
    MemoryType.DECISION: 25,
    MemoryType.PATTERN: 25,
    MemoryType.GOTCHA: 20,
    MemoryType.PROGRESS: 30,
    MemoryType.CONTEXT: 15,
}

TYPE_LABELS: dict[MemoryType, str] = {
    MemoryType.ARCHITECTURE: "## Architecture",
    MemoryType.DECISION: "## Key Decisions",
    MemoryType.PATTERN: "## Patterns & Conventions",
    MemoryType.GOTCHA: "## Gotchas & Pitfalls",
    MemoryType.PROGRESS: "## Current Progress",
    MemoryType.CONTEXT: "## Context",
}

MAX_LINE_CHARS = 120
MIN_CONFIDENCE = 0.3

FOOTER = "_For deeper context, use memory_search, memory_related, or memory_ask tools._"

MARKER_START = "<!-- MEMORY:START -->"
MARKER_END = "<!-- MEMORY:END -->"


def allocate_budgets(counts: dict[MemoryType, int]) -> dict[MemoryType, int]:
    """
    Per-type line limits after redistributing unused allowance.

    A type with fewer records than its nominal budget shrinks to its count
    and donates the difference. The pooled surplus is split in equal,
    floor-divided shares among the types that exceed their budget.
    """
    budgets = dict(TYPE_LINE_BUDGET)
    surplus = 0
    over_budget: list[MemoryType] = []

    for t in TYPE_ORDER:
        n = counts.get(t, 0)
        if n < budgets[t]:
            surplus += budgets[t] - n
            budgets[t] = n
        elif n > budgets[t]:
            over_budget.append(t)

    if over_budget and surplus > 0:
        extra = surplus // len(over_budget)
        for t in over_budget:
            budgets[t] += extra
    return budgets


def format_line(memory: Memory) -> str:
    """One bullet: truncated content plus non-bookkeeping tags."""
    line = memory.content
    if len(line) > MAX_LINE_CHARS:
        line = line[:MAX_LINE_CHARS - 3] + "..."
    tags = memory.display_tags
    tag_str = f" [{', '.join(tags)}]" if tags else ""
    return f"- {line}{tag_str}"


def generate_consciousness(state: ProjectState, min_confidence: float = MIN_CONFIDENCE) -> str:
    """
    Render the digest for a project state. Pure: nothing is persisted.

    Args:
        state: Current project state
        min_confidence: Records at or below this confidence are left out
    """
    all_active = [m for m in state.memories if m.is_active]
    shown = [m for m in all_active if m.confidence > min_confidence]

    sections: list[str] = [f"# {state.project}"]
    if state.description:
        sections.append(state.description)
    sections.append(
        f"\n_Last updated: {state.last_updated.split('T')[0]} | "
        f"{len(all_active)} active memories, {len(state.memories)} total_\n"
    )

    grouped: dict[MemoryType, list[Memory]] = {}
    for m in shown:
        grouped.setdefault(m.type, []).append(m)
    for mems in grouped.values():
        # Stable: equal importance keeps collection order
        mems.sort(key=lambda m: m.importance, reverse=True)

    budgets = allocate_budgets({t: len(ms) for t, ms in grouped.items()})

    for t in TYPE_ORDER:
        mems = grouped.get(t)
        if not mems:
            continue
        sections.append(TYPE_LABELS[t])
        limit = budgets[t]
        sections.extend(format_line(m) for m in mems[:limit])
        if len(mems) > limit:
            sections.append(f"- _...and {len(mems) - limit} more (use memory_search to find them)_")
        sections.append("")

    sections.append(FOOTER)
    return "\n".join(sections)


_BLOCK_RE = re.compile(re.escape(MARKER_START) + r".*?" + re.escape(MARKER_END), re.DOTALL)


def replace_block(existing: str, digest: str) -> str:
    """
    Insert or replace the marker-delimited digest block in a host document.

    Text outside the markers is returned unchanged.
    """
    block = f"{MARKER_START}\n{digest}\n{MARKER_END}"
    match = _BLOCK_RE.search(existing)
    if match:
        return existing[:match.start()] + block + existing[match.end():]
    if not existing:
        return block + "\n"
    sep = "\n" if existing.endswith("\n") else "\n\n"
    return existing + sep + block + "\n"


def sync_digest(project_dir: Path, digest: str, filename: str = "CLAUDE.md") -> Path:
    """
    Write the digest into the project's host document between the markers.

    Returns:
        Path to the host document
    """
    path = Path(project_dir) / filename
    # Read as bytes; line endings are kept as-is
    existing = path.read_bytes().decode("utf-8") if path.exists() else ""
    atomic_write(path, replace_block(existing, digest))
    logger.info("Synced digest to %s", path)
    return path

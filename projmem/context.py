"""
Context metrics: how much of an assistant's context the memory occupies.

Tier 1 is the digest document read at session start; tier 2 is the full
store, reached on demand through search.
"""

import json
import math
from dataclasses import dataclass, field
from pathlib import Path

from .config import MEMORY_DIRNAME
from .digest import MARKER_END, MARKER_START
from .persistence import load_state
from .store import STATE_FILENAME
from .types import ARCHIVED_TAG, SUPERSEDED_TAG

# Rough estimate for English text
CHARS_PER_TOKEN = 4


@dataclass
class DigestDocumentMetrics:
    exists: bool = False
    lines: int = 0
    chars: int = 0
    tokens: int = 0
    memory_block_lines: int = 0
    memory_block_tokens: int = 0


@dataclass
class TypeMetrics:
    count: int = 0
    tokens: int = 0


@dataclass
class StoreMetrics:
    exists: bool = False
    total_memories: int = 0
    active_memories: int = 0
    archived_memories: int = 0
    superseded_memories: int = 0
    total_chars: int = 0
    total_tokens: int = 0
    by_type: dict[str, TypeMetrics] = field(default_factory=dict)


@dataclass
class ContextMetrics:
    digest: DigestDocumentMetrics
    store: StoreMetrics

    @property
    def tier1_tokens(self) -> int:
        return self.digest.tokens

    @property
    def tier2_tokens(self) -> int:
        return self.store.total_tokens

    @property
    def total_tokens(self) -> int:
        return self.tier1_tokens + self.tier2_tokens

    @property
    def tier1_percentage(self) -> int:
        total = self.total_tokens
        return round(self.tier1_tokens / total * 100) if total else 0

    def to_dict(self) -> dict:
        return {
            "digest": vars(self.digest),
            "store": {
                **{k: v for k, v in vars(self.store).items() if k != "by_type"},
                "by_type": {t: vars(m) for t, m in self.store.by_type.items()},
            },
            "summary": {
                "tier1_tokens": self.tier1_tokens,
                "tier2_tokens": self.tier2_tokens,
                "total_tokens": self.total_tokens,
                "tier1_percentage": self.tier1_percentage,
            },
        }


def estimate_tokens(text: str) -> int:
    return math.ceil(len(text) / CHARS_PER_TOKEN)


def _digest_metrics(path: Path) -> DigestDocumentMetrics:
    metrics = DigestDocumentMetrics()
    if not path.exists():
        return metrics
    content = path.read_text(encoding="utf-8")
    metrics.exists = True
    metrics.lines = len(content.split("\n"))
    metrics.chars = len(content)
    metrics.tokens = estimate_tokens(content)

    start = content.find(MARKER_START)
    end = content.find(MARKER_END)
    if start != -1 and end != -1:
        block = content[start:end + len(MARKER_END)]
        metrics.memory_block_lines = len(block.split("\n"))
        metrics.memory_block_tokens = estimate_tokens(block)
    return metrics


def _store_metrics(state_path: Path, project: str) -> StoreMetrics:
    metrics = StoreMetrics()
    if not state_path.exists():
        return metrics
    state = load_state(state_path, default_project=project)
    metrics.exists = True
    metrics.total_memories = len(state.memories)
    for m in state.memories:
        if m.is_active:
            metrics.active_memories += 1
        if ARCHIVED_TAG in m.tags:
            metrics.archived_memories += 1
        if SUPERSEDED_TAG in m.tags:
            metrics.superseded_memories += 1
        tokens = estimate_tokens(m.content)
        metrics.total_chars += len(m.content)
        metrics.total_tokens += tokens
        by_type = metrics.by_type.setdefault(m.type.value, TypeMetrics())
        by_type.count += 1
        by_type.tokens += tokens
    return metrics


def get_context_metrics(project_dir: Path, digest_filename: str = "CLAUDE.md") -> ContextMetrics:
    """Measure the digest document and the store. Read-only."""
    project_dir = Path(project_dir).resolve()
    return ContextMetrics(
        digest=_digest_metrics(project_dir / digest_filename),
        store=_store_metrics(project_dir / MEMORY_DIRNAME / STATE_FILENAME, project_dir.name),
    )


def format_tokens(tokens: int) -> str:
    """1234 -> '1.2K'."""
    if tokens >= 1000:
        return f"{tokens / 1000:.1f}K"
    return str(tokens)


def ascii_bar(value: float, max_value: float, width: int = 20) -> str:
    """Filled/empty block bar for terminal output."""
    filled = round(value / max_value * width) if max_value else 0
    filled = max(0, min(width, filled))
    return "█" * filled + "░" * (width - filled)


def metrics_json(metrics: ContextMetrics) -> str:
    return json.dumps(metrics.to_dict(), indent=2)

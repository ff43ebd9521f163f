"""
projmem: persistent, self-consolidating memory for a software project.

Memories (decisions, patterns, gotchas, architecture, progress, context) are
kept in ``.memory/state.json`` under the project root, deduplicated on insert,
decayed over time, consolidated by an LLM, and summarized into a digest block
inside the project's CLAUDE.md.

Quick start:
    from projmem import MemoryStore, sync_digest

    store = MemoryStore(".")
    store.add_memory("gotcha", "Stripe webhooks can arrive before the order row commits", tags=["stripe"])
    sync_digest(store.project_dir, store.generate_digest())
"""

__version__ = "0.3.0"

from .config import StoreConfig, load_or_default_config
from .consolidation import (
    Answer,
    ConsolidationPlan,
    ConsolidationReport,
    InvalidPlanError,
    MergeEntry,
    ask,
    parse_plan_response,
    run_consolidation,
    validate_plan,
)
from .digest import generate_consciousness, replace_block, sync_digest
from .lock import NullLock, PidFileLock
from .persistence import CorruptStateError
from .store import MemoryStore
from .types import Memory, MemoryCounts, MemoryType, ProjectState

__all__ = [
    "__version__",
    "Answer",
    "ConsolidationPlan",
    "ConsolidationReport",
    "CorruptStateError",
    "InvalidPlanError",
    "Memory",
    "MemoryCounts",
    "MemoryStore",
    "MemoryType",
    "MergeEntry",
    "NullLock",
    "PidFileLock",
    "ProjectState",
    "StoreConfig",
    "ask",
    "generate_consciousness",
    "load_or_default_config",
    "parse_plan_response",
    "replace_block",
    "run_consolidation",
    "sync_digest",
    "validate_plan",
]

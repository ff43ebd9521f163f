"""
Memory store for one project.

Owns the persisted knowledge base and implements:
- add/delete with insert-time deduplication (supersession by similarity)
- filtered and ranked queries with access counting
- confidence decay for volatile memory types
- consolidation (apply externally computed merge/drop plans, prune)
- the line-budgeted digest

Every mutating call persists the whole document before returning.
"""

import logging
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Mapping, Optional, Union

from .config import MEMORY_DIRNAME, StoreConfig, load_or_default_config
from .consolidation import ConsolidationOutcome, ConsolidationPlan, coerce_plan
from .digest import generate_consciousness
from .lock import PidFileLock
from .logging_config import configure_ops_log, remove_ops_log
from .persistence import load_state, save_state
from .protocol import LockProtocol
from .similarity import find_superseded, jaccard, score_search, tokenize
from .types import (
    ARCHIVED_TAG,
    FALLBACK_TYPE,
    SUPERSEDED_TAG,
    TYPE_ORDER,
    Memory,
    MemoryCounts,
    MemoryType,
    ProjectState,
    new_memory_id,
    parse_utc_timestamp,
    utc_now,
)

logger = logging.getLogger(__name__)

STATE_FILENAME = "state.json"
LOCK_FILENAME = "lock"
DEFAULT_SEARCH_LIMIT = 20

SECONDS_PER_DAY = 86400.0


def _age_days(memory: Memory, now: datetime) -> Optional[float]:
    """Days since the record was last updated, or None if the stamp is unreadable."""
    try:
        updated = parse_utc_timestamp(memory.updated)
    except (ValueError, TypeError):
        logger.warning("Unreadable timestamp on %s: %r", memory.id, memory.updated)
        return None
    return (now - updated).total_seconds() / SECONDS_PER_DAY


class MemoryStore:
    """
    Persistent project memory.

    Example:
        store = MemoryStore("/path/to/project")
        if store.acquire_lock():
            try:
                store.add_memory("decision", "Chose SQLite over Postgres for local dev")
            finally:
                store.release_lock()
        print(store.generate_digest())
    """

    def __init__(
        self,
        project_dir: Union[str, Path],
        *,
        config: Optional[StoreConfig] = None,
        lock: Optional[LockProtocol] = None,
        ops_log: bool = True,
    ) -> None:
        """
        Open (or start) the memory of a project.

        Args:
            project_dir: Project root; memory lives in ``<project_dir>/.memory``
            config: Pre-loaded config (skips reading projmem.toml)
            lock: Injected advisory lock (defaults to a pid file lock)
            ops_log: Attach the rotating operations log
        """
        self._project_dir = Path(project_dir).resolve()
        self._memory_dir = self._project_dir / MEMORY_DIRNAME
        self._memory_dir.mkdir(parents=True, exist_ok=True)

        self._config = config if config is not None else load_or_default_config(self._memory_dir)
        self._state_path = self._memory_dir / STATE_FILENAME
        self._lock: LockProtocol = lock if lock is not None else PidFileLock(self._memory_dir / LOCK_FILENAME)

        self._state = load_state(self._state_path, default_project=self._project_dir.name)

        self._ops_log_handler = configure_ops_log(self._memory_dir) if ops_log else None

    def close(self) -> None:
        """Detach the operations log. The state is already persisted."""
        if self._ops_log_handler is not None:
            remove_ops_log(self._ops_log_handler)
            self._ops_log_handler = None

    # -------------------------------------------------------------------------
    # Properties
    # -------------------------------------------------------------------------

    @property
    def project_dir(self) -> Path:
        return self._project_dir

    @property
    def memory_dir(self) -> Path:
        return self._memory_dir

    @property
    def state_path(self) -> Path:
        return self._state_path

    @property
    def config(self) -> StoreConfig:
        return self._config

    @property
    def state(self) -> ProjectState:
        return self._state

    @property
    def extraction_count(self) -> int:
        return self._state.extraction_count

    def _save(self) -> None:
        save_state(self._state_path, self._state)

    # -------------------------------------------------------------------------
    # Locking
    # -------------------------------------------------------------------------

    def reload(self) -> None:
        """Re-read the state document, dropping the in-memory copy."""
        self._state = load_state(self._state_path, default_project=self._project_dir.name)

    def acquire_lock(self) -> bool:
        """
        Take the advisory lock and reload the state under it.

        False means another invocation is running: skip. Writes made by other
        processes before the lock was taken are picked up, so a mutation under
        the lock never saves over them.
        """
        if not self._lock.acquire():
            return False
        try:
            self.reload()
        except BaseException:
            self._lock.release()
            raise
        return True

    def release_lock(self) -> None:
        self._lock.release()

    # -------------------------------------------------------------------------
    # Project
    # -------------------------------------------------------------------------

    def set_project(self, name: str, description: str) -> None:
        self._state.project = name
        self._state.description = description
        self._save()
        logger.info("Project initialized: %s", name)

    def increment_extraction_count(self) -> int:
        self._state.extraction_count += 1
        self._save()
        return self._state.extraction_count

    # -------------------------------------------------------------------------
    # Write Operations
    # -------------------------------------------------------------------------

    def _new_id(self) -> str:
        existing = {m.id for m in self._state.memories}
        while True:
            id = new_memory_id()
            if id not in existing:
                return id

    def add_memory(
        self,
        type: Union[MemoryType, str],
        content: str,
        tags: Optional[list[str]] = None,
        supersedes: Optional[str] = None,
    ) -> Memory:
        """
        Insert a memory, retiring older near-duplicates.

        The first active memory of the same type whose content similarity
        exceeds the dedup threshold is tagged superseded. A memory named by
        ``supersedes`` is tagged as well. The new memory is always stored.

        Args:
            type: Memory type
            content: The memory text
            tags: Categorization tags
            supersedes: Id of a memory this one replaces

        Returns:
            The stored memory

        Raises:
            ValueError: Unknown type or empty content
        """
        mem_type = MemoryType.parse(type)
        content = content.strip()
        if not content:
            raise ValueError("Memory content must not be empty")

        now = utc_now()
        new_tokens = tokenize(content)
        for existing in self.get_active_memories():
            if existing.type != mem_type:
                continue
            if jaccard(new_tokens, tokenize(existing.content)) > self._config.dedup_threshold:
                existing.add_tag(SUPERSEDED_TAG)
                existing.updated = now
                logger.info("Superseded %s (similar to new %s memory)", existing.id, mem_type.value)
                break

        if supersedes:
            old = self.get_memory(supersedes)
            if old is not None and SUPERSEDED_TAG not in old.tags:
                old.add_tag(SUPERSEDED_TAG)
                old.updated = now
                logger.info("Superseded %s (explicit)", old.id)

        memory = Memory(
            id=self._new_id(),
            type=mem_type,
            content=content,
            tags=list(tags or []),
            created=now,
            updated=now,
            confidence=1.0,
            access_count=0,
            supersedes=supersedes,
        )
        self._state.memories.append(memory)
        self._save()
        logger.info("Added %s (%s)", memory.id, mem_type.value)
        return memory

    def resolve_supersedes(self, type: Union[MemoryType, str], old_content: str) -> Optional[str]:
        """Id of the active memory best described by ``old_content``, if any."""
        match = find_superseded(
            self.get_active_memories(),
            MemoryType.parse(type),
            old_content,
            threshold=self._config.supersede_threshold,
        )
        return match.id if match else None

    def delete_memory(self, id: str) -> bool:
        """
        Remove a memory outright.

        Returns:
            True if a memory was found and removed
        """
        for i, m in enumerate(self._state.memories):
            if m.id == id:
                del self._state.memories[i]
                self._save()
                logger.info("Deleted %s", id)
                return True
        return False

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def get_memory(self, id: str) -> Optional[Memory]:
        for m in self._state.memories:
            if m.id == id:
                return m
        return None

    def get_active_memories(self) -> list[Memory]:
        """Memories that are neither superseded nor archived."""
        return [m for m in self._state.memories if m.is_active]

    def get_memories(
        self,
        type: Optional[Union[MemoryType, str]] = None,
        tags: Optional[list[str]] = None,
        include_inactive: bool = False,
    ) -> list[Memory]:
        """Filter by exact type and/or any exact tag overlap."""
        mems = list(self._state.memories) if include_inactive else self.get_active_memories()
        if type:
            mem_type = MemoryType.parse(type)
            mems = [m for m in mems if m.type == mem_type]
        if tags:
            wanted = set(tags)
            mems = [m for m in mems if wanted.intersection(m.tags)]
        return mems

    def search_memories(self, query: str, limit: int = DEFAULT_SEARCH_LIMIT) -> list[Memory]:
        """
        Keyword search over active memories.

        Scores 2 per query token in the content and 3 per query token matching
        a tag. Equal scores keep collection order. Every returned memory has
        its access count bumped. A limit below 1 means the default.
        """
        if limit < 1:
            limit = DEFAULT_SEARCH_LIMIT
        query_tokens = tokenize(query)
        if not query_tokens:
            return []

        scored = [(m, score_search(query_tokens, m)) for m in self.get_active_memories()]
        scored = [(m, s) for m, s in scored if s > 0]
        scored.sort(key=lambda pair: pair[1], reverse=True)
        results = [m for m, _ in scored[:limit]]

        for m in results:
            m.access_count += 1
        if results:
            self._save()
        return results

    def get_related(
        self,
        tags: list[str],
        type: Optional[Union[MemoryType, str]] = None,
    ) -> list[Memory]:
        """Active memories sharing any tag (case-insensitive); bumps access counts."""
        wanted = {t.lower() for t in tags}
        mems = [
            m for m in self.get_active_memories()
            if any(t.lower() in wanted for t in m.tags)
        ]
        if type:
            mem_type = MemoryType.parse(type)
            mems = [m for m in mems if m.type == mem_type]

        for m in mems:
            m.access_count += 1
        if mems:
            self._save()
        return mems

    def counts(self) -> MemoryCounts:
        mems = self._state.memories
        return MemoryCounts(
            active=sum(1 for m in mems if m.is_active),
            archived=sum(1 for m in mems if ARCHIVED_TAG in m.tags),
            superseded=sum(1 for m in mems if SUPERSEDED_TAG in m.tags),
            total=len(mems),
        )

    def counts_by_type(self) -> dict[str, int]:
        """Active memory counts per type, in render order, omitting empty types."""
        by_type = {t.value: 0 for t in TYPE_ORDER}
        for m in self.get_active_memories():
            by_type[m.type.value] += 1
        return {k: v for k, v in by_type.items() if v}

    # -------------------------------------------------------------------------
    # Decay
    # -------------------------------------------------------------------------

    def decay_confidence(self) -> None:
        """
        Recompute confidence of volatile memories from time since last update.

        progress fades to zero over a week, context over a month; other
        types keep their confidence.
        """
        horizons = {
            MemoryType.PROGRESS: self._config.progress_days,
            MemoryType.CONTEXT: self._config.context_days,
        }
        now = datetime.now(timezone.utc)
        decayed = 0
        for m in self.get_active_memories():
            horizon = horizons.get(m.type)
            if not horizon:
                continue
            age = _age_days(m, now)
            if age is None:
                continue
            m.confidence = max(0.0, min(1.0, 1 - age / horizon))
            decayed += 1
        self._save()
        logger.debug("Decay pass over %d volatile memories", decayed)

    # -------------------------------------------------------------------------
    # Consolidation
    # -------------------------------------------------------------------------

    def needs_consolidation(self) -> bool:
        """Too many active memories, or a periodic extraction count reached."""
        if len(self.get_active_memories()) > self._config.max_active:
            return True
        n = self._state.extraction_count
        every = self._config.every_extractions
        return n > 0 and every > 0 and n % every == 0

    def get_memories_for_consolidation(self) -> dict[str, list[dict[str, str]]]:
        """Active memories grouped by type as minimal id/content pairs."""
        grouped: dict[str, list[dict[str, str]]] = {}
        for m in self.get_active_memories():
            grouped.setdefault(m.type.value, []).append({"id": m.id, "content": m.content})
        return grouped

    def apply_consolidation(
        self,
        plan: Union[ConsolidationPlan, Mapping[str, Any]],
    ) -> ConsolidationOutcome:
        """
        Apply one group's consolidation plan, then prune old archived memories.

        The plan is trusted: validate it against the proposed group first
        (see consolidation.validate_plan).
        """
        plan = coerce_plan(plan)
        now = utc_now()
        outcome = ConsolidationOutcome()

        for id in plan.drop:
            m = self.get_memory(id)
            if m is not None:
                m.add_tag(ARCHIVED_TAG)
                m.updated = now
                outcome.archived.append(id)

        for merge in plan.merge:
            for src_id in merge.sources:
                m = self.get_memory(src_id)
                if m is not None:
                    m.add_tag(SUPERSEDED_TAG)
                    m.updated = now
                    outcome.superseded.append(src_id)

            first = self.get_memory(merge.sources[0]) if merge.sources else None
            merged = Memory(
                id=self._new_id(),
                type=first.type if first is not None else FALLBACK_TYPE,
                content=merge.content,
                tags=list(merge.tags),
                created=now,
                updated=now,
                confidence=1.0,
                access_count=0,
                merged_from=list(merge.sources),
            )
            self._state.memories.append(merged)
            outcome.created.append(merged)

        outcome.pruned = self._prune_archived()
        self._state.last_consolidation = now
        self._save()
        logger.info(
            "Consolidation: %d archived, %d superseded, %d merged, %d pruned",
            len(outcome.archived), len(outcome.superseded),
            len(outcome.created), len(outcome.pruned),
        )
        return outcome

    def _prune_archived(self) -> list[str]:
        """Delete archived memories untouched for the retention window."""
        cutoff = datetime.now(timezone.utc) - timedelta(days=self._config.prune_days)
        kept: list[Memory] = []
        pruned: list[str] = []
        for m in self._state.memories:
            if ARCHIVED_TAG in m.tags:
                try:
                    expired = parse_utc_timestamp(m.updated) < cutoff
                except (ValueError, TypeError):
                    expired = False
                if expired:
                    pruned.append(m.id)
                    continue
            kept.append(m)
        self._state.memories = kept
        return pruned

    # -------------------------------------------------------------------------
    # Digest
    # -------------------------------------------------------------------------

    def generate_digest(self) -> str:
        """Render the line-budgeted digest of the current state (no persistence)."""
        return generate_consciousness(self._state, min_confidence=self._config.min_confidence)

    # Name used by the tool surface
    generate_consciousness = generate_digest

"""
Protocol definitions for the memory store and its collaborators.

Defines interface contracts at two levels:
- StoreProtocol: the consumer-facing operations (CLI, MCP server, extractors)
- LockProtocol: the advisory cross-process lock the store delegates to
"""

from typing import Any, Mapping, Optional, Protocol, Union, runtime_checkable

from .types import Memory, MemoryCounts, MemoryType, ProjectState


@runtime_checkable
class LockProtocol(Protocol):
    """
    Advisory lock serializing short-lived same-host invocations.

    Implemented by:
    - PidFileLock (lock file holding a process id)
    - NullLock (always succeeds; for tests and single-process embedding)
    """

    def acquire(self) -> bool: ...

    def release(self) -> None: ...


@runtime_checkable
class StoreProtocol(Protocol):
    """
    The public interface of a project memory store.

    Implemented by MemoryStore.
    """

    @property
    def state(self) -> ProjectState: ...

    # -- Write operations --

    def set_project(self, name: str, description: str) -> None: ...

    def add_memory(
        self,
        type: Union[MemoryType, str],
        content: str,
        tags: Optional[list[str]] = None,
        supersedes: Optional[str] = None,
    ) -> Memory: ...

    def delete_memory(self, id: str) -> bool: ...

    def increment_extraction_count(self) -> int: ...

    def decay_confidence(self) -> None: ...

    def apply_consolidation(self, plan: Any) -> Any: ...

    # -- Query operations --

    def get_memory(self, id: str) -> Optional[Memory]: ...

    def get_active_memories(self) -> list[Memory]: ...

    def get_memories(
        self,
        type: Optional[Union[MemoryType, str]] = None,
        tags: Optional[list[str]] = None,
        include_inactive: bool = False,
    ) -> list[Memory]: ...

    def search_memories(self, query: str, limit: int = 20) -> list[Memory]: ...

    def get_related(
        self,
        tags: list[str],
        type: Optional[Union[MemoryType, str]] = None,
    ) -> list[Memory]: ...

    def needs_consolidation(self) -> bool: ...

    def get_memories_for_consolidation(self) -> Mapping[str, list[dict[str, str]]]: ...

    def counts(self) -> MemoryCounts: ...

    def generate_digest(self) -> str: ...

    # -- Locking --

    def acquire_lock(self) -> bool: ...

    def release_lock(self) -> None: ...

"""
MCP stdio server for projmem: project memory tools for AI coding assistants.

Exposes MemoryStore operations as MCP tools so an assistant can save what it
learns about a project and recall it in later sessions.

Usage:
    projmem-mcp                                   # stdio server
    claude mcp add projmem -- projmem-mcp         # Claude Code integration

All store calls are serialized through a single asyncio.Lock. Mutations
also take the store's advisory lock, shared with the CLI and other processes.
"""

import asyncio
import os
from contextlib import contextmanager
from pathlib import Path
from typing import Annotated, Iterator, Optional

from mcp.server.fastmcp import FastMCP
from mcp.types import ToolAnnotations
from pydantic import Field

from .cli import format_memory, render_stats
from .consolidation import ask, run_consolidation
from .digest import sync_digest
from .errors import log_exception, user_message
from .persistence import CorruptStateError
from .providers.base import GenerationProvider, NullGeneration, get_registry
from .store import MemoryStore
from .types import Memory

# ---------------------------------------------------------------------------
# Server setup
# ---------------------------------------------------------------------------

mcp = FastMCP(
    "projmem",
    instructions=(
        "Persistent memory for this software project. "
        "Save decisions, patterns, gotchas, architecture, progress and context. "
        "Recall them in later sessions instead of rediscovering them."
    ),
)

_store: Optional[MemoryStore] = None
_lock = asyncio.Lock()

_BUSY = "Skipped: another projmem process is updating this project. Try again shortly."


def _get_store() -> MemoryStore:
    """Store for PROJMEM_PROJECT (or the working directory), with fresh state.

    The store is opened once; later calls re-read the state document so
    writes from the CLI or hooks between tool calls are visible.
    Must be called inside ``async with _lock``.
    """
    global _store
    if _store is None:
        project = os.environ.get("PROJMEM_PROJECT")
        project_dir = Path(project) if project else Path.cwd()
        try:
            _store = MemoryStore(project_dir)
        except CorruptStateError as e:
            log_exception(e, "open store", project_dir)
            raise
        return _store
    try:
        _store.reload()
    except CorruptStateError as e:
        log_exception(e, "reload store", _store.project_dir)
        raise
    return _store


@contextmanager
def _file_lock(store: MemoryStore) -> Iterator[bool]:
    """Hold the advisory lock if it is free; yields whether it was taken.

    Taking the lock reloads the state, so mutations start from what is on disk.
    """
    try:
        acquired = store.acquire_lock()
    except CorruptStateError as e:
        log_exception(e, "reload under lock", store.project_dir)
        raise
    try:
        yield acquired
    finally:
        if acquired:
            store.release_lock()


def _sync(store: MemoryStore) -> None:
    sync_digest(store.project_dir, store.generate_digest(), store.config.digest_filename)


def _provider(store: MemoryStore) -> GenerationProvider:
    gen = store.config.generation
    return get_registry().create_generation(gen.name, gen.params)


def _render(memories: list[Memory]) -> str:
    return "\n\n".join(format_memory(m) for m in memories)


# ---------------------------------------------------------------------------
# Tool annotations
# ---------------------------------------------------------------------------

_READ_ONLY = ToolAnnotations(readOnlyHint=True, destructiveHint=False)
_IDEMPOTENT = ToolAnnotations(idempotentHint=True, destructiveHint=False)
_DESTRUCTIVE = ToolAnnotations(destructiveHint=True, idempotentHint=False)
# Reads that also bump access counts
_COUNTS_ACCESS = ToolAnnotations(readOnlyHint=False, destructiveHint=False, idempotentHint=False)

MemoryTypeName = Annotated[str, Field(
    description=(
        "Memory type: decision (why X over Y), pattern (conventions), "
        "gotcha (pitfalls), architecture (system structure), "
        "progress (what's done/in-flight), context (business context)."
    ),
)]


# ---------------------------------------------------------------------------
# Core tools
# ---------------------------------------------------------------------------


@mcp.tool(
    description="Initialize project memory with name and description.",
    annotations=_IDEMPOTENT,
)
async def memory_init(
    name: Annotated[str, Field(description="Project name.")],
    description: Annotated[str, Field(description="Brief project description.")] = "",
) -> str:
    """Name the project."""
    async with _lock:
        try:
            store = _get_store()
            with _file_lock(store) as held:
                if not held:
                    return _BUSY
                store.set_project(name, description)
                _sync(store)
        except (ValueError, OSError) as e:
            return f"Error: {user_message(e)}"
    return f'Project "{name}" initialized.'


@mcp.tool(
    description=(
        "Save a memory about this project. Records decisions, patterns, architecture, "
        "gotchas, progress, or context for future sessions."
    ),
    annotations=_IDEMPOTENT,
)
async def memory_save(
    type: MemoryTypeName,
    content: Annotated[str, Field(description="The memory: be specific and concise.")],
    tags: Annotated[Optional[list[str]], Field(
        description="Tags for categorization.",
    )] = None,
    supersedes: Annotated[Optional[str], Field(
        description="ID of the memory this replaces.",
    )] = None,
    replaces: Annotated[Optional[str], Field(
        description="Text of an earlier memory of the same type that this one replaces.",
    )] = None,
) -> str:
    """Store a memory."""
    async with _lock:
        try:
            store = _get_store()
            with _file_lock(store) as held:
                if not held:
                    return _BUSY
                if replaces and not supersedes:
                    supersedes = store.resolve_supersedes(type, replaces)
                mem = store.add_memory(type, content, tags=tags or [], supersedes=supersedes)
                _sync(store)
        except (ValueError, OSError) as e:
            return f"Error: {user_message(e)}"
    return f"Saved: [{mem.id}] ({mem.type.value}) {mem.content}"


@mcp.tool(
    description="Recall all active memories, optionally filtered by type or tags.",
    annotations=_READ_ONLY,
)
async def memory_recall(
    type: Annotated[Optional[str], Field(
        description="Only memories of this type.",
    )] = None,
    tags: Annotated[Optional[list[str]], Field(
        description="Only memories carrying any of these tags.",
    )] = None,
) -> str:
    """List memories."""
    async with _lock:
        try:
            memories = _get_store().get_memories(type=type, tags=tags)
        except (ValueError, OSError) as e:
            return f"Error: {user_message(e)}"
    if not memories:
        return "No memories found."
    return f"{len(memories)} memories:\n\n{_render(memories)}"


@mcp.tool(
    description="Delete a specific memory by ID.",
    annotations=_DESTRUCTIVE,
)
async def memory_delete(
    id: Annotated[str, Field(description="Memory ID to delete.")],
) -> str:
    """Delete a memory."""
    async with _lock:
        try:
            store = _get_store()
            with _file_lock(store) as held:
                if not held:
                    return _BUSY
                deleted = store.delete_memory(id)
                if deleted:
                    _sync(store)
        except (ValueError, OSError) as e:
            return f"Error: {user_message(e)}"
    return f"Deleted {id}" if deleted else f"Not found: {id}"


# ---------------------------------------------------------------------------
# Search and retrieval
# ---------------------------------------------------------------------------


@mcp.tool(
    description=(
        "Search memories by keyword. Returns ranked results matching the query "
        "across content and tags."
    ),
    annotations=_COUNTS_ACCESS,
)
async def memory_search(
    query: Annotated[str, Field(description="Search query (keywords).")],
    limit: Annotated[int, Field(description="Max results (default 20).", ge=1)] = 20,
) -> str:
    """Search memories."""
    async with _lock:
        try:
            store = _get_store()
            with _file_lock(store) as held:
                if not held:
                    return _BUSY
                results = store.search_memories(query, limit)
        except (ValueError, OSError) as e:
            return f"Error: {user_message(e)}"
    if not results:
        return f'No memories matching "{query}".'
    return f'{len(results)} results for "{query}":\n\n{_render(results)}'


@mcp.tool(
    description=(
        "Get all memories related to specific tags/areas. "
        "Use to explore a topic in depth."
    ),
    annotations=_COUNTS_ACCESS,
)
async def memory_related(
    tags: Annotated[list[str], Field(description="Tags to search for.")],
    type: Annotated[Optional[str], Field(
        description="Only memories of this type.",
    )] = None,
) -> str:
    """Memories sharing a tag."""
    async with _lock:
        try:
            store = _get_store()
            with _file_lock(store) as held:
                if not held:
                    return _BUSY
                results = store.get_related(tags, type)
        except (ValueError, OSError) as e:
            return f"Error: {user_message(e)}"
    if not results:
        return f"No memories tagged with: {', '.join(tags)}"
    return f"{len(results)} related memories:\n\n{_render(results)}"


@mcp.tool(
    description=(
        "Ask a question and get an answer synthesized from project memories. "
        "Falls back to listing the most relevant memories if no answer can be generated."
    ),
    annotations=_COUNTS_ACCESS,
)
async def memory_ask(
    question: Annotated[str, Field(description="Question about the project.")],
) -> str:
    """Answer from memory."""
    async with _lock:
        try:
            store = _get_store()
            provider = _provider(store)
            with _file_lock(store) as held:
                if not held:
                    return _BUSY
                answer = await asyncio.to_thread(ask, store, provider, question)
        except (ValueError, RuntimeError, OSError) as e:
            return f"Error: {user_message(e)}"
    if not answer.memories:
        return "No relevant memories found to answer this question."
    if answer.synthesized:
        return answer.text
    listing = "\n".join(f"- ({m.type.value}) {m.content}" for m in answer.memories)
    return f"Could not synthesize answer. Relevant memories:\n{listing}"


# ---------------------------------------------------------------------------
# Maintenance
# ---------------------------------------------------------------------------


@mcp.tool(
    description=(
        "Manually trigger memory consolidation. Merges duplicates and archives "
        "outdated memories using the configured LLM."
    ),
    annotations=_DESTRUCTIVE,
)
async def memory_consolidate() -> str:
    """Consolidate memories."""
    async with _lock:
        try:
            store = _get_store()
            provider = _provider(store)
            if isinstance(provider, NullGeneration):
                return "Error: no generation provider configured (set ANTHROPIC_API_KEY)."
            with _file_lock(store) as held:
                if not held:
                    return _BUSY
                report = await asyncio.to_thread(
                    run_consolidation, store, provider,
                    min_group_size=store.config.manual_min_group_size,
                )
                _sync(store)
        except (ValueError, RuntimeError, OSError) as e:
            log_exception(e, "memory_consolidate")
            return f"Error: {user_message(e)}"
        counts = store.counts()
    return (
        f"Consolidation complete. {report.changed} memories merged/archived. "
        f"Current: {counts.active} active, {counts.total} total."
    )


@mcp.tool(
    description=(
        "Generate the full consciousness document: the digest that is written "
        "into CLAUDE.md."
    ),
    annotations=_READ_ONLY,
)
async def memory_consciousness() -> str:
    """Render the digest."""
    async with _lock:
        try:
            return _get_store().generate_consciousness()
        except (ValueError, OSError) as e:
            return f"Error: {user_message(e)}"


@mcp.tool(
    description=(
        "Show memory statistics: counts by type, active/archived/superseded, "
        "last consolidation."
    ),
    annotations=_READ_ONLY,
)
async def memory_stats() -> str:
    """Memory statistics."""
    async with _lock:
        try:
            return render_stats(_get_store())
        except (ValueError, OSError) as e:
            return f"Error: {user_message(e)}"


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

def main():
    """Run the MCP stdio server."""
    import signal
    # The stdin reader shields its blocking readline from cancellation, so the
    # first Ctrl+C would otherwise hang.
    signal.signal(signal.SIGINT, lambda *_: os._exit(130))
    mcp.run(transport="stdio")


if __name__ == "__main__":
    main()

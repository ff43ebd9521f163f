"""
CLI interface for project memory.

Usage:
    projmem init --name myapp --description "Invoice service"
    projmem save decision "Chose SQLite over Postgres for local dev" -t db
    projmem search "sqlite"
    projmem sync
"""

import atexit
import json
import os
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, NoReturn, Optional

import typer
from typing_extensions import Annotated

from .config import CONFIG_FILENAME, MEMORY_DIRNAME, save_config
from .consolidation import ask, run_consolidation
from .context import ascii_bar, format_tokens, get_context_metrics, metrics_json
from .digest import sync_digest
from .errors import log_exception, user_message
from .logging_config import configure_quiet_mode, enable_debug_mode
from .persistence import CorruptStateError
from .providers.base import GenerationProvider, NullGeneration, get_registry
from .store import MemoryStore
from .types import Memory, MemoryType

# Set PROJMEM_VERBOSE=1 to enable debug mode via environment
if os.environ.get("PROJMEM_VERBOSE") == "1":
    enable_debug_mode()
else:
    configure_quiet_mode(quiet=True)


def _version_callback(value: bool):
    if value:
        from importlib.metadata import version
        print(f"projmem {version('projmem')}")
        raise typer.Exit()


def _verbose_callback(value: bool):
    if value:
        enable_debug_mode()


# Global state for CLI options
_json_output = False
_project_override: Optional[Path] = None


def _json_callback(value: bool):
    global _json_output
    _json_output = value


def _project_callback(value: Optional[Path]):
    global _project_override
    if value is not None:
        _project_override = value


app = typer.Typer(
    name="projmem",
    help="Persistent, self-consolidating memory for a software project.",
    no_args_is_help=True,
    rich_markup_mode=None,
)


@app.callback()
def main_callback(
    verbose: Annotated[bool, typer.Option(
        "--verbose", "-v",
        help="Enable debug-level logging to stderr",
        callback=_verbose_callback,
        is_eager=True,
    )] = False,
    output_json: Annotated[bool, typer.Option(
        "--json", "-j",
        help="Output as JSON",
        callback=_json_callback,
        is_eager=True,
    )] = False,
    version: Annotated[Optional[bool], typer.Option(
        "--version",
        help="Show version and exit",
        callback=_version_callback,
        is_eager=True,
    )] = None,
    project: Annotated[Optional[Path], typer.Option(
        "--project", "-p",
        envvar="PROJMEM_PROJECT",
        help="Project directory (default: current directory)",
        callback=_project_callback,
        is_eager=True,
    )] = None,
):
    """Persistent, self-consolidating memory for a software project."""


# -----------------------------------------------------------------------------
# Common Options
# -----------------------------------------------------------------------------

TypeOption = Annotated[
    Optional[str],
    typer.Option("--type", "-T", help="Memory type (architecture, decision, pattern, gotcha, progress, context)"),
]

TagOption = Annotated[
    Optional[list[str]],
    typer.Option("--tag", "-t", help="Tag (repeatable)"),
]

LimitOption = Annotated[
    int,
    typer.Option("--limit", "-n", min=1, help="Maximum results"),
]


# -----------------------------------------------------------------------------
# Helpers
# -----------------------------------------------------------------------------

def _get_store() -> MemoryStore:
    """Open the project's store, turning a corrupt state file into a clean exit."""
    project = _project_override if _project_override is not None else Path.cwd()
    if not project.is_dir():
        typer.echo(f"Error: project directory not found: {project}", err=True)
        raise typer.Exit(1)
    try:
        store = MemoryStore(project)
    except CorruptStateError as e:
        _fail_corrupt(e, "open store", project)
    atexit.register(store.close)
    return store


def _fail_corrupt(e: CorruptStateError, context: str, project: Path) -> NoReturn:
    log_path = log_exception(e, context, project)
    typer.echo(f"Error: {user_message(e)}", err=True)
    typer.echo(f"Details: {log_path}", err=True)
    raise typer.Exit(1)


@contextmanager
def _locked(store: MemoryStore) -> Iterator[None]:
    """Hold the advisory lock with fresh state; if another process has it, skip the command."""
    try:
        acquired = store.acquire_lock()
    except CorruptStateError as e:
        _fail_corrupt(e, "reload under lock", store.project_dir)
    if not acquired:
        typer.echo("Another projmem process is updating this project; skipped.", err=True)
        raise typer.Exit(0)
    try:
        yield
    finally:
        store.release_lock()


def _get_provider(store: MemoryStore) -> GenerationProvider:
    """Create the configured generation provider or exit with a setup hint."""
    gen = store.config.generation
    try:
        provider = get_registry().create_generation(gen.name, gen.params)
    except (ValueError, RuntimeError) as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)
    if isinstance(provider, NullGeneration):
        typer.echo(
            "Error: no generation provider configured. Set ANTHROPIC_API_KEY "
            f"or edit [generation] in {MEMORY_DIRNAME}/{CONFIG_FILENAME}",
            err=True,
        )
        raise typer.Exit(1)
    return provider


def _sync(store: MemoryStore) -> Path:
    return sync_digest(store.project_dir, store.generate_digest(), store.config.digest_filename)


def format_memory(m: Memory) -> str:
    tags = f" [{', '.join(m.tags)}]" if m.tags else ""
    conf = f" ({round(m.confidence * 100)}%)" if m.confidence < 1 else ""
    return f"[{m.id}] ({m.type.value}) {m.content}{tags}{conf}"


def render_stats(store: MemoryStore) -> str:
    """Counts by status and type, extraction count, and timestamps."""
    counts = store.counts()
    state = store.state
    lines = [
        "Memory Stats:",
        f"  Active: {counts.active}",
        f"  Archived: {counts.archived}",
        f"  Superseded: {counts.superseded}",
        f"  Total: {counts.total}",
        "",
        "By type:",
        *(f"  {t}: {n}" for t, n in store.counts_by_type().items()),
        "",
        f"Extractions: {state.extraction_count}",
        f"Last consolidation: {state.last_consolidation or 'never'}",
        f"Last updated: {state.last_updated}",
    ]
    return "\n".join(lines)


def _echo_memories(memories: list[Memory], empty: str, heading: str = "") -> None:
    if _json_output:
        typer.echo(json.dumps([m.to_dict() for m in memories], indent=2))
        return
    if not memories:
        typer.echo(empty)
        return
    if heading:
        typer.echo(f"{heading}\n")
    for m in memories:
        typer.echo(format_memory(m))


def _parse_type(value: Optional[str]) -> Optional[MemoryType]:
    if value is None:
        return None
    try:
        return MemoryType.parse(value)
    except ValueError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)


def _ensure_gitignore(project_dir: Path) -> bool:
    """Add the memory directory to .gitignore. Returns True if it was added."""
    path = project_dir / ".gitignore"
    entry = f"{MEMORY_DIRNAME}/"
    if path.exists():
        content = path.read_text(encoding="utf-8")
        if MEMORY_DIRNAME in content:
            return False
        with open(path, "a", encoding="utf-8") as f:
            f.write(f"\n# projmem\n{entry}\n")
    else:
        path.write_text(f"# projmem\n{entry}\n", encoding="utf-8")
    return True


# -----------------------------------------------------------------------------
# Commands
# -----------------------------------------------------------------------------

@app.command()
def init(
    name: Annotated[Optional[str], typer.Option("--name", help="Project name (default: directory name)")] = None,
    description: Annotated[str, typer.Option("--description", "-d", help="Brief project description")] = "",
    gitignore: Annotated[bool, typer.Option(help="Add the memory directory to .gitignore")] = True,
):
    """
    Initialize project memory with a name and description.

    Also writes a default projmem.toml (if none exists) and the digest block.
    """
    store = _get_store()
    with _locked(store):
        store.set_project(name or store.project_dir.name, description)
        if not store.config.exists():
            save_config(store.config)
            typer.echo(f"Wrote {MEMORY_DIRNAME}/{CONFIG_FILENAME}")
        if gitignore and _ensure_gitignore(store.project_dir):
            typer.echo(f"Added {MEMORY_DIRNAME}/ to .gitignore")
        path = _sync(store)
    typer.echo(f'Project "{store.state.project}" initialized. Digest: {path.name}')


@app.command()
def save(
    type: Annotated[str, typer.Argument(help="Memory type")],
    content: Annotated[str, typer.Argument(help="The memory; be specific and concise")],
    tag: TagOption = None,
    supersedes: Annotated[Optional[str], typer.Option(
        "--supersedes", help="ID of the memory this replaces",
    )] = None,
    replaces: Annotated[Optional[str], typer.Option(
        "--replaces", help="Old text of the memory this replaces (matched by similarity)",
    )] = None,
):
    """
    Save a memory.

    \b
    Examples:
        projmem save gotcha "Stripe webhooks arrive before the DB commit" -t stripe
        projmem save progress "Auth refactor done" --replaces "Auth refactor in progress"
    """
    mem_type = _parse_type(type)
    store = _get_store()
    with _locked(store):
        if replaces and not supersedes:
            supersedes = store.resolve_supersedes(mem_type, replaces)
            if supersedes is None:
                typer.echo("No existing memory matches --replaces; saving as new.", err=True)
        try:
            mem = store.add_memory(mem_type, content, tags=tag or [], supersedes=supersedes)
        except ValueError as e:
            typer.echo(f"Error: {e}", err=True)
            raise typer.Exit(1)
        _sync(store)
    if _json_output:
        typer.echo(json.dumps(mem.to_dict(), indent=2))
    else:
        typer.echo(f"Saved: [{mem.id}] ({mem.type.value}) {mem.content}")


@app.command("list")
def list_cmd(
    type: TypeOption = None,
    tag: TagOption = None,
    show_all: Annotated[bool, typer.Option(
        "--all", "-a", help="Include superseded and archived memories",
    )] = False,
):
    """List memories, optionally filtered by type or tags."""
    mem_type = _parse_type(type)
    store = _get_store()
    memories = store.get_memories(type=mem_type, tags=tag, include_inactive=show_all)
    _echo_memories(memories, "No memories found.", f"{len(memories)} memories:")


@app.command()
def search(
    query: Annotated[str, typer.Argument(help="Search keywords")],
    limit: LimitOption = 20,
):
    """Search memories by keyword (content and tags)."""
    store = _get_store()
    with _locked(store):
        results = store.search_memories(query, limit)
    _echo_memories(results, f'No memories matching "{query}".', f'{len(results)} results for "{query}":')


@app.command()
def related(
    tags: Annotated[list[str], typer.Argument(help="Tags to look for")],
    type: TypeOption = None,
):
    """Show all memories related to specific tags."""
    mem_type = _parse_type(type)
    store = _get_store()
    with _locked(store):
        results = store.get_related(tags, mem_type)
    _echo_memories(results, f"No memories tagged with: {', '.join(tags)}", f"{len(results)} related memories:")


@app.command("delete")
def delete_cmd(
    id: Annotated[str, typer.Argument(help="Memory ID to delete")],
):
    """Delete a memory by ID."""
    store = _get_store()
    with _locked(store):
        if not store.delete_memory(id):
            typer.echo(f"Not found: {id}", err=True)
            raise typer.Exit(1)
        _sync(store)
    typer.echo(f"Deleted {id}")


@app.command()
def decay():
    """Recompute confidence of progress and context memories."""
    store = _get_store()
    with _locked(store):
        store.decay_confidence()
        _sync(store)
    typer.echo("Confidence updated.")


@app.command()
def consolidate(
    min_group: Annotated[Optional[int], typer.Option(
        "--min-group", help="Smallest group worth consolidating (default from config)",
    )] = None,
    if_needed: Annotated[bool, typer.Option(
        "--if-needed",
        help="Only run when the store is over its size limit or a periodic extraction count is reached",
    )] = False,
):
    """
    Merge duplicate memories and archive outdated ones using the configured LLM.

    With --if-needed this is the automatic pass run after extractions: it
    uses the larger [consolidation] min_group_size and does nothing unless
    the store needs it.
    """
    store = _get_store()
    if if_needed and not store.needs_consolidation():
        typer.echo("Consolidation not needed.")
        return
    provider = _get_provider(store)
    default_group = store.config.min_group_size if if_needed else store.config.manual_min_group_size
    threshold = min_group if min_group is not None else default_group
    with _locked(store):
        report = run_consolidation(store, provider, min_group_size=threshold)
        _sync(store)
    for type_name, reason in report.skipped.items():
        typer.echo(f"  {type_name}: skipped ({reason})", err=True)
    counts = store.counts()
    typer.echo(
        f"Consolidation complete. {report.changed} memories merged/archived. "
        f"Current: {counts.active} active, {counts.total} total."
    )


@app.command()
def digest(
    write: Annotated[bool, typer.Option("--write", "-w", help="Also write it into the digest document")] = False,
):
    """Print the line-budgeted digest."""
    store = _get_store()
    if write:
        with _locked(store):
            _sync(store)
    typer.echo(store.generate_digest())


@app.command()
def sync():
    """Write the digest between the markers of the digest document."""
    store = _get_store()
    with _locked(store):
        path = _sync(store)
    typer.echo(f"Synced {path}")


@app.command()
def stats():
    """Show counts by status and type, extraction count, and timestamps."""
    store = _get_store()
    counts = store.counts()
    by_type = store.counts_by_type()
    state = store.state
    if _json_output:
        typer.echo(json.dumps({
            "active": counts.active,
            "archived": counts.archived,
            "superseded": counts.superseded,
            "total": counts.total,
            "by_type": by_type,
            "extractions": state.extraction_count,
            "last_consolidation": state.last_consolidation,
            "last_updated": state.last_updated,
            "needs_consolidation": store.needs_consolidation(),
        }, indent=2))
        return
    typer.echo(render_stats(store))


@app.command()
def context():
    """Estimate how many tokens the digest and the store occupy."""
    store = _get_store()
    metrics = get_context_metrics(store.project_dir, store.config.digest_filename)
    if _json_output:
        typer.echo(metrics_json(metrics))
        return

    total = metrics.total_tokens
    typer.echo(f"Total context: {format_tokens(total)} tokens (estimated)")
    typer.echo(f"  Tier 1 ({store.config.digest_filename}): "
               f"{ascii_bar(metrics.tier1_tokens, total)} {format_tokens(metrics.tier1_tokens)}")
    typer.echo(f"  Tier 2 (state.json):  {ascii_bar(metrics.tier2_tokens, total)} "
               f"{format_tokens(metrics.tier2_tokens)}")
    if metrics.digest.exists:
        typer.echo(f"  Digest block: {metrics.digest.memory_block_lines} lines, "
                   f"{format_tokens(metrics.digest.memory_block_tokens)} tokens")
    if metrics.store.by_type:
        typer.echo("")
        typer.echo("By type:")
        for t, m in sorted(metrics.store.by_type.items(), key=lambda kv: kv[1].tokens, reverse=True):
            typer.echo(f"  {t:<13} {m.count:>4}  {format_tokens(m.tokens)}")


@app.command("ask")
def ask_cmd(
    question: Annotated[str, typer.Argument(help="Question about the project")],
):
    """Answer a question from project memories using the configured LLM."""
    store = _get_store()
    provider = _get_provider(store)
    with _locked(store):
        answer = ask(store, provider, question)
    if not answer.memories:
        typer.echo("No relevant memories found.")
        return
    if answer.synthesized:
        typer.echo(answer.text)
        return
    typer.echo("Could not synthesize an answer. Relevant memories:", err=True)
    for m in answer.memories:
        typer.echo(f"- ({m.type.value}) {m.content}")


def main():
    app()


if __name__ == "__main__":
    main()

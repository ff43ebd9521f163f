"""
Load and save the per-project state document.

The state lives in a single JSON file that is always rewritten whole:
write to a temporary sibling, then rename over the target, so a concurrent
reader sees either the old document or the new one and never a torn write.
"""

import json
import logging
import os
from pathlib import Path

from .types import SCHEMA_VERSION, ProjectState, utc_now

logger = logging.getLogger(__name__)


class CorruptStateError(ValueError):
    """The state document exists but cannot be parsed."""

    def __init__(self, path: Path, reason: str):
        self.path = path
        self.reason = reason
        super().__init__(f"Corrupt memory state at {path}: {reason}")


def atomic_write(path: Path, text: str) -> None:
    """Write text to path via a temporary file and rename."""
    path = Path(path)
    tmp = path.with_name(path.name + ".tmp")
    with open(tmp, "w", encoding="utf-8", newline="") as f:
        f.write(text)
    os.replace(tmp, path)


def migrate(raw: dict) -> bool:
    """Bring a raw state document up to the current schema in place.

    Schema v1 documents have no ``version`` key and records may lack
    ``confidence`` / ``accessCount``.

    Returns:
        True if anything was changed
    """
    version = raw.get("version") or 0
    if version >= SCHEMA_VERSION:
        return False
    raw.setdefault("extractionCount", 0)
    for m in raw.get("memories") or []:
        m.setdefault("confidence", 1)
        m.setdefault("accessCount", 0)
    raw["version"] = SCHEMA_VERSION
    logger.info("Migrated memory state from schema v%s to v%d", version or 1, SCHEMA_VERSION)
    return True


def load_state(path: Path, default_project: str) -> ProjectState:
    """
    Load project state from disk.

    A missing file yields a fresh, empty state. A file that cannot be parsed
    raises CorruptStateError and is left untouched.

    Args:
        path: Path to the state JSON file
        default_project: Project name used for a fresh state
    """
    path = Path(path)
    if not path.exists():
        return ProjectState(project=default_project)

    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as e:
        raise CorruptStateError(path, str(e)) from e
    if not isinstance(raw, dict):
        raise CorruptStateError(path, f"expected a JSON object, got {type(raw).__name__}")

    try:
        migrate(raw)
        return ProjectState.from_dict(raw)
    except (AttributeError, KeyError, TypeError, ValueError) as e:
        raise CorruptStateError(path, f"invalid document: {e}") from e


def save_state(path: Path, state: ProjectState) -> None:
    """Stamp ``last_updated`` and write the state atomically."""
    state.last_updated = utc_now()
    atomic_write(Path(path), json.dumps(state.to_dict(), indent=2, ensure_ascii=False))

"""
Shared pytest fixtures for projmem tests.

Provides an isolated store (no pid file lock, no ops log) and a scripted
generation provider so no network calls are made.
"""

from datetime import datetime, timedelta, timezone
from typing import Optional

import pytest

from projmem.config import MEMORY_DIRNAME, StoreConfig
from projmem.lock import NullLock
from projmem.store import MemoryStore
from projmem.types import Memory, format_utc


class ScriptedGeneration:
    """
    Generation provider that replays canned responses.

    Each generate() call pops the next response; an Exception instance in
    the script is raised instead of returned.
    """

    def __init__(self, *responses):
        self.responses = list(responses)
        self.calls: list[dict] = []

    def generate(self, system: str, user: str, *, max_tokens: int = 4096) -> Optional[str]:
        self.calls.append({"system": system, "user": user, "max_tokens": max_tokens})
        if not self.responses:
            return None
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


def days_ago(days: float) -> str:
    """Stored-format timestamp ``days`` in the past."""
    return format_utc(datetime.now(timezone.utc) - timedelta(days=days))


def backdate(memory: Memory, days: float) -> None:
    memory.updated = days_ago(days)


@pytest.fixture
def project_dir(tmp_path):
    """Empty project directory."""
    d = tmp_path / "myapp"
    d.mkdir()
    return d


@pytest.fixture
def store(project_dir):
    """MemoryStore with default tunables, a no-op lock and no ops log."""
    config = StoreConfig(path=project_dir / MEMORY_DIRNAME)
    s = MemoryStore(project_dir, config=config, lock=NullLock(), ops_log=False)
    yield s
    s.close()


@pytest.fixture
def scripted():
    """Factory for ScriptedGeneration."""
    return ScriptedGeneration

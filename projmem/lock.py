"""
Advisory process lock backed by a pid file.

This is not a distributed mutex. It serializes short-lived invocations on
one host (e.g. hooks firing back to back) and fails open whenever the
liveness of the recorded process cannot be confirmed.
"""

import logging
import os
from pathlib import Path

logger = logging.getLogger(__name__)


def pid_alive(pid: int) -> bool:
    """True only if signalling ``pid`` with signal 0 succeeds."""
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except OSError:
        # ESRCH: gone. EPERM: exists but not ours to judge -> treat as stale.
        return False
    return True


class PidFileLock:
    """Lock file containing the owning process id."""

    def __init__(self, path: Path):
        self.path = Path(path)

    def holder(self) -> int | None:
        """Pid recorded in the lock file, or None if absent or unreadable."""
        try:
            return int(self.path.read_text().strip())
        except (OSError, ValueError):
            return None

    def acquire(self) -> bool:
        """Take the lock unless a live process already holds it."""
        pid = self.holder()
        if pid is not None and pid_alive(pid):
            logger.debug("Lock %s held by live pid %d", self.path, pid)
            return False
        if pid is not None:
            logger.debug("Replacing stale lock %s (pid %d)", self.path, pid)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(str(os.getpid()))
        return True

    def release(self) -> None:
        """Remove the lock file; absence is fine."""
        try:
            self.path.unlink()
        except FileNotFoundError:
            pass


class NullLock:
    """Lock that always succeeds."""

    def acquire(self) -> bool:
        return True

    def release(self) -> None:
        pass

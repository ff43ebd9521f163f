"""
Error reporting for the projmem CLI and MCP server.

Full tracebacks go to a log file; users see one actionable line.
"""

import os
import traceback
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from .persistence import CorruptStateError


def _error_log_path() -> Path:
    """Resolve error log path, respecting PROJMEM_HOME."""
    home = os.environ.get("PROJMEM_HOME")
    if home:
        return Path(home) / "projmem-errors.log"
    return Path.home() / ".projmem" / "projmem-errors.log"


def user_message(exc: Exception) -> str:
    """One-line description of a failure, with a recovery hint where there is one."""
    if isinstance(exc, CorruptStateError):
        return (
            f"Memory state at {exc.path} is unreadable ({exc.reason}). "
            f"Move it aside to start with an empty memory."
        )
    return str(exc) or type(exc).__name__


def log_exception(exc: Exception, context: str = "", project: Optional[Path] = None) -> Path:
    """
    Append the exception with full traceback to the error log.

    Args:
        exc: The exception that occurred
        context: Command or tool name
        project: Project directory the command ran against

    Returns:
        Path to the error log file
    """
    log_path = _error_log_path()
    timestamp = datetime.now(timezone.utc).isoformat()
    header = f"[{timestamp}]"
    if context:
        header += f" {context}"
    if project is not None:
        header += f" ({project})"
    try:
        log_path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(log_path, os.O_WRONLY | os.O_CREAT | os.O_APPEND, 0o600)
        with os.fdopen(fd, "a") as f:
            f.write(f"\n{'=' * 60}\n{header}\n")
            f.write("".join(traceback.format_exception(type(exc), exc, exc.__traceback__)))
    except OSError:
        pass  # the error log is best effort
    return log_path

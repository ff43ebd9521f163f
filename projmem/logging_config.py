"""
Logging setup for projmem.

Console output stays quiet unless PROJMEM_VERBOSE or --verbose is given.
Each project also gets a rotating operations log under its memory
directory that records saves, decay and consolidation runs.
"""

import logging
import sys
import warnings
from logging.handlers import RotatingFileHandler
from pathlib import Path

OPS_LOG_FILENAME = "projmem-ops.log"
OPS_LOG_MAX_BYTES = 1_000_000
OPS_LOG_BACKUPS = 3

# HTTP clients, provider SDKs and the MCP transport chatter at INFO
_NOISY_LOGGERS = ("httpx", "httpcore", "anthropic", "openai", "mcp", "urllib3")

_DEBUG_FORMAT = logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s", datefmt="%H:%M:%S")
_OPS_FORMAT = logging.Formatter("%(asctime)s %(levelname)s %(message)s", datefmt="%Y-%m-%d %H:%M:%S")


def _package_logger() -> logging.Logger:
    return logging.getLogger("projmem")


def configure_quiet_mode(quiet: bool = True):
    """Hold third-party loggers at WARNING and hide library warnings."""
    if not quiet:
        return
    warnings.filterwarnings("ignore")
    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def enable_debug_mode():
    """Send DEBUG from projmem and its libraries to stderr."""
    warnings.filterwarnings("default")

    root = logging.getLogger()
    root.setLevel(logging.DEBUG)
    has_stderr = any(
        isinstance(h, logging.StreamHandler) and h.stream == sys.stderr
        for h in root.handlers
    )
    if not has_stderr:
        console = logging.StreamHandler(sys.stderr)
        console.setFormatter(_DEBUG_FORMAT)
        root.addHandler(console)

    for name in ("projmem", *_NOISY_LOGGERS):
        logging.getLogger(name).setLevel(logging.DEBUG)


def configure_ops_log(memory_dir) -> RotatingFileHandler:
    """Attach {memory_dir}/projmem-ops.log to the projmem logger.

    The log is written regardless of verbosity. The returned handler
    must be passed to remove_ops_log() when the store closes.
    """
    handler = RotatingFileHandler(
        Path(memory_dir) / OPS_LOG_FILENAME,
        maxBytes=OPS_LOG_MAX_BYTES,
        backupCount=OPS_LOG_BACKUPS,
    )
    handler.setLevel(logging.INFO)
    handler.setFormatter(_OPS_FORMAT)

    logger = _package_logger()
    logger.addHandler(handler)
    if logger.level == logging.NOTSET or logger.level > logging.INFO:
        logger.setLevel(logging.INFO)
    return handler


def remove_ops_log(handler: RotatingFileHandler) -> None:
    """Detach and close a handler returned by configure_ops_log()."""
    _package_logger().removeHandler(handler)
    handler.close()

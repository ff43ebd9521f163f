"""
Configuration management for project memory.

The configuration is stored as a TOML file in the project's memory directory.
It holds the tunable thresholds of the store and the generation provider
used for consolidation and question answering. A missing file means defaults.
"""

import os
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

# tomli_w for writing TOML (tomllib is read-only)
try:
    import tomli_w
except ImportError:
    tomli_w = None  # type: ignore


CONFIG_FILENAME = "projmem.toml"
CONFIG_VERSION = 1
MEMORY_DIRNAME = ".memory"


@dataclass
class ProviderConfig:
    """Configuration for a single provider."""
    name: str
    params: dict[str, Any] = field(default_factory=dict)


@dataclass
class StoreConfig:
    """Complete store configuration.

    The numeric thresholds are tuning knobs, not load-bearing constants.
    """
    path: Path
    version: int = CONFIG_VERSION

    # Insert-time dedup and supersede-by-old-text similarity
    dedup_threshold: float = 0.6
    supersede_threshold: float = 0.5

    # Linear decay horizons (days)
    progress_days: float = 7.0
    context_days: float = 30.0

    # Consolidation triggers and retention
    max_active: int = 80
    every_extractions: int = 10
    prune_days: float = 14.0
    min_group_size: int = 5
    manual_min_group_size: int = 3

    # Digest rendering
    min_confidence: float = 0.3
    digest_filename: str = "CLAUDE.md"

    generation: ProviderConfig = field(default_factory=lambda: ProviderConfig("none"))

    @property
    def config_path(self) -> Path:
        """Path to the TOML config file."""
        return self.path / CONFIG_FILENAME

    def exists(self) -> bool:
        """Check if config file exists."""
        return self.config_path.exists()


def detect_default_generation() -> ProviderConfig:
    """
    Pick a generation provider from the environment.

    Priority:
    1. Anthropic (ANTHROPIC_API_KEY or CLAUDE_CODE_OAUTH_TOKEN)
    2. OpenAI (PROJMEM_OPENAI_API_KEY or OPENAI_API_KEY)
    3. Ollama (OLLAMA_HOST set explicitly)
    4. none: consolidation and ask are unavailable
    """
    if os.environ.get("ANTHROPIC_API_KEY") or os.environ.get("CLAUDE_CODE_OAUTH_TOKEN"):
        return ProviderConfig("anthropic")
    if os.environ.get("PROJMEM_OPENAI_API_KEY") or os.environ.get("OPENAI_API_KEY"):
        return ProviderConfig("openai")
    if os.environ.get("OLLAMA_HOST"):
        return ProviderConfig("ollama")
    return ProviderConfig("none")


def default_config(memory_dir: Path) -> StoreConfig:
    """Defaults with an auto-detected generation provider."""
    return StoreConfig(path=memory_dir, generation=detect_default_generation())


def load_config(memory_dir: Path) -> StoreConfig:
    """
    Load configuration from a memory directory.

    Keys absent from the file fall back to defaults.

    Raises:
        FileNotFoundError: If config doesn't exist
        ValueError: If config is invalid
    """
    config_path = memory_dir / CONFIG_FILENAME

    if not config_path.exists():
        raise FileNotFoundError(f"Config not found: {config_path}")

    with open(config_path, "rb") as f:
        data = tomllib.load(f)

    version = data.get("store", {}).get("version", 1)
    if version > CONFIG_VERSION:
        raise ValueError(f"Config version {version} is newer than supported ({CONFIG_VERSION})")

    defaults = default_config(memory_dir)
    dedup = data.get("dedup", {})
    decay = data.get("decay", {})
    consolidation = data.get("consolidation", {})
    digest = data.get("digest", {})

    generation = defaults.generation
    if "generation" in data:
        section = data["generation"]
        generation = ProviderConfig(
            name=section.get("name", generation.name),
            params={k: v for k, v in section.items() if k != "name"},
        )

    try:
        return StoreConfig(
            path=memory_dir,
            version=version,
            dedup_threshold=float(dedup.get("threshold", defaults.dedup_threshold)),
            supersede_threshold=float(dedup.get("supersede_threshold", defaults.supersede_threshold)),
            progress_days=float(decay.get("progress_days", defaults.progress_days)),
            context_days=float(decay.get("context_days", defaults.context_days)),
            max_active=int(consolidation.get("max_active", defaults.max_active)),
            every_extractions=int(consolidation.get("every_extractions", defaults.every_extractions)),
            prune_days=float(consolidation.get("prune_days", defaults.prune_days)),
            min_group_size=int(consolidation.get("min_group_size", defaults.min_group_size)),
            manual_min_group_size=int(
                consolidation.get("manual_min_group_size", defaults.manual_min_group_size)
            ),
            min_confidence=float(digest.get("min_confidence", defaults.min_confidence)),
            digest_filename=str(digest.get("filename", defaults.digest_filename)),
            generation=generation,
        )
    except (TypeError, ValueError) as e:
        raise ValueError(f"Invalid config {config_path}: {e}") from e


def save_config(config: StoreConfig) -> None:
    """
    Save configuration to the memory directory.

    Creates the directory if it doesn't exist.
    """
    if tomli_w is None:
        raise RuntimeError("tomli_w is required to save config. Install with: pip install tomli-w")

    config.path.mkdir(parents=True, exist_ok=True)

    generation = {"name": config.generation.name}
    generation.update(config.generation.params)

    data = {
        "store": {"version": config.version},
        "dedup": {
            "threshold": config.dedup_threshold,
            "supersede_threshold": config.supersede_threshold,
        },
        "decay": {
            "progress_days": config.progress_days,
            "context_days": config.context_days,
        },
        "consolidation": {
            "max_active": config.max_active,
            "every_extractions": config.every_extractions,
            "prune_days": config.prune_days,
            "min_group_size": config.min_group_size,
            "manual_min_group_size": config.manual_min_group_size,
        },
        "digest": {
            "min_confidence": config.min_confidence,
            "filename": config.digest_filename,
        },
        "generation": generation,
    }

    with open(config.config_path, "wb") as f:
        tomli_w.dump(data, f)


def load_or_default_config(memory_dir: Path) -> StoreConfig:
    """
    Load existing config, or return defaults without writing a file.

    This is the main entry point for config management.
    """
    if (memory_dir / CONFIG_FILENAME).exists():
        return load_config(memory_dir)
    return default_config(memory_dir)

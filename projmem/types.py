"""
Data types for project memory.
"""

import secrets
import string
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional


SCHEMA_VERSION = 2

# Bookkeeping tags - records carrying either are excluded from the active set
SUPERSEDED_TAG = "superseded"
ARCHIVED_TAG = "archived"
BOOKKEEPING_TAGS = frozenset({SUPERSEDED_TAG, ARCHIVED_TAG})


class MemoryType(str, Enum):
    """The closed set of memory categories."""
    ARCHITECTURE = "architecture"
    DECISION = "decision"
    PATTERN = "pattern"
    GOTCHA = "gotcha"
    PROGRESS = "progress"
    CONTEXT = "context"

    @classmethod
    def parse(cls, value: "str | MemoryType") -> "MemoryType":
        """Coerce a string to a MemoryType, raising ValueError with the valid choices."""
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            choices = ", ".join(t.value for t in cls)
            raise ValueError(f"Unknown memory type: {value!r} (expected one of: {choices})") from None


# Render order for the digest and for per-type listings
TYPE_ORDER: tuple[MemoryType, ...] = (
    MemoryType.ARCHITECTURE,
    MemoryType.DECISION,
    MemoryType.PATTERN,
    MemoryType.GOTCHA,
    MemoryType.PROGRESS,
    MemoryType.CONTEXT,
)

# Type used for merged records whose first source is gone
FALLBACK_TYPE = MemoryType.CONTEXT


def utc_now() -> str:
    """Current UTC timestamp in ISO format with millisecond precision and 'Z' suffix."""
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def parse_utc_timestamp(ts: str) -> datetime:
    """Parse a stored timestamp string to a timezone-aware UTC datetime.

    Accepts the canonical 'Z' form as well as '+00:00' suffixes and naive
    timestamps (assumed UTC).
    """
    ts = ts.replace("Z", "+00:00")
    dt = datetime.fromisoformat(ts)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def format_utc(dt: datetime) -> str:
    """Format a datetime in the canonical stored form."""
    return dt.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


_ID_ALPHABET = string.ascii_lowercase + string.digits


def new_memory_id() -> str:
    """Time-derived opaque id: mem_<epoch ms>_<6 base36 chars>."""
    suffix = "".join(secrets.choice(_ID_ALPHABET) for _ in range(6))
    return f"mem_{int(time.time() * 1000)}_{suffix}"


@dataclass
class Memory:
    """
    A single memory record.

    Unknown JSON keys found on load are kept in ``extra`` and written back
    unchanged on save.
    """
    id: str
    type: MemoryType
    content: str
    tags: list[str] = field(default_factory=list)
    created: str = ""
    updated: str = ""
    confidence: float = 1.0
    access_count: int = 0
    supersedes: Optional[str] = None
    merged_from: Optional[list[str]] = None
    extra: dict[str, Any] = field(default_factory=dict)

    @property
    def is_active(self) -> bool:
        """Neither superseded nor archived."""
        return not any(t in BOOKKEEPING_TAGS for t in self.tags)

    @property
    def display_tags(self) -> list[str]:
        """Tags without the bookkeeping markers."""
        return [t for t in self.tags if t not in BOOKKEEPING_TAGS]

    @property
    def importance(self) -> float:
        """Blend of freshness and demonstrated usefulness."""
        return self.confidence * (1 + self.access_count / 10)

    def add_tag(self, tag: str) -> None:
        if tag not in self.tags:
            self.tags.append(tag)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Memory":
        known = {
            "id", "type", "content", "tags", "created", "updated",
            "confidence", "accessCount", "supersedes", "mergedFrom",
        }
        return cls(
            id=data["id"],
            type=MemoryType.parse(data["type"]),
            content=data.get("content", ""),
            tags=list(data.get("tags") or []),
            created=data.get("created", ""),
            updated=data.get("updated", ""),
            confidence=float(data.get("confidence", 1.0)),
            access_count=int(data.get("accessCount", 0)),
            supersedes=data.get("supersedes"),
            merged_from=data.get("mergedFrom"),
            extra={k: v for k, v in data.items() if k not in known},
        )

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {
            "id": self.id,
            "type": self.type.value,
            "content": self.content,
            "tags": list(self.tags),
            "created": self.created,
            "updated": self.updated,
        }
        if self.supersedes:
            d["supersedes"] = self.supersedes
        d["confidence"] = self.confidence
        d["accessCount"] = self.access_count
        if self.merged_from is not None:
            d["mergedFrom"] = list(self.merged_from)
        d.update(self.extra)
        return d

    def __str__(self) -> str:
        tags = f" [{', '.join(self.tags)}]" if self.tags else ""
        return f"[{self.id}] ({self.type.value}) {self.content}{tags}"


@dataclass
class MemoryCounts:
    """Record counts by lifecycle status."""
    active: int = 0
    archived: int = 0
    superseded: int = 0
    total: int = 0


@dataclass
class ProjectState:
    """
    The whole persisted document for one project.

    Superseded and archived records stay in ``memories`` until pruned.
    """
    project: str
    description: str = ""
    memories: list[Memory] = field(default_factory=list)
    last_updated: str = field(default_factory=utc_now)
    last_consolidation: Optional[str] = None
    extraction_count: int = 0
    version: int = SCHEMA_VERSION
    extra: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ProjectState":
        known = {
            "version", "project", "description", "memories",
            "lastUpdated", "lastConsolidation", "extractionCount",
        }
        return cls(
            project=data.get("project", ""),
            description=data.get("description", ""),
            memories=[Memory.from_dict(m) for m in data.get("memories") or []],
            last_updated=data.get("lastUpdated") or utc_now(),
            last_consolidation=data.get("lastConsolidation"),
            extraction_count=int(data.get("extractionCount", 0)),
            version=int(data.get("version", SCHEMA_VERSION)),
            extra={k: v for k, v in data.items() if k not in known},
        )

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {
            "version": self.version,
            "project": self.project,
            "description": self.description,
            "memories": [m.to_dict() for m in self.memories],
            "lastUpdated": self.last_updated,
        }
        if self.last_consolidation:
            d["lastConsolidation"] = self.last_consolidation
        d["extractionCount"] = self.extraction_count
        d.update(self.extra)
        return d

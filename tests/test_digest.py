"""
Tests for the line-budgeted digest and its marker block in CLAUDE.md.
"""

from projmem.digest import (
    FOOTER,
    MARKER_END,
    MARKER_START,
    allocate_budgets,
    format_line,
    generate_consciousness,
    replace_block,
    sync_digest,
)
from projmem.types import ARCHIVED_TAG, SUPERSEDED_TAG, Memory, MemoryType, ProjectState


def _state(memories=(), project="invoicer", description=""):
    return ProjectState(
        project=project,
        description=description,
        memories=list(memories),
        last_updated="2026-03-01T10:00:00.000Z",
    )


def _mem(i, type=MemoryType.DECISION, content=None, **kwargs):
    return Memory(id=f"m{i}", type=type, content=content or f"Record {i}", **kwargs)


class TestAllocateBudgets:

    def test_unused_budget_shrinks_to_count(self):
        budgets = allocate_budgets({MemoryType.DECISION: 3})
        assert budgets[MemoryType.DECISION] == 3
        assert budgets[MemoryType.ARCHITECTURE] == 0

    def test_surplus_goes_to_overflowing_types(self):
        # Only decisions: 25 nominal, 115 donated by the five empty types
        budgets = allocate_budgets({MemoryType.DECISION: 200})
        assert budgets[MemoryType.DECISION] == 25 + 115

    def test_surplus_split_evenly_with_floor(self):
        counts = {
            MemoryType.ARCHITECTURE: 100,
            MemoryType.DECISION: 100,
            MemoryType.PATTERN: 24,
            MemoryType.GOTCHA: 20,
            MemoryType.PROGRESS: 30,
            MemoryType.CONTEXT: 15,
        }
        budgets = allocate_budgets(counts)
        # One spare line from patterns cannot be split between two types
        assert budgets[MemoryType.ARCHITECTURE] == 25
        assert budgets[MemoryType.DECISION] == 25
        assert budgets[MemoryType.PATTERN] == 24


class TestFormatLine:

    def test_tags_without_bookkeeping(self):
        mem = _mem(1, content="Cron runs in UTC", tags=["ops", SUPERSEDED_TAG])
        assert format_line(mem) == "- Cron runs in UTC [ops]"

    def test_long_content_truncated(self):
        mem = _mem(1, content="x" * 150)
        line = format_line(mem)
        assert line == "- " + "x" * 117 + "..."

    def test_exactly_max_length_kept(self):
        mem = _mem(1, content="y" * 120)
        assert format_line(mem) == "- " + "y" * 120


class TestGenerateConsciousness:

    def test_empty(self):
        doc = generate_consciousness(_state(description="Invoice service"))
        assert doc == (
            "# invoicer\n"
            "Invoice service\n"
            "\n_Last updated: 2026-03-01 | 0 active memories, 0 total_\n"
            "\n" + FOOTER
        )
        assert "##" not in doc

    def test_sections_in_type_order(self):
        doc = generate_consciousness(_state([
            _mem(1, MemoryType.CONTEXT, "B2B invoicing"),
            _mem(2, MemoryType.ARCHITECTURE, "Monolith plus worker queue"),
        ]))
        assert doc.index("## Architecture") < doc.index("## Context")
        assert "- Monolith plus worker queue" in doc

    def test_counts_in_header(self):
        doc = generate_consciousness(_state([
            _mem(1),
            _mem(2, tags=[ARCHIVED_TAG]),
            _mem(3, confidence=0.1),
        ]))
        # Low-confidence records are hidden but still active
        assert "2 active memories, 3 total" in doc
        assert "Record 3" not in doc
        assert "Record 2" not in doc

    def test_confidence_threshold_is_exclusive(self):
        doc = generate_consciousness(_state([_mem(1, confidence=0.3), _mem(2, confidence=0.31)]))
        assert "Record 1" not in doc
        assert "Record 2" in doc

    def test_importance_order_with_stable_ties(self):
        doc = generate_consciousness(_state([
            _mem(1, content="First tie"),
            _mem(2, content="Most used", access_count=20),
            _mem(3, content="Second tie"),
        ]))
        lines = [line for line in doc.split("\n") if line.startswith("- ")]
        assert lines == ["- Most used", "- First tie", "- Second tie"]

    def test_overflow_line(self):
        state = _state(
            [_mem(i) for i in range(30)]
            + [_mem(100 + i, MemoryType.GOTCHA) for i in range(25)]
        )
        doc = generate_consciousness(state)
        # Decisions and gotchas both overflow and split the surplus of 95
        assert "- _...and 5 more (use memory_search to find them)_" not in doc
        state = _state([_mem(i) for i in range(30)] + [_mem(100 + i, MemoryType.GOTCHA) for i in range(100)])
        doc = generate_consciousness(state)
        assert "- _...and 33 more (use memory_search to find them)_" in doc

    def test_ends_with_footer(self):
        doc = generate_consciousness(_state([_mem(1)]))
        assert doc.endswith("\n\n" + FOOTER)


class TestReplaceBlock:

    def test_empty_document(self):
        assert replace_block("", "DIGEST") == f"{MARKER_START}\nDIGEST\n{MARKER_END}\n"

    def test_appends_when_no_markers(self):
        result = replace_block("# Notes\n", "DIGEST")
        assert result == f"# Notes\n\n{MARKER_START}\nDIGEST\n{MARKER_END}\n"

    def test_appends_with_blank_line_when_no_trailing_newline(self):
        result = replace_block("# Notes", "DIGEST")
        assert result == f"# Notes\n\n{MARKER_START}\nDIGEST\n{MARKER_END}\n"

    def test_replaces_only_the_block(self):
        before = "# Team notes\r\n\r\nKeep CRLF here.\r\n"
        after = "\n## Manual section\n  trailing spaces  \n"
        doc = f"{before}{MARKER_START}\nOLD\n{MARKER_END}{after}"
        result = replace_block(doc, "NEW")
        assert result == f"{before}{MARKER_START}\nNEW\n{MARKER_END}{after}"

    def test_idempotent(self):
        once = replace_block("# Notes\n", "DIGEST")
        assert replace_block(once, "DIGEST") == once


class TestSyncDigest:

    def test_creates_document(self, tmp_path):
        path = sync_digest(tmp_path, "DIGEST")
        assert path == tmp_path / "CLAUDE.md"
        assert path.read_text() == f"{MARKER_START}\nDIGEST\n{MARKER_END}\n"

    def test_preserves_surrounding_bytes(self, tmp_path):
        path = tmp_path / "CLAUDE.md"
        original = f"Intro\r\n{MARKER_START}\nOLD\n{MARKER_END}\r\nOutro\r\n".encode()
        path.write_bytes(original)
        sync_digest(tmp_path, "NEW")
        assert path.read_bytes() == original.replace(b"OLD", b"NEW")

    def test_custom_filename(self, tmp_path):
        assert sync_digest(tmp_path, "D", filename="AGENTS.md").name == "AGENTS.md"

#!/usr/bin/env python3
"""Set the projmem version in pyproject.toml and the package.

Usage:
    python scripts/bump_version.py 0.4.0
    python scripts/bump_version.py          # show current version
"""

import re
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent

# (file, regex): group(1) is the text kept before the quoted version
TARGETS = [
    ("pyproject.toml", r'^(version\s*=\s*)"[^"]+"'),
    ("projmem/__init__.py", r'^(__version__\s*=\s*)"[^"]+"'),
]


def current_version() -> str:
    text = (ROOT / "pyproject.toml").read_text()
    m = re.search(r'^version\s*=\s*"([^"]+)"', text, re.MULTILINE)
    if not m:
        raise RuntimeError("No version in pyproject.toml")
    return m.group(1)


def set_version(path: Path, pattern: str, version: str) -> None:
    text = path.read_text()
    new_text, n = re.subn(pattern, rf'\g<1>"{version}"', text, count=1, flags=re.MULTILINE)
    if n == 0:
        raise RuntimeError(f"No version string in {path}")
    path.write_text(new_text)


def main() -> None:
    old = current_version()
    if len(sys.argv) < 2:
        print(f"projmem {old}")
        return

    new = sys.argv[1]
    if not re.fullmatch(r"\d+\.\d+\.\d+", new):
        sys.exit(f"Not a version: {new}")
    if new == old:
        print(f"Already at {old}")
        return

    for relpath, pattern in TARGETS:
        set_version(ROOT / relpath, pattern, new)
        print(f"  {relpath}: {old} -> {new}")


if __name__ == "__main__":
    main()

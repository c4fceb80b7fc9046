"""
ReflectHunt - Run Artifact Storage
Newline-delimited text artifacts: parameter names, dynamic URLs and the
persisted findings file.
"""

import logging
from pathlib import Path
from typing import Iterable, Iterator, List, Set

from reflecthunt.parser import Finding, sort_findings

log = logging.getLogger(__name__)


# ── Line Files ────────────────────────────────────────────────────

def read_lines(path: Path) -> List[str]:
    """Non-blank lines of a text artifact; missing file reads as empty."""
    if not path.exists():
        return []
    with open(path, 'r', encoding='utf-8', errors='replace') as f:
        return [line.rstrip("\r\n") for line in f if line.strip()]


def iter_lines(path: Path) -> Iterator[str]:
    """Lazily yield the non-blank lines of a text artifact."""
    if not path.exists():
        return
    with open(path, 'r', encoding='utf-8', errors='replace') as f:
        for line in f:
            if line.strip():
                yield line.rstrip("\r\n")


def write_lines(path: Path, lines: Iterable[str]) -> int:
    path.parent.mkdir(parents=True, exist_ok=True)
    count = 0
    with open(path, 'w', encoding='utf-8') as f:
        for line in lines:
            f.write(line + "\n")
            count += 1
    return count


def write_sorted_unique(path: Path, lines: Iterable[str]) -> int:
    return write_lines(path, sorted({line for line in lines if line.strip()}))


def append_new(path: Path, lines: Iterable[str]) -> List[str]:
    """Append lines not already in ``path`` and return the ones added."""
    existing = set(read_lines(path))
    added = []
    for line in lines:
        if not line.strip() or line in existing:
            continue
        existing.add(line)
        added.append(line)
    if added:
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, 'a', encoding='utf-8') as f:
            for line in added:
                f.write(line + "\n")
    elif not path.exists():
        write_lines(path, [])
    return added


def count_lines(path: Path) -> int:
    if not path.exists():
        return 0
    with open(path, 'r', encoding='utf-8', errors='replace') as f:
        return sum(1 for _ in f)


# ── Stores ────────────────────────────────────────────────────────

class FrozenStoreError(RuntimeError):
    """Raised when adding to a store after generation started."""


class _SortedSetStore:
    """Append-only string set, iterated in sorted order, frozen before use."""

    def __init__(self, items: Iterable[str] = ()):
        self._items: Set[str] = set()
        self._frozen = False
        self.add(items)

    def accepts(self, item: str) -> bool:
        return bool(item)

    def add(self, items: Iterable[str]) -> int:
        if self._frozen:
            raise FrozenStoreError(f"{type(self).__name__} is frozen")
        before = len(self._items)
        for item in items:
            item = item.strip()
            if self.accepts(item):
                self._items.add(item)
        return len(self._items) - before

    def freeze(self):
        self._frozen = True
        return self

    @property
    def frozen(self) -> bool:
        return self._frozen

    def __iter__(self) -> Iterator[str]:
        return iter(sorted(self._items))

    def __len__(self) -> int:
        return len(self._items)

    def __contains__(self, item: str) -> bool:
        return item in self._items

    @classmethod
    def load(cls, path: Path):
        return cls(read_lines(path))

    def save(self, path: Path) -> int:
        return write_lines(path, iter(self))


class ParameterStore(_SortedSetStore):
    """Known query-parameter names for the target."""

    def accepts(self, item: str) -> bool:
        return bool(item) and not any(c.isspace() for c in item)


class URLCorpus(_SortedSetStore):
    """Reachable query-bearing base URLs."""

    def accepts(self, item: str) -> bool:
        return "://" in item and "?" in item


# ── Findings ──────────────────────────────────────────────────────

class FindingSink:
    """Sorted, duplicate-free findings file merged across runs."""

    def __init__(self, path: Path):
        self.path = path

    def load(self) -> List[Finding]:
        findings = []
        for line in read_lines(self.path):
            finding = Finding.from_line(line)
            if finding is None:
                log.debug("Ignoring unreadable findings line: %s", line)
                continue
            findings.append(finding)
        return findings

    def merge(self, new: Iterable[Finding]) -> int:
        """Union ``new`` into the file; returns how many were not there before."""
        existing = set(self.load())
        merged = existing | set(new)
        write_lines(self.path, (f.to_line() for f in sort_findings(merged)))
        return len(merged) - len(existing)

    def count(self) -> int:
        return len(self.load())

"""
Branch Dictionary — unique identifiers for (branch line, target line) pairs.

Completed scopes are numbered last-closed first with one counter shared by
the whole file, so an unchanged file always gets the same identifiers.
The dictionary file lists every surviving pair in assignment order:

    Branch Dictionary for: prog.c
    -----------------------------
    br_1: prog.c, 3, 6
"""

import re
import logging
from enum import Enum
from typing import List, Dict, Optional, Iterable, Tuple

from pydantic import BaseModel

from branchtrace.discovery import BranchScope
from branchtrace.files import atomic_write

logger = logging.getLogger(__name__)

HEADER_PREFIX = "Branch Dictionary for: "

_ENTRY_RE = re.compile(r"^(\S+):\s*(.+?),\s*(\d+),\s*(\d+)\s*$")


class DuplicatePolicy(str, Enum):
    """What happens when two scopes record the same (branch, target) pair."""
    OVERWRITE = "overwrite"        # every pair gets an id; the last one is kept
    DEDUPLICATE = "deduplicate"    # the pair keeps its first id; no new id is used


class DictionaryEntry(BaseModel):
    """One line of the dictionary file."""
    identifier: str
    source_file: str
    branch_line: int
    target_line: int

    def to_line(self) -> str:
        return f"{self.identifier}: {self.source_file}, {self.branch_line}, {self.target_line}"


class BranchDictionary:
    """
    Two-level map: branch line -> target line -> identifier.

    Usage:
        d = BranchDictionary.build(collector.completed, "prog.c")
        d.lookup(3, 6)   # -> "br_1"
    """

    def __init__(self, source_file: str, policy: DuplicatePolicy = DuplicatePolicy.OVERWRITE,
                 prefix: str = "br_"):
        self.source_file = source_file
        self.policy = policy
        self.prefix = prefix
        self.mapping: Dict[int, Dict[int, str]] = {}
        # Every identifier handed out, including overwritten ones
        self.history: List[DictionaryEntry] = []
        self._counter = 0

    @classmethod
    def build(cls, scopes: Iterable[BranchScope], source_file: str,
              policy: DuplicatePolicy = DuplicatePolicy.OVERWRITE,
              prefix: str = "br_") -> "BranchDictionary":
        d = cls(source_file, policy, prefix)
        for scope in reversed(list(scopes)):
            for target in scope.targets:
                d.add(scope.origin_line, target)
        return d

    def add(self, branch_line: int, target_line: int) -> str:
        targets = self.mapping.setdefault(branch_line, {})
        if target_line in targets:
            if self.policy is DuplicatePolicy.DEDUPLICATE:
                return targets[target_line]
            logger.debug("Pair (%d, %d): %s replaced", branch_line, target_line, targets[target_line])

        self._counter += 1
        identifier = f"{self.prefix}{self._counter}"
        targets[target_line] = identifier
        self.history.append(DictionaryEntry(
            identifier=identifier,
            source_file=self.source_file,
            branch_line=branch_line,
            target_line=target_line,
        ))
        return identifier

    # ── Queries ──

    def lookup(self, branch_line: int, target_line: int) -> Optional[str]:
        return self.mapping.get(branch_line, {}).get(target_line)

    def targets(self, branch_line: int) -> Dict[int, str]:
        return self.mapping.get(branch_line, {})

    def branch_lines(self) -> List[int]:
        return sorted(self.mapping)

    def branch_lines_between(self, first: int, last: int) -> List[int]:
        return [b for b in self.branch_lines() if first <= b <= last]

    def entries(self) -> List[DictionaryEntry]:
        """Surviving entries in assignment order."""
        return [
            e for e in self.history
            if self.mapping[e.branch_line].get(e.target_line) == e.identifier
        ]

    def __len__(self):
        return sum(len(t) for t in self.mapping.values())

    def __contains__(self, branch_line: int) -> bool:
        return branch_line in self.mapping

    # ── Serialization ──

    def to_text(self) -> str:
        header = HEADER_PREFIX + self.source_file
        lines = [header, "-" * len(header)]
        lines.extend(e.to_line() for e in self.entries())
        return "\n".join(lines) + "\n"

    def write(self, path: str) -> str:
        atomic_write(path, self.to_text())
        logger.debug("Wrote %d dictionary entries to %s", len(self), path)
        return path


def parse_dictionary(text: str) -> Tuple[str, List[DictionaryEntry]]:
    """Read a dictionary file back into (source_file, entries)."""
    lines = text.splitlines()
    if not lines or not lines[0].startswith(HEADER_PREFIX):
        raise ValueError("Not a branch dictionary: missing header line")
    source_file = lines[0][len(HEADER_PREFIX):]

    entries = []
    for raw in lines[2:]:
        if not raw.strip():
            continue
        m = _ENTRY_RE.match(raw)
        if not m:
            raise ValueError(f"Malformed dictionary line: {raw!r}")
        entries.append(DictionaryEntry(
            identifier=m.group(1),
            source_file=m.group(2),
            branch_line=int(m.group(3)),
            target_line=int(m.group(4)),
        ))
    return source_file, entries

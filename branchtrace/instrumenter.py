"""
Instrumenter — rewrites a C file so that it prints the branch trace.

The original text is copied line by line.  Before a line the generator may
insert, in this order:

  1. flag declarations ``int BRANCH_k = 0;`` at the top of a function body
     (and a local ``NAME_PTR`` for recursive functions)
  2. ``void *NAME_PTR = (void *)&NAME;`` after the last line of a function
     that other code calls
  3. ``BRANCH_k = 1;`` as the first statement of a branch body
  4. ``LOG("br_N");`` for every active branch that targets the line,
     disambiguated with the branch flags when several do
  5. ``LOG_PTR(...)`` for every resolved call, before the statement that
     holds the call

With a discovery Layout, inserted lines only go in front of a line that
begins with a block statement or a closing brace.  Anything else is spliced
into the line itself: right after the opening brace of a body that does not
start on a line of its own, or right before the first block statement on
the line.  Without a Layout every line is treated as starting a statement.
"""

import logging
from typing import List, Dict, NamedTuple, Optional, Set

from branchtrace.dictionary import BranchDictionary
from branchtrace.discovery import Layout
from branchtrace.registry import FunctionRegistry, FunctionInfo

logger = logging.getLogger(__name__)

TRANSFORM_HEADER = (
    "#include <stdio.h>\n"
    "#define LOG(BP) printf(\"%s\\n\", BP)\n"
    "#define LOG_PTR(PTR) printf(\"func_%p\\n\", PTR)\n"
)


def flag_name(index: int) -> str:
    return f"BRANCH_{index}"


def pointer_symbol(function_name: str) -> str:
    return f"{function_name}_PTR"


def declare_pointer(function_name: str) -> str:
    return f"void *{pointer_symbol(function_name)} = (void *)&{function_name};"


def log_statement(identifier: str) -> str:
    return f'LOG("{identifier}");'


class _Opening(NamedTuple):
    """A body whose opening brace shares its line with other code."""
    column: int
    function: Optional[FunctionInfo]
    branch: Optional[int]
    has_items: bool


class Instrumenter:
    """
    Builds the instrumented text of one file.

    Usage:
        text = Instrumenter(lines, dictionary, registry, body_lines, layout).transform()
    """

    def __init__(self, lines: List[str], dictionary: BranchDictionary,
                 registry: FunctionRegistry, body_lines: Optional[Dict[int, int]] = None,
                 layout: Optional[Layout] = None):
        self.lines = lines
        self.dictionary = dictionary
        self.registry = registry
        # branch line -> line of the brace opening its body
        self.body_lines = body_lines or {}
        self.layout = layout
        inline_branches = layout.inline_branches if layout is not None else {}
        self._inline_functions = set(layout.inline_functions) if layout is not None else set()
        # line whose successor gets the flag set -> branch line
        self._set_after: Dict[int, int] = {
            self.body_lines.get(b, b): b for b in dictionary.branch_lines()
            if b not in inline_branches
        }
        self._pointer_targets: Set[str] = {
            name for name in registry.called_functions()
            if name in registry.functions and not registry.functions[name].is_main
        }
        self._openings = self._collect_openings()
        self._statement_lines, self._item_columns = self._insertion_points()

        self._function: Optional[FunctionInfo] = None
        self._active: List[int] = []
        self._declared_pointers: Set[str] = set()

    def _collect_openings(self) -> Dict[int, List[_Opening]]:
        """Brace line -> bodies opening on it, left to right."""
        openings: Dict[int, List[_Opening]] = {}
        if self.layout is None:
            return openings
        for name, body in self.layout.inline_functions.items():
            fn = self.registry.functions.get(name)
            if fn is not None:
                openings.setdefault(body.brace.line, []).append(
                    _Opening(body.brace.column, fn, None, body.has_items))
        for branch, body in self.layout.inline_branches.items():
            if branch in self.dictionary:
                openings.setdefault(body.brace.line, []).append(
                    _Opening(body.brace.column, None, branch, body.has_items))
        for items in openings.values():
            items.sort(key=lambda o: o.column)
        return openings

    def _insertion_points(self):
        """(lines that begin a statement or close a block, line -> first statement column)"""
        if self.layout is None:
            return None, {}
        starts = set()
        for pos in self.layout.item_starts | self.layout.block_ends:
            if pos.column == _first_column(self._text(pos.line)):
                starts.add(pos.line)
        columns: Dict[int, int] = {}
        for pos in self.layout.item_starts:
            columns[pos.line] = min(pos.column, columns.get(pos.line, pos.column))
        return starts, columns

    def _text(self, line_num: int) -> str:
        if 1 <= line_num <= len(self.lines):
            return self.lines[line_num - 1]
        return ""

    def transform(self) -> str:
        out = TRANSFORM_HEADER.splitlines()
        self._function = None
        self._active = []
        self._declared_pointers = set()

        for line_num, text in enumerate(self.lines, start=1):
            prev = line_num - 1
            before: List[str] = []
            # byte offset in ``text`` -> statements inserted there
            spliced: Dict[int, List[str]] = {}

            before.extend(self._function_start(prev, line_num))
            before.extend(self._global_pointers(prev))
            before.extend(self._flag_set(prev))
            self._open_functions(line_num, spliced)
            self._place(line_num, self._logging(line_num), before, spliced)
            self._open_branches(line_num, spliced)
            self._call_logging(line_num, before, spliced)

            out.extend(before)
            out.append(_splice(text, spliced))

        return "\n".join(out) + "\n"

    # ────────────────────────────────────────────────────────────────
    #  Per-line steps
    # ────────────────────────────────────────────────────────────────

    def _function_start(self, prev: int, line_num: int) -> List[str]:
        fn = self.registry.function_with_body_at(prev)
        if fn is None or line_num > fn.end_line or fn.name in self._inline_functions:
            return []
        return self._enter(fn)

    def _enter(self, fn: FunctionInfo) -> List[str]:
        self._function = fn
        self._active = []

        emitted = []
        keys = self.dictionary.branch_lines_between(fn.def_line, fn.end_line)
        for index in range(len(keys)):
            emitted.append(f"int {flag_name(index)} = 0;")
        if fn.is_recursive and not fn.is_main and fn.name in self._pointer_targets:
            emitted.append(declare_pointer(fn.name))
        logger.debug("Function %s: %d branch flags", fn.name, len(keys))
        return emitted

    def _global_pointers(self, prev: int) -> List[str]:
        emitted = []
        crowded = self.layout.crowded_ends if self.layout is not None else set()
        for fn in self.registry.functions_ending_at(prev):
            if fn.name not in self._pointer_targets or fn.name in self._declared_pointers:
                continue
            if fn.name in crowded:
                logger.debug("No room after %s for its pointer; calls take its address", fn.name)
                continue
            emitted.append(declare_pointer(fn.name))
            self._declared_pointers.add(fn.name)
        return emitted

    def _flag_set(self, prev: int) -> List[str]:
        branch = self._set_after.get(prev)
        if branch is None or not self._in_function(branch):
            return []
        return [self._activate(branch)]

    def _activate(self, branch: int) -> str:
        emitted = f"{flag_name(len(self._active))} = 1;"
        self._active.append(branch)
        return emitted

    def _in_function(self, line_num: int) -> bool:
        return self._function is not None and self._function.contains(line_num)

    def _open_functions(self, line_num: int, spliced: Dict[int, List[str]]):
        for opening in self._openings.get(line_num, []):
            if opening.function is not None:
                _splice_after_brace(spliced, opening.column, self._enter(opening.function))

    def _open_branches(self, line_num: int, spliced: Dict[int, List[str]]):
        for opening in self._openings.get(line_num, []):
            branch = opening.branch
            if branch is None or not self._in_function(branch):
                continue
            emitted = [self._activate(branch)]
            if opening.has_items and line_num in self.dictionary.targets(branch):
                emitted.append(log_statement(self.dictionary.lookup(branch, line_num)))
            _splice_after_brace(spliced, opening.column, emitted)

    def _logging(self, line_num: int) -> List[str]:
        fn = self._function
        if fn is None or not fn.body_line < line_num <= fn.end_line:
            return []
        matches = [
            idx for idx, branch in enumerate(self._active)
            if line_num in self.dictionary.targets(branch)
        ]
        if not matches:
            return []

        ids = [self.dictionary.lookup(self._active[idx], line_num) for idx in matches]

        if len(matches) == 1:
            pending = [
                j for j in range(matches[0] + 1, len(self._active))
                if max(self.dictionary.targets(self._active[j])) > line_num
            ]
            if not pending:
                return [log_statement(ids[0])]
            guard = " && ".join(f"!{flag_name(j)}" for j in pending)
            return [f"if ({guard}) {{ {log_statement(ids[0])} }}"]

        parts = [f"if ({flag_name(matches[0])}) {{ {log_statement(ids[0])} }}"]
        for idx, identifier in zip(matches[1:-1], ids[1:-1]):
            parts.append(f"else if ({flag_name(idx)}) {{ {log_statement(identifier)} }}")
        parts.append(f"else {{ {log_statement(ids[-1])} }}")
        return [" ".join(parts)]

    def _place(self, line_num: int, emitted: List[str], before: List[str],
               spliced: Dict[int, List[str]]):
        """Put ``emitted`` on lines before ``line_num`` or into it."""
        if not emitted:
            return
        if self._statement_lines is None or line_num in self._statement_lines:
            before.extend(emitted)
        elif line_num in self._item_columns:
            spliced.setdefault(self._item_columns[line_num] - 1, []).extend(emitted)
        else:
            logger.debug("Line %d starts no statement; dropped %s", line_num, emitted)

    def _call_logging(self, line_num: int, before: List[str], spliced: Dict[int, List[str]]):
        for site in self.registry.calls_at(line_num):
            if site.at is None:
                owner = self.registry.function_containing(line_num)
                if self.layout is not None or owner is None or line_num <= owner.body_line:
                    continue
            if self._pointer_in_scope(site.callee, line_num):
                emitted = f"LOG_PTR({pointer_symbol(site.callee)});"
            else:
                emitted = f"LOG_PTR((void *)&{site.callee});"

            if site.at is None or site.at.column == _first_column(self._text(site.at.line)):
                before.append(emitted)
            else:
                spliced.setdefault(site.at.column - 1, []).append(emitted)

    def _pointer_in_scope(self, name: str, line_num: int) -> bool:
        if name in self._declared_pointers:
            return True
        fn = self._function
        return (fn is not None and fn.name == name and fn.is_recursive
                and name in self._pointer_targets and fn.body_line <= line_num <= fn.end_line)


# ═══════════════════════════════════════════════════════════════════════
#  Splicing
# ═══════════════════════════════════════════════════════════════════════

def _first_column(text: str) -> int:
    """1-based column of the first non-blank character."""
    return len(text) - len(text.lstrip()) + 1


def _splice_after_brace(spliced: Dict[int, List[str]], brace_column: int, emitted: List[str]):
    # the brace is the last byte before offset ``brace_column``
    if not emitted:
        return
    spliced[brace_column] = emitted + spliced.get(brace_column, [])


def _splice(text: str, spliced: Dict[int, List[str]]) -> str:
    """Insert statements at byte offsets of ``text``, padding with spaces."""
    if not spliced:
        return text
    raw = text.encode("utf-8")
    for offset in sorted(spliced, reverse=True):
        code = " ".join(spliced[offset])
        left, right = raw[:offset], raw[offset:]
        if left and not left[-1:].isspace():
            code = " " + code
        if right and not right[:1].isspace():
            code += " "
        raw = left + code.encode("utf-8") + right
    return raw.decode("utf-8")

"""
Source Tree — tree-sitter syntax tree access for a single C file.

Provides the node model every analysis pass works on:
  • SyntaxTreeProvider — owns the tree-sitter parser for one run
  • SourceTree         — parsed file: source text, root node, inactive lines
  • SyntaxNode         — value-semantics wrapper (kind, positions, text)
  • Declarator helpers — name / type spelling of declared variables
"""

import os
import re
import logging
from enum import Enum
from typing import List, Dict, Optional, Iterator, NamedTuple, FrozenSet, Set

import tree_sitter_c as tsc
from tree_sitter import Language, Parser, Node

from branchtrace.preprocessor import PreprocessorEngine

logger = logging.getLogger(__name__)

C_LANGUAGE = Language(tsc.language())


class SourceFileError(Exception):
    """The source file is missing or cannot be read."""


class ParseError(Exception):
    """The source text could not be turned into a syntax tree."""


# ═══════════════════════════════════════════════════════════════════════
#  Node model
# ═══════════════════════════════════════════════════════════════════════

class NodeKind(Enum):
    IF = "if_statement"
    FOR = "for_statement"
    DO = "do_statement"
    WHILE = "while_statement"
    SWITCH = "switch_statement"
    ELSE = "else_clause"
    CASE = "case_statement"
    COMPOUND = "compound_statement"
    CALL = "call_expression"
    VAR_DECL = "declaration"
    PARM_DECL = "parameter_declaration"
    FUNCTION_DECL = "function_definition"
    TYPEDEF = "type_definition"
    BINARY_OP = "binary_expression"
    DECL_REF = "identifier"
    OTHER = "other"


_KIND_BY_TYPE: Dict[str, NodeKind] = {k.value: k for k in NodeKind if k is not NodeKind.OTHER}

# Statements whose block body opens a branch scope
BRANCH_KINDS = frozenset({
    NodeKind.IF, NodeKind.FOR, NodeKind.DO, NodeKind.WHILE,
    NodeKind.SWITCH, NodeKind.CALL,
})

PREPROC_CONTAINERS = frozenset({
    "preproc_if", "preproc_ifdef", "preproc_else",
    "preproc_elif", "preproc_elifdef",
})
PREPROC_DIRECTIVES = frozenset({
    "preproc_include", "preproc_def", "preproc_function_def",
    "preproc_call", "preproc_line",
})


class Position(NamedTuple):
    """1-based (line, column) in the original file."""
    line: int
    column: int


class SyntaxNode:
    """
    Immutable view of one named tree-sitter node.

    Two SyntaxNodes are equal when they cover the same byte span with the
    same node type, regardless of how they were reached.
    """

    __slots__ = ("_node", "_tree")

    def __init__(self, node: Node, tree: "SourceTree"):
        self._node = node
        self._tree = tree

    @property
    def type(self) -> str:
        return self._node.type

    @property
    def kind(self) -> NodeKind:
        return _KIND_BY_TYPE.get(self._node.type, NodeKind.OTHER)

    @property
    def start(self) -> Position:
        row, col = self._node.start_point
        return Position(row + 1, col + 1)

    @property
    def end(self) -> Position:
        """Position of the last character of the node."""
        row, col = self._node.end_point
        if col == 0 and row > self._node.start_point[0]:
            # Node ends with a newline: last character is that newline
            return Position(row, len(self._tree.line_text(row)) + 1)
        return Position(row + 1, col)

    @property
    def line(self) -> int:
        return self._node.start_point[0] + 1

    @property
    def column(self) -> int:
        return self._node.start_point[1] + 1

    @property
    def text(self) -> str:
        return self._tree.source[self._node.start_byte:self._node.end_byte].decode(
            "utf-8", errors="replace")

    @property
    def children(self) -> List["SyntaxNode"]:
        """Named children, without comments or preprocessor conditions."""
        skip = set()
        if self._node.type in PREPROC_CONTAINERS:
            for name in ("condition", "name"):
                header = self._node.child_by_field_name(name)
                if header is not None:
                    skip.add(header.id)
        return [
            SyntaxNode(child, self._tree)
            for child in self._node.named_children
            if child.type != "comment" and child.id not in skip
        ]

    @property
    def parent(self) -> Optional["SyntaxNode"]:
        parent = self._node.parent
        return SyntaxNode(parent, self._tree) if parent is not None else None

    def field(self, name: str) -> Optional["SyntaxNode"]:
        child = self._node.child_by_field_name(name)
        return SyntaxNode(child, self._tree) if child is not None else None

    def fields(self, name: str) -> List["SyntaxNode"]:
        return [SyntaxNode(c, self._tree) for c in self._node.children_by_field_name(name)]

    def is_after(self, boundary: Position) -> bool:
        """True if this node starts strictly after ``boundary``."""
        start = self.start
        if start.line != boundary.line:
            return start.line > boundary.line
        return start.column > boundary.column

    def walk(self) -> Iterator["SyntaxNode"]:
        """Yield this node and all named descendants in pre-order."""
        stack = [self]
        while stack:
            node = stack.pop()
            yield node
            stack.extend(reversed(node.children))

    def ancestors(self) -> Iterator["SyntaxNode"]:
        current = self.parent
        while current is not None:
            yield current
            current = current.parent

    def __eq__(self, other):
        if not isinstance(other, SyntaxNode):
            return NotImplemented
        return (self._node.type, self._node.start_byte, self._node.end_byte) == \
               (other._node.type, other._node.start_byte, other._node.end_byte)

    def __hash__(self):
        return hash((self._node.type, self._node.start_byte, self._node.end_byte))

    def __repr__(self):
        return f"SyntaxNode({self.type} @ {self.line}:{self.column})"


class SourceTree:
    """A parsed C file together with the lines the preprocessor disabled."""

    def __init__(self, path: str, source: bytes, tree, inactive_lines: FrozenSet[int] = frozenset()):
        self.path = path
        self.source = source
        self.lines: List[str] = source.decode("utf-8", errors="replace").splitlines()
        self.inactive_lines = inactive_lines
        self.has_errors = tree.root_node.has_error
        self._tree = tree
        self.root = SyntaxNode(tree.root_node, self)

    @property
    def file_name(self) -> str:
        return os.path.basename(self.path)

    def line_text(self, line: int) -> str:
        if 1 <= line <= len(self.lines):
            return self.lines[line - 1]
        return ""

    def is_inactive(self, node: SyntaxNode) -> bool:
        """True for nodes sitting in a disabled preprocessor arm."""
        if not self.inactive_lines or node.line not in self.inactive_lines:
            return False
        parent = node.parent
        return parent is not None and parent.type in PREPROC_CONTAINERS

    def iter_nodes(self, start: Optional[SyntaxNode] = None) -> Iterator[SyntaxNode]:
        """Pre-order walk over active code, skipping directive lines."""
        stack = [start or self.root]
        while stack:
            node = stack.pop()
            if node.type in PREPROC_DIRECTIVES or self.is_inactive(node):
                continue
            yield node
            stack.extend(reversed(node.children))

    def statements(self, block: SyntaxNode) -> List[SyntaxNode]:
        """Active direct statements of a block, looking through #if arms."""
        result = []
        for child in block.children:
            if child.type in PREPROC_DIRECTIVES or self.is_inactive(child):
                continue
            if child.type in PREPROC_CONTAINERS:
                result.extend(self.statements(child))
            else:
                result.append(child)
        return result


# ═══════════════════════════════════════════════════════════════════════
#  Provider
# ═══════════════════════════════════════════════════════════════════════

class SyntaxTreeProvider:
    """
    Owns a tree-sitter parser for the duration of one analysis run.

    Usage:
        with SyntaxTreeProvider(preprocessor=PreprocessorEngine()) as provider:
            tree = provider.parse("prog.c")
    """

    def __init__(self, preprocessor: Optional[PreprocessorEngine] = None, strict: bool = False):
        self.preprocessor = preprocessor
        self.strict = strict
        self._parser: Optional[Parser] = Parser(C_LANGUAGE)

    def parse(self, file_path: str) -> SourceTree:
        if self._parser is None:
            raise RuntimeError("SyntaxTreeProvider has been closed")

        if not os.path.isfile(file_path):
            raise SourceFileError(f"File not found: {file_path}")
        try:
            with open(file_path, "rb") as f:
                source = f.read()
        except OSError as e:
            raise SourceFileError(f"Cannot read {file_path}: {e}") from e

        if b"\x00" in source[:8192]:
            raise ParseError(f"{file_path} appears to be a binary file")

        try:
            tree = self._parser.parse(source)
        except (ValueError, RuntimeError) as e:
            raise ParseError(f"tree-sitter failed on {file_path}: {e}") from e
        if tree is None:
            raise ParseError(f"tree-sitter produced no tree for {file_path}")

        if tree.root_node.has_error:
            if self.strict:
                raise ParseError(f"{file_path} contains syntax errors")
            logger.warning("Syntax errors in %s; analysis may be incomplete", file_path)

        inactive = self._inactive_lines(file_path, source)
        logger.debug("Parsed %s (%d bytes, %d inactive lines)", file_path, len(source), len(inactive))
        return SourceTree(file_path, source, tree, inactive)

    def _inactive_lines(self, file_path: str, source: bytes) -> FrozenSet[int]:
        if self.preprocessor is None:
            return frozenset()
        active = self.preprocessor.active_lines(file_path)
        if not active:
            logger.warning("Preprocessing gave no active lines for %s; treating all code as active",
                           file_path)
            return frozenset()
        total = len(source.splitlines())
        return frozenset(line for line in range(1, total + 1) if line not in active)

    def close(self):
        self._parser = None
        if self.preprocessor is not None:
            self.preprocessor.clear()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
        return False


# ═══════════════════════════════════════════════════════════════════════
#  Declarators
# ═══════════════════════════════════════════════════════════════════════

class Declarator(NamedTuple):
    """One name introduced by a declaration."""
    name: str
    type_spelling: str
    line: int
    is_function_pointer: bool
    value: Optional[SyntaxNode]


_NAME_TYPES = ("identifier", "type_identifier", "field_identifier")

# tree-sitter-c spells typedef and field declarators with their own node types
_POINTER_DECLS = ("pointer_declarator", "pointer_type_declarator", "pointer_field_declarator")
_ARRAY_DECLS = ("array_declarator", "array_type_declarator", "array_field_declarator")
_FUNCTION_DECLS = ("function_declarator", "function_type_declarator", "function_field_declarator")
_WRAPPER_DECLS = (
    "parenthesized_declarator", "parenthesized_type_declarator", "parenthesized_field_declarator",
    "attributed_declarator", "attributed_type_declarator", "attributed_field_declarator",
)
_SPACE_RE = re.compile(r"\s+")


def base_type(decl: SyntaxNode) -> str:
    """Qualifiers plus type specifier of a declaration, without storage class."""
    parts = [c.text for c in decl.children if c.type == "type_qualifier"]
    type_node = decl.field("type")
    parts.append(type_node.text if type_node is not None else "int")
    return _SPACE_RE.sub(" ", " ".join(parts)).strip()


def declarators(decl: SyntaxNode, pointer_typedefs: Optional[Set[str]] = None) -> List[Declarator]:
    """
    Names declared by a ``declaration``, ``parameter_declaration`` or
    ``type_definition`` node.  Function prototypes are not included.
    """
    base = base_type(decl)
    pointer_typedefs = pointer_typedefs or set()
    result = []
    for node in decl.fields("declarator"):
        info = _unwind(node, base, base in pointer_typedefs)
        if info is not None:
            result.append(info)
    return result


def _unwind(node: SyntaxNode, base: str, typedef_fn_ptr: bool) -> Optional[Declarator]:
    value = None
    if node.type == "init_declarator":
        value = node.field("value")
        node = node.field("declarator")

    stars = 0
    suffix = ""
    return_stars = 0
    params = None
    current = node
    while current is not None:
        t = current.type
        if t in _NAME_TYPES:
            break
        if t in _POINTER_DECLS:
            stars += 1
            current = current.field("declarator")
        elif t in _ARRAY_DECLS:
            size = current.field("size")
            suffix += f"[{size.text if size is not None else ''}]"
            current = current.field("declarator")
        elif t in _FUNCTION_DECLS:
            inner = current.field("declarator")
            if inner is None or inner.type not in _WRAPPER_DECLS:
                return None  # prototype
            params = current.field("parameters")
            return_stars, stars = stars, 0
            current = inner
        elif t in _WRAPPER_DECLS:
            kids = current.children
            current = kids[0] if kids else None
        else:
            return None

    if current is None:
        return None

    if params is not None:
        ret = base + (" " + "*" * return_stars if return_stars else "")
        spelling = f"{ret} ({'*' * stars}){params.text}"
        is_fn_ptr = stars > 0
    else:
        spelling = base
        if stars:
            spelling += " " + "*" * stars
        if suffix:
            spelling += suffix if stars else " " + suffix
        is_fn_ptr = typedef_fn_ptr and stars == 0 and not suffix

    return Declarator(current.text, _SPACE_RE.sub(" ", spelling), current.line, is_fn_ptr, value)


def first_identifier(node: Optional[SyntaxNode]) -> Optional[SyntaxNode]:
    """First ``identifier`` in a subtree, in pre-order."""
    if node is None:
        return None
    for n in node.walk():
        if n.kind is NodeKind.DECL_REF:
            return n
    return None

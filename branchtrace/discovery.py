"""
Branch Discovery — one traversal that finds every branch and its targets.

A branch scope opens when the walk reaches the block body of an
if/for/do/while/switch (an ``else`` block belongs to its ``if``).  Every
direct statement of the block is a target of the scope.  Once the walk
passes the end of the branch statement, the first node still inside the
same function is the fall-through target: it is appended and the scope
closes.  Only the innermost open scope is compared with each node, so
nested scopes close one at a time as the walk moves on.

Call expressions are resolved against the FunctionRegistry and are not
descended into.  Scopes still open when a function (or the file) ends
produce no targets beyond their body statements and are discarded.
"""

import logging
from dataclasses import dataclass, field, replace
from typing import List, Dict, NamedTuple, Optional, Set, Tuple

from branchtrace.registry import FunctionRegistry, FunctionInfo
from branchtrace.source_tree import (
    SourceTree, SyntaxNode, NodeKind, Position, BRANCH_KINDS,
    PREPROC_CONTAINERS, PREPROC_DIRECTIVES, declarators, first_identifier,
)

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════
#  Scope records
# ═══════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class BranchScope:
    """Bookkeeping for one branch body, from opening to closure."""
    origin_line: int
    kind: NodeKind
    body_line: int
    closure: Position
    targets: Tuple[int, ...] = ()


class ScopeStack:
    """LIFO of open BranchScopes.  Records are replaced, never mutated."""

    def __init__(self):
        self._items: List[BranchScope] = []

    def __len__(self):
        return len(self._items)

    @property
    def top(self) -> Optional[BranchScope]:
        return self._items[-1] if self._items else None

    def push(self, scope: BranchScope):
        self._items.append(scope)

    def pop(self) -> BranchScope:
        return self._items.pop()

    def add_target(self, line: int):
        top = self._items[-1]
        self._items[-1] = replace(top, targets=top.targets + (line,))

    def clear(self) -> List[BranchScope]:
        dropped, self._items = self._items, []
        return dropped


class InlineBody(NamedTuple):
    """A block whose instrumentation goes right after its opening brace."""
    brace: Position
    has_items: bool     # a statement of the block starts on the brace line


@dataclass
class Layout:
    """
    Where code can be inserted without splitting a statement.

    ``item_starts`` holds the start of every block statement and
    ``block_ends`` the closing brace of every block.  A line that begins
    with one of them can take inserted lines in front of it; otherwise
    code is spliced in right before the first block statement on the line.
    Bodies listed in ``inline_branches`` (by branch line) and
    ``inline_functions`` (by name) share their brace line with a statement
    or with their closing brace.  Functions in ``crowded_ends`` have more
    code after their closing brace.
    """
    item_starts: Set[Position] = field(default_factory=set)
    block_ends: Set[Position] = field(default_factory=set)
    inline_branches: Dict[int, InlineBody] = field(default_factory=dict)
    inline_functions: Dict[str, InlineBody] = field(default_factory=dict)
    crowded_ends: Set[str] = field(default_factory=set)


# ═══════════════════════════════════════════════════════════════════════
#  Collector
# ═══════════════════════════════════════════════════════════════════════

class BranchCollector:
    """
    Walks a SourceTree once, filling ``completed`` and the registry.

    Usage:
        collector = BranchCollector(tree)
        scopes = collector.collect()
    """

    def __init__(self, tree: SourceTree, registry: Optional[FunctionRegistry] = None,
                 debug: bool = False):
        self.tree = tree
        self.registry = registry if registry is not None else FunctionRegistry()
        self.completed: List[BranchScope] = []
        # branch line -> line of the brace opening its first block
        self.body_lines: Dict[int, int] = {}
        self.layout = Layout()
        self._stack = ScopeStack()
        self._function: Optional[FunctionInfo] = None
        self._trace = logger.info if debug else logger.debug

    def collect(self) -> List[BranchScope]:
        for child in self.tree.root.children:
            self._visit(child)
        self._drop_open_scopes()
        return self.completed

    # ────────────────────────────────────────────────────────────────
    #  Traversal
    # ────────────────────────────────────────────────────────────────

    def _visit(self, node: SyntaxNode):
        if node.type in PREPROC_DIRECTIVES or self.tree.is_inactive(node):
            return

        kind = node.kind
        if kind is NodeKind.CALL:
            self._check_fall_through(node)
            self._resolve_call(node)
            return

        owner = self._branch_owner(node)
        if owner is not None:
            self._open_scope(owner, node)

        if kind is not NodeKind.ELSE and node.type not in PREPROC_CONTAINERS:
            self._check_fall_through(node)

        if kind is NodeKind.FUNCTION_DECL:
            self._enter_function(node)
        elif kind is NodeKind.COMPOUND:
            self._record_block(node)
        elif kind is NodeKind.CASE:
            self._record_case(node)
        elif kind in (NodeKind.VAR_DECL, NodeKind.PARM_DECL):
            self._record_declaration(node)
        elif kind is NodeKind.TYPEDEF:
            self._record_typedef(node)

        for child in node.children:
            self._visit(child)

    @staticmethod
    def _branch_owner(node: SyntaxNode) -> Optional[SyntaxNode]:
        """The branch statement owning ``node`` if ``node`` is its block body."""
        if node.kind is not NodeKind.COMPOUND:
            return None
        parent = node.parent
        if parent is None:
            return None
        if parent.kind is NodeKind.ELSE:
            parent = parent.parent
            if parent is None:
                return None
        return parent if parent.kind in BRANCH_KINDS else None

    def _open_scope(self, owner: SyntaxNode, block: SyntaxNode):
        scope = BranchScope(
            origin_line=owner.line,
            kind=owner.kind,
            body_line=block.line,
            closure=owner.end,
        )
        self._stack.push(scope)
        if owner.line not in self.body_lines:
            self.body_lines[owner.line] = block.line
            inline = self._inline_body(block)
            if inline is not None:
                self.layout.inline_branches[owner.line] = inline
        for stmt in self.tree.statements(block):
            self._stack.add_target(stmt.line)
        self._trace("Opened %s branch at line %d (closes %d:%d)",
                    owner.kind.name, owner.line, scope.closure.line, scope.closure.column)

    def _check_fall_through(self, node: SyntaxNode):
        top = self._stack.top
        if top is None or self._function is None:
            return
        if not self._function.contains(node.line):
            return
        if node.is_after(top.closure):
            self._stack.add_target(node.line)
            closed = self._stack.pop()
            self.completed.append(closed)
            self._trace("Closed branch at line %d with fall-through line %d",
                        closed.origin_line, node.line)

    def _drop_open_scopes(self):
        for scope in self._stack.clear():
            self._trace("Branch at line %d has no fall-through; dropped", scope.origin_line)

    # ────────────────────────────────────────────────────────────────
    #  Layout
    # ────────────────────────────────────────────────────────────────

    def _record_block(self, block: SyntaxNode):
        for stmt in self.tree.statements(block):
            self.layout.item_starts.add(stmt.start)
        self.layout.block_ends.add(block.end)

    def _record_case(self, case: SyntaxNode):
        value = case.field("value")
        for stmt in self.tree.statements(case):
            if stmt != value:
                self.layout.item_starts.add(stmt.start)

    def _inline_body(self, block: SyntaxNode) -> Optional[InlineBody]:
        """An InlineBody if ``block`` does not open on a line of its own."""
        stmts = self.tree.statements(block)
        has_items = bool(stmts) and stmts[0].line == block.line
        if has_items or block.end.line == block.line:
            return InlineBody(block.start, has_items)
        return None

    # ────────────────────────────────────────────────────────────────
    #  Registry population
    # ────────────────────────────────────────────────────────────────

    def _enter_function(self, node: SyntaxNode):
        self._drop_open_scopes()
        name, return_type = _function_signature(node)
        if name is None:
            return
        body = node.field("body")
        self._function = self.registry.register_function(
            name,
            def_line=node.line,
            end_line=node.end.line,
            return_type=return_type,
            body_line=body.line if body is not None else node.line,
        )
        if body is not None:
            inline = self._inline_body(body)
            if inline is not None:
                self.layout.inline_functions[name] = inline
        rest = self.tree.line_text(node.end.line)[node.end.column:]
        if rest.split("//", 1)[0].strip():
            self.layout.crowded_ends.add(name)
        self._trace("Function %s: lines %d-%d, returns %s",
                    name, node.line, node.end.line, return_type)

    def _record_declaration(self, node: SyntaxNode):
        for decl in declarators(node, self.registry.pointer_typedefs):
            if decl.is_function_pointer:
                if decl.value is not None:
                    target = first_identifier(decl.value)
                    if target is not None and self.registry.bind_function_pointer(decl.name, target.text):
                        self._trace("Function pointer %s -> %s", decl.name, target.text)
                continue
            if self.registry.declare_variable(decl.name, decl.line, decl.type_spelling):
                self._trace("Variable %s (%s) declared at line %d",
                            decl.name, decl.type_spelling, decl.line)

    def _record_typedef(self, node: SyntaxNode):
        for decl in declarators(node, self.registry.pointer_typedefs):
            if decl.is_function_pointer:
                self.registry.pointer_typedefs.add(decl.name)

    def _resolve_call(self, call: SyntaxNode):
        """Record the first known function or pointer named inside the call."""
        stmt = _enclosing_statement(call)
        at = stmt.start if stmt is not None else None
        caller = None
        if self._function is not None and self._function.contains(call.line):
            caller = self._function.name
        for n in call.walk():
            if n.kind is not NodeKind.DECL_REF:
                continue
            site = self.registry.resolve_call(n.text, call.line, at=at, caller=caller)
            if site is not None:
                self._trace("Call to %s at line %d", site.callee, call.line)
                return


# ═══════════════════════════════════════════════════════════════════════
#  Helpers
# ═══════════════════════════════════════════════════════════════════════

def _enclosing_statement(node: SyntaxNode) -> Optional[SyntaxNode]:
    """The block statement (direct child of a block or case) holding ``node``."""
    current = node
    for parent in node.ancestors():
        if parent.kind is NodeKind.COMPOUND:
            return current
        if parent.kind is NodeKind.CASE and current != parent.field("value"):
            return current
        current = parent
    return None


def _function_signature(node: SyntaxNode) -> Tuple[Optional[str], str]:
    """(name, return type spelling) of a function_definition."""
    stars = 0
    current = node.field("declarator")
    while current is not None and current.type in ("pointer_declarator", "attributed_declarator",
                                                   "parenthesized_declarator"):
        if current.type == "pointer_declarator":
            stars += 1
            current = current.field("declarator")
        else:
            kids = current.children
            current = kids[0] if kids else None
    if current is None or current.type != "function_declarator":
        return None, ""

    name_node = current.field("declarator")
    while name_node is not None and name_node.type != "identifier":
        kids = name_node.children
        name_node = kids[0] if kids else None
    if name_node is None:
        return None, ""

    parts = [c.text for c in node.children if c.type == "type_qualifier"]
    type_node = node.field("type")
    parts.append(type_node.text if type_node is not None else "int")
    return_type = " ".join(parts)
    if stars:
        return_type += " " + "*" * stars
    return name_node.text, return_type


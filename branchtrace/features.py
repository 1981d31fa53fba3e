"""
Seminal Feature Detector — variables tested directly by branch conditions.

For each if / for / while:
  • if    — the first variable operand of the condition
  • for   — the first operand in the condition or update that is not the
            induction variable
  • while — the first variable operand of a comparison or call argument

Only the first candidate of each statement is considered.  It is reported
if the variable was declared in the file and has not been reported before.
"""

import logging
from dataclasses import dataclass
from typing import List, Optional, Set

from branchtrace.registry import FunctionRegistry
from branchtrace.source_tree import SourceTree, SyntaxNode, NodeKind, declarators

logger = logging.getLogger(__name__)

_OPERAND_PARENTS = ("binary_expression", "argument_list")


@dataclass
class SeminalFeature:
    name: str
    line: int               # first declaration line
    type_spelling: str

    def describe(self) -> str:
        if self.type_spelling.replace(" ", "") == "FILE*":
            return f"Line {self.line}: size of file {self.name}"
        return f"Line {self.line}: {self.name}"


class FeatureDetector:
    """
    Usage:
        detector = FeatureDetector(tree, registry)
        for feature in detector.detect():
            print(feature.describe())
    """

    def __init__(self, tree: SourceTree, registry: FunctionRegistry, debug: bool = False):
        self.tree = tree
        self.registry = registry
        self.debug = debug
        self.features: List[SeminalFeature] = []
        self._reported: Set[str] = set()

    def detect(self) -> List[SeminalFeature]:
        """Inspect every if/for/while in the file."""
        for node in self.tree.iter_nodes():
            self._inspect(node)
        return self.features

    def detect_at_line(self, line: int) -> List[SeminalFeature]:
        """Inspect only the if/for/while statements starting on ``line``."""
        found = []
        for node in self.tree.iter_nodes():
            if node.line == line:
                feature = self._inspect(node)
                if feature is not None:
                    found.append(feature)
        return found

    def report(self) -> str:
        return "\n".join(f.describe() for f in self.features)

    # ────────────────────────────────────────────────────────────────
    #  Condition inspection
    # ────────────────────────────────────────────────────────────────

    def _inspect(self, node: SyntaxNode) -> Optional[SeminalFeature]:
        kind = node.kind
        if kind is NodeKind.IF:
            candidate = _if_operand(node.field("condition"))
        elif kind is NodeKind.FOR:
            candidate = _for_operand(node)
        elif kind is NodeKind.WHILE:
            candidate = _first_operand(node.field("condition"))
        else:
            return None
        if candidate is None:
            return None
        return self._qualify(candidate)

    def _qualify(self, ident: SyntaxNode) -> Optional[SeminalFeature]:
        name = ident.text
        declared = self.registry.variables.get(name)
        if declared is None:
            if self.debug:
                logger.info("Variable was not found: %s (line %d)", name, ident.line)
            return None
        if name in self._reported:
            return None

        type_spelling = resolve_type(ident, self.registry) or declared.type_spelling
        feature = SeminalFeature(name, declared.line, type_spelling)
        self._reported.add(name)
        self.features.append(feature)
        logger.debug("Seminal feature %s (%s) tested at line %d", name, type_spelling, ident.line)
        return feature


def _unwrap(expr: Optional[SyntaxNode]) -> Optional[SyntaxNode]:
    while expr is not None and expr.type == "parenthesized_expression":
        kids = expr.children
        expr = kids[0] if kids else None
    return expr


def _if_operand(condition: Optional[SyntaxNode]) -> Optional[SyntaxNode]:
    """Identifier used directly by an if condition."""
    expr = _unwrap(condition)
    if expr is None:
        return None
    if expr.kind is NodeKind.DECL_REF:
        return expr
    if expr.kind is NodeKind.BINARY_OP:
        for side in ("left", "right"):
            operand = _unwrap(expr.field(side))
            if operand is not None and operand.kind is NodeKind.DECL_REF:
                return operand
        return None
    if expr.type == "unary_expression":
        operand = _unwrap(expr.field("argument"))
        return operand if operand is not None and operand.kind is NodeKind.DECL_REF else None
    if expr.kind is NodeKind.CALL:
        return _first_operand(expr)
    return None


def _is_operand(ident: SyntaxNode) -> bool:
    parent = ident.parent
    while parent is not None and parent.type == "parenthesized_expression":
        parent = parent.parent
    return parent is not None and parent.type in _OPERAND_PARENTS


def _first_operand(expr: Optional[SyntaxNode], exclude: Optional[str] = None) -> Optional[SyntaxNode]:
    """First identifier below ``expr`` that is a comparison operand or call argument."""
    if expr is None:
        return None
    for n in expr.walk():
        if n.kind is NodeKind.DECL_REF and _is_operand(n) and n.text != exclude:
            return n
    return None


def _for_operand(node: SyntaxNode) -> Optional[SyntaxNode]:
    induction = _induction_variable(node.field("initializer"))
    for part in (node.field("condition"), node.field("update")):
        found = _first_operand(part, exclude=induction)
        if found is not None:
            return found
    return None


def _induction_variable(init: Optional[SyntaxNode]) -> Optional[str]:
    if init is None:
        return None
    if init.kind is NodeKind.VAR_DECL:
        decls = declarators(init)
        return decls[0].name if decls else None
    if init.type == "assignment_expression":
        left = init.field("left")
        return left.text if left is not None and left.kind is NodeKind.DECL_REF else None
    if init.type == "comma_expression":
        return _induction_variable(init.field("left"))
    return None


# ═══════════════════════════════════════════════════════════════════════
#  Type resolution
# ═══════════════════════════════════════════════════════════════════════

def resolve_type(ident: SyntaxNode, registry: Optional[FunctionRegistry] = None) -> Optional[str]:
    """Type spelling of the declaration ``ident`` refers to, found by scope lookup."""
    name = ident.text
    typedefs = registry.pointer_typedefs if registry is not None else None
    use_start = ident.start

    for scope in ident.ancestors():
        if scope.kind is NodeKind.COMPOUND:
            for child in scope.children:
                if child.start >= use_start:
                    break
                if child.kind is NodeKind.VAR_DECL:
                    spelling = _spelling_in(child, name, typedefs)
                    if spelling:
                        return spelling
        elif scope.kind is NodeKind.FOR:
            init = scope.field("initializer")
            if init is not None and init.kind is NodeKind.VAR_DECL:
                spelling = _spelling_in(init, name, typedefs)
                if spelling:
                    return spelling
        elif scope.kind is NodeKind.FUNCTION_DECL:
            for param in scope.walk():
                if param.kind is NodeKind.PARM_DECL:
                    spelling = _spelling_in(param, name, typedefs)
                    if spelling:
                        return spelling
                elif param.kind is NodeKind.COMPOUND:
                    break
        elif scope.type == "translation_unit":
            for child in scope.children:
                if child.start >= use_start:
                    break
                if child.kind is NodeKind.VAR_DECL:
                    spelling = _spelling_in(child, name, typedefs)
                    if spelling:
                        return spelling
    return None


def _spelling_in(decl: SyntaxNode, name: str, typedefs) -> Optional[str]:
    for d in declarators(decl, typedefs):
        if d.name == name:
            return d.type_spelling
    return None

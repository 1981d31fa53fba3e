"""
Function & Call Registry — what functions exist and who calls whom.

Filled during the single discovery traversal:
  • FunctionInfo per function definition (line range, return type)
  • Direct recursion detection (a call to f inside f's own body)
  • Function-pointer variables bound to the function they point to
  • Call sites with the statement that holds them, for pointer logging
  • First declaration of every variable name (used by feature detection)
"""

import logging
from typing import List, Dict, Optional, Set
from dataclasses import dataclass

from branchtrace.source_tree import Position

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════
#  Data types
# ═══════════════════════════════════════════════════════════════════════

@dataclass
class FunctionInfo:
    """A function definition in the analyzed file."""
    name: str
    def_line: int           # 1-indexed, first line of the definition
    end_line: int           # line of the closing brace
    return_type: str
    body_line: int = 0      # line of the opening brace
    is_recursive: bool = False

    @property
    def is_main(self) -> bool:
        return self.name == "main"

    @property
    def returns_void(self) -> bool:
        return self.return_type.strip() == "void"

    def contains(self, line: int) -> bool:
        return self.def_line <= line <= self.end_line


@dataclass
class CallSite:
    """
    A resolved call: ``callee`` is always a function name.

    ``at`` is the start of the block statement holding the call; its
    pointer is logged right before that statement.
    """
    line: int
    callee: str
    via_pointer: bool = False
    at: Optional[Position] = None

    @property
    def log_line(self) -> int:
        return self.at.line if self.at is not None else self.line


@dataclass
class VariableInfo:
    name: str
    line: int
    type_spelling: str


# ═══════════════════════════════════════════════════════════════════════
#  Registry
# ═══════════════════════════════════════════════════════════════════════

class FunctionRegistry:
    """Functions, function pointers, call sites and variable declarations of one file."""

    def __init__(self):
        self.functions: Dict[str, FunctionInfo] = {}
        self.function_pointers: Dict[str, str] = {}
        self.call_sites: List[CallSite] = []
        self.variables: Dict[str, VariableInfo] = {}
        # typedef names that denote a pointer-to-function type
        self.pointer_typedefs: Set[str] = set()

    # ── Registration ──

    def register_function(self, name: str, def_line: int, end_line: int,
                          return_type: str, body_line: int = 0) -> FunctionInfo:
        if name in self.functions:
            logger.warning("Function %s redefined at line %d", name, def_line)
        info = FunctionInfo(
            name=name,
            def_line=def_line,
            end_line=end_line,
            return_type=return_type,
            body_line=body_line or def_line,
        )
        self.functions[name] = info
        return info

    def bind_function_pointer(self, var_name: str, target: str) -> bool:
        """Bind ``var_name`` to ``target`` if ``target`` is a known function."""
        if target not in self.functions:
            logger.debug("Function pointer %s -> %s left unresolved", var_name, target)
            return False
        self.function_pointers[var_name] = target
        return True

    def declare_variable(self, name: str, line: int, type_spelling: str) -> bool:
        """Record the first declaration of ``name``; later ones are ignored."""
        if name in self.variables:
            return False
        self.variables[name] = VariableInfo(name, line, type_spelling)
        return True

    def resolve_call(self, token: str, line: int, at: Optional[Position] = None,
                     caller: Optional[str] = None) -> Optional[CallSite]:
        """
        Record a call of ``token`` made on ``line``.

        A direct call marks the callee recursive when it is made from the
        callee itself: by ``caller`` when known, otherwise when the callee's
        definition spans ``line`` (a one-line definition included).  Calls
        through a bound pointer are recorded against the pointee without
        the recursion check.  Unknown names are ignored.
        """
        fn = self.functions.get(token)
        if fn is not None:
            inside = fn.name == caller if caller is not None else fn.contains(line)
            if inside and not fn.is_recursive:
                fn.is_recursive = True
                logger.debug("Function %s is recursive (call at line %d)", fn.name, line)
            site = CallSite(line, fn.name, at=at)
        elif token in self.function_pointers:
            site = CallSite(line, self.function_pointers[token], via_pointer=True, at=at)
        else:
            return None
        self.call_sites.append(site)
        return site

    # ── Queries ──

    def calls_at(self, line: int) -> List[CallSite]:
        """Call sites whose pointer is logged on ``line``."""
        return [c for c in self.call_sites if c.log_line == line]

    def called_functions(self) -> Set[str]:
        return {c.callee for c in self.call_sites}

    def function_containing(self, line: int) -> Optional[FunctionInfo]:
        for fn in self.functions.values():
            if fn.contains(line):
                return fn
        return None

    def function_with_body_at(self, line: int) -> Optional[FunctionInfo]:
        """The function whose opening brace is on ``line``."""
        for fn in self.functions.values():
            if fn.body_line == line:
                return fn
        return None

    def functions_ending_at(self, line: int) -> List[FunctionInfo]:
        return [fn for fn in self.functions.values() if fn.end_line == line]

    def get_summary(self) -> dict:
        return {
            "functions": len(self.functions),
            "recursive": sum(1 for f in self.functions.values() if f.is_recursive),
            "function_pointers": len(self.function_pointers),
            "call_sites": len(self.call_sites),
            "variables": len(self.variables),
        }

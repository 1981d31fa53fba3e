"""
Branch Trace — MCP Server

Exposes tools over the Model Context Protocol:

  1. load_source          — parse a C file and discover its branches
  2. branch_dictionary    — list branch/target identifiers, write the .branch_dict file
  3. function_summary     — functions, recursion, function pointers, call sites
  4. instrument_source    — write the instrumented .modified.c file
  5. compile_instrumented — compile the instrumented program
  6. branch_trace         — build, run and return the execution trace
  7. seminal_features     — variables tested directly by branch conditions
  8. run_profiler         — profile the original program with valgrind
"""

from mcp.server.fastmcp import FastMCP
import os
import sys
import logging

# Ensure the branchtrace package is importable
sys.path.append(os.path.dirname(os.path.abspath(__file__)))

from branchtrace.dictionary import DuplicatePolicy
from branchtrace.session import TraceSession
from branchtrace.source_tree import SourceFileError, ParseError
from branchtrace.toolchain import ToolchainConfig, ToolchainError

logger = logging.getLogger(__name__)

# ═══════════════════════════════════════════════════════════════════════
#  Server Setup
# ═══════════════════════════════════════════════════════════════════════

mcp = FastMCP("Branch Trace")

session = None


def _split_csv(value: str) -> list:
    return [v.strip() for v in value.split(",") if v.strip()]


def _require_session():
    if session is None:
        raise LookupError("No source loaded. Call load_source first.")
    return session


# ═══════════════════════════════════════════════════════════════════════
#  Tool 1 — Load Source
# ═══════════════════════════════════════════════════════════════════════

@mcp.tool()
def load_source(source_path: str, out_dir: str = "out", include_dirs: str = "",
                defines: str = "", deduplicate: bool = False, reformat: bool = False,
                debug: bool = False) -> str:
    """
    Parses a C source file and runs branch discovery on it.

    Args:
        source_path:  Path to the C file to analyze.
        out_dir:      Directory for the dictionary, instrumented source and executables.
        include_dirs: Comma-separated include directories used to evaluate #if/#ifdef.
        defines:      Comma-separated macro definitions (NAME=VALUE or NAME).
        deduplicate:  Keep the first identifier when two scopes record the same
                      (branch, target) pair instead of the last one.
        reformat:     Analyse a clang-format normalised copy of the file (needs
                      clang-format on PATH; the file is analysed as written otherwise).
        debug:        Log every discovery step at INFO level.
    """
    global session

    if not os.path.exists(source_path):
        return f"Error: Source file not found at {source_path}"

    try:
        if session is not None:
            session.close()
        config = ToolchainConfig(
            out_dir=out_dir,
            include_dirs=_split_csv(include_dirs),
            defines=_split_csv(defines),
            duplicate_policy=DuplicatePolicy.DEDUPLICATE if deduplicate else DuplicatePolicy.OVERWRITE,
            reformat=reformat,
        )
        session = TraceSession(source_path, config=config, debug=debug)
        dictionary = session.collect()
        summary = session.registry.get_summary()
        return (
            f"Loaded `{source_path}`.\n"
            f"Branches: {len(dictionary.branch_lines())}, "
            f"dictionary entries: {len(dictionary)}.\n"
            f"Functions: {summary['functions']} ({summary['recursive']} recursive), "
            f"function pointers: {summary['function_pointers']}, "
            f"call sites: {summary['call_sites']}, variables: {summary['variables']}."
        )
    except (SourceFileError, ParseError) as e:
        session = None
        return f"Error loading source: {e}"


# ═══════════════════════════════════════════════════════════════════════
#  Tool 2 — Branch Dictionary
# ═══════════════════════════════════════════════════════════════════════

@mcp.tool()
def branch_dictionary(write_file: bool = True) -> str:
    """
    Returns the branch dictionary as a markdown table and (optionally)
    writes the <name>.branch_dict file to the output directory.
    """
    try:
        s = _require_session()
        dictionary = s.collect()
        entries = dictionary.entries()

        report = f"# Branch Dictionary for `{dictionary.source_file}`\n\n"
        if write_file:
            report += f"Written to `{s.write_dictionary()}`.\n\n"
        if not entries:
            return report + "No branch has a reachable target line."

        report += "| Identifier | Branch line | Target line |\n"
        report += "|------------|-------------|-------------|\n"
        for e in entries:
            report += f"| {e.identifier} | {e.branch_line} | {e.target_line} |\n"
        return report
    except (LookupError, OSError) as e:
        return f"Error: {e}"


# ═══════════════════════════════════════════════════════════════════════
#  Tool 3 — Function Summary
# ═══════════════════════════════════════════════════════════════════════

@mcp.tool()
def function_summary() -> str:
    """
    Lists the functions of the loaded file with their line ranges and
    recursion flag, plus resolved function pointers and call sites.
    """
    try:
        registry = _require_session().registry
    except LookupError as e:
        return f"Error: {e}"

    report = "## Functions\n\n| Name | Lines | Returns | Recursive |\n|------|-------|---------|-----------|\n"
    for fn in sorted(registry.functions.values(), key=lambda f: f.def_line):
        report += (f"| `{fn.name}` | {fn.def_line}-{fn.end_line} | `{fn.return_type}` | "
                   f"{'yes' if fn.is_recursive else 'no'} |\n")

    if registry.function_pointers:
        report += "\n## Function pointers\n\n"
        for var, target in sorted(registry.function_pointers.items()):
            report += f"- `{var}` → `{target}`\n"

    if registry.call_sites:
        report += "\n## Call sites\n\n"
        for site in registry.call_sites:
            via = " (via pointer)" if site.via_pointer else ""
            report += f"- line {site.line}: `{site.callee}`{via}\n"
    return report


# ═══════════════════════════════════════════════════════════════════════
#  Tool 4 — Instrument Source
# ═══════════════════════════════════════════════════════════════════════

@mcp.tool()
def instrument_source(preview_lines: int = 40) -> str:
    """
    Writes the instrumented program (<name>.modified.c) and shows its
    first lines.
    """
    try:
        s = _require_session()
        path = s.transform()
        with open(path, "r", encoding="utf-8") as f:
            lines = f.read().splitlines()
    except (LookupError, OSError) as e:
        return f"Error: {e}"

    shown = "\n".join(lines[:preview_lines])
    more = f"\n... ({len(lines) - preview_lines} more lines)" if len(lines) > preview_lines else ""
    return f"Instrumented source written to `{path}`.\n\n```c\n{shown}{more}\n```"


# ═══════════════════════════════════════════════════════════════════════
#  Tool 5 — Compile Instrumented
# ═══════════════════════════════════════════════════════════════════════

@mcp.tool()
def compile_instrumented() -> str:
    """Compiles the instrumented program with the system C compiler."""
    try:
        s = _require_session()
        exe = s.compile()
        return f"Compiled `{s.instrumented_path}` → `{exe}`."
    except (LookupError, ToolchainError, OSError) as e:
        return f"Error: {e}"


# ═══════════════════════════════════════════════════════════════════════
#  Tool 6 — Branch Trace
# ═══════════════════════════════════════════════════════════════════════

@mcp.tool()
def branch_trace(max_lines: int = 200) -> str:
    """
    Writes the dictionary, instruments, compiles and runs the program,
    returning the branch identifiers and function addresses it printed.
    """
    try:
        s = _require_session()
        trace = s.trace()
    except (LookupError, ToolchainError, OSError) as e:
        return f"Error: {e}"

    if not trace:
        return "The program produced no trace output."
    shown = trace[:max_lines]
    more = f"\n... ({len(trace) - max_lines} more lines)" if len(trace) > max_lines else ""
    return f"Trace ({len(trace)} lines):\n\n```\n" + "\n".join(shown) + f"{more}\n```"


# ═══════════════════════════════════════════════════════════════════════
#  Tool 7 — Seminal Features
# ═══════════════════════════════════════════════════════════════════════

@mcp.tool()
def seminal_features(line_number: int = 0) -> str:
    """
    Reports declared variables tested directly by if/for/while conditions.

    Args:
        line_number: If > 0, only inspect the branch starting on this line.
    """
    try:
        features = _require_session().seminal_features(line_number if line_number > 0 else None)
    except LookupError as e:
        return f"Error: {e}"

    if not features:
        return "No seminal features found."
    return "\n".join(f.describe() for f in features)


# ═══════════════════════════════════════════════════════════════════════
#  Tool 8 — Run Profiler
# ═══════════════════════════════════════════════════════════════════════

@mcp.tool()
def run_profiler() -> str:
    """
    Compiles the original program and profiles it with valgrind/callgrind,
    then runs the configured log parser script on the result.
    """
    try:
        log_file = _require_session().profile()
    except (LookupError, ToolchainError) as e:
        return f"Error: {e}"
    if log_file is None:
        return "Profiling was skipped or failed; see the server log for details."
    return f"Profiler log written to `{log_file}`."


def main():
    mcp.run()


if __name__ == "__main__":
    main()

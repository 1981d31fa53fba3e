"""
Preprocessor — pcpp wrapper that tells which source lines are active.

tree-sitter parses both arms of every ``#if``/``#ifdef``.  A compiler only
ever sees the active arm, so branch discovery must not report branches that
live in disabled code (``#if 0`` blocks, ``#ifdef`` arms whose macro is not
defined).  The engine expands the file with pcpp, follows the ``#line``
directives it emits, and maps every non-blank output line back to the
original line it came from.
"""

import os
import io
import re
import logging
from typing import List, Dict, Optional, Tuple, Set
from pcpp import Preprocessor, OutputDirective, Action

logger = logging.getLogger(__name__)

_LINE_DIRECTIVE_RE = re.compile(r'^#line\s+(\d+)\s+"([^"]+)"')


class _QuietPreprocessor(Preprocessor):
    """A pcpp Preprocessor that keeps missing includes and errors off stderr.

    System headers are usually not on the include path.  Missing includes
    are passed through untouched and all pcpp diagnostics go to ``logging``
    at DEBUG level.
    """

    def on_include_not_found(self, is_malformed, is_system_include, curdir, includepath):
        logger.debug("pcpp: include not found: %s (system=%s)", includepath, is_system_include)
        raise OutputDirective(Action.IgnoreAndPassThrough)

    def on_error(self, file, line, msg):
        logger.debug("pcpp: %s:%s: %s", file, line, msg)


class PreprocessorEngine:
    """
    Expands a single C file with pcpp and records where each output line
    came from.

    Results are cached per path; call ``clear()`` after changing defines
    or include directories.
    """

    def __init__(self, include_dirs: Optional[List[str]] = None,
                 defines: Optional[Dict[str, str]] = None):
        self.include_dirs: List[str] = list(include_dirs or [])
        self.defines: Dict[str, str] = dict(defines or {})
        # Cache: file_path -> (expanded_text, [(original_line, original_file, text)])
        self._cache: Dict[str, Tuple[str, List[Tuple[int, str, str]]]] = {}

    def clear(self):
        self._cache.clear()

    def preprocess(self, file_path: str) -> Tuple[str, List[Tuple[int, str, str]]]:
        """
        Preprocess a file and return (expanded_text, line_map).

        ``line_map[i]`` describes line ``i + 1`` of the expanded text as
        ``(original_line, original_file, text)``.  On failure the result is
        ``("", [])`` and the error is logged.
        """
        key = os.path.abspath(file_path)
        if key in self._cache:
            return self._cache[key]

        if not os.path.isfile(key):
            logger.error("Preprocessor: file not found %s", key)
            return "", []

        pp = _QuietPreprocessor()
        for d in self.include_dirs:
            pp.add_path(os.path.abspath(d))
        for k, v in self.defines.items():
            pp.define(f"{k} {v}")

        output_buffer = io.StringIO()
        try:
            with open(key, "r", encoding="utf-8", errors="replace") as f:
                pp.parse(f.read(), source=key)
            pp.write(output_buffer)
        except Exception as e:
            logger.error("Preprocessing failed for %s: %s", key, e)
            return "", []

        expanded_text = output_buffer.getvalue()

        # #line N "file" -> the *next* output line is line N of file
        line_map: List[Tuple[int, str, str]] = []
        current_line = 1
        current_file = key
        for line in expanded_text.splitlines():
            m = _LINE_DIRECTIVE_RE.match(line)
            if m:
                current_line = int(m.group(1))
                current_file = m.group(2)
                line_map.append((current_line - 1, current_file, ""))
            else:
                line_map.append((current_line, current_file, line))
                current_line += 1

        self._cache[key] = (expanded_text, line_map)
        return self._cache[key]

    def active_lines(self, file_path: str) -> Set[int]:
        """
        Original line numbers of ``file_path`` that carry code in the
        expanded output.

        pcpp replaces short skipped regions with blank lines instead of a
        ``#line`` jump, so only lines with remaining text count as active.
        The file names in its ``#line`` directives are relative to the
        working directory.
        """
        _, line_map = self.preprocess(file_path)
        target_file = _norm_path(file_path)
        return {
            orig_line
            for orig_line, orig_file, text in line_map
            if text.strip() and _norm_path(orig_file) == target_file
        }


def _norm_path(p: str) -> str:
    """Absolute, case-normalized form of ``p`` for comparison."""
    return os.path.normcase(os.path.abspath(p))

"""
Trace Session — one end-to-end run over a single C file.

    [clang-format] → parse → discover branches → build dictionary
          → write dictionary file → instrument → compile → run → trace

Seminal feature detection and profiling reuse the same parsed tree and
registry.  With ``reformat`` set, analysis and instrumentation work on a
clang-format normalised copy in the output directory; the original file is
never modified.  The session owns its SyntaxTreeProvider and closes it on
exit.
"""

import os
import logging
from dataclasses import dataclass, field
from typing import List, Dict, Optional

from branchtrace.dictionary import BranchDictionary
from branchtrace.discovery import BranchCollector, BranchScope, Layout
from branchtrace.features import FeatureDetector, SeminalFeature
from branchtrace.files import atomic_write, read_lines
from branchtrace.instrumenter import Instrumenter
from branchtrace.preprocessor import PreprocessorEngine
from branchtrace.registry import FunctionRegistry
from branchtrace.source_tree import SyntaxTreeProvider, SourceTree
from branchtrace.toolchain import (
    ToolchainConfig, Profiler, compile_source, find_compiler, format_source, run_executable,
)

logger = logging.getLogger(__name__)


@dataclass
class TraceResult:
    dictionary_path: str
    instrumented_path: str
    executable_path: str
    trace: List[str] = field(default_factory=list)
    profile_log: Optional[str] = None


class TraceSession:
    """
    Usage:
        with TraceSession("prog.c") as session:
            result = session.run()
            print(result.trace)
    """

    def __init__(self, source_path: str, config: Optional[ToolchainConfig] = None,
                 provider: Optional[SyntaxTreeProvider] = None, debug: bool = False):
        self.source_path = source_path
        # the file that is parsed and instrumented: the source or its formatted copy
        self.analysis_path = source_path
        self.config = config or ToolchainConfig()
        self.debug = debug
        self._owns_provider = provider is None
        self.provider = provider or self._make_provider()

        self.tree: Optional[SourceTree] = None
        self.registry: Optional[FunctionRegistry] = None
        self.scopes: List[BranchScope] = []
        self.body_lines: Dict[int, int] = {}
        self.layout: Optional[Layout] = None
        self.dictionary: Optional[BranchDictionary] = None

    def _make_provider(self) -> SyntaxTreeProvider:
        preprocessor = None
        if self.config.preprocess:
            preprocessor = PreprocessorEngine(self.include_dirs, self.config.define_map())
        return SyntaxTreeProvider(preprocessor=preprocessor, strict=self.config.strict_parse)

    @property
    def include_dirs(self) -> List[str]:
        """Configured include directories, then the source file's own directory."""
        return [*self.config.include_dirs, os.path.dirname(os.path.abspath(self.source_path))]

    # ── Output paths ──

    @property
    def formatted_path(self) -> str:
        return self.config.output_path(self.source_path, ".formatted.c")

    @property
    def dictionary_path(self) -> str:
        return self.config.output_path(self.source_path, ".branch_dict")

    @property
    def instrumented_path(self) -> str:
        return self.config.output_path(self.source_path, ".modified.c")

    @property
    def executable_path(self) -> str:
        return self.config.output_path(self.source_path, ".modified.out")

    # ────────────────────────────────────────────────────────────────
    #  Analysis
    # ────────────────────────────────────────────────────────────────

    def collect(self) -> BranchDictionary:
        """Parse the file, discover branches and number them."""
        if self.dictionary is not None:
            return self.dictionary

        if self.config.reformat:
            self.analysis_path = format_source(self.source_path, self.formatted_path,
                                               self.config) or self.source_path
        self.tree = self.provider.parse(self.analysis_path)
        self.registry = FunctionRegistry()
        collector = BranchCollector(self.tree, self.registry, debug=self.debug)
        self.scopes = collector.collect()
        self.body_lines = collector.body_lines
        self.layout = collector.layout
        self.dictionary = BranchDictionary.build(
            self.scopes,
            os.path.basename(self.source_path),
            policy=self.config.duplicate_policy,
            prefix=self.config.identifier_prefix,
        )
        logger.info("%s: %d branches, %d dictionary entries, %d functions",
                    self.source_path, len(self.dictionary.branch_lines()),
                    len(self.dictionary), len(self.registry.functions))
        return self.dictionary

    def write_dictionary(self) -> str:
        return self.collect().write(self.dictionary_path)

    def instrumented_source(self) -> str:
        dictionary = self.collect()
        lines = read_lines(self.analysis_path)
        return Instrumenter(lines, dictionary, self.registry, self.body_lines,
                            layout=self.layout).transform()

    def transform(self) -> str:
        """Write the instrumented program and return its path."""
        atomic_write(self.instrumented_path, self.instrumented_source())
        return self.instrumented_path

    def seminal_features(self, line: Optional[int] = None) -> List[SeminalFeature]:
        self.collect()
        detector = FeatureDetector(self.tree, self.registry, debug=self.debug)
        if line is None:
            return detector.detect()
        return detector.detect_at_line(line)

    # ────────────────────────────────────────────────────────────────
    #  Toolchain
    # ────────────────────────────────────────────────────────────────

    def compile(self, compiler: Optional[str] = None) -> str:
        """Write the instrumented program for the current source and compile it."""
        src_path = self.transform()
        return compile_source(src_path, self.executable_path, self.config, compiler,
                              include_dirs=self.include_dirs)

    def trace(self) -> List[str]:
        """Build the instrumented program, run it and return its output lines."""
        self.write_dictionary()
        exe = self.compile()
        return run_executable(exe, timeout=self.config.run_timeout)

    def profile(self) -> Optional[str]:
        return Profiler(self.config).run(self.source_path)

    def run(self, profile: bool = False) -> TraceResult:
        compiler = find_compiler(self.config.compiler)
        dict_path = self.write_dictionary()
        exe = self.compile(compiler)
        result = TraceResult(dict_path, self.instrumented_path, exe)
        if profile:
            result.profile_log = Profiler(self.config).run(self.source_path, compiler)
        result.trace = run_executable(exe, timeout=self.config.run_timeout)
        return result

    def close(self):
        if self._owns_provider:
            self.provider.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
        return False

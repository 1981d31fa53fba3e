"""
Toolchain — formatter, compiler, traced program run and optional profiler.

All external processes run synchronously with captured output.  A missing
compiler or a failed compilation raises ToolchainError; the formatter
(clang-format) and the profiler (valgrind + log parser script) are
best-effort and only log their failures.
"""

import os
import sys
import glob
import shlex
import shutil
import logging
import sysconfig
import subprocess
from typing import Iterable, List, Optional

from pydantic import BaseModel, Field

from branchtrace.dictionary import DuplicatePolicy
from branchtrace.files import atomic_write

logger = logging.getLogger(__name__)


# One statement per line, every block body on lines of its own.
FORMAT_STYLE = (
    "{BasedOnStyle: LLVM, ColumnLimit: 0, "
    "AllowShortBlocksOnASingleLine: Never, "
    "AllowShortIfStatementsOnASingleLine: Never, "
    "AllowShortLoopsOnASingleLine: false, "
    "AllowShortFunctionsOnASingleLine: None, "
    "AllowShortCaseLabelsOnASingleLine: false}"
)


class ToolchainError(RuntimeError):
    """No usable compiler, or compilation failed."""


class ToolchainConfig(BaseModel):
    """Settings for one tracing run."""
    out_dir: str = "out"
    compiler: Optional[str] = None
    optimization: str = "-O0"
    compiler_flags: List[str] = Field(default_factory=lambda: ["-w"])
    profiler: str = "valgrind"
    profiler_args: List[str] = Field(default_factory=lambda: ["--tool=callgrind", "--dump-instr=yes"])
    log_parser_script: str = "valgrind_parser.py"
    identifier_prefix: str = "br_"
    duplicate_policy: DuplicatePolicy = DuplicatePolicy.OVERWRITE
    include_dirs: List[str] = Field(default_factory=list)
    defines: List[str] = Field(default_factory=list)
    preprocess: bool = True
    strict_parse: bool = False
    run_timeout: Optional[float] = None
    reformat: bool = False
    formatter: str = "clang-format"
    format_style: str = FORMAT_STYLE

    def output_path(self, source_path: str, suffix: str) -> str:
        return os.path.join(self.out_dir, os.path.basename(source_path) + suffix)

    def define_map(self) -> dict:
        """``["A=1", "B"]`` -> ``{"A": "1", "B": "1"}``"""
        result = {}
        for define in self.defines:
            define = define.strip()
            if not define:
                continue
            if "=" in define:
                name, value = define.split("=", 1)
                result[name.strip()] = value.strip()
            else:
                result[define] = "1"
        return result


# ═══════════════════════════════════════════════════════════════════════
#  Compiler
# ═══════════════════════════════════════════════════════════════════════

def _builtin_compiler() -> Optional[str]:
    """First word of the CC that built this Python, if any."""
    cc = sysconfig.get_config_var("CC")
    if not cc:
        return None
    parts = shlex.split(cc)
    return parts[0] if parts else None


def find_compiler(preferred: Optional[str] = None) -> str:
    """Return the first compiler found on PATH: preferred, built-in, then $CC."""
    candidates = [preferred, _builtin_compiler(), os.environ.get("CC")]
    for candidate in candidates:
        if candidate and shutil.which(candidate):
            logger.debug("Using C compiler %s", candidate)
            return candidate
    raise ToolchainError("No viable C compiler found on system")


def compile_source(source_path: str, exe_path: str, config: ToolchainConfig,
                   compiler: Optional[str] = None, include_dirs: Iterable[str] = ()) -> str:
    """Compile ``source_path`` into ``exe_path`` and return ``exe_path``."""
    cc = compiler or find_compiler(config.compiler)
    os.makedirs(os.path.dirname(os.path.abspath(exe_path)), exist_ok=True)
    includes = [f"-I{d}" for d in include_dirs]
    cmd = [cc, *config.compiler_flags, config.optimization, *includes, source_path, "-o", exe_path]
    logger.debug("Compiling: %s", " ".join(cmd))
    try:
        proc = subprocess.run(cmd, check=False, capture_output=True, text=True)
    except OSError as e:
        raise ToolchainError(f"Could not run {cc}: {e}") from e
    if proc.returncode != 0:
        raise ToolchainError(
            f"Compilation of {source_path} failed (exit {proc.returncode}):\n{proc.stderr.strip()}"
        )
    return exe_path


# ═══════════════════════════════════════════════════════════════════════
#  Formatter
# ═══════════════════════════════════════════════════════════════════════

def format_source(source_path: str, dest_path: str, config: ToolchainConfig) -> Optional[str]:
    """
    Write a clang-formatted copy of ``source_path`` to ``dest_path``.

    Returns ``dest_path``, or None if the formatter is missing or fails;
    the source itself is never modified.
    """
    if not shutil.which(config.formatter):
        logger.warning("Formatter %s not found; analysing %s as written",
                       config.formatter, source_path)
        return None
    cmd = [config.formatter, f"--style={config.format_style}", source_path]
    logger.debug("Formatting: %s", " ".join(cmd))
    try:
        proc = subprocess.run(cmd, check=False, capture_output=True, text=True)
    except OSError as e:
        logger.warning("Formatter failed to start: %s", e)
        return None
    if proc.returncode != 0:
        logger.warning("Formatter exited with status %d: %s", proc.returncode, proc.stderr.strip())
        return None
    atomic_write(dest_path, proc.stdout)
    return dest_path


# ═══════════════════════════════════════════════════════════════════════
#  Trace
# ═══════════════════════════════════════════════════════════════════════

def run_executable(exe_path: str, timeout: Optional[float] = None) -> List[str]:
    """Run a traced program and return its stdout lines."""
    if not os.path.isfile(exe_path):
        raise ToolchainError(f"Executable not found: {exe_path}")
    try:
        proc = subprocess.run([os.path.abspath(exe_path)], check=False, capture_output=True,
                              text=True, timeout=timeout)
    except subprocess.TimeoutExpired as e:
        raise ToolchainError(f"{exe_path} timed out after {timeout}s") from e
    except OSError as e:
        raise ToolchainError(f"Could not run {exe_path}: {e}") from e
    if proc.returncode != 0:
        logger.warning("%s exited with status %d", exe_path, proc.returncode)
    return proc.stdout.splitlines()


# ═══════════════════════════════════════════════════════════════════════
#  Profiler
# ═══════════════════════════════════════════════════════════════════════

class Profiler:
    """
    Profiles the uninstrumented program with valgrind/callgrind and hands
    the log to an external parser script.
    """

    def __init__(self, config: ToolchainConfig):
        self.config = config

    def run(self, source_path: str, compiler: Optional[str] = None) -> Optional[str]:
        """
        Returns the valgrind log path, or None if profiling failed.

        Compiling the original program is not optional: its failure raises
        ToolchainError like any other compilation.
        """
        exe = compile_source(source_path, self.config.output_path(source_path, ".original.out"),
                             self.config, compiler, include_dirs=self.config.include_dirs)
        log_file = self.config.output_path(source_path, ".VALGRIND_OUT")

        if not shutil.which(self.config.profiler):
            logger.warning("Profiler %s not found; skipping profiling", self.config.profiler)
            return None

        cmd = [self.config.profiler, *self.config.profiler_args, f"--log-file={log_file}",
               os.path.abspath(exe)]
        try:
            proc = subprocess.run(cmd, check=False, capture_output=True, text=True)
        except OSError as e:
            logger.warning("Profiler failed to start: %s", e)
            return None
        if proc.returncode != 0:
            logger.warning("Profiler exited with status %d: %s", proc.returncode, proc.stderr.strip())
            return None

        self._remove_callgrind_dumps()
        self._run_log_parser(log_file)
        return log_file

    @staticmethod
    def _remove_callgrind_dumps():
        for dump in glob.glob("callgrind.out*"):
            try:
                os.remove(dump)
            except OSError as e:
                logger.debug("Could not remove %s: %s", dump, e)

    def _run_log_parser(self, log_file: str) -> bool:
        script = self.config.log_parser_script
        if not os.path.isfile(script):
            logger.warning("Log parser script %s not found; raw log kept at %s", script, log_file)
            return False
        proc = subprocess.run([sys.executable, script, log_file], check=False,
                              capture_output=True, text=True)
        if proc.returncode != 0:
            logger.warning("Log parser failed (exit %d): %s", proc.returncode, proc.stderr.strip())
            return False
        return True

"""
End-to-end runs over the fixtures.

The compile/run tests need a C compiler on PATH and are skipped otherwise.
"""
import unittest
import os
import sys
import shutil
import tempfile
from unittest import mock

# Add project root to path
PROJECT_ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, PROJECT_ROOT)

from branchtrace.dictionary import parse_dictionary
from branchtrace.instrumenter import TRANSFORM_HEADER
from branchtrace.session import TraceSession
from branchtrace.toolchain import ToolchainConfig, ToolchainError, find_compiler

FIXTURES = os.path.join(PROJECT_ROOT, "tests", "fixtures")

try:
    COMPILER = find_compiler()
except ToolchainError:
    COMPILER = None


class TestSessionFiles(unittest.TestCase):

    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.config = ToolchainConfig(out_dir=self.tmp.name)

    def tearDown(self):
        self.tmp.cleanup()

    def test_output_paths(self):
        with TraceSession(os.path.join(FIXTURES, "loops.c"), self.config) as session:
            self.assertEqual(session.dictionary_path, os.path.join(self.tmp.name, "loops.c.branch_dict"))
            self.assertEqual(session.instrumented_path, os.path.join(self.tmp.name, "loops.c.modified.c"))
            self.assertEqual(session.executable_path, os.path.join(self.tmp.name, "loops.c.modified.out"))

    def test_dictionary_and_transform_written(self):
        with TraceSession(os.path.join(FIXTURES, "recursion.c"), self.config) as session:
            dict_path = session.write_dictionary()
            src_path = session.transform()

        with open(dict_path) as f:
            source_file, entries = parse_dictionary(f.read())
        self.assertEqual(source_file, "recursion.c")
        self.assertEqual([e.identifier for e in entries], ["br_1", "br_2", "br_3", "br_4"])

        with open(src_path) as f:
            text = f.read()
        self.assertTrue(text.startswith("#include <stdio.h>\n#define LOG(BP)"))
        self.assertIn("LOG_PTR(fact_PTR);", text)

    def test_collect_is_cached(self):
        with TraceSession(os.path.join(FIXTURES, "single_if.c"), self.config) as session:
            self.assertIs(session.collect(), session.collect())

    def test_disabled_code_skipped_by_default(self):
        with TraceSession(os.path.join(FIXTURES, "disabled.c"), self.config) as session:
            self.assertEqual(session.collect().branch_lines(), [8])

        config = ToolchainConfig(out_dir=self.tmp.name, preprocess=False)
        with TraceSession(os.path.join(FIXTURES, "disabled.c"), config) as session:
            self.assertEqual(session.collect().branch_lines(), [4, 8])

    def test_seminal_features(self):
        with TraceSession(os.path.join(FIXTURES, "features.c"), self.config) as session:
            names = [f.name for f in session.seminal_features()]
            at_line = session.seminal_features(line=18)
        self.assertEqual(names, ["fp", "c", "n", "i"])
        self.assertEqual([f.name for f in at_line], ["i"])

    def test_compile_rewrites_stale_instrumented_file(self):
        with TraceSession(os.path.join(FIXTURES, "single_if.c"), self.config) as session:
            with open(session.instrumented_path, "w") as f:
                f.write("int main(void) { return 1; }\n")
            with mock.patch("branchtrace.session.compile_source",
                            return_value=session.executable_path) as compile_source:
                self.assertEqual(session.compile(), session.executable_path)

        with open(session.instrumented_path) as f:
            text = f.read()
        self.assertTrue(text.startswith(TRANSFORM_HEADER))
        self.assertIn('LOG("br_1");', text)
        args, kwargs = compile_source.call_args
        self.assertEqual(args[0], session.instrumented_path)
        self.assertIn(FIXTURES, kwargs["include_dirs"])


class TestReformat(unittest.TestCase):

    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.source = os.path.join(FIXTURES, "else_inline.c")
        with open(self.source) as f:
            self.original = f.read()

    def tearDown(self):
        self.tmp.cleanup()

    def _fake_formatter(self, source_path, dest_path, config):
        # stands in for clang-format: one statement per line
        with open(dest_path, "w") as f:
            f.write(self.original.replace("{ x = 1; }", "{\n        x = 1;\n    }")
                                 .replace("{ x = 2; }", "{\n        x = 2;\n    }"))
        return dest_path

    def test_formatted_copy_is_analysed(self):
        config = ToolchainConfig(out_dir=self.tmp.name, reformat=True)
        with mock.patch("branchtrace.session.format_source", side_effect=self._fake_formatter):
            with TraceSession(self.source, config) as session:
                dictionary = session.collect()
                text = session.instrumented_source()

        self.assertEqual(session.analysis_path, session.formatted_path)
        self.assertEqual(dictionary.source_file, "else_inline.c")
        self.assertEqual(sorted(dictionary.targets(3)), [4, 7, 9])
        self.assertEqual(session.layout.inline_branches, {})
        self.assertIn("    if (argc > 1) {\nBRANCH_0 = 1;\n", text)
        with open(self.source) as f:
            self.assertEqual(f.read(), self.original)

    def test_formatter_failure_keeps_source(self):
        config = ToolchainConfig(out_dir=self.tmp.name, reformat=True)
        with mock.patch("branchtrace.session.format_source", return_value=None):
            with TraceSession(self.source, config) as session:
                session.collect()
        self.assertEqual(session.analysis_path, self.source)

    def test_not_formatted_by_default(self):
        with mock.patch("branchtrace.session.format_source") as format_source:
            with TraceSession(self.source, ToolchainConfig(out_dir=self.tmp.name)) as session:
                session.collect()
        format_source.assert_not_called()
        self.assertEqual(session.analysis_path, self.source)

    @unittest.skipUnless(shutil.which("clang-format"), "clang-format not available")
    def test_clang_format_splits_one_line_blocks(self):
        config = ToolchainConfig(out_dir=self.tmp.name, reformat=True)
        with TraceSession(self.source, config) as session:
            session.collect()
        self.assertEqual(session.analysis_path, session.formatted_path)
        self.assertEqual(session.layout.inline_branches, {})


@unittest.skipUnless(COMPILER, "no C compiler available")
class TestTrace(unittest.TestCase):

    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.config = ToolchainConfig(out_dir=self.tmp.name, run_timeout=30)

    def tearDown(self):
        self.tmp.cleanup()

    def test_recursion_trace(self):
        with TraceSession(os.path.join(FIXTURES, "recursion.c"), self.config) as session:
            result = session.run()

        trace = result.trace
        self.assertEqual(trace[-1], "29")
        self.assertEqual(trace.count("br_1"), 3)
        self.assertEqual(trace.count("br_2"), 1)
        self.assertEqual(trace.count("br_4"), 3)
        self.assertEqual(trace.count("br_3"), 1)
        self.assertEqual(sum(1 for l in trace if l.startswith("func_")), 7)
        self.assertTrue(os.path.isfile(result.executable_path))

    def test_single_if_trace(self):
        with TraceSession(os.path.join(FIXTURES, "single_if.c"), self.config) as session:
            self.assertEqual(session.trace(), ["br_1", "br_2"])

    def test_multi_line_condition_trace(self):
        with TraceSession(os.path.join(FIXTURES, "multiline_condition.c"), self.config) as session:
            trace = session.trace()
        self.assertEqual(len(trace), 4)
        self.assertTrue(trace[0].startswith("func_"))
        self.assertEqual(trace[0], trace[1])
        self.assertEqual(trace[2:], ["br_1", "br_2"])

    def test_one_line_block_before_else_trace(self):
        with TraceSession(os.path.join(FIXTURES, "else_inline.c"), self.config) as session:
            self.assertEqual(session.trace(), ["br_3", "br_4"])

    def test_allman_trace(self):
        with TraceSession(os.path.join(FIXTURES, "allman.c"), self.config) as session:
            trace = session.trace()
        self.assertTrue(trace[0].startswith("func_"))
        self.assertEqual(trace[1:], ["br_3", "br_1", "br_3", "br_1", "br_4"])

    def test_one_line_recursive_function_trace(self):
        with TraceSession(os.path.join(FIXTURES, "oneline_recursion.c"), self.config) as session:
            trace = session.trace()
        self.assertEqual(len(trace), 5)
        self.assertEqual(len(set(trace)), 1)
        self.assertTrue(trace[0].startswith("func_"))

    def test_every_fixture_compiles(self):
        for name in sorted(os.listdir(FIXTURES)):
            if not name.endswith(".c"):
                continue
            with self.subTest(fixture=name):
                with TraceSession(os.path.join(FIXTURES, name), self.config) as session:
                    self.assertTrue(os.path.isfile(session.compile()))


if __name__ == "__main__":
    unittest.main()

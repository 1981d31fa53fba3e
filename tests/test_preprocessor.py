import unittest
import os
import sys
import tempfile

# Add project root to path
PROJECT_ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, PROJECT_ROOT)

from branchtrace.preprocessor import PreprocessorEngine

FIXTURES = os.path.join(PROJECT_ROOT, "tests", "fixtures")

FEATURE_SOURCE = (
    "int main(void) {\n"
    "    int x = 0;\n"
    "#ifdef FEATURE\n"
    "    x = FEATURE;\n"
    "#endif\n"
    "    return x;\n"
    "}\n"
)


class TestPreprocessorEngine(unittest.TestCase):

    def setUp(self):
        self.engine = PreprocessorEngine()
        self.disabled = os.path.join(FIXTURES, "disabled.c")

    def test_if_0_block_inactive(self):
        active = self.engine.active_lines(self.disabled)
        for line in (4, 5, 6):
            self.assertNotIn(line, active)
        for line in (2, 8, 9, 11):
            self.assertIn(line, active)

    def test_directives_are_not_active(self):
        active = self.engine.active_lines(self.disabled)
        self.assertNotIn(3, active)
        self.assertNotIn(7, active)

    def test_relative_and_absolute_paths_agree(self):
        relative = os.path.relpath(self.disabled)
        active = PreprocessorEngine().active_lines(relative)
        self.assertEqual(active, self.engine.active_lines(os.path.abspath(self.disabled)))
        self.assertIn(8, active)
        self.assertNotIn(4, active)

    def test_active_lines_outside_working_directory(self):
        cwd = os.getcwd()
        with tempfile.TemporaryDirectory() as elsewhere:
            os.chdir(elsewhere)
            try:
                active = PreprocessorEngine().active_lines(self.disabled)
            finally:
                os.chdir(cwd)
        self.assertIn(8, active)
        self.assertNotIn(4, active)

    def test_results_cached(self):
        first = self.engine.preprocess(self.disabled)
        self.assertIs(self.engine.preprocess(self.disabled), first)
        self.engine.clear()
        self.assertIsNot(self.engine.preprocess(self.disabled), first)

    def test_missing_file(self):
        with self.assertLogs("branchtrace.preprocessor", level="ERROR"):
            self.assertEqual(self.engine.preprocess("/nonexistent/missing.c"), ("", []))


class TestDefines(unittest.TestCase):

    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.path = os.path.join(self.tmp.name, "feature.c")
        with open(self.path, "w") as f:
            f.write(FEATURE_SOURCE)

    def tearDown(self):
        self.tmp.cleanup()

    def test_undefined_macro_disables_arm(self):
        self.assertNotIn(4, PreprocessorEngine().active_lines(self.path))

    def test_defined_macro_enables_arm(self):
        engine = PreprocessorEngine(defines={"FEATURE": "2"})
        self.assertIn(4, engine.active_lines(self.path))

    def test_defines_copied(self):
        defines = {"FEATURE": "1"}
        engine = PreprocessorEngine(defines=defines)
        defines["OTHER"] = "1"
        self.assertEqual(engine.defines, {"FEATURE": "1"})
        self.assertIn(4, engine.active_lines(self.path))


if __name__ == "__main__":
    unittest.main()

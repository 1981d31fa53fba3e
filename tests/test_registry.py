import unittest
import os
import sys

# Add project root to path
PROJECT_ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, PROJECT_ROOT)

from branchtrace.registry import FunctionRegistry, FunctionInfo
from branchtrace.source_tree import Position


class TestFunctionInfo(unittest.TestCase):

    def test_properties(self):
        fn = FunctionInfo("main", 3, 9, "int")
        self.assertTrue(fn.is_main)
        self.assertFalse(fn.returns_void)
        self.assertTrue(fn.contains(3))
        self.assertTrue(fn.contains(9))
        self.assertFalse(fn.contains(10))
        self.assertTrue(FunctionInfo("f", 1, 2, " void ").returns_void)

    def test_body_line_defaults_to_definition_line(self):
        reg = FunctionRegistry()
        fn = reg.register_function("f", 4, 8, "int")
        self.assertEqual(fn.body_line, 4)
        self.assertEqual(reg.register_function("g", 10, 14, "int", body_line=11).body_line, 11)


class TestCalls(unittest.TestCase):

    def setUp(self):
        self.reg = FunctionRegistry()
        self.reg.register_function("walk", 1, 10, "void")
        self.reg.register_function("main", 12, 20, "int")

    def test_direct_call(self):
        site = self.reg.resolve_call("walk", 15)
        self.assertEqual((site.line, site.callee, site.via_pointer), (15, "walk", False))
        self.assertFalse(self.reg.functions["walk"].is_recursive)
        self.assertEqual(self.reg.called_functions(), {"walk"})

    def test_recursive_call(self):
        self.reg.resolve_call("walk", 6)
        self.assertTrue(self.reg.functions["walk"].is_recursive)

    def test_call_on_definition_line_is_recursion(self):
        self.reg.register_function("step", 22, 22, "int")
        self.reg.resolve_call("step", 22)
        self.assertTrue(self.reg.functions["step"].is_recursive)

    def test_known_caller_decides_recursion(self):
        self.reg.register_function("g", 22, 22, "int")
        self.reg.resolve_call("g", 22, caller="main")
        self.assertFalse(self.reg.functions["g"].is_recursive)
        self.reg.resolve_call("walk", 15, caller="walk")
        self.assertTrue(self.reg.functions["walk"].is_recursive)

    def test_call_after_end_line_is_not_recursion(self):
        self.reg.resolve_call("walk", 11)
        self.assertFalse(self.reg.functions["walk"].is_recursive)

    def test_unknown_callee_ignored(self):
        self.assertIsNone(self.reg.resolve_call("printf", 15))
        self.assertEqual(self.reg.call_sites, [])

    def test_pointer_call(self):
        self.assertTrue(self.reg.bind_function_pointer("cb", "walk"))
        site = self.reg.resolve_call("cb", 16)
        self.assertEqual((site.callee, site.via_pointer), ("walk", True))
        self.assertEqual(self.reg.called_functions(), {"walk"})

    def test_pointer_to_unknown_function_not_bound(self):
        self.assertFalse(self.reg.bind_function_pointer("cb", "malloc"))
        self.assertIsNone(self.reg.resolve_call("cb", 16))

    def test_calls_at(self):
        self.reg.resolve_call("walk", 15)
        self.reg.resolve_call("main", 15)
        self.reg.resolve_call("walk", 16)
        self.assertEqual([s.callee for s in self.reg.calls_at(15)], ["walk", "main"])

    def test_calls_logged_at_statement_line(self):
        self.reg.resolve_call("walk", 16, at=Position(15, 5))
        site = self.reg.resolve_call("walk", 17)
        self.assertEqual([s.line for s in self.reg.calls_at(15)], [16])
        self.assertEqual(self.reg.calls_at(17), [site])
        self.assertEqual(self.reg.calls_at(16), [])


class TestQueries(unittest.TestCase):

    def setUp(self):
        self.reg = FunctionRegistry()
        self.reg.register_function("a", 1, 5, "int", body_line=2)
        self.reg.register_function("b", 7, 9, "int", body_line=7)

    def test_lookup_by_line(self):
        self.assertEqual(self.reg.function_containing(8).name, "b")
        self.assertIsNone(self.reg.function_containing(6))
        self.assertEqual(self.reg.function_with_body_at(2).name, "a")
        self.assertIsNone(self.reg.function_with_body_at(1))
        self.assertEqual([f.name for f in self.reg.functions_ending_at(9)], ["b"])

    def test_first_declaration_wins(self):
        self.assertTrue(self.reg.declare_variable("x", 3, "int"))
        self.assertFalse(self.reg.declare_variable("x", 8, "char *"))
        self.assertEqual(self.reg.variables["x"].type_spelling, "int")

    def test_redefinition_warns(self):
        with self.assertLogs("branchtrace.registry", level="WARNING"):
            self.reg.register_function("a", 20, 22, "int")
        self.assertEqual(self.reg.functions["a"].def_line, 20)

    def test_summary(self):
        self.reg.resolve_call("a", 3)
        summary = self.reg.get_summary()
        self.assertEqual(summary["functions"], 2)
        self.assertEqual(summary["recursive"], 1)
        self.assertEqual(summary["call_sites"], 1)


if __name__ == "__main__":
    unittest.main()

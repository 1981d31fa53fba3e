import unittest
import os
import sys
import tempfile

# Add project root to path
PROJECT_ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, PROJECT_ROOT)

from branchtrace.dictionary import BranchDictionary, DuplicatePolicy, parse_dictionary
from branchtrace.discovery import BranchCollector
from branchtrace.source_tree import SyntaxTreeProvider

FIXTURES = os.path.join(PROJECT_ROOT, "tests", "fixtures")


def build(name: str, policy: DuplicatePolicy = DuplicatePolicy.OVERWRITE) -> BranchDictionary:
    with SyntaxTreeProvider() as provider:
        tree = provider.parse(os.path.join(FIXTURES, name))
    scopes = BranchCollector(tree).collect()
    return BranchDictionary.build(scopes, name, policy=policy)


class TestNumbering(unittest.TestCase):

    def test_single_if(self):
        d = build("single_if.c")
        self.assertEqual(d.branch_lines(), [3])
        self.assertEqual(d.lookup(3, 4), "br_1")
        self.assertEqual(d.lookup(3, 6), "br_2")

    def test_last_closed_scope_numbered_first(self):
        d = build("loops.c")
        ids = [(e.identifier, e.branch_line, e.target_line) for e in d.entries()]
        self.assertEqual(ids, [
            ("br_1", 11, 12), ("br_2", 11, 15), ("br_3", 11, 18),
            ("br_4", 8, 9), ("br_5", 8, 11),
            ("br_6", 4, 5), ("br_7", 4, 6), ("br_8", 4, 8),
        ])

    def test_shared_target_gets_distinct_ids(self):
        d = build("nested_shared.c")
        self.assertEqual(d.lookup(3, 7), "br_3")
        self.assertEqual(d.lookup(5, 7), "br_5")

    def test_deterministic(self):
        first = build("recursion.c")
        second = build("recursion.c")
        self.assertEqual(first.mapping, second.mapping)
        self.assertEqual(first.to_text(), second.to_text())

    def test_identifiers_unique(self):
        for name in ("loops.c", "nested_shared.c", "else_chain.c", "recursion.c"):
            ids = [e.identifier for e in build(name).entries()]
            self.assertEqual(len(ids), len(set(ids)), name)

    def test_every_completed_scope_has_entries(self):
        with SyntaxTreeProvider() as provider:
            tree = provider.parse(os.path.join(FIXTURES, "loops.c"))
        scopes = BranchCollector(tree).collect()
        d = BranchDictionary.build(scopes, "loops.c")
        for scope in scopes:
            self.assertTrue(d.targets(scope.origin_line))

    def test_custom_prefix(self):
        d = BranchDictionary("x.c", prefix="bp")
        self.assertEqual(d.add(1, 2), "bp1")


class TestDuplicatePolicy(unittest.TestCase):

    def test_overwrite_keeps_last_identifier(self):
        d = build("else_chain.c")
        self.assertEqual(d.targets(5), {6: "br_1", 10: "br_4", 8: "br_3"})
        self.assertEqual(len(d.history), 4)
        self.assertEqual([e.identifier for e in d.entries()], ["br_1", "br_3", "br_4"])

    def test_deduplicate_keeps_first_identifier(self):
        d = build("else_chain.c", DuplicatePolicy.DEDUPLICATE)
        self.assertEqual(d.targets(5), {6: "br_1", 10: "br_2", 8: "br_3"})
        self.assertEqual(len(d.history), 3)

    def test_manual_duplicates(self):
        d = BranchDictionary("x.c")
        d.add(1, 2)
        d.add(1, 2)
        self.assertEqual(d.lookup(1, 2), "br_2")
        self.assertEqual(len(d), 1)


class TestDictionaryFile(unittest.TestCase):

    def test_format(self):
        d = build("single_if.c")
        lines = d.to_text().splitlines()
        self.assertEqual(lines[0], "Branch Dictionary for: single_if.c")
        self.assertEqual(lines[1], "-" * len(lines[0]))
        self.assertEqual(lines[2:], ["br_1: single_if.c, 3, 4", "br_2: single_if.c, 3, 6"])

    def test_write_and_parse(self):
        d = build("nested_shared.c")
        with tempfile.TemporaryDirectory() as tmp:
            path = d.write(os.path.join(tmp, "out", "nested_shared.c.branch_dict"))
            with open(path) as f:
                source_file, entries = parse_dictionary(f.read())
            self.assertEqual(os.listdir(os.path.dirname(path)), ["nested_shared.c.branch_dict"])
        self.assertEqual(source_file, "nested_shared.c")
        self.assertEqual(entries, d.entries())

    def test_parse_rejects_garbage(self):
        with self.assertRaises(ValueError):
            parse_dictionary("hello\n")
        with self.assertRaises(ValueError):
            parse_dictionary("Branch Dictionary for: a.c\n----\nnot an entry\n")


if __name__ == "__main__":
    unittest.main()

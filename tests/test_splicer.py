"""Tests for the syntax-tree parser and the splicer."""

import itertools
import time
import unittest

from icehunt.errors import ParseError, ParseTimeout
from icehunt.splicer import SpliceConfig, parse, splice

SEED_A = """\
fn main() {
    let v = vec![1, 2, 3];
    let s = "a ( string { with brackets";
    let c = '{';
    // a comment with ) stray brackets
    for x in v.iter() { println!("{}", x); }
}
"""

SEED_B = """\
struct Wrapper<'a> { inner: &'a [u8] }
/* block /* nested ) */ comment */
impl<'a> Wrapper<'a> {
    fn len(&self) -> usize { self.inner.len() }
}
fn raw() -> &'static str { r#"raw " ( string"# }
"""


class TestParse(unittest.TestCase):
    def test_collects_named_nodes(self):
        tree = parse(SEED_A, name="a")
        kinds = [node.kind for node in tree.nodes]
        self.assertIn("function_item", kinds)
        self.assertEqual(kinds.count("let_declaration"), 3)
        self.assertIn("string_literal", kinds)
        self.assertNotIn("line_comment", kinds)

    def test_node_spans_cover_their_source(self):
        tree = parse(SEED_B)
        items = [node for node in tree.nodes if node.kind == "function_item"]
        self.assertEqual(len(items), 2)
        for node in items:
            self.assertTrue(tree.source[node.start : node.end].startswith(b"fn "))

    def test_items_and_statements_are_deletable(self):
        tree = parse("fn main() { let a = 1; }\n")
        deletable = {node.kind for node in tree.nodes if node.deletable}
        self.assertEqual(deletable, {"function_item", "let_declaration"})

    def test_syntax_errors_raise(self):
        with self.assertRaises(ParseError):
            parse("fn main() { (1, 2 }")
        with self.assertRaises(ParseError):
            parse("fn main() {")

    def test_deadline(self):
        text = "fn f() { (); }\n" * 1000
        with self.assertRaises(ParseTimeout):
            parse(text, deadline=time.monotonic() - 1)


class TestSplice(unittest.TestCase):
    def setUp(self):
        self.trees = [parse(SEED_A, name="a"), parse(SEED_B, name="b")]

    def test_deterministic_for_a_seed(self):
        config = SpliceConfig(seed=10)
        first = list(itertools.islice(splice(self.trees, config), 20))
        second = list(itertools.islice(splice(self.trees, config), 20))
        self.assertEqual(first, second)

    def test_different_seeds_differ(self):
        first = list(itertools.islice(splice(self.trees, SpliceConfig(seed=1)), 20))
        second = list(itertools.islice(splice(self.trees, SpliceConfig(seed=2)), 20))
        self.assertNotEqual(first, second)

    def test_grafts_cross_files(self):
        candidates = list(itertools.islice(splice(self.trees, SpliceConfig(seed=5, chaos=0)), 50))
        mixed = [
            c for c in candidates if b"println" in c and (b"inner" in c or b"usize" in c or b"raw" in c)
        ]
        self.assertTrue(mixed)

    def test_deletions_drop_whole_items_or_statements(self):
        tree = parse("fn main() { let a = 1; let b = 2; }\n")
        config = SpliceConfig(seed=3, inter_splices=0, deletions=1)
        expected = {
            b"\n",
            b"fn main() {  let b = 2; }\n",
            b"fn main() { let a = 1;  }\n",
        }
        for candidate in itertools.islice(splice([tree], config), 20):
            self.assertIn(candidate, expected)

    def test_no_seeds_yields_nothing(self):
        self.assertEqual(list(splice([], SpliceConfig())), [])


if __name__ == "__main__":
    unittest.main()

"""
Tree splicing over Rust sources.

Seeds are parsed with the tree-sitter Rust grammar. `splice` then replaces
named syntax nodes of one seed with nodes of the same grammar type taken from
any seed (an expression for an expression, an item for an item, a block for a
block), so candidates mix the statements, types and expressions of unrelated
files while mostly staying syntactically valid. A small share of splice points
ignores the grammar type altogether.
"""

import random
import time
from collections.abc import Iterator, Sequence
from dataclasses import dataclass

import tree_sitter_rust
from tree_sitter import Language, Parser

from icehunt.errors import ParseError, ParseTimeout

RUST = Language(tree_sitter_rust.language())

# Children of these nodes are items, statements or fields: dropping one
# leaves the parent well formed.
DELETABLE_PARENTS = frozenset(["source_file", "block", "declaration_list", "field_declaration_list"])

# How many syntax nodes are visited between deadline checks.
DEADLINE_CHECK_INTERVAL = 4096


@dataclass(frozen=True)
class SpliceNode:
    """A named syntax node spanning ``source[start:end]``."""

    kind: str
    start: int
    end: int
    deletable: bool = False


@dataclass
class SeedTree:
    name: str
    source: bytes
    nodes: list[SpliceNode]

    @property
    def text(self) -> str:
        return self.source.decode("utf-8", errors="replace")


@dataclass
class SpliceConfig:
    seed: int = 10
    inter_splices: int = 10
    chaos: int = 2  # percent chance of a type-ignoring graft per splice point
    deletions: int = 0
    max_tests: int = 30


def parse(text: str, deadline: float | None = None, name: str = "<seed>") -> SeedTree:
    """
    Parse `text` and collect its named syntax nodes.

    Args:
        text: Rust source.
        deadline: ``time.monotonic()`` value after which the seed is abandoned.
        name: Seed name, kept for diagnostics.

    Raises:
        ParseError: The source has syntax errors.
        ParseTimeout: The deadline passed.
    """
    source = text.encode("utf-8")
    root = Parser(RUST).parse(source).root_node
    if deadline is not None and time.monotonic() > deadline:
        raise ParseTimeout(f"parsing {name} timed out")
    if root.has_error:
        raise ParseError(f"{name} has syntax errors")

    nodes: list[SpliceNode] = []
    stack = [root]
    visited = 0
    while stack:
        node = stack.pop()
        visited += 1
        if deadline is not None and visited % DEADLINE_CHECK_INTERVAL == 0:
            if time.monotonic() > deadline:
                raise ParseTimeout(f"collecting nodes of {name} timed out")
        deletable = node.type in DELETABLE_PARENTS
        for child in node.children:
            if not child.is_named or child.is_extra:
                continue
            nodes.append(SpliceNode(child.type, child.start_byte, child.end_byte, deletable))
            stack.append(child)
    return SeedTree(name, source, nodes)


def _overlaps(node: SpliceNode, taken: list[SpliceNode]) -> bool:
    return any(node.start < other.end and other.start < node.end for other in taken)


def splice(trees: Sequence[SeedTree], config: SpliceConfig) -> Iterator[bytes]:
    """
    Endless lazy sequence of spliced candidates.

    Each candidate starts from a randomly chosen seed, replaces up to
    `config.inter_splices` non-overlapping nodes with same-type nodes from any
    seed and drops up to `config.deletions` further items or statements. The
    sequence is fully determined by `config.seed` and the order of `trees`.
    Consumers must bound how many items they draw.
    """
    rng = random.Random(config.seed)
    trees = [tree for tree in trees if tree.nodes]
    if not trees:
        return
    by_kind: dict[str, list[tuple[SeedTree, SpliceNode]]] = {}
    every_node: list[tuple[SeedTree, SpliceNode]] = []
    for tree in trees:
        for node in tree.nodes:
            by_kind.setdefault(node.kind, []).append((tree, node))
            every_node.append((tree, node))

    while True:
        base = rng.choice(trees)
        edits: list[tuple[SpliceNode, bytes]] = []
        taken: list[SpliceNode] = []
        for _ in range(config.inter_splices):
            target = rng.choice(base.nodes)
            if _overlaps(target, taken):
                continue
            pool = every_node if rng.randrange(100) < config.chaos else by_kind[target.kind]
            donor_tree, donor = rng.choice(pool)
            edits.append((target, donor_tree.source[donor.start : donor.end]))
            taken.append(target)

        deletable = [node for node in base.nodes if node.deletable]
        for _ in range(config.deletions if deletable else 0):
            target = rng.choice(deletable)
            if _overlaps(target, taken):
                continue
            edits.append((target, b""))
            taken.append(target)

        source = base.source
        for node, replacement in sorted(edits, key=lambda e: e[0].start, reverse=True):
            source = source[: node.start] + replacement + source[node.end :]
        yield source

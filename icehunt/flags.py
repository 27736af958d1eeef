"""
Flag tables and flag-set combinatorics for icehunt.

The tables list the flags each tool is exercised with. Because the power set
of a table explodes quickly, `get_flag_combinations` enumerates it with a
per-size cap and a cardinality ceiling, collapses mutually exclusive flag
families down to their effective member and deduplicates the result.
"""

import itertools
import logging
import subprocess
from collections.abc import Iterable, Sequence

from icehunt.errors import ConfigurationError
from icehunt.types import Tool

logger = logging.getLogger(__name__)

# Sentinel flag list: run the two-step incremental compilation mode instead
# of enumerating flag subsets.
INCR_COMP = "INCR_COMP"

MAX_COMBINATIONS_PER_SIZE = 10_000
MAX_SUBSET_SIZE = 10

# Only the last flag of each family has an effect on the compiler.
DEFAULT_EXCLUSIVE_FAMILIES: tuple[str, ...] = ("-Zmir-opt-level",)

_MIR_FLAGS = [
    "-Zvalidate-mir",
    "-Zverify-llvm-ir=yes",
    "-Zincremental-verify-ich=yes",
    "-Zmir-opt-level=0",
    "-Zmir-opt-level=1",
    "-Zmir-opt-level=2",
    "-Zmir-opt-level=3",
    "-Zmir-opt-level=4",
    "-Zdump-mir=all",
    "--emit=mir",
    "-Zprint-mono-items=full",
    "-Zpolymorphize=on",
    "-Zalways-encode-mir",
    "-Cpasses=lint",
]

RUSTC_FLAGS: list[list[str]] = [
    # allow-by-default lints, split in two to keep the power set small
    [
        "-Wabsolute-paths-not-starting-with-crate",
        "-Wbox-pointers",
        "-Wdeprecated-in-future",
        "-Welided-lifetimes-in-paths",
        "-Wexplicit-outlives-requirements",
        "-Wfuzzy-provenance-casts",
        "-Wlossy-provenance-casts",
        "-Wkeyword-idents",
        "-Wmacro-use-extern-crate",
        "-Wmeta-variable-misuse",
        "-Wmissing-abi",
        "-Wmissing-copy-implementations",
        "-Wmissing-debug-implementations",
        "-Wmissing-docs",
        "-Wnon-ascii-idents",
        "-Wnoop-method-call",
        "-Wrust-2021-incompatible-closure-captures",
    ],
    [
        "-Wrust-2021-incompatible-or-patterns",
        "-Wrust-2021-prefixes-incompatible-syntax",
        "-Wrust-2021-prelude-collisions",
        "-Wsingle-use-lifetimes",
        "-Wtrivial-casts",
        "-Wtrivial-numeric-casts",
        "-Wunreachable-pub",
        "-Wunsafe-code",
        "-Wunsafe-op-in-unsafe-fn",
        "-Wunstable-features",
        "-Wunused-crate-dependencies",
        "-Wunused-extern-crates",
        "-Wunused-import-braces",
        "-Wunused-lifetimes",
        "-Wunused-macro-rules",
        "-Wunused-qualifications",
        "-Wunused-results",
        "-Wvariant-size-differences",
    ],
    _MIR_FLAGS + ["--edition=2015"],
    _MIR_FLAGS + ["--edition=2018"],
    _MIR_FLAGS + ["--edition=2021"],
    [INCR_COMP],
]

CLIPPY_LINT_FLAGS: list[str] = [
    "-Wabsolute-paths-not-starting-with-crate",
    "-Wbare-trait-objects",
    "-Wbox-pointers",
    "-Welided-lifetimes-in-paths",
    "-Wellipsis-inclusive-range-patterns",
    "-Wkeyword-idents",
    "-Wmacro-use-extern-crate",
    "-Wmissing-copy-implementations",
    "-Wmissing-debug-implementations",
    "-Wmissing-docs",
    "-Wsingle-use-lifetimes",
    "-Wtrivial-casts",
    "-Wtrivial-numeric-casts",
    "-Wunreachable-pub",
    "-Wunsafe-code",
    "-Wunstable-features",
    "-Wunused-extern-crates",
    "-Wunused-import-braces",
    "-Wunused-labels",
    "-Wunused-lifetimes",
    "-Wunused-qualifications",
    "-Wunused-results",
    "-Wvariant-size-differences",
]

RUSTDOC_FLAGS: list[list[str]] = [
    ["--document-private-items", "--document-hidden-items"],
]

MIRI_FLAGS: list[list[str]] = [
    [
        "-Zmiri-strict-provenance",
        "-Zmiri-symbolic-alignment-check",
        "-Zmiri-retag-fields",
        "-Zmiri-tree-borrows",
    ],
]


def canonicalize(
    flags: Sequence[str], families: Iterable[str] = DEFAULT_EXCLUSIVE_FAMILIES
) -> tuple[str, ...]:
    """Keep only the last member of every exclusive flag family.

    Scans the flags in reverse; the first member of a family met there is the
    effective one, all earlier members are dropped. Non-family flags keep
    their relative order.
    """
    families = tuple(families)
    seen: set[str] = set()
    kept_reversed = []
    for flag in reversed(flags):
        family = next((prefix for prefix in families if flag.startswith(prefix)), None)
        if family is not None:
            if family in seen:
                continue
            seen.add(family)
        kept_reversed.append(flag)
    return tuple(reversed(kept_reversed))


def get_flag_combinations(
    flags: Sequence[str],
    max_per_size: int = MAX_COMBINATIONS_PER_SIZE,
    max_size: int = MAX_SUBSET_SIZE,
    families: Iterable[str] = DEFAULT_EXCLUSIVE_FAMILIES,
) -> list[tuple[str, ...]]:
    """
    Expand a flag list into the reduced set of subsets worth trying.

    Args:
        flags: The flag list to expand.
        max_per_size: Ceiling on the number of subsets enumerated per size.
        max_size: Subsets with more flags than this are never produced.
        families: Prefixes of mutually exclusive flag families.

    Returns:
        Canonical, unique subsets sorted ascending by size. The result is
        deterministic for a given input; the empty subset always comes first.
    """
    families = tuple(families)
    unique: dict[tuple[str, ...], None] = {}
    for size in range(min(len(flags), max_size) + 1):
        for subset in itertools.islice(itertools.combinations(flags, size), max_per_size):
            unique.setdefault(canonicalize(subset, families), None)
    # sorted() is stable, so equal sizes keep enumeration order
    return sorted(unique, key=len)


def flag_lists_for(tool: Tool) -> list[list[str]]:
    """Return the flag lists a tool is exercised with.

    Tools without a flag table get a single empty list, i.e. one plain run.
    """
    if tool is Tool.RUSTC:
        return RUSTC_FLAGS
    if tool is Tool.RUSTDOC:
        return RUSTDOC_FLAGS
    if tool is Tool.MIRI:
        return MIRI_FLAGS
    return [[]]


def is_incremental_sentinel(flags: Sequence[str]) -> bool:
    return list(flags) == [INCR_COMP]


def strip_unstable_flags(flags: Sequence[str]) -> tuple[str, ...]:
    """Drop ``-Z`` flags, which only nightly toolchains accept."""
    return tuple(flag for flag in flags if not flag.startswith("-Z"))


def check_flag_tables(rustc_path: str, timeout: float = 30.0) -> None:
    """Verify that the compiler accepts every flag in the rustc tables.

    Each flag is passed to ``rustc`` once with an empty crate read from
    stdin. A flag the compiler reports as unknown is a configuration error
    that must be fixed before a run starts.
    """
    checked: set[str] = set()
    for flag_list in RUSTC_FLAGS:
        for flag in flag_list:
            if flag == INCR_COMP or flag in checked:
                continue
            checked.add(flag)
            cmd = [rustc_path, "-", "--crate-type", "lib", "--emit=metadata", "-o", "/dev/null", flag]
            try:
                proc = subprocess.run(
                    cmd, input=b"", capture_output=True, timeout=timeout, check=False
                )
            except (OSError, subprocess.TimeoutExpired) as e:
                raise ConfigurationError(f"Could not run flag self-test '{flag}': {e}") from e
            stderr = proc.stderr.decode("utf-8", errors="replace")
            if "unknown" in stderr and ("option" in stderr or "flag" in stderr):
                raise ConfigurationError(f"Toolchain rejects flag '{flag}': {stderr.strip()}")
            logger.debug("Flag %s accepted by %s", flag, rustc_path)

"""Configuration for an icehunt run."""

import argparse
import dataclasses
import logging
from pathlib import Path

import psutil

from icehunt.errors import ConfigurationError
from icehunt.flags import (
    DEFAULT_EXCLUSIVE_FAMILIES,
    MAX_COMBINATIONS_PER_SIZE,
    MAX_SUBSET_SIZE,
)
from icehunt.types import Tool

logger = logging.getLogger(__name__)

# The UB interpreter is slow; bounding it tightly keeps throughput high.
MIRI_TIME_LIMIT = 20.0
DEFAULT_TIME_LIMIT = 90.0
DEFAULT_MEMORY_LIMIT = 3 * 1024**3  # 3 GiB

PAIR_RESAMPLE_LIMIT = 3


class BisectOrder:
    ASCENDING = "ascending"
    DESCENDING = "descending"
    CHOICES = (ASCENDING, DESCENDING)


def default_thread_count() -> int:
    return psutil.cpu_count() or 1


def load_exception_list(path: Path | None) -> frozenset[str]:
    """Read a known-noisy file list: one path per line, ``#`` starts a comment."""
    if path is None:
        return frozenset()
    try:
        text = Path(path).read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigurationError(f"Cannot read exception list {path}: {e}") from e
    entries = set()
    for line in text.splitlines():
        line = line.split("#", 1)[0].strip()
        if line:
            entries.add(line)
    return frozenset(entries)


@dataclasses.dataclass
class HarnessConfig:
    """Every knob of a run."""

    # --- Selection --------------------------------------------------------------
    tools: tuple[Tool, ...] = (Tool.RUSTC,)
    projects: tuple[Path, ...] = (Path("."),)
    fuzz: bool = False
    fuzz_omni: bool = False  # splice the whole corpus as one seed set
    fuzz_incremental: bool = False
    incremental_test: bool = False

    # --- Scheduling -------------------------------------------------------------
    threads: int = 0  # 0 = one worker per CPU
    bisect_order: str = BisectOrder.ASCENDING

    # --- Resource limits --------------------------------------------------------
    time_limit: float = DEFAULT_TIME_LIMIT
    miri_time_limit: float = MIRI_TIME_LIMIT
    memory_limit: int = DEFAULT_MEMORY_LIMIT

    # --- Flag combinatorics -----------------------------------------------------
    exclusive_families: tuple[str, ...] = DEFAULT_EXCLUSIVE_FAMILIES
    max_combinations_per_size: int = MAX_COMBINATIONS_PER_SIZE
    max_subset_size: int = MAX_SUBSET_SIZE
    pair_resample_limit: int = PAIR_RESAMPLE_LIMIT

    # --- Mutation ---------------------------------------------------------------
    splice_seed: int = 10
    splice_tests: int = 30

    # --- Toolchain --------------------------------------------------------------
    local_debug_build: bool = False

    # --- Known-noisy inputs -----------------------------------------------------
    crash_exceptions: frozenset[str] = frozenset()
    miri_exceptions: frozenset[str] = frozenset()

    # --- Output -----------------------------------------------------------------
    silent: bool = False
    write_reports: bool = True
    reduce: bool = False
    errors_file: Path = Path("errors.json")
    health_log: Path = Path("icehunt_health.jsonl")
    stats_file: Path = Path("icehunt_run_stats.json")

    @property
    def worker_count(self) -> int:
        return self.threads if self.threads > 0 else default_thread_count()

    def time_limit_for(self, tool: Tool) -> float:
        return self.miri_time_limit if tool is Tool.MIRI else self.time_limit

    def validate(self) -> None:
        """Raise ConfigurationError for settings that cannot work."""
        for project in self.projects:
            if not Path(project).is_dir():
                raise ConfigurationError(f"Project directory does not exist: {project}")
        if self.threads < 0:
            raise ConfigurationError("Thread count must not be negative")
        if self.bisect_order not in BisectOrder.CHOICES:
            raise ConfigurationError(f"Unknown bisect order: {self.bisect_order}")
        if self.time_limit <= 0 or self.miri_time_limit <= 0:
            raise ConfigurationError("Time limits must be positive")
        if self.memory_limit <= 0:
            raise ConfigurationError("Memory limit must be positive")
        if not self.tools:
            raise ConfigurationError("No tool selected")
        if self.fuzz_incremental and self.incremental_test:
            raise ConfigurationError("Choose one of --fuzz-incremental and --incremental-test")

    @classmethod
    def from_args(cls, args: argparse.Namespace) -> "HarnessConfig":
        tool_switches = [
            (args.rustc, Tool.RUSTC),
            (args.clippy, Tool.CLIPPY),
            (args.clippy_fix, Tool.CLIPPY_FIX),
            (args.rustfmt, Tool.RUSTFMT),
            (args.analyzer, Tool.RUST_ANALYZER),
            (args.miri, Tool.MIRI),
            (args.rustdoc, Tool.RUSTDOC),
        ]
        tools = tuple(tool for enabled, tool in tool_switches if enabled) or (Tool.RUSTC,)
        return cls(
            tools=tools,
            projects=tuple(Path(p) for p in args.projects),
            fuzz=args.fuzz,
            fuzz_omni=args.fuzz_omni,
            fuzz_incremental=args.fuzz_incremental,
            incremental_test=args.incremental_test,
            threads=args.threads,
            bisect_order=args.bisect_order,
            time_limit=args.timeout,
            memory_limit=args.memory_limit * 1024**2,
            local_debug_build=args.local_debug_assertions,
            crash_exceptions=load_exception_list(args.crash_exceptions),
            miri_exceptions=load_exception_list(args.miri_exceptions),
            silent=args.silent,
            write_reports=not args.no_reports,
            reduce=args.reduce,
        )

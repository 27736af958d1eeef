"""
Corpus mutation for icehunt's fuzz mode.

The CorpusMutator loads seed files, splices them into new candidate sources
and filters out candidates that would mostly produce noise: anything using
compiler-internal attributes, a freestanding crate setup or the deliberate
"break the compiler" escape hatches crashes for reasons unrelated to the
mutation.
"""

import logging
import time
from collections.abc import Iterator
from pathlib import Path
from typing import TYPE_CHECKING

from icehunt.errors import ParseError, ParseTimeout
from icehunt.splicer import SeedTree, SpliceConfig, parse, splice

if TYPE_CHECKING:
    from icehunt.health import HealthMonitor

logger = logging.getLogger(__name__)

MAX_SEED_LINES = 1000
PARSE_TIMEOUT = 10.0

# Splicer draws per requested candidate before giving up.
ATTEMPTS_PER_CANDIDATE = 10

DENYLIST_MARKERS = (
    "#[rustc_",
    "#![rustc_",
    "rustc_attrs",
    "#![no_core]",
    "#![no_std]",
    "break rust",
    "lang_items",
    "core_intrinsics",
    "internal_features",
    "mir!",
    "delay_span_bug",
)


def is_denylisted(text: str) -> bool:
    return any(marker in text for marker in DENYLIST_MARKERS)


class CorpusMutator:
    """
    Produce spliced candidate sources from a set of seeds.

    Args:
        config: Splice settings; `config.seed` makes the output reproducible
            and `config.max_tests` caps how many candidates are produced.
        max_attempts: Upper bound on draws from the splicer. Defaults to
            ``max_tests * ATTEMPTS_PER_CANDIDATE``.
        parse_timeout: Seconds allowed for parsing one seed.
        health: Optional HealthMonitor for skipped seeds.
    """

    def __init__(
        self,
        config: SpliceConfig | None = None,
        max_attempts: int | None = None,
        parse_timeout: float = PARSE_TIMEOUT,
        health: "HealthMonitor | None" = None,
    ):
        self.config = config or SpliceConfig()
        self.max_attempts = (
            max_attempts
            if max_attempts is not None
            else self.config.max_tests * ATTEMPTS_PER_CANDIDATE
        )
        self.parse_timeout = parse_timeout
        self.health = health
        self.seeds: list[SeedTree] = []

    def add_seed_text(self, name: str, text: str) -> bool:
        """Parse and add one seed. Returns False when the seed is skipped."""
        line_count = text.count("\n") + 1
        if line_count > MAX_SEED_LINES:
            logger.debug("Skipping %s: %d lines", name, line_count)
            if self.health is not None:
                self.health.record_oversized_seed(name, line_count)
            return False
        try:
            tree = parse(text, deadline=time.monotonic() + self.parse_timeout, name=name)
        except ParseTimeout:
            logger.debug("Parsing %s timed out", name)
            if self.health is not None:
                self.health.record_seed_parse_timeout(name, self.parse_timeout)
            return False
        except ParseError as e:
            logger.debug("Cannot parse %s: %s", name, e)
            if self.health is not None:
                self.health.record_seed_parse_failure(name, str(e))
            return False
        self.seeds.append(tree)
        return True

    def load_seed(self, path: Path | str) -> bool:
        try:
            text = Path(path).read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as e:
            logger.debug("Cannot read seed %s: %s", path, e)
            if self.health is not None:
                self.health.record_seed_parse_failure(str(path), str(e))
            return False
        return self.add_seed_text(str(path), text)

    def candidates(self) -> Iterator[str]:
        """
        Lazily yield distinct, filtered candidate sources.

        Stops after `config.max_tests` candidates or `max_attempts` draws from
        the splicer, whichever comes first. Seeds themselves are never
        yielded unchanged.
        """
        if not self.seeds:
            return
        seen = {seed.text for seed in self.seeds}
        produced = 0
        logger.debug("Splicing %d seeds with seed=%d", len(self.seeds), self.config.seed)
        for attempt, raw in enumerate(splice(self.seeds, self.config)):
            if attempt >= self.max_attempts or produced >= self.config.max_tests:
                break
            text = raw.decode("utf-8", errors="replace")
            if text in seen or is_denylisted(text):
                continue
            seen.add(text)
            produced += 1
            yield text

    def write_candidates(self, out_dir: Path, stem: str) -> list[Path]:
        """Write every candidate to ``<out_dir>/<stem>_splice_<n>.rs``."""
        out_dir.mkdir(parents=True, exist_ok=True)
        paths = []
        for index, text in enumerate(self.candidates()):
            path = out_dir / f"{stem}_splice_{index}.rs"
            path.write_text(text, encoding="utf-8")
            paths.append(path)
        return paths

"""
The icehunt orchestrator and command-line entry point.

The Orchestrator discovers the corpus, expands it into jobs (file x tool x
flag set x mode), runs them on a bounded thread pool and wires every result
through classification, flag bisection, regression channel probing and
reporting. At the end of a run, findings are deduplicated, diffed against the
previous run's ``errors.json`` and optionally rendered into reports.
"""

import argparse
import logging
import os
import platform
import socket
import sys
import tempfile
import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from datetime import datetime
from pathlib import Path
from textwrap import dedent

from icehunt.analysis import OutcomeClassifier, uses_unstable_features
from icehunt.artifacts import (
    ReportSink,
    deduplicate,
    diff_findings,
    load_findings,
    render_report,
    save_findings,
)
from icehunt.config import BisectOrder, HarnessConfig
from icehunt.errors import ConfigurationError, SetupError, SupervisorError
from icehunt.execution import ExecutionManager, read_source
from icehunt.flags import (
    check_flag_tables,
    flag_lists_for,
    get_flag_combinations,
    is_incremental_sentinel,
    strip_unstable_flags,
)
from icehunt.health import HealthMonitor
from icehunt.minimize import FILE_PLACEHOLDER, extract_grep_pattern, reduce
from icehunt.mutator import CorpusMutator
from icehunt.reporting import ConcurrentReporter
from icehunt.splicer import SpliceConfig
from icehunt.types import (
    Channel,
    Classification,
    Crash,
    DoubleFault,
    Finding,
    Job,
    Mode,
    ProgressState,
    Tier,
    Tool,
    UndefinedBehavior,
    describe_kind,
)
from icehunt.utils import RunStats, human_size

logger = logging.getLogger(__name__)

SPLICE_DIR = Path("icehunt_splices")
# Kinds worth narrowing down to a minimal flag set and a release channel.
BISECTABLE_KINDS = (Crash, DoubleFault, UndefinedBehavior)
# Tools whose failing invocation can be replayed on a single file.
REDUCIBLE_TOOLS = (Tool.RUSTC, Tool.CLIPPY, Tool.RUSTDOC)


class Orchestrator:
    """
    Schedules jobs onto workers and collects findings.

    Args:
        config: Settings for the run.
        executor: Runs jobs; built from `config` when omitted.
        classifier: Classifies results; built from `config` when omitted.
        reporter: Console reporter shared by all workers.
        health: Adverse event log.
        stats: Run statistics.
    """

    def __init__(
        self,
        config: HarnessConfig,
        executor: ExecutionManager | None = None,
        classifier: OutcomeClassifier | None = None,
        reporter: ConcurrentReporter | None = None,
        health: HealthMonitor | None = None,
        stats: RunStats | None = None,
    ):
        self.config = config
        self.health = health or HealthMonitor(config.health_log)
        self.stats = stats or RunStats()
        self.executor = executor or ExecutionManager(config, health=self.health)
        self.classifier = classifier or OutcomeClassifier(
            config.crash_exceptions, config.miri_exceptions
        )
        self.reporter = reporter or ConcurrentReporter(silent=config.silent, health=self.health)
        self.default_channel = Channel.MASTER if config.local_debug_build else Channel.NIGHTLY

        self._progress_lock = threading.Lock()
        self._progress_index = 0
        self._total_jobs = 0

    # --- Job space --------------------------------------------------------------

    def discover_files(self) -> list[str]:
        """All ``.rs`` files below the project roots, biggest first."""
        found: dict[str, int] = {}
        for root in self.config.projects:
            for path in Path(root).rglob("*.rs"):
                if "target" in path.parts or SPLICE_DIR.name in path.parts:
                    continue
                if not path.is_file():
                    continue
                try:
                    found[str(path)] = path.stat().st_size
                except OSError:
                    continue
        # Big files take longest; starting them first keeps the pool busy at the end.
        return sorted(found, key=lambda p: (-found[p], p))

    def generate_fuzz_corpus(self, seeds: list[str]) -> list[str]:
        """
        Splice the seed files and return the paths of the candidates.

        Every seed is spliced on its own, unless `config.fuzz_omni` is set: then
        all seeds form one set and grafts cross file boundaries.
        """
        if self.config.fuzz_omni:
            candidates = self._splice_set(seeds)
        else:
            candidates = [candidate for _, candidate in self._splice_each(seeds)]
        print(f"[+] Generated {len(candidates)} spliced candidates from {len(seeds)} seeds in {SPLICE_DIR}/")
        return candidates

    def _splice_each(self, seeds: list[str]) -> list[tuple[str, str]]:
        """Splice every seed with itself; returns ``(seed, candidate)`` pairs."""
        pairs: list[tuple[str, str]] = []
        for index, seed in enumerate(seeds):
            mutator = CorpusMutator(
                SpliceConfig(seed=self.config.splice_seed + index, max_tests=self.config.splice_tests),
                health=self.health,
            )
            if not mutator.load_seed(seed):
                continue
            stem = f"{index:05d}_{Path(seed).stem}"
            pairs += [(seed, str(p)) for p in mutator.write_candidates(SPLICE_DIR, stem)]
        return pairs

    def _splice_set(self, seeds: list[str]) -> list[str]:
        mutator = CorpusMutator(
            SpliceConfig(
                seed=self.config.splice_seed,
                max_tests=self.config.splice_tests * max(len(seeds), 1),
            ),
            health=self.health,
        )
        loaded = sum(mutator.load_seed(seed) for seed in seeds)
        logger.debug("Splicing %d of %d seeds as one set", loaded, len(seeds))
        return [str(p) for p in mutator.write_candidates(SPLICE_DIR, "omni")]

    def build_splice_incremental_jobs(self, seeds: list[str]) -> list[Job]:
        """One job per mutation: the seed, then its mutation, on one incremental cache."""
        pairs = self._splice_each(seeds)
        print(f"[+] Generated {len(pairs)} mutations of {len(seeds)} seeds in {SPLICE_DIR}/")
        return [
            Job(candidate, Tool.RUSTC, (), Mode.SPLICE_INCREMENTAL, base_file=seed)
            for seed, candidate in pairs
        ]

    def build_jobs(self, files: list[str]) -> list[Job]:
        if self.config.incremental_test:
            return [Job(path, Tool.RUSTC, (), Mode.PAIRED) for path in files]

        jobs: dict[Job, None] = {}
        for path in files:
            for tool in self.config.tools:
                for flag_list in flag_lists_for(tool):
                    if is_incremental_sentinel(flag_list):
                        jobs.setdefault(Job(path, Tool.RUSTC, (), Mode.INCREMENTAL), None)
                    else:
                        jobs.setdefault(Job(path, tool, tuple(flag_list), Mode.NORMAL), None)
        return list(jobs)

    # --- Running ----------------------------------------------------------------

    def _tick(self, job: Job) -> None:
        # Held while reporting so the shown index never goes backwards.
        with self._progress_lock:
            self._progress_index += 1
            self.reporter.report_progress(
                ProgressState(self._progress_index, self._total_jobs, job.source_file)
            )

    def _classify(self, job: Job, flags: tuple[str, ...]) -> Classification | None:
        """Run `job` with `flags` and classify the outcome; setup problems count as no result."""
        trial = Job(job.source_file, job.tool, flags, job.mode)
        try:
            result = self.executor.execute(trial)
            source_text = read_source(job.source_file)
        except (SetupError, SupervisorError) as e:
            logger.debug("Trial %s failed: %s", trial, e)
            return None
        if result is None:
            return None
        return self.classifier.classify(job.tool, job.source_file, result, source_text)

    def process_job(self, job: Job) -> Finding | None:
        """Run one job end to end. Job-local failures are logged and skipped."""
        self._tick(job)
        try:
            result = self.executor.execute(job)
        except SetupError as e:
            logger.info("Skipping %s (%s): %s", job.source_file, job.tool.value, e)
            self.health.record_setup_failure(job.source_file, job.tool.value, str(e))
            self.stats.increment("jobs_skipped")
            return None
        except SupervisorError as e:
            logger.warning("Could not spawn %s", e.command_line)
            self.health.record_supervisor_failure(job.source_file, job.tool.value, e.command_line)
            self.stats.increment("jobs_skipped")
            return None

        self.stats.increment("jobs_run")
        if result is None:
            self.stats.increment("jobs_not_applicable")
            return None
        self.stats.add_time(job.tool, result.wall_clock)

        source_text = read_source(job.source_file)
        reference_compiles = None
        if job.tool is Tool.RUST_ANALYZER:
            reference_compiles = self.executor.file_compiles(job.source_file)
        classification = self.classifier.classify(
            job.tool, job.source_file, result, source_text, reference_compiles
        )
        if classification is None:
            return None
        if (
            job.tool is Tool.RUSTDOC
            and isinstance(classification.kind, Crash)
            and not self.executor.file_compiles(job.source_file)
        ):
            # rustdoc is not expected to be robust against code rustc rejects.
            classification = Classification(
                Crash(Tier.BORING), classification.error_reason, classification.diagnostic_message
            )

        flags = job.flags
        channel = self.default_channel
        if isinstance(classification.kind, BISECTABLE_KINDS) and job.mode is Mode.NORMAL:
            if flags:
                flags = self.bisect_flags(job, classification)
            if job.tool is Tool.RUSTC:
                channel = self.find_regression_channel(job.source_file, flags, classification)

        finding = Finding(
            source_file=job.source_file,
            tool=job.tool,
            kind=classification.kind,
            flags=flags,
            error_reason=classification.error_reason,
            diagnostic_message=classification.diagnostic_message,
            regression_channel=channel,
            requires_unstable_features=uses_unstable_features(source_text),
            command_line=result.command_line,
        )
        if self.reporter.report_finding(finding):
            self.stats.record_finding(finding)
        return finding

    def bisect_flags(self, job: Job, classification: Classification) -> tuple[str, ...]:
        """
        Find a smaller flag set that still reproduces the same kind of defect.

        Subsets are tried in the configured bisect order within a wall-clock
        allowance of twice the tool's time limit. Returns the job's own flags
        when no subset reproduces in time.
        """
        combinations = get_flag_combinations(
            job.flags,
            self.config.max_combinations_per_size,
            self.config.max_subset_size,
            self.config.exclusive_families,
        )
        if self.config.bisect_order == BisectOrder.DESCENDING:
            combinations.reverse()

        wanted = type(classification.kind)
        deadline = time.monotonic() + 2 * self.config.time_limit_for(job.tool)
        for combination in combinations:
            if combination == job.flags:
                continue
            if time.monotonic() > deadline:
                logger.debug("Bisection of %s ran out of time", job.source_file)
                break
            trial = self._classify(job, combination)
            if trial is not None and isinstance(trial.kind, wanted):
                return combination
        return job.flags

    def find_regression_channel(
        self, source_file: str, flags: tuple[str, ...], classification: Classification
    ) -> Channel:
        """Return the oldest release channel on which the defect reproduces.

        Falls back to the channel under test when no release reproduces it.
        """
        stable_flags = strip_unstable_flags(flags)
        source_text = read_source(source_file)
        wanted = type(classification.kind)
        for channel in (Channel.STABLE, Channel.BETA, Channel.NIGHTLY):
            # Unstable flags only exist on nightly.
            channel_flags = flags if channel is Channel.NIGHTLY else stable_flags
            try:
                with tempfile.TemporaryDirectory(prefix="icehunt_channel_") as workdir:
                    result = self.executor.run_rustc(
                        source_file, channel_flags, Path(workdir), source_text, channel=channel
                    )
            except (SetupError, SupervisorError) as e:
                logger.debug("No %s run for %s: %s", channel.value, source_file, e)
                continue
            trial = self.classifier.classify(Tool.RUSTC, source_file, result, source_text)
            if trial is not None and isinstance(trial.kind, wanted):
                return channel
        return self.default_channel

    def run(self) -> list[Finding]:
        files = self.discover_files()
        if self.config.fuzz_incremental:
            jobs = self.build_splice_incremental_jobs(files)
            files = [job.source_file for job in jobs]
        else:
            if self.config.fuzz or self.config.fuzz_omni:
                files = self.generate_fuzz_corpus(files)
            jobs = self.build_jobs(files)
        self.executor.corpus = list(files)
        self._total_jobs = len(jobs)
        self.stats.increment("jobs_total", len(jobs))
        print(
            f"[*] {len(files)} files, {len(jobs)} jobs, {self.config.worker_count} threads.",
            file=sys.stderr,
        )

        findings: list[Finding] = []
        with ThreadPoolExecutor(max_workers=self.config.worker_count) as pool:
            futures = {pool.submit(self.process_job, job): job for job in jobs}
            for future in as_completed(futures):
                job = futures[future]
                try:
                    finding = future.result()
                except Exception as e:
                    logger.exception("Unexpected error in job %s", job)
                    self.health.record_unexpected_error(job.source_file, job.tool.value, repr(e))
                    self.stats.increment("jobs_skipped")
                    continue
                if finding is not None:
                    findings.append(finding)
        self.reporter.finish()
        return self.finalize(findings)

    # --- After the run ----------------------------------------------------------

    def finalize(self, findings: list[Finding]) -> list[Finding]:
        """Deduplicate, persist and diff the run's findings; write reports."""
        findings = deduplicate(findings)
        previous = load_findings(self.config.errors_file)
        new, gone = diff_findings(previous, findings)
        save_findings(self.config.errors_file, findings)

        if previous:
            print(f"[*] Compared with the previous run: {len(new)} new, {len(gone)} gone.")
            for finding in new:
                print(f"  [+] {finding.to_printable()}")
            for finding in gone:
                print(f"  [-] {finding.to_printable()}")

        if self.config.write_reports and findings:
            sink = ReportSink(Path.cwd())
            for finding in findings:
                sink.write(finding.source_file, finding.tool, self._render(finding))
            print(f"[+] Wrote {sink.report_count} reports to {sink.run_dir}/")
        return findings

    def _render(self, finding: Finding) -> str:
        try:
            source_text = read_source(finding.source_file)
        except SetupError:
            source_text = None
        reduced = None
        if (
            self.config.reduce
            and source_text
            and finding.tool in REDUCIBLE_TOOLS
            and isinstance(finding.kind, (Crash, DoubleFault))
        ):
            try:
                binary = self.executor.tool_path(finding.tool)
            except SetupError as e:
                logger.info("Cannot reduce %s: %s", finding.source_file, e)
            else:
                command = [str(binary), FILE_PLACEHOLDER, *finding.flags]
                if "fn main(" not in source_text:
                    command += ["--crate-type", "lib"]
                reduced = reduce(source_text, command, extract_grep_pattern(finding.error_reason))
        return render_report(finding, source_text, reduced)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="icehunt: hunt crashes, hangs and other defects in the Rust toolchain."
    )
    tools = parser.add_argument_group("tools")
    tools.add_argument("--rustc", action="store_true", help="Check the compiler (default).")
    tools.add_argument("--clippy", action="store_true", help="Check clippy.")
    tools.add_argument(
        "--clippy-fix", action="store_true", help="Check that clippy --fix keeps code compiling."
    )
    tools.add_argument("--rustfmt", action="store_true", help="Check rustfmt.")
    tools.add_argument("--analyzer", action="store_true", help="Check rust-analyzer.")
    tools.add_argument("--miri", action="store_true", help="Check miri.")
    tools.add_argument("--rustdoc", action="store_true", help="Check rustdoc.")

    modes = parser.add_argument_group("modes")
    modes.add_argument(
        "--fuzz", action="store_true", help="Splice the corpus and check the generated files."
    )
    modes.add_argument(
        "--fuzz-omni",
        action="store_true",
        help="Splice the whole corpus as one set, grafting across files, and check the results.",
    )
    modes.add_argument(
        "--fuzz-incremental",
        action="store_true",
        help="Compile every seed and then each of its compiling mutations against one incremental cache.",
    )
    modes.add_argument(
        "--incremental-test",
        action="store_true",
        help="Compile random pairs of files against one incremental cache.",
    )

    parser.add_argument(
        "-j",
        "--threads",
        type=int,
        default=0,
        help="Number of worker threads. 0 means one per CPU. (Default: 0)",
    )
    parser.add_argument(
        "--bisect-order",
        choices=BisectOrder.CHOICES,
        default=BisectOrder.ASCENDING,
        help="Order in which flag subsets are tried when bisecting a finding.",
    )
    parser.add_argument(
        "--projects",
        nargs="+",
        default=["."],
        help="Directories to search for .rs files. (Default: current directory)",
    )
    parser.add_argument(
        "--local-debug-assertions",
        action="store_true",
        help="Use the locally built 'master' toolchain instead of nightly.",
    )
    parser.add_argument(
        "--timeout",
        type=float,
        default=HarnessConfig.time_limit,
        help="Wall-clock limit per invocation in seconds (miri uses its own, shorter limit).",
    )
    parser.add_argument(
        "--memory-limit",
        type=int,
        default=HarnessConfig.memory_limit // 1024**2,
        help="Memory limit per invocation in MiB.",
    )
    parser.add_argument("--crash-exceptions", type=Path, help="File listing known noisy crashes.")
    parser.add_argument("--miri-exceptions", type=Path, help="File listing known miri UB files.")
    parser.add_argument("--silent", action="store_true", help="Do not print progress or findings.")
    parser.add_argument("--no-reports", action="store_true", help="Do not write Markdown reports.")
    parser.add_argument(
        "--reduce", action="store_true", help="Reduce crash reproducers with shrinkray."
    )
    parser.add_argument(
        "--check-flags",
        action="store_true",
        help="Verify that the compiler accepts every flag in the tables before starting.",
    )
    parser.add_argument("--verbose", action="store_true", help="Enable debug logging.")
    return parser


def main() -> int:
    """Parse command-line arguments and run icehunt."""
    args = build_parser().parse_args()
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        config = HarnessConfig.from_args(args)
        config.validate()
        if args.check_flags:
            from icehunt.toolchain import resolve_tool_path

            check_flag_tables(str(resolve_tool_path(Tool.RUSTC, config.local_debug_build)))
    except (ConfigurationError, SetupError) as e:
        print(f"[!] {e}", file=sys.stderr)
        return 1

    run_start_time = datetime.now()
    header = f"""
================================================================================
ICEHUNT RUN
================================================================================
- Hostname:          {socket.gethostname()}
- Platform:          {platform.platform()}
- Process ID:        {os.getpid()}
- Python Version:    {sys.version.replace(chr(10), " ")}
- Working Dir:       {Path.cwd()}
- Start Time:        {run_start_time.isoformat()}
- Command:           {" ".join(sys.argv)}
- Tools:             {", ".join(tool.value for tool in config.tools)}
- Threads:           {config.worker_count}
- Limits:            {config.time_limit:g}s (miri {config.miri_time_limit:g}s), {human_size(config.memory_limit)}
================================================================================
"""
    if not config.silent:
        print(dedent(header))

    orchestrator = Orchestrator(config)
    termination_reason = "Completed"
    findings: list[Finding] = []
    try:
        findings = orchestrator.run()
    except KeyboardInterrupt:
        print("\n[!] Run stopped by user.")
        termination_reason = "KeyboardInterrupt"
    finally:
        orchestrator.stats.save(config.stats_file)
        end_time = datetime.now()
        stats = orchestrator.stats.snapshot()
        by_kind = "\n".join(
            f"  {kind:<24} {count}" for kind, count in sorted(stats["findings_by_kind"].items())
        )
        kinds_seen = sorted({describe_kind(f.kind) for f in findings})
        summary = f"""
================================================================================
ICEHUNT RUN SUMMARY
================================================================================
- Termination:       {termination_reason}
- End Time:          {end_time.isoformat()}
- Total Duration:    {end_time - run_start_time}
- Jobs:              {stats["jobs_run"]} run, {stats["jobs_skipped"]} skipped, {stats["jobs_not_applicable"]} not applicable
- Findings:          {len(findings)} unique ({", ".join(kinds_seen) or "none"})
- Health Events:     {sum(orchestrator.health.counters.values())}
"""
        print(dedent(summary) + (by_kind + "\n" if by_kind else "") + "=" * 80)
    return 0


if __name__ == "__main__":
    sys.exit(main())

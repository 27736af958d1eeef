"""Tests for the Orchestrator and the command-line entry point."""

import io
import itertools
import json
import shutil
import tempfile
import threading
import unittest
from pathlib import Path
from unittest.mock import MagicMock, patch

from icehunt.config import BisectOrder, HarnessConfig
from icehunt.errors import SetupError, SupervisorError
from icehunt.mutator import CorpusMutator
from icehunt.orchestrator import Orchestrator, main
from icehunt.reporting import ConcurrentReporter
from icehunt.types import (
    Channel,
    Crash,
    ExecutionResult,
    Job,
    Mode,
    Tier,
    Tool,
)
from icehunt.utils import RunStats

ICE_STDERR = b"error: internal compiler error: compiler/rustc_mir_transform/src/validate.rs:80:25: broken MIR\n"


def clean_result(command_line="rustc a.rs"):
    return ExecutionResult(0, b"", b"", 0.2, command_line)


def ice_result(command_line="rustc a.rs"):
    return ExecutionResult(101, b"", ICE_STDERR, 0.3, command_line)


class OrchestratorTestCase(unittest.TestCase):
    def setUp(self):
        self.tmp_dir = Path(tempfile.mkdtemp())
        self.addCleanup(shutil.rmtree, self.tmp_dir, ignore_errors=True)
        self.project = self.tmp_dir / "project"
        self.project.mkdir()
        self.crash_file = self.project / "crash.rs"
        self.crash_file.write_text("#![feature(never_type)]\nfn main() { let x: ! = panic!(); }\n")
        self.fine_file = self.project / "fine.rs"
        self.fine_file.write_text("fn main() {}\n")

        self.config = HarnessConfig(
            projects=(self.project,),
            threads=2,
            errors_file=self.tmp_dir / "errors.json",
            write_reports=False,
        )
        self.executor = MagicMock()
        self.executor.run_rustc.return_value = clean_result()
        self.health = MagicMock()
        self.stream = io.StringIO()
        self.stats = RunStats()

    def make_orchestrator(self, **config_overrides):
        for key, value in config_overrides.items():
            setattr(self.config, key, value)
        return Orchestrator(
            self.config,
            executor=self.executor,
            reporter=ConcurrentReporter(stream=self.stream),
            health=self.health,
            stats=self.stats,
        )


class TestJobSpace(OrchestratorTestCase):
    def test_discovery_biggest_first_and_skips_target(self):
        (self.project / "target").mkdir()
        (self.project / "target" / "build.rs").write_text("fn main() {}\n" * 100)
        (self.project / "notes.txt").write_text("not rust")
        files = self.make_orchestrator().discover_files()
        self.assertEqual(files, [str(self.crash_file), str(self.fine_file)])

    def test_rustc_jobs_include_incremental_mode(self):
        jobs = self.make_orchestrator().build_jobs([str(self.fine_file)])
        modes = [job.mode for job in jobs]
        self.assertEqual(modes.count(Mode.INCREMENTAL), 1)
        self.assertEqual(modes.count(Mode.NORMAL), 5)
        incremental = next(job for job in jobs if job.mode is Mode.INCREMENTAL)
        self.assertEqual(incremental.flags, ())

    def test_tools_without_tables_get_one_job(self):
        orchestrator = self.make_orchestrator(tools=(Tool.RUSTFMT, Tool.CLIPPY_FIX))
        jobs = orchestrator.build_jobs([str(self.fine_file)])
        self.assertEqual(
            jobs,
            [Job(str(self.fine_file), Tool.RUSTFMT), Job(str(self.fine_file), Tool.CLIPPY_FIX)],
        )

    def test_incremental_test_builds_paired_jobs(self):
        orchestrator = self.make_orchestrator(incremental_test=True)
        jobs = orchestrator.build_jobs([str(self.fine_file), str(self.crash_file)])
        self.assertEqual([job.mode for job in jobs], [Mode.PAIRED, Mode.PAIRED])

    def test_fuzz_corpus_written_to_splice_dir(self):
        orchestrator = self.make_orchestrator(splice_tests=3)
        with (
            patch("icehunt.orchestrator.SPLICE_DIR", self.tmp_dir / "splices"),
            patch("sys.stdout", new_callable=io.StringIO),
        ):
            candidates = orchestrator.generate_fuzz_corpus([str(self.crash_file), str(self.fine_file)])
        for candidate in candidates:
            self.assertTrue(candidate.startswith(str(self.tmp_dir / "splices")))
            self.assertTrue(candidate.endswith(".rs"))


    def test_discovery_skips_earlier_splices(self):
        splices = self.project / "icehunt_splices"
        splices.mkdir()
        (splices / "00000_crash_splice_0.rs").write_text("fn main() { 1; }\n" * 50)
        files = self.make_orchestrator().discover_files()
        self.assertEqual(files, [str(self.crash_file), str(self.fine_file)])

    def _write_seeds(self):
        alpha = self.tmp_dir / "alpha.rs"
        alpha.write_text("fn alpha(a: u32) -> u32 {\n    let b = a + 1;\n    b * 3\n}\n")
        beta = self.tmp_dir / "beta.rs"
        beta.write_text("fn beta(x: u64) -> u64 {\n    let y = x - 7;\n    y / 2\n}\n")
        return [str(alpha), str(beta)]

    def test_fuzz_omni_splices_all_seeds_as_one_set(self):
        orchestrator = self.make_orchestrator(fuzz_omni=True, splice_tests=20)
        with (
            patch("icehunt.orchestrator.SPLICE_DIR", self.tmp_dir / "splices"),
            patch("icehunt.orchestrator.CorpusMutator", wraps=CorpusMutator) as mock_mutator,
            patch("sys.stdout", new_callable=io.StringIO),
        ):
            candidates = orchestrator.generate_fuzz_corpus(self._write_seeds())
        self.assertEqual(mock_mutator.call_count, 1)
        self.assertTrue(candidates)
        for candidate in candidates:
            self.assertTrue(Path(candidate).name.startswith("omni_splice_"))
        texts = [Path(candidate).read_text() for candidate in candidates]
        mixed = [t for t in texts if ("alpha" in t or "u32" in t) and ("beta" in t or "u64" in t)]
        self.assertTrue(mixed)

    def test_fuzz_incremental_pairs_each_mutation_with_its_seed(self):
        seeds = self._write_seeds()
        orchestrator = self.make_orchestrator(splice_tests=5)
        with (
            patch("icehunt.orchestrator.SPLICE_DIR", self.tmp_dir / "splices"),
            patch("sys.stdout", new_callable=io.StringIO),
        ):
            jobs = orchestrator.build_splice_incremental_jobs(seeds)
        self.assertTrue(jobs)
        for job in jobs:
            self.assertIs(job.mode, Mode.SPLICE_INCREMENTAL)
            self.assertIs(job.tool, Tool.RUSTC)
            self.assertIn(job.base_file, seeds)
            self.assertIn(f"_{Path(job.base_file).stem}_splice_", Path(job.source_file).name)


class TestProcessJob(OrchestratorTestCase):
    FLAGS = ("-Zvalidate-mir", "--emit=mir", "-Zdump-mir=all")

    def _crash_with_validate(self, job):
        return ice_result() if "-Zvalidate-mir" in job.flags else clean_result()

    def test_clean_result_is_no_finding(self):
        self.executor.execute.return_value = clean_result()
        orchestrator = self.make_orchestrator()
        self.assertIsNone(orchestrator.process_job(Job(str(self.fine_file), Tool.RUSTC)))
        self.assertEqual(self.stats.snapshot()["jobs_run"], 1)

    def test_crash_bisects_to_smallest_subset(self):
        self.executor.execute.side_effect = self._crash_with_validate
        orchestrator = self.make_orchestrator()
        finding = orchestrator.process_job(Job(str(self.crash_file), Tool.RUSTC, self.FLAGS))
        self.assertEqual(finding.kind, Crash(Tier.INTERESTING))
        self.assertEqual(finding.flags, ("-Zvalidate-mir",))
        self.assertTrue(finding.requires_unstable_features)
        self.assertEqual(self.stats.snapshot()["findings_total"], 1)
        self.assertIn("ICE(interesting): rustc", self.stream.getvalue())

    def test_descending_bisect_order(self):
        self.executor.execute.side_effect = self._crash_with_validate
        orchestrator = self.make_orchestrator(bisect_order=BisectOrder.DESCENDING)
        finding = orchestrator.process_job(Job(str(self.crash_file), Tool.RUSTC, self.FLAGS))
        self.assertEqual(finding.flags, ("-Zvalidate-mir", "-Zdump-mir=all"))

    def test_bisection_keeps_flags_when_no_subset_reproduces(self):
        calls = []

        def only_full_set(job):
            calls.append(job.flags)
            return ice_result() if job.flags == self.FLAGS else clean_result()

        self.executor.execute.side_effect = only_full_set
        finding = self.make_orchestrator().process_job(Job(str(self.crash_file), Tool.RUSTC, self.FLAGS))
        self.assertEqual(finding.flags, self.FLAGS)
        self.assertNotIn(self.FLAGS, calls[1:])

    def test_bisection_stops_at_deadline(self):
        self.executor.execute.side_effect = self._crash_with_validate
        orchestrator = self.make_orchestrator()
        # Every clock reading is far past the previous one.
        with patch("icehunt.orchestrator.time.monotonic", side_effect=itertools.count(0.0, 1000.0)):
            finding = orchestrator.process_job(Job(str(self.crash_file), Tool.RUSTC, self.FLAGS))
        self.assertEqual(finding.flags, self.FLAGS)

    def test_regression_channel_search(self):
        self.executor.execute.return_value = ice_result()

        def run_on_channel(source_file, flags, work, source_text=None, channel=None):
            if channel is Channel.STABLE:
                raise SetupError("stable not installed")
            self.assertFalse(any(flag.startswith("-Z") for flag in flags))
            return ice_result()

        self.executor.run_rustc.side_effect = run_on_channel
        finding = self.make_orchestrator().process_job(Job(str(self.crash_file), Tool.RUSTC, ()))
        self.assertEqual(finding.regression_channel, Channel.BETA)

    def test_channel_defaults_to_tested_toolchain(self):
        self.executor.execute.return_value = ice_result()
        finding = self.make_orchestrator().process_job(Job(str(self.crash_file), Tool.RUSTC, ()))
        self.assertEqual(finding.regression_channel, Channel.NIGHTLY)

        orchestrator = self.make_orchestrator(local_debug_build=True)
        self.assertEqual(orchestrator.default_channel, Channel.MASTER)

    def test_incremental_findings_are_not_bisected(self):
        self.executor.execute.return_value = ice_result()
        orchestrator = self.make_orchestrator()
        finding = orchestrator.process_job(Job(str(self.crash_file), Tool.RUSTC, (), Mode.INCREMENTAL))
        self.assertIsInstance(finding.kind, Crash)
        self.assertEqual(self.executor.execute.call_count, 1)
        self.executor.run_rustc.assert_not_called()

    def test_analyzer_gets_reference_compile_result(self):
        self.executor.execute.return_value = ExecutionResult(
            0, b"severity: Error, message: mismatched types", b"", 0.1, "rust-analyzer diagnostics"
        )
        self.executor.file_compiles.return_value = True
        finding = self.make_orchestrator().process_job(Job(str(self.fine_file), Tool.RUST_ANALYZER))
        self.assertEqual(finding.kind.label, "TypeCheck")
        self.executor.file_compiles.assert_called_once_with(str(self.fine_file))

    def test_rustdoc_crash_on_rejected_file_is_boring(self):
        self.executor.execute.return_value = ice_result("rustdoc a.rs")
        self.executor.file_compiles.return_value = False
        finding = self.make_orchestrator().process_job(Job(str(self.crash_file), Tool.RUSTDOC))
        self.assertEqual(finding.kind, Crash(Tier.BORING))
        self.executor.file_compiles.assert_called_once_with(str(self.crash_file))

    def test_rustdoc_crash_on_compiling_file_stays_interesting(self):
        self.executor.execute.return_value = ice_result("rustdoc a.rs")
        self.executor.file_compiles.return_value = True
        finding = self.make_orchestrator().process_job(Job(str(self.crash_file), Tool.RUSTDOC))
        self.assertEqual(finding.kind, Crash(Tier.INTERESTING))

    def test_splice_incremental_findings_are_not_bisected(self):
        self.executor.execute.return_value = ice_result()
        job = Job(str(self.fine_file), Tool.RUSTC, (), Mode.SPLICE_INCREMENTAL, base_file=str(self.crash_file))
        finding = self.make_orchestrator().process_job(job)
        self.assertIsInstance(finding.kind, Crash)
        self.assertEqual(finding.source_file, str(self.fine_file))
        self.executor.run_rustc.assert_not_called()

    def test_progress_never_goes_backwards(self):
        reporter = MagicMock()
        orchestrator = Orchestrator(
            self.config, executor=self.executor, reporter=reporter, health=self.health, stats=self.stats
        )
        orchestrator._total_jobs = 400
        job = Job(str(self.fine_file), Tool.RUSTC)

        def tick():
            for _ in range(50):
                orchestrator._tick(job)

        threads = [threading.Thread(target=tick) for _ in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()
        shown = [c.args[0].index for c in reporter.report_progress.call_args_list]
        self.assertEqual(shown, list(range(1, 401)))

    def test_setup_failure_skips_job(self):
        self.executor.execute.side_effect = SetupError("cannot create temp dir")
        orchestrator = self.make_orchestrator()
        self.assertIsNone(orchestrator.process_job(Job(str(self.fine_file), Tool.MIRI)))
        self.health.record_setup_failure.assert_called_once()
        self.assertEqual(self.stats.snapshot()["jobs_skipped"], 1)

    def test_supervisor_failure_skips_job(self):
        self.executor.execute.side_effect = SupervisorError("spawn failed", "/bin/rustc a.rs")
        orchestrator = self.make_orchestrator()
        self.assertIsNone(orchestrator.process_job(Job(str(self.fine_file), Tool.RUSTC)))
        self.health.record_supervisor_failure.assert_called_once_with(
            str(self.fine_file), "rustc", "/bin/rustc a.rs"
        )

    def test_not_applicable(self):
        self.executor.execute.return_value = None
        orchestrator = self.make_orchestrator()
        self.assertIsNone(orchestrator.process_job(Job(str(self.fine_file), Tool.MIRI)))
        self.assertEqual(self.stats.snapshot()["jobs_not_applicable"], 1)


class TestRun(OrchestratorTestCase):
    def test_full_run_persists_deduplicated_findings(self):
        crash_path = str(self.crash_file)
        self.executor.execute.side_effect = lambda job: (
            ice_result() if job.source_file == crash_path and job.mode is Mode.NORMAL else clean_result()
        )
        orchestrator = self.make_orchestrator()
        with patch("sys.stderr", new_callable=io.StringIO), patch("sys.stdout", new_callable=io.StringIO):
            findings = orchestrator.run()

        self.assertEqual(len(findings), 1)
        self.assertEqual(findings[0].flags, ())
        saved = json.loads(self.config.errors_file.read_text())
        self.assertEqual(len(saved), 1)
        self.assertEqual(saved[0]["source_file"], crash_path)
        self.assertEqual(self.stats.snapshot()["jobs_total"], 12)
        self.assertEqual(self.executor.corpus, [crash_path, str(self.fine_file)])

    def test_unexpected_worker_error_does_not_stop_run(self):
        self.executor.execute.side_effect = RuntimeError("boom")
        orchestrator = self.make_orchestrator()
        with (
            patch("sys.stderr", new_callable=io.StringIO),
            patch("sys.stdout", new_callable=io.StringIO),
            self.assertLogs("icehunt.orchestrator", level="ERROR"),
        ):
            self.assertEqual(orchestrator.run(), [])
        self.assertEqual(self.health.record_unexpected_error.call_count, 12)

    def test_diff_against_previous_run(self):
        self.config.errors_file.write_text("[]")
        self.executor.execute.side_effect = lambda job: (
            ice_result() if job.source_file == str(self.crash_file) else clean_result()
        )
        orchestrator = self.make_orchestrator(tools=(Tool.CLIPPY,))
        with patch("sys.stderr", new_callable=io.StringIO), patch("sys.stdout", new_callable=io.StringIO) as out:
            orchestrator.run()
        # An empty previous run is not worth a diff.
        self.assertNotIn("Compared with the previous run", out.getvalue())

        with patch("sys.stderr", new_callable=io.StringIO), patch("sys.stdout", new_callable=io.StringIO) as out:
            self.make_orchestrator(tools=(Tool.RUSTDOC,)).run()
        self.assertIn("1 new, 1 gone", out.getvalue())

    def test_reports_written(self):
        self.executor.execute.side_effect = lambda job: (
            ice_result() if job.source_file == str(self.crash_file) else clean_result()
        )
        orchestrator = self.make_orchestrator(tools=(Tool.CLIPPY,), write_reports=True)
        with (
            patch("icehunt.orchestrator.Path.cwd", return_value=self.tmp_dir),
            patch("sys.stderr", new_callable=io.StringIO),
            patch("sys.stdout", new_callable=io.StringIO),
        ):
            orchestrator.run()
        reports = list(self.tmp_dir.glob("icehunt_*/*.md"))
        self.assertEqual(len(reports), 1)
        self.assertIn("```rust", reports[0].read_text())


class TestMain(unittest.TestCase):
    def setUp(self):
        self.tmp_dir = Path(tempfile.mkdtemp())
        self.addCleanup(shutil.rmtree, self.tmp_dir, ignore_errors=True)

    def test_missing_project_exits_with_one(self):
        argv = ["icehunt", "--projects", str(self.tmp_dir / "missing")]
        with patch("sys.argv", argv), patch("sys.stderr", new_callable=io.StringIO) as err:
            self.assertEqual(main(), 1)
        self.assertIn("[!] Project directory does not exist", err.getvalue())

    def test_unreadable_exception_list_exits_with_one(self):
        argv = ["icehunt", "--projects", str(self.tmp_dir), "--crash-exceptions", str(self.tmp_dir / "nope")]
        with patch("sys.argv", argv), patch("sys.stderr", new_callable=io.StringIO):
            self.assertEqual(main(), 1)

    def _mock_orchestrator(self, mock_cls):
        instance = mock_cls.return_value
        instance.stats.snapshot.return_value = RunStats().snapshot()
        instance.health.counters = {}
        return instance

    @patch("icehunt.orchestrator.Orchestrator")
    def test_successful_run_exits_zero(self, mock_cls):
        instance = self._mock_orchestrator(mock_cls)
        instance.run.return_value = []
        argv = ["icehunt", "--projects", str(self.tmp_dir), "--miri", "-j", "2"]
        with patch("sys.argv", argv), patch("sys.stdout", new_callable=io.StringIO) as out:
            self.assertEqual(main(), 0)
        config = mock_cls.call_args.args[0]
        self.assertEqual(config.tools, (Tool.MIRI,))
        self.assertEqual(config.threads, 2)
        self.assertIn("ICEHUNT RUN SUMMARY", out.getvalue())
        instance.stats.save.assert_called_once()

    @patch("icehunt.orchestrator.Orchestrator")
    def test_keyboard_interrupt(self, mock_cls):
        instance = self._mock_orchestrator(mock_cls)
        instance.run.side_effect = KeyboardInterrupt
        argv = ["icehunt", "--projects", str(self.tmp_dir), "--silent"]
        with patch("sys.argv", argv), patch("sys.stdout", new_callable=io.StringIO) as out:
            self.assertEqual(main(), 0)
        self.assertIn("KeyboardInterrupt", out.getvalue())


if __name__ == "__main__":
    unittest.main()

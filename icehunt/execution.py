"""
Supervised tool execution for icehunt.

This module provides:
- `run_bounded`, which runs one command under a wall-clock and a memory
  ceiling and reports how the process ended
- the ExecutionManager, which turns a Job into the tool invocations it needs
  (normal, two-step incremental, or paired incremental) inside a private
  temporary directory
"""

import logging
import os
import random
import shlex
import shutil
import subprocess
import tempfile
import threading
import time
from collections.abc import Callable, Sequence
from pathlib import Path
from typing import TYPE_CHECKING

import psutil

from icehunt.analysis import FORMATTER_UNSTABLE_MARKER
from icehunt.config import HarnessConfig
from icehunt.errors import SetupError, SupervisorError
from icehunt.flags import CLIPPY_LINT_FLAGS
from icehunt.toolchain import (
    TOOL_BINARIES,
    materialize_project,
    resolve_executable_path,
)
from icehunt.types import Channel, ExecutionResult, Job, Mode, Termination, Tool

if TYPE_CHECKING:
    from icehunt.health import HealthMonitor

logger = logging.getLogger(__name__)

POLL_INTERVAL = 0.05
KILL_GRACE_PERIOD = 5.0

# Set for every invocation: no ICE dump files, full backtraces in the output.
BASE_ENV = {
    "RUSTC_ICE": "0",
    "RUST_BACKTRACE": "full",
}

# Appended to the output of `cargo check` when code that built before
# `clippy --fix` no longer builds afterwards.
AUTOFIX_RECHECK_MARKER = "after fixes were automatically applied the compiler reported errors"


def format_command(cmd: Sequence[str], env_overrides: dict[str, str] | None = None) -> str:
    """Reconstruct a copy-pasteable command line for reports."""
    prefix = " ".join(f"{k}={shlex.quote(v)}" for k, v in (env_overrides or {}).items())
    command = shlex.join(str(part) for part in cmd)
    return f"{prefix} {command}" if prefix else command


def _tree_rss(proc: psutil.Process) -> int:
    """Resident memory of a process and all of its descendants, in bytes."""
    total = 0
    try:
        members = [proc] + proc.children(recursive=True)
    except (psutil.NoSuchProcess, psutil.AccessDenied):
        return 0
    for member in members:
        try:
            total += member.memory_info().rss
        except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
            continue
    return total


def _kill_tree(proc: psutil.Process) -> None:
    try:
        members = proc.children(recursive=True) + [proc]
    except psutil.NoSuchProcess:
        return
    for member in members:
        try:
            member.kill()
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            continue
    psutil.wait_procs(members, timeout=KILL_GRACE_PERIOD)


def run_bounded(
    cmd: Sequence[str],
    memory_limit: int,
    time_limit: float,
    env: dict[str, str] | None = None,
    cwd: Path | str | None = None,
    stdin_data: bytes | None = None,
    env_overrides: dict[str, str] | None = None,
) -> ExecutionResult:
    """
    Run `cmd` with a hard memory ceiling and wall-clock timeout.

    The whole process tree is polled; when its combined resident memory
    exceeds `memory_limit` bytes or it runs longer than `time_limit` seconds,
    every process in the tree is killed and the result records why.

    Args:
        cmd: The command to run.
        memory_limit: Ceiling for the summed RSS of the process tree, in bytes.
        time_limit: Wall-clock ceiling in seconds.
        env: Full environment for the child.
        cwd: Working directory for the child.
        stdin_data: Bytes fed to the child's standard input.
        env_overrides: Variables to show in the reconstructed command line.

    Returns:
        An ExecutionResult. Output is captured as raw bytes whatever happens.

    Raises:
        SupervisorError: If the process cannot be spawned.
    """
    command_line = format_command(cmd, env_overrides)
    with (
        tempfile.TemporaryFile() as out,
        tempfile.TemporaryFile() as err,
        tempfile.TemporaryFile() as stdin_file,
    ):
        if stdin_data is not None:
            stdin_file.write(stdin_data)
            stdin_file.seek(0)
        start = time.monotonic()
        try:
            child = subprocess.Popen(
                [str(part) for part in cmd],
                stdin=stdin_file if stdin_data is not None else subprocess.DEVNULL,
                stdout=out,
                stderr=err,
                env=env,
                cwd=cwd,
                start_new_session=True,
            )
        except (OSError, ValueError) as e:
            raise SupervisorError(f"Failed to spawn process: {e}", command_line) from e

        termination = Termination.EXITED
        try:
            watched = psutil.Process(child.pid)
        except psutil.NoSuchProcess:
            watched = None

        while child.poll() is None:
            elapsed = time.monotonic() - start
            if elapsed > time_limit:
                termination = Termination.TIMEOUT
            elif watched is not None and _tree_rss(watched) > memory_limit:
                termination = Termination.MEMORY
            if termination is not Termination.EXITED:
                logger.debug("Killing %s (%s)", command_line, termination.value)
                if watched is not None:
                    _kill_tree(watched)
                else:
                    child.kill()
                break
            time.sleep(POLL_INTERVAL)

        exit_status = child.wait()
        wall_clock = time.monotonic() - start
        out.seek(0)
        err.seek(0)
        return ExecutionResult(
            exit_status=exit_status,
            stdout=out.read(),
            stderr=err.read(),
            wall_clock=wall_clock,
            command_line=command_line,
            termination=termination,
            time_budget=time_limit,
        )


def combine_results(first: ExecutionResult, second: ExecutionResult) -> ExecutionResult:
    """Merge two sequential invocations; a supervisor kill in the first wins."""
    if first.termination is not Termination.EXITED:
        return first
    return ExecutionResult(
        exit_status=second.exit_status,
        stdout=first.stdout + second.stdout,
        stderr=first.stderr + second.stderr,
        wall_clock=first.wall_clock + second.wall_clock,
        command_line=f"{first.command_line} && {second.command_line}",
        termination=second.termination,
        time_budget=second.time_budget,
    )


def has_entry_point(source_text: str) -> bool:
    return "fn main(" in source_text


def read_source(path: str | Path) -> str:
    try:
        return Path(path).read_text(encoding="utf-8", errors="replace")
    except OSError as e:
        raise SetupError(f"Cannot read {path}: {e}") from e


class ExecutionManager:
    """Runs jobs. One private temporary directory per job."""

    def __init__(
        self,
        config: HarnessConfig,
        corpus: Sequence[str] = (),
        resolver: Callable[..., Path] = resolve_executable_path,
        rng: random.Random | None = None,
        health: "HealthMonitor | None" = None,
    ):
        self.config = config
        self.corpus = list(corpus)
        self.resolver = resolver
        self.rng = rng or random.Random()
        self.health = health
        self._compiles_cache: dict[str, bool] = {}
        self._cache_lock = threading.Lock()

    # --- Entry point ------------------------------------------------------------

    def execute(self, job: Job) -> ExecutionResult | None:
        """
        Run one job and return the result that counts for classification.

        Returns None when the tool does not apply to the file (e.g. miri on a
        file without an entry point) or when a paired job was abandoned.

        Raises:
            SetupError: The job could not be prepared.
            SupervisorError: A tool invocation could not be spawned.
        """
        try:
            workdir_ctx = tempfile.TemporaryDirectory(prefix="icehunt_")
        except OSError as e:
            raise SetupError(f"Cannot create temporary directory: {e}") from e

        with workdir_ctx as workdir:
            work = Path(workdir)
            if job.mode is Mode.INCREMENTAL:
                return self.run_incremental(job.source_file, work)
            if job.mode is Mode.PAIRED:
                return self.run_paired(job.source_file, work)
            if job.mode is Mode.SPLICE_INCREMENTAL:
                if job.base_file is None:
                    raise SetupError(f"No base file for splice-incremental job on {job.source_file}")
                return self.run_splice_incremental(job.base_file, job.source_file, work)
            return self.run_tool(job.tool, job.source_file, job.flags, work)

    # --- Environment ------------------------------------------------------------

    def tool_path(self, tool: Tool, channel: Channel | None = None) -> Path:
        return self.resolver(TOOL_BINARIES[tool], self.config.local_debug_build, channel)

    def _environment(self, binary: Path, extra: dict[str, str] | None = None) -> dict[str, str]:
        env = os.environ.copy()
        env.update(BASE_ENV)
        # cargo subcommands and proc macros must come from the same toolchain
        env["PATH"] = f"{binary.parent}{os.pathsep}{env.get('PATH', '')}"
        if extra:
            env.update(extra)
        return env

    def _run(
        self,
        tool: Tool,
        cmd: list[str],
        binary: Path,
        cwd: Path,
        extra_env: dict[str, str] | None = None,
        stdin_data: bytes | None = None,
    ) -> ExecutionResult:
        shown_env = dict(BASE_ENV)
        shown_env.update(extra_env or {})
        return run_bounded(
            cmd,
            memory_limit=self.config.memory_limit,
            time_limit=self.config.time_limit_for(tool),
            env=self._environment(binary, extra_env),
            cwd=cwd,
            stdin_data=stdin_data,
            env_overrides=shown_env,
        )

    # --- Normal mode ------------------------------------------------------------

    def run_tool(
        self, tool: Tool, source_file: str, flags: Sequence[str], work: Path
    ) -> ExecutionResult | None:
        source_text = read_source(source_file)
        if tool is Tool.RUSTC:
            return self.run_rustc(source_file, flags, work, source_text)
        if tool is Tool.CLIPPY:
            return self._run_clippy(source_file, flags, work, source_text)
        if tool is Tool.CLIPPY_FIX:
            return self._run_clippy_fix(work, source_text)
        if tool is Tool.RUSTFMT:
            return self._run_rustfmt(source_file, work)
        if tool is Tool.RUST_ANALYZER:
            return self._run_analyzer(work, source_text)
        if tool is Tool.MIRI:
            return self._run_miri(flags, work, source_text)
        if tool is Tool.RUSTDOC:
            return self._run_rustdoc(source_file, flags, work, source_text)
        raise ValueError(f"Unsupported tool: {tool}")

    def run_rustc(
        self,
        source_file: str,
        flags: Sequence[str],
        work: Path,
        source_text: str | None = None,
        channel: Channel | None = None,
    ) -> ExecutionResult:
        if source_text is None:
            source_text = read_source(source_file)
        rustc = self.tool_path(Tool.RUSTC, channel)
        cmd = [str(rustc), str(source_file), *flags, f"-o{work}/out"]
        if channel in (None, Channel.NIGHTLY, Channel.MASTER):
            cmd.append(f"-Zdump-mir-dir={work}/mir")
        if not has_entry_point(source_text):
            cmd += ["--crate-type", "lib"]
        return self._run(Tool.RUSTC, cmd, rustc, work)

    def _run_clippy(
        self, source_file: str, flags: Sequence[str], work: Path, source_text: str
    ) -> ExecutionResult:
        driver = self.tool_path(Tool.CLIPPY)
        cmd = [
            str(driver),
            str(source_file),
            "-Aclippy::cargo",
            "-Wclippy::pedantic",
            "-Wclippy::nursery",
            *CLIPPY_LINT_FLAGS,
            *flags,
            "--cap-lints",
            "warn",
            "-o",
            f"{work}/out",
        ]
        if not has_entry_point(source_text):
            cmd += ["--crate-type", "lib"]
        extra = {
            "RUSTFLAGS": "-Z force-unstable-if-unmarked",
            "SYSROOT": str(driver.parent.parent),
        }
        return self._run(Tool.CLIPPY, cmd, driver, work, extra)

    def _run_clippy_fix(self, work: Path, source_text: str) -> ExecutionResult:
        cargo = self.tool_path(Tool.CLIPPY_FIX)
        project = materialize_project(
            source_text, work, cargo=cargo, env=self._environment(cargo)
        )
        fix = self._run(
            Tool.CLIPPY_FIX,
            [str(cargo), "clippy", "--fix", "--allow-no-vcs", "--broken-code", "--", "-Wclippy::pedantic"],
            cargo,
            project,
        )
        if not fix.succeeded:
            return fix
        check = self._run(Tool.CLIPPY_FIX, [str(cargo), "check"], cargo, project)
        if check.termination is Termination.EXITED and check.exit_status != 0:
            check.stderr += f"\nerror: {AUTOFIX_RECHECK_MARKER} (cargo check)\n".encode()
        return combine_results(fix, check)

    def _run_rustfmt(self, source_file: str, work: Path) -> ExecutionResult:
        rustfmt = self.tool_path(Tool.RUSTFMT)
        copy = work / Path(source_file).name
        try:
            shutil.copyfile(source_file, copy)
        except OSError as e:
            raise SetupError(f"Cannot copy {source_file} into {work}: {e}") from e

        first = self._run(Tool.RUSTFMT, [str(rustfmt), "--edition", "2021", str(copy)], rustfmt, work)
        if not first.succeeded:
            return first
        # Formatting formatted code must not change it again.
        second = self._run(
            Tool.RUSTFMT, [str(rustfmt), "--edition", "2021", "--check", str(copy)], rustfmt, work
        )
        if second.termination is Termination.EXITED and second.exit_status == 1 and second.stdout:
            second.stderr += f"\n{FORMATTER_UNSTABLE_MARKER}\n".encode()
        return combine_results(first, second)

    def _run_analyzer(self, work: Path, source_text: str) -> ExecutionResult:
        analyzer = self.tool_path(Tool.RUST_ANALYZER)
        cargo = self.resolver("cargo", self.config.local_debug_build, None)
        project = materialize_project(
            source_text, work, cargo=cargo, env=self._environment(cargo)
        )
        return self._run(
            Tool.RUST_ANALYZER, [str(analyzer), "diagnostics", str(project)], analyzer, work
        )

    def _run_miri(
        self, flags: Sequence[str], work: Path, source_text: str
    ) -> ExecutionResult | None:
        # Needs an entry point to interpret; unsafe code makes UB reports moot.
        if not has_entry_point(source_text) or "unsafe " in source_text:
            return None
        cargo = self.tool_path(Tool.MIRI)
        project = materialize_project(
            source_text, work, cargo=cargo, env=self._environment(cargo)
        )
        extra = {"MIRIFLAGS": " ".join(flags)} if flags else None
        return self._run(Tool.MIRI, [str(cargo), "miri", "run"], cargo, project, extra)

    def _run_rustdoc(
        self, source_file: str, flags: Sequence[str], work: Path, source_text: str
    ) -> ExecutionResult:
        rustdoc = self.tool_path(Tool.RUSTDOC)
        cmd = [
            str(rustdoc),
            str(source_file),
            "-Zunstable-options",
            *flags,
            "--cap-lints",
            "warn",
            "-o",
            f"{work}/doc",
        ]
        if not has_entry_point(source_text):
            cmd += ["--crate-type", "lib"]
        return self._run(Tool.RUSTDOC, cmd, rustdoc, work)

    # --- Incremental modes ------------------------------------------------------

    def _incremental_step(
        self, source_file: Path | str, step: int, work: Path, source_text: str
    ) -> ExecutionResult:
        rustc = self.tool_path(Tool.RUSTC)
        cmd = [
            str(rustc),
            str(source_file),
            f"-o{work}/out{step}",
            f"-Cincremental={work}/incr",
            "-Zincremental-verify-ich=yes",
            "-Cdebuginfo=2",
            "--edition=2021",
        ]
        if not has_entry_point(source_text):
            cmd += ["--crate-type", "lib"]
        return self._run(Tool.RUSTC, cmd, rustc, work)

    def run_incremental(self, source_file: str, work: Path) -> ExecutionResult:
        """Compile the same file twice against one incremental cache.

        Only the second result is returned. A spawn failure in either step
        propagates and fails the job.
        """
        source_text = read_source(source_file)
        self._incremental_step(source_file, 0, work, source_text)
        return self._incremental_step(source_file, 1, work, source_text)

    def file_compiles(self, source_file: str) -> bool:
        """Whether the compiler accepts the file on its own. Results are cached."""
        with self._cache_lock:
            if source_file in self._compiles_cache:
                return self._compiles_cache[source_file]

        source_text = read_source(source_file)
        with tempfile.TemporaryDirectory(prefix="icehunt_check_") as workdir:
            rustc = self.tool_path(Tool.RUSTC)
            cmd = [str(rustc), str(source_file), "--emit=metadata", f"-o{workdir}/check"]
            if not has_entry_point(source_text):
                cmd += ["--crate-type", "lib"]
            result = self._run(Tool.RUSTC, cmd, rustc, Path(workdir))
        compiles = result.succeeded

        with self._cache_lock:
            self._compiles_cache[source_file] = compiles
        return compiles

    def choose_partner(self, source_file: str) -> str | None:
        candidates = [path for path in self.corpus if path != source_file]
        if not candidates:
            return None
        return self.rng.choice(candidates)

    def run_paired(self, source_file: str, work: Path) -> ExecutionResult | None:
        """
        Compile a random partner file and then `source_file` at the same path
        and with the same incremental cache.

        Both files must compile on their own first. A partner that does not
        is replaced by another random one, at most `pair_resample_limit`
        times; after that, or when `source_file` itself does not compile, the
        pair is abandoned and None is returned.
        """
        if not self.file_compiles(source_file):
            self._record_abandoned(source_file, None, "file does not compile")
            return None

        partner = None
        for _ in range(self.config.pair_resample_limit):
            candidate = self.choose_partner(source_file)
            if candidate is None:
                break
            if self.file_compiles(candidate):
                partner = candidate
                break
            logger.debug("Partner %s for %s does not compile", candidate, source_file)
        if partner is None:
            self._record_abandoned(source_file, None, "no compiling partner found")
            return None

        shared = work / "paired.rs"
        partner_text = read_source(partner)
        source_text = read_source(source_file)
        try:
            shared.write_text(partner_text, encoding="utf-8")
            self._incremental_step(shared, 0, work, partner_text)
            shared.write_text(source_text, encoding="utf-8")
        except OSError as e:
            raise SetupError(f"Cannot write paired source in {work}: {e}") from e
        result = self._incremental_step(shared, 1, work, source_text)
        result.command_line = f"{result.command_line}  # after compiling {partner}"
        return result

    def run_splice_incremental(
        self, base_file: str, mutation_file: str, work: Path
    ) -> ExecutionResult | None:
        """
        Compile `base_file` and then its mutation `mutation_file` at the same
        path and with the same incremental cache.

        Returns None when either file does not compile on its own; a seed that
        does not compile abandons every mutation made from it.
        """
        if not self.file_compiles(base_file):
            self._record_abandoned(mutation_file, base_file, "seed does not compile")
            return None
        if not self.file_compiles(mutation_file):
            logger.debug("Mutation %s does not compile", mutation_file)
            return None

        shared = work / "spliced.rs"
        base_text = read_source(base_file)
        mutation_text = read_source(mutation_file)
        try:
            shared.write_text(base_text, encoding="utf-8")
            self._incremental_step(shared, 0, work, base_text)
            shared.write_text(mutation_text, encoding="utf-8")
        except OSError as e:
            raise SetupError(f"Cannot write spliced source in {work}: {e}") from e
        result = self._incremental_step(shared, 1, work, mutation_text)
        result.command_line = f"{result.command_line}  # after compiling {base_file}"
        return result

    def _record_abandoned(self, source_file: str, partner: str | None, reason: str) -> None:
        logger.debug("Abandoning pair for %s: %s", source_file, reason)
        if self.health is not None:
            self.health.record_pair_abandoned(source_file, partner, reason)

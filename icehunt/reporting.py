"""
Console reporting shared by all workers.

Workers send two kinds of events: progress ticks and findings. Progress
ticks overwrite each other on a single console line; findings are printed on
their own line and stay visible. Every finding is shown at most once, keyed
by its content key.
"""

import logging
import sys
from typing import TextIO

from icehunt.rwlock import BACKOFF_STEP, WRITE_ATTEMPTS, RWLock, write_with_backoff
from icehunt.types import Finding, ProgressState

logger = logging.getLogger(__name__)


class ReporterState:
    """The mutable state shared between workers, each part behind its own lock."""

    def __init__(self) -> None:
        self.previous: ProgressState | Finding | None = None
        self.progress_width = 0
        self.previous_lock = RWLock()

        self.emitted: set[tuple[str, str, str]] = set()
        self.emitted_lock = RWLock()


class ConcurrentReporter:
    """
    Serialize progress and finding events from concurrent workers.

    Args:
        state: Shared state; a fresh one is created when omitted.
        stream: Output stream, stdout by default.
        silent: Suppress all console output. Deduplication still applies.
        attempts: Write-lock attempts before blocking.
        step: Linear backoff increment between attempts, in seconds.
        health: Optional HealthMonitor notified about lock contention.
    """

    def __init__(
        self,
        state: ReporterState | None = None,
        stream: TextIO | None = None,
        silent: bool = False,
        attempts: int = WRITE_ATTEMPTS,
        step: float = BACKOFF_STEP,
        health=None,
    ):
        self.state = state or ReporterState()
        self.stream = stream
        self.silent = silent
        self.attempts = attempts
        self.step = step
        self.health = health

    @property
    def out(self) -> TextIO:
        return self.stream if self.stream is not None else sys.stdout

    def _locked(self, lock: RWLock, name: str):
        def on_contention(failed: int) -> None:
            if self.health is not None:
                self.health.record_lock_contention(name, failed)

        return write_with_backoff(lock, self.attempts, self.step, on_contention)

    def already_reported(self, finding: Finding) -> bool:
        with self.state.emitted_lock.read():
            return finding.content_key in self.state.emitted

    def report_finding(self, finding: Finding) -> bool:
        """Display a finding unless an equal one was shown before.

        Returns:
            True if the finding was new.
        """
        key = finding.content_key
        if self.already_reported(finding):
            return False
        with self._locked(self.state.emitted_lock, "emitted"):
            if key in self.state.emitted:
                return False
            self.state.emitted.add(key)

        with self._locked(self.state.previous_lock, "previous"):
            if not self.silent:
                # Leave the current progress line intact above the finding.
                prefix = "\n" if isinstance(self.state.previous, ProgressState) else ""
                self.out.write(f"{prefix}{finding.to_printable()}\n")
                self.out.flush()
            self.state.previous = finding
        return True

    def report_progress(self, progress: ProgressState) -> None:
        text = f"[{progress.index}/{progress.total} {progress.percent}%] Checking {progress.file_name}"
        with self._locked(self.state.previous_lock, "previous"):
            if not self.silent:
                if isinstance(self.state.previous, ProgressState):
                    # Pad so a shorter line fully covers the previous one.
                    self.out.write("\r" + text.ljust(self.state.progress_width))
                else:
                    self.out.write(text)
                self.out.flush()
            self.state.progress_width = len(text)
            self.state.previous = progress

    def finish(self) -> None:
        """Terminate a pending progress line."""
        with self._locked(self.state.previous_lock, "previous"):
            if not self.silent and isinstance(self.state.previous, ProgressState):
                self.out.write("\n")
                self.out.flush()
            self.state.previous = None

    @property
    def emitted_count(self) -> int:
        with self.state.emitted_lock.read():
            return len(self.state.emitted)

"""
Adverse-event log for icehunt runs.

Jobs that could not be prepared, processes that could not be spawned,
abandoned pairs and unusable seeds are appended to a JSONL file, one object
per line, and tallied in memory. Recording an event never raises.
"""

import json
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

# Error messages stored in the log are cut to this many characters.
MAX_ERROR_CHARS = 500

class HealthMonitor:
    """Thread-safe recorder of adverse events.

    Every event increments ``counters["<category>.<event>"]`` and is appended
    to `log_path`. A log file that cannot be written only loses the line.
    """

    def __init__(self, log_path: Path) -> None:
        self.log_path = log_path
        self.counters: dict[str, int] = {}
        self._lock = threading.Lock()

    def _write_event(self, category: str, event: str, **fields: Any) -> None:
        line = json.dumps(
            {
                "ts": datetime.now(timezone.utc).isoformat(),
                "cat": category,
                "event": event,
                **fields,
            },
            default=str,
        )
        key = f"{category}.{event}"
        with self._lock:
            self.counters[key] = self.counters.get(key, 0) + 1
            try:
                with self.log_path.open("a", encoding="utf-8") as log:
                    log.write(line + "\n")
            except OSError:
                pass

    # --- Setup and execution ----------------------------------------------------

    def record_setup_failure(self, source_file: str, tool: str, error: str) -> None:
        """Record a job skipped because it could not be prepared."""
        self._write_event(
            "setup",
            "setup_failure",
            file=source_file,
            tool=tool,
            error=error[:MAX_ERROR_CHARS],
        )

    def record_supervisor_failure(self, source_file: str, tool: str, command_line: str) -> None:
        """Record a tool invocation that could not be spawned."""
        self._write_event(
            "execution",
            "supervisor_failure",
            file=source_file,
            tool=tool,
            command=command_line,
        )

    def record_pair_abandoned(self, source_file: str, partner: str | None, reason: str) -> None:
        self._write_event(
            "execution", "pair_abandoned", file=source_file, partner=partner, reason=reason
        )

    def record_unexpected_error(self, source_file: str, tool: str, error: str) -> None:
        self._write_event(
            "execution",
            "unexpected_error",
            file=source_file,
            tool=tool,
            error=error[:MAX_ERROR_CHARS],
        )

    # --- Corpus -----------------------------------------------------------------

    def record_seed_parse_failure(self, seed: str, error: str) -> None:
        self._write_event("corpus", "seed_parse_failure", seed=seed, error=error[:MAX_ERROR_CHARS])

    def record_seed_parse_timeout(self, seed: str, seconds: float) -> None:
        self._write_event("corpus", "seed_parse_timeout", seed=seed, seconds=seconds)

    def record_oversized_seed(self, seed: str, line_count: int) -> None:
        self._write_event("corpus", "oversized_seed", seed=seed, lines=line_count)

    # --- Reporting --------------------------------------------------------------

    def record_lock_contention(self, lock_name: str, failed_attempts: int) -> None:
        """Record a reporter update that needed the blocking fallback."""
        self._write_event(
            "reporting", "lock_contention", lock=lock_name, failed_attempts=failed_attempts
        )

"""
Generic helpers for the icehunt harness: run statistics and timing.
"""

import json
import sys
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from icehunt.types import Finding, Tool, describe_kind


def _default_run_stats() -> dict[str, Any]:
    """Return the canonical default run statistics structure."""
    return {
        "start_time": datetime.now(timezone.utc).isoformat(),
        "last_update_time": None,
        "jobs_total": 0,
        "jobs_run": 0,
        "jobs_skipped": 0,
        "jobs_not_applicable": 0,
        "findings_total": 0,
        "findings_by_kind": {},
        "seconds_by_tool": {},
    }


class RunStats:
    """Thread-safe counters for one run, dumped as JSON at the end."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.data = _default_run_stats()

    def increment(self, key: str, amount: int = 1) -> None:
        with self._lock:
            self.data[key] = self.data.get(key, 0) + amount

    def add_time(self, tool: Tool, seconds: float) -> None:
        """Accumulate wall-clock time spent in a tool."""
        with self._lock:
            per_tool = self.data["seconds_by_tool"]
            per_tool[tool.value] = per_tool.get(tool.value, 0.0) + seconds

    def record_finding(self, finding: Finding) -> None:
        label = describe_kind(finding.kind)
        with self._lock:
            self.data["findings_total"] += 1
            by_kind = self.data["findings_by_kind"]
            by_kind[label] = by_kind.get(label, 0) + 1

    def snapshot(self) -> dict[str, Any]:
        with self._lock:
            return json.loads(json.dumps(self.data))

    def save(self, path: Path) -> None:
        """Save the statistics to a JSON file."""
        with self._lock:
            self.data["last_update_time"] = datetime.now(timezone.utc).isoformat()
            payload = json.dumps(self.data, indent=2, sort_keys=True)
        try:
            with open(path, "w", encoding="utf-8") as f:
                f.write(payload)
        except OSError as e:
            print(f"[!] Warning: Could not save run stats: {e}", file=sys.stderr)


def human_size(num_bytes: float) -> str:
    for unit in ("B", "KiB", "MiB", "GiB"):
        if num_bytes < 1024:
            return f"{num_bytes:.1f} {unit}"
        num_bytes /= 1024
    return f"{num_bytes:.1f} TiB"

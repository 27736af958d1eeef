"""
Persistence of findings for icehunt.

This module provides:
- loading and saving ``errors.json``, and diffing it against the previous run
- post-run deduplication of findings
- Markdown rendering of a finding and the ReportSink that writes one report
  per (file, tool) into a timestamped run directory
"""

import json
import logging
import re
import sys
from collections.abc import Iterable
from datetime import datetime
from pathlib import Path
from textwrap import dedent

from icehunt.types import Finding, Tool, describe_kind, normalize_signal

logger = logging.getLogger(__name__)

RUN_DIR_PREFIX = "icehunt_"
MAX_REPORT_SOURCE_CHARS = 20_000


def load_findings(path: Path) -> list[Finding]:
    """Load the findings of a previous run. Missing or corrupt files yield []."""
    if not path.is_file():
        return []
    try:
        with open(path, "r", encoding="utf-8") as f:
            raw = json.load(f)
        return [Finding.from_dict(entry) for entry in raw]
    except (json.JSONDecodeError, KeyError, TypeError, ValueError, OSError) as e:
        print(f"[!] Warning: Could not load {path}, ignoring it: {e}", file=sys.stderr)
        return []


def save_findings(path: Path, findings: Iterable[Finding]) -> None:
    ordered = sorted(findings, key=lambda f: (f.source_file, f.tool.value, f.error_reason))
    try:
        with open(path, "w", encoding="utf-8") as f:
            json.dump([finding.to_dict() for finding in ordered], f, indent=2)
    except OSError as e:
        print(f"[!] Warning: Could not save findings to {path}: {e}", file=sys.stderr)


def _signal_key(finding: Finding) -> tuple[str, str, str]:
    return (finding.tool.value, finding.source_file, normalize_signal(finding.error_reason))


def deduplicate(findings: Iterable[Finding]) -> list[Finding]:
    """
    Keep one finding per (tool, file, error signal).

    When the same defect was found with several flag sets, the one needing
    the fewest flags wins, so a flagless reproduction always beats a flagged
    one.
    """
    best: dict[tuple[str, str, str], Finding] = {}
    for finding in findings:
        key = _signal_key(finding)
        current = best.get(key)
        if current is None or len(finding.flags) < len(current.flags):
            best[key] = finding
    return list(best.values())


def diff_findings(
    previous: Iterable[Finding], current: Iterable[Finding]
) -> tuple[list[Finding], list[Finding]]:
    """Return (new findings, findings that no longer reproduce)."""
    previous_by_key = {_signal_key(f): f for f in previous}
    current_by_key = {_signal_key(f): f for f in current}
    new = [f for key, f in current_by_key.items() if key not in previous_by_key]
    gone = [f for key, f in previous_by_key.items() if key not in current_by_key]
    return new, gone


_UNSAFE_FILENAME_CHARS = re.compile(r"[^A-Za-z0-9._-]+")


def sanitize_filename(source_file: str) -> str:
    """Turn a source path into a flat, filesystem-safe name."""
    cleaned = _UNSAFE_FILENAME_CHARS.sub("_", source_file.removeprefix("./")).strip("_.")
    return cleaned or "unnamed"


def render_report(
    finding: Finding, source_text: str | None = None, reduced_source: str | None = None
) -> str:
    """Render a finding as a Markdown issue draft."""
    flags = " ".join(finding.flags) or "(none)"
    unstable = "yes" if finding.requires_unstable_features else "no"
    sections = [
        dedent(f"""\
            # {describe_kind(finding.kind)} in `{finding.tool.value}`: {finding.error_reason}

            - File: `{finding.source_file}`
            - Flags: `{flags}`
            - Regression channel: {finding.regression_channel.value}
            - Needs unstable features: {unstable}
            """),
        f"## Command\n\n```\n{finding.command_line}\n```\n",
    ]
    if reduced_source:
        sections.append(f"## Reduced reproducer\n\n```rust\n{reduced_source}\n```\n")
    if source_text:
        sections.append(
            f"## Source\n\n```rust\n{source_text[:MAX_REPORT_SOURCE_CHARS]}\n```\n"
        )
    sections.append(f"## Output\n\n```\n{finding.diagnostic_message}\n```\n")
    return "\n".join(sections)


class ReportSink:
    """
    Writes rendered reports into a run directory named by timestamp.

    At most one report is written per (original file, tool) in a run; later
    reports for the same key are ignored.
    """

    def __init__(self, base_dir: Path, timestamp: datetime | None = None):
        stamp = (timestamp or datetime.now()).strftime("%Y-%m-%d_%H-%M-%S")
        self.run_dir = base_dir / f"{RUN_DIR_PREFIX}{stamp}"
        self._written: dict[tuple[str, Tool], Path] = {}

    def path_for(self, source_file: str, tool: Tool) -> Path:
        return self.run_dir / f"{sanitize_filename(source_file)}_{tool.value}.md"

    def write(self, source_file: str, tool: Tool, report: str) -> Path | None:
        key = (source_file, tool)
        if key in self._written:
            return self._written[key]
        path = self.path_for(source_file, tool)
        try:
            self.run_dir.mkdir(parents=True, exist_ok=True)
            path.write_text(report, encoding="utf-8")
        except OSError as e:
            print(f"[!] Warning: Could not write report {path}: {e}", file=sys.stderr)
            return None
        self._written[key] = path
        logger.debug("Wrote report %s", path)
        return path

    @property
    def report_count(self) -> int:
        return len(self._written)

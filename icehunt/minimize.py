"""
Reproducer reduction for icehunt findings.

Wraps the external `shrinkray` reducer: a bash interestingness test re-runs
the failing command on the candidate file and greps its output for the
finding's error signal. The reduced source is read back once shrinkray is
done; when shrinkray is not installed the source is returned unchanged.
"""

import os
import shlex
import shutil
import subprocess
import tempfile
from collections.abc import Sequence
from pathlib import Path

from icehunt.execution import BASE_ENV

FILE_PLACEHOLDER = "{file}"
REDUCE_TIMEOUT = 1800


def extract_grep_pattern(error_reason: str) -> str:
    """Pick a stable fixed-string pattern out of an error reason."""
    for marker in ("internal compiler error", "panicked at", "error: Undefined Behavior"):
        if marker in error_reason:
            return marker
    return error_reason.strip()[:80]


def build_check_script(repro_command: Sequence[str], grep_pattern: str) -> str:
    """Bash interestingness test; shrinkray passes the candidate as ``$1``."""
    parts = ['"$1"' if part == FILE_PLACEHOLDER else shlex.quote(part) for part in repro_command]
    exports = "\n".join(f"export {k}={shlex.quote(v)}" for k, v in BASE_ENV.items())
    return f"""#!/bin/bash
{exports}

OUTPUT=$({" ".join(parts)} 2>&1)

GREP_PATTERN={shlex.quote(grep_pattern)}
if [ -n "$GREP_PATTERN" ] && ! echo "$OUTPUT" | grep -qF -- "$GREP_PATTERN"; then
    exit 1
fi

exit 0
"""


def reduce(
    source: str,
    repro_command: Sequence[str],
    grep_pattern: str,
    timeout: float = REDUCE_TIMEOUT,
    per_test_timeout: int = 10,
) -> str:
    """
    Shrink `source` while `repro_command` keeps printing `grep_pattern`.

    Args:
        source: The source text to reduce.
        repro_command: Command reproducing the defect; the literal
            ``{file}`` element is replaced by the candidate path.
        grep_pattern: Fixed string the output must keep containing.
        timeout: Overall time allowed for the reducer.
        per_test_timeout: Seconds allowed per interestingness test.

    Returns:
        The reduced source, or `source` when reduction was not possible.
    """
    if not shutil.which("shrinkray"):
        print("[!] 'shrinkray' not found in PATH. Skipping reduction.")
        return source

    with tempfile.TemporaryDirectory(prefix="icehunt_reduce_") as workdir:
        work = Path(workdir)
        target = work / "reproducer.rs"
        check = work / "interesting.sh"
        target.write_text(source, encoding="utf-8")
        check.write_text(build_check_script(repro_command, grep_pattern), encoding="utf-8")
        check.chmod(0o755)

        cmd = [
            "shrinkray",
            "--ui=basic",
            "--timeout",
            str(per_test_timeout),
            "--parallelism",
            str(max((os.cpu_count() or 1) // 2, 1)),
            str(check),
            str(target),
        ]
        try:
            subprocess.run(cmd, cwd=work, capture_output=True, timeout=timeout, check=False)
        except (OSError, subprocess.TimeoutExpired) as e:
            print(f"[!] ShrinkRay failed: {e}")
        reduced = target.read_text(encoding="utf-8", errors="replace")
    return reduced or source

"""
Outcome classification for icehunt.

Maps the raw output of one supervised tool invocation onto the closed set of
defect kinds. Supervisor verdicts (timeout, memory kill) take precedence over
anything found in the text; after that, tool specific keyword heuristics are
applied line by line. The heuristics are deliberately conservative about
lines that merely echo the checked source code back to the user.
"""

import re
from collections.abc import Iterable

from icehunt.types import (
    AutoFixFailure,
    Classification,
    Crash,
    DoubleFault,
    ExecutionResult,
    FormatterFailure,
    Hang,
    OutOfMemory,
    Termination,
    Tier,
    Tool,
    TypeCheckDivergence,
    UndefinedBehavior,
)

# Appended to rustfmt output by the executor when a second formatting pass
# still changes the file.
FORMATTER_UNSTABLE_MARKER = "error[internal]: formatting is not idempotent"

UNSTABLE_FEATURE_MARKER = "feature("

# Source snippets that tend to crash the compiler on purpose or through
# internal-only machinery; crashes in such files are not worth much.
IN_CODE_FP_KEYWORDS = (
    "panicked at",
    "RUST_BACKTRACE=",
    "(core dumped)",
    "mir!",
    "#![no_core]",
    "#[rustc_symbol_name]",
    "break rust",
    "feature(lang_items)",
    "#[rustc_variance]",
    "qemu: uncaught target signal",
    "core_intrinsics",
    "platform_intrinsics",
    "::SIGSEGV",
    "SIGSEGV::",
    "delay_span_bug_from_inside_query",
    "rustc_layout_scalar_valid_range_end",
    "rustc_attrs",
)

INTERNAL_FEATURE_MARKER = "is internal to the compiler or standard library"

# Exit statuses of a tool that died instead of reporting: 101 is a Rust panic,
# 132-139 are fatal signals as reported by a shell and 254 is an LLVM abort.
CRASH_EXIT_STATUSES = frozenset([101, 254, *range(132, 140)])

MAX_DIAGNOSTIC_CHARS = 2000
DIAGNOSTIC_LINES_BEFORE = 2
DIAGNOSTIC_LINES_AFTER = 8


def uses_unstable_features(source_text: str) -> bool:
    """True if the source declares an unstable feature gate."""
    return UNSTABLE_FEATURE_MARKER in source_text


def in_exception_list(source_file: str, exceptions: Iterable[str]) -> bool:
    """Match a file against an exception list of (possibly ``./``-relative) paths.

    A relative entry matches whole trailing path components only, so
    ``foo.rs`` matches ``corpus/foo.rs`` but not ``corpus/barfoo.rs``.
    """
    for entry in exceptions:
        if source_file == entry:
            return True
        relative = entry.removeprefix("./")
        if relative and (source_file == relative or source_file.endswith("/" + relative)):
            return True
    return False


def exit_looks_like_crash(result: ExecutionResult) -> bool:
    """True if the exit status says the tool died rather than finished."""
    status = result.exit_status
    if status is None:
        return False
    # Negative: killed by that signal.
    return status < 0 or status in CRASH_EXIT_STATUSES


class OutcomeClassifier:
    """Classifies one ExecutionResult into a defect kind, or None."""

    # Ordered: the first pattern that matches any line decides which lines
    # compete for the error reason.
    CRASH_PATTERNS = [
        re.compile(r"internal compiler error: "),
        re.compile(r"^thread '.*' panicked at"),
        re.compile(r"^query stack during panic"),
        re.compile(r"Miri caused an ICE during evaluation\."),
        re.compile(r"^LLVM ERROR"),
        re.compile(r"Assertion `.*' failed"),
        re.compile(r"^fatal runtime error: stack overflow"),
        re.compile(r"error: rustc interrupted by"),
        re.compile(r"segmentation fault", re.IGNORECASE),
        re.compile(r"\(core dumped\)"),
        re.compile(r"process abort signal"),
        re.compile(r"SIGKILL: kill"),
        re.compile(r"SIGSEGV:"),
        re.compile(r"RUST_BACKTRACE="),
    ]

    # A second fault raised while the tool was already reporting the first.
    DOUBLE_FAULT_MARKERS = (
        "thread caused non-unwinding panic. aborting.",
        "panic in a function that cannot unwind",
        "thread panicked while panicking. aborting.",
        "-Z treat-err-as-bug=",
    )

    # Faults of the interpreter itself, as opposed to the program it runs.
    MIRI_ICE_PATTERNS = [
        re.compile(r"internal compiler error: "),
        re.compile(r"Miri caused an ICE during evaluation\."),
    ]

    MIRI_UB_PATTERNS = [
        re.compile(r"error: Undefined Behavior"),
        re.compile(r"misaligned pointer dereference"),
        re.compile(r"this indicates a bug in the program"),
    ]

    AUTOFIX_FAILURE_PATTERNS = [
        re.compile(r"likely indicates a bug in either rustc or cargo itself"),
        re.compile(r"after fixes were automatically applied the compiler reported errors"),
        re.compile(r"fixing code with the `--broken-code` flag"),
    ]
    # Several lints touched the same span; rustfix gives up, nothing to report.
    AUTOFIX_OVERLAP_MARKER = "maybe parts of it were already replaced?"

    FORMATTER_PATTERNS = [
        re.compile(re.escape(FORMATTER_UNSTABLE_MARKER)),
        re.compile(r"left behind trailing whitespace"),
        re.compile(r"cycle encountered after"),
        re.compile(r"error\[internal\]: line formatted, but exceeded maximum width"),
    ]

    ANALYZER_ERROR_PATTERN = re.compile(r"severity: Error|^error\[E\d{4}\]")

    ASSERT_EQ_PATTERN = re.compile(r"left [!=]= right")
    ECHOED_SOURCE_PATTERN = re.compile(r"^\s*\d+\s+\|")
    DELAY_SPAN_BUG_PATTERN = re.compile(
        r"no errors encountered even though `?(delay_span_bug|span_delayed_bug)`? issued"
    )

    def __init__(
        self,
        crash_exceptions: Iterable[str] = (),
        miri_exceptions: Iterable[str] = (),
    ):
        self.crash_exceptions = frozenset(crash_exceptions)
        self.miri_exceptions = frozenset(miri_exceptions)

    def classify(
        self,
        tool: Tool,
        source_file: str,
        result: ExecutionResult,
        source_text: str = "",
        reference_compiles: bool | None = None,
    ) -> Classification | None:
        """
        Classify the result of running `tool` on `source_file`.

        Args:
            tool: The tool that produced the result.
            source_file: Path of the checked file, used for exception lists.
            result: The captured output and supervisor verdict.
            source_text: Contents of the checked file, used for the in-code
                false positive heuristics.
            reference_compiles: Whether the compiler accepts the file. Only
                consulted for rust-analyzer type-check divergence.

        Returns:
            A Classification, or None when nothing worth reporting happened.
        """
        if result.termination is Termination.TIMEOUT:
            return Classification(
                Hang(result.time_budget),
                f"timed out after {result.time_budget:g}s",
                result.command_line,
            )
        if result.termination is Termination.MEMORY:
            return Classification(
                OutOfMemory(), "killed for exceeding the memory limit", result.command_line
            )

        output = result.output_text()
        lines = self._candidate_lines(output, tool)

        if tool is Tool.CLIPPY_FIX:
            return self._classify_autofix(source_file, output, lines, source_text)
        if tool is Tool.MIRI:
            return self._classify_miri(source_file, output, lines, source_text)

        # Crash text only counts when the tool actually died.
        crash = None
        if exit_looks_like_crash(result):
            crash = self._find_crash(source_file, output, lines, source_text)

        if tool is Tool.RUSTFMT:
            if crash is not None:
                if isinstance(crash.kind, DoubleFault):
                    return crash
                return Classification(
                    FormatterFailure(), crash.error_reason, crash.diagnostic_message
                )
            line = self._first_match(lines, self.FORMATTER_PATTERNS)
            if line is not None:
                return Classification(FormatterFailure(), line, self._window(output, line))
            return None

        if crash is not None:
            return crash

        if tool is Tool.RUST_ANALYZER and reference_compiles:
            line = next((c for c in lines if self.ANALYZER_ERROR_PATTERN.search(c)), None)
            if line is not None:
                return Classification(TypeCheckDivergence(), line, self._window(output, line))

        return None

    # --- Per tool rules ---------------------------------------------------------

    def _classify_autofix(
        self, source_file: str, output: str, lines: list[str], source_text: str
    ) -> Classification | None:
        # A real crash while fixing beats a failure to apply the fixes.
        crash = self._find_crash(source_file, output, lines, source_text)
        if crash is not None:
            return crash
        if self.AUTOFIX_OVERLAP_MARKER in output:
            return None
        line = self._first_match(lines, self.AUTOFIX_FAILURE_PATTERNS)
        if line is not None:
            return Classification(AutoFixFailure(), line, self._window(output, line))
        return None

    def _classify_miri(
        self, source_file: str, output: str, lines: list[str], source_text: str
    ) -> Classification | None:
        # The interpreted program panicking is its own business.
        lines = [line for line in lines if "the evaluated program" not in line]

        ice = self._first_match(lines, self.MIRI_ICE_PATTERNS)
        if ice is not None:
            return self._find_crash(source_file, output, lines, source_text)

        ub_line = self._first_match(lines, self.MIRI_UB_PATTERNS)
        if ub_line is not None:
            tier = (
                Tier.UNINTERESTING
                if in_exception_list(source_file, self.miri_exceptions)
                else Tier.INTERESTING
            )
            return Classification(UndefinedBehavior(tier), ub_line, self._window(output, ub_line))

        crash = self._find_crash(source_file, output, lines, source_text)
        if crash is not None and isinstance(crash.kind, Crash) and "main.rs" in output:
            # The backtrace points into the checked program, not the interpreter.
            return Classification(Crash(Tier.BORING), crash.error_reason, crash.diagnostic_message)
        return crash

    # --- Shared helpers ---------------------------------------------------------

    def _find_crash(
        self, source_file: str, output: str, lines: list[str], source_text: str
    ) -> Classification | None:
        double_fault = next(
            (line for line in lines if any(m in line for m in self.DOUBLE_FAULT_MARKERS)), None
        )

        reason = None
        for pattern in self.CRASH_PATTERNS:
            matching = [line for line in lines if pattern.search(line)]
            if not matching:
                continue
            reason = min(matching, key=self._reason_weight)
            break
        if reason is None:
            matching = [line for line in lines if self.ASSERT_EQ_PATTERN.search(line)]
            if matching:
                reason = min(matching, key=len)

        if reason is None and double_fault is None:
            return None
        if reason is None:
            reason = double_fault

        diagnostic = self._window(output, reason)
        if self.ASSERT_EQ_PATTERN.search(reason):
            reason = self._with_assert_operands(reason, output)

        if double_fault is not None:
            return Classification(DoubleFault(), reason, diagnostic)

        boring = (
            in_exception_list(source_file, self.crash_exceptions)
            or any(kw in source_text for kw in IN_CODE_FP_KEYWORDS)
            or INTERNAL_FEATURE_MARKER in output
        )
        tier = Tier.BORING if boring else Tier.INTERESTING
        return Classification(Crash(tier), reason, diagnostic)

    def _reason_weight(self, line: str) -> float:
        # The delayed-bug banner is generic; any concrete ICE line is better.
        if self.DELAY_SPAN_BUG_PATTERN.search(line):
            return float("inf")
        return len(line)

    def _candidate_lines(self, output: str, tool: Tool) -> list[str]:
        lines = []
        for line in output.splitlines():
            if "pub const SIGSEGV" in line or "`RUST_BACKTRACE=" in line:
                continue
            if self.ECHOED_SOURCE_PATTERN.match(line):
                continue
            if tool is Tool.RUSTFMT and (line.startswith(("+", "-")) or "RUST_BACKTRACE=" in line):
                continue
            lines.append(line)
        return lines

    @staticmethod
    def _first_match(lines: list[str], patterns: list[re.Pattern]) -> str | None:
        for line in lines:
            if any(p.search(line) for p in patterns):
                return line
        return None

    @staticmethod
    def _with_assert_operands(line: str, output: str) -> str:
        """Append the ``left:``/``right:`` values printed after an assert_eq failure."""
        left = right = ""
        for candidate in output.splitlines():
            stripped = candidate.strip()
            if not left and stripped.startswith("left:"):
                left = stripped
            elif not right and stripped.startswith("right:"):
                right = stripped
        if not left and not right:
            return line
        return f"{line}   '{left}' '{right}'"

    @staticmethod
    def _window(output: str, line: str) -> str:
        all_lines = output.splitlines()
        try:
            index = all_lines.index(line)
        except ValueError:
            return line[:MAX_DIAGNOSTIC_CHARS]
        start = max(index - DIAGNOSTIC_LINES_BEFORE, 0)
        window = "\n".join(all_lines[start : index + DIAGNOSTIC_LINES_AFTER + 1])
        return window[:MAX_DIAGNOSTIC_CHARS]

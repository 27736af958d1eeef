"""
Type definitions for the icehunt harness.

This module holds the immutable data model shared by every component:
jobs handed to workers, raw execution results produced by the supervisor,
the closed set of defect kinds, and the Finding records that get reported
and persisted.
"""

import re
from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any


class Tool(str, Enum):
    RUSTC = "rustc"
    CLIPPY = "clippy"
    CLIPPY_FIX = "clippy-fix"
    RUSTFMT = "rustfmt"
    RUST_ANALYZER = "rust-analyzer"
    MIRI = "miri"
    RUSTDOC = "rustdoc"


class Mode(str, Enum):
    NORMAL = "normal"
    INCREMENTAL = "incremental"
    PAIRED = "paired"
    SPLICE_INCREMENTAL = "splice-incremental"


class Channel(str, Enum):
    """Earliest toolchain release channel that exhibits a finding."""

    STABLE = "stable"
    BETA = "beta"
    NIGHTLY = "nightly"
    MASTER = "master"


class Tier(str, Enum):
    INTERESTING = "interesting"
    BORING = "boring"
    UNINTERESTING = "uninteresting"


class Termination(str, Enum):
    """How the supervised process ended, as seen by the supervisor."""

    EXITED = "exited"
    TIMEOUT = "timeout"
    MEMORY = "memory"


@dataclass(frozen=True)
class Job:
    """One unit of scheduled work."""

    source_file: str
    tool: Tool
    flags: tuple[str, ...] = ()
    mode: Mode = Mode.NORMAL
    # The unmutated seed compiled before `source_file` in splice-incremental mode.
    base_file: str | None = None


@dataclass
class ExecutionResult:
    """Raw outcome of one supervised invocation."""

    exit_status: int | None
    stdout: bytes
    stderr: bytes
    wall_clock: float
    command_line: str
    termination: Termination = Termination.EXITED
    time_budget: float = 0.0

    def output_text(self) -> str:
        """Return stdout followed by stderr, decoded lossily."""
        return (self.stdout + b"\n" + self.stderr).decode("utf-8", errors="replace")

    @property
    def succeeded(self) -> bool:
        return self.termination is Termination.EXITED and self.exit_status == 0


# --- Defect kinds -----------------------------------------------------------


@dataclass(frozen=True)
class Crash:
    tier: Tier = Tier.INTERESTING
    label = "ICE"


@dataclass(frozen=True)
class UndefinedBehavior:
    tier: Tier = Tier.INTERESTING
    label = "UB"


@dataclass(frozen=True)
class Hang:
    seconds: float
    label = "Hang"


@dataclass(frozen=True)
class OutOfMemory:
    label = "OOM"


@dataclass(frozen=True)
class AutoFixFailure:
    label = "RustFix"


@dataclass(frozen=True)
class TypeCheckDivergence:
    label = "TypeCheck"


@dataclass(frozen=True)
class DoubleFault:
    label = "DoubleICE"


@dataclass(frozen=True)
class FormatterFailure:
    label = "Rustfmt"


Kind = (
    Crash
    | UndefinedBehavior
    | Hang
    | OutOfMemory
    | AutoFixFailure
    | TypeCheckDivergence
    | DoubleFault
    | FormatterFailure
)

KIND_TYPES: dict[str, type] = {
    "Crash": Crash,
    "UndefinedBehavior": UndefinedBehavior,
    "Hang": Hang,
    "OutOfMemory": OutOfMemory,
    "AutoFixFailure": AutoFixFailure,
    "TypeCheckDivergence": TypeCheckDivergence,
    "DoubleFault": DoubleFault,
    "FormatterFailure": FormatterFailure,
}
KIND_TYPES_TUPLE = tuple(KIND_TYPES.values())


def describe_kind(kind: Kind) -> str:
    """Human readable form of a kind, e.g. ``ICE(interesting)`` or ``Hang(90s)``."""
    if isinstance(kind, (Crash, UndefinedBehavior)):
        return f"{kind.label}({kind.tier.value})"
    if isinstance(kind, Hang):
        return f"Hang({kind.seconds:g}s)"
    if isinstance(kind, KIND_TYPES_TUPLE):
        return kind.label
    raise TypeError(f"Unknown kind: {kind!r}")


def kind_to_dict(kind: Kind) -> dict[str, Any]:
    data: dict[str, Any] = {"type": type(kind).__name__}
    for key, value in asdict(kind).items():
        data[key] = value.value if isinstance(value, Enum) else value
    return data


def kind_from_dict(data: dict[str, Any]) -> Kind:
    payload = dict(data)
    cls = KIND_TYPES[payload.pop("type")]
    if "tier" in payload:
        payload["tier"] = Tier(payload["tier"])
    return cls(**payload)


# Positions and addresses vary between otherwise identical reports.
_LOCATION_PATTERN = re.compile(r":\d+:\d+")
_ADDRESS_PATTERN = re.compile(r"0x[0-9a-fA-F]+")
_WHITESPACE_PATTERN = re.compile(r"\s+")


def normalize_signal(text: str) -> str:
    """Reduce an error line to the part that identifies the defect."""
    text = _LOCATION_PATTERN.sub("", text)
    text = _ADDRESS_PATTERN.sub("0x?", text)
    return _WHITESPACE_PATTERN.sub(" ", text).strip()


@dataclass(frozen=True)
class Finding:
    """A classified defect. Never mutated after creation."""

    source_file: str
    tool: Tool
    kind: Kind
    flags: tuple[str, ...] = ()
    error_reason: str = ""
    diagnostic_message: str = ""
    regression_channel: Channel = Channel.MASTER
    requires_unstable_features: bool = False
    command_line: str = ""

    @property
    def content_key(self) -> tuple[str, str, str]:
        return (self.tool.value, self.source_file, normalize_signal(self.error_reason))

    def to_printable(self) -> str:
        flags = " ".join(self.flags)
        summary = self.diagnostic_message.splitlines()[0] if self.diagnostic_message else ""
        return (
            f"{describe_kind(self.kind)}: {self.tool.value} {self.source_file} "
            f"'{flags}' '{summary}', '{self.error_reason}'"
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "source_file": self.source_file,
            "tool": self.tool.value,
            "kind": kind_to_dict(self.kind),
            "flags": list(self.flags),
            "error_reason": self.error_reason,
            "diagnostic_message": self.diagnostic_message,
            "regression_channel": self.regression_channel.value,
            "requires_unstable_features": self.requires_unstable_features,
            "command_line": self.command_line,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Finding":
        return cls(
            source_file=data["source_file"],
            tool=Tool(data["tool"]),
            kind=kind_from_dict(data["kind"]),
            flags=tuple(data.get("flags", ())),
            error_reason=data.get("error_reason", ""),
            diagnostic_message=data.get("diagnostic_message", ""),
            regression_channel=Channel(data.get("regression_channel", Channel.MASTER.value)),
            requires_unstable_features=data.get("requires_unstable_features", False),
            command_line=data.get("command_line", ""),
        )


@dataclass(frozen=True)
class ProgressState:
    index: int
    total: int
    file_name: str

    @property
    def percent(self) -> int:
        if self.total <= 0:
            return 100
        return int(self.index * 100 / self.total)


@dataclass(frozen=True)
class Classification:
    """Output of the classifier before it is bound to a job."""

    kind: Kind
    error_reason: str
    diagnostic_message: str = ""

"""Exception hierarchy for icehunt."""


class IcehuntError(Exception):
    """Base class for all harness errors."""


class ConfigurationError(IcehuntError):
    """Invalid configuration detected before a run starts. Fatal for the run."""


class SetupError(IcehuntError):
    """A job could not be prepared (temp dir, scaffolded project, toolchain path).

    Fatal for the job only.
    """


class SupervisorError(IcehuntError):
    """The supervised process could not be spawned."""

    def __init__(self, message: str, command_line: str = "") -> None:
        super().__init__(message)
        self.command_line = command_line

    def __str__(self) -> str:
        base = super().__str__()
        if self.command_line:
            return f"{base} (command: {self.command_line})"
        return base


class ParseError(IcehuntError):
    """A seed file could not be parsed into a tree."""


class ParseTimeout(ParseError):
    """Parsing a seed exceeded its time allowance."""

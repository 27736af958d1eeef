"""
Toolchain lookup and throwaway project scaffolding.

Binaries are looked up inside the rustup toolchain home, one directory per
channel (``stable-<host>``, ``beta-<host>``, ``nightly-<host>``) plus the
locally built ``master`` toolchain. When rustup is not installed, the
binaries found on PATH are used instead.
"""

import logging
import os
import shutil
import subprocess
from pathlib import Path

from icehunt.errors import SetupError
from icehunt.types import Channel, Tool

logger = logging.getLogger(__name__)

# Binary invoked for each tool; cargo based tools drive their subcommand.
TOOL_BINARIES = {
    Tool.RUSTC: "rustc",
    Tool.CLIPPY: "clippy-driver",
    Tool.CLIPPY_FIX: "cargo",
    Tool.RUSTFMT: "rustfmt",
    Tool.RUST_ANALYZER: "rust-analyzer",
    Tool.MIRI: "cargo",
    Tool.RUSTDOC: "rustdoc",
}

DEFAULT_CRATE_NAME = "icehunt_crate"
SCAFFOLD_TIMEOUT = 60


def rustup_home() -> Path:
    return Path(os.environ.get("RUSTUP_HOME", Path.home() / ".rustup"))


def toolchain_dir(channel: Channel) -> Path | None:
    """Return the toolchain directory of a channel, or None if not installed."""
    toolchains = rustup_home() / "toolchains"
    if channel is Channel.MASTER:
        candidate = toolchains / "master"
        return candidate if candidate.is_dir() else None
    matches = sorted(toolchains.glob(f"{channel.value}-*"))
    return matches[0] if matches else None


def resolve_executable_path(
    binary: str, local_debug_build: bool = False, channel: Channel | None = None
) -> Path:
    """
    Find a toolchain binary.

    Args:
        binary: Binary name, e.g. ``rustc`` or ``cargo``.
        local_debug_build: Use the locally built ``master`` toolchain.
        channel: Explicit channel; overrides `local_debug_build`.

    Raises:
        SetupError: If the binary cannot be found.
    """
    if channel is None:
        channel = Channel.MASTER if local_debug_build else Channel.NIGHTLY

    directory = toolchain_dir(channel)
    if directory is not None:
        path = directory / "bin" / binary
        if path.is_file():
            return path
        raise SetupError(f"'{binary}' is not installed in toolchain {directory.name}")

    if channel is Channel.NIGHTLY:
        found = shutil.which(binary)
        if found:
            return Path(found)
    raise SetupError(f"No {channel.value} toolchain providing '{binary}' found")


def resolve_tool_path(tool: Tool, local_debug_build: bool = False) -> Path:
    return resolve_executable_path(TOOL_BINARIES[tool], local_debug_build)


def materialize_project(
    source_text: str,
    parent_dir: Path,
    cargo: Path | str = "cargo",
    name: str = DEFAULT_CRATE_NAME,
    env: dict[str, str] | None = None,
) -> Path:
    """
    Create a minimal cargo project around `source_text` inside `parent_dir`.

    The snippet becomes ``src/main.rs`` when it defines ``fn main(`` and
    ``src/lib.rs`` otherwise.

    Raises:
        SetupError: If cargo cannot create the project or the source cannot
            be written.
    """
    is_binary = "fn main(" in source_text
    cmd = [str(cargo), "new", "--vcs", "none", "--quiet", "--bin" if is_binary else "--lib", name]
    try:
        proc = subprocess.run(
            cmd,
            cwd=parent_dir,
            env=env,
            capture_output=True,
            timeout=SCAFFOLD_TIMEOUT,
            check=False,
        )
    except (OSError, subprocess.TimeoutExpired) as e:
        raise SetupError(f"Could not run '{' '.join(cmd)}': {e}") from e
    if proc.returncode != 0:
        stderr = proc.stderr.decode("utf-8", errors="replace").strip()
        raise SetupError(f"cargo new failed in {parent_dir}: {stderr}")

    project = Path(parent_dir) / name
    target = project / "src" / ("main.rs" if is_binary else "lib.rs")
    try:
        target.write_text(source_text, encoding="utf-8")
    except OSError as e:
        raise SetupError(f"Could not write {target}: {e}") from e
    logger.debug("Materialized project at %s", project)
    return project

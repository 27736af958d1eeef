"""icehunt: a crash and hang hunting harness for the Rust toolchain."""

__version__ = "0.1.0"

"""Tests for toolchain lookup and project scaffolding."""

import os
import shutil
import subprocess
import tempfile
import unittest
from pathlib import Path
from unittest.mock import MagicMock, patch

from icehunt.errors import SetupError
from icehunt.toolchain import materialize_project, resolve_executable_path, toolchain_dir
from icehunt.types import Channel


class RustupHomeTestCase(unittest.TestCase):
    def setUp(self):
        self.home = Path(tempfile.mkdtemp())
        self.addCleanup(shutil.rmtree, self.home, ignore_errors=True)
        patcher = patch.dict(os.environ, {"RUSTUP_HOME": str(self.home)})
        patcher.start()
        self.addCleanup(patcher.stop)

    def install(self, toolchain, *binaries):
        bin_dir = self.home / "toolchains" / toolchain / "bin"
        bin_dir.mkdir(parents=True)
        for binary in binaries:
            (bin_dir / binary).write_text("")
        return bin_dir


class TestResolveExecutablePath(RustupHomeTestCase):
    def test_channel_directories(self):
        stable = self.install("stable-x86_64-unknown-linux-gnu", "rustc")
        self.assertEqual(toolchain_dir(Channel.STABLE), stable.parent)
        self.assertEqual(resolve_executable_path("rustc", channel=Channel.STABLE), stable / "rustc")

    def test_local_debug_build_uses_master(self):
        master = self.install("master", "rustc")
        self.assertEqual(resolve_executable_path("rustc", local_debug_build=True), master / "rustc")

    def test_binary_missing_from_toolchain(self):
        self.install("nightly-x86_64-unknown-linux-gnu", "rustc")
        with self.assertRaises(SetupError):
            resolve_executable_path("miri")

    def test_missing_channel(self):
        with self.assertRaises(SetupError):
            resolve_executable_path("rustc", channel=Channel.BETA)

    @patch("icehunt.toolchain.shutil.which", return_value="/usr/bin/rustc")
    def test_nightly_falls_back_to_path(self, mock_which):
        self.assertEqual(resolve_executable_path("rustc"), Path("/usr/bin/rustc"))


class TestMaterializeProject(unittest.TestCase):
    def setUp(self):
        self.work = Path(tempfile.mkdtemp())
        self.addCleanup(shutil.rmtree, self.work, ignore_errors=True)

    def _fake_cargo_new(self, cmd, cwd, **kwargs):
        (Path(cwd) / cmd[-1] / "src").mkdir(parents=True)
        return MagicMock(returncode=0, stderr=b"")

    @patch("icehunt.toolchain.subprocess.run")
    def test_binary_crate(self, mock_run):
        mock_run.side_effect = self._fake_cargo_new
        project = materialize_project("fn main() {}", self.work)
        self.assertIn("--bin", mock_run.call_args.args[0])
        self.assertEqual((project / "src" / "main.rs").read_text(), "fn main() {}")

    @patch("icehunt.toolchain.subprocess.run")
    def test_library_crate(self, mock_run):
        mock_run.side_effect = self._fake_cargo_new
        project = materialize_project("pub fn f() {}", self.work)
        self.assertIn("--lib", mock_run.call_args.args[0])
        self.assertTrue((project / "src" / "lib.rs").is_file())

    @patch("icehunt.toolchain.subprocess.run")
    def test_cargo_failure_is_setup_error(self, mock_run):
        mock_run.return_value = MagicMock(returncode=101, stderr=b"error: could not create")
        with self.assertRaises(SetupError):
            materialize_project("fn main() {}", self.work)

    @patch("icehunt.toolchain.subprocess.run", side_effect=subprocess.TimeoutExpired("cargo", 60))
    def test_cargo_timeout_is_setup_error(self, mock_run):
        with self.assertRaises(SetupError):
            materialize_project("fn main() {}", self.work)


if __name__ == "__main__":
    unittest.main()

"""Smoke tests for the CLI.

These tests verify CLI wiring without network access or external tools;
the pipeline entry points are patched.
"""

import json
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest
from typer.testing import CliRunner

from netbsd_imagegen import __version__
from netbsd_imagegen.cli import app
from netbsd_imagegen.errors import ChecksumMismatch, ConfigError, DeviceError
from netbsd_imagegen.types import BuildResult, PipelineState

runner = CliRunner()


@pytest.fixture(autouse=True)
def no_logging_setup():
    """Keep CLI invocations from installing root log handlers."""
    with patch("netbsd_imagegen.cli.configure_logging") as mock_configure:
        yield mock_configure


class TestCLIHelp:
    """Test CLI help and version commands."""

    def test_help_returns_zero(self) -> None:
        """CLI --help should return exit code 0."""
        result = runner.invoke(app, ["--help"])
        assert result.exit_code == 0
        assert "NetBSD Image Generator" in result.stdout

    def test_version_flag(self) -> None:
        """CLI --version should print version and exit 0."""
        result = runner.invoke(app, ["--version"])
        assert result.exit_code == 0
        assert __version__ in result.stdout

    def test_short_version_flag(self) -> None:
        """CLI -V should print version and exit 0."""
        result = runner.invoke(app, ["-V"])
        assert result.exit_code == 0
        assert __version__ in result.stdout

    def test_build_help_lists_options(self) -> None:
        """build --help should document every build option."""
        result = runner.invoke(app, ["build", "--help"])
        assert result.exit_code == 0
        for option in (
            "--no-verify",
            "--build-dir",
            "--sets-dir",
            "--force-fetch",
            "--output",
            "--release",
            "--verbose",
            "--config",
            "--hostname",
        ):
            assert option in result.stdout


class TestCLIConfig:
    """Test CLI config command."""

    def test_config_command(self) -> None:
        """CLI config should show configuration."""
        result = runner.invoke(app, ["config"])
        assert result.exit_code == 0
        assert "Build directory" in result.stdout
        assert "vnd device" in result.stdout

    def test_config_json(self) -> None:
        """CLI config --json should output valid JSON."""
        result = runner.invoke(app, ["config", "--json"])
        assert result.exit_code == 0
        data = json.loads(result.stdout)
        assert data["release"] == "10.1"
        assert data["vnd_device"] == "vnd0"

    def test_config_file(self, tmp_path: Path) -> None:
        """A config file is reflected in the effective configuration."""
        cfg = tmp_path / "cfg.yaml"
        cfg.write_text("release: '9.4'\n")
        result = runner.invoke(app, ["config", "--json", "-c", str(cfg)])
        assert result.exit_code == 0
        assert json.loads(result.stdout)["release"] == "9.4"

    def test_bad_config_file(self, tmp_path: Path) -> None:
        """An invalid config file exits 1 with one diagnostic line."""
        cfg = tmp_path / "cfg.yaml"
        cfg.write_text("bogus: 1\n")
        result = runner.invoke(app, ["config", "-c", str(cfg)])
        assert result.exit_code == 1
        assert "config_error" in result.output
        assert "bogus" in result.output


class TestCLIBuild:
    """Test CLI build command."""

    def test_success(self, tmp_path: Path) -> None:
        """A successful build prints the image path and size."""
        image = tmp_path / "netbsd.img"
        pipeline = MagicMock()
        pipeline.return_value.run.return_value = BuildResult(
            image_path=image,
            size_bytes=1_536_000_000,
            states=[PipelineState.INIT, PipelineState.DONE],
        )

        with patch("netbsd_imagegen.pipeline.ImagePipeline", pipeline):
            result = runner.invoke(app, ["build", "-b", str(tmp_path), "-o", str(image)])

        assert result.exit_code == 0
        assert str(image) in result.stdout
        assert "1536000000 bytes" in result.stdout

    def test_options_reach_config(self, tmp_path: Path) -> None:
        """Build options are resolved into the BuildConfig."""
        pipeline = MagicMock()
        pipeline.return_value.run.return_value = BuildResult(
            image_path=tmp_path / "x.img", size_bytes=1
        )

        with patch("netbsd_imagegen.pipeline.ImagePipeline", pipeline):
            result = runner.invoke(
                app,
                [
                    "build",
                    "--no-verify",
                    "-f",
                    "-b", str(tmp_path),
                    "-s", str(tmp_path / "sets"),
                    "-r", "9.4",
                    "--hostname", "builder",
                    "-vv",
                ],
            )

        assert result.exit_code == 0
        settings = pipeline.call_args.args[0]
        assert settings.verify is False
        assert settings.force_fetch is True
        assert settings.build_dir == tmp_path
        assert settings.sets_path == tmp_path / "sets"
        assert settings.release == "9.4"
        assert settings.hostname == "builder"
        assert settings.verbosity == 2

    def test_logging_configured(self, tmp_path: Path, no_logging_setup) -> None:
        """Logging goes to the build directory at the requested depth."""
        pipeline = MagicMock()
        pipeline.return_value.run.return_value = BuildResult(
            image_path=tmp_path / "x.img", size_bytes=1
        )
        with patch("netbsd_imagegen.pipeline.ImagePipeline", pipeline):
            runner.invoke(app, ["build", "-b", str(tmp_path), "-v"])

        level, log_path = no_logging_setup.call_args.args
        assert level == 20
        assert log_path == tmp_path / "nbimagegen.log"

    @pytest.mark.parametrize(
        "error",
        [
            ChecksumMismatch("comp.tar.xz", "a" * 128, "b" * 128),
            DeviceError("newfs failed with exit code 1", stage="populate"),
            ConfigError("Building an image requires root privileges"),
        ],
    )
    def test_failure_exits_one(self, tmp_path: Path, error) -> None:
        """Any pipeline failure exits 1 with a single diagnostic line."""
        pipeline = MagicMock()
        pipeline.return_value.run.side_effect = error

        with patch("netbsd_imagegen.pipeline.ImagePipeline", pipeline):
            result = runner.invoke(app, ["build", "-b", str(tmp_path)])

        assert result.exit_code == 1
        assert error.code in result.output
        assert error.message in result.output
        assert len(result.output.strip().splitlines()) == 1

    def test_invalid_option(self, tmp_path: Path) -> None:
        """Invalid values are reported before anything runs."""
        pipeline = MagicMock()
        with patch("netbsd_imagegen.pipeline.ImagePipeline", pipeline):
            result = runner.invoke(app, ["build", "-b", str(tmp_path), "--hostname", "a b"])

        assert result.exit_code == 1
        assert "config_error" in result.output
        pipeline.assert_not_called()


class TestCLISets:
    """Test CLI sets subcommands."""

    def test_fetch(self, tmp_path: Path) -> None:
        """sets fetch lists downloaded files."""
        with patch(
            "netbsd_imagegen.pipeline.fetch_sets",
            return_value=[tmp_path / "sets" / "base.tar.xz"],
        ):
            result = runner.invoke(app, ["sets", "fetch", "-b", str(tmp_path)])
        assert result.exit_code == 0
        assert "Downloaded 1 file(s)" in result.stdout

    def test_fetch_nothing_to_do(self, tmp_path: Path) -> None:
        """sets fetch reports when everything is present."""
        with patch("netbsd_imagegen.pipeline.fetch_sets", return_value=[]):
            result = runner.invoke(app, ["sets", "fetch", "-b", str(tmp_path)])
        assert result.exit_code == 0
        assert "already present" in result.stdout

    def test_verify(self, tmp_path: Path) -> None:
        """sets verify lists verified sets."""
        with patch(
            "netbsd_imagegen.pipeline.verify_sets",
            return_value={"base.tar.xz": "ab" * 64},
        ):
            result = runner.invoke(app, ["sets", "verify", "-b", str(tmp_path)])
        assert result.exit_code == 0
        assert "Verified 1 set(s)" in result.stdout
        assert "base.tar.xz" in result.stdout

    def test_verify_failure(self, tmp_path: Path) -> None:
        """A verification failure exits 1."""
        with patch(
            "netbsd_imagegen.pipeline.verify_sets",
            side_effect=ChecksumMismatch("etc.tar.xz", "a" * 128, "b" * 128),
        ):
            result = runner.invoke(app, ["sets", "verify", "-b", str(tmp_path)])
        assert result.exit_code == 1
        assert "etc.tar.xz" in result.output

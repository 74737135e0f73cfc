"""
CLI interface tests for dep-updater.
Tests the command-line interface and main entry points.
"""

import json
from pathlib import Path
from unittest.mock import AsyncMock, patch

from click.testing import CliRunner

from src.dep_updater.dependency import Dependency, UpdateResult
from src.dep_updater.main import cli
from src.dep_updater.updater import CheckResult, ManifestResult


def check_result(updates=None, error=None):
    updates = updates or []
    manifest = ManifestResult(
        path=Path("package.json").resolve(),
        kind="npm",
        total_dependencies=0 if error else 2,
        updates=updates,
        error=error,
    )
    return CheckResult(manifests=[manifest])


def react_update():
    return UpdateResult(
        Dependency("dependencies", "react", "^18.2.0", "^18.2.0"),
        "^19.0.0",
        info="https://github.com/facebook/react",
    )


def mock_check(mock_updater, result):
    mock_updater.return_value.check = AsyncMock(return_value=result)


class TestCLIBasics:
    """Test basic CLI functionality."""

    def test_cli_help(self):
        """Test CLI help message."""
        runner = CliRunner()
        result = runner.invoke(cli, ["--help"])

        assert result.exit_code == 0
        assert "dep-updater" in result.output.lower()

    def test_cli_version(self):
        """Test CLI version display."""
        runner = CliRunner()
        result = runner.invoke(cli, ["--version"])

        assert result.exit_code == 0
        assert "1.0.0" in result.output

    def test_check_help(self):
        """Test the check command help."""
        runner = CliRunner()
        result = runner.invoke(cli, ["check", "--help"])

        assert result.exit_code == 0
        assert "--cooldown" in result.output


class TestCheckCommand:
    """Test the check command functionality."""

    @patch("src.dep_updater.main.DependencyUpdater")
    def test_check_with_options(self, mock_updater, sample_package_json):
        """Test that flags reach the run options."""
        mock_check(mock_updater, check_result([react_update()]))

        runner = CliRunner()
        result = runner.invoke(
            cli,
            [
                "check",
                str(sample_package_json),
                "--update",
                "--minor",
                "--pin",
                "react=^18",
                "--exclude",
                "lodash,typescript",
                "--cooldown",
                "3d",
            ],
        )

        assert result.exit_code == 0
        options = mock_updater.call_args[0][0]
        assert options.files == [str(sample_package_json)]
        assert options.update
        assert options.exclude == ["lodash", "typescript"]
        assert options.cooldown == "3d"
        assert options.resolution.pin == {"react": "^18"}
        assert options.resolution.flags_for("react").semvers == frozenset({"patch", "minor"})

    @patch("src.dep_updater.main.DependencyUpdater")
    def test_json_output(self, mock_updater, sample_package_json):
        """Test the JSON document on stdout."""
        mock_check(mock_updater, check_result([react_update()]))

        runner = CliRunner()
        result = runner.invoke(cli, ["check", "--json", str(sample_package_json)])

        assert result.exit_code == 0
        output = json.loads(result.stdout)
        assert output["results"]["npm"]["dependencies"]["react"]["new"] == "^19.0.0"

    @patch("src.dep_updater.main.DependencyUpdater")
    def test_table_output(self, mock_updater, sample_package_json):
        """Test the console table."""
        mock_check(mock_updater, check_result([react_update()]))

        runner = CliRunner()
        result = runner.invoke(cli, ["check", str(sample_package_json)])

        assert result.exit_code == 0
        assert "react" in result.output
        assert "^19.0.0" in result.output

    @patch("src.dep_updater.main.DependencyUpdater")
    def test_up_to_date(self, mock_updater, sample_package_json):
        """Test the message when nothing is outdated."""
        mock_check(mock_updater, check_result())

        runner = CliRunner()
        result = runner.invoke(cli, ["check", str(sample_package_json)])

        assert result.exit_code == 0
        assert "All dependencies are up to date." in result.output


class TestExitCodes:
    """Test exit codes of the check command."""

    @patch("src.dep_updater.main.DependencyUpdater")
    def test_error_on_outdated(self, mock_updater, sample_package_json):
        """Test -E with updates available."""
        mock_check(mock_updater, check_result([react_update()]))

        runner = CliRunner()
        result = runner.invoke(cli, ["check", "-E", str(sample_package_json)])

        assert result.exit_code == 2

    @patch("src.dep_updater.main.DependencyUpdater")
    def test_error_on_unchanged(self, mock_updater, sample_package_json):
        """Test -U without updates."""
        mock_check(mock_updater, check_result())

        runner = CliRunner()
        result = runner.invoke(cli, ["check", "-U", str(sample_package_json)])

        assert result.exit_code == 2

    @patch("src.dep_updater.main.DependencyUpdater")
    def test_manifest_error(self, mock_updater, sample_package_json):
        """Test that a manifest error exits with 1."""
        mock_check(mock_updater, check_result(error="Error parsing package.json"))

        runner = CliRunner()
        result = runner.invoke(cli, ["check", str(sample_package_json)])

        assert result.exit_code == 1
        assert "Error parsing package.json" in result.output


class TestErrorHandling:
    """Test error handling in CLI."""

    def test_invalid_command(self):
        """Test invalid command handling."""
        runner = CliRunner()
        result = runner.invoke(cli, ["invalid-command"])

        assert result.exit_code != 0

    def test_invalid_sockets(self, sample_package_json):
        """Test rejection of a non-positive socket count."""
        runner = CliRunner()
        result = runner.invoke(cli, ["check", "--sockets", "0", str(sample_package_json)])

        assert result.exit_code == 1
        assert "--sockets" in result.output

    def test_invalid_pin(self, sample_package_json):
        """Test rejection of a malformed pin."""
        runner = CliRunner()
        result = runner.invoke(cli, ["check", "--pin", "react", str(sample_package_json)])

        assert result.exit_code == 1
        assert "Invalid pin" in result.output

    def test_unknown_mode(self, sample_package_json):
        """Test rejection of unknown modes."""
        runner = CliRunner()
        result = runner.invoke(cli, ["check", "--modes", "npm,cargo", str(sample_package_json)])

        assert result.exit_code == 1
        assert "cargo" in result.output

    def test_missing_file(self, temp_dir):
        """Test a file that does not exist."""
        runner = CliRunner()
        result = runner.invoke(cli, ["check", str(temp_dir / "missing.json")])

        assert result.exit_code == 1
        assert "Unable to open" in result.output


class TestConfigCommands:
    """Test configuration management commands."""

    def test_config_init(self):
        """Test config file initialization."""
        runner = CliRunner()
        with runner.isolated_filesystem():
            result = runner.invoke(cli, ["config", "init"])

            assert result.exit_code == 0
            data = json.loads(Path(".dep-updater.json").read_text())
            assert data["network"]["max_sockets"] == 96

            again = runner.invoke(cli, ["config", "init"])
            assert "already exists" in again.output

    def test_config_show(self):
        """Test config show command."""
        runner = CliRunner()
        result = runner.invoke(cli, ["config", "show"])

        assert result.exit_code == 0
        assert "Configuration" in result.output
        assert "npm Registry" in result.output

    def test_config_validate_valid_file(self, temp_dir):
        """Test validating a valid config file."""
        config_file = temp_dir / "config.json"
        config_file.write_text(json.dumps({"network": {"fetch_timeout": 10, "max_sockets": 16}}))

        runner = CliRunner()
        result = runner.invoke(cli, ["config", "validate", str(config_file)])

        assert result.exit_code == 0
        assert "valid" in result.output

    def test_config_validate_invalid_file(self, temp_dir):
        """Test validating an invalid config file."""
        config_file = temp_dir / "config.yaml"
        config_file.write_text("network:\n  max_sockets: 0\n")

        runner = CliRunner()
        result = runner.invoke(cli, ["config", "validate", str(config_file)])

        assert result.exit_code == 1
        assert "max_sockets must be positive" in result.output

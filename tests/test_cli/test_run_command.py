"""CLI tests for the run command."""

import pytest
import sys
from pathlib import Path
from unittest.mock import patch, MagicMock
from click.testing import CliRunner

import click

from luarun import __version__
from luarun.cli import main as cli_main
from luarun.runtime.errors import RuntimeFailure


class TestRunCommand:
    """Tests for the luarun CLI command."""

    @pytest.fixture
    def runner(self):
        """CLI runner."""
        return CliRunner()

    def test_missing_argument(self, runner):
        """Test the file argument is required."""
        result = runner.invoke(cli_main, [])
        assert result.exit_code != 0
        assert "FILE" in result.output

    def test_help(self, runner):
        """Test --help describes the command."""
        result = runner.invoke(cli_main, ["--help"])
        assert result.exit_code == 0
        assert "Run the Lua script FILE" in result.output

    def test_version(self, runner):
        """Test --version prints the package version."""
        result = runner.invoke(cli_main, ["--version"])
        assert result.exit_code == 0
        assert __version__ in result.output

    def test_runs_script(self, runner, script_file):
        """Test a successful script prints only its own output."""
        path = script_file("print('hello from lua')")
        result = runner.invoke(cli_main, [str(path)])
        assert result.exit_code == 0
        assert result.output == "hello from lua\n"

    def test_success_prints_nothing(self, runner, script_file):
        """Test returned values are not printed by the driver."""
        path = script_file("return 1 + 1")
        result = runner.invoke(cli_main, [str(path)])
        assert result.exit_code == 0
        assert result.output == ""

    def test_parse_error(self, runner, script_file):
        """Test a parse error is reported with its label."""
        path = script_file("return (")
        result = runner.invoke(cli_main, [str(path)])
        assert result.exit_code == 0
        assert click.unstyle(result.output).startswith("parse error:")

    def test_runtime_error(self, runner, script_file):
        """Test a runtime error is reported with its label."""
        path = script_file("undefined_function()")
        result = runner.invoke(cli_main, [str(path)])
        assert result.exit_code == 0
        assert click.unstyle(result.output).startswith("runtime error:")
        assert "undefined_function" in result.output

    def test_load_error(self, runner, tmp_path):
        """Test a missing file is reported as a load error."""
        result = runner.invoke(cli_main, [str(tmp_path / "missing.lua")])
        assert result.exit_code == 0
        assert click.unstyle(result.output).startswith("load error:")

    def test_single_diagnostic_line(self, runner, script_file):
        """Test a failing run writes exactly one line."""
        path = script_file("print('before')\nerror('boom')")
        result = runner.invoke(cli_main, [str(path)])
        lines = click.unstyle(result.output).splitlines()
        assert lines == ["before", "runtime error: line 2: boom"]

    def test_shebang_script(self, runner, script_file):
        """Test a script with an interpreter line runs."""
        path = script_file("#!/usr/bin/env luarun\nprint(debug(1, 2, 3))")
        result = runner.invoke(cli_main, [str(path)])
        assert result.output == "(1, 2, 3)\n"

    def test_failure_shown_through_show_error(self, runner, script_file):
        """Test failures are routed to show_error."""
        path = script_file("return 1")
        failed = MagicMock(success=False, error=RuntimeFailure("x"), execution_time_ms=0.0)
        with patch("luarun.cli.run.Interpreter") as interpreter_mock, \
                patch("luarun.cli.run.show_error") as show_mock:
            interpreter_mock.return_value.run_path.return_value = failed
            result = runner.invoke(cli_main, [str(path)])
        assert result.exit_code == 0
        show_mock.assert_called_once_with(failed.error)

    def test_limits_from_environment(self, runner, script_file):
        """Test LUARUN_MAX_STEPS bounds the run."""
        path = script_file("while true do end")
        result = runner.invoke(cli_main, [str(path)], env={"LUARUN_MAX_STEPS": "1000"})
        assert result.exit_code == 0
        assert "instruction limit exceeded" in result.output

    @pytest.mark.parametrize("source,label", [
        ("return string.format('%c', -1)", "runtime error:"),
        ("local f = ipairs({}); return f()", "runtime error:"),
        ("return 1" + "0" * 5000 + " + nil", "runtime error:"),
        ("return " + "(" * 400 + "1" + ")" * 400, "parse error:"),
        ("return " + "not " * 300 + "true", "parse error:"),
    ])
    def test_failure_is_one_labelled_line(self, runner, script_file, source, label):
        """Test failing scripts exit 0 with exactly one diagnostic line."""
        result = runner.invoke(cli_main, [str(script_file(source))])
        assert result.exit_code == 0
        assert result.exception is None
        lines = click.unstyle(result.output).splitlines()
        assert len(lines) == 1
        assert lines[0].startswith(label)

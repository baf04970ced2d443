"""Tests for output formatting utilities."""

import json

import yaml
from rich.table import Table

from deployctl.core.output import (
    OutputFormat,
    OutputFormatter,
    format_bytes,
    format_duration,
)


class TestFormatBytes:
    """Tests for format_bytes utility."""

    def test_bytes(self):
        assert format_bytes(500) == "500.0 B"

    def test_kilobytes(self):
        assert format_bytes(1536) == "1.5 KB"

    def test_megabytes(self):
        assert format_bytes(1024 * 1024 * 2.5) == "2.5 MB"

    def test_zero(self):
        assert format_bytes(0) == "0.0 B"


class TestFormatDuration:
    """Tests for format_duration utility."""

    def test_seconds(self):
        assert format_duration(0.5) == "0.5s"
        assert format_duration(59.9) == "59.9s"

    def test_minutes(self):
        assert format_duration(90) == "1.5m"

    def test_hours(self):
        assert format_duration(7200) == "2.0h"


class TestOutputFormatter:
    """Tests for OutputFormatter class."""

    def test_quiet_mode_suppresses_output(self, capsys):
        formatter = OutputFormatter(quiet=True, color=False)
        formatter.print("test message")
        formatter.print_info("info message")
        formatter.print_warning("warning message")
        formatter.print_table(Table("column"))
        captured = capsys.readouterr()
        assert captured.out == ""

    def test_error_always_prints(self, capsys):
        formatter = OutputFormatter(quiet=True, color=False)
        formatter.print_error("error message")
        captured = capsys.readouterr()
        assert "error message" in captured.err

    def test_alert_ignores_quiet(self, capsys):
        formatter = OutputFormatter(quiet=True, color=False)
        formatter.print_alert("rollback failed on staging/api")
        captured = capsys.readouterr()
        assert "ALERT" in captured.err
        assert "rollback failed on staging/api" in captured.err

    def test_json_output(self, capsys):
        formatter = OutputFormatter(format=OutputFormat.JSON, color=False)
        data = {"run_id": "abc", "stages": ["deploy-api"]}
        formatter.print_data(data)
        assert json.loads(capsys.readouterr().out) == data

    def test_yaml_output(self, capsys):
        formatter = OutputFormatter(format=OutputFormat.YAML, color=False)
        data = {"run_id": "abc", "overall_status": "success"}
        formatter.print_data(data)
        assert yaml.safe_load(capsys.readouterr().out) == data

    def test_raw_output_dict(self, capsys):
        formatter = OutputFormatter(format=OutputFormat.RAW, color=False)
        formatter.print_data({"run_id": "abc"})
        assert "run_id: abc" in capsys.readouterr().out

    def test_table_output_list(self, capsys):
        formatter = OutputFormatter(color=False)
        formatter.print_data([{"target": "staging/api", "status": "success"}], title="Results")
        out = capsys.readouterr().out
        assert "staging/api" in out
        assert "Results" in out

    def test_table_output_empty(self, capsys):
        OutputFormatter(color=False).print_data([])
        assert "No data to display" in capsys.readouterr().out

    def test_confirm_quiet_returns_default(self):
        formatter = OutputFormatter(quiet=True, color=False)
        assert formatter.confirm("Deploy?", default=True) is True
        assert formatter.confirm("Deploy?") is False

    def test_confirm_reads_answer(self, monkeypatch):
        formatter = OutputFormatter(color=False)
        monkeypatch.setattr("builtins.input", lambda: "yes")
        assert formatter.confirm("Deploy?") is True
        monkeypatch.setattr("builtins.input", lambda: "")
        assert formatter.confirm("Deploy?", default=False) is False


class TestOutputFormat:
    """Tests for OutputFormat enum."""

    def test_string_comparison(self):
        assert OutputFormat.TABLE == "table"
        assert OutputFormat("json") == OutputFormat.JSON

"""
Tests for the loadrig command-line interface.
"""

import json

import pytest
import yaml
from click.testing import CliRunner

from loadrig import __version__
from loadrig.cli import EXIT_CONFIG_ERROR, EXIT_PASSED, EXIT_THRESHOLDS_FAILED, cli

WORKLOAD = '''
async def run(vu):
    vu.check(vu.iteration, {"iteration is counted": lambda i: i >= 0})
    await vu.sleep(0.01)
'''


@pytest.fixture
def cli_runner():
    return CliRunner()


@pytest.fixture
def write_config(tmp_path):
    """Write a run configuration next to a request-free workload file."""
    (tmp_path / "workload.py").write_text(WORKLOAD)

    def writer(**overrides):
        data = {
            "name": "cli-smoke",
            "workload": "workload.py:run",
            "stages": [{"duration": 0.2, "target": 2}],
            "options": {"graceful_stop": 1, "tick_interval": 0.02},
        }
        data.update(overrides)
        path = tmp_path / "run.yaml"
        path.write_text(yaml.safe_dump(data))
        return path

    return writer


class TestCli:
    """Tests for the cli group."""

    def test_version(self, cli_runner):
        result = cli_runner.invoke(cli, ["--version"])
        assert result.exit_code == 0
        assert __version__ in result.output

    def test_info(self, cli_runner):
        result = cli_runner.invoke(cli, ["info"])
        assert result.exit_code == 0
        assert "http_req_duration" in result.output
        assert "markdown" in result.output


class TestValidateCommand:
    """Tests for `loadrig validate`."""

    def test_valid_config(self, cli_runner, write_config):
        result = cli_runner.invoke(cli, ["validate", str(write_config())])
        assert result.exit_code == EXIT_PASSED
        assert "Configuration is valid" in result.output

    def test_schema_error(self, cli_runner, write_config):
        path = write_config(stages=[{"duration": "1s", "target": -5}])
        result = cli_runner.invoke(cli, ["validate", str(path)])
        assert result.exit_code == EXIT_CONFIG_ERROR
        assert "Configuration Error" in result.output

    def test_unresolvable_workload(self, cli_runner, write_config):
        path = write_config(workload="workload.py:missing")
        result = cli_runner.invoke(cli, ["validate", str(path)])
        assert result.exit_code == EXIT_CONFIG_ERROR
        assert "missing" in result.output

    def test_missing_file(self, cli_runner, tmp_path):
        result = cli_runner.invoke(cli, ["validate", str(tmp_path / "nope.yaml")])
        assert result.exit_code == 2


class TestPlanCommand:
    """Tests for `loadrig plan`."""

    def test_plan(self, cli_runner, write_config):
        path = write_config(stages=[{"duration": "20s", "target": 10}, {"duration": "10s", "target": 0}])
        result = cli_runner.invoke(cli, ["plan", str(path), "--step", "10s"])
        assert result.exit_code == 0
        assert "Total" in result.output
        assert "30s" in result.output

    def test_bad_step(self, cli_runner, write_config):
        result = cli_runner.invoke(cli, ["plan", str(write_config()), "--step", "0s"])
        assert result.exit_code == 2


class TestRunCommand:
    """Tests for `loadrig run`."""

    def test_passing_run(self, cli_runner, write_config, tmp_path):
        path = write_config(thresholds={"checks": "rate>0.9"})
        summary = tmp_path / "summary" / "result.json"
        result = cli_runner.invoke(cli, [
            "run", str(path),
            "--output", str(tmp_path / "reports"),
            "--format", "csv",
            "--summary-export", str(summary),
        ])

        assert result.exit_code == EXIT_PASSED, result.output
        assert "PASSED" in result.output
        assert json.loads(summary.read_text())["passed"] is True
        assert len(list((tmp_path / "reports").glob("cli-smoke_report_*.csv"))) == 1

    def test_failing_thresholds_exit_code(self, cli_runner, write_config):
        path = write_config(thresholds={"iterations": "count<1"})
        result = cli_runner.invoke(cli, ["run", str(path)])
        assert result.exit_code == EXIT_THRESHOLDS_FAILED
        assert "FAILED" in result.output

    def test_config_error_exit_code(self, cli_runner, write_config):
        path = write_config(thresholds={"http_req_failed": "p(95)<10"})
        result = cli_runner.invoke(cli, ["run", str(path)])
        assert result.exit_code == EXIT_CONFIG_ERROR

    def test_workload_error_exit_code(self, cli_runner, write_config):
        path = write_config(workload="workload.py:missing")
        result = cli_runner.invoke(cli, ["run", str(path)])
        assert result.exit_code == EXIT_CONFIG_ERROR

"""
Command line interface.

Exit codes: 0 pass, 1 failures or infrastructure error, 2 bad invocation
or invalid manifest.
"""

from __future__ import annotations

import json

import pytest
from click.testing import CliRunner

from pgharness.aggregate import write_json_lines
from pgharness.cli import main, run_cli
from pgharness.models import TestMode, TestResult
from pgharness.orchestrator import RunReport, Tier, TierResult


@pytest.fixture
def cli():
    return CliRunner()


@pytest.fixture
def cycle_manifest(tmp_path):
    path = tmp_path / "cycle.json"
    path.write_text(json.dumps({"entries": [
        {"name": "a", "kind": "extension", "dependencies": ["b"]},
        {"name": "b", "kind": "extension", "dependencies": ["a"]},
    ]}))
    return path


class FakeOrchestrator:
    """Stands in for Orchestrator; returns a canned report."""

    report = RunReport(mode=TestMode.PRODUCTION)
    instances = []

    def __init__(self, config, entries, **callbacks):
        self.config = config
        self.entries = entries
        self.callbacks = callbacks
        self.preload = "pg_cron"
        self.signals_installed = False
        type(self).instances.append(self)

    def install_signal_handlers(self):
        self.signals_installed = True

    def run(self):
        return self.report


def canned(results, aborted=False, error=None):
    class Canned(FakeOrchestrator):
        report = RunReport(
            mode=TestMode.PRODUCTION,
            tiers=[TierResult(Tier.CORE, results)],
            aborted=aborted,
            error=error,
        )
        instances = []
    return Canned


# ---------------------------------------------------------------------------
# Manifest commands
# ---------------------------------------------------------------------------


def test_validate_bundled_manifest(cli):
    result = cli.invoke(main, ["validate", "--no-color"])
    assert result.exit_code == 0, result.output
    assert "Manifest OK" in result.output


def test_validate_invalid_manifest(cli, cycle_manifest):
    result = cli.invoke(main, ["validate", "--no-color", "--manifest", str(cycle_manifest)])
    assert result.exit_code == 2
    assert "Circular dependency detected: a -> b -> a" in result.output


def test_preload_command(cli):
    result = cli.invoke(main, ["preload", "-m", "regression"])
    assert result.exit_code == 0, result.output
    lines = result.output.splitlines()
    assert lines[0] == "default: pg_cron,pgaudit,pg_stat_statements,auto_explain"
    assert lines[1].startswith("regression: pg_cron,pgaudit,pg_stat_statements,auto_explain,")
    assert "timescaledb" in lines[1]


def test_list_by_category(cli):
    result = cli.invoke(main, ["list", "--no-color", "-m", "production", "--category", "gis"])
    assert result.exit_code == 0, result.output
    assert "postgis" in result.output
    assert "pgrouting" in result.output
    assert "vector" not in result.output


def test_mode_command(cli):
    result = cli.invoke(main, ["mode"], env={"TEST_MODE": "comprehensive"})
    assert result.output.strip() == "regression"


@pytest.mark.parametrize("args", [["mode"], ["preload"], ["list", "--no-color"]])
def test_bad_env_mode_is_usage_error(cli, args):
    result = cli.invoke(main, args, env={"TEST_MODE": "nightly"})
    assert result.exit_code == 2, f"{args}: {result.output}"
    assert "Unknown test mode: 'nightly'" in result.output
    assert result.exception is None or isinstance(result.exception, SystemExit)


def test_bad_tier_is_usage_error(cli):
    result = cli.invoke(main, ["run", "--tier", "9"])
    assert result.exit_code == 2


def test_run_with_invalid_manifest(cli, cycle_manifest):
    result = cli.invoke(main, ["run", "--no-color", "--manifest", str(cycle_manifest)])
    assert result.exit_code == 2


# ---------------------------------------------------------------------------
# run_cli
# ---------------------------------------------------------------------------


def test_run_cli_success(tmp_path):
    factory = canned([TestResult(name="boolean", passed=True, suite="core")])
    code = run_cli(
        image="example/pg:18",
        mode="regression",
        tiers=("1", "interaction"),
        no_color=True,
        orchestrator_factory=factory,
        validate_environment=False,
        json_output=str(tmp_path / "report.json"),
        results_output=str(tmp_path / "results.jsonl"),
        junit_output=str(tmp_path / "junit.xml"),
    )
    assert code == 0

    orch = factory.instances[-1]
    assert orch.signals_installed
    assert orch.config.image == "example/pg:18"
    assert orch.config.mode is TestMode.REGRESSION
    assert orch.config.tiers == ("core", "interaction")
    assert set(orch.callbacks) == {"on_tier_start", "on_tier_complete", "on_test_complete"}

    assert (tmp_path / "report.json").exists()
    assert (tmp_path / "results.jsonl").read_text().count("\n") == 1
    assert (tmp_path / "junit.xml").exists()


def test_run_cli_failure_exit_code(tmp_path):
    factory = canned([
        TestResult(name="boolean", passed=True, suite="core"),
        TestResult(name="int4", passed=False, suite="core", diff="-1\n+2"),
    ])
    code = run_cli(
        no_color=True,
        orchestrator_factory=factory,
        validate_environment=False,
        diffs_output=str(tmp_path / "regression.diffs"),
    )
    assert code == 1
    assert "REGRESSION: int4" in (tmp_path / "regression.diffs").read_text()


def test_run_cli_infrastructure_error(capsys):
    factory = canned([], aborted=True, error="Container x health check timeout after 60s")
    code = run_cli(no_color=True, orchestrator_factory=factory, validate_environment=False)
    assert code == 1
    assert "health check timeout" in capsys.readouterr().out


def test_run_cli_bad_env_mode(monkeypatch):
    monkeypatch.setenv("TEST_MODE", "nightly")
    code = run_cli(no_color=True, orchestrator_factory=canned([]), validate_environment=False)
    assert code == 2


def test_run_cli_extension_selection():
    factory = canned([])
    run_cli(extensions=("vector", "hypopg"), no_color=True, orchestrator_factory=factory, validate_environment=False)
    assert factory.instances[-1].config.extensions == ("vector", "hypopg")

    run_cli(no_color=True, orchestrator_factory=factory, validate_environment=False)
    assert factory.instances[-1].config.extensions == ()


def test_run_cli_docker_unreachable(monkeypatch):
    from pgharness import cli as cli_module

    monkeypatch.setattr(cli_module, "check_docker_daemon", lambda: False)
    factory = canned([])
    code = run_cli(no_color=True, orchestrator_factory=factory)
    assert code == 1
    assert factory.instances == []


# ---------------------------------------------------------------------------
# aggregate
# ---------------------------------------------------------------------------


def test_aggregate_command(cli, tmp_path):
    write_json_lines([TestResult(name="boolean", passed=True, suite="core")], tmp_path / "core.jsonl")
    write_json_lines([TestResult(name="vector", passed=True, suite="extension")], tmp_path / "ext.jsonl")

    result = cli.invoke(main, ["aggregate", str(tmp_path), "--no-color"])
    assert result.exit_code == 0, result.output
    merged = (tmp_path / "aggregated-results.jsonl").read_text().splitlines()
    assert [json.loads(line)["name"] for line in merged] == ["[core] boolean", "[extension] vector"]


def test_aggregate_command_junit_with_failures(cli, tmp_path):
    write_json_lines([TestResult(name="int4", passed=False, suite="core")], tmp_path / "core.jsonl")
    result = cli.invoke(main, ["aggregate", str(tmp_path), "--format", "junit", "--no-color"])
    assert result.exit_code == 1
    assert (tmp_path / "aggregated-results.xml").exists()


def test_aggregate_command_bad_file(cli, tmp_path):
    (tmp_path / "broken.jsonl").write_text("{oops\n")
    result = cli.invoke(main, ["aggregate", str(tmp_path), "--no-color"])
    assert result.exit_code == 2
    assert "broken.jsonl:1" in result.output

"""
Terminal reporting and the JSON run report.
"""

from __future__ import annotations

import json

from rich.console import Console

from pgharness.config import HarnessConfig
from pgharness.models import TestMode, TestResult
from pgharness.orchestrator import RunReport, Tier, TierResult
from pgharness.reporting import TestReporter, write_json_report

from conftest import make_entry


def sample_report():
    return RunReport(
        mode=TestMode.PRODUCTION,
        preload="pg_cron,pgaudit",
        duration=4.2,
        tiers=[
            TierResult(Tier.CORE, [
                TestResult(name="boolean", passed=True, duration=10, suite="core"),
                TestResult(name="int4", passed=False, duration=20, suite="core",
                           error="output differs from expected", diff="--- expected/int4.out\n+++ results/int4.out\n-1\n+2"),
            ], duration=1.5),
            TierResult(Tier.INTERACTION, [
                TestResult(name="pgsodium-vault", passed=False, suite="interaction",
                           error="pgsodium_getkey missing", expected_failure=True),
            ], duration=0.5),
        ],
    )


def recording_reporter(**kwargs):
    console = Console(record=True, width=120, color_system=None)
    return TestReporter(console=console, **kwargs), console


def test_summary_lists_failures_with_diff():
    reporter, console = recording_reporter()
    reporter.print_summary(sample_report())
    text = console.export_text()
    assert "Failures" in text
    assert "int4" in text
    assert "+2" in text
    assert "Expected failures" in text
    assert "pgsodium-vault" in text


def test_summary_plain_output(capsys):
    TestReporter(no_color=True).print_summary(sample_report())
    out = capsys.readouterr().out
    assert "Passed: 1, Failed: 1" in out
    assert "Expected failures: 1" in out
    assert "- [core] int4" in out
    assert "[green]" not in out


def test_summary_printed_for_aborted_run(capsys):
    report = RunReport(mode=TestMode.PRODUCTION, aborted=True, error="Container x health check timeout")
    TestReporter(no_color=True).print_summary(report)
    out = capsys.readouterr().out
    assert "Infrastructure error" in out
    assert "health check timeout" in out


def test_quiet_still_reports_failures(capsys):
    reporter = TestReporter(no_color=True, quiet=True)
    reporter.on_test_complete(TestResult(name="ok", passed=True, duration=1))
    reporter.on_test_complete(TestResult(name="bad", passed=False, duration=1))
    out = capsys.readouterr().out
    assert "bad" in out
    assert "ok" not in out


def test_strip_markup():
    assert TestReporter(no_color=True)._strip_markup("[red]FAIL[/red] x") == "FAIL x"


def test_manifest_table():
    reporter, console = recording_reporter()
    reporter.print_manifest(
        [make_entry("pg_cron", shared_preload=True, default_enable=True), make_entry("hll")],
        preload=["pg_cron"],
    )
    text = console.export_text()
    assert "pg_cron" in text
    assert "loaded" in text
    assert "hll" in text


def test_json_report(tmp_path):
    path = tmp_path / "reports" / "run.json"
    write_json_report(sample_report(), path, HarnessConfig(image="example/pg:18"))
    data = json.loads(path.read_text())
    assert data["mode"] == "production"
    assert data["summary"] == {"total": 3, "passed": 1, "failed": 1, "xfail": 1}
    assert data["config"]["image"] == "example/pg:18"
    assert data["tiers"][0]["results"][1]["diff"].endswith("+2")

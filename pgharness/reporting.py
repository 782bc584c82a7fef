"""
Reporting and terminal output for pgharness.

Uses Rich for tier headers, per-test status lines, summary panels and
tables. With ``no_color`` everything is printed as plain text.
"""

import json
import re
from dataclasses import asdict
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.syntax import Syntax
from rich.table import Table

from .config import HarnessConfig
from .models import ManifestEntry, TestResult, TestStatus
from .orchestrator import TIER_TITLES, RunReport, Tier, TierResult


# Status colors and symbols
STATUS_STYLES = {
    TestStatus.PASSED: ("green", "PASS", "[green]PASS[/green]"),
    TestStatus.FAILED: ("red", "FAIL", "[red]FAIL[/red]"),
    TestStatus.EXPECTED_FAILURE: ("yellow", "XFAIL", "[yellow]XFAIL[/yellow]"),
    TestStatus.SKIPPED: ("yellow", "SKIP", "[yellow]SKIP[/yellow]"),
}


class TestReporter:
    """
    Terminal output for a harness run.

    The on_* methods match the Orchestrator callbacks, so a reporter can
    be wired straight into a run.
    """
    __test__ = False

    def __init__(
        self,
        verbose: bool = False,
        quiet: bool = False,
        no_color: bool = False,
        console: Optional[Console] = None,
    ):
        """
        Args:
            verbose: Show diffs and full errors inline
            quiet: Minimal output (only errors and summary)
            no_color: Plain text output
            console: Rich console to print to (a fresh one by default)
        """
        self.verbose = verbose
        self.quiet = quiet
        self.no_color = no_color

        if no_color:
            self.console = None
        else:
            self.console = console or Console()

    def print(self, message: str, style: Optional[str] = None) -> None:
        """Print a message to the console."""
        if self.quiet:
            return

        if self.console:
            if style:
                self.console.print(message, style=style)
            else:
                self.console.print(message)
        else:
            print(self._strip_markup(message))

    def print_error(self, message: str) -> None:
        """Print an error message (always shown, even in quiet mode)."""
        if self.console:
            self.console.print(f"[red]Error:[/red] {escape(message)}")
        else:
            print(f"Error: {message}")

    def _strip_markup(self, text: str) -> str:
        """Strip Rich markup from text for plain output."""
        return re.sub(r'\[/?[^\]]+\]', '', text)

    # -- run lifecycle -------------------------------------------------------

    def print_header(self, config: HarnessConfig, preload: str, total_entries: int) -> None:
        if self.quiet:
            return

        lines = [
            f"Image:   {config.image}",
            f"Mode:    {config.mode.value}",
            f"Preload: {preload or '<none>'}",
            f"Tiers:   {', '.join(config.tiers)}",
        ]
        if config.container:
            lines.append(f"Container: {config.container} (reused)")

        if self.console:
            self.console.print()
            self.console.print(Panel(
                "[bold]PostgreSQL regression harness[/bold]\n"
                + "\n".join(f"[dim]{escape(line)}[/dim]" for line in lines),
                title="pgharness",
                border_style="blue",
            ))
            self.console.print(f"\nManifest: [cyan]{total_entries}[/cyan] entries\n")
        else:
            print("\n=== PostgreSQL regression harness ===")
            for line in lines:
                print(line)
            print(f"\nManifest: {total_entries} entries\n")

    def on_tier_start(self, tier: Tier) -> None:
        if self.quiet:
            return
        title = TIER_TITLES.get(tier, tier.value)
        if self.console:
            self.console.rule(f"[bold]{escape(title)}[/bold]")
        else:
            print(f"\n--- {title} ---")

    def on_test_complete(self, result: TestResult) -> None:
        if self.quiet and not result.is_failure:
            return
        _, plain_status, rich_status = STATUS_STYLES.get(
            result.status,
            ("white", "???", "[white]???[/white]"),
        )
        duration_str = f"({result.duration:.0f}ms)"

        if self.console:
            note = ""
            if result.status in (TestStatus.SKIPPED, TestStatus.EXPECTED_FAILURE) and result.error:
                note = f" [dim]{escape(result.error)}[/dim]"
            self.console.print(
                f"  {rich_status} {escape(result.name)} [dim]{duration_str}[/dim]{note}"
            )
            if self.verbose and result.is_failure:
                self._print_failure_details(result)
        else:
            print(f"  {plain_status} {result.name} {duration_str}")

    def on_tier_complete(self, tier_result: TierResult) -> None:
        if self.quiet:
            return
        passed = tier_result.count(TestStatus.PASSED)
        failed = tier_result.count(TestStatus.FAILED)
        text = f"{passed} passed, {failed} failed in {tier_result.duration:.1f}s"
        if tier_result.error:
            self.print_error(f"{tier_result.tier.value} tier aborted: {tier_result.error}")
        self.print(f"  [dim]{text}[/dim]\n")

    # -- summary -------------------------------------------------------------

    def print_summary(self, report: RunReport) -> None:
        """Final summary. Always printed, including after an aborted run."""
        results = report.results
        counts: Dict[TestStatus, int] = {}
        for result in results:
            counts[result.status] = counts.get(result.status, 0) + 1

        total = len(results)
        passed = counts.get(TestStatus.PASSED, 0)
        failed = counts.get(TestStatus.FAILED, 0)
        xfail = counts.get(TestStatus.EXPECTED_FAILURE, 0)
        skipped = counts.get(TestStatus.SKIPPED, 0)
        failures = failed_results(results)
        expected = [r for r in results if r.status is TestStatus.EXPECTED_FAILURE]

        if self.console:
            self.console.print()
            if report.tiers:
                self.console.print(self._tier_table(report.tiers))

            if report.success:
                summary_text = f"[green bold]All {total - skipped - xfail} tests passed![/green bold]"
                border_style = "green"
            else:
                parts = []
                if passed:
                    parts.append(f"[green]{passed} passed[/green]")
                if failed:
                    parts.append(f"[red]{failed} failed[/red]")
                if report.aborted:
                    parts.append("[red]run aborted[/red]")
                summary_text = ", ".join(parts) + f" [dim]of {total} tests[/dim]"
                border_style = "red"
            extras = []
            if xfail:
                extras.append(f"[yellow]{xfail} expected failure(s)[/yellow]")
            if skipped:
                extras.append(f"[yellow]{skipped} skipped[/yellow]")
            if extras:
                summary_text += "\n" + ", ".join(extras)

            self.console.print(Panel(summary_text, title="Results", border_style=border_style))

            if expected:
                self.console.print("\n[yellow bold]Expected failures:[/yellow bold]")
                for result in expected:
                    self.console.print(f"  [yellow]{escape(result.name)}[/yellow] [dim]{escape(result.error or '')}[/dim]")

            if failures:
                self.console.print("\n[red bold]Failures:[/red bold]\n")
                for result in failures:
                    self._print_failure_details(result)

            if report.error:
                self.console.print(f"\n[red bold]Infrastructure error:[/red bold]\n{escape(report.error)}")

            self.console.print(f"\n[dim]Total time: {report.duration:.2f}s[/dim]")
        else:
            print("\n" + "=" * 60)
            print("RESULTS")
            print("=" * 60)
            for tier in report.tiers:
                print(
                    f"  {tier.tier.value:<12} {tier.count(TestStatus.PASSED)} passed, "
                    f"{tier.count(TestStatus.FAILED)} failed ({tier.duration:.1f}s)"
                )

            if report.success:
                print(f"\nAll {total - skipped - xfail} tests passed!")
            else:
                print(f"\nPassed: {passed}, Failed: {failed}, Skipped: {skipped}")
            if xfail:
                print(f"Expected failures: {xfail}")

            if failures:
                print("\nFailures:")
                for result in failures:
                    print(f"  - [{result.suite}] {result.name}")
                    if result.error:
                        print(f"    {result.error}")
                    if result.diff:
                        print(result.diff)

            if report.error:
                print(f"\nInfrastructure error:\n{report.error}")
            print(f"\nTotal time: {report.duration:.2f}s")

    def _tier_table(self, tiers: Sequence[TierResult]) -> Table:
        table = Table(title="Tiers")
        table.add_column("Tier", style="cyan")
        table.add_column("Passed", justify="right")
        table.add_column("Failed", justify="right")
        table.add_column("XFail", justify="right")
        table.add_column("Skipped", justify="right")
        table.add_column("Time", justify="right")
        table.add_column("Status")
        for tier in tiers:
            status = "[green]OK[/green]" if tier.ok else "[red]FAILED[/red]"
            if tier.error:
                status = "[red]ABORTED[/red]"
            table.add_row(
                TIER_TITLES.get(tier.tier, tier.tier.value),
                str(tier.count(TestStatus.PASSED)),
                str(tier.count(TestStatus.FAILED)),
                str(tier.count(TestStatus.EXPECTED_FAILURE)),
                str(tier.count(TestStatus.SKIPPED)),
                f"{tier.duration:.1f}s",
                status,
            )
        return table

    def _print_failure_details(self, result: TestResult) -> None:
        """Print detailed failure information."""
        if not self.console:
            return

        self.console.print(f"[red]{escape(result.name)}[/red] [dim]({escape(result.suite or '-')})[/dim]")
        if result.error:
            self.console.print(f"  [dim]Message:[/dim] {escape(result.error)}")
        if result.diff:
            self.console.print(Syntax(result.diff, "diff", theme="ansi_dark", background_color="default"))
        self.console.print()

    # -- other commands ------------------------------------------------------

    def print_manifest(self, entries: Sequence[ManifestEntry], preload: Sequence[str] = ()) -> None:
        """Table of manifest entries, used by ``pgharness list``."""
        if not entries:
            self.print("Manifest is empty.")
            return

        loaded = set(preload)
        if self.console:
            table = Table(title="Extensions")
            table.add_column("Name", style="cyan")
            table.add_column("Kind")
            table.add_column("Category")
            table.add_column("Preload")
            table.add_column("Default")
            table.add_column("Depends on")
            table.add_column("Status")
            for entry in entries:
                preload_flag = ""
                if entry.runtime.shared_preload:
                    preload_flag = "[green]loaded[/green]" if entry.name in loaded else "optional"
                status = "[green]enabled[/green]" if entry.is_enabled else "[red]disabled[/red]"
                table.add_row(
                    escape(entry.name),
                    entry.kind.value,
                    entry.category,
                    preload_flag,
                    "yes" if entry.runtime.default_enable else "",
                    ", ".join(entry.dependencies),
                    status,
                )
            self.console.print(table)
        else:
            print("Extensions:")
            for entry in entries:
                flag = "" if entry.is_enabled else " (disabled)"
                print(f"  {entry.name} [{entry.kind.value}, {entry.category}]{flag}")

    def print_validation_errors(self, errors: Sequence[str]) -> None:
        if self.console:
            self.console.print(f"[red bold]Manifest is invalid ({len(errors)} error(s)):[/red bold]")
            for error in errors:
                self.console.print(f"  [red]-[/red] {escape(error)}")
        else:
            print(f"Manifest is invalid ({len(errors)} error(s)):")
            for error in errors:
                print(f"  - {error}")

    def print_aggregate(self, stats: Dict[str, Any]) -> None:
        """Per-suite statistics, used by ``pgharness aggregate``."""
        if self.console:
            table = Table(title="Aggregated results")
            table.add_column("Suite", style="cyan")
            table.add_column("Total", justify="right")
            table.add_column("Passed", justify="right")
            table.add_column("Failed", justify="right")
            table.add_column("Duration", justify="right")
            for suite, s in stats["by_suite"].items():
                table.add_row(
                    escape(suite),
                    str(s["total"]),
                    str(s["passed"]),
                    f"[red]{s['failed']}[/red]" if s["failed"] else "0",
                    f"{s['duration_total'] / 1000:.1f}s",
                )
            self.console.print(table)
            self.console.print(
                f"Total: {stats['total']} tests, {stats['passed']} passed, "
                f"{stats['failed']} failed, {stats['expected_failures']} expected failure(s), "
                f"{stats['skipped']} skipped"
            )
        else:
            for suite, s in stats["by_suite"].items():
                print(f"  {suite}: {s['passed']}/{s['total']} passed, {s['failed']} failed")
            print(f"Total: {stats['total']} tests, {stats['passed']} passed, {stats['failed']} failed")


def write_json_report(
    report: RunReport,
    output_path: Path,
    config: Optional[HarnessConfig] = None,
) -> None:
    """
    Write a whole run report (tiers, summary, results) to a JSON file.

    Args:
        report: Finished run
        output_path: Path to output JSON file
        config: Run configuration (optional)
    """
    counts: Dict[str, int] = {}
    for result in report.results:
        status_name = result.status.value
        counts[status_name] = counts.get(status_name, 0) + 1

    data = {
        "timestamp": datetime.now().isoformat(),
        "mode": report.mode.value,
        "preload": report.preload,
        "duration_seconds": report.duration,
        "aborted": report.aborted,
        "error": report.error,
        "summary": {
            "total": len(report.results),
            **counts,
        },
        "config": asdict(config) if config else None,
        "tiers": [
            {
                "tier": t.tier.value,
                "duration_seconds": t.duration,
                "error": t.error,
                "results": [
                    {
                        "name": r.name,
                        "status": r.status.value,
                        "duration_ms": r.duration,
                        "error": r.error,
                        "diff": r.diff,
                        "metrics": r.metrics,
                    }
                    for r in t.results
                ],
            }
            for t in report.tiers
        ],
    }

    output_path.parent.mkdir(parents=True, exist_ok=True)
    output_path.write_text(json.dumps(data, indent=2, default=str))


def failed_results(results: Sequence[TestResult]) -> List[TestResult]:
    return [r for r in results if r.is_failure]

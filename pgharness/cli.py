"""
CLI entry point for pgharness.

Uses Click for argument parsing. ``pgharness run`` is the main entry
point; the other commands inspect the manifest or post-process results.

Exit codes: 0 everything passed, 1 test failures or an infrastructure
error, 2 bad invocation or an invalid manifest.
"""

import sys
from pathlib import Path
from typing import Optional, Tuple

import click

from . import __version__
from .aggregate import (
    AGGREGATED_BASENAME,
    aggregate,
    collect_results,
    export_results,
    prefix_suite_names,
    write_json_lines,
    write_junit_xml,
)
from .config import HarnessConfig
from .containers import check_container_running, check_docker_daemon
from .log_helper import configure_logging
from .manifest import ManifestError, ValidationError, extensions_by_category, load_manifest, manifest_summary
from .models import TestMode
from .modes import detect_test_mode, parse_mode, shared_preload_libraries
from .orchestrator import Orchestrator, parse_tier, preload_summary
from .regression import write_regression_diffs
from .reporting import TestReporter, write_json_report


EXIT_OK = 0
EXIT_FAILED = 1
EXIT_USAGE = 2

TIER_CHOICES = ["1", "2", "3", "core", "extension", "interaction"]
MODE_CHOICES = ["production", "regression", "comprehensive"]


def _validate_environment(container: Optional[str], reporter: TestReporter) -> bool:
    """
    Validate that the test environment is ready.

    Checks:
    - Docker daemon answers
    - The container to reuse (if any) is running
    """
    if not check_docker_daemon():
        reporter.print_error(
            "Docker daemon is not reachable.\n"
            "Make sure docker is installed and the daemon is running."
        )
        return False

    if container and not check_container_running(container):
        reporter.print_error(f"Container '{container}' is not running.")
        return False

    return True


def _load(manifest: Optional[str], reporter: TestReporter):
    """Load and validate the manifest, or report why not (returns None)."""
    try:
        return load_manifest(Path(manifest) if manifest else None)
    except ValidationError as e:
        reporter.print_validation_errors(e.errors)
    except ManifestError as e:
        reporter.print_error(str(e))
    return None


def _mode_or_exit(mode: Optional[str], reporter: TestReporter) -> TestMode:
    """The --mode value, else TEST_MODE; exits with a usage error if TEST_MODE is bad."""
    try:
        return parse_mode(mode) if mode else detect_test_mode()
    except ValueError as e:
        reporter.print_error(str(e))
        sys.exit(EXIT_USAGE)


@click.group()
@click.version_option(version=__version__, prog_name="pgharness")
def main():
    """
    PostgreSQL container regression harness.

    \b
    Examples:
        pgharness run                          # All tiers, image from env
        pgharness run --tier 1 --fast          # Core fast list only
        pgharness run -m regression my/image   # Regression mode
        pgharness validate                     # Check the manifest
        pgharness preload -m regression        # Show preload libraries
        pgharness aggregate results/           # Merge .jsonl results
    """


@main.command("run")
@click.argument("image", required=False)
@click.option("-m", "--mode", type=click.Choice(MODE_CHOICES), help="Test mode (default: TEST_MODE or production)")
@click.option("-t", "--tier", "tiers", multiple=True, type=click.Choice(TIER_CHOICES), help="Tier to run (can be repeated; default: all)")
@click.option("--fast", is_flag=True, help="Run the CI fast subset")
@click.option("-e", "--extension", "extensions", multiple=True, help="Extension to test in tier 2 (can be repeated; default: the mode's list)")
@click.option("--container", help="Reuse this running container instead of starting one")
@click.option("--fixtures", type=click.Path(file_okay=False), help="Fixture root (default: PGHARNESS_FIXTURES or ./regression)")
@click.option("--manifest", type=click.Path(dir_okay=False), help="Manifest JSON (default: bundled manifest)")
@click.option("--no-cleanup", is_flag=True, help="Leave the container running after the run")
@click.option("--generate-expected", is_flag=True, help="Write actual output as the new expected files")
@click.option("--json", "json_output", type=click.Path(), help="Write JSON report to file")
@click.option("--results", "results_output", type=click.Path(), help="Write results as JSON lines")
@click.option("--junit", "junit_output", type=click.Path(), help="Write JUnit XML to file")
@click.option("--diffs", "diffs_output", type=click.Path(), help="Write regression.diffs to file")
@click.option("-v", "--verbose", is_flag=True, help="Verbose output (debug logging, inline diffs)")
@click.option("-q", "--quiet", is_flag=True, help="Quiet mode (minimal output)")
@click.option("--no-color", is_flag=True, help="Disable colored output")
def run_tests(
    image: Optional[str],
    mode: Optional[str],
    tiers: Tuple[str, ...],
    fast: bool,
    extensions: Tuple[str, ...],
    container: Optional[str],
    fixtures: Optional[str],
    manifest: Optional[str],
    no_cleanup: bool,
    generate_expected: bool,
    json_output: Optional[str],
    results_output: Optional[str],
    junit_output: Optional[str],
    diffs_output: Optional[str],
    verbose: bool,
    quiet: bool,
    no_color: bool,
):
    """Run regression tiers against IMAGE (default: POSTGRES_IMAGE)."""
    exit_code = run_cli(
        image=image,
        mode=mode,
        tiers=tiers,
        fast=fast,
        extensions=extensions,
        container=container,
        fixtures=fixtures,
        manifest=manifest,
        cleanup=not no_cleanup,
        generate_expected=generate_expected,
        json_output=json_output,
        results_output=results_output,
        junit_output=junit_output,
        diffs_output=diffs_output,
        verbose=verbose,
        quiet=quiet,
        no_color=no_color,
    )
    sys.exit(exit_code)


def run_cli(
    image: Optional[str] = None,
    mode: Optional[str] = None,
    tiers: Tuple[str, ...] = (),
    fast: bool = False,
    extensions: Tuple[str, ...] = (),
    container: Optional[str] = None,
    fixtures: Optional[str] = None,
    manifest: Optional[str] = None,
    cleanup: bool = True,
    generate_expected: bool = False,
    json_output: Optional[str] = None,
    results_output: Optional[str] = None,
    junit_output: Optional[str] = None,
    diffs_output: Optional[str] = None,
    verbose: bool = False,
    quiet: bool = False,
    no_color: bool = False,
    orchestrator_factory=Orchestrator,
    validate_environment: bool = True,
) -> int:
    """
    Main run logic (can be called programmatically).

    Returns exit code (0 for success, 1 for failures, 2 for bad input).
    """
    reporter = TestReporter(verbose=verbose, quiet=quiet, no_color=no_color)
    configure_logging(verbose)

    entries = _load(manifest, reporter)
    if entries is None:
        return EXIT_USAGE

    try:
        config = HarnessConfig.from_env(
            image=image,
            mode=parse_mode(mode) if mode else None,
            tiers=tuple(parse_tier(t).value for t in tiers) or None,
            fixtures_dir=Path(fixtures) if fixtures else None,
            manifest_path=Path(manifest) if manifest else None,
            container=container,
            fast=fast,
            extensions=tuple(extensions) or None,
            cleanup=cleanup,
            generate_expected=generate_expected,
            verbose=verbose,
        )
    except ValueError as e:
        reporter.print_error(str(e))
        return EXIT_USAGE

    if validate_environment and not _validate_environment(config.container, reporter):
        return EXIT_FAILED

    orchestrator = orchestrator_factory(
        config,
        entries,
        on_tier_start=reporter.on_tier_start,
        on_tier_complete=reporter.on_tier_complete,
        on_test_complete=reporter.on_test_complete,
    )
    orchestrator.install_signal_handlers()

    reporter.print_header(config, orchestrator.preload, len(entries))
    report = orchestrator.run()
    reporter.print_summary(report)

    if json_output:
        write_json_report(report, Path(json_output), config)
        reporter.print(f"\nJSON report written to {json_output}")
    if results_output:
        write_json_lines(report.results, Path(results_output))
        reporter.print(f"Results written to {results_output}")
    if junit_output:
        write_junit_xml(report.results, Path(junit_output))
        reporter.print(f"JUnit report written to {junit_output}")
    if diffs_output:
        written = write_regression_diffs(report.results, Path(diffs_output))
        if written:
            reporter.print(f"Diffs written to {written}")

    return report.exit_code


@main.command("validate")
@click.option("--manifest", type=click.Path(dir_okay=False), help="Manifest JSON (default: bundled manifest)")
@click.option("--no-color", is_flag=True, help="Disable colored output")
def validate_command(manifest: Optional[str], no_color: bool):
    """Check the manifest: unique names, known dependencies, no cycles."""
    reporter = TestReporter(no_color=no_color)
    entries = _load(manifest, reporter)
    if entries is None:
        sys.exit(EXIT_USAGE)

    summary = manifest_summary(entries)
    reporter.print(
        f"[green]Manifest OK[/green]: {summary['total']} entries "
        f"({summary['enabled']} enabled, {summary['testable']} testable, "
        f"{summary['preload']} preload)"
    )
    sys.exit(EXIT_OK)


@main.command("preload")
@click.option("-m", "--mode", type=click.Choice(MODE_CHOICES), help="Test mode (default: detected)")
@click.option("--manifest", type=click.Path(dir_okay=False), help="Manifest JSON (default: bundled manifest)")
def preload_command(mode: Optional[str], manifest: Optional[str]):
    """Print the shared_preload_libraries value for a mode."""
    reporter = TestReporter(no_color=True)
    entries = _load(manifest, reporter)
    if entries is None:
        sys.exit(EXIT_USAGE)

    test_mode = _mode_or_exit(mode, reporter)
    summary = preload_summary(entries, test_mode)
    click.echo(f"default: {summary['default']}")
    click.echo(f"{test_mode.value}: {summary['mode']}")


@main.command("list")
@click.option("-c", "--category", help="Only entries in this category")
@click.option("-m", "--mode", type=click.Choice(MODE_CHOICES), help="Mode used to mark loaded preload modules")
@click.option("--manifest", type=click.Path(dir_okay=False), help="Manifest JSON (default: bundled manifest)")
@click.option("--no-color", is_flag=True, help="Disable colored output")
def list_command(category: Optional[str], mode: Optional[str], manifest: Optional[str], no_color: bool):
    """List manifest entries."""
    reporter = TestReporter(no_color=no_color)
    entries = _load(manifest, reporter)
    if entries is None:
        sys.exit(EXIT_USAGE)

    test_mode = _mode_or_exit(mode, reporter)
    selected = extensions_by_category(entries, category) if category else list(entries)
    preload = [p for p in shared_preload_libraries(entries, test_mode).split(",") if p]
    reporter.print_manifest(selected, preload)


@main.command("mode")
def mode_command():
    """Print the detected test mode."""
    test_mode = _mode_or_exit(None, TestReporter(no_color=True))
    click.echo(test_mode.value)


@main.command("aggregate")
@click.argument("directory", type=click.Path(exists=True, file_okay=False))
@click.option("-f", "--format", "fmt", type=click.Choice(["json", "junit"]), default="json", show_default=True)
@click.option("-o", "--output", type=click.Path(), help=f"Output file (default: DIRECTORY/{AGGREGATED_BASENAME}.jsonl or .xml)")
@click.option("--no-color", is_flag=True, help="Disable colored output")
def aggregate_command(directory: str, fmt: str, output: Optional[str], no_color: bool):
    """Merge every *.jsonl results file in DIRECTORY into one report."""
    reporter = TestReporter(no_color=no_color)
    try:
        results = collect_results(Path(directory))
    except (OSError, ValueError) as e:
        reporter.print_error(str(e))
        sys.exit(EXIT_USAGE)

    if not results:
        reporter.print(f"No results found in {directory}", style="yellow")
        sys.exit(EXIT_OK)

    stats = aggregate(results)
    reporter.print_aggregate(stats)

    suffix = ".jsonl" if fmt == "json" else ".xml"
    output_path = Path(output) if output else Path(directory) / f"{AGGREGATED_BASENAME}{suffix}"
    export_results(prefix_suite_names(results), output_path, fmt)
    reporter.print(f"Aggregated results written to {output_path}")

    sys.exit(EXIT_FAILED if stats["failed"] else EXIT_OK)


if __name__ == "__main__":
    main()

"""
Result aggregation and export.

Results are written one JSON object per line (``.jsonl``) or as a
JUnit XML document. Several ``.jsonl`` files, e.g. one per tier or per
CI job, can be merged into one aggregate.
"""

import json
import xml.etree.ElementTree as ET
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

from .models import TestResult, TestStatus


AGGREGATED_BASENAME = "aggregated-results"
DEFAULT_SUITE = "default"


def _suite_of(result: TestResult) -> str:
    return result.suite or DEFAULT_SUITE


def aggregate(results: Sequence[TestResult]) -> Dict[str, Any]:
    """
    Summary statistics over a flat list of results.

    Returns:
        Dict with total/passed/failed/expected_failures/skipped,
        duration_total (ms) and the same counts per suite in by_suite
    """
    def summarize(items: Sequence[TestResult]) -> Dict[str, Any]:
        return {
            "total": len(items),
            "passed": sum(1 for r in items if r.status is TestStatus.PASSED),
            "failed": sum(1 for r in items if r.status is TestStatus.FAILED),
            "expected_failures": sum(1 for r in items if r.status is TestStatus.EXPECTED_FAILURE),
            "skipped": sum(1 for r in items if r.status is TestStatus.SKIPPED),
            "duration_total": sum(r.duration for r in items),
        }

    by_suite: Dict[str, List[TestResult]] = {}
    for result in results:
        by_suite.setdefault(_suite_of(result), []).append(result)

    summary = summarize(results)
    summary["by_suite"] = {suite: summarize(items) for suite, items in by_suite.items()}
    return summary


# ---------------------------------------------------------------------------
# JSON lines
# ---------------------------------------------------------------------------

def result_to_record(result: TestResult, timestamp: Optional[str] = None) -> Dict[str, Any]:
    record: Dict[str, Any] = {
        "suite": _suite_of(result),
        "name": result.name,
        "passed": result.passed,
        "duration": result.duration,
        "timestamp": timestamp or datetime.now(timezone.utc).isoformat(),
    }
    if result.error is not None:
        record["error"] = result.error
    if result.diff is not None:
        record["diff"] = result.diff
    if result.metrics:
        record["metrics"] = result.metrics
    if result.expected_failure:
        record["expectedFailure"] = True
    if result.skipped:
        record["skipped"] = True
    return record


def record_to_result(record: Dict[str, Any]) -> TestResult:
    return TestResult(
        name=record["name"],
        passed=bool(record["passed"]),
        duration=float(record.get("duration", 0)),
        error=record.get("error"),
        diff=record.get("diff"),
        metrics=record.get("metrics"),
        suite=record.get("suite"),
        expected_failure=bool(record.get("expectedFailure", False)),
        skipped=bool(record.get("skipped", False)),
    )


def write_json_lines(results: Sequence[TestResult], output_path: Path) -> Path:
    output_path = Path(output_path)
    output_path.parent.mkdir(parents=True, exist_ok=True)
    timestamp = datetime.now(timezone.utc).isoformat()
    with output_path.open("w") as f:
        for result in results:
            f.write(json.dumps(result_to_record(result, timestamp)) + "\n")
    return output_path


def read_json_lines(path: Path) -> List[TestResult]:
    """Parse a ``.jsonl`` results file. Blank lines are ignored."""
    results = []
    with Path(path).open() as f:
        for lineno, line in enumerate(f, start=1):
            if not line.strip():
                continue
            try:
                results.append(record_to_result(json.loads(line)))
            except (json.JSONDecodeError, KeyError, TypeError, ValueError) as e:
                raise ValueError(f"{path}:{lineno}: invalid result record: {e}") from e
    return results


def collect_results(directory: Path) -> List[TestResult]:
    """
    Read every ``*.jsonl`` file in *directory* (sorted by name), skipping
    a previous aggregated output.
    """
    results: List[TestResult] = []
    for path in sorted(Path(directory).glob("*.jsonl")):
        if path.stem == AGGREGATED_BASENAME:
            continue
        results.extend(read_json_lines(path))
    return results


def prefix_suite_names(results: Sequence[TestResult]) -> List[TestResult]:
    """Copies of *results* named ``[suite] name`` for merged reports."""
    prefixed = []
    for r in results:
        prefix = f"[{_suite_of(r)}] "
        name = r.name if r.name.startswith(prefix) else prefix + r.name
        prefixed.append(TestResult(
            name=name,
            passed=r.passed,
            duration=r.duration,
            error=r.error,
            diff=r.diff,
            metrics=r.metrics,
            suite=r.suite,
            expected_failure=r.expected_failure,
            skipped=r.skipped,
        ))
    return prefixed


# ---------------------------------------------------------------------------
# JUnit XML
# ---------------------------------------------------------------------------

def build_junit_xml(results: Sequence[TestResult], name: str = "pgharness") -> ET.Element:
    timestamp = datetime.now(timezone.utc).isoformat()
    stats = aggregate(results)

    root = ET.Element("testsuites", {
        "name": name,
        "tests": str(stats["total"]),
        "failures": str(stats["failed"]),
        "skipped": str(stats["skipped"] + stats["expected_failures"]),
        "time": f"{stats['duration_total'] / 1000:.3f}",
    })

    by_suite: Dict[str, List[TestResult]] = {}
    for result in results:
        by_suite.setdefault(_suite_of(result), []).append(result)

    for suite, items in by_suite.items():
        suite_stats = stats["by_suite"][suite]
        suite_el = ET.SubElement(root, "testsuite", {
            "name": suite,
            "tests": str(suite_stats["total"]),
            "failures": str(suite_stats["failed"]),
            "skipped": str(suite_stats["skipped"] + suite_stats["expected_failures"]),
            "time": f"{suite_stats['duration_total'] / 1000:.3f}",
            "timestamp": timestamp,
        })
        for result in items:
            case = ET.SubElement(suite_el, "testcase", {
                "name": result.name,
                "classname": suite,
                "time": f"{result.duration / 1000:.3f}",
            })
            status = result.status
            if status is TestStatus.FAILED:
                failure = ET.SubElement(case, "failure", {"message": result.error or "failed"})
                failure.text = result.diff or result.error or ""
            elif status is TestStatus.EXPECTED_FAILURE:
                ET.SubElement(case, "skipped", {"message": f"expected failure: {result.error or ''}"})
            elif status is TestStatus.SKIPPED:
                ET.SubElement(case, "skipped", {"message": result.error or "skipped"})

    return root


def write_junit_xml(results: Sequence[TestResult], output_path: Path, name: str = "pgharness") -> Path:
    output_path = Path(output_path)
    output_path.parent.mkdir(parents=True, exist_ok=True)
    tree = ET.ElementTree(build_junit_xml(results, name))
    ET.indent(tree)
    tree.write(output_path, encoding="utf-8", xml_declaration=True)
    return output_path


def export_results(results: Sequence[TestResult], output_path: Path, fmt: str) -> Path:
    """Write *results* as ``json`` (lines) or ``junit``."""
    if fmt == "json":
        return write_json_lines(results, output_path)
    if fmt == "junit":
        return write_junit_xml(results, output_path)
    raise ValueError(f"Unknown export format: {fmt!r}")

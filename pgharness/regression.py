"""
pg_regress-style comparison of SQL fixture output.

A fixture is a pair ``sql/<name>.sql`` / ``expected/<name>.out``. The
script is run through psql with echo-all, both texts are normalized,
and any difference becomes a unified diff on the TestResult.

Fixture tree::

    <fixtures>/core/sql/<name>.sql
    <fixtures>/core/expected/<name>.out
    <fixtures>/extensions/<ext>/sql/basic.sql
    <fixtures>/extensions/<ext>/expected/basic.out
"""

import difflib
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence

from .groups import GROUP_ORDER, SETUP_FIXTURES, SetupRequirement, all_core_tests, setup_requirement
from .log_helper import getLogger
from .models import TestResult
from .normalize import extract_error_message, normalize_output
from .sql import SqlRunner


log = getLogger("regression")

DIFF_CONTEXT_LINES = 3


@dataclass(frozen=True)
class RegressionCase:
    name: str
    sql_file: Path
    expected_file: Path
    setup: SetupRequirement = SetupRequirement.NONE


def core_case(fixtures_dir: Path, name: str) -> RegressionCase:
    core = Path(fixtures_dir) / "core"
    return RegressionCase(
        name=name,
        sql_file=core / "sql" / f"{name}.sql",
        expected_file=core / "expected" / f"{name}.out",
        setup=setup_requirement(name),
    )


def extension_case(fixtures_dir: Path, extension: str) -> RegressionCase:
    base = Path(fixtures_dir) / "extensions" / extension
    return RegressionCase(
        name=extension,
        sql_file=base / "sql" / "basic.sql",
        expected_file=base / "expected" / "basic.out",
    )


def discover_core_tests(fixtures_dir: Path) -> List[str]:
    """
    Names of the core fixtures present on disk, known tests first in
    their canonical order, then the rest alphabetically.
    """
    sql_dir = Path(fixtures_dir) / "core" / "sql"
    if not sql_dir.is_dir():
        return []
    present = {p.stem for p in sql_dir.glob("*.sql")} - set(SETUP_FIXTURES.values())
    known = [n for n in all_core_tests() if n in present]
    return known + sorted(present - set(known))


def unified_diff(name: str, expected: str, actual: str) -> str:
    lines = difflib.unified_diff(
        expected.split("\n"),
        actual.split("\n"),
        fromfile=f"expected/{name}.out",
        tofile=f"results/{name}.out",
        n=DIFF_CONTEXT_LINES,
        lineterm="",
    )
    return "\n".join(lines)


def compare_output(name: str, expected: str, actual: str) -> Optional[str]:
    """Diff between normalized *expected* and *actual*, or None if they match."""
    expected_norm = normalize_output(expected)
    actual_norm = normalize_output(actual)
    if expected_norm == actual_norm:
        return None
    return unified_diff(name, expected_norm, actual_norm)


def _elapsed_ms(start: float) -> float:
    return (time.perf_counter() - start) * 1000


def run_regression_test(
    name: str,
    sql_file: Path,
    expected_file: Path,
    runner: SqlRunner,
    suite: Optional[str] = None,
    generate_expected: bool = False,
) -> TestResult:
    """
    Run one fixture and compare its output.

    With ``generate_expected`` the normalized output is written as the
    new expected file instead of being compared.
    """
    start = time.perf_counter()
    expected: Optional[str] = None
    if not generate_expected:
        try:
            expected = Path(expected_file).read_text()
        except OSError as e:
            return TestResult(
                name=name,
                passed=False,
                duration=_elapsed_ms(start),
                error=f"Failed to read expected output: {e}",
                suite=suite,
            )

    result = runner.run_file(sql_file)
    if not result.success:
        detail = (
            result.stderr.strip()
            or extract_error_message(result.stdout)
            or result.stdout.strip()[-500:]
        )
        return TestResult(
            name=name,
            passed=False,
            duration=_elapsed_ms(start),
            error=f"psql exited with code {result.exit_code}: {detail}",
            suite=suite,
        )

    if generate_expected:
        path = Path(expected_file)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(normalize_output(result.stdout) + "\n")
        log.info("wrote expected output %s", path)
        return TestResult(name=name, passed=True, duration=_elapsed_ms(start), suite=suite)

    diff = compare_output(name, expected, result.stdout)
    return TestResult(
        name=name,
        passed=diff is None,
        duration=_elapsed_ms(start),
        error=None if diff is None else "output differs from expected",
        diff=diff,
        suite=suite,
    )


class RegressionRunner:
    """
    Runs regression cases sequentially against one instance.

    Cases are grouped by setup requirement so that each setup script
    runs once. A failed setup fails every case of its group without
    running it.
    """

    def __init__(
        self,
        runner: SqlRunner,
        suite: str = "core",
        generate_expected: bool = False,
        on_test_start: Optional[Callable[[str], None]] = None,
        on_test_complete: Optional[Callable[[TestResult], None]] = None,
    ):
        self.runner = runner
        self.suite = suite
        self.generate_expected = generate_expected
        self.on_test_start = on_test_start
        self.on_test_complete = on_test_complete

    def run_case(self, case: RegressionCase) -> TestResult:
        if self.on_test_start:
            self.on_test_start(case.name)
        start = time.perf_counter()
        try:
            result = run_regression_test(
                case.name,
                case.sql_file,
                case.expected_file,
                self.runner,
                suite=self.suite,
                generate_expected=self.generate_expected,
            )
        except Exception as e:
            log.error("%s raised %s: %s", case.name, type(e).__name__, e)
            result = TestResult(
                name=case.name,
                passed=False,
                duration=_elapsed_ms(start),
                error=f"{type(e).__name__}: {e}",
                suite=self.suite,
            )
        if self.on_test_complete:
            self.on_test_complete(result)
        return result

    def run_grouped(
        self,
        cases: Sequence[RegressionCase],
        setup_cases: Optional[Dict[SetupRequirement, RegressionCase]] = None,
    ) -> List[TestResult]:
        """
        Run *cases* group by group (none, minimal, full).

        Args:
            cases: Cases to run; order is kept within a group
            setup_cases: Setup fixture for each requirement that has one
        """
        setup_cases = setup_cases or {}
        results: List[TestResult] = []

        for requirement in GROUP_ORDER:
            group = [c for c in cases if c.setup is requirement]
            if not group:
                continue

            setup_error: Optional[str] = None
            if requirement is not SetupRequirement.NONE:
                setup = setup_cases.get(requirement)
                if setup is None:
                    setup_error = f"no setup fixture for {requirement.value} group"
                else:
                    setup_result = self.run_case(setup)
                    results.append(setup_result)
                    if not setup_result.passed:
                        setup_error = f"setup '{setup.name}' failed"

            if setup_error:
                log.error("skipping %d %s test(s): %s", len(group), requirement.value, setup_error)
                for case in group:
                    failed = TestResult(
                        name=case.name,
                        passed=False,
                        error=setup_error,
                        suite=self.suite,
                    )
                    if self.on_test_complete:
                        self.on_test_complete(failed)
                    results.append(failed)
                continue

            results.extend(self.run_case(case) for case in group)

        return results


def write_regression_diffs(results: Sequence[TestResult], path: Path) -> Optional[Path]:
    """
    Write the diffs of failed results to *path* (regression.diffs).

    Returns the path, or None if no result carried a diff.
    """
    blocks = []
    for result in results:
        if result.passed or not result.diff:
            continue
        rule = "=" * 46
        blocks.append(f"{rule}\nREGRESSION: {result.name}\n{rule}\n\n{result.diff}\n")

    if not blocks:
        return None

    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text("\n".join(blocks))
    return path

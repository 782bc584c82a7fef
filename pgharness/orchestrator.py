"""
Tier orchestration.

The Orchestrator starts one PostgreSQL container for the run (preload
list derived from the manifest and the mode), then runs the requested
tiers against it in order:

1. core         core SQL regression fixtures, grouped by setup
2. extension    one basic.sql fixture per testable extension
3. interaction  multi-extension interaction tests

Test failures are recorded and the run moves on to the next tier. An
InfrastructureError (container gone, never healthy) ends the run. The
container, and anything else the run created, is removed at the end
and on SIGINT/SIGTERM.
"""

import signal
import sys
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, List, Optional, Sequence

from .config import HarnessConfig, RunIdentity
from .containers import ContainerController, ContainerHandle, ContainerSpec, InfrastructureError
from .groups import CI_FAST_TESTS, FAST_EXTENSION_TESTS, SETUP_FIXTURES, extension_test_names
from .interactions import InteractionRegistry, default_registry, run_interaction
from .log_helper import getLogger
from .manifest import (
    find_extension,
    initialization_env,
    optional_preload_modules,
    resolve_dependency_order,
)
from .models import ContainerState, ManifestEntry, TestMode, TestResult, TestStatus
from .modes import enabled_extensions, mode_testable_extensions, shared_preload_libraries
from .preload import PRELOAD_ENV_VAR, build_preload_libraries, default_preload_entries, library_name
from .process import CommandRunner, run_command
from .regression import RegressionRunner, core_case, discover_core_tests, extension_case
from .sql import SqlRunner


log = getLogger("orchestrator")

# Exit status after teardown on a signal: 128 + signal number
SIGNAL_EXIT_CODES = {
    signal.SIGINT: 130,
    signal.SIGTERM: 143,
}


class Tier(str, Enum):
    CORE = "core"
    EXTENSION = "extension"
    INTERACTION = "interaction"


TIER_TITLES = {
    Tier.CORE: "Core SQL regression",
    Tier.EXTENSION: "Extension regression",
    Tier.INTERACTION: "Extension interactions",
}

TIER_NUMBERS = {"1": Tier.CORE, "2": Tier.EXTENSION, "3": Tier.INTERACTION}


def parse_tier(value) -> Tier:
    if isinstance(value, Tier):
        return value
    key = str(value).strip().lower()
    if key in TIER_NUMBERS:
        return TIER_NUMBERS[key]
    try:
        return Tier(key)
    except ValueError:
        raise ValueError(f"Unknown tier: {value!r} (expected 1-3 or core/extension/interaction)")


class ResultAccumulator:
    """Collects results for one scope (a tier, a merged report)."""

    def __init__(self) -> None:
        self.results: List[TestResult] = []

    def add(self, result: TestResult) -> TestResult:
        self.results.append(result)
        return result

    def extend(self, results: Sequence[TestResult]) -> None:
        self.results.extend(results)

    def count(self, status: TestStatus) -> int:
        return sum(1 for r in self.results if r.status is status)

    @property
    def passed(self) -> int:
        return self.count(TestStatus.PASSED)

    @property
    def failed(self) -> int:
        return self.count(TestStatus.FAILED)

    @property
    def expected_failures(self) -> int:
        return self.count(TestStatus.EXPECTED_FAILURE)

    @property
    def skipped(self) -> int:
        return self.count(TestStatus.SKIPPED)

    def has_failures(self) -> bool:
        return any(r.is_failure for r in self.results)


@dataclass
class TierResult:
    tier: Tier
    results: List[TestResult] = field(default_factory=list)
    duration: float = 0.0
    # Set when the tier was cut short by an infrastructure failure
    error: Optional[str] = None

    def count(self, status: TestStatus) -> int:
        return sum(1 for r in self.results if r.status is status)

    @property
    def ok(self) -> bool:
        return self.error is None and self.count(TestStatus.FAILED) == 0


@dataclass
class RunReport:
    mode: TestMode
    tiers: List[TierResult] = field(default_factory=list)
    duration: float = 0.0
    preload: str = ""
    aborted: bool = False
    error: Optional[str] = None

    @property
    def results(self) -> List[TestResult]:
        return [r for tier in self.tiers for r in tier.results]

    @property
    def success(self) -> bool:
        return not self.aborted and not any(r.is_failure for r in self.results)

    @property
    def exit_code(self) -> int:
        return 0 if self.success else 1


class Orchestrator:
    """
    Runs regression tiers against one container.

    Args:
        config: Run configuration
        entries: Validated manifest snapshot
        controller: Container controller (built from ``runner`` if omitted)
        registry: Interaction tests (the shipped set if omitted)
        runner: Command runner shared by the controller and SQL runner
        on_tier_start / on_tier_complete: Tier callbacks for reporting
        on_test_start / on_test_complete: Per-test callbacks for reporting
    """

    def __init__(
        self,
        config: HarnessConfig,
        entries: Sequence[ManifestEntry],
        controller: Optional[ContainerController] = None,
        registry: Optional[InteractionRegistry] = None,
        runner: CommandRunner = run_command,
        on_tier_start: Optional[Callable[[Tier], None]] = None,
        on_tier_complete: Optional[Callable[[TierResult], None]] = None,
        on_test_start: Optional[Callable[[str], None]] = None,
        on_test_complete: Optional[Callable[[TestResult], None]] = None,
    ):
        self.config = config
        self.entries = tuple(entries)
        self.runner = runner
        self.controller = controller or ContainerController(
            RunIdentity.create(),
            runner=runner,
            postgres_user=config.postgres_user,
        )
        self.preload = shared_preload_libraries(self.entries, config.mode)
        self.registry = registry or default_registry(
            default_preloads=[
                library_name(e.name) for e in default_preload_entries(self.entries)
            ],
        )
        self.on_tier_start = on_tier_start
        self.on_tier_complete = on_tier_complete
        self.on_test_start = on_test_start
        self.on_test_complete = on_test_complete

        self._handle: Optional[ContainerHandle] = None
        self._torn_down = False

    @property
    def active_preloads(self) -> List[str]:
        return [p for p in self.preload.split(",") if p]

    # -- container ---------------------------------------------------------

    def container_spec(self) -> ContainerSpec:
        env: Dict[str, str] = {
            "POSTGRES_PASSWORD": self.config.postgres_password,
            "TEST_MODE": self.config.mode.value,
            PRELOAD_ENV_VAR: self.preload,
        }
        env.update(initialization_env(enabled_extensions(self.entries, self.config.mode)))
        return ContainerSpec(
            image=self.config.image,
            name=self.controller.identity.container_name(),
            env=env,
        )

    def start_instance(self) -> ContainerHandle:
        """Attach to the configured container, or start and wait for a new one."""
        if self.config.container:
            log.info("using running container %s", self.config.container)
            self._handle = self.controller.attach(self.config.container)
            return self._handle

        spec = self.container_spec()
        log.info("starting %s with %s=%s", spec.image, PRELOAD_ENV_VAR, self.preload or "<none>")
        self._handle = self.controller.start(spec)
        self.controller.wait_until_healthy(self._handle, self.config.startup_policy)
        return self._handle

    def _ensure_running(self) -> ContainerHandle:
        if self._handle is None:
            raise InfrastructureError("No PostgreSQL instance has been started")
        status = self.controller.inspect_status(self._handle)
        if status.state is not ContainerState.RUNNING:
            raise InfrastructureError(
                f"Container {self._handle.name} is no longer running ({status.describe()})",
                status=status,
                logs=self.controller.logs(self._handle),
            )
        return self._handle

    def _sql_runner(self, handle: ContainerHandle) -> SqlRunner:
        return SqlRunner(
            handle.name,
            user=self.config.postgres_user,
            runner=self.runner,
            docker=self.controller.docker,
        )

    # -- run -----------------------------------------------------------------

    def run(self, tiers: Optional[Sequence] = None) -> RunReport:
        """
        Start the instance, run *tiers* (config.tiers by default) and tear down.

        Never raises for test or infrastructure failures; both end up in
        the returned RunReport.
        """
        selected = [parse_tier(t) for t in (tiers or self.config.tiers)]
        report = RunReport(mode=self.config.mode, preload=self.preload)
        start = time.perf_counter()

        try:
            try:
                self.start_instance()
            except InfrastructureError as e:
                log.error("instance did not come up: %s", e.message)
                report.aborted = True
                report.error = str(e)
                return report

            for tier in selected:
                tier_result = self.run_tier(tier)
                report.tiers.append(tier_result)
                if tier_result.error:
                    report.aborted = True
                    report.error = tier_result.error
                    log.error("aborting run after %s tier: %s", tier.value, tier_result.error)
                    break
        finally:
            report.duration = time.perf_counter() - start
            if self.config.cleanup:
                self.teardown()

        return report

    def run_tier(self, tier: Tier) -> TierResult:
        if self.on_tier_start:
            self.on_tier_start(tier)

        start = time.perf_counter()
        accumulator = ResultAccumulator()
        tier_result = TierResult(tier=tier, results=accumulator.results)
        try:
            handle = self._ensure_running()
            sql = self._sql_runner(handle)
            if tier is Tier.CORE:
                self._run_core(sql, accumulator)
            elif tier is Tier.EXTENSION:
                self._run_extensions(sql, accumulator)
            else:
                self._run_interactions(sql, accumulator)
        except InfrastructureError as e:
            tier_result.error = str(e)

        tier_result.duration = time.perf_counter() - start
        if self.on_tier_complete:
            self.on_tier_complete(tier_result)
        return tier_result

    def _report(self, result: TestResult) -> TestResult:
        if self.on_test_complete:
            self.on_test_complete(result)
        return result

    def _skip(self, name: str, suite: str, reason: str) -> TestResult:
        log.info("skipping %s: %s", name, reason)
        return self._report(TestResult(name=name, passed=False, error=reason, suite=suite, skipped=True))

    # -- tiers -----------------------------------------------------------------

    def _run_core(self, sql: SqlRunner, accumulator: ResultAccumulator) -> None:
        fixtures = self.config.fixtures_dir
        names = list(CI_FAST_TESTS) if self.config.fast else discover_core_tests(fixtures)
        if not names:
            log.warning("no core fixtures found under %s", fixtures / "core")
            return

        regression = RegressionRunner(
            sql,
            suite=Tier.CORE.value,
            generate_expected=self.config.generate_expected,
            on_test_start=self.on_test_start,
            on_test_complete=self.on_test_complete,
        )
        setup_cases = {
            requirement: core_case(fixtures, fixture)
            for requirement, fixture in SETUP_FIXTURES.items()
        }
        accumulator.extend(
            regression.run_grouped([core_case(fixtures, n) for n in names], setup_cases)
        )

    def _run_extensions(self, sql: SqlRunner, accumulator: ResultAccumulator) -> None:
        names = list(self.config.extensions) or extension_test_names(self.config.mode)
        if self.config.fast:
            names = [n for n in names if n in FAST_EXTENSION_TESTS]
        available = {e.name: e for e in mode_testable_extensions(self.entries, self.config.mode)}
        for name in names:
            if name not in available:
                log.debug("%s is not testable in %s mode", name, self.config.mode.value)
        testable = resolve_dependency_order([available[n] for n in names if n in available])

        regression = RegressionRunner(
            sql,
            suite=Tier.EXTENSION.value,
            generate_expected=self.config.generate_expected,
            on_test_start=self.on_test_start,
            on_test_complete=self.on_test_complete,
        )
        optional = {e.name for e in optional_preload_modules(self.entries)}
        active = set(self.active_preloads)

        for entry in testable:
            case = extension_case(self.config.fixtures_dir, entry.name)
            if not case.sql_file.exists():
                log.debug("no regression fixture for %s", entry.name)
                continue
            if entry.name in optional and library_name(entry.name) not in active:
                accumulator.add(self._skip(
                    entry.name,
                    Tier.EXTENSION.value,
                    f"needs {library_name(entry.name)} in shared_preload_libraries",
                ))
                continue
            accumulator.add(regression.run_case(case))

    def _run_interactions(self, sql: SqlRunner, accumulator: ResultAccumulator) -> None:
        active = set(self.active_preloads)

        for test in self.registry.select(self.config.mode):
            missing = []
            for name in test.preload_required:
                entry = find_extension(self.entries, name)
                # Only real preload modules have to be in the list
                if entry is not None and entry.runtime.shared_preload and library_name(entry.name) not in active:
                    missing.append(library_name(entry.name))
            if missing:
                accumulator.add(self._skip(
                    test.name,
                    Tier.INTERACTION.value,
                    f"needs {', '.join(missing)} in shared_preload_libraries",
                ))
                continue

            if self.on_test_start:
                self.on_test_start(test.name)
            accumulator.add(self._report(run_interaction(test, sql.run, suite=Tier.INTERACTION.value)))

    # -- teardown ----------------------------------------------------------

    def teardown(self) -> None:
        """Remove everything the run created. Idempotent, never raises."""
        if self._torn_down:
            return
        self._torn_down = True
        failed = self.controller.cleanup()
        if failed:
            log.warning("cleanup left behind: %s", ", ".join(failed))

    def install_signal_handlers(self) -> None:
        """On SIGINT/SIGTERM run teardown, then exit with 130/143."""
        def handler(signum, frame):
            log.warning("received signal %d, cleaning up", signum)
            self.teardown()
            sys.exit(SIGNAL_EXIT_CODES.get(signum, 128 + signum))

        for signum in SIGNAL_EXIT_CODES:
            signal.signal(signum, handler)


def preload_summary(entries: Sequence[ManifestEntry], mode: TestMode) -> Dict[str, str]:
    """Default and mode preload strings, for reporting."""
    return {
        "default": build_preload_libraries(default_preload_entries(entries)),
        "mode": shared_preload_libraries(entries, mode),
    }

"""
Data models for pgharness.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional, Tuple


class ExtensionKind(str, Enum):
    """What a manifest entry is, as far as the server is concerned."""
    EXTENSION = "extension"
    TOOL = "tool"
    BUILTIN = "builtin"


class TestMode(str, Enum):
    """Which extension set a run targets."""
    PRODUCTION = "production"
    REGRESSION = "regression"


class TestStatus(str, Enum):
    """Status of a test execution."""
    PASSED = "passed"
    FAILED = "failed"
    EXPECTED_FAILURE = "xfail"
    SKIPPED = "skipped"


# Not test classes, despite the names
TestMode.__test__ = False
TestStatus.__test__ = False


class HealthState(str, Enum):
    """Health reported by the container runtime."""
    STARTING = "starting"
    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"
    UNKNOWN = "unknown"

    @classmethod
    def parse(cls, value: Optional[str]) -> "HealthState":
        try:
            return cls((value or "").strip().lower())
        except ValueError:
            return cls.UNKNOWN


class ContainerState(str, Enum):
    """Coarse container process state."""
    RUNNING = "running"
    EXITED = "exited"
    STOPPED = "stopped"
    UNKNOWN = "unknown"

    @classmethod
    def parse(cls, value: Optional[str]) -> "ContainerState":
        value = (value or "").strip().lower()
        if value == "running":
            return cls.RUNNING
        if value in ("exited", "dead"):
            return cls.EXITED
        if value in ("created", "paused", "stopped"):
            return cls.STOPPED
        return cls.UNKNOWN


@dataclass(frozen=True)
class RuntimeSpec:
    """Runtime flags of a manifest entry."""
    shared_preload: bool = False
    default_enable: bool = False
    preload_only: bool = False
    # Preloaded when running in regression mode even if not default-enabled
    preload_in_regression: bool = False


def _flag(data: Dict[str, Any], key: str, default: bool = False) -> bool:
    value = data.get(key)
    if value is None:
        return default
    if not isinstance(value, bool):
        raise TypeError(f"field {key!r} must be true or false, got {value!r}")
    return value


@dataclass(frozen=True)
class ManifestEntry:
    """One extension, builtin module or tool shipped in the image."""
    name: str
    kind: ExtensionKind
    category: str = ""
    enabled: bool = True
    runtime: RuntimeSpec = field(default_factory=RuntimeSpec)
    dependencies: Tuple[str, ...] = ()
    disabled_reason: Optional[str] = None
    description: str = ""
    enabled_in_regression: bool = False

    @property
    def is_enabled(self) -> bool:
        return self.enabled is not False

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ManifestEntry":
        """
        Build an entry from its manifest-file form (camelCase keys).

        Raises KeyError for a missing name/kind, ValueError for an
        unknown kind and TypeError for a flag that is not a JSON boolean.
        """
        runtime = data.get("runtime") or {}
        return cls(
            name=data["name"],
            kind=ExtensionKind(data["kind"]),
            category=data.get("category", ""),
            enabled=_flag(data, "enabled", True),
            runtime=RuntimeSpec(
                shared_preload=_flag(runtime, "sharedPreload"),
                default_enable=_flag(runtime, "defaultEnable"),
                preload_only=_flag(runtime, "preloadOnly"),
                preload_in_regression=_flag(runtime, "preloadInRegression"),
            ),
            dependencies=tuple(data.get("dependencies") or ()),
            disabled_reason=data.get("disabledReason"),
            description=data.get("description", ""),
            enabled_in_regression=_flag(data, "enabledInRegression"),
        )


@dataclass
class TestResult:
    """Result of a single test execution. Duration is in milliseconds."""
    __test__ = False

    name: str
    passed: bool
    duration: float = 0.0
    error: Optional[str] = None
    diff: Optional[str] = None
    metrics: Optional[Dict[str, float]] = None
    suite: Optional[str] = None

    # Failure matched a declared, known failure of the test
    expected_failure: bool = False
    skipped: bool = False

    @property
    def status(self) -> TestStatus:
        if self.skipped:
            return TestStatus.SKIPPED
        if self.passed:
            return TestStatus.PASSED
        if self.expected_failure:
            return TestStatus.EXPECTED_FAILURE
        return TestStatus.FAILED

    @property
    def is_failure(self) -> bool:
        """True for failures that should fail the run."""
        return self.status is TestStatus.FAILED


@dataclass(frozen=True)
class ServiceStatus:
    """One observation of a container. Never reused across polls."""
    health: HealthState
    state: ContainerState
    has_healthcheck: bool = True

    def describe(self) -> str:
        health = self.health.value if self.has_healthcheck else "none"
        return f"health={health}, state={self.state.value}"

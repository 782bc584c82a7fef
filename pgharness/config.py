"""
Run configuration for pgharness.

Everything that used to be a magic constant in a polling loop lives
here: the base timeout table, the CI multiplier, the shared
RetryPolicy and the RunIdentity that names every docker resource a
run creates.

Configuration via environment variables:
    POSTGRES_IMAGE            Image under test    (default: ghcr.io/fluxo-kt/aza-pg:pg18)
    TEST_MODE                 production | regression
    POSTGRES_PASSWORD         Superuser password  (default: postgres)
    PGHARNESS_MANIFEST        Manifest JSON path  (default: bundled manifest)
    PGHARNESS_FIXTURES        Fixture root        (default: regression)
    PGHARNESS_CONTAINER       Reuse a running container instead of starting one
    TEST_TIMEOUT_MULTIPLIER   Scale every timeout (default: 2 on CI, else 1)
"""

import os
import time
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Dict, Mapping, Optional, Tuple

from .models import TestMode


DEFAULT_IMAGE = "ghcr.io/fluxo-kt/aza-pg:pg18"
DEFAULT_FIXTURES_DIR = Path("regression")
DEFAULT_PREFIX = "pgharness"

# Base timeouts in seconds, before the multiplier
BASE_TIMEOUTS: Dict[str, float] = {
    "health": 30,
    "startup": 60,
    "promotion": 60,
    "initialization": 90,
    "replication": 120,
    "complex": 180,
}

# Exec probes are cheap; compose health checks are not
POLL_INTERVALS: Dict[str, float] = {
    "exec": 1.0,
    "compose": 5.0,
}


def _env_flag(environ: Mapping[str, str], name: str) -> bool:
    return environ.get(name, "").strip().lower() in ("1", "true", "yes")


def is_ci(environ: Optional[Mapping[str, str]] = None) -> bool:
    env = os.environ if environ is None else environ
    return _env_flag(env, "CI") or _env_flag(env, "GITHUB_ACTIONS")


def timeout_multiplier(environ: Optional[Mapping[str, str]] = None) -> float:
    """
    Multiplier applied to every base timeout.

    TEST_TIMEOUT_MULTIPLIER wins when set to a positive number; otherwise
    CI runners get 2x, local runs 1x.
    """
    env = os.environ if environ is None else environ
    raw = env.get("TEST_TIMEOUT_MULTIPLIER")
    if raw:
        try:
            value = float(raw)
        except ValueError:
            raise ValueError(f"TEST_TIMEOUT_MULTIPLIER must be a number, got {raw!r}")
        if value <= 0:
            raise ValueError(f"TEST_TIMEOUT_MULTIPLIER must be positive, got {raw!r}")
        return value
    return 2.0 if is_ci(env) else 1.0


@dataclass(frozen=True)
class RetryPolicy:
    """
    Polling policy shared by every wait loop.

    A loop stops when total_timeout seconds have elapsed or, if set,
    after max_attempts probes, whichever comes first.
    """
    interval: float = 1.0
    total_timeout: float = 60.0
    max_attempts: Optional[int] = None

    def exhausted(self, attempts: int, elapsed: float) -> bool:
        if self.max_attempts is not None and attempts >= self.max_attempts:
            return True
        return elapsed >= self.total_timeout

    def scaled(self, multiplier: float) -> "RetryPolicy":
        return replace(self, total_timeout=self.total_timeout * multiplier)

    @classmethod
    def for_category(
        cls,
        category: str,
        interval: Optional[float] = None,
        environ: Optional[Mapping[str, str]] = None,
    ) -> "RetryPolicy":
        """Policy for one of the BASE_TIMEOUTS categories, CI multiplier applied."""
        if category not in BASE_TIMEOUTS:
            raise KeyError(f"Unknown timeout category: {category}")
        return cls(
            interval=POLL_INTERVALS["exec"] if interval is None else interval,
            total_timeout=BASE_TIMEOUTS[category] * timeout_multiplier(environ),
        )


@dataclass(frozen=True)
class RunIdentity:
    """
    Unique tag for one harness run.

    Every container, volume, network and compose project the run creates
    is named through this object, and cleanup only touches names it owns.
    """
    prefix: str
    timestamp: int
    pid: int

    @classmethod
    def create(cls, prefix: str = DEFAULT_PREFIX) -> "RunIdentity":
        return cls(prefix=prefix, timestamp=int(time.time() * 1000), pid=os.getpid())

    @property
    def tag(self) -> str:
        return f"{self.prefix}-{self.timestamp}-{self.pid}"

    def name(self, suffix: str) -> str:
        return f"{self.tag}-{suffix}"

    def container_name(self, role: str = "pg") -> str:
        return self.name(role)

    def volume_name(self, role: str = "data") -> str:
        return self.name(f"vol-{role}")

    def network_name(self, role: str = "net") -> str:
        return self.name(role)

    def owns(self, name: str) -> bool:
        return name == self.tag or name.startswith(self.tag + "-")


@dataclass
class HarnessConfig:
    """Configuration for a harness run."""
    image: str = DEFAULT_IMAGE
    mode: TestMode = TestMode.PRODUCTION
    fixtures_dir: Path = DEFAULT_FIXTURES_DIR
    manifest_path: Optional[Path] = None
    postgres_user: str = "postgres"
    postgres_password: str = "postgres"
    container: Optional[str] = None
    tiers: Tuple[str, ...] = ("core", "extension", "interaction")
    # Extension tier: these names instead of the mode's list
    extensions: Tuple[str, ...] = ()
    fast: bool = False
    cleanup: bool = True
    generate_expected: bool = False
    verbose: bool = False
    startup_policy: RetryPolicy = field(
        default_factory=lambda: RetryPolicy(interval=1.0, total_timeout=60.0)
    )

    @classmethod
    def from_env(
        cls,
        environ: Optional[Mapping[str, str]] = None,
        **overrides,
    ) -> "HarnessConfig":
        """
        Build a config from the environment. Keyword overrides that are
        not None take precedence (CLI flags beat env vars).
        """
        # Imported here to keep config importable before modes
        from .modes import parse_mode

        env = os.environ if environ is None else environ
        values = {
            "image": env.get("POSTGRES_IMAGE") or DEFAULT_IMAGE,
            "mode": parse_mode(env.get("TEST_MODE") or TestMode.PRODUCTION.value),
            "fixtures_dir": Path(env.get("PGHARNESS_FIXTURES") or DEFAULT_FIXTURES_DIR),
            "manifest_path": Path(env["PGHARNESS_MANIFEST"]) if env.get("PGHARNESS_MANIFEST") else None,
            "postgres_password": env.get("POSTGRES_PASSWORD") or "postgres",
            "container": env.get("PGHARNESS_CONTAINER") or None,
            "startup_policy": RetryPolicy.for_category("startup", environ=env),
        }
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)

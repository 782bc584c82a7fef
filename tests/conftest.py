"""
Shared pytest fixtures for pgharness tests.

Nothing here needs Docker or PostgreSQL: every docker/psql call goes
through a ``FakeDocker`` command runner that answers from a script, and
every poll loop gets a ``FakeClock`` whose sleep advances time.

Run tests:
    pytest                          # all tests
    pytest -x                       # stop on first failure
    pytest -k "manifest"            # filter by name
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Sequence

import pytest

from pgharness.config import RunIdentity
from pgharness.models import ExtensionKind, ManifestEntry, RuntimeSpec
from pgharness.process import CommandResult


# ---------------------------------------------------------------------------
# Manifest helpers (importable by tests as plain functions)
# ---------------------------------------------------------------------------

def make_entry(
    name: str,
    kind: str = "extension",
    *,
    deps: Sequence[str] = (),
    shared_preload: bool = False,
    default_enable: bool = False,
    preload_only: bool = False,
    preload_in_regression: bool = False,
    enabled: bool = True,
    disabled_reason: str | None = None,
    enabled_in_regression: bool = False,
    category: str = "test",
) -> ManifestEntry:
    """
    Build a ManifestEntry with readable keyword flags.

    Example::

        make_entry("pg_cron", shared_preload=True, default_enable=True)
        make_entry("index_advisor", deps=["hypopg"])
    """
    return ManifestEntry(
        name=name,
        kind=ExtensionKind(kind),
        category=category,
        enabled=enabled,
        runtime=RuntimeSpec(
            shared_preload=shared_preload,
            default_enable=default_enable,
            preload_only=preload_only,
            preload_in_regression=preload_in_regression,
        ),
        dependencies=tuple(deps),
        disabled_reason=disabled_reason,
        enabled_in_regression=enabled_in_regression,
    )


def write_fixture(root: Path, relative: str, text: str) -> Path:
    """Write *text* to ``root/relative``, creating parent directories."""
    path = root / relative
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text)
    return path


# ---------------------------------------------------------------------------
# Fake command runner
# ---------------------------------------------------------------------------

def reply(stdout: str = "", stderr: str = "", exit_code: int = 0) -> dict[str, Any]:
    """One scripted answer for FakeDocker.on()."""
    return {"stdout": stdout, "stderr": stderr, "exit_code": exit_code}


class FakeDocker:
    """
    Scripted stand-in for ``process.run_command``.

    ``on(pattern, *replies)`` answers every command whose argv contains
    the words of *pattern* in order. Replies are consumed one per call
    and the last one repeats. Unmatched commands succeed with no output.
    The first matching rule wins, so register specific patterns first.
    """

    def __init__(self) -> None:
        self.calls: list[dict[str, Any]] = []
        self._rules: list[tuple[tuple[str, ...], list[dict[str, Any]]]] = []

    def on(self, pattern: Sequence[str], *replies: dict[str, Any]) -> "FakeDocker":
        self._rules.append((tuple(pattern), list(replies) or [reply()]))
        return self

    @staticmethod
    def _matches(pattern: tuple[str, ...], argv: tuple[str, ...]) -> bool:
        it = iter(argv)
        return all(any(word == arg for arg in it) for word in pattern)

    def __call__(
        self,
        argv: Sequence[str],
        input_text: str | None = None,
        timeout: float | None = None,
        merge_stderr: bool = False,
    ) -> CommandResult:
        args = tuple(str(a) for a in argv)
        self.calls.append({
            "argv": args,
            "input_text": input_text,
            "timeout": timeout,
            "merge_stderr": merge_stderr,
        })
        for pattern, replies in self._rules:
            if self._matches(pattern, args):
                answer = replies.pop(0) if len(replies) > 1 else replies[0]
                return CommandResult(args, answer["stdout"], answer["stderr"], answer["exit_code"])
        return CommandResult(args, "", "", 0)

    def commands(self, *pattern: str) -> list[tuple[str, ...]]:
        """Argv of every recorded call matching *pattern*."""
        return [c["argv"] for c in self.calls if self._matches(tuple(pattern), c["argv"])]


class FakeClock:
    """Monotonic clock whose sleep() just moves time forward."""

    def __init__(self, start: float = 0.0) -> None:
        self.now = start
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def fake_docker() -> FakeDocker:
    return FakeDocker()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def identity() -> RunIdentity:
    """A fixed run identity: every generated name starts with its tag."""
    return RunIdentity(prefix="pgharness", timestamp=1700000000000, pid=4242)


@pytest.fixture
def small_manifest() -> tuple[ManifestEntry, ...]:
    """
    A manifest covering every entry flavour:

    default preload modules, an optional preload module opted into
    regression runs, a preload-only builtin, a tool, a disabled entry,
    and a dependency chain.
    """
    return (
        make_entry("vector", default_enable=True),
        make_entry("pg_cron", shared_preload=True, default_enable=True),
        make_entry("pg_stat_statements", "builtin", shared_preload=True, default_enable=True),
        make_entry("auto_explain", "builtin", shared_preload=True, default_enable=True, preload_only=True),
        make_entry("timescaledb", shared_preload=True, preload_in_regression=True),
        make_entry("timescaledb_toolkit", deps=["timescaledb"]),
        make_entry("hypopg"),
        make_entry("index_advisor", deps=["hypopg"]),
        make_entry("pg_safeupdate", "tool"),
        make_entry("pg_plan_filter", "tool", shared_preload=True),
        make_entry(
            "supautils", "tool",
            shared_preload=True,
            enabled=False,
            disabled_reason="build is unreliable",
        ),
    )

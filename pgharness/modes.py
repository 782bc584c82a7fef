"""
Test mode handling.

production  - only what ships enabled in the release image
regression  - everything, including modules opted into regression runs
"""

import json
import os
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Sequence

from .log_helper import getLogger
from .manifest import testable_extensions
from .models import ExtensionKind, ManifestEntry, TestMode
from .preload import build_preload_libraries


log = getLogger("modes")

VERSION_INFO_PATH = Path("/etc/postgresql/version-info.json")

_MODE_ALIASES = {
    "production": TestMode.PRODUCTION,
    "regression": TestMode.REGRESSION,
    "comprehensive": TestMode.REGRESSION,
}


def parse_mode(value: Any) -> TestMode:
    if isinstance(value, TestMode):
        return value
    key = str(value).strip().lower()
    if key not in _MODE_ALIASES:
        raise ValueError(f"Unknown test mode: {value!r} (expected production or regression)")
    return _MODE_ALIASES[key]


def detect_test_mode(
    environ: Optional[Mapping[str, str]] = None,
    version_info_path: Path = VERSION_INFO_PATH,
) -> TestMode:
    """
    Work out the mode: TEST_MODE env var, then the image's
    version-info.json ``testMode`` field, then production.
    """
    env = os.environ if environ is None else environ
    if env.get("TEST_MODE"):
        return parse_mode(env["TEST_MODE"])

    try:
        info = json.loads(Path(version_info_path).read_text())
    except FileNotFoundError:
        return TestMode.PRODUCTION
    except (OSError, json.JSONDecodeError) as e:
        log.warning("ignoring unreadable %s: %s", version_info_path, e)
        return TestMode.PRODUCTION

    if isinstance(info, dict) and info.get("testMode"):
        return parse_mode(info["testMode"])
    return TestMode.PRODUCTION


def enabled_extensions(entries: Sequence[ManifestEntry], mode: TestMode) -> List[ManifestEntry]:
    if mode is TestMode.REGRESSION:
        return [e for e in entries if e.is_enabled or e.enabled_in_regression]
    return [e for e in entries if e.is_enabled]


def _preload_candidates(entries: Sequence[ManifestEntry], mode: TestMode) -> List[ManifestEntry]:
    selected = []
    for entry in enabled_extensions(entries, mode):
        if not entry.runtime.shared_preload:
            continue
        if entry.runtime.default_enable and entry.is_enabled:
            selected.append(entry)
        elif mode is TestMode.REGRESSION and entry.runtime.preload_in_regression:
            selected.append(entry)
    return selected


def shared_preload_libraries(entries: Sequence[ManifestEntry], mode: TestMode) -> str:
    """shared_preload_libraries value the container is started with."""
    return build_preload_libraries(_preload_candidates(entries, mode))


def mode_testable_extensions(entries: Sequence[ManifestEntry], mode: TestMode) -> List[ManifestEntry]:
    """Testable extensions for *mode*; regression mode re-admits opted-in entries."""
    if mode is TestMode.PRODUCTION:
        return testable_extensions(entries)
    return [
        e for e in enabled_extensions(entries, mode)
        if e.kind is ExtensionKind.EXTENSION and not e.runtime.preload_only
    ]


def should_test_extension(entry: ManifestEntry, mode: TestMode, entries: Sequence[ManifestEntry]) -> bool:
    return any(e.name == entry.name for e in mode_testable_extensions(entries, mode))


def mode_summary(entries: Sequence[ManifestEntry], mode: TestMode) -> Dict[str, Any]:
    preload = shared_preload_libraries(entries, mode)
    return {
        "mode": mode.value,
        "enabled": len(enabled_extensions(entries, mode)),
        "testable": len(mode_testable_extensions(entries, mode)),
        "preload": [p for p in preload.split(",") if p],
    }

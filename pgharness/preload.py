"""
Builds shared_preload_libraries strings from manifest entries.

A wrong entry here does not fail a test, it stops the postmaster from
starting, so the builders re-filter whatever they are handed.
"""

from typing import Dict, Iterable, List, Optional, Sequence

from .log_helper import getLogger
from .manifest import (
    default_enabled_extensions,
    find_extension,
    optional_preload_modules,
    preload_extensions,
)
from .models import ExtensionKind, ManifestEntry


log = getLogger("preload")

PRELOAD_ENV_VAR = "POSTGRES_SHARED_PRELOAD_LIBRARIES"

# Manifest name -> shared library file name, where they differ
PRELOAD_NAME_OVERRIDES: Dict[str, str] = {
    "pg_safeupdate": "safeupdate",
}


def library_name(name: str) -> str:
    return PRELOAD_NAME_OVERRIDES.get(name, name)


def _dedupe(names: Iterable[str]) -> List[str]:
    seen = set()
    unique = []
    for name in names:
        if name and name not in seen:
            seen.add(name)
            unique.append(name)
    return unique


def preload_library_names(extensions: Iterable[ManifestEntry]) -> List[str]:
    """Library names for *extensions*, keeping only real preload modules."""
    names = []
    for entry in extensions:
        if not entry.runtime.shared_preload:
            continue
        if entry.kind is ExtensionKind.TOOL:
            log.warning("dropping tool %s from preload list", entry.name)
            continue
        names.append(library_name(entry.name))
    return _dedupe(names)


def build_preload_libraries(extensions: Iterable[ManifestEntry]) -> str:
    """Comma-joined shared_preload_libraries value, in input order."""
    return ",".join(preload_library_names(extensions))


def build_optional_preload_libraries(
    default_set: Iterable[ManifestEntry],
    optional_names: Sequence[str],
) -> str:
    """Default preload libraries plus explicitly requested optional modules."""
    names = preload_library_names(default_set)
    names.extend(library_name(n) for n in optional_names)
    return ",".join(_dedupe(names))


def default_preload_entries(entries: Sequence[ManifestEntry]) -> List[ManifestEntry]:
    """Preload modules that ship enabled by default."""
    defaults = {e.name for e in default_enabled_extensions(entries)}
    return [e for e in preload_extensions(entries) if e.name in defaults]


def preload_env_for_extension(
    entries: Sequence[ManifestEntry],
    name: str,
) -> Optional[Dict[str, str]]:
    """
    Container env needed to test *name* on its own.

    Returns None when the extension is unknown or already preloaded by
    default; otherwise the default preload list extended with it.
    """
    entry = find_extension(entries, name)
    if entry is None or entry.kind is ExtensionKind.TOOL:
        return None
    optional = {e.name for e in optional_preload_modules(entries)}
    if entry.name not in optional:
        return None
    value = build_optional_preload_libraries(default_preload_entries(entries), [entry.name])
    return {PRELOAD_ENV_VAR: value}

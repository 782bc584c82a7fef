"""
Extension manifest loading, validation and dependency resolution.

The manifest is loaded once per run into an immutable tuple of
ManifestEntry. Every view derived from it (testable set, preload set,
dependency order) is a pure function recomputed on demand.
"""

import json
from collections import Counter
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence, Set, Tuple

from .log_helper import getLogger
from .models import ExtensionKind, ManifestEntry


log = getLogger("manifest")

DEFAULT_MANIFEST_PATH = Path(__file__).resolve().parent / "data" / "extensions.manifest.json"

# Extensions whose first CREATE EXTENSION needs extra container setup
INITIALIZATION_ENV: Dict[str, Dict[str, str]] = {
    "pgsodium": {"ENABLE_PGSODIUM_INIT": "true"},
}

Manifest = Tuple[ManifestEntry, ...]


class ManifestError(Exception):
    """Base class for manifest problems."""
    pass


class ValidationError(ManifestError):
    """The manifest is inconsistent. ``errors`` lists every violation."""

    def __init__(self, errors: Sequence[str]):
        self.errors = list(errors)
        super().__init__(
            f"Manifest validation failed with {len(self.errors)} error(s):\n"
            + "\n".join(f"  - {e}" for e in self.errors)
        )


class CircularDependencyError(ValidationError):
    """The dependency graph contains a cycle through ``name``."""

    def __init__(self, name: str, chain: Sequence[str], errors: Sequence[str] = ()):
        self.name = name
        self.chain = list(chain)
        cycle = f"Circular dependency detected: {' -> '.join(self.chain)}"
        super().__init__([*errors, cycle])


class ToolInExtensionListError(ManifestError):
    """A tool entry ended up where only loadable extensions are allowed."""
    pass


# ---------------------------------------------------------------------------
# Loading
# ---------------------------------------------------------------------------

def parse_manifest(data: Any) -> Manifest:
    """
    Turn decoded manifest JSON into entries.

    Accepts either ``{"entries": [...]}`` or a bare list. Malformed
    records are reported together as one ValidationError.
    """
    records = data.get("entries") if isinstance(data, dict) else data
    if not isinstance(records, list):
        raise ValidationError(["manifest must contain a list of entries"])

    entries: List[ManifestEntry] = []
    errors: List[str] = []
    for index, record in enumerate(records):
        if not isinstance(record, dict):
            errors.append(f"entry #{index}: expected an object")
            continue
        label = record.get("name", f"entry #{index}")
        try:
            entries.append(ManifestEntry.from_dict(record))
        except KeyError as e:
            errors.append(f"{label}: missing required field {e.args[0]!r}")
        except ValueError:
            errors.append(f"{label}: unknown kind {record.get('kind')!r}")
        except TypeError as e:
            errors.append(f"{label}: {e}")

    if errors:
        raise ValidationError(errors)
    return tuple(entries)


def load_manifest(path: Optional[Path] = None) -> Manifest:
    """
    Load and validate the manifest at *path* (bundled manifest by default).

    Raises:
        ManifestError: file missing or not JSON
        ValidationError: inconsistent manifest (duplicates, cycles, ...)
    """
    path = Path(path) if path else DEFAULT_MANIFEST_PATH
    try:
        data = json.loads(path.read_text())
    except OSError as e:
        raise ManifestError(f"Cannot read manifest {path}: {e}") from e
    except json.JSONDecodeError as e:
        raise ManifestError(f"Manifest {path} is not valid JSON: {e}") from e

    entries = parse_manifest(data)
    validate_manifest(entries)
    log.debug("loaded %d manifest entries from %s", len(entries), path)
    return entries


# ---------------------------------------------------------------------------
# Validation and dependency order
# ---------------------------------------------------------------------------

def validate_manifest(entries: Sequence[ManifestEntry]) -> None:
    """
    Check every manifest rule and report all violations at once.

    Raises:
        CircularDependencyError: the graph has a cycle (``errors`` also
            carries any other violation found)
        ValidationError: any other violation
    """
    errors: List[str] = []

    counts = Counter(e.name for e in entries)
    for name, count in counts.items():
        if count > 1:
            errors.append(f"{name}: duplicate entry name ({count} entries)")

    names = set(counts)
    for entry in entries:
        if not entry.is_enabled and not (entry.disabled_reason or "").strip():
            errors.append(f"{entry.name}: disabled but missing disabledReason")
        for dep in entry.dependencies:
            if dep not in names:
                errors.append(f"{entry.name}: dependency '{dep}' not found in manifest")

    try:
        resolve_dependency_order(entries)
    except CircularDependencyError as e:
        raise CircularDependencyError(e.name, e.chain, errors) from None

    if errors:
        raise ValidationError(errors)


def resolve_dependency_order(entries: Sequence[ManifestEntry]) -> List[ManifestEntry]:
    """
    Depth-first topological sort of *entries* by their dependencies.

    Every entry appears once, after all of its dependencies. Independent
    entries keep their input order. Dependencies not present in *entries*
    are ignored here; validate_manifest reports them.

    Raises CircularDependencyError on a cycle.
    """
    by_name: Dict[str, ManifestEntry] = {}
    for entry in entries:
        by_name.setdefault(entry.name, entry)

    ordered: List[ManifestEntry] = []
    resolved: Set[str] = set()
    resolving: List[str] = []

    def visit(name: str) -> None:
        if name in resolved:
            return
        if name in resolving:
            chain = resolving[resolving.index(name):] + [name]
            raise CircularDependencyError(name, chain)
        if name not in by_name:
            return

        resolving.append(name)
        for dep in by_name[name].dependencies:
            visit(dep)
        resolving.pop()

        resolved.add(name)
        ordered.append(by_name[name])

    for name in by_name:
        visit(name)

    return ordered


# ---------------------------------------------------------------------------
# Projections
# ---------------------------------------------------------------------------

def testable_extensions(entries: Iterable[ManifestEntry]) -> List[ManifestEntry]:
    """Entries that can be activated with CREATE EXTENSION."""
    return [
        e for e in entries
        if e.is_enabled
        and e.kind is ExtensionKind.EXTENSION
        and not e.runtime.preload_only
    ]


def preload_extensions(entries: Iterable[ManifestEntry]) -> List[ManifestEntry]:
    """Enabled entries that must be in shared_preload_libraries to work."""
    return [
        e for e in entries
        if e.is_enabled
        and e.runtime.shared_preload
        and e.kind is not ExtensionKind.TOOL
    ]


def default_enabled_extensions(entries: Iterable[ManifestEntry]) -> List[ManifestEntry]:
    return [e for e in entries if e.is_enabled and e.runtime.default_enable]


def optional_preload_modules(entries: Iterable[ManifestEntry]) -> List[ManifestEntry]:
    """Preload modules that are only loaded on explicit opt-in."""
    return [
        e for e in entries
        if e.is_enabled
        and e.runtime.shared_preload
        and not e.runtime.default_enable
    ]


def find_extension(entries: Iterable[ManifestEntry], name: str) -> Optional[ManifestEntry]:
    """Case-insensitive lookup by name."""
    wanted = name.lower()
    for entry in entries:
        if entry.name.lower() == wanted:
            return entry
    return None


def extensions_by_category(
    entries: Iterable[ManifestEntry],
    category: str,
) -> List[ManifestEntry]:
    return [e for e in entries if e.category == category]


def should_skip_extension(entry: ManifestEntry) -> Optional[str]:
    """Reason an entry can not be exercised with CREATE EXTENSION, or None."""
    if not entry.is_enabled:
        return f"disabled: {entry.disabled_reason or 'no reason given'}"
    if entry.kind is ExtensionKind.TOOL:
        return "tool binary, not loaded into the server"
    if entry.runtime.preload_only:
        return "preload-only module without an extension object"
    return None


def validate_no_tools(entries: Iterable[ManifestEntry], context: str) -> None:
    """
    Refuse a list that contains tool entries.

    Tools in a preload list or an extension list crash the server at
    start, so callers check right before handing a list to the container.
    """
    tools = [e.name for e in entries if e.kind is ExtensionKind.TOOL]
    if tools:
        raise ToolInExtensionListError(
            f"{context}: tool entries can not be loaded as extensions: {', '.join(tools)}"
        )


def requires_initialization(entry: ManifestEntry) -> bool:
    return entry.name in INITIALIZATION_ENV


def initialization_env(entries: Iterable[ManifestEntry]) -> Dict[str, str]:
    """Container env needed by the given entries' first-time initialization."""
    env: Dict[str, str] = {}
    for entry in entries:
        env.update(INITIALIZATION_ENV.get(entry.name, {}))
    return env


def manifest_summary(entries: Sequence[ManifestEntry]) -> Dict[str, Any]:
    """
    Summary statistics about a manifest snapshot.

    Returns:
        Dict with counts by kind and category plus the derived set sizes
    """
    by_kind: Dict[str, int] = {}
    by_category: Dict[str, int] = {}
    for entry in entries:
        by_kind[entry.kind.value] = by_kind.get(entry.kind.value, 0) + 1
        by_category[entry.category] = by_category.get(entry.category, 0) + 1

    return {
        "total": len(entries),
        "enabled": sum(1 for e in entries if e.is_enabled),
        "disabled": sum(1 for e in entries if not e.is_enabled),
        "testable": len(testable_extensions(entries)),
        "preload": len(preload_extensions(entries)),
        "optional_preload": len(optional_preload_modules(entries)),
        "by_kind": by_kind,
        "by_category": dict(sorted(by_category.items())),
    }

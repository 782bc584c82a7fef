"""
pgharness - PostgreSQL container regression harness

Starts a PostgreSQL image with a manifest-derived preload list, runs
core, extension and interaction regression tiers against it and
reports the results.
"""

__version__ = "0.1.0"

from .models import ManifestEntry, TestMode, TestResult, TestStatus
from .manifest import load_manifest, resolve_dependency_order
from .preload import build_preload_libraries

__all__ = [
    "ManifestEntry",
    "TestMode",
    "TestResult",
    "TestStatus",
    "load_manifest",
    "resolve_dependency_order",
    "build_preload_libraries",
]

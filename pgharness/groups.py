"""
Setup groups for the core regression tests.

Core tests fall into three groups by the fixture state they need. The
setup script of a group runs once, before the first test of the group.
"""

from enum import Enum
from typing import Dict, List, Sequence

from .models import TestMode


class SetupRequirement(str, Enum):
    NONE = "none"
    MINIMAL = "minimal"
    FULL = "full"


# Run with no setup at all
SELF_CONTAINED_TESTS = (
    "boolean", "strings", "float4", "numeric", "numerology", "json",
)

# Need the small set of tables created by minimal_setup.sql
MINIMAL_SETUP_TESTS = (
    "int2", "int4", "int8", "float8", "text", "varchar",
)

# Need the full schema created by test_setup.sql
FULL_SETUP_TESTS = (
    "select", "insert", "update", "delete", "join", "union", "subselect",
    "constraints", "triggers", "create_index", "create_table", "transactions",
    "aggregates", "copy", "prepare", "jsonb", "arrays", "btree_index",
)

# Fixture name of the setup script for each group
SETUP_FIXTURES: Dict[SetupRequirement, str] = {
    SetupRequirement.MINIMAL: "minimal_setup",
    SetupRequirement.FULL: "test_setup",
}

# Quick subset for CI smoke runs
CI_FAST_TESTS = ("boolean", "int2", "int4", "select")

FAST_EXTENSION_TESTS = ("vector", "timescaledb", "pg_cron")

# Always part of a production extension run
TOP_EXTENSIONS = (
    "vector", "timescaledb", "pg_cron", "pgsodium", "pgaudit",
    "pg_stat_monitor", "hypopg", "pg_trgm", "pgmq", "timescaledb_toolkit",
)

# Only exercised in regression mode
REGRESSION_ONLY_EXTENSIONS = ("postgis", "pgrouting", "pgq")

# Ordered by how much setup a group needs
GROUP_ORDER = (SetupRequirement.NONE, SetupRequirement.MINIMAL, SetupRequirement.FULL)


def extension_test_names(mode: TestMode) -> List[str]:
    """Extensions the extension tier tests in *mode*."""
    if mode is TestMode.REGRESSION:
        return list(TOP_EXTENSIONS + REGRESSION_ONLY_EXTENSIONS)
    return list(TOP_EXTENSIONS)


def all_core_tests() -> List[str]:
    return list(SELF_CONTAINED_TESTS + MINIMAL_SETUP_TESTS + FULL_SETUP_TESTS)


def setup_requirement(name: str) -> SetupRequirement:
    """Setup a core test needs. Unknown tests are assumed to need everything."""
    if name in SELF_CONTAINED_TESTS:
        return SetupRequirement.NONE
    if name in MINIMAL_SETUP_TESTS:
        return SetupRequirement.MINIMAL
    return SetupRequirement.FULL


def group_by_setup(names: Sequence[str]) -> Dict[SetupRequirement, List[str]]:
    """
    Partition *names* by setup requirement, keeping their order.

    Setup fixtures themselves are never part of a group.
    """
    groups: Dict[SetupRequirement, List[str]] = {req: [] for req in GROUP_ORDER}
    setup_names = set(SETUP_FIXTURES.values())
    for name in names:
        if name in setup_names:
            continue
        groups[setup_requirement(name)].append(name)
    return groups

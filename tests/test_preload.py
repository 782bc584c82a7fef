"""
shared_preload_libraries construction.

Covers:
- Only sharedPreload entries are included, tools never
- Name remapping (pg_safeupdate -> safeupdate)
- Determinism and de-duplication
- Optional preload modules and per-extension env
"""

from __future__ import annotations

from pgharness.preload import (
    PRELOAD_ENV_VAR,
    build_optional_preload_libraries,
    build_preload_libraries,
    default_preload_entries,
    library_name,
    preload_env_for_extension,
    preload_library_names,
)

from conftest import make_entry


def test_only_shared_preload_entries():
    entries = [
        make_entry("pg_cron", shared_preload=True),
        make_entry("vector"),
        make_entry("pgaudit", shared_preload=True),
    ]
    assert build_preload_libraries(entries) == "pg_cron,pgaudit"


def test_tools_are_dropped_even_if_marked_preload():
    entries = [
        make_entry("pg_plan_filter", "tool", shared_preload=True),
        make_entry("pg_cron", shared_preload=True),
    ]
    assert build_preload_libraries(entries) == "pg_cron"


def test_empty_input_gives_empty_string():
    assert build_preload_libraries([]) == ""
    assert build_preload_libraries([make_entry("vector")]) == ""


def test_output_is_deterministic_and_deduplicated():
    entries = [
        make_entry("pg_cron", shared_preload=True),
        make_entry("pg_stat_statements", "builtin", shared_preload=True),
        make_entry("pg_cron", shared_preload=True),
    ]
    first = build_preload_libraries(entries)
    assert first == "pg_cron,pg_stat_statements"
    assert build_preload_libraries(entries) == first


def test_library_name_override():
    assert library_name("pg_safeupdate") == "safeupdate"
    assert library_name("pg_cron") == "pg_cron"
    entries = [make_entry("pg_safeupdate", shared_preload=True)]
    assert preload_library_names(entries) == ["safeupdate"]


def test_optional_libraries_appended_after_defaults():
    defaults = [make_entry("pg_cron", shared_preload=True, default_enable=True)]
    value = build_optional_preload_libraries(defaults, ["timescaledb", "pg_cron"])
    assert value == "pg_cron,timescaledb"


def test_default_preload_entries(small_manifest):
    assert [e.name for e in default_preload_entries(small_manifest)] == [
        "pg_cron", "pg_stat_statements", "auto_explain",
    ]


def test_preload_env_for_optional_module(small_manifest):
    env = preload_env_for_extension(small_manifest, "timescaledb")
    assert env == {PRELOAD_ENV_VAR: "pg_cron,pg_stat_statements,auto_explain,timescaledb"}


def test_preload_env_none_for_default_unknown_and_tools(small_manifest):
    assert preload_env_for_extension(small_manifest, "pg_cron") is None
    assert preload_env_for_extension(small_manifest, "vector") is None
    assert preload_env_for_extension(small_manifest, "no_such_ext") is None
    assert preload_env_for_extension(small_manifest, "pg_plan_filter") is None

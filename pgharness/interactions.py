"""
Extension interaction tests.

Each interaction test creates a set of extensions in one database and
checks that they work together. Tests live in an InteractionRegistry
instance; default_registry() returns the shipped set.

A test that is known to fail in a stock environment declares it with
``expected_failure``. A failure that matches the declaration is reported
as an expected failure; any other failure is a real one.
"""

import time
from dataclasses import dataclass
from typing import Callable, Dict, Iterator, List, Optional, Sequence, Tuple

from .log_helper import getLogger
from .models import TestMode, TestResult
from .sql import SqlResult, quote_ident


log = getLogger("interactions")

RunSql = Callable[[str], SqlResult]
InteractionCheck = Callable[[RunSql], None]

ALL_MODES: Tuple[TestMode, ...] = (TestMode.PRODUCTION, TestMode.REGRESSION)


@dataclass(frozen=True)
class ExpectedFailure:
    """A documented failure: why, and the error text that identifies it."""
    reason: str
    error_contains: str

    def matches(self, error: Optional[str]) -> bool:
        return bool(error) and self.error_contains in error


@dataclass(frozen=True)
class InteractionTest:
    name: str
    extensions: Tuple[str, ...]
    check: InteractionCheck
    display_name: str = ""
    modes: Tuple[TestMode, ...] = ALL_MODES
    preload_required: Tuple[str, ...] = ()
    expected_failure: Optional[ExpectedFailure] = None

    @property
    def title(self) -> str:
        return self.display_name or self.name


class InteractionRegistry:
    """Named interaction tests, selectable by mode."""

    def __init__(self) -> None:
        self._tests: Dict[str, InteractionTest] = {}

    def add(self, test: InteractionTest) -> InteractionTest:
        if test.name in self._tests:
            raise ValueError(f"Duplicate interaction test: {test.name}")
        self._tests[test.name] = test
        return test

    def interaction(
        self,
        name: str,
        extensions: Sequence[str],
        *,
        display_name: str = "",
        modes: Sequence[TestMode] = ALL_MODES,
        preload_required: Sequence[str] = (),
        expected_failure: Optional[ExpectedFailure] = None,
    ) -> Callable[[InteractionCheck], InteractionCheck]:
        """
        Decorator registering a check function.

        Example:
            @registry.interaction("hypopg-pg_stat_statements",
                                  ["hypopg", "pg_stat_statements"])
            def check(run_sql):
                expect_ok(run_sql("SELECT 1"))
        """
        def decorator(func: InteractionCheck) -> InteractionCheck:
            self.add(InteractionTest(
                name=name,
                extensions=tuple(extensions),
                check=func,
                display_name=display_name,
                modes=tuple(modes),
                preload_required=tuple(preload_required),
                expected_failure=expected_failure,
            ))
            return func
        return decorator

    def get(self, name: str) -> InteractionTest:
        return self._tests[name]

    def select(self, mode: TestMode) -> List[InteractionTest]:
        return [t for t in self._tests.values() if mode in t.modes]

    @property
    def names(self) -> List[str]:
        return list(self._tests)

    def __iter__(self) -> Iterator[InteractionTest]:
        return iter(self._tests.values())

    def __len__(self) -> int:
        return len(self._tests)


def expect_ok(result: SqlResult, what: str = "statement") -> str:
    """Assert that *result* succeeded; returns its stdout."""
    if not result.success:
        raise AssertionError(f"{what} failed: {result.stderr.strip() or result.stdout.strip()}")
    return result.stdout


def run_interaction(
    test: InteractionTest,
    run_sql: RunSql,
    suite: str = "interaction",
) -> TestResult:
    """Create the test's extensions, run its check and classify the outcome."""
    start = time.perf_counter()
    error: Optional[str] = None
    try:
        for extension in test.extensions:
            expect_ok(
                run_sql(f"CREATE EXTENSION IF NOT EXISTS {quote_ident(extension)} CASCADE;"),
                f"CREATE EXTENSION {extension}",
            )
        test.check(run_sql)
    except AssertionError as e:
        error = str(e) or "Assertion failed"
    except Exception as e:
        error = f"{type(e).__name__}: {e}"

    duration = (time.perf_counter() - start) * 1000
    expected = error is not None and test.expected_failure is not None and test.expected_failure.matches(error)
    if expected:
        log.warning("%s failed as expected: %s", test.name, test.expected_failure.reason)

    return TestResult(
        name=test.name,
        passed=error is None,
        duration=duration,
        error=error,
        suite=suite,
        expected_failure=expected,
    )


# ---------------------------------------------------------------------------
# Shipped interaction tests
# ---------------------------------------------------------------------------

PGSODIUM_KEY_SETUP = ExpectedFailure(
    reason="vault encryption needs a pgsodium_getkey script provisioned by hand",
    error_contains="pgsodium_getkey",
)


def default_registry(default_preloads: Sequence[str] = ()) -> InteractionRegistry:
    """
    The shipped interaction tests.

    Args:
        default_preloads: Libraries the image preloads by default, checked
            by the all-default-preloads test
    """
    registry = InteractionRegistry()
    expected_preloads = list(default_preloads)

    @registry.interaction(
        "timescaledb-pgvector",
        ["timescaledb", "vector"],
        display_name="TimescaleDB + pgvector",
        preload_required=["timescaledb"],
    )
    def _timescaledb_pgvector(run_sql: RunSql) -> None:
        expect_ok(run_sql(
            "DROP TABLE IF EXISTS it_embeddings;"
            "CREATE TABLE it_embeddings (ts timestamptz NOT NULL, embedding vector(3));"
            "SELECT create_hypertable('it_embeddings', 'ts');"
            "INSERT INTO it_embeddings VALUES (now(), '[1,2,3]'), (now() - interval '1 day', '[3,2,1]');"
        ), "hypertable with vector column")
        out = expect_ok(run_sql(
            "SELECT count(*) FROM it_embeddings WHERE embedding <-> '[1,2,3]' < 5;"
        ), "vector distance query")
        assert "2" in out, f"expected 2 rows within distance, got: {out.strip()}"
        expect_ok(run_sql("DROP TABLE it_embeddings;"), "cleanup")

    @registry.interaction(
        "hypopg-pg_stat_statements",
        ["hypopg", "pg_stat_statements"],
        display_name="HypoPG + pg_stat_statements",
        preload_required=["pg_stat_statements"],
    )
    def _hypopg_pg_stat_statements(run_sql: RunSql) -> None:
        expect_ok(run_sql(
            "DROP TABLE IF EXISTS it_hypo;"
            "CREATE TABLE it_hypo AS SELECT g AS id, md5(g::text) AS val FROM generate_series(1, 1000) g;"
            "ANALYZE it_hypo;"
        ), "setup table")
        out = expect_ok(run_sql(
            "SELECT count(*) FROM hypopg_create_index('CREATE INDEX ON it_hypo (id)');"
        ), "hypothetical index")
        assert "1" in out, f"hypopg_create_index returned: {out.strip()}"
        out = expect_ok(run_sql("SELECT count(*) > 0 FROM pg_stat_statements;"), "pg_stat_statements")
        assert "t" in out, "pg_stat_statements is empty"
        expect_ok(run_sql("SELECT hypopg_reset(); DROP TABLE it_hypo;"), "cleanup")

    @registry.interaction(
        "pgsodium-vault",
        ["pgsodium", "supabase_vault"],
        display_name="pgsodium + Supabase Vault",
        preload_required=["pgsodium"],
        expected_failure=PGSODIUM_KEY_SETUP,
    )
    def _pgsodium_vault(run_sql: RunSql) -> None:
        # Without a root key every vault call fails inside pgsodium_derive
        keys = run_sql("SELECT count(*) FROM pgsodium.key WHERE name = 'pgsodium_root';")
        if not keys.success or keys.stdout.strip() in ("", "0"):
            raise AssertionError(
                "pgsodium root key not found (requires pgsodium_getkey script configuration)"
            )
        out = expect_ok(run_sql(
            "SELECT vault.create_secret('it-secret', 'it_secret_name') IS NOT NULL;"
        ), "vault.create_secret")
        assert "t" in out, f"secret was not created: {out.strip()}"
        out = expect_ok(run_sql(
            "SELECT decrypted_secret FROM vault.decrypted_secrets WHERE name = 'it_secret_name';"
        ), "vault.decrypted_secrets")
        assert "it-secret" in out, "secret did not round-trip through the vault"
        expect_ok(run_sql("DELETE FROM vault.secrets WHERE name = 'it_secret_name';"), "cleanup")

    @registry.interaction(
        "all-default-preloads",
        [],
        display_name="All default preload libraries loaded",
    )
    def _all_default_preloads(run_sql: RunSql) -> None:
        out = expect_ok(run_sql("SHOW shared_preload_libraries;"), "SHOW shared_preload_libraries")
        loaded = {name.strip() for name in out.strip().split(",") if name.strip()}
        missing = [lib for lib in expected_preloads if lib not in loaded]
        assert not missing, f"not preloaded: {', '.join(missing)} (loaded: {', '.join(sorted(loaded))})"

    @registry.interaction(
        "pgaudit-pg_stat_monitor",
        ["pgaudit", "pg_stat_monitor"],
        display_name="pgAudit + pg_stat_monitor",
        modes=[TestMode.REGRESSION],
        preload_required=["pgaudit", "pg_stat_monitor"],
    )
    def _pgaudit_pg_stat_monitor(run_sql: RunSql) -> None:
        expect_ok(run_sql("SET pgaudit.log = 'read'; SELECT 1;"), "pgaudit logging")
        out = expect_ok(run_sql("SELECT count(*) >= 0 FROM pg_stat_monitor;"), "pg_stat_monitor view")
        assert "t" in out, f"pg_stat_monitor query returned: {out.strip()}"

    @registry.interaction(
        "postgis-pgrouting",
        ["postgis", "pgrouting"],
        display_name="PostGIS + pgRouting",
        modes=[TestMode.REGRESSION],
    )
    def _postgis_pgrouting(run_sql: RunSql) -> None:
        out = expect_ok(run_sql(
            "SELECT ST_Distance(ST_MakePoint(0, 0), ST_MakePoint(3, 4));"
        ), "ST_Distance")
        assert "5" in out, f"unexpected distance: {out.strip()}"
        expect_ok(run_sql("SELECT pgr_version();"), "pgr_version")

    @registry.interaction(
        "postgis-pg_trgm",
        ["postgis", "pg_trgm"],
        display_name="PostGIS + pg_trgm",
        modes=[TestMode.REGRESSION],
    )
    def _postgis_pg_trgm(run_sql: RunSql) -> None:
        expect_ok(run_sql(
            "DROP TABLE IF EXISTS it_spatial_text;"
            "CREATE TABLE it_spatial_text (id serial PRIMARY KEY, location geometry(Point, 4326), name text);"
            "CREATE INDEX ON it_spatial_text USING GIST (location);"
            "CREATE INDEX ON it_spatial_text USING GIN (name gin_trgm_ops);"
            "INSERT INTO it_spatial_text (location, name) VALUES"
            " (ST_SetSRID(ST_MakePoint(-122.4194, 37.7749), 4326), 'San Francisco Office'),"
            " (ST_SetSRID(ST_MakePoint(139.6917, 35.6895), 4326), 'Tokyo Office');"
        ), "GiST and trigram indexes")
        out = expect_ok(run_sql(
            "SELECT name FROM it_spatial_text"
            " WHERE ST_DWithin(location::geography, ST_SetSRID(ST_MakePoint(-122.4, 37.7), 4326)::geography, 50000)"
            " AND name % 'Office';"
        ), "spatial and similarity query")
        assert "San Francisco" in out, f"combined query returned: {out.strip()}"
        expect_ok(run_sql("DROP TABLE it_spatial_text;"), "cleanup")

    @registry.interaction(
        "all-optional-preloads",
        ["pgsodium", "pg_partman", "set_user"],
        display_name="Optional preload libraries",
        modes=[TestMode.REGRESSION],
        preload_required=["pgsodium", "pg_partman", "set_user"],
    )
    def _all_optional_preloads(run_sql: RunSql) -> None:
        out = expect_ok(run_sql(
            "SELECT count(*) FROM pg_extension WHERE extname IN ('pgsodium', 'pg_partman', 'set_user');"
        ), "pg_extension")
        assert out.strip() == "3", f"expected 3 optional preload extensions, got: {out.strip()}"

    @registry.interaction(
        "pg_partman-timescaledb",
        ["pg_partman", "timescaledb"],
        display_name="pg_partman + TimescaleDB",
        modes=[TestMode.REGRESSION],
        preload_required=["timescaledb"],
    )
    def _pg_partman_timescaledb(run_sql: RunSql) -> None:
        expect_ok(run_sql(
            "DROP TABLE IF EXISTS it_partman CASCADE;"
            "CREATE TABLE it_partman (id serial, created_at timestamptz NOT NULL DEFAULT now(), value text)"
            " PARTITION BY RANGE (created_at);"
        ), "partitioned table")
        expect_ok(run_sql(
            "SELECT partman.create_parent(p_parent_table => 'public.it_partman',"
            " p_control => 'created_at', p_interval => '1 day', p_premake => 1);"
        ), "partman.create_parent")
        expect_ok(run_sql(
            "DROP TABLE IF EXISTS it_hypertable;"
            "CREATE TABLE it_hypertable (time timestamptz NOT NULL, device_id int, value double precision);"
            "SELECT create_hypertable('it_hypertable', 'time', if_not_exists => TRUE);"
        ), "hypertable")
        expect_ok(run_sql(
            "INSERT INTO it_partman (value) VALUES ('it');"
            "INSERT INTO it_hypertable VALUES (now(), 1, 42.0);"
        ), "inserts into both tables")
        expect_ok(run_sql("DROP TABLE it_partman CASCADE; DROP TABLE it_hypertable CASCADE;"), "cleanup")

    @registry.interaction(
        "encryption-audit",
        ["pgsodium", "pgaudit"],
        display_name="pgsodium + pgAudit",
        modes=[TestMode.REGRESSION],
        preload_required=["pgsodium", "pgaudit"],
    )
    def _encryption_audit(run_sql: RunSql) -> None:
        expect_ok(run_sql(
            "SET pgaudit.log = 'all';"
            "DROP TABLE IF EXISTS it_encrypted_audit;"
            "CREATE TABLE it_encrypted_audit (id serial PRIMARY KEY, encrypted_data bytea);"
            "INSERT INTO it_encrypted_audit (encrypted_data)"
            " SELECT pgsodium.crypto_secretbox('sensitive data'::bytea,"
            " pgsodium.crypto_secretbox_noncegen(), pgsodium.crypto_secretbox_keygen());"
        ), "encrypted insert under audit")
        out = expect_ok(run_sql("SHOW pgaudit.log;"), "SHOW pgaudit.log")
        assert "all" in out, f"pgaudit.log is {out.strip()}"
        expect_ok(run_sql("DROP TABLE it_encrypted_audit;"), "cleanup")

    @registry.interaction(
        "gis-extensions",
        ["postgis", "h3", "h3_postgis"],
        display_name="PostGIS + h3 + h3_postgis",
        modes=[TestMode.REGRESSION],
    )
    def _gis_extensions(run_sql: RunSql) -> None:
        out = expect_ok(run_sql(
            "SELECT h3_lat_lng_to_cell(ST_SetSRID(ST_MakePoint(-122.4194, 37.7749), 4326), 9);"
        ), "h3_lat_lng_to_cell")
        assert out.strip(), "no H3 cell returned"

    return registry

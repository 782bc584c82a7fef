"""
SQL execution against a running instance.

SqlRunner goes through ``docker exec ... psql`` (the admin channel every
container has). DirectSqlRunner talks to a published port with psycopg.
Both return SqlResult and never raise: callers routinely assert on
statements that are supposed to fail.
"""

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import psycopg

from .log_helper import getLogger
from .process import CommandResult, CommandRunner, run_command


log = getLogger("sql")


@dataclass(frozen=True)
class SqlResult:
    stdout: str
    stderr: str
    exit_code: int

    @property
    def success(self) -> bool:
        return self.exit_code == 0

    @classmethod
    def from_command(cls, result: CommandResult) -> "SqlResult":
        return cls(result.stdout, result.stderr, result.exit_code)


def quote_ident(name: str) -> str:
    """Quote an identifier for interpolation into SQL text."""
    return '"' + name.replace('"', '""') + '"'


class SqlRunner:
    """
    psql inside a container, via ``docker exec``.

    Single statements go through ``-c``; scripts are piped on stdin with
    echo-all so the output reads like a pg_regress result file.
    """

    def __init__(
        self,
        container: str,
        user: str = "postgres",
        database: str = "postgres",
        runner: CommandRunner = run_command,
        docker: str = "docker",
    ):
        self.container = container
        self.user = user
        self.database = database
        self.runner = runner
        self.docker = docker

    def _psql(self, *args: str, interactive: bool = False) -> List[str]:
        argv = [self.docker, "exec"]
        if interactive:
            argv.append("-i")
        argv += [self.container, "psql", "-X", "-U", self.user, "-d", self.database]
        argv.extend(args)
        return argv

    def run(self, sql: str) -> SqlResult:
        """
        Execute one statement (or a short ``;``-separated batch).

        Output is tuples-only and unaligned (``-tA``).
        """
        result = self.runner(self._psql("-t", "-A", "-v", "ON_ERROR_STOP=1", "-c", sql))
        return SqlResult.from_command(result)

    def run_script(self, script: str) -> SqlResult:
        """
        Execute a whole script the way pg_regress does: statements echoed,
        errors interleaved with results in stdout, execution continuing
        past errors.
        """
        result = self.runner(
            self._psql("-a", "-q", "-f", "-", interactive=True),
            input_text=script,
            merge_stderr=True,
        )
        return SqlResult.from_command(result)

    def run_file(self, path: Union[str, Path]) -> SqlResult:
        try:
            script = Path(path).read_text()
        except OSError as e:
            return SqlResult("", f"Failed to read {path}: {e}", -1)
        return self.run_script(script)

    def __call__(self, sql: str) -> SqlResult:
        return self.run(sql)


class DirectSqlRunner:
    """
    psycopg connection to a published port.

    Rows come back as ``|``-separated lines, matching ``psql -tA``.
    """

    def __init__(
        self,
        host: str = "localhost",
        port: int = 5432,
        user: str = "postgres",
        password: Optional[str] = None,
        database: str = "postgres",
        connect_timeout: int = 10,
    ):
        self.host = host
        self.port = port
        self.user = user
        self.password = password
        self.database = database
        self.connect_timeout = connect_timeout

    def _connect_kwargs(self) -> Dict[str, Any]:
        kwargs: Dict[str, Any] = {
            "host": self.host,
            "port": self.port,
            "user": self.user,
            "dbname": self.database,
            "autocommit": True,
            "connect_timeout": self.connect_timeout,
        }
        if self.password:
            kwargs["password"] = self.password
        return kwargs

    def run(self, sql: str) -> SqlResult:
        try:
            with psycopg.connect(**self._connect_kwargs()) as conn:
                with conn.cursor() as cur:
                    cur.execute(sql)
                    rows = cur.fetchall() if cur.description else []
        except psycopg.Error as e:
            return SqlResult("", str(e).strip(), 1)

        lines = ["|".join("" if v is None else str(v) for v in row) for row in rows]
        return SqlResult("\n".join(lines), "", 0)

    def __call__(self, sql: str) -> SqlResult:
        return self.run(sql)


def check_postgres_connection(
    host: str = "localhost",
    port: int = 5432,
    user: str = "postgres",
    password: Optional[str] = None,
) -> bool:
    """True if a psycopg connection to host:port succeeds."""
    result = DirectSqlRunner(host, port, user, password).run("SELECT 1")
    if not result.success:
        log.debug("connection to %s:%s failed: %s", host, port, result.stderr)
    return result.success

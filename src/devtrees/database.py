"""Per-worktree database cloning for devtrees.

Each worktree gets its own copy of the host application's database:

- sqlite: the database file is copied into the worktree and the worktree's
  .env is pointed at the copy.
- mysql/mariadb: ``mysqldump`` of the source is piped into ``mysql`` for a
  ``{source}_{suffix}`` database.
- pgsql: ``pg_dump`` of the source is piped into ``psql`` for a
  ``{source}_{suffix}`` database created with ``createdb``.

When a Docker container is configured for the backend, every client command
is run through ``docker exec`` after checking that the container is up.
Passwords only ever travel through the environment.
"""

import logging
import shutil
from enum import Enum
from pathlib import Path
from typing import assert_never

from .config import ConnectionSettings, DatabaseSettings, DatabaseStrategy
from .exceptions import CommandFailedError, ContainerNotRunningError
from .shell import CommandResult, OutputSink, ShellExecutor
from .utils import FileUtils

logger = logging.getLogger(__name__)

DOCKER_CHECK_TIMEOUT = 5
LIST_TIMEOUT = 10
ADMIN_TIMEOUT = 30
TRANSFER_TIMEOUT = 300


class Strategy(str, Enum):
    """Resolved cloning backend."""
    NONE = "none"
    SQLITE = "sqlite"
    MYSQL = "mysql"
    PGSQL = "pgsql"


DRIVER_STRATEGIES = {
    "sqlite": Strategy.SQLITE,
    "mysql": Strategy.MYSQL,
    "mariadb": Strategy.MYSQL,
    "pgsql": Strategy.PGSQL,
    "postgres": Strategy.PGSQL,
    "postgresql": Strategy.PGSQL,
}


class DatabaseCloner:
    """Clones, drops and lists per-worktree databases."""

    def __init__(self, settings: DatabaseSettings, connection: ConnectionSettings,
                 project_path: str | Path, shell: ShellExecutor | None = None,
                 env_file: str = ".env"):
        """Initialize the cloner.

        Args:
            settings: Cloning settings (strategy, Docker containers)
            connection: The host application's active database connection
            project_path: Main project directory, used to locate the sqlite file
            shell: Command executor
            env_file: Env file inside a worktree that points at its sqlite copy
        """
        self.settings = settings
        self.connection = connection
        self.project_path = Path(project_path)
        self.shell = shell or ShellExecutor()
        self.env_file = env_file

    def resolve_strategy(self) -> Strategy:
        """Return the configured strategy, or detect it from the active driver."""
        if self.settings.strategy is not DatabaseStrategy.AUTO:
            return Strategy(self.settings.strategy.value)

        return DRIVER_STRATEGIES.get(self.connection.driver.lower(), Strategy.NONE)

    def source_database(self) -> str:
        """Name of the database worktrees are cloned from."""
        return self.connection.database

    def target_database(self, suffix: str) -> str:
        """Name of the clone for a worktree suffix."""
        return f"{self.source_database()}_{suffix}"

    def clone(self, worktree_path: str | Path, suffix: str, output: OutputSink | None = None) -> None:
        """Clone the source database for a worktree.

        Args:
            worktree_path: Worktree directory (used by sqlite)
            suffix: Database-safe worktree suffix
            output: Sink for dump/restore output

        Raises:
            ContainerNotRunningError: If the configured container is down
            CommandFailedError: If any clone command fails
        """
        strategy = self.resolve_strategy()
        if strategy is Strategy.NONE:
            return
        elif strategy is Strategy.SQLITE:
            self._clone_sqlite(Path(worktree_path))
        elif strategy is Strategy.MYSQL:
            self._ensure_container_running()
            self._clone_mysql(suffix, output)
        elif strategy is Strategy.PGSQL:
            self._ensure_container_running()
            self._clone_pgsql(suffix, output)
        else:
            assert_never(strategy)

    def drop(self, suffix: str) -> None:
        """Drop a worktree's database clone.

        sqlite clones live inside the worktree directory and go away with it.
        """
        strategy = self.resolve_strategy()
        if strategy is Strategy.NONE or strategy is Strategy.SQLITE:
            return
        elif strategy is Strategy.MYSQL:
            self._ensure_container_running()
            self._mysql_exec(f"DROP DATABASE IF EXISTS {_mysql_identifier(self.target_database(suffix))}")
        elif strategy is Strategy.PGSQL:
            self._ensure_container_running()
            self._drop_pgsql(suffix)
        else:
            assert_never(strategy)

        logger.info(f"Dropped database {self.target_database(suffix)}")

    def list_cloned(self) -> list[str]:
        """List existing clones of the source database.

        Used for display only, so failures are logged and yield an empty list.
        """
        strategy = self.resolve_strategy()
        if strategy is Strategy.NONE or strategy is Strategy.SQLITE:
            return []

        try:
            self._ensure_container_running()
        except ContainerNotRunningError as e:
            logger.warning(f"Cannot list database clones: {e}")
            return []

        if strategy is Strategy.MYSQL:
            result = self._list_mysql_clones()
        elif strategy is Strategy.PGSQL:
            result = self._list_pgsql_clones()
        else:
            assert_never(strategy)

        if not result.success:
            logger.warning(f"Cannot list database clones: {result.stderr.strip()}")
            return []

        prefix = f"{self.source_database()}_"
        names = [line.strip() for line in result.stdout.splitlines()]
        return [name for name in names if name.startswith(prefix) and name != prefix]

    # Docker and connection helpers

    def docker_container(self) -> str | None:
        """Container hosting the active backend, if configured."""
        strategy = self.resolve_strategy()
        if strategy is Strategy.MYSQL:
            return self.settings.mysql_docker_container
        if strategy is Strategy.PGSQL:
            return self.settings.pgsql_docker_container
        return None

    def _ensure_container_running(self) -> None:
        container = self.docker_container()
        if not container:
            return

        result = self.shell.run(
            ["docker", "ps", "--format", "{{.Names}}", "--filter", f"name={container}"],
            timeout=DOCKER_CHECK_TIMEOUT,
        )
        running = {line.strip() for line in result.stdout.splitlines() if line.strip()}
        if container not in running:
            raise ContainerNotRunningError(container)

    def _host(self) -> str:
        if self.docker_container():
            return self.settings.docker_host
        return self.connection.host

    def _wrap_docker(self, argv: list[str], env: dict[str, str], interactive: bool = False) -> list[str]:
        """Prefix a client command with docker exec when a container is configured.

        Variables are forwarded by name so their values stay out of argv.
        """
        container = self.docker_container()
        if not container:
            return argv

        wrapped = ["docker", "exec"]
        if interactive:
            wrapped.append("-i")
        for key in env:
            wrapped.extend(["-e", key])
        wrapped.append(container)
        return wrapped + argv

    # SQLite

    def _clone_sqlite(self, worktree_path: Path) -> None:
        if not self.settings.sqlite_copy:
            return

        source = self.project_path / self.settings.sqlite_path
        if not source.is_file():
            logger.info(f"No sqlite database at {source}, skipping copy")
            return

        target = worktree_path / self.settings.sqlite_path
        target.parent.mkdir(parents=True, exist_ok=True)
        shutil.copyfile(source, target)

        FileUtils.update_env_file(worktree_path / self.env_file, {"DB_DATABASE": str(target.resolve())})
        logger.info(f"Copied sqlite database to {target}")

    # MySQL / MariaDB

    def _mysql_credentials(self) -> list[str]:
        flags = []
        if self.connection.username:
            flags.extend(["-u", self.connection.username])
        host = self._host()
        if host:
            flags.extend(["-h", host])
        if self.connection.port:
            flags.extend(["-P", self.connection.port])
        return flags

    def _mysql_env(self) -> dict[str, str]:
        return {"MYSQL_PWD": self.connection.password} if self.connection.password else {}

    def _mysql_exec(self, sql: str) -> None:
        env = self._mysql_env()
        argv = self._wrap_docker(["mysql", *self._mysql_credentials(), "-e", sql], env)

        result = self.shell.run(argv, timeout=ADMIN_TIMEOUT, env=env)
        if not result.success:
            raise CommandFailedError("MySQL command", result.stderr)

    def _clone_mysql(self, suffix: str, output: OutputSink | None) -> None:
        source = self.source_database()
        target = self.target_database(suffix)
        credentials = self._mysql_credentials()
        env = self._mysql_env()

        self._mysql_exec(f"CREATE DATABASE IF NOT EXISTS {_mysql_identifier(target)}")

        dump = self._wrap_docker(["mysqldump", "--single-transaction", *credentials, source], env)
        restore = self._wrap_docker(["mysql", *credentials, target], env, interactive=True)

        logger.info(f"Cloning MySQL database {source} into {target}")
        result = self.shell.run_pipeline([dump, restore], timeout=TRANSFER_TIMEOUT, env=env, output=output)
        if not result.success:
            raise CommandFailedError("MySQL clone", result.stderr)

    def _list_mysql_clones(self) -> CommandResult:
        env = self._mysql_env()
        sql = f"SHOW DATABASES LIKE '{_mysql_like_prefix(self.source_database())}_%'"
        argv = self._wrap_docker(["mysql", "-N", *self._mysql_credentials(), "-e", sql], env)
        return self.shell.run(argv, timeout=LIST_TIMEOUT, env=env)

    # PostgreSQL

    def _pgsql_credentials(self) -> list[str]:
        flags = []
        if self.connection.username:
            flags.extend(["-U", self.connection.username])
        host = self._host()
        if host:
            flags.extend(["-h", host])
        if self.connection.port:
            flags.extend(["-p", self.connection.port])
        return flags

    def _pgsql_env(self) -> dict[str, str]:
        return {"PGPASSWORD": self.connection.password} if self.connection.password else {}

    def _pgsql_admin(self, argv: list[str], timeout: int = ADMIN_TIMEOUT) -> CommandResult:
        env = self._pgsql_env()
        return self.shell.run(self._wrap_docker(argv, env), timeout=timeout, env=env)

    def _clone_pgsql(self, suffix: str, output: OutputSink | None) -> None:
        source = self.source_database()
        target = self.target_database(suffix)
        credentials = self._pgsql_credentials()
        env = self._pgsql_env()

        result = self._pgsql_admin(["createdb", *credentials, target])
        if not result.success:
            if "already exists" not in result.stderr:
                raise CommandFailedError("PostgreSQL createdb", result.stderr)
            # ON_ERROR_STOP below makes the restore fail on a stale target
            logger.warning(f"Database {target} already exists, restoring into it")

        dump = self._wrap_docker(["pg_dump", *credentials, source], env)
        restore = self._wrap_docker(
            ["psql", "-v", "ON_ERROR_STOP=1", *credentials, target], env, interactive=True
        )

        logger.info(f"Cloning PostgreSQL database {source} into {target}")
        result = self.shell.run_pipeline([dump, restore], timeout=TRANSFER_TIMEOUT, env=env, output=output)
        if not result.success:
            raise CommandFailedError("PostgreSQL clone", result.stderr)

    def _drop_pgsql(self, suffix: str) -> None:
        argv = ["dropdb", "--if-exists", *self._pgsql_credentials(), self.target_database(suffix)]
        result = self._pgsql_admin(argv)
        if not result.success:
            raise CommandFailedError("PostgreSQL dropdb", result.stderr)

    def _list_pgsql_clones(self) -> CommandResult:
        source = self.source_database()
        sql = (
            "SELECT datname FROM pg_database "
            f"WHERE datname LIKE '{_sql_literal(source)}_%' ORDER BY datname"
        )
        argv = ["psql", *self._pgsql_credentials(), "-t", "-A", "-c", sql, source]
        return self._pgsql_admin(argv, timeout=LIST_TIMEOUT)


def _mysql_identifier(name: str) -> str:
    return "`" + name.replace("`", "``") + "`"


def _sql_literal(value: str) -> str:
    return value.replace("'", "''")


def _mysql_like_prefix(value: str) -> str:
    # Backslash is the LIKE escape and also a string literal escape in MySQL
    pattern = value.replace("\\", "\\\\")
    return pattern.replace("\\", "\\\\").replace("'", "''")

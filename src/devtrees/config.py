"""Configuration management for devtrees."""

import os
import tomllib
from collections.abc import Mapping
from enum import Enum
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
from sqlalchemy.engine import URL, make_url
from sqlalchemy.exc import ArgumentError

from .exceptions import ConfigurationError

DEFAULT_CONFIG_FILE = ".devtrees.toml"

# Environment variable -> path into the config mapping.
ENV_OVERRIDES: dict[str, tuple[str, ...]] = {
    "WORKTREE_BASE_PATH": ("base_path",),
    "WORKTREE_BRANCH_PREFIX": ("branch_prefix",),
    "WORKTREE_BASE_BRANCH": ("base_branch",),
    "WORKTREE_DB_STRATEGY": ("database", "strategy"),
    "WORKTREE_DB_MYSQL_DOCKER_CONTAINER": ("database", "mysql_docker_container"),
    "WORKTREE_DB_PGSQL_DOCKER_CONTAINER": ("database", "pgsql_docker_container"),
    "WORKTREE_DB_DOCKER_HOST": ("database", "docker_host"),
    "WORKTREE_NODE_PM": ("bootstrap", "node_package_manager"),
    "WORKTREE_IDE_COMMAND": ("ide_command",),
}


class DatabaseStrategy(str, Enum):
    """Configured database cloning strategy."""
    AUTO = "auto"
    NONE = "none"
    SQLITE = "sqlite"
    MYSQL = "mysql"
    PGSQL = "pgsql"


class DatabaseSettings(BaseModel):
    """Settings for per-worktree database cloning."""

    model_config = ConfigDict(frozen=True)

    strategy: DatabaseStrategy = Field(default=DatabaseStrategy.AUTO)
    sqlite_copy: bool = Field(default=True)
    sqlite_path: str = Field(default="database/database.sqlite")
    mysql_docker_container: str | None = Field(default=None)
    pgsql_docker_container: str | None = Field(default=None)
    docker_host: str = Field(default="127.0.0.1")

    @field_validator("mysql_docker_container", "pgsql_docker_container", mode="before")
    @classmethod
    def blank_to_none(cls, v: Any) -> Any:
        """Treat an empty container name as unset."""
        if isinstance(v, str) and not v.strip():
            return None
        return v


class BootstrapSettings(BaseModel):
    """Commands run while bootstrapping a new worktree."""

    model_config = ConfigDict(frozen=True)

    install_command: str = Field(default="composer install --no-interaction")
    node_package_manager: str = Field(default="pnpm")
    build_frontend: bool = Field(default=True)
    run_migrations: bool = Field(default=True)
    migrate_command: str = Field(default="php artisan migrate --force")


class ConnectionSettings(BaseModel):
    """The host application's active database connection."""

    model_config = ConfigDict(frozen=True)

    driver: str = Field(default="")
    host: str = Field(default="127.0.0.1")
    port: str = Field(default="")
    database: str = Field(default="")
    username: str = Field(default="")
    password: str = Field(default="")

    @classmethod
    def from_url(cls, url: str) -> "ConnectionSettings":
        """Build connection settings from a SQLAlchemy database URL."""
        try:
            parsed = make_url(url)
        except ArgumentError as e:
            raise ConfigurationError(f"Invalid database URL: {e}") from e

        return cls(
            driver=parsed.get_backend_name(),
            host=parsed.host or "127.0.0.1",
            port=str(parsed.port) if parsed.port else "",
            database=parsed.database or "",
            username=parsed.username or "",
            password=parsed.password or "",
        )

    @classmethod
    def from_env(cls, values: Mapping[str, str | None]) -> "ConnectionSettings":
        """Build connection settings from DB_* entries of a .env file."""
        if values.get("DATABASE_URL"):
            return cls.from_url(values["DATABASE_URL"])

        return cls(
            driver=values.get("DB_CONNECTION") or "",
            host=values.get("DB_HOST") or "127.0.0.1",
            port=values.get("DB_PORT") or "",
            database=values.get("DB_DATABASE") or "",
            username=values.get("DB_USERNAME") or "",
            password=values.get("DB_PASSWORD") or "",
        )

    @property
    def display_url(self) -> str:
        """Connection as a URL with the password hidden, for logs."""
        if not self.driver:
            return "<none>"
        url = URL.create(
            self.driver,
            username=self.username or None,
            password=self.password or None,
            host=self.host or None,
            port=int(self.port) if self.port.isdigit() else None,
            database=self.database or None,
        )
        return url.render_as_string(hide_password=True)


class Config(BaseModel):
    """Configuration settings for devtrees."""

    model_config = ConfigDict(frozen=True)

    # Project settings
    project_path: Path = Field(default_factory=Path.cwd)
    base_path: Path | None = Field(default=None)
    env_file: str = Field(default=".env")
    copy_files: list[str] = Field(default_factory=lambda: [".env"])

    # Git settings
    branch_prefix: str = Field(default="")
    base_branch: str = Field(default="master")

    # Host application settings
    app_name: str | None = Field(default=None)
    app_url: str | None = Field(default=None)
    connection: ConnectionSettings = Field(default_factory=ConnectionSettings)

    database: DatabaseSettings = Field(default_factory=DatabaseSettings)
    bootstrap: BootstrapSettings = Field(default_factory=BootstrapSettings)

    ide_command: str = Field(default="phpstorm")

    # Logging settings
    log_level: str = Field(default="WARNING")
    log_file: Path | None = Field(default=None)

    @field_validator("project_path", "base_path", mode="before")
    @classmethod
    def resolve_path(cls, v: Any) -> Path | None:
        """Resolve paths to absolute form."""
        if v is None or v == "":
            return None
        path = Path(v).expanduser() if not isinstance(v, Path) else v.expanduser()
        return path.resolve()

    @field_validator("log_level", mode="before")
    @classmethod
    def normalize_log_level(cls, v: Any) -> str:
        """Upper-case the log level name."""
        return str(v).upper()

    @property
    def project_name(self) -> str:
        """Directory name of the main project."""
        return self.project_path.name

    @property
    def worktree_base_path(self) -> Path:
        """Directory that holds worktrees, the project's parent by default."""
        return self.base_path or self.project_path.parent

    @property
    def resolved_app_name(self) -> str:
        """Application name used when renaming a worktree's APP_NAME."""
        return self.app_name or self.project_name

    @classmethod
    def load(cls, project_path: str | Path, config_path: str | Path | None = None,
             environ: Mapping[str, str] | None = None) -> "Config":
        """Load configuration for a project.

        Defaults are overlaid by the TOML config file, then by WORKTREE_*
        environment variables. Host application settings (app name, URL and
        database connection) fall back to the project's .env file.

        Args:
            project_path: Main project directory
            config_path: Explicit TOML file; defaults to .devtrees.toml in the project
            environ: Environment to read overrides from; defaults to os.environ

        Returns:
            Immutable Config instance
        """
        environ = os.environ if environ is None else environ
        project_path = Path(project_path).resolve()

        data: dict[str, Any] = {}
        file_path = Path(config_path) if config_path else project_path / DEFAULT_CONFIG_FILE
        if config_path or file_path.exists():
            data = cls._read_toml(file_path)

        data["project_path"] = project_path
        for variable, keys in ENV_OVERRIDES.items():
            value = environ.get(variable)
            if value is not None:
                _set_nested(data, keys, value)

        env_values = dotenv_values(project_path / data.get("env_file", ".env"))
        database_url = data.pop("database_url", None) or environ.get("DATABASE_URL")
        if "connection" not in data:
            if database_url:
                data["connection"] = ConnectionSettings.from_url(database_url)
            else:
                data["connection"] = ConnectionSettings.from_env(env_values)
        data.setdefault("app_name", env_values.get("APP_NAME") or None)
        data.setdefault("app_url", env_values.get("APP_URL") or None)

        try:
            return cls(**data)
        except ValidationError as e:
            raise ConfigurationError(f"Invalid configuration: {e}") from e

    @staticmethod
    def _read_toml(path: Path) -> dict[str, Any]:
        try:
            with path.open("rb") as f:
                return tomllib.load(f)
        except FileNotFoundError as e:
            raise ConfigurationError(f"Config file not found: {path}") from e
        except tomllib.TOMLDecodeError as e:
            raise ConfigurationError(f"Invalid config file {path}: {e}") from e

    def ensure_directories(self) -> None:
        """Ensure required directories exist."""
        self.worktree_base_path.mkdir(parents=True, exist_ok=True)
        if self.log_file:
            self.log_file.parent.mkdir(parents=True, exist_ok=True)

    def to_dict(self) -> dict[str, Any]:
        """Convert configuration to dictionary."""
        return self.model_dump()


def _set_nested(data: dict[str, Any], keys: tuple[str, ...], value: Any) -> None:
    target = data
    for key in keys[:-1]:
        target = target.setdefault(key, {})
    target[keys[-1]] = value

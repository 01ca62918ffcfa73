"""Git worktree management for devtrees."""

import logging
import re
import shlex
from collections.abc import Callable
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any

from .config import Config
from .database import DatabaseCloner, Strategy
from .exceptions import (
    BranchCheckedOutError,
    CommandFailedError,
    ConfigurationError,
    WorktreeExistsError,
    WorktreeNotFoundError,
)
from .shell import CommandResult, OutputSink, ShellExecutor
from .utils import FileUtils, GitUtils, sanitize_suffix, validate_worktree_name

logger = logging.getLogger(__name__)

StepCallback = Callable[[str], None]

GIT_TIMEOUT = 30
STATUS_TIMEOUT = 10
INSTALL_TIMEOUT = 300
BUILD_TIMEOUT = 300
MIGRATE_TIMEOUT = 120

BRANCH_REF_PREFIX = "refs/heads/"
CHECKED_OUT_MARKERS = ("is already used by worktree", "is already checked out")
APP_URL_PATTERN = re.compile(r"^(https?://)([^.]+)(.*)$")


@dataclass(frozen=True)
class Worktree:
    """A worktree created by devtrees."""

    name: str
    path: Path
    branch: str | None = None
    head: str | None = None
    bare: bool = False

    def to_dict(self) -> dict[str, Any]:
        """JSON-friendly representation."""
        data = asdict(self)
        data["path"] = str(self.path)
        return data


@dataclass(frozen=True)
class SafetyStatus:
    """Whether a worktree can be removed without losing work."""

    clean: bool
    unpushed: bool


@dataclass(frozen=True)
class BootstrapOptions:
    """Stages to skip while bootstrapping."""

    skip_deps: bool = False
    skip_build: bool = False
    skip_db: bool = False


def parse_worktree_porcelain(output: str) -> list[dict[str, Any]]:
    """Parse ``git worktree list --porcelain`` into one dict per record.

    Records are separated by blank lines and keep the order git emits them.
    """
    records: list[dict[str, Any]] = []
    current: dict[str, Any] = {}

    for line in output.splitlines():
        line = line.strip()

        if not line:
            if current:
                records.append(current)
                current = {}
            continue

        if line.startswith("worktree "):
            current["path"] = line[len("worktree "):]
        elif line.startswith("HEAD "):
            current["head"] = line[len("HEAD "):]
        elif line.startswith("branch "):
            branch = line[len("branch "):]
            if branch.startswith(BRANCH_REF_PREFIX):
                branch = branch[len(BRANCH_REF_PREFIX):]
            current["branch"] = branch
        elif line == "bare":
            current["bare"] = True
        elif line == "detached":
            current["detached"] = True

    if current:
        records.append(current)

    return records


class WorktreeManager:
    """Manager for the project's isolated worktrees."""

    def __init__(self, config: Config, database_cloner: DatabaseCloner,
                 shell: ShellExecutor | None = None):
        """Initialize worktree manager.

        Args:
            config: Project configuration
            database_cloner: Cloner used during bootstrap
            shell: Command executor

        Raises:
            ConfigurationError: If the project is not a git repository
        """
        self.config = config
        self.database_cloner = database_cloner
        self.shell = shell or ShellExecutor()

        if not GitUtils.is_git_repo(self.project_path):
            raise ConfigurationError(f"Path {self.project_path} is not a git repository")

    @property
    def project_path(self) -> Path:
        return self.config.project_path

    def list_worktrees(self) -> list[Worktree]:
        """List this project's worktrees in the order git reports them.

        The main checkout and worktrees that don't follow the
        ``{project}-{name}`` naming are left out.
        """
        result = self._git("worktree", "list", "--porcelain")
        if not result.success:
            raise CommandFailedError("Listing worktrees", result.stderr)

        main_path = self.project_path.resolve()
        worktrees = []
        for record in parse_worktree_porcelain(result.stdout):
            path = record.get("path", "")
            if not path or Path(path).resolve() == main_path:
                continue

            name = self.name_from_path(path)
            if name is None:
                continue

            worktrees.append(Worktree(
                name=name,
                path=Path(path),
                branch=record.get("branch"),
                head=record.get("head"),
                bare=record.get("bare", False),
            ))
        return worktrees

    def create_worktree(self, name: str, branch: str | None = None, base_branch: str | None = None) -> Path:
        """Create a worktree on a new or existing branch.

        Args:
            name: Worktree name
            branch: Branch to check out, ``{branch_prefix}{name}`` by default
            base_branch: Start point for a new branch, from config by default

        Returns:
            Path of the new worktree
        """
        validate_worktree_name(name)
        branch = branch or f"{self.config.branch_prefix}{name}"
        base_branch = base_branch or self.config.base_branch
        path = self.path_for(name)

        if self.exists(name):
            raise WorktreeExistsError(name, str(path))

        result = self._git("worktree", "add", "-b", branch, str(path), base_branch)
        if not result.success:
            logger.debug(f"Creating branch {branch} failed, checking out existing branch: {result.stderr.strip()}")
            result = self._git("worktree", "add", str(path), branch)

            if not result.success:
                if any(marker in result.stderr for marker in CHECKED_OUT_MARKERS):
                    raise BranchCheckedOutError(branch)
                raise CommandFailedError("Creating worktree", result.stderr)

        logger.info(f"Created worktree {name} at {path} on branch {branch}")
        return path

    def remove_worktree(self, name: str, force: bool = False) -> None:
        """Remove a worktree.

        Args:
            name: Worktree name
            force: Delete the directory outright and prune git metadata afterwards
        """
        path = self.path_for(name)
        if not self.exists(name):
            raise WorktreeNotFoundError(name)

        if force:
            FileUtils.remove_directory(path)
            result = self._git("worktree", "prune")
            if not result.success:
                logger.warning(f"git worktree prune failed: {result.stderr.strip()}")
        else:
            # Copied gitignored files such as .env would block a plain remove
            result = self._git("worktree", "remove", "--force", str(path))
            if not result.success:
                raise CommandFailedError("Removing worktree", result.stderr)

        logger.info(f"Removed worktree {name}")

    def exists(self, name: str) -> bool:
        """Check if the worktree's directory exists."""
        return self.path_for(name).is_dir()

    def path_for(self, name: str) -> Path:
        """Directory for a worktree name."""
        return self.config.worktree_base_path / f"{self.config.project_name}-{name}"

    def name_from_path(self, path: str | Path) -> str | None:
        """Worktree name for a path, or None if it isn't named like ours."""
        prefix = f"{self.config.project_name}-"
        basename = Path(path).name
        if not basename.startswith(prefix) or basename == prefix:
            return None
        return basename[len(prefix):]

    def safety_check(self, name: str) -> SafetyStatus:
        """Check a worktree for uncommitted changes and unpushed commits."""
        path = self.path_for(name)

        clean = not self._has_changes(path)

        branch_result = self.shell.run(["git", "rev-parse", "--abbrev-ref", "HEAD"],
                                       cwd=path, timeout=STATUS_TIMEOUT)
        branch = branch_result.stdout.strip() or "HEAD"

        log_result = self.shell.run(["git", "log", branch, "--not", "--remotes", "--oneline"],
                                    cwd=path, timeout=STATUS_TIMEOUT)
        unpushed = log_result.stdout.strip() != ""

        return SafetyStatus(clean=clean, unpushed=unpushed)

    def is_dirty(self, name: str) -> bool:
        """Check a worktree for uncommitted changes."""
        return self._has_changes(self.path_for(name))

    def bootstrap(self, name: str, options: BootstrapOptions | None = None,
                  on_step: StepCallback | None = None, on_output: OutputSink | None = None) -> None:
        """Make a fresh worktree runnable.

        Stages: copy config files, install dependencies, clone the database,
        build frontend assets, run migrations. The first failing stage raises
        and the rest are skipped; nothing is rolled back.

        Args:
            name: Worktree name
            options: Stages to skip
            on_step: Called with a label before each stage
            on_output: Receives output of the commands run
        """
        options = options or BootstrapOptions()
        settings = self.config.bootstrap
        path = self.path_for(name)

        def step(label: str) -> None:
            logger.info(f"[{name}] {label}")
            if on_step is not None:
                on_step(label)

        step("Copying config files...")
        self.copy_config_files(path)
        self.apply_env_replacements(path, name)

        if not options.skip_deps:
            step("Installing dependencies...")
            self._install_dependencies(path, on_output)

        if not options.skip_db:
            step("Cloning database...")
            self.database_cloner.clone(path, sanitize_suffix(name), on_output)

        if not options.skip_build and settings.build_frontend:
            step("Building frontend assets...")
            self._run_step("Frontend build", [settings.node_package_manager, "run", "build"],
                           path, BUILD_TIMEOUT, on_output)

        if not options.skip_deps and settings.run_migrations:
            step("Running migrations...")
            self._run_step("Migration", shlex.split(settings.migrate_command),
                           path, MIGRATE_TIMEOUT, on_output)

    def copy_config_files(self, worktree_path: Path) -> None:
        """Copy configured files and directories from the main project."""
        for file in self.config.copy_files:
            source = self.project_path / file
            if not source.exists():
                logger.debug(f"Skipping missing config file {source}")
                continue
            FileUtils.copy_path(source, worktree_path / file)

    def apply_env_replacements(self, worktree_path: Path, name: str) -> None:
        """Point the worktree's .env at its own app name, URL and database."""
        values = {"APP_NAME": f'"{self.config.resolved_app_name} ({name})"'}

        app_url = self.config.app_url or ""
        match = APP_URL_PATTERN.match(app_url)
        if match:
            scheme, host, rest = match.groups()
            values["APP_URL"] = f"{scheme}{host}-{name}{rest}"

        if self.database_cloner.resolve_strategy() in (Strategy.MYSQL, Strategy.PGSQL):
            values["DB_DATABASE"] = self.database_cloner.target_database(sanitize_suffix(name))

        FileUtils.update_env_file(worktree_path / self.config.env_file, values)

    def checked_out_branches(self) -> list[str]:
        """Branches checked out in any worktree, including the main one."""
        result = self._git("worktree", "list", "--porcelain", timeout=STATUS_TIMEOUT)
        if not result.success:
            return []
        return [record["branch"] for record in parse_worktree_porcelain(result.stdout)
                if record.get("branch")]

    def list_branches(self) -> list[str]:
        """Local and remote branch names that are free to check out."""
        result = self._git("branch", "-a", "--format=%(refname:short)")
        if not result.success:
            raise CommandFailedError("Listing branches", result.stderr)

        checked_out = set(self.checked_out_branches())
        branches: list[str] = []
        for line in result.stdout.splitlines():
            branch = line.strip()
            if branch.startswith("origin/"):
                branch = branch[len("origin/"):]
            if not branch or branch in ("HEAD", "origin") or branch in checked_out:
                continue
            if branch not in branches:
                branches.append(branch)
        return branches

    def fetch(self) -> None:
        """Fetch from origin so remote branches can be checked out."""
        result = self._git("fetch", "origin")
        if not result.success:
            logger.warning(f"git fetch origin failed: {result.stderr.strip()}")

    def _has_changes(self, path: Path) -> bool:
        result = self.shell.run(["git", "status", "--porcelain"], cwd=path, timeout=STATUS_TIMEOUT)
        if not result.success:
            logger.warning(f"git status failed in {path}, treating it as dirty: {result.stderr.strip()}")
            return True
        return result.stdout.strip() != ""

    def _install_dependencies(self, path: Path, output: OutputSink | None) -> None:
        settings = self.config.bootstrap
        if settings.install_command.strip():
            self._run_step("Dependency install", shlex.split(settings.install_command),
                           path, INSTALL_TIMEOUT, output)
        self._run_step("Node dependency install", [settings.node_package_manager, "install"],
                       path, INSTALL_TIMEOUT, output)

    def _run_step(self, step: str, argv: list[str], path: Path, timeout: int,
                  output: OutputSink | None) -> None:
        result = self.shell.run(argv, cwd=path, timeout=timeout, output=output)
        if not result.success:
            raise CommandFailedError(step, result.stderr)

    def _git(self, *args: str, timeout: int = GIT_TIMEOUT) -> CommandResult:
        return self.shell.run(["git", *args], cwd=self.project_path, timeout=timeout)

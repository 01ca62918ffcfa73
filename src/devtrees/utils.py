"""Utility functions for devtrees."""

import re
import shutil
from pathlib import Path

from git import Repo
from git.exc import InvalidGitRepositoryError, NoSuchPathError

from .exceptions import InvalidWorktreeNameError

WORKTREE_NAME_PATTERN = re.compile(r"^[a-zA-Z0-9-]+$")


def validate_worktree_name(name: str) -> str:
    """Return the name unchanged or raise InvalidWorktreeNameError."""
    if not name or not WORKTREE_NAME_PATTERN.match(name):
        raise InvalidWorktreeNameError(name)
    return name


def sanitize_suffix(name: str) -> str:
    """Database-safe suffix for a worktree name."""
    return name.replace("-", "_")


def slugify_branch(branch: str, branch_prefix: str = "") -> str:
    """Derive a worktree name from a branch name.

    The configured prefix is dropped, then the rest is lower-cased with runs
    of anything but letters and digits collapsed into single hyphens.
    """
    slug = branch
    if branch_prefix and slug.startswith(branch_prefix):
        slug = slug[len(branch_prefix):]

    slug = re.sub(r"[^a-z0-9]+", "-", slug.lower())
    return slug.strip("-")


class GitUtils:
    """Git utility functions."""

    @staticmethod
    def is_git_repo(path: str | Path) -> bool:
        """Check if path is a git repository."""
        try:
            Repo(path)
            return True
        except (InvalidGitRepositoryError, NoSuchPathError):
            return False

    @staticmethod
    def main_worktree_path(path: str | Path) -> Path | None:
        """Find the main working tree for a path inside any of its worktrees."""
        try:
            repo = Repo(path, search_parent_directories=True)
        except (InvalidGitRepositoryError, NoSuchPathError):
            return None

        if repo.bare:
            return None
        # common_dir is the main checkout's .git even when called from a linked worktree
        return Path(repo.common_dir).resolve().parent


class FileUtils:
    """File system utility functions."""

    @staticmethod
    def copy_path(src: Path, dst: Path) -> None:
        """Copy a file or directory, creating parent directories."""
        if src.is_dir():
            shutil.copytree(src, dst, dirs_exist_ok=True)
        else:
            dst.parent.mkdir(parents=True, exist_ok=True)
            shutil.copy2(src, dst)

    @staticmethod
    def remove_directory(path: Path) -> None:
        """Remove directory and all contents."""
        if path.exists():
            shutil.rmtree(path)

    @staticmethod
    def replace_env_value(content: str, key: str, value: str) -> str:
        """Replace every ``KEY=...`` line in .env text with ``KEY=value``."""
        pattern = re.compile(rf"^{re.escape(key)}=.*$", re.MULTILINE)
        return pattern.sub(lambda _: f"{key}={value}", content)

    @staticmethod
    def update_env_file(path: Path, values: dict[str, str]) -> bool:
        """Rewrite keys of an existing .env file.

        Returns:
            False when the file does not exist
        """
        if not path.is_file():
            return False

        content = path.read_text(encoding="utf-8")
        for key, value in values.items():
            content = FileUtils.replace_env_value(content, key, value)
        path.write_text(content, encoding="utf-8")
        return True

"""Shared fixtures for devtrees tests."""

import subprocess
import tempfile
from pathlib import Path

import pytest

from devtrees.config import Config


def git(repo_path: Path, *args: str) -> str:
    """Run git in a test repository and return its stdout."""
    result = subprocess.run(["git", *args], cwd=repo_path, check=True, capture_output=True, text=True)
    return result.stdout


@pytest.fixture
def temp_dir():
    """Temporary directory holding the project and its worktrees."""
    with tempfile.TemporaryDirectory() as temp:
        yield Path(temp).resolve()


@pytest.fixture
def temp_repo(temp_dir):
    """Create a temporary git repository named "myapp" for testing."""
    repo_path = temp_dir / "myapp"
    repo_path.mkdir()

    git(repo_path, "init")
    git(repo_path, "config", "user.name", "Test")
    git(repo_path, "config", "user.email", "test@test.com")
    git(repo_path, "config", "commit.gpgsign", "false")

    (repo_path / "README.md").write_text("# Test Repository")
    (repo_path / ".gitignore").write_text(".env\n")
    git(repo_path, "add", "README.md", ".gitignore")
    git(repo_path, "commit", "-m", "Initial commit")

    yield repo_path


@pytest.fixture
def make_config(temp_repo, temp_dir):
    """Build a Config for the temporary repository."""
    def _make(**overrides) -> Config:
        values = {
            "project_path": temp_repo,
            "base_path": temp_dir,
            "base_branch": "HEAD",
        }
        values.update(overrides)
        return Config(**values)
    return _make

"""Tests for the command-line interface."""

import json
from unittest.mock import Mock

import pytest
from click.testing import CliRunner

from devtrees.cli import main
from devtrees.database import DatabaseCloner
from devtrees.exceptions import ContainerNotRunningError
from devtrees.github import GitHubCLI
from devtrees.process import ProcessManager
from devtrees.shell import CommandResult, ShellExecutor
from devtrees.worktree import BootstrapOptions, SafetyStatus, Worktree, WorktreeManager


def text(result) -> str:
    """Command output with rich line wrapping collapsed."""
    return " ".join(result.output.split())


@pytest.fixture(autouse=True)
def clean_environment(monkeypatch):
    for variable in ("WORKTREE_BASE_PATH", "WORKTREE_IDE_COMMAND", "WORKTREE_BRANCH_PREFIX",
                     "WORKTREE_BASE_BRANCH", "DATABASE_URL"):
        monkeypatch.delenv(variable, raising=False)


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture
def mocks(temp_dir):
    """Collaborators injected through the click context object."""
    manager = Mock(spec=WorktreeManager)
    manager.exists.return_value = False
    manager.path_for.side_effect = lambda name: temp_dir / f"myapp-{name}"
    manager.create_worktree.side_effect = lambda name, branch=None, base=None: temp_dir / f"myapp-{name}"
    manager.list_worktrees.return_value = []
    manager.is_dirty.return_value = False

    cloner = Mock(spec=DatabaseCloner)
    cloner.target_database.side_effect = lambda suffix: f"app_{suffix}"
    cloner.list_cloned.return_value = []

    shell = Mock(spec=ShellExecutor)
    shell.run.return_value = CommandResult(0)

    process_manager = Mock(spec=ProcessManager)
    process_manager.is_running.return_value = False
    process_manager.running_label.return_value = None

    return {
        "worktree_manager": manager,
        "database_cloner": cloner,
        "shell": shell,
        "github": Mock(spec=GitHubCLI),
        "process_manager": process_manager,
    }


@pytest.fixture
def invoke(runner, mocks, temp_repo):
    def _invoke(*args, input=None):
        return runner.invoke(main, ["--project", str(temp_repo), *args], obj=mocks, input=input)
    return _invoke


class TestMain:
    """Test cases for the command group."""

    def test_outside_git_repository(self, runner, temp_dir):
        (temp_dir / "plain").mkdir()

        result = runner.invoke(main, ["--project", str(temp_dir / "plain"), "list"])

        assert result.exit_code == 1
        assert "No git repository found" in text(result)

    def test_builds_real_collaborators(self, runner, temp_repo):
        result = runner.invoke(main, ["--project", str(temp_repo), "list", "--json"])

        assert result.exit_code == 0
        assert json.loads(result.output) == []

    def test_invalid_config(self, runner, temp_repo):
        (temp_repo / ".devtrees.toml").write_text("base_branch = \n")

        result = runner.invoke(main, ["--project", str(temp_repo), "list"])

        assert result.exit_code == 1
        assert "Invalid config file" in text(result)


class TestListCommand:
    """Test cases for the list command."""

    def test_empty(self, invoke):
        result = invoke("list")

        assert result.exit_code == 0
        assert "No agent worktrees found." in text(result)

    def test_json(self, invoke, mocks, temp_dir):
        mocks["worktree_manager"].list_worktrees.return_value = [
            Worktree("one", temp_dir / "myapp-one", "one", "abc"),
        ]

        result = invoke("list", "--json")

        assert result.exit_code == 0
        assert json.loads(result.output) == [{
            "name": "one", "path": str(temp_dir / "myapp-one"), "branch": "one", "head": "abc", "bare": False,
        }]

    def test_table(self, invoke, mocks, temp_dir):
        mocks["worktree_manager"].list_worktrees.return_value = [
            Worktree("one", temp_dir / "myapp-one", "one", "abc"),
            Worktree("two", temp_dir / "myapp-two", None, "def"),
        ]
        mocks["worktree_manager"].is_dirty.side_effect = lambda name: name == "two"
        mocks["database_cloner"].list_cloned.return_value = ["app_one"]

        result = invoke("list")

        assert result.exit_code == 0
        assert "one" in text(result)
        assert "app_one" in text(result)
        assert "app_two" not in text(result)
        assert "dirty" in text(result)
        assert "detached" in text(result)

    def test_list_error(self, invoke, mocks):
        mocks["worktree_manager"].list_worktrees.side_effect = ContainerNotRunningError("mysql")

        result = invoke("list")

        assert result.exit_code == 1
        assert "docker start mysql" in text(result)


class TestCreateCommand:
    """Test cases for the create command."""

    def test_create_and_bootstrap(self, invoke, mocks, temp_dir):
        result = invoke("create", "feature-one", "--skip-db")

        assert result.exit_code == 0, result.output
        manager = mocks["worktree_manager"]
        manager.create_worktree.assert_called_once_with("feature-one", None, None)
        manager.bootstrap.assert_called_once()
        assert manager.bootstrap.call_args.args == ("feature-one", BootstrapOptions(skip_db=True))
        assert "is ready" in text(result)

    def test_create_existing_fails_before_git(self, invoke, mocks):
        mocks["worktree_manager"].exists.return_value = True

        result = invoke("create", "feature-one")

        assert result.exit_code == 1
        assert "already exists" in text(result)
        mocks["worktree_manager"].create_worktree.assert_not_called()

    def test_create_invalid_name(self, invoke, mocks):
        result = invoke("create", "bad_name")

        assert result.exit_code == 1
        assert "alphanumeric with hyphens only" in text(result)
        mocks["worktree_manager"].create_worktree.assert_not_called()

    def test_create_from_branch_derives_name(self, invoke, mocks):
        result = invoke("create", "--branch", "feature/Login-Page", "--base", "develop")

        assert result.exit_code == 0, result.output
        mocks["worktree_manager"].create_worktree.assert_called_once_with(
            "feature-login-page", "feature/Login-Page", "develop"
        )

    def test_create_from_issue(self, invoke, mocks):
        mocks["github"].resolve_issue_branch.return_value = "42-fix-login"

        result = invoke("create", "--issue", "42")

        assert result.exit_code == 0, result.output
        mocks["github"].resolve_issue_branch.assert_called_once_with(42, "master")
        mocks["worktree_manager"].fetch.assert_called_once()
        mocks["worktree_manager"].create_worktree.assert_called_once_with("42", "42-fix-login", None)

    def test_create_from_pr(self, invoke, mocks):
        mocks["github"].resolve_pr_branch.return_value = "feature/checkout"

        result = invoke("create", "--pr", "7")

        assert result.exit_code == 0, result.output
        mocks["worktree_manager"].create_worktree.assert_called_once_with(
            "feature-checkout", "feature/checkout", None
        )

    def test_issue_and_pr_are_exclusive(self, invoke, mocks):
        result = invoke("create", "--issue", "1", "--pr", "2")

        assert result.exit_code == 1
        assert "mutually exclusive" in text(result)
        mocks["github"].resolve_issue_branch.assert_not_called()

    def test_create_interactive_branch(self, invoke, mocks):
        mocks["worktree_manager"].list_branches.return_value = ["feature/login", "hotfix"]

        result = invoke("create", input="3\n1\n\n")

        assert result.exit_code == 0, result.output
        mocks["worktree_manager"].create_worktree.assert_called_once_with(
            "feature-login", "feature/login", None
        )

    def test_create_interactive_fresh(self, invoke, mocks):
        result = invoke("create", input="4\nscratch\n")

        assert result.exit_code == 0, result.output
        mocks["worktree_manager"].create_worktree.assert_called_once_with("scratch", None, None)

    def test_bootstrap_failure_exits(self, invoke, mocks):
        from devtrees.exceptions import CommandFailedError

        mocks["worktree_manager"].bootstrap.side_effect = CommandFailedError("Migration", "SQLSTATE[42S02]")

        result = invoke("create", "feature-one")

        assert result.exit_code == 1
        assert "Migration failed" in text(result)


class TestDeleteCommand:
    """Test cases for the delete command."""

    def test_force_delete(self, invoke, mocks):
        mocks["worktree_manager"].exists.return_value = True
        mocks["process_manager"].is_running.return_value = True

        result = invoke("delete", "feature-one", "--force")

        assert result.exit_code == 0, result.output
        mocks["worktree_manager"].safety_check.assert_not_called()
        mocks["process_manager"].terminate.assert_called_once_with("feature-one")
        mocks["worktree_manager"].remove_worktree.assert_called_once_with("feature-one", True)
        mocks["database_cloner"].drop.assert_called_once_with("feature_one")

    def test_keep_db(self, invoke, mocks):
        mocks["worktree_manager"].exists.return_value = True

        result = invoke("delete", "feature-one", "--force", "--keep-db")

        assert result.exit_code == 0
        mocks["database_cloner"].drop.assert_not_called()

    def test_missing(self, invoke, mocks):
        result = invoke("delete", "ghost", "--force")

        assert result.exit_code == 1
        assert "'ghost' does not exist" in text(result)
        mocks["worktree_manager"].remove_worktree.assert_not_called()

    def test_dirty_worktree_declined(self, invoke, mocks):
        mocks["worktree_manager"].exists.return_value = True
        mocks["worktree_manager"].safety_check.return_value = SafetyStatus(clean=False, unpushed=False)

        result = invoke("delete", "feature-one", input="n\n")

        assert result.exit_code == 0
        assert "uncommitted changes" in text(result)
        mocks["worktree_manager"].remove_worktree.assert_not_called()
        mocks["database_cloner"].drop.assert_not_called()

    def test_safe_worktree_confirmed(self, invoke, mocks):
        mocks["worktree_manager"].exists.return_value = True
        mocks["worktree_manager"].safety_check.return_value = SafetyStatus(clean=True, unpushed=True)

        result = invoke("delete", "feature-one", input="y\ny\n")

        assert result.exit_code == 0, result.output
        assert "unpushed commits" in text(result)
        mocks["worktree_manager"].remove_worktree.assert_called_once_with("feature-one", False)

    def test_interactive_selection(self, invoke, mocks, temp_dir):
        manager = mocks["worktree_manager"]
        manager.list_worktrees.return_value = [Worktree("one", temp_dir / "myapp-one", "one")]
        manager.exists.return_value = True

        result = invoke("delete", "--force", input="1\n")

        assert result.exit_code == 0, result.output
        manager.remove_worktree.assert_called_once_with("one", True)


class TestCleanupCommand:
    """Test cases for the cleanup command."""

    @pytest.fixture
    def worktrees(self, mocks, temp_dir):
        manager = mocks["worktree_manager"]
        manager.list_worktrees.return_value = [
            Worktree("done", temp_dir / "myapp-done", "done"),
            Worktree("active", temp_dir / "myapp-active", "active"),
            Worktree("messy", temp_dir / "myapp-messy", "messy"),
            Worktree("detached", temp_dir / "myapp-detached", None),
        ]
        manager.is_dirty.side_effect = lambda name: name == "messy"
        mocks["github"].closed_reason.side_effect = lambda branch: "PR #3 merged" if branch in ("done", "messy") else None
        return manager

    def test_dry_run(self, invoke, mocks, worktrees):
        result = invoke("cleanup", "--dry-run")

        assert result.exit_code == 0
        assert "done (PR #3 merged)" in text(result)
        assert "Skipping 'messy'" in text(result)
        assert "Dry run: no changes made." in text(result)
        worktrees.remove_worktree.assert_not_called()

    def test_force(self, invoke, mocks, worktrees):
        result = invoke("cleanup", "--force")

        assert result.exit_code == 0, result.output
        worktrees.remove_worktree.assert_called_once_with("done", True)
        mocks["database_cloner"].drop.assert_called_once_with("done")
        assert "Cleanup complete." in text(result)

    def test_nothing_closed(self, invoke, mocks, worktrees):
        mocks["github"].closed_reason.side_effect = None
        mocks["github"].closed_reason.return_value = None

        result = invoke("cleanup")

        assert result.exit_code == 0
        assert "No worktrees with closed issues/PRs found." in text(result)

    def test_no_worktrees(self, invoke):
        result = invoke("cleanup")

        assert "No agent worktrees found." in text(result)


class TestOpenCommand:
    """Test cases for the open command."""

    def test_open(self, invoke, mocks, temp_dir, monkeypatch):
        monkeypatch.setenv("WORKTREE_IDE_COMMAND", "code --new-window")
        mocks["worktree_manager"].exists.return_value = True

        result = invoke("open", "one")

        assert result.exit_code == 0, result.output
        mocks["shell"].run.assert_called_once_with(["code", "--new-window", str(temp_dir / "myapp-one")])

    def test_open_failure(self, invoke, mocks):
        mocks["worktree_manager"].exists.return_value = True
        mocks["shell"].run.return_value = CommandResult(127, "", "phpstorm: not found")

        result = invoke("open", "one")

        assert result.exit_code == 1
        assert "Opening IDE failed" in text(result)

    def test_open_missing(self, invoke):
        result = invoke("open", "ghost")

        assert result.exit_code == 1
        assert "does not exist" in text(result)

    def test_open_non_executable_ide(self, invoke, mocks, temp_dir, monkeypatch):
        ide = temp_dir / "ide.sh"
        ide.write_text("#!/bin/sh\n")
        ide.chmod(0o644)
        monkeypatch.setenv("WORKTREE_IDE_COMMAND", str(ide))
        mocks["shell"] = ShellExecutor()
        mocks["worktree_manager"].exists.return_value = True

        result = invoke("open", "one")

        assert result.exit_code == 1
        assert "Opening IDE failed" in text(result)
        assert "Permission denied" in text(result)

"""Issue and pull request lookups through the gh CLI."""

import json
import logging
import re
from pathlib import Path
from typing import Any

from .exceptions import GitHubError
from .shell import ShellExecutor

logger = logging.getLogger(__name__)

LOOKUP_TIMEOUT = 15
LIST_TIMEOUT = 30
ISSUE_BRANCH_PATTERN = re.compile(r"^(\d+)-")


class GitHubCLI:
    """Thin wrapper over ``gh`` returning parsed JSON."""

    def __init__(self, repo_path: str | Path, shell: ShellExecutor | None = None):
        self.repo_path = Path(repo_path)
        self.shell = shell or ShellExecutor()

    def closed_reason(self, branch: str) -> str | None:
        """Explain why a branch's work is finished, or None if it may still be active.

        A branch is finished when it has no open PR and at least one merged or
        closed PR, or when its name starts with the number of a closed issue.
        Lookup failures are treated as "not finished".
        """
        prs = self._json(["pr", "list", "--head", branch, "--state", "all",
                          "--json", "state,number", "--limit", "5"])
        if isinstance(prs, list):
            has_open = any(pr.get("state") == "OPEN" for pr in prs)
            closed = next((pr for pr in prs if pr.get("state") != "OPEN"), None)
            if not has_open and closed is not None:
                return f"PR #{closed['number']} {str(closed['state']).lower()}"

        match = ISSUE_BRANCH_PATTERN.match(branch)
        if match:
            issue_number = match.group(1)
            issue = self._json(["issue", "view", issue_number, "--json", "state"])
            if isinstance(issue, dict) and issue.get("state") == "CLOSED":
                return f"issue #{issue_number} closed"

        return None

    def resolve_issue_branch(self, issue_number: int, base_branch: str) -> str:
        """Branch linked to an issue, creating one with ``gh issue develop`` if needed."""
        result = self._gh(["issue", "develop", "--list", str(issue_number)])
        if not result.success:
            raise GitHubError(f"Resolving issue #{issue_number}", result.stderr)

        linked = [line.split()[0] for line in result.stdout.splitlines() if line.strip()]
        if linked:
            logger.info(f"Found linked branch {linked[0]} for issue #{issue_number}")
            return linked[0]

        result = self._gh(["issue", "develop", str(issue_number), "--base", base_branch])
        if not result.success:
            raise GitHubError(f"Creating branch for issue #{issue_number}", result.stderr)

        branch = result.stdout.strip().splitlines()[-1].strip() if result.stdout.strip() else ""
        if not branch:
            raise GitHubError(f"Creating branch for issue #{issue_number}",
                              "gh issue develop returned an empty branch name")
        # Newer gh versions print the branch URL
        branch = branch.rsplit("/tree/", 1)[-1]
        logger.info(f"Created linked branch {branch} for issue #{issue_number}")
        return branch

    def resolve_pr_branch(self, pr_number: int) -> str:
        """Head branch of a pull request."""
        result = self._gh(["pr", "view", str(pr_number), "--json", "headRefName"])
        if not result.success:
            raise GitHubError(f"Resolving PR #{pr_number}", result.stderr)

        try:
            data = json.loads(result.stdout)
        except json.JSONDecodeError as e:
            raise GitHubError(f"Resolving PR #{pr_number}", f"invalid JSON from gh: {e}") from e

        branch = data.get("headRefName") if isinstance(data, dict) else None
        if not branch:
            raise GitHubError(f"Resolving PR #{pr_number}", "could not determine the head branch")
        return branch

    def open_issues(self, limit: int = 100) -> list[dict[str, Any]]:
        """Open issues as dicts with ``number`` and ``title``."""
        return self._required_list(["issue", "list", "--state", "open", "--limit", str(limit),
                                    "--json", "number,title"], "Listing issues")

    def open_pull_requests(self, limit: int = 100) -> list[dict[str, Any]]:
        """Open PRs as dicts with ``number``, ``title`` and ``headRefName``."""
        return self._required_list(["pr", "list", "--state", "open", "--limit", str(limit),
                                    "--json", "number,title,headRefName"], "Listing pull requests")

    def _required_list(self, args: list[str], step: str) -> list[dict[str, Any]]:
        result = self._gh(args, timeout=LIST_TIMEOUT)
        if not result.success:
            raise GitHubError(step, result.stderr)
        try:
            data = json.loads(result.stdout or "[]")
        except json.JSONDecodeError as e:
            raise GitHubError(step, f"invalid JSON from gh: {e}") from e
        return data if isinstance(data, list) else []

    def _json(self, args: list[str]) -> Any:
        result = self._gh(args)
        if not result.success:
            logger.debug(f"gh {' '.join(args)} failed: {result.stderr.strip()}")
            return None
        try:
            return json.loads(result.stdout)
        except json.JSONDecodeError:
            logger.debug(f"gh {' '.join(args)} returned invalid JSON")
            return None

    def _gh(self, args: list[str], timeout: int = LOOKUP_TIMEOUT):
        return self.shell.run(["gh", *args], cwd=self.repo_path, timeout=timeout)

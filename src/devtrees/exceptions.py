"""Custom exceptions for devtrees."""


class WorktreeError(RuntimeError):
    """Base exception for all devtrees errors."""
    pass


class ConfigurationError(WorktreeError, ValueError):
    """Raised for invalid configuration or user input, before any command runs."""
    pass


class InvalidWorktreeNameError(ConfigurationError):
    """Raised when a worktree name is not alphanumeric with hyphens."""

    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Invalid worktree name '{name}': must be alphanumeric with hyphens only.")


class WorktreeExistsError(WorktreeError):
    """Raised when creating a worktree that already exists."""

    def __init__(self, name: str, path: str):
        self.name = name
        self.path = path
        super().__init__(f"Worktree '{name}' already exists at {path}")


class WorktreeNotFoundError(WorktreeError):
    """Raised when operating on a worktree that does not exist."""

    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Worktree '{name}' does not exist.")


class BranchCheckedOutError(WorktreeError):
    """Raised when the requested branch is already checked out in another worktree."""

    def __init__(self, branch: str):
        self.branch = branch
        super().__init__(f"Branch '{branch}' is already checked out in another worktree.")


class ContainerNotRunningError(WorktreeError):
    """Raised when a configured Docker container is not running."""

    def __init__(self, container: str):
        self.container = container
        super().__init__(
            f"Docker container '{container}' is not running. Start it with: docker start {container}"
        )


class CommandFailedError(WorktreeError):
    """Raised when an external command fails during a named step."""

    def __init__(self, step: str, stderr: str = ""):
        self.step = step
        self.stderr = stderr
        message = f"{step} failed"
        if stderr.strip():
            message += f": {stderr.strip()}"
        super().__init__(message)


class GitHubError(CommandFailedError):
    """Raised when a required gh CLI lookup fails."""
    pass

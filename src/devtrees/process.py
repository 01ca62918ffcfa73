"""Hooks for development processes running inside worktrees."""

from abc import ABC, abstractmethod


class ProcessManager(ABC):
    """Reports on and stops the development process tied to a worktree.

    Implementations are supplied by the host environment, for example a
    wrapper around a process supervisor. devtrees only asks whether a
    process is running, how to label it, and to stop it before removal.
    """

    @abstractmethod
    def is_running(self, worktree_name: str) -> bool:
        """Check whether a process is running for the worktree."""

    @abstractmethod
    def terminate(self, worktree_name: str) -> None:
        """Stop the worktree's process."""

    @abstractmethod
    def running_label(self, worktree_name: str) -> str | None:
        """Short description of the running process, or None."""


class NullProcessManager(ProcessManager):
    """Process manager that never reports a running process."""

    def is_running(self, worktree_name: str) -> bool:
        return False

    def terminate(self, worktree_name: str) -> None:
        pass

    def running_label(self, worktree_name: str) -> str | None:
        return None

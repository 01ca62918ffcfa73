"""
devtrees - isolated development environments on git worktrees.

Each worktree is a separate checkout with its own branch, its own copy of the
project's .env and other config files, its own cloned database (sqlite, MySQL
or PostgreSQL, optionally inside Docker) and its own installed dependencies,
so many feature branches can run side by side without sharing state.
"""

from .config import BootstrapSettings, Config, ConnectionSettings, DatabaseSettings, DatabaseStrategy
from .database import DatabaseCloner, Strategy
from .exceptions import (
    BranchCheckedOutError,
    CommandFailedError,
    ConfigurationError,
    ContainerNotRunningError,
    WorktreeError,
    WorktreeExistsError,
    WorktreeNotFoundError,
)
from .process import NullProcessManager, ProcessManager
from .shell import CommandResult, ShellExecutor
from .worktree import BootstrapOptions, SafetyStatus, Worktree, WorktreeManager

__version__ = "0.1.0"

__all__ = [
    "BootstrapOptions",
    "BootstrapSettings",
    "BranchCheckedOutError",
    "CommandFailedError",
    "CommandResult",
    "Config",
    "ConfigurationError",
    "ConnectionSettings",
    "ContainerNotRunningError",
    "DatabaseCloner",
    "DatabaseSettings",
    "DatabaseStrategy",
    "NullProcessManager",
    "ProcessManager",
    "SafetyStatus",
    "ShellExecutor",
    "Strategy",
    "Worktree",
    "WorktreeError",
    "WorktreeExistsError",
    "WorktreeManager",
    "WorktreeNotFoundError",
]

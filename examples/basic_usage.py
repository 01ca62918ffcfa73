#!/usr/bin/env python3
"""
Basic usage example for devtrees.

This example demonstrates how to:
1. Load the project's configuration
2. Create a worktree and bootstrap it
3. Inspect the worktree before removing it
4. Clean up the worktree and its database
"""

import sys
from pathlib import Path

from devtrees import BootstrapOptions, Config, DatabaseCloner, WorktreeError, WorktreeManager
from devtrees.utils import GitUtils, sanitize_suffix


def basic_example(project_path: Path):
    """Basic usage example."""
    # Settings come from .devtrees.toml, WORKTREE_* variables and the project's .env
    config = Config.load(project_path)
    cloner = DatabaseCloner(config.database, config.connection, config.project_path,
                            env_file=config.env_file)
    manager = WorktreeManager(config, cloner)

    name = "example-worktree"
    print(f"Database strategy: {cloner.resolve_strategy().value}")
    print(f"Source connection: {config.connection.display_url}")

    try:
        print("\n🚀 Creating worktree...")
        path = manager.create_worktree(name)
        print(f"✅ Created worktree at {path}")

        # Dependencies are skipped so the example runs without composer or pnpm
        print("\n🔄 Bootstrapping...")
        manager.bootstrap(
            name,
            BootstrapOptions(skip_deps=True, skip_build=True),
            on_step=lambda label: print(f"   {label}"),
        )
        print("✅ Bootstrap finished")

        print("\n📊 Worktrees:")
        for wt in manager.list_worktrees():
            print(f"   {wt.name}: {wt.branch or 'detached'} at {wt.path}")

        status = manager.safety_check(name)
        print(f"\n   Clean: {status.clean}")
        print(f"   Unpushed commits: {status.unpushed}")

    except WorktreeError as e:
        print(f"❌ Error: {e}")

    finally:
        print("\n🧹 Cleaning up...")
        if manager.exists(name):
            manager.remove_worktree(name, force=True)
        cloner.drop(sanitize_suffix(name))
        print("✅ Cleanup completed")


if __name__ == "__main__":
    print("devtrees - Basic Usage Example")
    print("=" * 50)

    project = GitUtils.main_worktree_path(Path.cwd())
    if project is None:
        print("❌ Error: This example must be run from within a git repository.")
        print("   Please navigate to your git repository and try again.")
        sys.exit(1)

    basic_example(project)

    print("\n🎉 Example completed!")

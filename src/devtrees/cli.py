"""Command-line interface for devtrees."""

import functools
import json
import logging
import shlex
from pathlib import Path

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape
from rich.progress import Progress, SpinnerColumn, TextColumn
from rich.table import Table

from .config import Config
from .database import DatabaseCloner
from .exceptions import (
    CommandFailedError,
    ConfigurationError,
    WorktreeError,
    WorktreeExistsError,
    WorktreeNotFoundError,
)
from .github import GitHubCLI
from .process import NullProcessManager, ProcessManager
from .shell import ShellExecutor
from .utils import GitUtils, sanitize_suffix, slugify_branch, validate_worktree_name
from .worktree import BootstrapOptions, WorktreeManager

console = Console()
err_console = Console(stderr=True)

logger = logging.getLogger(__name__)


def setup_logging(level: str, log_file: Path | None = None) -> None:
    """Send devtrees logs to stderr through rich, and optionally to a file."""
    package_logger = logging.getLogger("devtrees")
    package_logger.setLevel(logging.DEBUG)
    for handler in package_logger.handlers[:]:
        package_logger.removeHandler(handler)

    console_handler = RichHandler(console=err_console, show_path=False, show_time=False)
    console_handler.setLevel(getattr(logging, level, logging.WARNING))
    package_logger.addHandler(console_handler)

    if log_file:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file)
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(logging.Formatter(
            "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
        ))
        package_logger.addHandler(file_handler)


def handle_errors(func):
    """Print domain errors and exit with status 1."""
    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except WorktreeError as e:
            console.print(f"[red]Error: {escape(str(e))}[/red]")
            raise click.exceptions.Exit(1) from e
    return wrapper


def select(label: str, options: dict[str, str]) -> str:
    """Prompt for one of several options, returning its key."""
    keys = list(options)
    console.print(f"[bold]{label}[/bold]")
    for index, key in enumerate(keys, start=1):
        console.print(f"  {index}) {options[key]}")
    choice = click.prompt("Choice", type=click.IntRange(1, len(keys)), default=1)
    return keys[choice - 1]


def prompt_name(default: str) -> str:
    """Prompt for a worktree name until it is valid."""
    while True:
        name = click.prompt("Worktree name", default=default or None)
        try:
            return validate_worktree_name(name)
        except ConfigurationError as e:
            console.print(f"[red]{escape(str(e))}[/red]")


def choose_worktree(manager: WorktreeManager, label: str, show_branch: bool = False) -> str:
    """Prompt for one of the existing worktrees."""
    worktrees = manager.list_worktrees()
    if not worktrees:
        raise WorktreeError("No agent worktrees found.")

    options = {}
    for wt in worktrees:
        options[wt.name] = f"{wt.name} ({wt.branch or 'detached'})" if show_branch else wt.name
    return select(label, options)


@click.group()
@click.option('--project', '-p', type=click.Path(exists=True, file_okay=False), help='Project directory')
@click.option('--config', '-c', type=click.Path(exists=True, dir_okay=False), help='Configuration file path')
@click.option('--verbose', '-v', is_flag=True, help='Verbose output')
@click.pass_context
def main(ctx: click.Context, project: str | None, config: str | None, verbose: bool) -> None:
    """devtrees - isolated git worktrees with their own config and database."""
    ctx.ensure_object(dict)

    project_path = GitUtils.main_worktree_path(project or Path.cwd())
    if project_path is None:
        console.print("[red]Error: No git repository found. Use --project to specify path.[/red]")
        ctx.exit(1)

    try:
        ctx.obj['config'] = Config.load(project_path, config)
    except ConfigurationError as e:
        console.print(f"[red]Error: {escape(str(e))}[/red]")
        ctx.exit(1)

    cfg: Config = ctx.obj['config']
    setup_logging("DEBUG" if verbose else cfg.log_level, cfg.log_file)
    logger.debug(f"Project {cfg.project_path}, database {cfg.connection.display_url}")

    ctx.obj['verbose'] = verbose
    shell = ctx.obj.setdefault('shell', ShellExecutor())
    ctx.obj.setdefault('process_manager', NullProcessManager())
    ctx.obj.setdefault('github', GitHubCLI(cfg.project_path, shell))

    try:
        if 'database_cloner' not in ctx.obj:
            ctx.obj['database_cloner'] = DatabaseCloner(cfg.database, cfg.connection, cfg.project_path, shell,
                                                        cfg.env_file)
        if 'worktree_manager' not in ctx.obj:
            ctx.obj['worktree_manager'] = WorktreeManager(cfg, ctx.obj['database_cloner'], shell)
    except ConfigurationError as e:
        console.print(f"[red]Error: {escape(str(e))}[/red]")
        ctx.exit(1)


@main.command()
@click.argument('name', required=False)
@click.option('--branch', '-b', help='Branch name (default: branch prefix + name)')
@click.option('--base', help='Base branch to create from')
@click.option('--issue', type=int, help='GitHub issue number')
@click.option('--pr', 'pr_number', type=int, help='Pull request number')
@click.option('--skip-deps', is_flag=True, help='Skip dependency installation')
@click.option('--skip-build', is_flag=True, help='Skip frontend build')
@click.option('--skip-db', is_flag=True, help='Skip database cloning')
@click.pass_context
@handle_errors
def create(ctx: click.Context, name: str | None, branch: str | None, base: str | None,
           issue: int | None, pr_number: int | None,
           skip_deps: bool, skip_build: bool, skip_db: bool) -> None:
    """Create a worktree with its own config, dependencies and database."""
    manager: WorktreeManager = ctx.obj['worktree_manager']
    github: GitHubCLI = ctx.obj['github']
    cfg: Config = ctx.obj['config']

    if issue and pr_number:
        raise ConfigurationError("--issue and --pr are mutually exclusive.")

    if name is None and not branch and not issue and not pr_number:
        name, branch = _interactive_create(manager, github, cfg, base)

    if issue:
        branch = github.resolve_issue_branch(issue, base or cfg.base_branch)
        console.print(f"Issue #{issue} branch: {branch}")
        manager.fetch()
        name = name or str(issue)

    if pr_number:
        branch = github.resolve_pr_branch(pr_number)
        console.print(f"PR #{pr_number} branch: {branch}")
        manager.fetch()
        name = name or slugify_branch(branch, cfg.branch_prefix)

    if name is None and branch:
        name = slugify_branch(branch, cfg.branch_prefix)

    validate_worktree_name(name or "")
    if manager.exists(name):
        raise WorktreeExistsError(name, str(manager.path_for(name)))

    cfg.ensure_directories()
    console.print(f"Creating worktree '{name}'...")
    path = manager.create_worktree(name, branch, base)
    console.print(f"[green]✓[/green] Worktree created at {path}")

    options = BootstrapOptions(skip_deps=skip_deps, skip_build=skip_build, skip_db=skip_db)
    if ctx.obj['verbose']:
        manager.bootstrap(
            name, options,
            on_step=lambda label: console.print(f"[cyan]{label}[/cyan]"),
            on_output=lambda stream, chunk: click.echo(chunk, nl=False, err=stream == "err"),
        )
    else:
        with Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            console=console
        ) as progress:
            task = progress.add_task("Bootstrapping...", total=None)
            manager.bootstrap(name, options,
                              on_step=lambda label: progress.update(task, description=label))

    console.print(f"[green]✓[/green] Worktree [bold]{name}[/bold] is ready.")


def _interactive_create(manager: WorktreeManager, github: GitHubCLI, cfg: Config,
                        base: str | None) -> tuple[str, str | None]:
    mode = select("What should this worktree be based on?", {
        "issue": "GitHub issue",
        "pr": "Pull request",
        "branch": "Existing branch",
        "fresh": "Fresh (new branch)",
    })

    default_name, branch = "", None
    if mode == "issue":
        issues = github.open_issues()
        if not issues:
            console.print("[yellow]No open issues found.[/yellow]")
        else:
            number = select("Select an issue", {
                str(i["number"]): f"#{i['number']} {i['title']}" for i in issues
            })
            branch = github.resolve_issue_branch(int(number), base or cfg.base_branch)
            manager.fetch()
            default_name = number
    elif mode == "pr":
        prs = github.open_pull_requests()
        if not prs:
            console.print("[yellow]No open pull requests found.[/yellow]")
        else:
            number = select("Select a pull request", {
                str(pr["number"]): f"#{pr['number']} {pr['title']}" for pr in prs
            })
            branch = next(pr["headRefName"] for pr in prs if str(pr["number"]) == number)
            manager.fetch()
            default_name = slugify_branch(branch, cfg.branch_prefix)
    elif mode == "branch":
        branches = manager.list_branches()
        if not branches:
            console.print("[yellow]No branches found.[/yellow]")
        else:
            branch = select("Select a branch", {b: b for b in branches})
            default_name = slugify_branch(branch, cfg.branch_prefix)

    return prompt_name(default_name), branch


@main.command('list')
@click.option('--json', 'as_json', is_flag=True, help='Output as JSON')
@click.pass_context
@handle_errors
def list_worktrees(ctx: click.Context, as_json: bool) -> None:
    """List worktrees with their status, process and database."""
    manager: WorktreeManager = ctx.obj['worktree_manager']
    cloner: DatabaseCloner = ctx.obj['database_cloner']
    process_manager: ProcessManager = ctx.obj['process_manager']

    worktrees = manager.list_worktrees()

    if as_json:
        click.echo(json.dumps([wt.to_dict() for wt in worktrees], indent=4))
        return

    if not worktrees:
        console.print("No agent worktrees found.")
        return

    cloned = set(cloner.list_cloned())

    table = Table(title="Worktrees")
    table.add_column("Name", style="cyan", no_wrap=True)
    table.add_column("Branch", style="yellow")
    table.add_column("Status")
    table.add_column("Process")
    table.add_column("Database", style="blue")

    for wt in worktrees:
        status = "[yellow]dirty[/yellow]" if manager.is_dirty(wt.name) else "[green]clean[/green]"
        label = process_manager.running_label(wt.name)
        process = f"[green]{label}[/green]" if label is not None else "-"
        db_name = cloner.target_database(sanitize_suffix(wt.name))
        table.add_row(wt.name, wt.branch or "detached", status, process,
                      db_name if db_name in cloned else "-")

    console.print(table)


@main.command()
@click.argument('name', required=False)
@click.option('--force', is_flag=True, help='Skip safety checks and confirmation')
@click.option('--keep-db', is_flag=True, help='Keep the cloned database')
@click.pass_context
@handle_errors
def delete(ctx: click.Context, name: str | None, force: bool, keep_db: bool) -> None:
    """Delete a worktree and its database."""
    manager: WorktreeManager = ctx.obj['worktree_manager']
    cloner: DatabaseCloner = ctx.obj['database_cloner']
    process_manager: ProcessManager = ctx.obj['process_manager']

    if not name:
        name = choose_worktree(manager, "Select worktree to delete", show_branch=True)

    if not manager.exists(name):
        raise WorktreeNotFoundError(name)

    if not force:
        safety = manager.safety_check(name)

        if not safety.clean:
            console.print(f"[yellow]Worktree '{name}' has uncommitted changes.[/yellow]")
            if not click.confirm("Continue anyway?", default=False):
                return

        if safety.unpushed:
            console.print(f"[yellow]Worktree '{name}' has unpushed commits.[/yellow]")
            if not click.confirm("Continue anyway?", default=False):
                return

        if not click.confirm(f"Delete worktree '{name}'?", default=True):
            console.print("Cancelled.")
            return

    if process_manager.is_running(name):
        console.print(f"Terminating running process for '{name}'...")
        process_manager.terminate(name)

    console.print(f"Removing worktree '{name}'...")
    manager.remove_worktree(name, force)

    if not keep_db:
        cloner.drop(sanitize_suffix(name))

    console.print(f"[green]✓[/green] Worktree [bold]{name}[/bold] deleted.")


@main.command()
@click.option('--dry-run', is_flag=True, help='Show what would be removed')
@click.option('--force', is_flag=True, help='Skip confirmation')
@click.pass_context
@handle_errors
def cleanup(ctx: click.Context, dry_run: bool, force: bool) -> None:
    """Remove worktrees whose issues or PRs are closed."""
    manager: WorktreeManager = ctx.obj['worktree_manager']
    cloner: DatabaseCloner = ctx.obj['database_cloner']
    process_manager: ProcessManager = ctx.obj['process_manager']
    github: GitHubCLI = ctx.obj['github']

    worktrees = manager.list_worktrees()
    if not worktrees:
        console.print("No agent worktrees found.")
        return

    to_remove: dict[str, str] = {}
    for wt in worktrees:
        if not wt.branch:
            continue

        if manager.is_dirty(wt.name):
            console.print(f"[yellow]Skipping '{wt.name}': has uncommitted changes.[/yellow]")
            continue

        reason = github.closed_reason(wt.branch)
        if reason is not None:
            to_remove[wt.name] = reason

    if not to_remove:
        console.print("No worktrees with closed issues/PRs found.")
        return

    console.print("Worktrees to remove:")
    for name, reason in to_remove.items():
        console.print(f"  - {name} ({reason})")

    if dry_run:
        console.print("Dry run: no changes made.")
        return

    if not force and not click.confirm("Remove these worktrees?", default=True):
        console.print("Cancelled.")
        return

    for name in to_remove:
        if process_manager.is_running(name):
            process_manager.terminate(name)

        manager.remove_worktree(name, True)
        cloner.drop(sanitize_suffix(name))
        console.print(f"[green]✓[/green] Removed '{name}'.")

    console.print("Cleanup complete.")


@main.command('open')
@click.argument('name', required=False)
@click.pass_context
@handle_errors
def open_worktree(ctx: click.Context, name: str | None) -> None:
    """Open a worktree in the configured IDE."""
    manager: WorktreeManager = ctx.obj['worktree_manager']
    cfg: Config = ctx.obj['config']
    shell: ShellExecutor = ctx.obj['shell']

    if not name:
        name = choose_worktree(manager, "Select worktree to open")

    if not manager.exists(name):
        raise WorktreeNotFoundError(name)

    path = manager.path_for(name)
    console.print(f"Opening '{path}' in {cfg.ide_command}...")

    result = shell.run([*shlex.split(cfg.ide_command), str(path)])
    if not result.success:
        raise CommandFailedError("Opening IDE", result.stderr)


if __name__ == '__main__':
    main()

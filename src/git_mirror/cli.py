import argparse
import os
import sys

from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from . import daemon
from .config import Config, Environment
from .constants import APP_NAME, CONFIG_FILE, LOG_FILE, PID_FILE
from .errors import ConfigurationError
from .git_wrapper import GitError, GitRepo
from .mirror import MirrorLocation
from .remote import resolve

console = Console()


def _daemon_pid() -> int | None:
    """Returns the PID of a live daemon, or None."""
    if not PID_FILE.exists():
        return None
    try:
        with open(PID_FILE) as f:
            pid = int(f.read().strip())
        os.kill(pid, 0)
    except (ValueError, OSError):
        return None
    return pid


def show_status() -> int:
    """Displays daemon liveness and the local state of the mirror.

    Reads only local refs; no fetch or pull is performed.

    Returns:
        int: Exit status (1 when configuration is missing).
    """
    pid = _daemon_pid()
    system_content = Text()
    system_content.append("Daemon: ", style="bold")
    if pid:
        system_content.append(f"Active (PID {pid})\n", style="bold green")
    else:
        system_content.append("Stopped\n", style="bold red")
    system_content.append("Config: ", style="bold")
    system_content.append(f"{CONFIG_FILE}\n")
    system_content.append("Log:    ", style="bold")
    system_content.append(str(LOG_FILE))
    console.print(Panel(system_content, title="System Status", expand=False))

    conf = Config.load()
    try:
        env = Environment.from_env()
        remote = resolve(env.repository, env.user, env.secret)
    except ConfigurationError as e:
        console.print(f"[bold red]Config Error:[/bold red] {e}")
        return 1

    location = MirrorLocation(env.local_path, conf.core.mirror_dir)
    path = location.branch_dir

    table = Table(title="Mirror", show_header=False, box=None)
    table.add_column("Key", style="bold")
    table.add_column("Value")
    table.add_row("Remote", remote.display_url)
    table.add_row("Path", str(path))

    try:
        repo = GitRepo(path, timeout=conf.sync.git_timeout)
    except ValueError:
        table.add_row("State", "[yellow]Not initialized[/yellow]")
        console.print(table)
        return 0

    try:
        branch = conf.sync.branch or repo.current_branch()
    except GitError as e:
        console.print(table)
        console.print(f"[bold red]Git Error:[/bold red] {e}")
        return 1

    tracking = f"{conf.core.remote_name}/{branch}"
    local_sha = repo.rev_parse(branch) if branch else None
    remote_sha = repo.rev_parse(tracking) if branch else None

    table.add_row("Branch", branch or "[yellow](detached)[/yellow]")
    table.add_row("Local", local_sha[:12] if local_sha else "-")
    table.add_row(tracking, remote_sha[:12] if remote_sha else "-")
    if local_sha:
        try:
            table.add_row("Last Commit", repo.get_last_commit_time(branch))
        except GitError:
            table.add_row("Last Commit", "-")

    if local_sha and local_sha == remote_sha:
        table.add_row("State", "[green]In sync with last fetch[/green]")
    else:
        table.add_row("State", "[yellow]Behind or diverged from last fetch[/yellow]")

    console.print(table)
    return 0


def main() -> None:
    """Main entry point for the Git Mirror CLI."""
    parser = argparse.ArgumentParser(
        prog=APP_NAME,
        description="Keep a local clone continuously synchronized with its remote.",
    )
    subparsers = parser.add_subparsers(dest="command")

    subparsers.add_parser("run", help="Run the sync daemon in the foreground")
    subparsers.add_parser("status", help="Show daemon and mirror status")

    args = parser.parse_args()

    if args.command == "run":
        sys.exit(daemon.main(interactive=True))
    elif args.command == "status":
        sys.exit(show_status())

    parser.print_help()


if __name__ == "__main__":
    main()

import atexit
import enum
import logging
import os
import signal
import sys
import threading
from collections.abc import Mapping
from logging.handlers import RotatingFileHandler
from types import FrameType

from rich.console import Console

from .config import Config, Environment
from .constants import APP_NAME, LOG_FILE, PID_FILE
from .errors import ConfigurationError
from .git_wrapper import GitError, GitRepo
from .mirror import MirrorLocation, MirrorOutcome, MirrorStatus, ensure_mirror
from .remote import RemoteDescriptor, resolve
from .scheduler import Scheduler
from .sync import BranchWatcher, TickResult, WatchTarget

logger = logging.getLogger(APP_NAME)
logger.setLevel(logging.INFO)

err_console = Console(stderr=True)


class SyncState(enum.Enum):
    UNINITIALIZED = "uninitialized"
    READY = "ready"
    WATCHING = "watching"
    FAILED = "failed"


class MirrorSync:
    """The synchronization subsystem for one mirror.

    All collaborators are passed in; nothing is looked up globally. `start()`
    initializes the mirror once and, on success, schedules one job per watched
    branch. Failures are logged and reflected in `state`, never raised.
    """

    def __init__(
        self,
        remote: RemoteDescriptor,
        location: MirrorLocation,
        scheduler: Scheduler,
        config: Config | None = None,
    ) -> None:
        self.remote = remote
        self.location = location
        self.scheduler = scheduler
        self.config = config or Config()
        self.state = SyncState.UNINITIALIZED
        self.outcome: MirrorOutcome | None = None
        self.watchers: dict[str, BranchWatcher] = {}

    @classmethod
    def from_env(
        cls,
        scheduler: Scheduler,
        config: Config | None = None,
        environ: Mapping[str, str] | None = None,
    ) -> "MirrorSync":
        """Builds the subsystem from the process environment.

        Raises:
            ConfigurationError: If a required variable is missing.
        """
        config = config or Config.load()
        env = Environment.from_env(environ)
        remote = resolve(env.repository, env.user, env.secret)
        location = MirrorLocation(env.local_path, config.core.mirror_dir)
        return cls(remote, location, scheduler, config)

    def start(self) -> MirrorOutcome:
        """Initializes the mirror and starts watching its branch.

        When `sync.branch` is set and the mirror has something else checked
        out, the branch is checked out first. If that fails the subsystem
        ends up FAILED.

        Returns:
            MirrorOutcome: The initialization result.
        """
        sync_conf = self.config.sync
        self.outcome = ensure_mirror(
            self.location,
            self.remote,
            branch=sync_conf.branch or None,
            timeout=sync_conf.git_timeout,
            remote_name=self.config.core.remote_name,
        )
        if self.outcome.status is MirrorStatus.FAILED:
            self.state = SyncState.FAILED
            logger.error(
                f"FAILED {self.location.branch_dir}: {self.outcome.reason}. "
                "Synchronization not started."
            )
            return self.outcome

        self.state = SyncState.READY

        try:
            if sync_conf.branch:
                branch = sync_conf.branch
                self._check_out(branch)
            else:
                branch = self._checked_out_branch()
        except (GitError, ValueError) as e:
            self.state = SyncState.FAILED
            self.outcome = MirrorOutcome(MirrorStatus.FAILED, str(e))
            logger.error(f"FAILED {self.location.branch_dir}: {e}")
            return self.outcome

        self.watch(branch)
        self.state = SyncState.WATCHING
        return self.outcome

    def watch(self, branch: str) -> BranchWatcher:
        """Schedules the sync job for `branch` in the mirror working directory.

        Raises:
            ValueError: If `branch` is already watched.
        """
        sync_conf = self.config.sync
        target = WatchTarget(
            self.location.branch_dir, branch, remote=self.config.core.remote_name
        )
        watcher = BranchWatcher(
            target,
            ff_only=sync_conf.ff_only,
            timeout=sync_conf.git_timeout,
            credentials=self.remote.credential_env(),
        )
        self.scheduler.schedule(
            target.job_id,
            sync_conf.poll_interval,
            watcher.tick,
            allow_overlap=sync_conf.allow_overlap,
        )
        self.watchers[branch] = watcher
        logger.info(f"WATCHING {branch} in {target.path} ({self.remote.display_url})")
        return watcher

    def stop(self) -> None:
        """Cancels every job this subsystem scheduled."""
        for watcher in self.watchers.values():
            self.scheduler.cancel(watcher.target.job_id)
        self.watchers.clear()

    def last_results(self) -> dict[str, TickResult | None]:
        return {branch: w.last_result for branch, w in self.watchers.items()}

    def _checked_out_branch(self) -> str:
        repo = GitRepo(self.location.branch_dir, timeout=self.config.sync.git_timeout)
        branch = repo.current_branch()
        if not branch:
            raise ValueError("Mirror HEAD is detached; set sync.branch explicitly")
        return branch

    def _check_out(self, branch: str) -> None:
        repo = GitRepo(self.location.branch_dir, timeout=self.config.sync.git_timeout)
        current = repo.current_branch()
        if current == branch:
            return
        logger.warning(
            f"CHECKOUT {branch}: mirror had {current or 'detached HEAD'} checked out."
        )
        repo.checkout(branch)


def setup_logging(interactive: bool, config: Config | None = None) -> None:
    """Configures the logging subsystem.

    Args:
        interactive (bool): If True, logs to stdout. If False, logs to file/stderr
                            with rotation enabled.
        config (Config | None): Supplies the log rotation size.
    """
    config = config or Config()
    formatter = logging.Formatter(
        "[%(asctime)s] %(levelname)s: %(message)s", "%Y-%m-%d %H:%M:%S"
    )

    stream_handler = logging.StreamHandler(
        sys.stderr if not interactive else sys.stdout
    )
    stream_handler.setFormatter(formatter)
    logger.addHandler(stream_handler)

    if not interactive:
        try:
            LOG_FILE.parent.mkdir(parents=True, exist_ok=True)
            file_handler = RotatingFileHandler(
                LOG_FILE,
                maxBytes=config.limits.max_log_size,
                backupCount=5,
            )
        except OSError as e:
            logger.warning(f"Could not open log file {LOG_FILE}: {e}")
            return
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)


def write_pid_file() -> None:
    """Records the daemon PID and removes it again at exit."""
    try:
        PID_FILE.parent.mkdir(parents=True, exist_ok=True)
        with open(PID_FILE, "w") as f:
            f.write(str(os.getpid()))
        atexit.register(lambda: PID_FILE.unlink(missing_ok=True))
    except OSError as e:
        logger.warning(f"Could not write PID file: {e}")


def main(interactive: bool = False) -> int:
    """Runs the mirror daemon until SIGINT/SIGTERM.

    Args:
        interactive (bool, optional): Log to stdout instead of stderr + file.

    Returns:
        int: Process exit status.
    """
    config = Config.load()
    setup_logging(interactive, config)

    scheduler = Scheduler()
    try:
        mirror_sync = MirrorSync.from_env(scheduler, config)
    except ConfigurationError as e:
        logger.critical(f"CONFIG ERROR: {e}")
        err_console.print(f"[bold red]FATAL:[/bold red] {e}")
        return 1

    outcome = mirror_sync.start()
    if not outcome.ok:
        err_console.print(
            f"[bold red]FATAL:[/bold red] Mirror initialization failed: {outcome.reason}"
        )
        return 1

    if not interactive:
        write_pid_file()

    stop = threading.Event()

    def handle_signal(signum: int, _frame: FrameType | None) -> None:
        logger.info(f"Received signal {signum}, shutting down.")
        stop.set()

    signal.signal(signal.SIGTERM, handle_signal)
    signal.signal(signal.SIGINT, handle_signal)

    while not stop.wait(1.0):
        pass
    mirror_sync.stop()
    scheduler.shutdown(wait=True, timeout=config.sync.git_timeout)
    return 0


def run() -> None:
    """Console script entry point."""
    sys.exit(main())


if __name__ == "__main__":
    run()

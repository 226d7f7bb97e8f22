import logging
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import NamedTuple

from .constants import APP_NAME, DEFAULT_GIT_TIMEOUT, DEFAULT_REMOTE, JOB_PREFIX
from .errors import TransientSyncError
from .git_wrapper import GitError, GitRepo

logger = logging.getLogger(APP_NAME)


class ChangeSummary(NamedTuple):
    """Diff magnitude between the local branch and its remote tracking ref."""

    files_changed: int = 0
    insertions: int = 0
    deletions: int = 0

    @property
    def total(self) -> int:
        return self.files_changed + self.insertions + self.deletions

    def __bool__(self) -> bool:
        return self.total > 0

    def __str__(self) -> str:
        return (
            f"{self.files_changed} file(s), "
            f"+{self.insertions} -{self.deletions}"
        )


@dataclass(frozen=True)
class WatchTarget:
    """A (local path, branch) pair under continuous synchronization.

    Attributes:
        path (Path): The working clone.
        branch (str): The local branch tracked against `<remote>/<branch>`.
        remote (str): The remote name.
    """

    path: Path
    branch: str
    remote: str = DEFAULT_REMOTE

    @property
    def job_id(self) -> str:
        """Scheduler identifier, unique per watched branch."""
        return f"{JOB_PREFIX}:{self.branch}"

    @property
    def tracking_ref(self) -> str:
        return f"{self.remote}/{self.branch}"


@dataclass(frozen=True)
class TickResult:
    """Outcome of one fetch -> diff -> (pull) sequence.

    Attributes:
        target (WatchTarget): The branch the tick ran for.
        summary (ChangeSummary | None): The detected change, None if detection failed.
        pulled (bool): Whether a pull completed.
        error (TransientSyncError | None): The contained failure, if any.
    """

    target: WatchTarget
    summary: ChangeSummary | None = None
    pulled: bool = False
    error: TransientSyncError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


def _open_repo(
    path: Path, timeout: float, credentials: Mapping[str, str] | None = None
) -> GitRepo:
    try:
        return GitRepo(path, timeout=timeout, credentials=credentials)
    except ValueError as e:
        raise TransientSyncError(str(e)) from e


def detect_changes(
    target: WatchTarget,
    timeout: float = DEFAULT_GIT_TIMEOUT,
    credentials: Mapping[str, str] | None = None,
) -> ChangeSummary:
    """Fetches the remote and measures how far the remote branch moved.

    Uses the three-dot diff `branch...remote/branch`, i.e. only what the
    remote gained since the merge base. Local-only commits do not count.

    Args:
        target (WatchTarget): The branch to inspect.
        timeout (float, optional): Seconds allowed per git invocation.
        credentials (Mapping[str, str] | None, optional): Credential variables
            for the fetch, from `RemoteDescriptor.credential_env()`.

    Returns:
        ChangeSummary: Zero when nothing needs pulling.

    Raises:
        TransientSyncError: If the fetch or the diff fails.
    """
    repo = _open_repo(target.path, timeout, credentials)
    try:
        repo.fetch(target.remote)
    except GitError as e:
        raise TransientSyncError(f"fetch failed: {e}") from e

    try:
        files, insertions, deletions = repo.diff_shortstat(
            target.branch, target.tracking_ref
        )
    except GitError as e:
        raise TransientSyncError(f"diff failed: {e}") from e

    return ChangeSummary(files, insertions, deletions)


def apply_pull(
    target: WatchTarget,
    ff_only: bool = True,
    timeout: float = DEFAULT_GIT_TIMEOUT,
    credentials: Mapping[str, str] | None = None,
) -> None:
    """Pulls the remote branch into the working clone.

    The pull only happens while `target.branch` is the checked-out branch;
    otherwise the remote branch would be merged into an unrelated one.
    No rollback is attempted on failure; the next tick re-detects and retries.

    Raises:
        TransientSyncError: If another branch is checked out or the pull fails.
    """
    repo = _open_repo(target.path, timeout, credentials)
    try:
        current = repo.current_branch()
    except GitError as e:
        raise TransientSyncError(f"pull failed: {e}") from e
    if current != target.branch:
        raise TransientSyncError(
            f"pull refused: '{current or 'detached HEAD'}' is checked out, "
            f"not '{target.branch}'"
        )

    try:
        repo.pull(target.remote, target.branch, ff_only=ff_only)
    except GitError as e:
        raise TransientSyncError(f"pull failed: {e}") from e


class BranchWatcher:
    """Runs the synchronization tick for one watched branch.

    Each tick is independent: it opens the repository, fetches from scratch,
    and keeps no state from previous ticks except `last_result` for reporting.
    """

    def __init__(
        self,
        target: WatchTarget,
        ff_only: bool = True,
        timeout: float = DEFAULT_GIT_TIMEOUT,
        credentials: Mapping[str, str] | None = None,
    ) -> None:
        self.target = target
        self.ff_only = ff_only
        self.timeout = timeout
        self._credentials = credentials
        self.last_result: TickResult | None = None

    def tick(self) -> TickResult:
        """Runs fetch -> diff -> (conditional) pull. Never raises TransientSyncError.

        Returns:
            TickResult: What the tick observed and did.
        """
        result = self._tick()
        self.last_result = result
        return result

    def _tick(self) -> TickResult:
        branch = self.target.branch

        try:
            summary = detect_changes(
                self.target, timeout=self.timeout, credentials=self._credentials
            )
        except TransientSyncError as e:
            logger.warning(f"FETCH ERROR {branch}: {e}")
            return TickResult(self.target, error=e)

        if not summary:
            logger.debug(f"UP TO DATE {branch}")
            return TickResult(self.target, summary=summary)

        logger.info(f"CHANGES {branch}: {summary} behind {self.target.tracking_ref}")

        try:
            apply_pull(
                self.target,
                ff_only=self.ff_only,
                timeout=self.timeout,
                credentials=self._credentials,
            )
        except TransientSyncError as e:
            logger.error(f"PULL ERROR {branch}: {e}")
            return TickResult(self.target, summary=summary, error=e)

        logger.info(f"PULLED {branch}: {summary}")
        return TickResult(self.target, summary=summary, pulled=True)

"""Local mirror initialization: create, validate, or reclone the working copy."""

import enum
import logging
import shutil
from dataclasses import dataclass
from pathlib import Path
from urllib.parse import urlsplit

from .constants import APP_NAME, DEFAULT_GIT_TIMEOUT, DEFAULT_REMOTE
from .errors import InitializationError
from .git_wrapper import GitError, GitRepo
from .remote import RemoteDescriptor, scrub_credentials

logger = logging.getLogger(APP_NAME)


class MirrorStatus(enum.Enum):
    READY = "ready"
    RECLONED = "recloned"
    FAILED = "failed"


@dataclass(frozen=True)
class MirrorOutcome:
    """Result of `ensure_mirror`.

    Attributes:
        status (MirrorStatus): What happened.
        reason (str | None): Why initialization failed, if it did.
    """

    status: MirrorStatus
    reason: str | None = None

    @property
    def ok(self) -> bool:
        return self.status is not MirrorStatus.FAILED

    def raise_for_status(self) -> None:
        """Raises InitializationError if the outcome is FAILED."""
        if not self.ok:
            raise InitializationError(self.reason or "Mirror initialization failed")


@dataclass(frozen=True)
class MirrorLocation:
    """Filesystem location of the mirror.

    Attributes:
        base_dir (Path): The configured mirror root.
        branch_dir_name (str): The subdirectory holding the working clone.
    """

    base_dir: Path
    branch_dir_name: str

    @property
    def branch_dir(self) -> Path:
        return self.base_dir / self.branch_dir_name


def create_if_not_exist(directory: Path) -> None:
    """Creates `directory` (and parents) unless it already exists.

    Raises:
        OSError: If the path cannot be created or is not a writable directory.
    """
    if directory.is_dir():
        logger.debug(f"skipping creation dir {directory}")
    else:
        logger.debug(f"creating dir {directory}")
        directory.mkdir(parents=True, exist_ok=True)

    write_test = directory / ".git-mirror-write-test"
    write_test.touch()
    write_test.unlink()


def empty_dir(directory: Path) -> None:
    """Deletes every entry inside `directory`, keeping the directory itself."""
    for entry in directory.iterdir():
        if entry.is_dir() and not entry.is_symlink():
            shutil.rmtree(entry)
        else:
            entry.unlink()


def ensure_mirror(
    location: MirrorLocation,
    remote: RemoteDescriptor,
    branch: str | None = None,
    timeout: float = DEFAULT_GIT_TIMEOUT,
    remote_name: str = DEFAULT_REMOTE,
) -> MirrorOutcome:
    """Makes sure the mirror directory holds a clone of the remote.

    An existing repository root is trusted as-is and no network operation is
    performed. Anything else in the branch directory is DELETED and replaced
    by a fresh clone. If git cannot tell whether the directory is a repository
    (timeout, refused ownership, ...), nothing is deleted and the outcome is
    FAILED. Errors are reported through the outcome, never raised.

    Args:
        location (MirrorLocation): Where the mirror lives.
        remote (RemoteDescriptor): The remote to clone from.
        branch (str | None, optional): Branch to check out on clone.
        timeout (float, optional): Seconds allowed per git invocation.
        remote_name (str, optional): Name of the remote inside the clone.

    Returns:
        MirrorOutcome: READY, RECLONED, or FAILED with a reason.
    """
    target = location.branch_dir

    try:
        create_if_not_exist(location.base_dir)
        create_if_not_exist(target)

        if GitRepo.is_repo_root(target, timeout=timeout):
            logger.info(f"INIT {target}: existing clone is a git repo.")
            _drop_stored_credentials(GitRepo(target, timeout=timeout), remote, remote_name)
            return MirrorOutcome(MirrorStatus.READY)

        if any(target.iterdir()):
            logger.warning(
                f"RECLONE {target}: dir exists, but is not a repo. Deleting any files!"
            )
            empty_dir(target)

        logger.info(f"CLONE {remote.display_url} -> {target}")
        GitRepo.clone(
            remote.display_url,
            target,
            branch=branch or None,
            timeout=timeout,
            origin=remote_name,
            credentials=remote.credential_env(),
        )

    except (GitError, OSError, ValueError) as e:
        reason = scrub_credentials(str(e))
        logger.error(f"INIT ERROR {target}: {reason}")
        return MirrorOutcome(MirrorStatus.FAILED, reason)

    logger.info(f"INIT {target}: successful init of local repo.")
    return MirrorOutcome(MirrorStatus.RECLONED)


def _drop_stored_credentials(
    repo: GitRepo, remote: RemoteDescriptor, remote_name: str
) -> None:
    """Rewrites a remote URL that embeds a password to the plain URL."""
    url = repo.remote_url(remote_name)
    if url and urlsplit(url).password is not None:
        logger.warning(
            f"INIT {repo.path}: removing credentials stored in the '{remote_name}' URL."
        )
        repo.set_remote_url(remote_name, remote.display_url)

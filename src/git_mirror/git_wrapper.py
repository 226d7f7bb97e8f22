import logging
import os
import re
import subprocess
from collections.abc import Mapping
from pathlib import Path

from .constants import (
    APP_NAME,
    CREDENTIAL_SECRET_VAR,
    CREDENTIAL_USER_VAR,
    DEFAULT_GIT_TIMEOUT,
    DEFAULT_REMOTE,
)
from .remote import scrub_credentials

logger = logging.getLogger(APP_NAME)

# Answers `get` requests from the child's environment; `store`/`erase` are ignored.
_CREDENTIAL_HELPER = (
    '!f() { test "$1" = get || exit 0; '
    f'printf "%s\\n" "username=${CREDENTIAL_USER_VAR}" '
    f'"password=${CREDENTIAL_SECRET_VAR}"; '
    "}; f"
)


class GitError(RuntimeError):
    """Raised when a git invocation fails, times out, or cannot be started.

    The message never contains credentials.
    """


def _git_env(credentials: Mapping[str, str] | None = None) -> dict[str, str]:
    """Returns an environment that keeps git from ever prompting."""
    env = os.environ.copy()
    env["GIT_TERMINAL_PROMPT"] = "0"
    env["GIT_SSH_COMMAND"] = "ssh -o BatchMode=yes"
    env["LC_ALL"] = "C"
    if credentials:
        env.update(credentials)
    return env


def run_git(
    args: list[str],
    cwd: Path,
    timeout: float | None = None,
    credentials: Mapping[str, str] | None = None,
) -> str:
    """Executes a git command and returns its stripped stdout.

    Args:
        args (list[str]): Arguments passed to the git executable.
        cwd (Path): The working directory for the command.
        timeout (float | None, optional): Seconds before the process is killed.
                                          None waits indefinitely.
        credentials (Mapping[str, str] | None, optional): Output of
            `RemoteDescriptor.credential_env()`. When given, any helpers from
            the user's git config are replaced by one that reads these
            variables, so the secret stays out of argv and `.git/config`.

    Returns:
        str: The stripped stdout of the command.

    Raises:
        GitError: On non-zero exit, timeout, a missing working directory,
                  or a missing git executable.
    """
    if not cwd.is_dir():
        raise GitError(f"Working directory does not exist: {cwd}")

    cmd = ["git"]
    if credentials:
        cmd.extend(
            ["-c", "credential.helper=", "-c", f"credential.helper={_CREDENTIAL_HELPER}"]
        )
    cmd.extend(args)

    try:
        res = subprocess.run(
            cmd,
            cwd=cwd,
            capture_output=True,
            text=True,
            check=True,
            env=_git_env(credentials),
            timeout=timeout,
        )
        return res.stdout.strip()
    except subprocess.CalledProcessError as e:
        detail = (e.stderr or "").strip() or f"git {args[0]} exited with {e.returncode}"
        raise GitError(f"Git error: {scrub_credentials(detail)}") from None
    except subprocess.TimeoutExpired:
        raise GitError(f"Git timed out after {timeout}s: git {args[0]}") from None
    except FileNotFoundError as e:
        raise GitError(f"Git executable not available: {e}") from None


class GitRepo:
    """A wrapper around the Git command-line interface for one mirror clone.

    Every call runs `git` as a subprocess with an explicit timeout so that a
    stalled network operation cannot hang the caller indefinitely.

    Attributes:
        path (Path): The file system path to the repository root.
        timeout (float): Seconds allowed per git invocation.
        credentials (Mapping[str, str] | None): Credential variables passed to
                                                every invocation, if any.
    """

    def __init__(
        self,
        path: Path,
        timeout: float = DEFAULT_GIT_TIMEOUT,
        credentials: Mapping[str, str] | None = None,
    ):
        """Initializes the GitRepo instance.

        Args:
            path (Path): The path to the repository root directory.
            timeout (float, optional): Seconds allowed per git invocation.
            credentials (Mapping[str, str] | None, optional): See `run_git`.

        Raises:
            ValueError: If the specified path does not contain a .git directory.
        """
        self.path = path
        self.timeout = timeout
        self.credentials = credentials
        if not (self.path / ".git").exists():
            raise ValueError(f"Not a git repository: {self.path}")

    @classmethod
    def clone(
        cls,
        url: str,
        dest: Path,
        branch: str | None = None,
        timeout: float = DEFAULT_GIT_TIMEOUT,
        origin: str = DEFAULT_REMOTE,
        credentials: Mapping[str, str] | None = None,
    ) -> "GitRepo":
        """Clones `url` into `dest`, which must be empty or absent.

        Args:
            url (str): The remote URL. It is stored in the clone's config, so it
                       must not embed credentials.
            dest (Path): The target directory.
            branch (str | None, optional): Branch to check out instead of the
                                           remote's default branch.
            timeout (float, optional): Seconds allowed for the clone.
            origin (str, optional): Name given to the remote in the clone.
            credentials (Mapping[str, str] | None, optional): See `run_git`.

        Returns:
            GitRepo: A wrapper for the fresh clone.

        Raises:
            GitError: If the clone fails.
        """
        cmd = ["clone", "--quiet", "--origin", origin]
        if branch:
            cmd.extend(["--branch", branch])
        cmd.extend(["--", url, str(dest)])
        run_git(cmd, cwd=dest.parent, timeout=timeout, credentials=credentials)
        return cls(dest, timeout=timeout, credentials=credentials)

    @staticmethod
    def is_repo_root(path: Path, timeout: float = DEFAULT_GIT_TIMEOUT) -> bool:
        """Checks whether `path` is the top level of a git working tree.

        A directory without its own `.git` entry is never a root, including
        one nested inside another repository.

        Args:
            path (Path): The directory to check.
            timeout (float, optional): Seconds allowed for the check.

        Returns:
            bool: True if `path` is the root of a working tree.

        Raises:
            GitError: If git could not answer, e.g. on a timeout or when it
                      refuses the repository. Only git's own "not a git
                      repository" verdict is reported as False.
        """
        if not path.is_dir() or not (path / ".git").exists():
            return False
        try:
            top = run_git(["rev-parse", "--show-toplevel"], cwd=path, timeout=timeout)
        except GitError as e:
            if "not a git repository" not in str(e).lower():
                raise
            logger.debug(f"{path} has a .git entry but is not a repository: {e}")
            return False
        if not top:
            return False
        return Path(top).resolve() == path.resolve()

    def _run(self, args: list[str]) -> str:
        """Executes a Git command within the repository context.

        Args:
            args (list[str]): A list of arguments to pass to the git command.

        Returns:
            str: The stripped stdout of the command.

        Raises:
            GitError: If the git command fails or times out.
        """
        return run_git(
            args, cwd=self.path, timeout=self.timeout, credentials=self.credentials
        )

    def current_branch(self) -> str:
        """Retrieves the name of the currently checked-out branch.

        Returns:
            str: The name of the current branch (empty when HEAD is detached).
        """
        return self._run(["branch", "--show-current"])

    def checkout(self, branch: str) -> None:
        """Checks out `branch`, creating it from a same-named remote branch if needed.

        Local modifications are never discarded; git refuses instead.

        Args:
            branch (str): The target branch name.

        Raises:
            GitError: If the branch is unknown or the working tree blocks the switch.
        """
        self._run(["checkout", "--quiet", branch])

    def remote_url(self, remote: str) -> str | None:
        """Returns the configured URL of `remote`, or None if it has none."""
        try:
            return self._run(["config", "--get", f"remote.{remote}.url"]) or None
        except GitError as e:
            logger.debug(f"no URL configured for remote '{remote}': {e}")
            return None

    def set_remote_url(self, remote: str, url: str) -> None:
        self._run(["remote", "set-url", remote, url])

    def rev_parse(self, rev: str) -> str | None:
        """Resolves a revision (tag, branch, relative ref) to a full SHA-1 hash.

        Args:
            rev (str): The revision to parse (e.g., 'HEAD', 'origin/master').

        Returns:
            Optional[str]:  The full SHA-1 hash,
                            or None if the revision could not be resolved.
        """
        try:
            return self._run(["rev-parse", "--verify", "--quiet", rev])
        except GitError as e:
            logger.debug(f"rev-parse failed for '{rev}': {e}")
            return None

    def get_last_commit_time(self, rev: str) -> str:
        """Gets the relative time since the last commit on a revision.

        Args:
            rev (str): The branch or ref to check.

        Returns:
            str: A human-readable relative time string (e.g., '2 hours ago').

        Raises:
            GitError: If the revision does not exist or the command fails.
        """
        return self._run(["log", "-1", "--format=%cr", rev])

    def fetch(self, remote: str) -> None:
        """Fetches refs and objects from `remote`, pruning deleted branches.

        Args:
            remote (str): The remote name (e.g. 'origin').
        """
        self._run(["fetch", "--prune", "--quiet", remote])

    def pull(self, remote: str, branch: str, ff_only: bool = True) -> None:
        """Pulls `branch` from `remote` into the checked-out branch.

        Args:
            remote (str): The remote name.
            branch (str): The remote branch to integrate.
            ff_only (bool, optional): Refuse anything but a fast-forward.
                                      When False, merges (never rebases).
        """
        cmd = ["pull", "--quiet", "--ff-only" if ff_only else "--no-rebase"]
        cmd.extend([remote, branch])
        self._run(cmd)

    def diff_shortstat(self, target: str, source: str) -> tuple[int, int, int]:
        """Retrieves the shortstat differences between two references.

        Executes `git diff --shortstat target...source` to determine the
        number of files changed, insertions, and deletions present in the
        source reference that are not in the target.

        Args:
            target (str): The base reference (e.g., 'master').
            source (str): The reference to compare (e.g., 'origin/master').

        Returns:
            tuple[int, int, int]: A tuple containing (files_changed, insertions, deletions).
                                  Returns (0, 0, 0) if there are no differences.

        Raises:
            GitError: If either reference is unknown or the command fails.
        """
        output = self._run(["diff", "--shortstat", f"{target}...{source}"])
        return parse_shortstat(output)


def parse_shortstat(output: str) -> tuple[int, int, int]:
    """Parses `git diff --shortstat` output, tolerating missing clauses.

    Args:
        output (str): e.g. ' 3 files changed, 25 insertions(+), 4 deletions(-)'.

    Returns:
        tuple[int, int, int]: (files_changed, insertions, deletions).
    """
    if not output:
        return 0, 0, 0

    files_match = re.search(r"(\d+)\s+file", output)
    insertions_match = re.search(r"(\d+)\s+insertion", output)
    deletions_match = re.search(r"(\d+)\s+deletion", output)

    files = int(files_match.group(1)) if files_match else 0
    insertions = int(insertions_match.group(1)) if insertions_match else 0
    deletions = int(deletions_match.group(1)) if deletions_match else 0

    return files, insertions, deletions

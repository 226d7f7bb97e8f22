"""Tests for the synchronization subsystem wiring and the daemon entry point."""

import logging
import logging.handlers
import time
from pathlib import Path
from unittest.mock import MagicMock

import pytest

from git_mirror import daemon
from git_mirror.config import Config
from git_mirror.errors import ConfigurationError
from git_mirror.git_wrapper import GitError
from git_mirror.mirror import MirrorLocation, MirrorOutcome, MirrorStatus, ensure_mirror
from git_mirror.remote import RemoteDescriptor
from git_mirror.scheduler import Scheduler

from .conftest import Upstream, git, requires_git

ENV = {
    "GIT_USER": "alice",
    "GIT_PASSWORD": "hunter2",
    "GIT_LOCAL_PATH": "/srv/mirror",
    "GIT_REPOSITORY": "github.com/org/repo.git",
}


@pytest.fixture
def mock_scheduler() -> MagicMock:
    return MagicMock(spec=Scheduler)


@pytest.fixture
def config() -> Config:
    conf = Config()
    conf.sync.poll_interval = 3
    conf.sync.git_timeout = 30
    return conf


def test_start_failure_schedules_nothing(
    tmp_path: Path,
    mocker: MagicMock,
    mock_scheduler: MagicMock,
    descriptor: RemoteDescriptor,
    config: Config,
) -> None:
    """Verifies that a failed initialization is terminal and starts no watch."""
    mocker.patch(
        "git_mirror.daemon.ensure_mirror",
        return_value=MirrorOutcome(MirrorStatus.FAILED, "clone failed"),
    )
    sync = daemon.MirrorSync(
        descriptor, MirrorLocation(tmp_path, "m"), mock_scheduler, config
    )

    outcome = sync.start()

    assert outcome.status is MirrorStatus.FAILED
    assert sync.state is daemon.SyncState.FAILED
    mock_scheduler.schedule.assert_not_called()


def test_start_success_schedules_branch_job(
    tmp_path: Path,
    mocker: MagicMock,
    mock_scheduler: MagicMock,
    descriptor: RemoteDescriptor,
    config: Config,
) -> None:
    mock_ensure = mocker.patch(
        "git_mirror.daemon.ensure_mirror",
        return_value=MirrorOutcome(MirrorStatus.READY),
    )
    mocker.patch("git_mirror.daemon.GitRepo").return_value.current_branch.return_value = (
        "main"
    )
    config.sync.branch = "main"
    location = MirrorLocation(tmp_path, "m")
    sync = daemon.MirrorSync(descriptor, location, mock_scheduler, config)

    sync.start()

    assert sync.state is daemon.SyncState.WATCHING
    mock_ensure.assert_called_once_with(
        location, descriptor, branch="main", timeout=30, remote_name="origin"
    )
    mock_scheduler.schedule.assert_called_once()
    args, kwargs = mock_scheduler.schedule.call_args
    assert args[0] == "sync:main"
    assert args[1] == 3
    assert args[2] == sync.watchers["main"].tick
    assert kwargs == {"allow_overlap": False}
    assert sync.watchers["main"].target.path == location.branch_dir


def test_start_checks_out_configured_branch(
    tmp_path: Path,
    mocker: MagicMock,
    mock_scheduler: MagicMock,
    descriptor: RemoteDescriptor,
    config: Config,
    caplog: pytest.LogCaptureFixture,
) -> None:
    """Verifies a trusted clone on another branch is switched before watching."""
    mocker.patch(
        "git_mirror.daemon.ensure_mirror",
        return_value=MirrorOutcome(MirrorStatus.READY),
    )
    mock_repo = mocker.patch("git_mirror.daemon.GitRepo").return_value
    mock_repo.current_branch.return_value = "master"
    config.sync.branch = "dev"
    sync = daemon.MirrorSync(
        descriptor, MirrorLocation(tmp_path, "m"), mock_scheduler, config
    )

    sync.start()

    mock_repo.checkout.assert_called_once_with("dev")
    assert sync.state is daemon.SyncState.WATCHING
    assert mock_scheduler.schedule.call_args[0][0] == "sync:dev"
    assert "CHECKOUT dev: mirror had master checked out" in caplog.text


def test_start_fails_when_configured_branch_cannot_be_checked_out(
    tmp_path: Path,
    mocker: MagicMock,
    mock_scheduler: MagicMock,
    descriptor: RemoteDescriptor,
    config: Config,
) -> None:
    mocker.patch(
        "git_mirror.daemon.ensure_mirror",
        return_value=MirrorOutcome(MirrorStatus.READY),
    )
    mock_repo = mocker.patch("git_mirror.daemon.GitRepo").return_value
    mock_repo.current_branch.return_value = "master"
    mock_repo.checkout.side_effect = GitError(
        "Git error: error: pathspec 'dev' did not match any file(s) known to git"
    )
    config.sync.branch = "dev"
    sync = daemon.MirrorSync(
        descriptor, MirrorLocation(tmp_path, "m"), mock_scheduler, config
    )

    outcome = sync.start()

    assert outcome.status is MirrorStatus.FAILED
    assert "pathspec" in (outcome.reason or "")
    assert sync.state is daemon.SyncState.FAILED
    mock_scheduler.schedule.assert_not_called()


def test_start_uses_checked_out_branch_when_unset(
    tmp_path: Path,
    mocker: MagicMock,
    mock_scheduler: MagicMock,
    descriptor: RemoteDescriptor,
    config: Config,
) -> None:
    mocker.patch(
        "git_mirror.daemon.ensure_mirror",
        return_value=MirrorOutcome(MirrorStatus.RECLONED),
    )
    mocker.patch("git_mirror.daemon.GitRepo").return_value.current_branch.return_value = (
        "trunk"
    )
    sync = daemon.MirrorSync(
        descriptor, MirrorLocation(tmp_path, "m"), mock_scheduler, config
    )

    sync.start()

    assert list(sync.watchers) == ["trunk"]
    assert mock_scheduler.schedule.call_args[0][0] == "sync:trunk"


def test_start_detached_head_fails(
    tmp_path: Path,
    mocker: MagicMock,
    mock_scheduler: MagicMock,
    descriptor: RemoteDescriptor,
    config: Config,
) -> None:
    mocker.patch(
        "git_mirror.daemon.ensure_mirror",
        return_value=MirrorOutcome(MirrorStatus.READY),
    )
    mocker.patch("git_mirror.daemon.GitRepo").return_value.current_branch.return_value = ""
    sync = daemon.MirrorSync(
        descriptor, MirrorLocation(tmp_path, "m"), mock_scheduler, config
    )

    outcome = sync.start()

    assert not outcome.ok
    assert sync.state is daemon.SyncState.FAILED
    mock_scheduler.schedule.assert_not_called()


def test_stop_cancels_jobs(
    tmp_path: Path,
    mock_scheduler: MagicMock,
    descriptor: RemoteDescriptor,
    config: Config,
) -> None:
    sync = daemon.MirrorSync(
        descriptor, MirrorLocation(tmp_path, "m"), mock_scheduler, config
    )
    sync.watch("main")

    sync.stop()

    mock_scheduler.cancel.assert_called_once_with("sync:main")
    assert sync.watchers == {}


def test_from_env_builds_collaborators(mock_scheduler: MagicMock, config: Config) -> None:
    sync = daemon.MirrorSync.from_env(mock_scheduler, config, environ=ENV)

    assert sync.remote.display_url == "https://github.com/org/repo.git"
    assert sync.location == MirrorLocation(Path("/srv/mirror"), "masterBranch")
    assert sync.state is daemon.SyncState.UNINITIALIZED


@pytest.mark.parametrize("missing", sorted(ENV))
def test_from_env_missing_variable(
    mock_scheduler: MagicMock, config: Config, missing: str
) -> None:
    """Verifies that each missing variable is fatal before anything is scheduled."""
    environ = {k: v for k, v in ENV.items() if k != missing}

    with pytest.raises(ConfigurationError, match=missing):
        daemon.MirrorSync.from_env(mock_scheduler, config, environ=environ)
    mock_scheduler.schedule.assert_not_called()


def test_main_missing_configuration_exits_without_jobs(
    mocker: MagicMock, monkeypatch: pytest.MonkeyPatch
) -> None:
    for key in ENV:
        monkeypatch.setenv(key, ENV[key])
    monkeypatch.delenv("GIT_PASSWORD")
    mocker.patch("git_mirror.daemon.setup_logging")
    mocker.patch("git_mirror.daemon.Config.load", return_value=Config())
    mock_scheduler = mocker.patch("git_mirror.daemon.Scheduler").return_value
    mock_ensure = mocker.patch("git_mirror.daemon.ensure_mirror")

    assert daemon.main(interactive=True) == 1

    mock_ensure.assert_not_called()
    mock_scheduler.schedule.assert_not_called()


def test_main_init_failure_exits(
    mocker: MagicMock, monkeypatch: pytest.MonkeyPatch
) -> None:
    for key in ENV:
        monkeypatch.setenv(key, ENV[key])
    mocker.patch("git_mirror.daemon.setup_logging")
    mocker.patch("git_mirror.daemon.Config.load", return_value=Config())
    mock_scheduler = mocker.patch("git_mirror.daemon.Scheduler").return_value
    mocker.patch(
        "git_mirror.daemon.ensure_mirror",
        return_value=MirrorOutcome(MirrorStatus.FAILED, "disk full"),
    )

    assert daemon.main(interactive=True) == 1
    mock_scheduler.schedule.assert_not_called()


def test_main_shutdown_waits_for_running_ticks(
    mocker: MagicMock, monkeypatch: pytest.MonkeyPatch
) -> None:
    """Verifies graceful shutdown joins in-flight ticks, bounded by the git timeout."""
    for key in ENV:
        monkeypatch.setenv(key, ENV[key])
    conf = Config()
    conf.sync.poll_interval = 5
    conf.sync.git_timeout = 42
    mocker.patch("git_mirror.daemon.setup_logging")
    mocker.patch("git_mirror.daemon.Config.load", return_value=conf)
    # Deliver each signal as soon as its handler is installed.
    mocker.patch(
        "git_mirror.daemon.signal.signal",
        side_effect=lambda signum, handler: handler(signum, None),
    )
    mock_scheduler = mocker.patch("git_mirror.daemon.Scheduler").return_value
    mocker.patch(
        "git_mirror.daemon.MirrorSync.start",
        return_value=MirrorOutcome(MirrorStatus.READY),
    )

    assert daemon.main(interactive=True) == 0

    mock_scheduler.shutdown.assert_called_once_with(wait=True, timeout=42)


def test_setup_logging_rotates_file(
    tmp_path: Path, mocker: MagicMock
) -> None:
    """Verifies daemon mode adds a rotating file handler sized from config."""
    log_file = tmp_path / "state" / "daemon.log"
    mocker.patch("git_mirror.daemon.LOG_FILE", log_file)
    conf = Config()
    conf.limits.max_log_size = 1234
    logger = logging.getLogger("git-mirror")
    before = list(logger.handlers)

    try:
        daemon.setup_logging(False, conf)
        added = [h for h in logger.handlers if h not in before]
        rotating = [h for h in added if isinstance(h, logging.handlers.RotatingFileHandler)]
        assert len(rotating) == 1
        assert rotating[0].maxBytes == 1234
        assert log_file.parent.is_dir()
    finally:
        for handler in logger.handlers[:]:
            if handler not in before:
                logger.removeHandler(handler)
                handler.close()


@requires_git
def test_mirror_sync_end_to_end(
    tmp_path: Path, upstream: Upstream, local_remote: RemoteDescriptor
) -> None:
    """Verifies init + watching picks up an upstream push within a few ticks."""
    conf = Config()
    conf.sync.poll_interval = 0.05
    conf.sync.git_timeout = 30
    scheduler = Scheduler()
    location = MirrorLocation(tmp_path / "mirror", "masterBranch")
    sync = daemon.MirrorSync(local_remote, location, scheduler, conf)

    try:
        assert sync.start().status is MirrorStatus.RECLONED
        assert sync.state is daemon.SyncState.WATCHING
        assert scheduler.job_ids() == ["sync:master"]

        tip = upstream.commit("later.txt", "arrived\n")

        deadline = time.monotonic() + 10
        while time.monotonic() < deadline:
            if git(location.branch_dir, "rev-parse", "master") == tip:
                break
            time.sleep(0.05)
        assert git(location.branch_dir, "rev-parse", "master") == tip
        assert sync.last_results()["master"] is not None
    finally:
        sync.stop()
        scheduler.shutdown(wait=True, timeout=10)


@requires_git
def test_existing_clone_switches_to_configured_branch(
    tmp_path: Path, upstream: Upstream, local_remote: RemoteDescriptor
) -> None:
    """Verifies a READY clone on 'master' is moved to 'dev' and dev gets pulled."""
    git(upstream.work, "checkout", "-q", "-b", "dev")
    upstream.branch = "dev"
    upstream.commit("dev.txt", "dev only\n")
    location = MirrorLocation(tmp_path / "mirror", "masterBranch")
    assert ensure_mirror(location, local_remote).status is MirrorStatus.RECLONED
    master_tip = git(location.branch_dir, "rev-parse", "master")
    dev_tip = upstream.commit("dev2.txt", "more dev\n")

    conf = Config()
    conf.sync.branch = "dev"
    conf.sync.poll_interval = 0.05
    conf.sync.git_timeout = 30
    scheduler = Scheduler()
    sync = daemon.MirrorSync(local_remote, location, scheduler, conf)

    try:
        assert sync.start().status is MirrorStatus.READY
        assert git(location.branch_dir, "branch", "--show-current") == "dev"
        assert scheduler.job_ids() == ["sync:dev"]

        deadline = time.monotonic() + 10
        while time.monotonic() < deadline:
            if git(location.branch_dir, "rev-parse", "dev") == dev_tip:
                break
            time.sleep(0.05)
        assert git(location.branch_dir, "rev-parse", "dev") == dev_tip
        assert git(location.branch_dir, "rev-parse", "master") == master_tip
    finally:
        sync.stop()
        scheduler.shutdown(wait=True, timeout=10)

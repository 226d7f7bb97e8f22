"""Shared fixtures: a real bare 'remote' repository and a helper to push to it."""

import shutil
import subprocess
from dataclasses import dataclass
from pathlib import Path
from unittest.mock import MagicMock

import pytest

from git_mirror.remote import RemoteDescriptor, resolve

requires_git = pytest.mark.skipif(
    shutil.which("git") is None, reason="git executable not available"
)


def git(cwd: Path, *args: str) -> str:
    """Runs git for test setup, failing loudly."""
    res = subprocess.run(
        [
            "git",
            "-c",
            "user.name=Test",
            "-c",
            "user.email=test@example.com",
            "-c",
            "commit.gpgsign=false",
            *args,
        ],
        cwd=cwd,
        check=True,
        capture_output=True,
        text=True,
    )
    return res.stdout.strip()


@dataclass
class Upstream:
    """A bare repository plus a working clone used to publish commits to it."""

    bare: Path
    work: Path
    branch: str = "master"

    def commit(self, name: str, content: str) -> str:
        """Writes a file, commits it, pushes it, and returns the new tip."""
        (self.work / name).write_text(content)
        git(self.work, "add", name)
        git(self.work, "commit", "-q", "-m", f"update {name}")
        git(self.work, "push", "-q", "origin", self.branch)
        return self.tip()

    def tip(self) -> str:
        return git(self.bare, "rev-parse", self.branch)


@pytest.fixture
def upstream(tmp_path: Path) -> Upstream:
    """Creates a bare remote on 'master' with one initial commit."""
    bare = tmp_path / "remote.git"
    work = tmp_path / "upstream"
    bare.mkdir()
    git(bare, "init", "-q", "--bare", "-b", "master")
    git(tmp_path, "clone", "-q", str(bare), str(work))
    git(work, "symbolic-ref", "HEAD", "refs/heads/master")
    up = Upstream(bare, work)
    up.commit("README.md", "hello\n")
    return up


@pytest.fixture
def descriptor() -> RemoteDescriptor:
    return resolve("example.com/org/repo.git", "alice", "s3cr3t")


@pytest.fixture
def local_remote(
    mocker: MagicMock, upstream: Upstream, descriptor: RemoteDescriptor
) -> RemoteDescriptor:
    """A descriptor whose URL points at the local bare repository."""
    mocker.patch.object(
        RemoteDescriptor,
        "display_url",
        new_callable=mocker.PropertyMock,
        return_value=str(upstream.bare),
    )
    return descriptor

"""Git Mirror: keep a local clone continuously synchronized with its remote.

This package provides the repository-synchronization engine (mirror
initialization and the recurring fetch/diff/pull cycle), the background
daemon that wires it together, and a small operator CLI.
"""

from . import (
    cli,
    config,
    constants,
    daemon,
    errors,
    git_wrapper,
    mirror,
    remote,
    scheduler,
    sync,
)

__all__ = [
    "cli",
    "config",
    "constants",
    "daemon",
    "errors",
    "git_wrapper",
    "mirror",
    "remote",
    "scheduler",
    "sync",
]

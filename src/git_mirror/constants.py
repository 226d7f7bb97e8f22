import os
from pathlib import Path

"""Global constants and path definitions for Git Mirror.

This module defines the filesystem layout (adhering to XDG standards where applicable),
the application identifier, the process environment contract, and the default
synchronization timings used across the application.
"""

# --- Identity ---
APP_NAME = "git-mirror"
"""str: The human-readable application name (also the logger name)."""

# --- Process Environment ---
ENV_USER = "GIT_USER"
"""str: Environment variable holding the repository username."""

ENV_SECRET = "GIT_PASSWORD"
"""str: Environment variable holding the repository secret."""

ENV_LOCAL_PATH = "GIT_LOCAL_PATH"
"""str: Environment variable holding the mirror base directory."""

ENV_REPOSITORY = "GIT_REPOSITORY"
"""str: Environment variable holding the host-relative repository path."""

ENV_CONFIG_FILE = "GIT_MIRROR_CONFIG"
"""str: Optional environment variable overriding the config file location."""

REQUIRED_ENV = (ENV_USER, ENV_SECRET, ENV_LOCAL_PATH, ENV_REPOSITORY)
"""tuple[str, ...]: Variables that must be present and non-empty at startup."""

CREDENTIAL_USER_VAR = "GIT_MIRROR_USERNAME"
"""str: Child-process variable read by the inline git credential helper."""

CREDENTIAL_SECRET_VAR = "GIT_MIRROR_SECRET"
"""str: Child-process variable read by the inline git credential helper."""

# --- Paths ---
_XDG_STATE = os.environ.get("XDG_STATE_HOME")
_BASE_STATE = Path(_XDG_STATE) if _XDG_STATE else Path.home() / ".local/state"

STATE_DIR = _BASE_STATE / "git-mirror"
"""Path: The directory for runtime state data (logs, pid file)."""

LOG_FILE = STATE_DIR / "daemon.log"
"""Path: The file path for the daemon process logs."""

PID_FILE = STATE_DIR / "daemon.pid"
"""Path: The file path storing the daemon's process ID."""

# --- Configuration Paths ---
_XDG_CONFIG = os.environ.get("XDG_CONFIG_HOME")
CONFIG_DIR: Path = (
    Path(_XDG_CONFIG) if _XDG_CONFIG else Path.home() / ".config"
) / "git-mirror"
"""Path: The directory for user configuration files."""

CONFIG_FILE: Path = Path(os.environ.get(ENV_CONFIG_FILE) or CONFIG_DIR / "config.toml")
"""Path: The main configuration file path."""

# --- Git / Sync Constants ---
DEFAULT_REMOTE = "origin"
"""str: The remote the mirror fetches from and pulls."""

DEFAULT_MIRROR_DIR = "masterBranch"
"""str: The branch subdirectory created under the mirror base directory."""

DEFAULT_POLL_INTERVAL = 5
"""int: Seconds between synchronization ticks."""

DEFAULT_GIT_TIMEOUT = 120
"""int: Seconds a single git invocation may run before it is killed."""

JOB_PREFIX = "sync"
"""str: Prefix for scheduler job identifiers (`sync:<branch>`)."""

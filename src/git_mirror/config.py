import logging
import os
import re
import tomllib
from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any

from .constants import (
    APP_NAME,
    CONFIG_FILE,
    DEFAULT_GIT_TIMEOUT,
    DEFAULT_MIRROR_DIR,
    DEFAULT_POLL_INTERVAL,
    DEFAULT_REMOTE,
    ENV_LOCAL_PATH,
    ENV_REPOSITORY,
    ENV_SECRET,
    ENV_USER,
    REQUIRED_ENV,
)
from .errors import ConfigurationError

logger = logging.getLogger(APP_NAME)


def parse_size(value: int | str) -> int:
    """Converts human-readable size strings (e.g., '100MB') to bytes."""
    if isinstance(value, int):
        return value
    match = re.match(r"^(\d+(?:\.\d+)?)\s*([kmg]b?)$", str(value).strip().lower())
    if not match:
        raise ValueError(f"Invalid size format '{value}'")
    num, unit = float(match.group(1)), match.group(2)
    multiplier = {
        "k": 1024,
        "kb": 1024,
        "m": 1024**2,
        "mb": 1024**2,
        "g": 1024**3,
        "gb": 1024**3,
    }
    return int(num * multiplier[unit])


def parse_time(value: int | float | str) -> float:
    """Converts human-readable time strings (e.g., '5s', '2 min') to seconds."""
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        if value <= 0:
            raise ValueError(f"Time must be positive, got {value}")
        return value
    match = re.match(
        r"^(\d+(?:\.\d+)?)\s*(ms|s|sec|m|min|h|hr)s?$", str(value).strip().lower()
    )
    if not match:
        raise ValueError(f"Invalid time format '{value}'")
    num, unit = float(match.group(1)), match.group(2)
    if num <= 0:
        raise ValueError(f"Time must be positive, got '{value}'")
    multiplier = {
        "ms": 0.001,
        "s": 1,
        "sec": 1,
        "m": 60,
        "min": 60,
        "h": 3600,
        "hr": 3600,
    }
    return num * multiplier[unit]


@dataclass
class CoreConfig:
    """Core application settings.

    Attributes:
        remote_name (str): The git remote the mirror fetches from and pulls.
        mirror_dir (str): The branch subdirectory created under the base directory.
    """

    remote_name: str = DEFAULT_REMOTE
    mirror_dir: str = DEFAULT_MIRROR_DIR


@dataclass
class SyncConfig:
    """Synchronization loop settings.

    Attributes:
        branch (str): The branch to keep in sync. Empty means the branch the
            clone checked out.
        poll_interval (float): Seconds between ticks.
        git_timeout (float): Seconds a single git invocation may run.
        ff_only (bool): Whether pulls must fast-forward.
        allow_overlap (bool): Whether a tick may start while the previous one
            is still running.
    """

    branch: str = ""
    poll_interval: float = DEFAULT_POLL_INTERVAL
    git_timeout: float = DEFAULT_GIT_TIMEOUT
    ff_only: bool = True
    allow_overlap: bool = False


@dataclass
class LimitsConfig:
    """Resource limitation settings.

    Attributes:
        max_log_size (int): Max bytes for log files before rotation.
    """

    max_log_size: int = 5 * 1024 * 1024


@dataclass
class Config:
    """Global configuration aggregator.

    Attributes:
        core (CoreConfig): Core settings.
        sync (SyncConfig): Synchronization loop settings.
        limits (LimitsConfig): Resource limits.
    """

    core: CoreConfig = field(default_factory=CoreConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)
    limits: LimitsConfig = field(default_factory=LimitsConfig)

    @classmethod
    def load(cls, path: Path | None = None) -> "Config":
        """Loads configuration from defaults and an optional TOML file.

        Args:
            path (Path | None): The TOML file to read. Defaults to CONFIG_FILE.

        Returns:
            Config: The merged configuration object.
        """
        instance = cls()
        config_path = path or CONFIG_FILE
        if config_path.exists():
            instance._merge_from_file(config_path)
        return instance

    def _merge_from_file(self, path: Path) -> None:
        """Parses a TOML file and merges it into the current instance.

        Args:
            path (Path): Path to the TOML file.
        """
        try:
            with open(path, "rb") as f:
                data = tomllib.load(f)

            if "core" in data:
                self.core = self._update_dataclass("core", self.core, data["core"])
            if "sync" in data:
                self.sync = self._update_dataclass("sync", self.sync, data["sync"])
            if "limits" in data:
                self.limits = self._update_dataclass(
                    "limits", self.limits, data["limits"]
                )

            unknown = set(data) - {"core", "sync", "limits"}
            if unknown:
                logger.warning(
                    f"Unknown config sections in {path}: {', '.join(sorted(unknown))}. Ignoring."
                )

        except tomllib.TOMLDecodeError as e:
            logger.error(f"Config syntax error in {path}: {e}")
        except OSError as e:
            logger.warning(f"Failed to load config from {path}: {e}")

    @staticmethod
    def _update_dataclass(section_name: str, instance: Any, updates: dict) -> Any:
        """Updates a dataclass, warning on invalid keys and parsing human-readable formats."""
        valid_keys = instance.__dataclass_fields__.keys()
        filtered_updates = {}

        invalid_keys = set(updates.keys()) - set(valid_keys)
        if invalid_keys:
            logger.warning(
                f"Unknown config keys in [{section_name}]: {', '.join(sorted(invalid_keys))}. Ignoring."
            )

        for k, v in updates.items():
            if k not in valid_keys:
                continue

            try:
                if k == "max_log_size":
                    filtered_updates[k] = parse_size(v)
                elif k in ["poll_interval", "git_timeout"]:
                    filtered_updates[k] = parse_time(v)
                elif k in ["ff_only", "allow_overlap"]:
                    if not isinstance(v, bool):
                        raise ValueError(f"Expected true/false, got '{v}'")
                    filtered_updates[k] = v
                else:
                    if not isinstance(v, str):
                        raise ValueError(f"Expected a string, got '{v}'")
                    filtered_updates[k] = v.strip()
            except ValueError as e:
                logger.warning(
                    f"Config error in [{section_name}].{k}: {e}. Falling back to default."
                )

        return replace(instance, **filtered_updates)


@dataclass(frozen=True)
class Environment:
    """The required process environment, read once at startup.

    Attributes:
        user (str): Repository username.
        secret (str): Repository secret. Excluded from repr.
        local_path (Path): Base directory of the mirror.
        repository (str): Host-relative repository path.
    """

    user: str
    secret: str = field(repr=False)
    local_path: Path
    repository: str

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "Environment":
        """Reads and validates the required variables.

        Args:
            environ (Mapping[str, str] | None): Source mapping. Defaults to os.environ.

        Returns:
            Environment: The validated environment.

        Raises:
            ConfigurationError: If any required variable is absent or empty.
        """
        source = os.environ if environ is None else environ
        missing = [name for name in REQUIRED_ENV if not source.get(name, "").strip()]
        if missing:
            raise ConfigurationError(
                f"Required environment variable(s) not set: {', '.join(missing)}"
            )

        return cls(
            user=source[ENV_USER].strip(),
            secret=source[ENV_SECRET],
            local_path=Path(source[ENV_LOCAL_PATH].strip()).expanduser(),
            repository=source[ENV_REPOSITORY].strip(),
        )

"""Error taxonomy for the mirror synchronization subsystem.

Configuration errors are fatal for the process, initialization errors are
fatal for a single mirror, and transient errors are contained within one tick.
"""


class MirrorError(Exception):
    """Base class for all Git Mirror errors."""


class ConfigurationError(MirrorError):
    """Missing or invalid startup configuration. Synchronization never starts."""


class InitializationError(MirrorError):
    """Directory creation or clone failure during mirror setup."""


class TransientSyncError(MirrorError):
    """Fetch, diff, or pull failure during a tick. Retried on the next tick."""

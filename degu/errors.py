"""
Exceptions raised by degu.

Configuration and sync errors are fatal during startup; the poller and the
control API catch SyncError and report it instead.
"""


class DeguError(Exception):
    """Base class for all degu errors."""


class ConfigurationError(DeguError):
    """Missing remote, invalid remote kind, unreadable options file, etc."""


class SyncError(DeguError):
    """A codebase synchronization step failed."""


class RemoteMismatchError(SyncError):
    """The working copy is bound to a different remote than the one requested."""


class UnsupportedArchiveError(SyncError):
    """The downloaded archive has an extension we cannot extract."""


class DownloadError(SyncError):
    """The archive could not be downloaded."""


class InvalidTransition(DeguError):
    """A lifecycle state change not present in the transition table."""

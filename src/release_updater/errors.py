"""Error taxonomy for the update pipeline.

Every fatal condition is raised as a subclass of ``UpdateError`` so callers
can branch on ``kind`` (or the class) instead of parsing messages.  The
``exit_code`` is what the CLI returns for that failure.
"""

from __future__ import annotations


class UpdateError(Exception):
    """Base class for all update pipeline failures."""

    kind = "update_error"
    exit_code = 1

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ConfigurationError(UpdateError):
    """Missing or malformed local input (version file, settings, credentials)."""

    kind = "configuration"
    exit_code = 2


class UpstreamError(UpdateError):
    """Release service unreachable or returned an unusable response."""

    kind = "upstream"
    exit_code = 3


class TransportError(UpdateError):
    """Archive download failed or produced no file."""

    kind = "transport"
    exit_code = 4


class ArchiveError(UpdateError):
    """Archive is empty, corrupt, or has no determinable wrapper directory."""

    kind = "archive"
    exit_code = 5


class FilesystemError(UpdateError):
    """A tree surgery step failed."""

    kind = "filesystem"
    exit_code = 6


class LockHeldError(FilesystemError):
    """Another update run holds the deployment lock."""

    kind = "lock_held"


class OrchestrationError(UpdateError):
    """A container orchestration command failed."""

    kind = "orchestration"
    exit_code = 7

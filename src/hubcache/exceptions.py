"""Exception hierarchy for hubcache.

All exceptions inherit from :class:`HubCacheError`, which carries an
``exit_code`` attribute mapped to a constant from :mod:`hubcache.exit_codes`.
The top-level error handler in :func:`hubcache.app.main` catches
``HubCacheError`` and exits with the appropriate code, while unexpected
exceptions produce a crash log and exit with :data:`EXIT_GENERIC_FAILURE`.

Subclass hierarchy::

    HubCacheError (exit 1)
    +-- InvalidArgumentError        (exit 2)
    +-- NotFoundError               (exit 4)
    |   +-- CacheEntryNotFoundError (exit 4)
    +-- OfflineModeError            (exit 4)
    +-- TransientFetchError         (exit 6)
    |   +-- RangeNotSatisfiableError
    +-- CorruptDownloadError        (exit 7)
    +-- LockTimeoutError            (exit 8)
    +-- BudgetExceededError         (exit 9)
    +-- InconsistentCacheError      (exit 1)
    +-- ConfigError                 (exit 1)
"""

from __future__ import annotations

from typing import Optional

from hubcache.exit_codes import (
    EXIT_BUDGET_EXCEEDED,
    EXIT_CORRUPT_DOWNLOAD,
    EXIT_GENERIC_FAILURE,
    EXIT_INVALID_USAGE,
    EXIT_LOCK_TIMEOUT,
    EXIT_NOT_FOUND,
    EXIT_TRANSIENT_ERROR,
)


class HubCacheError(Exception):
    """Base exception for all hubcache errors.

    Every subclass sets a class-level ``exit_code`` corresponding to one of
    the constants in :mod:`hubcache.exit_codes`. The CLI entry point catches
    this exception type and calls ``sys.exit(exc.exit_code)``.

    Args:
        message: Human-readable error description printed to stderr.
        exit_code: Optional override for the class-level exit code.
    """

    exit_code: int = EXIT_GENERIC_FAILURE

    def __init__(self, message: str, exit_code: int | None = None):
        super().__init__(message)
        if exit_code is not None:
            self.exit_code = exit_code


class InvalidArgumentError(HubCacheError):
    """Raised for malformed repo ids, revisions, filenames or content ids."""

    exit_code = EXIT_INVALID_USAGE


class NotFoundError(HubCacheError):
    """Raised when the hub reports that a repository, revision or file does not exist.

    Never retried automatically. ``repo_id``, ``revision`` and ``filename``
    are filled in when known.
    """

    exit_code = EXIT_NOT_FOUND

    def __init__(
        self,
        message: str,
        repo_id: Optional[str] = None,
        revision: Optional[str] = None,
        filename: Optional[str] = None,
    ):
        super().__init__(message)
        self.repo_id = repo_id
        self.revision = revision
        self.filename = filename


class CacheEntryNotFoundError(NotFoundError):
    """Raised by :meth:`~hubcache.cache.store.CacheMetadataStore.remove` for an unknown blob.

    Idempotent callers (eviction, clear) treat this as success.
    """

    def __init__(self, content_id: str):
        super().__init__(f"No cached blob with content id '{content_id}'")
        self.content_id = content_id


class OfflineModeError(HubCacheError):
    """Raised when a file is not cached and network access is disabled."""

    exit_code = EXIT_NOT_FOUND


class TransientFetchError(HubCacheError):
    """Raised on network-level failures (timeout, connection drop, 5xx).

    Any partial download is preserved so that a retry resumes instead of
    restarting.
    """

    exit_code = EXIT_TRANSIENT_ERROR


class RangeNotSatisfiableError(TransientFetchError):
    """Raised when the hub rejects a resume ``Range`` request (HTTP 416)."""


class CorruptDownloadError(HubCacheError):
    """Raised when downloaded bytes do not match the declared size or hash.

    The partial file is deleted; a retry starts from byte zero.
    """

    exit_code = EXIT_CORRUPT_DOWNLOAD

    def __init__(self, message: str, expected: object = None, actual: object = None):
        super().__init__(message)
        self.expected = expected
        self.actual = actual


class LockTimeoutError(HubCacheError):
    """Raised when waiting for another fetch of the same file exceeds ``lock_timeout``."""

    exit_code = EXIT_LOCK_TIMEOUT


class BudgetExceededError(HubCacheError):
    """Raised by strict eviction when referenced content prevents reaching the target.

    Args:
        message: Description of the shortfall.
        shortfall_bytes: How many bytes could not be freed.
    """

    exit_code = EXIT_BUDGET_EXCEEDED

    def __init__(self, message: str, shortfall_bytes: int = 0):
        super().__init__(message)
        self.shortfall_bytes = shortfall_bytes


class InconsistentCacheError(HubCacheError):
    """Raised when disk state contradicts the in-memory index and cannot be self-healed."""

    exit_code = EXIT_GENERIC_FAILURE


class ConfigError(HubCacheError):
    """Raised for configuration problems (invalid JSON, bad values, unknown keys)."""

    exit_code = EXIT_GENERIC_FAILURE

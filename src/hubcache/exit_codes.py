"""Numeric process exit codes following `clig.dev <https://clig.dev/>`_ conventions.

Each constant maps to a specific error category and is referenced by the
corresponding :class:`~hubcache.exceptions.HubCacheError` subclass.
Shell scripts wrapping ``hubcache`` can branch on the exit code to tell a
missing remote file from a flaky network without parsing stderr.

Example::

    $ hubcache download bert-base-uncased missing.json
    $ echo $?
    4   # EXIT_NOT_FOUND -- the hub has no such file
"""

EXIT_SUCCESS = 0
"""The command completed successfully."""

EXIT_GENERIC_FAILURE = 1
"""An unclassified error occurred."""

EXIT_INVALID_USAGE = 2
"""The command was invoked with invalid arguments (bad repo id, filename, ...)."""

EXIT_NOT_FOUND = 4
"""The repository, revision or file does not exist (or is not cached while offline)."""

EXIT_TRANSIENT_ERROR = 6
"""A network-level error occurred; retrying will resume the partial download."""

EXIT_CORRUPT_DOWNLOAD = 7
"""The downloaded bytes did not match the size or hash declared by the hub."""

EXIT_LOCK_TIMEOUT = 8
"""Waiting for another process to finish the same download took too long."""

EXIT_BUDGET_EXCEEDED = 9
"""Eviction could not free the requested space because all content is referenced."""

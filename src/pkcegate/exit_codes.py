"""Numeric process exit codes following `clig.dev <https://clig.dev/>`_ conventions.

Each constant maps to a specific error category and is referenced by the
corresponding :class:`~pkcegate.exceptions.PkcegateError` subclass.
Shell wrappers can inspect the exit code to tell a rejected ``state`` from
a port that is already taken without parsing stderr.

Example::

    $ pkcegate login github
    $ echo $?
    6   # EXIT_LISTENER_ERROR -- the redirect port is already in use
"""

EXIT_SUCCESS = 0
"""The command completed successfully."""

EXIT_GENERIC_FAILURE = 1
"""An unclassified error occurred (including configuration errors)."""

EXIT_INVALID_USAGE = 2
"""The command was invoked incorrectly or a session was misused."""

EXIT_AUTH_FAILURE = 3
"""The authorization flow or the token exchange failed."""

EXIT_NOT_FOUND = 4
"""The requested session does not exist."""

EXIT_LISTENER_ERROR = 6
"""The local redirect listener could not be started (address or bind failure)."""

"""Exception hierarchy for pkcegate.

All exceptions inherit from :class:`PkcegateError`, which carries an
``exit_code`` attribute mapped to a constant from :mod:`pkcegate.exit_codes`.
The top-level error handler in :func:`pkcegate.app.main` catches
``PkcegateError`` and exits with the appropriate code, while unexpected
exceptions produce a crash log and exit with :data:`EXIT_GENERIC_FAILURE`.

Subclass hierarchy::

    PkcegateError (exit 1)
    +-- ConfigError               (exit 1)
    +-- EventDispatchError        (exit 1)
    +-- ListenerError             (exit 6)
    |   +-- AddressResolutionError
    |   +-- BindError
    +-- AuthError                 (exit 3)
    |   +-- CsrfMismatchError
    |   +-- TokenEndpointError
    |   +-- TokenDecodeError
    |   +-- CallbackError
    |   +-- AuthorizationDeniedError
    |   +-- FlowTimeoutError
    +-- SessionStateError         (exit 2)
    |   +-- AlreadyExchangedError
    |   +-- SessionAbortedError
    +-- DuplicateSessionError     (exit 2)
    +-- NotFoundError             (exit 4)
"""

from __future__ import annotations

from typing import Optional

from pkcegate.exit_codes import (
    EXIT_AUTH_FAILURE,
    EXIT_GENERIC_FAILURE,
    EXIT_INVALID_USAGE,
    EXIT_LISTENER_ERROR,
    EXIT_NOT_FOUND,
)


class PkcegateError(Exception):
    """Base exception for all pkcegate errors.

    Every subclass sets a class-level ``exit_code`` corresponding to one of
    the constants in :mod:`pkcegate.exit_codes`. The entry point catches
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


class ConfigError(PkcegateError):
    """Raised for configuration problems (missing files, invalid TOML, bad credential sources)."""

    exit_code = EXIT_GENERIC_FAILURE


class EventDispatchError(PkcegateError):
    """Raised when an event handler fails while an event is being emitted."""

    exit_code = EXIT_GENERIC_FAILURE


class ListenerError(PkcegateError):
    """Raised when the local redirect listener cannot be stood up."""

    exit_code = EXIT_LISTENER_ERROR


class AddressResolutionError(ListenerError):
    """Raised when the redirect URL resolves to no usable socket address."""


class BindError(ListenerError):
    """Raised when the listening socket cannot be bound (e.g. port already in use)."""


class AuthError(PkcegateError):
    """Raised when the authorization flow or token exchange fails."""

    exit_code = EXIT_AUTH_FAILURE


class CsrfMismatchError(AuthError):
    """Raised when the redirect's ``state`` does not match the session's CSRF token.

    The session is marked failed and no token request is ever issued.
    """

    def __init__(self, message: str = "CSRF token mismatch: 'state' does not match this session"):
        super().__init__(message)


class TokenEndpointError(AuthError):
    """Raised on a network failure, a non-2xx status, or an OAuth error body.

    Args:
        message: Human-readable error description.
        status_code: HTTP status returned by the token endpoint, or ``None``
            when no response was received.
        body: Raw response body (or transport error text) for diagnostics.
    """

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        body: str = "",
    ):
        super().__init__(message)
        self.status_code = status_code
        self.body = body


class TokenDecodeError(AuthError):
    """Raised when the token endpoint answers 2xx with an unusable body."""


class CallbackError(AuthError):
    """Raised when a redirect callback lacks the ``code`` or ``state`` parameter."""


class AuthorizationDeniedError(AuthError):
    """Raised when the provider redirects back with an ``error`` parameter."""


class FlowTimeoutError(AuthError):
    """Raised when no token arrives before the caller's deadline."""


class SessionStateError(PkcegateError):
    """Raised when an authorization session is used in a state that forbids it."""

    exit_code = EXIT_INVALID_USAGE


class AlreadyExchangedError(SessionStateError):
    """Raised on a second exchange attempt against a single-use session."""


class SessionAbortedError(SessionStateError):
    """Raised when the session was aborted before or during the exchange."""


class DuplicateSessionError(PkcegateError):
    """Raised when starting a session under a name that is already active."""

    exit_code = EXIT_INVALID_USAGE


class NotFoundError(PkcegateError):
    """Raised when no session (pending or running) exists under the given name."""

    exit_code = EXIT_NOT_FOUND

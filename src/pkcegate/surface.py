"""Command surface exposed to a host shell (desktop bridge, CLI, RPC layer).

Two ways of driving a login are offered over the same flow core:

**Self-hosted** -- :meth:`HostCommands.start_server` starts a redirect
listener for the client's ``redirect_url`` and returns the authorization
URL. When the provider redirects back, the tokens are published on the
event bus as ``token-response`` with payload
``{name, accessToken, refreshToken}``. A callback that fails the session
(CSRF mismatch, token endpoint error) is published as ``token-error``
with payload ``{name, message, exitCode}``. :meth:`HostCommands.stop_server`
tears the listener down.

**Caller-driven** -- :meth:`HostCommands.get_authorize_url` creates a
pending session and returns its URL; the host intercepts the redirect
itself (or the user pastes it) and hands the full URL to
:meth:`HostCommands.exchange_redirect_url`, which returns the tokens.

Every command converts library errors into :class:`CommandError`, whose
message is the only thing a host shell needs to display.
"""

from __future__ import annotations

import functools
import logging
import threading
from typing import Any, Callable, Optional, TypeVar
from urllib.parse import urlparse

import httpx

from pkcegate.config import ConfigStore
from pkcegate.exceptions import NotFoundError, PkcegateError
from pkcegate.exit_codes import EXIT_GENERIC_FAILURE
from pkcegate.flow.authorizer import Authorizer, parse_callback_query
from pkcegate.flow.events import EventBus
from pkcegate.flow.registry import SessionRegistry
from pkcegate.models import GlobalConfig

logger = logging.getLogger(__name__)

F = TypeVar("F", bound=Callable[..., Any])


class CommandError(Exception):
    """A command failure reduced to a display string.

    Attributes:
        message: Human-readable reason.
        exit_code: Exit code of the underlying error, for CLI hosts.
    """

    def __init__(self, message: str, exit_code: int = EXIT_GENERIC_FAILURE) -> None:
        super().__init__(message)
        self.message = message
        self.exit_code = exit_code


def _command(func: F) -> F:
    """Re-raise any :class:`PkcegateError` from *func* as :class:`CommandError`."""

    @functools.wraps(func)
    def wrapper(*args: Any, **kwargs: Any) -> Any:
        try:
            return func(*args, **kwargs)
        except PkcegateError as exc:
            logger.debug("Command %s failed: %s", func.__name__, exc)
            raise CommandError(str(exc), exc.exit_code) from exc

    return wrapper  # type: ignore[return-value]


class HostCommands:
    """Named commands a host shell invokes with a client config name.

    Args:
        store: Where ``{name}.client.toml`` / ``{name}.preset.toml`` live.
        registry: Registry for self-hosted sessions. Built from *settings*
            when omitted.
        events: Event bus for a registry built here. Ignored when
            *registry* is given.
        settings: Global settings (listener, token timeout, duplicate
            policy).
        http_client: Optional :class:`httpx.Client` for token requests.
    """

    def __init__(
        self,
        store: Optional[ConfigStore] = None,
        registry: Optional[SessionRegistry] = None,
        events: Optional[EventBus] = None,
        settings: Optional[GlobalConfig] = None,
        http_client: Optional[httpx.Client] = None,
    ) -> None:
        self._store = store or ConfigStore()
        self._settings = settings or GlobalConfig()
        self._http_client = http_client
        self._registry = registry or SessionRegistry(
            events=events,
            settings=self._settings.listener,
            duplicate_policy=self._settings.duplicate_policy,
            http_client=http_client,
            token_timeout=self._settings.token.timeout,
        )
        self._lock = threading.Lock()
        self._pending: dict[str, Authorizer] = {}

    @property
    def events(self) -> EventBus:
        """Bus carrying ``token-response`` events for self-hosted sessions."""
        return self._registry.events

    @property
    def registry(self) -> SessionRegistry:
        return self._registry

    @_command
    def get_client_config(self, name: str) -> dict[str, Any]:
        """Return the merged client config for *name* with secrets masked."""
        return self._store.open_client_config(name).model_dump(mode="json")

    # --- self-hosted ---

    @_command
    def start_server(self, name: str) -> str:
        """Start a redirect listener for client *name*; return the authorization URL."""
        config = self._store.open_client_config(name)
        return self._registry.start(name, config)

    @_command
    def stop_server(self, name: str) -> None:
        """Stop the listener for *name*. No-op if none is running."""
        self._registry.stop(name)

    # --- caller-driven ---

    @_command
    def get_authorize_url(self, name: str) -> str:
        """Create a pending session for client *name* and return its authorization URL.

        A pending session already held under *name* is aborted and replaced.
        """
        config = self._store.open_client_config(name)
        authorizer = Authorizer(
            config, http_client=self._http_client, timeout=self._settings.token.timeout
        )
        with self._lock:
            previous = self._pending.pop(name, None)
            self._pending[name] = authorizer
        if previous is not None:
            previous.abort()
        return authorizer.authorize_url

    @_command
    def exchange_redirect_url(self, name: str, redirect_url: str) -> dict[str, Any]:
        """Exchange the code in *redirect_url* using the pending session for *name*.

        The redirect is parsed before the session is consumed, so a URL
        without ``code``/``state`` leaves the pending session in place.

        Returns:
            ``{accessToken, refreshToken, tokenType, expiresIn, scope}``.
        """
        code, state = parse_callback_query(urlparse(redirect_url).query)
        with self._lock:
            authorizer = self._pending.pop(name, None)
        if authorizer is None:
            raise NotFoundError(
                f"No pending authorization for '{name}'; request an authorize URL first"
            )
        return authorizer.exchange(code, state).to_payload()

    def pending_names(self) -> list[str]:
        with self._lock:
            return sorted(self._pending)

    def shutdown(self) -> None:
        """Stop every listener and abort every pending session."""
        self._registry.stop_all()
        with self._lock:
            pending = list(self._pending.values())
            self._pending.clear()
        for authorizer in pending:
            authorizer.abort()

"""Session registry -- at most one live authorization session per name.

:class:`SessionRegistry` maps a session name (usually the client config
name, e.g. ``"github"``) to a :class:`Session`: the session's
:class:`~pkcegate.flow.authorizer.Authorizer` plus the
:class:`~pkcegate.flow.listener.ListenerHandle` serving its redirect URL.

The registry is an ordinary object. Hosts create one and pass it around;
the lock guarding the mapping can be injected so that a host can share it
with its own bookkeeping.
"""

from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Iterator, Optional

import httpx

from pkcegate.exceptions import DuplicateSessionError
from pkcegate.flow.authorizer import DEFAULT_TOKEN_TIMEOUT, Authorizer
from pkcegate.flow.events import TOKEN_ERROR_EVENT, TOKEN_RESPONSE_EVENT, EventBus
from pkcegate.flow.listener import ListenerHandle, start_listener
from pkcegate.models import (
    ClientConfig,
    DuplicatePolicy,
    ListenerSettings,
    TokenErrorEvent,
    TokenResponseEvent,
)

logger = logging.getLogger(__name__)


@dataclass
class Session:
    """A registered session: its authorizer and the listener serving it."""

    name: str
    authorizer: Authorizer
    listener: ListenerHandle

    @property
    def authorize_url(self) -> str:
        return self.authorizer.authorize_url

    @property
    def finished(self) -> bool:
        """True once the listener thread has exited."""
        return not self.listener.is_running


@dataclass
class _NameLock:
    lock: threading.Lock
    users: int = 0


class SessionRegistry:
    """Start, track and stop named authorization sessions.

    Starting a name that is already running follows *duplicate_policy*:
    ``REPLACE`` stops the old listener (releasing its socket) before the
    new one binds, ``REJECT`` raises
    :class:`~pkcegate.exceptions.DuplicateSessionError`. A session whose
    listener has already exited counts as absent.

    The mapping lock is only held while the dict is read or mutated.
    Starting and stopping the same name is serialised by a per-name lock,
    so a slow shutdown of one session never blocks another name. A
    per-name lock is dropped as soon as no start or stop holds it.

    Args:
        events: Bus on which ``token-response`` and ``token-error`` events
            are published. A private bus is created when omitted.
        settings: Listener settings applied to every session.
        duplicate_policy: Behaviour when a live name is started again.
        lock: Lock guarding the session mapping.
        http_client: Optional :class:`httpx.Client` for token requests.
        token_timeout: Token request timeout in seconds.
    """

    def __init__(
        self,
        events: Optional[EventBus] = None,
        settings: Optional[ListenerSettings] = None,
        duplicate_policy: DuplicatePolicy = DuplicatePolicy.REPLACE,
        lock: Optional[threading.Lock] = None,
        http_client: Optional[httpx.Client] = None,
        token_timeout: float = DEFAULT_TOKEN_TIMEOUT,
    ) -> None:
        self._events = events if events is not None else EventBus()
        self._settings = settings or ListenerSettings()
        self._duplicate_policy = duplicate_policy
        self._lock = lock if lock is not None else threading.Lock()
        self._http_client = http_client
        self._token_timeout = token_timeout
        self._sessions: dict[str, Session] = {}
        self._name_locks: dict[str, _NameLock] = {}

    @property
    def events(self) -> EventBus:
        return self._events

    @property
    def duplicate_policy(self) -> DuplicatePolicy:
        return self._duplicate_policy

    def start(self, name: str, config: ClientConfig) -> str:
        """Start a session for *name* and return its authorization URL.

        Args:
            name: Session name; tags the published ``token-response`` event.
            config: Merged client configuration.

        Raises:
            DuplicateSessionError: If *name* is live and the policy is
                ``REJECT``.
            ConfigError: If the redirect URL cannot be served locally.
            AddressResolutionError: If the redirect URL resolves to nothing.
            BindError: If the listener socket cannot be bound.
        """
        with self._hold_name(name):
            with self._lock:
                previous = self._sessions.get(name)
                if (
                    previous is not None
                    and not previous.finished
                    and self._duplicate_policy is DuplicatePolicy.REJECT
                ):
                    raise DuplicateSessionError(f"Session '{name}' is already running")
                self._sessions.pop(name, None)

            if previous is not None:
                if not previous.finished:
                    logger.info("Replacing running session '%s'", name)
                previous.listener.stop()

            authorizer = Authorizer(
                config, http_client=self._http_client, timeout=self._token_timeout
            )
            try:
                listener = start_listener(
                    name,
                    config.redirect_url,
                    authorizer,
                    self._publish,
                    self._settings,
                    report_error=self._report_error,
                )
            except Exception:
                authorizer.abort()
                raise

            with self._lock:
                self._sessions[name] = Session(name, authorizer, listener)
            logger.info("Started session '%s' on %s", name, listener.url)
            return authorizer.authorize_url

    def stop(self, name: str) -> None:
        """Stop and forget the session for *name*. No-op if there is none."""
        with self._hold_name(name):
            with self._lock:
                session = self._sessions.pop(name, None)
            if session is None:
                return
            session.listener.stop()

    def stop_all(self) -> None:
        """Stop every registered session."""
        with self._lock:
            names = list(self._sessions)
        for name in names:
            self.stop(name)

    def get(self, name: str) -> Optional[Session]:
        """Return the live session for *name*, or ``None``."""
        with self._lock:
            session = self._sessions.get(name)
        if session is None or session.finished:
            return None
        return session

    def names(self) -> list[str]:
        """Names of live sessions, sorted."""
        with self._lock:
            sessions = list(self._sessions.values())
        return sorted(s.name for s in sessions if not s.finished)

    def __contains__(self, name: object) -> bool:
        return isinstance(name, str) and self.get(name) is not None

    def __len__(self) -> int:
        return len(self.names())

    @contextmanager
    def _hold_name(self, name: str) -> Iterator[None]:
        with self._lock:
            entry = self._name_locks.get(name)
            if entry is None:
                entry = self._name_locks[name] = _NameLock(threading.Lock())
            entry.users += 1
        try:
            with entry.lock:
                yield
        finally:
            with self._lock:
                entry.users -= 1
                if entry.users == 0:
                    del self._name_locks[name]

    def _publish(self, event: TokenResponseEvent) -> None:
        self._events.emit(TOKEN_RESPONSE_EVENT, event)

    def _report_error(self, event: TokenErrorEvent) -> None:
        self._events.emit(TOKEN_ERROR_EVENT, event)

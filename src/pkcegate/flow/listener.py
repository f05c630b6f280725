"""Redirect listener -- a transient loopback HTTP server for OAuth2 callbacks.

:func:`start_listener` turns a client's ``redirect_url`` into a concrete
bind address and path, binds a listening socket, and serves ``GET``
requests on that path from a dedicated daemon thread. Each valid callback
(``?code=..&state=..``) is handed to the session's
:class:`~pkcegate.flow.authorizer.Authorizer`; a successful exchange is
published as a :class:`~pkcegate.models.TokenResponseEvent`.

Each connection is handled on its own daemon thread and dropped after
``ListenerSettings.request_timeout`` seconds without a request, so a
browser's idle preconnect cannot hold up the real callback.

Response codes (plain-text bodies)::

    200  exchange succeeded and the event was published
    400  provider error, or 'code' / 'state' missing (session untouched)
    404  path other than the redirect path
    429  more callbacks than ListenerSettings.max_callbacks
    500  exchange or publish failed (error text in the body)
    503  listener is shutting down

The listener keeps serving after a malformed request or a failed
exchange. A failure that leaves the session unusable (CSRF mismatch,
token endpoint error) is also reported through the optional
``report_error`` callback as a :class:`~pkcegate.models.TokenErrorEvent`.

Callers stop the listener with :meth:`ListenerHandle.stop`, which is
idempotent and waits for the serving thread and any callback in progress.
If they do not finish within the grace period, the session is aborted and
the socket closed; from then on the listener cannot publish anything.
"""

from __future__ import annotations

import logging
import socket
import threading
import time
from dataclasses import dataclass
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any, Callable, Optional
from urllib.parse import urlparse

from pkcegate.exceptions import (
    AddressResolutionError,
    AuthError,
    BindError,
    ConfigError,
    PkcegateError,
    SessionStateError,
)
from pkcegate.flow.authorizer import Authorizer, parse_callback_query
from pkcegate.models import (
    AuthorizerState,
    ListenerSettings,
    TokenErrorEvent,
    TokenResponseEvent,
)

logger = logging.getLogger(__name__)

Publisher = Callable[[TokenResponseEvent], None]
ErrorReporter = Callable[[TokenErrorEvent], None]


@dataclass(frozen=True)
class RedirectTarget:
    """Where a redirect URL is served locally.

    Attributes:
        family: Socket address family (``AF_INET`` or ``AF_INET6``).
        address: The ``sockaddr`` passed to ``bind()``.
        host: Host name as written in the redirect URL.
        port: TCP port.
        path: Request path to serve (``/`` when the URL has none).
    """

    family: int
    address: tuple[Any, ...]
    host: str
    port: int
    path: str


def resolve_redirect_target(redirect_url: str) -> RedirectTarget:
    """Resolve *redirect_url* to a local socket address and request path.

    Args:
        redirect_url: e.g. ``http://127.0.0.1:8765/callback``.

    Returns:
        The first address ``getaddrinfo`` reports for the URL's host and port.

    Raises:
        ConfigError: If the URL is not plain ``http`` (a loopback listener
            cannot terminate TLS).
        AddressResolutionError: If the host or port is invalid, or the host
            resolves to zero addresses.
    """
    parsed = urlparse(redirect_url)
    if parsed.scheme != "http":
        raise ConfigError(
            f"Only http:// redirect URLs can be served locally, got {redirect_url!r}"
        )
    host = parsed.hostname
    if not host:
        raise AddressResolutionError(f"Redirect URL has no host: {redirect_url!r}")
    try:
        port = parsed.port if parsed.port is not None else 80
    except ValueError as exc:
        raise AddressResolutionError(f"Redirect URL has an invalid port: {redirect_url!r}") from exc

    try:
        infos = socket.getaddrinfo(host, port, type=socket.SOCK_STREAM)
    except OSError as exc:
        raise AddressResolutionError(f"Cannot resolve {host}:{port}: {exc}") from exc
    if not infos:
        raise AddressResolutionError(f"{host}:{port} resolved to no addresses")

    family, _, _, _, sockaddr = infos[0]
    return RedirectTarget(
        family=family,
        address=tuple(sockaddr),
        host=host,
        port=port,
        path=parsed.path or "/",
    )


class _CallbackServer(ThreadingHTTPServer):
    """HTTP server bound to a resolved redirect target, one thread per connection."""

    daemon_threads = True

    def __init__(self, target: RedirectTarget, listener: ListenerHandle) -> None:
        self.address_family = target.family
        self.listener = listener
        super().__init__(target.address, _CallbackRequestHandler)

    def handle_error(self, request: Any, client_address: Any) -> None:
        logger.exception("Unhandled error while serving redirect from %s", client_address)


class _CallbackRequestHandler(BaseHTTPRequestHandler):
    server: _CallbackServer

    def setup(self) -> None:
        self.timeout = self.server.listener.request_timeout
        super().setup()

    def do_GET(self) -> None:
        parsed = urlparse(self.path)
        status, body = self.server.listener.handle_callback(parsed.path, parsed.query)
        payload = body.encode("utf-8")
        self.send_response(status)
        self.send_header("Content-Type", "text/plain; charset=utf-8")
        self.send_header("Content-Length", str(len(payload)))
        self.end_headers()
        self.wfile.write(payload)

    def log_message(self, format: str, *args: Any) -> None:
        # Request lines carry the authorization code.
        pass


class ListenerHandle:
    """A bound redirect listener serving one session.

    Created (and bound) by :func:`start_listener`. The handle is the only
    way to stop the listener.

    Args:
        name: Session name; tags published events and the thread name.
        target: Resolved bind address and path.
        authorizer: The session whose :meth:`~Authorizer.exchange` is called.
        publish: Receives a :class:`TokenResponseEvent` after each
            successful exchange.
        settings: Poll interval, grace period and callback limits.
        report_error: Receives a :class:`TokenErrorEvent` when a callback
            leaves the session failed.

    Raises:
        BindError: If the socket cannot be bound.
    """

    def __init__(
        self,
        name: str,
        target: RedirectTarget,
        authorizer: Authorizer,
        publish: Publisher,
        settings: Optional[ListenerSettings] = None,
        report_error: Optional[ErrorReporter] = None,
    ) -> None:
        self._name = name
        self._target = target
        self._authorizer = authorizer
        self._publish = publish
        self._report_error = report_error
        self._settings = settings or ListenerSettings()

        self._lock = threading.Lock()
        self._idle = threading.Condition(self._lock)
        self._in_flight: set[int] = set()
        self._publish_lock = threading.Lock()
        self._publish_closed = False
        self._stop_requested = threading.Event()
        self._stop_done = threading.Event()
        self._finished = threading.Event()
        self._stop_called = False
        self._started = False
        self._callbacks = 0
        self._served = 0

        try:
            self._server = _CallbackServer(target, self)
        except OSError as exc:
            raise BindError(
                f"Cannot listen on {target.host}:{target.port} for '{name}': {exc}"
            ) from exc
        self._server.timeout = self._settings.poll_interval
        self._thread = threading.Thread(
            target=self._serve, name=f"pkcegate-listener-{name}", daemon=True
        )

    def __repr__(self) -> str:
        return f"ListenerHandle(name={self._name!r}, url={self.url!r}, running={self.is_running})"

    @property
    def name(self) -> str:
        return self._name

    @property
    def authorizer(self) -> Authorizer:
        return self._authorizer

    @property
    def address(self) -> tuple[Any, ...]:
        """The bound socket address."""
        return tuple(self._server.server_address)

    @property
    def port(self) -> int:
        """The bound TCP port."""
        return self._server.server_address[1]

    @property
    def path(self) -> str:
        return self._target.path

    @property
    def url(self) -> str:
        host = f"[{self._target.host}]" if ":" in self._target.host else self._target.host
        return f"http://{host}:{self.port}{self._target.path}"

    @property
    def request_timeout(self) -> float:
        return self._settings.request_timeout

    @property
    def is_running(self) -> bool:
        return self._started and not self._finished.is_set()

    @property
    def callbacks_served(self) -> int:
        """Number of callbacks that ended in a published token."""
        return self._served

    # ------------------------------------------------------------------ #
    # Lifecycle
    # ------------------------------------------------------------------ #

    def start(self) -> None:
        """Start the serving thread. Called once by :func:`start_listener`."""
        with self._lock:
            if self._started or self._stop_called:
                return
            self._started = True
        self._thread.start()

    def join(self, timeout: Optional[float] = None) -> bool:
        """Block until the serving thread has exited.

        Returns:
            ``True`` if the listener finished within *timeout*.
        """
        if not self._started:
            return True
        return self._finished.wait(timeout)

    def stop(self, grace_period: Optional[float] = None) -> None:
        """Stop serving and release the socket.

        Idempotent: stopping twice, or stopping a listener that already
        finished or never started, is a no-op. A concurrent second call
        waits for the first to complete.

        The stop flag is checked between accept polls, so an idle listener
        exits within ``poll_interval``. A callback being handled is allowed
        to finish for up to *grace_period* seconds; after that the session
        is aborted, publishing is blocked and the socket closed.

        Called while serving a callback (e.g. by an event handler), this
        only requests shutdown.

        Args:
            grace_period: Override for ``ListenerSettings.grace_period``.
        """
        grace = self._settings.grace_period if grace_period is None else grace_period
        self._stop_requested.set()
        if self._on_listener_thread():
            return

        with self._lock:
            first_call = not self._stop_called
            self._stop_called = True
        if not first_call:
            self._stop_done.wait()
            return

        deadline = time.monotonic() + grace
        try:
            if self._started:
                self._thread.join(grace)
            with self._idle:
                self._idle.wait_for(
                    lambda: not self._in_flight,
                    timeout=max(0.0, deadline - time.monotonic()),
                )
                busy = bool(self._in_flight)
            if self._thread.is_alive() or busy:
                logger.warning(
                    "Listener '%s' did not stop within %.1fs; aborting the session",
                    self._name,
                    grace,
                )
            with self._publish_lock:
                self._publish_closed = True
            self._authorizer.abort()
            self._server.server_close()
            if not self._started:
                self._finished.set()
        finally:
            self._stop_done.set()
        logger.info("Stopped redirect listener '%s'", self._name)

    # ------------------------------------------------------------------ #
    # Request handling
    # ------------------------------------------------------------------ #

    def handle_callback(self, path: str, query: str) -> tuple[int, str]:
        """Process one redirect request and return ``(status, body)``.

        Args:
            path: Request path without the query string.
            query: Raw query string.
        """
        ident = threading.get_ident()
        with self._lock:
            self._in_flight.add(ident)
        try:
            return self._process_callback(path, query)
        finally:
            with self._idle:
                self._in_flight.discard(ident)
                self._idle.notify_all()

    def _process_callback(self, path: str, query: str) -> tuple[int, str]:
        if path != self._target.path:
            return 404, "Not Found"
        if self._stop_requested.is_set():
            return 503, "Listener is shutting down"

        with self._lock:
            self._callbacks += 1
            over_limit = self._callbacks > self._settings.max_callbacks
        if over_limit:
            return 429, "Too many callback requests for this session; start a new one"

        try:
            code, state = parse_callback_query(query)
        except AuthError as exc:
            logger.info("Rejected redirect for '%s': %s", self._name, exc)
            return 400, str(exc)

        try:
            result = self._authorizer.exchange(code, state)
        except PkcegateError as exc:
            logger.warning("Token exchange for '%s' failed: %s", self._name, exc)
            if (
                not isinstance(exc, SessionStateError)
                and self._authorizer.state is AuthorizerState.FAILED
            ):
                self._emit_error(exc)
            return 500, str(exc)

        event = TokenResponseEvent.from_result(self._name, result)
        with self._publish_lock:
            if self._publish_closed:
                return 503, "Listener was stopped before the token could be delivered"
            try:
                self._publish(event)
            except Exception as exc:
                logger.exception("Publishing the token for '%s' failed", self._name)
                return 500, str(exc)
            self._served += 1

        if self._settings.stop_after_exchange:
            self._stop_requested.set()
        return 200, "OK"

    def _emit_error(self, exc: PkcegateError) -> None:
        if self._report_error is None:
            return
        event = TokenErrorEvent(name=self._name, message=str(exc), exit_code=exc.exit_code)
        with self._publish_lock:
            if self._publish_closed:
                return
            try:
                self._report_error(event)
            except Exception:
                logger.exception("Reporting the failure for '%s' failed", self._name)

    def _on_listener_thread(self) -> bool:
        if threading.current_thread() is self._thread:
            return True
        with self._lock:
            return threading.get_ident() in self._in_flight

    def _serve(self) -> None:
        logger.info("Listening for '%s' redirects on %s", self._name, self.url)
        try:
            while not self._stop_requested.is_set():
                self._server.handle_request()
        except (OSError, ValueError):
            # stop() closed the socket under us
            if not self._stop_requested.is_set():
                logger.exception("Redirect listener '%s' failed", self._name)
        finally:
            self._server.server_close()
            self._finished.set()


def start_listener(
    name: str,
    redirect_url: str,
    authorizer: Authorizer,
    publish: Publisher,
    settings: Optional[ListenerSettings] = None,
    report_error: Optional[ErrorReporter] = None,
) -> ListenerHandle:
    """Bind a redirect listener for *redirect_url* and start serving.

    Args:
        name: Session name used to tag published events.
        redirect_url: The client's configured redirect URL.
        authorizer: Session that exchanges incoming codes.
        publish: Receives a :class:`TokenResponseEvent` per successful
            exchange.
        settings: Listener behaviour; defaults to :class:`ListenerSettings`.
        report_error: Receives a :class:`TokenErrorEvent` when a callback
            fails the session.

    Returns:
        A running :class:`ListenerHandle`.

    Raises:
        ConfigError: If *redirect_url* is not an ``http`` URL.
        AddressResolutionError: If the URL resolves to no address.
        BindError: If the socket cannot be bound.
    """
    target = resolve_redirect_target(redirect_url)
    handle = ListenerHandle(name, target, authorizer, publish, settings, report_error)
    handle.start()
    return handle

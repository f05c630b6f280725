"""Authorizer -- one in-flight OAuth2 Authorization Code + PKCE session.

An :class:`Authorizer` is created from a :class:`~pkcegate.models.ClientConfig`
and owns everything a single login attempt needs: the generated
authorization URL, the PKCE verifier and the CSRF token. Its lifecycle is::

    created -> awaiting_callback -> exchanged | failed | aborted

The session is single-use. The first exchange whose ``state`` matches the
CSRF token sends the verifier to the token endpoint; afterwards (or after
any failure) the session refuses further exchanges and the caller has to
start a new one, which generates fresh PKCE/CSRF material.

Two ways to feed the redirect back in are offered:

* :meth:`Authorizer.exchange` / :meth:`Authorizer.try_into_token` take the
  ``code`` and ``state`` values directly (used by the redirect listener).
* :meth:`Authorizer.exchange_redirect_url` takes the full redirect URL a
  user pasted or a host shell intercepted.

See Also:
    :mod:`pkcegate.flow.listener` for the loopback server that calls
    :meth:`Authorizer.exchange`.
"""

from __future__ import annotations

import logging
import secrets
import threading
from datetime import datetime, timedelta, timezone
from typing import Any, Optional
from urllib.parse import parse_qs, urlencode, urlparse

import httpx
from pydantic import SecretStr

from pkcegate.exceptions import (
    AlreadyExchangedError,
    AuthorizationDeniedError,
    CallbackError,
    ConfigError,
    CsrfMismatchError,
    SessionAbortedError,
    SessionStateError,
    TokenDecodeError,
    TokenEndpointError,
)
from pkcegate.flow.pkce import CODE_CHALLENGE_METHOD, generate
from pkcegate.models import AuthorizerState, ClientConfig, ExchangeResult

logger = logging.getLogger(__name__)

DEFAULT_TOKEN_TIMEOUT = 30.0


def parse_callback_query(query: str) -> tuple[str, str]:
    """Extract ``code`` and ``state`` from a redirect query string.

    Args:
        query: The raw query string (without the leading ``?``).

    Returns:
        A ``(code, state)`` tuple.

    Raises:
        AuthorizationDeniedError: If the provider redirected back with an
            ``error`` parameter (e.g. the user denied consent).
        CallbackError: If ``code`` or ``state`` is missing or empty.
    """
    params = parse_qs(query)

    if "error" in params:
        message = f"Authorization failed: {params['error'][0]}"
        description = params.get("error_description", [""])[0]
        if description:
            message += f" - {description}"
        raise AuthorizationDeniedError(message)

    code = params.get("code", [""])[0]
    state = params.get("state", [""])[0]
    missing = [name for name, value in (("code", code), ("state", state)) if not value]
    if missing:
        names = " and ".join(f"'{name}'" for name in missing)
        plural = "s" if len(missing) > 1 else ""
        raise CallbackError(f"Missing {names} query parameter{plural} in redirect")
    return code, state


class Authorizer:
    """Owns one authorization session and performs its code exchange.

    Construction is pure: PKCE/CSRF material is generated and the
    authorization URL composed, but no network call is made. The session
    then waits in ``awaiting_callback`` until :meth:`exchange` is called.

    State transitions happen under a per-session lock that is released
    while the token request is in flight, so :meth:`abort` never waits on
    the network.

    Args:
        config: Merged client configuration.
        http_client: Optional :class:`httpx.Client` used for the token
            request. When ``None``, the module-level :func:`httpx.post` is
            used.
        timeout: Token request timeout in seconds.

    Example::

        authorizer = Authorizer(config)
        webbrowser.open(authorizer.authorize_url)
        ...
        result = authorizer.exchange(code, state)
        result.access_token.get_secret_value()
    """

    def __init__(
        self,
        config: ClientConfig,
        http_client: Optional[httpx.Client] = None,
        timeout: float = DEFAULT_TOKEN_TIMEOUT,
    ) -> None:
        self._config = config
        self._http_client = http_client
        self._timeout = timeout
        self._lock = threading.Lock()
        self._exchanging = False
        self._state = AuthorizerState.CREATED

        self._material = generate()
        self._authorize_url = self._build_authorize_url()
        self._state = AuthorizerState.AWAITING_CALLBACK

    def __repr__(self) -> str:
        return f"Authorizer(client_id={self._config.client_id!r}, state={self._state.value!r})"

    # ------------------------------------------------------------------ #
    # Read-only session data
    # ------------------------------------------------------------------ #

    @property
    def config(self) -> ClientConfig:
        return self._config

    @property
    def state(self) -> AuthorizerState:
        """Current lifecycle state."""
        return self._state

    @property
    def authorize_url(self) -> str:
        """The authorization URL to open in the user's browser."""
        return self._authorize_url

    @property
    def csrf_token(self) -> SecretStr:
        return self._material.csrf_token

    @property
    def pkce_verifier(self) -> SecretStr:
        return self._material.code_verifier

    @property
    def code_challenge(self) -> str:
        return self._material.code_challenge

    # ------------------------------------------------------------------ #
    # Exchange
    # ------------------------------------------------------------------ #

    def exchange(self, code: str, state: str) -> ExchangeResult:
        """Exchange an authorization code for tokens.

        The ``state`` must equal this session's CSRF token (compared in
        constant time). On mismatch the session fails without contacting
        the token endpoint.

        Args:
            code: The authorization code from the redirect.
            state: The ``state`` value from the redirect.

        Returns:
            The decoded :class:`~pkcegate.models.ExchangeResult`.

        Raises:
            CsrfMismatchError: If *state* does not match.
            ConfigError: If the preset has no ``token_url``.
            TokenEndpointError: On transport errors, non-2xx statuses, or an
                OAuth ``error`` member in the response body.
            TokenDecodeError: If the response is not a usable token JSON.
            AlreadyExchangedError: If the session was already exchanged or
                an exchange is in flight.
            SessionAbortedError: If the session was aborted, including while
                the token request was in flight.
            SessionStateError: If the session failed earlier.
        """
        with self._lock:
            self._ensure_exchangeable()
            expected = self._material.csrf_token.get_secret_value()
            if not secrets.compare_digest(state.encode("utf-8"), expected.encode("utf-8")):
                self._state = AuthorizerState.FAILED
                logger.warning(
                    "Rejected redirect for client %s: state does not match CSRF token",
                    self._config.client_id,
                )
                raise CsrfMismatchError()
            token_url = self._config.preset.token_url
            if not token_url:
                self._state = AuthorizerState.FAILED
                raise ConfigError(
                    "Preset has no 'token_url'; cannot exchange the authorization code"
                )
            self._exchanging = True

        try:
            result = self._request_token(token_url, code)
        except BaseException:
            with self._lock:
                self._exchanging = False
                if self._state is AuthorizerState.AWAITING_CALLBACK:
                    self._state = AuthorizerState.FAILED
            raise

        with self._lock:
            self._exchanging = False
            if self._state is AuthorizerState.ABORTED:
                raise SessionAbortedError(
                    "Session was aborted while the token request was in flight"
                )
            self._state = AuthorizerState.EXCHANGED

        logger.info("Exchanged authorization code for client %s", self._config.client_id)
        return result

    def try_into_token(self, code: str, state: str) -> ExchangeResult:
        """One-shot exchange that consumes the session.

        Identical checks to :meth:`exchange`; after it returns (or raises)
        the session cannot be exchanged again.
        """
        return self.exchange(code, state)

    def exchange_redirect_url(self, redirect_url: str) -> ExchangeResult:
        """Exchange using the full redirect URL the provider sent the browser to.

        Args:
            redirect_url: e.g. ``http://127.0.0.1:8765/callback?code=..&state=..``.

        Raises:
            AuthorizationDeniedError: If the URL carries an ``error``.
            CallbackError: If ``code`` or ``state`` is missing.
            AuthError: Any failure from :meth:`exchange`.
            SessionStateError: Any misuse reported by :meth:`exchange`.
        """
        code, state = parse_callback_query(urlparse(redirect_url).query)
        return self.exchange(code, state)

    def abort(self) -> None:
        """Abort the session. No-op once the session is exchanged, failed or aborted.

        An exchange that is already in flight still runs to completion, but
        its result is discarded and it raises
        :class:`~pkcegate.exceptions.SessionAbortedError`.
        """
        with self._lock:
            if self._state.is_terminal:
                return
            self._state = AuthorizerState.ABORTED
        logger.debug("Aborted authorization session for client %s", self._config.client_id)

    # ------------------------------------------------------------------ #
    # Private helpers
    # ------------------------------------------------------------------ #

    def _ensure_exchangeable(self) -> None:
        """Raise if the session cannot start an exchange. Caller holds the lock."""
        if self._exchanging:
            raise AlreadyExchangedError("A token exchange is already in progress for this session")
        if self._state is AuthorizerState.EXCHANGED:
            raise AlreadyExchangedError(
                "Authorization code was already exchanged for this session; start a new one"
            )
        if self._state is AuthorizerState.ABORTED:
            raise SessionAbortedError("Session was aborted; start a new one")
        if self._state is AuthorizerState.FAILED:
            raise SessionStateError("Session failed earlier; start a new one")

    def _build_authorize_url(self) -> str:
        """Compose the authorization URL from the preset and PKCE material."""
        params: dict[str, str] = {
            "response_type": "code",
            "client_id": self._config.client_id,
            "redirect_uri": self._config.redirect_url,
        }
        if self._config.scopes:
            params["scope"] = " ".join(self._config.scopes)
        params["state"] = self._material.csrf_token.get_secret_value()
        params["code_challenge"] = self._material.code_challenge
        params["code_challenge_method"] = CODE_CHALLENGE_METHOD

        base = self._config.preset.auth_url.rstrip("?&")
        separator = "&" if "?" in base else "?"
        return f"{base}{separator}{urlencode(params)}"

    def _request_token(self, token_url: str, code: str) -> ExchangeResult:
        """POST the authorization code grant and decode the response."""
        data: dict[str, str] = {
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": self._config.redirect_url,
            "client_id": self._config.client_id,
            "code_verifier": self._material.code_verifier.get_secret_value(),
        }
        if self._config.client_secret is not None:
            data["client_secret"] = self._config.client_secret.get_secret_value()

        post = self._http_client.post if self._http_client is not None else httpx.post
        try:
            response = post(
                token_url,
                data=data,
                headers={"Accept": "application/json"},
                timeout=self._timeout,
            )
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            raise TokenEndpointError(
                f"Token exchange failed with status {exc.response.status_code}: "
                f"{exc.response.text}",
                status_code=exc.response.status_code,
                body=exc.response.text,
            ) from exc
        except httpx.HTTPError as exc:
            raise TokenEndpointError(f"Token exchange failed: {exc}", body=str(exc)) from exc

        try:
            token_data: Any = response.json()
        except ValueError as exc:
            raise TokenDecodeError(
                f"Token endpoint returned a non-JSON body: {response.text[:200]}"
            ) from exc
        if not isinstance(token_data, dict):
            raise TokenDecodeError("Token endpoint returned JSON that is not an object")

        # Some providers (GitHub) report grant errors with a 200 status.
        if "error" in token_data:
            message = f"Token endpoint returned error: {token_data['error']}"
            if token_data.get("error_description"):
                message += f" - {token_data['error_description']}"
            raise TokenEndpointError(
                message, status_code=response.status_code, body=response.text
            )

        return _decode_token_response(token_data)


def _decode_token_response(token_data: dict[str, Any]) -> ExchangeResult:
    """Build an :class:`ExchangeResult` from a token endpoint JSON object."""
    access_token = token_data.get("access_token")
    if not isinstance(access_token, str) or not access_token:
        raise TokenDecodeError("Token response missing 'access_token' field")

    refresh_token = token_data.get("refresh_token")
    if refresh_token is not None and not isinstance(refresh_token, str):
        raise TokenDecodeError("Token response has a non-string 'refresh_token'")

    expires_in: Optional[int] = None
    expires_at: Optional[datetime] = None
    if token_data.get("expires_in") is not None:
        try:
            expires_in = int(token_data["expires_in"])
        except (TypeError, ValueError) as exc:
            raise TokenDecodeError(
                f"Token response has an invalid 'expires_in': {token_data['expires_in']!r}"
            ) from exc
        expires_at = datetime.now(timezone.utc) + timedelta(seconds=expires_in)

    scope = token_data.get("scope")
    return ExchangeResult(
        access_token=SecretStr(access_token),
        refresh_token=SecretStr(refresh_token) if refresh_token else None,
        token_type=str(token_data.get("token_type") or "Bearer"),
        expires_in=expires_in,
        expires_at=expires_at,
        scope=scope if isinstance(scope, str) else None,
    )

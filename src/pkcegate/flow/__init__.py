"""OAuth2 Authorization Code + PKCE flow core.

The package is layered leaf-first:

- :mod:`~pkcegate.flow.pkce` -- verifier/challenge pair and CSRF token.
- :class:`Authorizer` -- one session: builds the authorization URL and
  exchanges the returned code for tokens.
- :func:`start_listener` / :class:`ListenerHandle` -- loopback HTTP server
  that receives the provider's redirect.
- :class:`SessionRegistry` -- at most one live session per name.
- :class:`EventBus` -- delivers ``token-response`` and ``token-error``
  events to the host.

Typical usage::

    from pkcegate.flow import EventBus, SessionRegistry, TOKEN_RESPONSE_EVENT

    bus = EventBus()
    bus.subscribe(TOKEN_RESPONSE_EVENT, lambda _, event: print(event.name))
    registry = SessionRegistry(events=bus)
    url = registry.start("github", client_config)
    # open `url` in a browser; the listener publishes the tokens
    registry.stop("github")
"""

from pkcegate.flow.authorizer import Authorizer, parse_callback_query
from pkcegate.flow.events import TOKEN_ERROR_EVENT, TOKEN_RESPONSE_EVENT, EventBus
from pkcegate.flow.listener import (
    ListenerHandle,
    RedirectTarget,
    resolve_redirect_target,
    start_listener,
)
from pkcegate.flow.pkce import PkceMaterial, generate
from pkcegate.flow.registry import Session, SessionRegistry

__all__ = [
    "Authorizer",
    "EventBus",
    "ListenerHandle",
    "PkceMaterial",
    "RedirectTarget",
    "Session",
    "SessionRegistry",
    "TOKEN_ERROR_EVENT",
    "TOKEN_RESPONSE_EVENT",
    "generate",
    "parse_callback_query",
    "resolve_redirect_target",
    "start_listener",
]

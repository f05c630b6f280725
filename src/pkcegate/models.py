"""Canonical Pydantic models shared across all pkcegate modules.

This is the single source of truth for data shapes in the project. The
models fall into three groups:

**Client configuration** -- read from TOML files in the config directory:
    :class:`ServicePresetConfig`, :class:`ClientRawConfig`, and the merged,
    immutable :class:`ClientConfig`.

**Flow results** -- produced by the authorizer and the redirect listener:
    :class:`AuthorizerState`, :class:`ExchangeResult`, and
    :class:`TokenResponseEvent`.

**Global settings** -- serialised as JSON in the user's config directory:
    :class:`ListenerSettings`, :class:`TokenSettings`, :class:`OutputConfig`,
    :class:`DuplicatePolicy`, and :class:`GlobalConfig`.

Secrets (client secret, tokens) are held as :class:`pydantic.SecretStr`, so
``repr()`` and log lines show ``'**********'``. Reading the value requires
an explicit ``get_secret_value()`` call.
"""

from __future__ import annotations

import enum
from datetime import datetime
from typing import Any, Optional
from urllib.parse import urlparse

from pydantic import BaseModel, ConfigDict, Field, SecretStr, field_validator
from pydantic.alias_generators import to_camel


def _check_http_url(value: str) -> str:
    parsed = urlparse(value)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise ValueError(f"expected an absolute http(s) URL, got {value!r}")
    return value


# --- Client configuration ---


class ServicePresetConfig(BaseModel):
    """Provider endpoints shared by every client of one service.

    Stored as ``{name}.preset.toml``. ``token_url`` is optional so that a
    preset can be written before the token endpoint is known; exchanging a
    code against such a preset fails with a
    :class:`~pkcegate.exceptions.ConfigError`.

    Example::

        ServicePresetConfig(
            auth_url="https://github.com/login/oauth/authorize",
            token_url="https://github.com/login/oauth/access_token",
            base_url="https://api.github.com",
        )
    """

    model_config = ConfigDict(frozen=True)

    auth_url: str
    token_url: Optional[str] = None
    base_url: str

    @field_validator("auth_url", "base_url")
    @classmethod
    def _validate_url(cls, value: str) -> str:
        return _check_http_url(value)

    @field_validator("token_url")
    @classmethod
    def _validate_token_url(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return value
        return _check_http_url(value)


class ClientRawConfig(BaseModel):
    """Client registration as written in ``{name}.client.toml``.

    ``preset_name`` points at the :class:`ServicePresetConfig` to merge
    with. The secret may be given inline (``client_secret``) or through a
    credential source descriptor (``client_secret_source``, see
    :func:`~pkcegate.config.resolve_credential`); the inline value wins
    when both are present.
    """

    preset_name: str
    client_id: str
    client_secret: Optional[SecretStr] = None
    client_secret_source: Optional[str] = Field(
        default=None,
        description="Credential source for the client secret: env:VAR, file:/path, prompt",
    )
    redirect_url: str
    scopes: list[str] = Field(default_factory=list)

    @field_validator("redirect_url")
    @classmethod
    def _validate_redirect_url(cls, value: str) -> str:
        return _check_http_url(value)


class ClientConfig(BaseModel):
    """Merged preset + client configuration used to start a flow.

    Immutable once built. Passed by value into
    :class:`~pkcegate.flow.authorizer.Authorizer`.
    """

    model_config = ConfigDict(frozen=True)

    preset: ServicePresetConfig
    client_id: str
    client_secret: Optional[SecretStr] = None
    redirect_url: str
    scopes: tuple[str, ...] = ()

    @classmethod
    def from_raw(
        cls,
        preset: ServicePresetConfig,
        raw: ClientRawConfig,
        client_secret: Optional[str] = None,
    ) -> ClientConfig:
        """Merge a preset with a raw client config.

        Args:
            preset: The provider preset named by ``raw.preset_name``.
            raw: The client registration.
            client_secret: Already-resolved secret, used when
                ``raw.client_secret`` is not set.
        """
        secret = raw.client_secret
        if secret is None and client_secret is not None:
            secret = SecretStr(client_secret)
        return cls(
            preset=preset,
            client_id=raw.client_id,
            client_secret=secret,
            redirect_url=raw.redirect_url,
            scopes=tuple(raw.scopes),
        )


# --- Flow results ---


class AuthorizerState(str, enum.Enum):
    """Lifecycle of one authorization session.

    ``created -> awaiting_callback -> exchanged | failed | aborted``. The
    last three are terminal.
    """

    CREATED = "created"
    AWAITING_CALLBACK = "awaiting_callback"
    EXCHANGED = "exchanged"
    FAILED = "failed"
    ABORTED = "aborted"

    @property
    def is_terminal(self) -> bool:
        return self in (
            AuthorizerState.EXCHANGED,
            AuthorizerState.FAILED,
            AuthorizerState.ABORTED,
        )


class ExchangeResult(BaseModel):
    """Tokens returned by a successful authorization code exchange."""

    model_config = ConfigDict(frozen=True)

    access_token: SecretStr
    refresh_token: Optional[SecretStr] = None
    token_type: str = "Bearer"
    expires_in: Optional[int] = None
    expires_at: Optional[datetime] = None
    scope: Optional[str] = None

    def to_payload(self) -> dict[str, Any]:
        """Return a camelCase dict with the secrets revealed, for the host shell."""
        return {
            "accessToken": self.access_token.get_secret_value(),
            "refreshToken": (
                self.refresh_token.get_secret_value() if self.refresh_token else None
            ),
            "tokenType": self.token_type,
            "expiresIn": self.expires_in,
            "scope": self.scope,
        }


class TokenResponseEvent(BaseModel):
    """Payload of the ``token-response`` event published after an exchange.

    Serialised with camelCase keys (``accessToken``, ``refreshToken``) via
    ``model_dump(by_alias=True)``.
    """

    model_config = ConfigDict(frozen=True, alias_generator=to_camel, populate_by_name=True)

    name: str
    access_token: str = Field(repr=False)
    refresh_token: Optional[str] = Field(default=None, repr=False)

    @classmethod
    def from_result(cls, name: str, result: ExchangeResult) -> TokenResponseEvent:
        return cls(
            name=name,
            access_token=result.access_token.get_secret_value(),
            refresh_token=(
                result.refresh_token.get_secret_value() if result.refresh_token else None
            ),
        )


class TokenErrorEvent(BaseModel):
    """Payload of the ``token-error`` event published when a callback ends the session.

    Sent after a CSRF mismatch or a failed token request, once no later
    callback can succeed. Serialised as ``{name, message, exitCode}``.
    """

    model_config = ConfigDict(frozen=True, alias_generator=to_camel, populate_by_name=True)

    name: str
    message: str
    exit_code: int


# --- Global settings ---


class DuplicatePolicy(str, enum.Enum):
    """What the session registry does when a name is started twice."""

    REPLACE = "replace"
    REJECT = "reject"


class ListenerSettings(BaseModel):
    """Redirect listener behaviour stored in :class:`GlobalConfig`."""

    poll_interval: float = Field(
        default=0.2, gt=0, description="Seconds between stop-flag checks in the accept loop"
    )
    grace_period: float = Field(
        default=2.0, ge=0, description="Seconds stop() waits before aborting the session"
    )
    max_callbacks: int = Field(
        default=5, ge=1, description="Callback requests served per session"
    )
    request_timeout: float = Field(
        default=10.0, gt=0, description="Seconds a connection may stay idle before it is dropped"
    )
    stop_after_exchange: bool = Field(
        default=False, description="Shut the listener down after one successful exchange"
    )


class TokenSettings(BaseModel):
    """Token endpoint request settings stored in :class:`GlobalConfig`."""

    timeout: float = Field(default=30.0, gt=0, description="Token request timeout in seconds")


class OutputConfig(BaseModel):
    """Default output format preferences stored in :class:`GlobalConfig`."""

    format: str = Field(
        default="auto", description="Output format: auto, json, plain, rich"
    )


class GlobalConfig(BaseModel):
    """User-wide configuration persisted at ``~/.config/pkcegate/config.json``.

    Loaded and saved by :func:`~pkcegate.config.load_global_config` and
    :func:`~pkcegate.config.save_global_config`.
    """

    duplicate_policy: DuplicatePolicy = DuplicatePolicy.REPLACE
    listener: ListenerSettings = Field(default_factory=ListenerSettings)
    token: TokenSettings = Field(default_factory=TokenSettings)
    output: OutputConfig = Field(default_factory=OutputConfig)

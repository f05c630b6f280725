"""PKCE and CSRF material for one authorization session.

:func:`generate` returns a fresh :class:`PkceMaterial`: a ``code_verifier``
/ ``code_challenge`` pair (S256, :rfc:`7636`) and an independent anti-CSRF
``state`` token. Every call draws from :mod:`secrets`; nothing is shared
between calls.
"""

from __future__ import annotations

import base64
import hashlib
import secrets
from dataclasses import dataclass

from pydantic import SecretStr

CODE_CHALLENGE_METHOD = "S256"


@dataclass(frozen=True)
class PkceMaterial:
    """Secrets generated for a single authorization session.

    Attributes:
        code_verifier: High-entropy verifier sent to the token endpoint.
        code_challenge: ``BASE64URL(SHA256(code_verifier))`` sent in the
            authorization URL.
        csrf_token: Value round-tripped through the redirect as ``state``.
    """

    code_verifier: SecretStr
    code_challenge: str
    csrf_token: SecretStr


def code_challenge_for(code_verifier: str) -> str:
    """Return the S256 code challenge for *code_verifier* (unpadded base64url)."""
    digest = hashlib.sha256(code_verifier.encode("ascii")).digest()
    return base64.urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")


def generate() -> PkceMaterial:
    """Generate a PKCE verifier/challenge pair and a CSRF token.

    Returns:
        A new :class:`PkceMaterial`.
    """
    # RFC 7636: 43-128 characters from unreserved character set
    code_verifier = secrets.token_urlsafe(64)[:128]
    return PkceMaterial(
        code_verifier=SecretStr(code_verifier),
        code_challenge=code_challenge_for(code_verifier),
        csrf_token=SecretStr(secrets.token_urlsafe(32)),
    )

"""pkcegate -- OAuth2 Authorization Code + PKCE flow coordinator.

This package drives the client side of an OAuth2 authorization code grant
with PKCE (:rfc:`7636`) for desktop and terminal tools. A *client* is
described by two TOML files in the config directory (a provider *preset* and
the client registration). Starting a flow builds the authorization URL,
binds a short-lived HTTP listener on the client's loopback redirect URL,
validates the returned ``state`` against the session's CSRF token, and
exchanges the authorization code for tokens.

Typical workflow::

    pkcegate login github      # open the browser, wait for the redirect
    pkcegate manual github     # paste the redirect URL yourself

Modules:
    app: Typer application factory and CLI entry point.
    models: Pydantic models shared across the entire package.
    config: XDG-aware directories, client/preset files and global settings.
    flow: PKCE generation, authorizer, redirect listener, session registry.
    surface: Command surface exposed to a host shell.
    exceptions: Exception hierarchy with exit-code mapping.
    exit_codes: Numeric exit codes following clig.dev conventions.
    output: stdout/stderr formatting system with Rich support.
"""

__version__ = "0.1.0"

"""Login commands -- run an Authorization Code + PKCE flow from the terminal.

* ``pkcegate login NAME`` starts a local redirect listener, opens the
  browser, waits for the ``token-response`` event and prints the tokens.
* ``pkcegate manual NAME`` prints the authorization URL and reads the
  redirect URL back from the terminal. No listener is started, so it works
  when the redirect URL points at a host this machine cannot bind.

Tokens go to stdout; the authorization URL and progress go to stderr.
"""

from __future__ import annotations

import threading
import webbrowser

import typer

from pkcegate.models import TokenErrorEvent, TokenResponseEvent
from pkcegate.output import error, format_response, info, progress, success


def _open_browser(url: str) -> None:
    # webbrowser.open can block on some platforms
    threading.Thread(target=webbrowser.open, args=(url,), daemon=True).start()


def _show_authorize_url(url: str, open_browser: bool) -> None:
    info("Open this URL in your browser to authorize:")
    typer.echo(url, err=True)
    if open_browser:
        _open_browser(url)


def login_command(
    name: str = typer.Argument(help="Client name ({name}.client.toml)."),
    no_browser: bool = typer.Option(
        False, "--no-browser", help="Print the URL instead of opening a browser."
    ),
    timeout: float = typer.Option(
        300.0, "--timeout", "-t", min=1.0, help="Seconds to wait for the redirect."
    ),
) -> None:
    """Log in through a local redirect listener.

    Exits as soon as a callback fails the session (wrong ``state``, token
    endpoint error) instead of waiting for the timeout.

    Example::

        pkcegate login github
        pkcegate --json login github --no-browser | jq -r .accessToken
    """
    from pkcegate.config import load_global_config
    from pkcegate.exceptions import AuthError, FlowTimeoutError, PkcegateError
    from pkcegate.flow.events import TOKEN_ERROR_EVENT, TOKEN_RESPONSE_EVENT
    from pkcegate.surface import CommandError, HostCommands

    settings = load_global_config()
    listener = settings.listener.model_copy(update={"stop_after_exchange": True})
    commands = HostCommands(settings=settings.model_copy(update={"listener": listener}))

    received: list[TokenResponseEvent] = []
    failures: list[TokenErrorEvent] = []
    done = threading.Event()

    def _on_token(_event: str, payload: TokenResponseEvent) -> None:
        if payload.name == name:
            received.append(payload)
            done.set()

    def _on_error(_event: str, payload: TokenErrorEvent) -> None:
        if payload.name == name:
            failures.append(payload)
            done.set()

    unsubscribers = [
        commands.events.subscribe(TOKEN_RESPONSE_EVENT, _on_token),
        commands.events.subscribe(TOKEN_ERROR_EVENT, _on_error),
    ]
    try:
        url = commands.start_server(name)
        _show_authorize_url(url, open_browser=not no_browser)
        progress("Waiting for the provider to redirect back...")
        if not done.wait(timeout):
            raise FlowTimeoutError(f"No redirect received within {timeout:g}s")
        if not received:
            raise AuthError(failures[0].message, exit_code=failures[0].exit_code)
    except CommandError as exc:
        error(exc.message)
        raise typer.Exit(code=exc.exit_code) from None
    except PkcegateError as exc:
        error(str(exc))
        raise typer.Exit(code=exc.exit_code) from None
    finally:
        for unsubscribe in unsubscribers:
            unsubscribe()
        commands.shutdown()

    success(f"Authorized '{name}'.")
    format_response(received[0].model_dump(by_alias=True))


def manual_command(
    name: str = typer.Argument(help="Client name ({name}.client.toml)."),
    no_browser: bool = typer.Option(
        False, "--no-browser", help="Print the URL instead of opening a browser."
    ),
) -> None:
    """Log in by pasting the redirect URL back into the terminal.

    Example::

        pkcegate manual github
    """
    from pkcegate.config import load_global_config
    from pkcegate.surface import CommandError, HostCommands

    commands = HostCommands(settings=load_global_config())
    try:
        url = commands.get_authorize_url(name)
        _show_authorize_url(url, open_browser=not no_browser)
        redirect_url = typer.prompt(
            "Paste the URL your browser was redirected to", err=True
        )
        payload = commands.exchange_redirect_url(name, redirect_url.strip())
    except CommandError as exc:
        error(exc.message)
        raise typer.Exit(code=exc.exit_code) from None
    finally:
        commands.shutdown()

    success(f"Authorized '{name}'.")
    format_response(payload)

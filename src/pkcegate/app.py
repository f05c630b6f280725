"""Typer application and CLI entry point for pkcegate.

The root app registers the ``login`` and ``manual`` flow commands and the
``config`` group. :func:`main` is the console-script entry point declared
in ``pyproject.toml``: it installs a SIGINT handler, runs the app, maps
:class:`~pkcegate.exceptions.PkcegateError` to its exit code, and writes a
crash log for anything unexpected.

See Also:
    :mod:`pkcegate.output`: Output formatting initialised in :func:`main_callback`.
"""

from __future__ import annotations

import logging
import signal
import sys
import traceback
from datetime import datetime
from typing import Any

import typer

from pkcegate import __version__
from pkcegate.commands.config import config_app
from pkcegate.commands.flow import login_command, manual_command
from pkcegate.exit_codes import EXIT_GENERIC_FAILURE


app = typer.Typer(
    name="pkcegate",
    help="Run OAuth2 Authorization Code + PKCE logins from the terminal.",
    no_args_is_help=True,
    add_completion=False,
    rich_markup_mode="rich",
)

app.command("login")(login_command)
app.command("manual")(manual_command)
app.add_typer(config_app, name="config", help="Client files and global settings.")


def _version_callback(value: bool) -> None:
    if value:
        typer.echo(f"pkcegate {__version__}")
        raise typer.Exit()


@app.callback()
def main_callback(
    version: bool = typer.Option(
        False,
        "--version",
        callback=_version_callback,
        is_eager=True,
        help="Show version and exit.",
    ),
    json_output: bool = typer.Option(
        False, "--json", help="JSON output format."
    ),
    plain_output: bool = typer.Option(
        False, "--plain", help="Plain text output."
    ),
    no_color: bool = typer.Option(
        False, "--no-color", help="Disable color output."
    ),
    quiet: bool = typer.Option(
        False, "--quiet", "-q", help="Suppress non-essential output."
    ),
    verbose: bool = typer.Option(
        False, "--verbose", "-v", help="Enable debug output and library logging."
    ),
) -> None:
    """Root callback executed before every sub-command.

    Installs the global :class:`~pkcegate.output.OutputManager`. Without
    ``--json`` or ``--plain`` the format comes from the ``output.format``
    setting. ``--verbose`` also routes library log records to stderr at
    DEBUG level.
    """
    from pkcegate.config import load_global_config
    from pkcegate.exceptions import ConfigError
    from pkcegate.output import OutputFormat, OutputManager, set_output

    fmt = OutputFormat.AUTO
    if json_output:
        fmt = OutputFormat.JSON
    elif plain_output:
        fmt = OutputFormat.PLAIN
    else:
        try:
            fmt = OutputFormat(load_global_config().output.format)
        except (ConfigError, ValueError):
            # reported by the command that needs the settings
            fmt = OutputFormat.AUTO

    set_output(OutputManager(format=fmt, no_color=no_color, quiet=quiet, verbose=verbose))

    if verbose:
        logging.basicConfig(
            level=logging.DEBUG,
            format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
        )


def _setup_signal_handlers() -> None:
    """Install a SIGINT handler so Ctrl-C exits cleanly."""

    def _handler(signum: int, frame: Any) -> None:  # noqa: ANN401
        sys.stderr.write("\nCancelled.\n")
        sys.exit(130)

    signal.signal(signal.SIGINT, _handler)


def _write_crash_log(exc: Exception) -> str:
    """Write the current traceback under the crash log directory and return its path."""
    from pkcegate.config import get_logs_dir

    logs_dir = get_logs_dir()
    timestamp = datetime.now().strftime("%Y%m%d-%H%M%S")
    log_path = logs_dir / f"crash-{timestamp}.log"
    log_path.write_text(traceback.format_exc())
    return str(log_path)


def main() -> None:
    """CLI entry point invoked by the ``pkcegate`` console script.

    Raises:
        SystemExit: Always raised (either by Typer or explicitly).
    """
    _setup_signal_handlers()
    try:
        app()
    except SystemExit:
        raise
    except KeyboardInterrupt:
        sys.stderr.write("\nCancelled.\n")
        sys.exit(130)
    except Exception as exc:
        from pkcegate.exceptions import PkcegateError
        from pkcegate.output import error

        if isinstance(exc, PkcegateError):
            error(str(exc))
            sys.exit(exc.exit_code)
        else:
            log_path = _write_crash_log(exc)
            error(f"Unexpected error. Debug log: {log_path}")
            sys.exit(EXIT_GENERIC_FAILURE)

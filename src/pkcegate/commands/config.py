"""Config commands -- inspect client files and edit global settings.

Provides the ``pkcegate config`` sub-command group. Global settings
(:class:`~pkcegate.models.GlobalConfig`) live in ``config.json``; client
registrations and service presets are TOML files under the ``config/``
sub-directory and are edited by hand.
"""

from __future__ import annotations

from typing import Any

import typer

from pkcegate.output import error, format_response, info, print_data, print_table, success


config_app = typer.Typer(no_args_is_help=True)


@config_app.command("path")
def config_path() -> None:
    """Print the directory holding ``*.preset.toml`` and ``*.client.toml`` files."""
    from pkcegate.config import get_clients_dir

    print_data(str(get_clients_dir()))


@config_app.command("show")
def config_show() -> None:
    """Show the global settings.

    Example::

        pkcegate config show
        pkcegate --json config show
    """
    from pkcegate.config import get_config_dir, load_global_config

    config = load_global_config()
    info(f"Config directory: {get_config_dir()}")
    format_response(config.model_dump(mode="json"))


@config_app.command("list")
def config_list() -> None:
    """List configured clients and the preset each one uses."""
    from pkcegate.config import ConfigStore
    from pkcegate.exceptions import ConfigError

    store = ConfigStore()
    rows: list[list[str]] = []
    for name in store.list_clients():
        try:
            raw = store.open_client_raw_config(name)
            rows.append([name, raw.preset_name, raw.redirect_url])
        except ConfigError as exc:
            rows.append([name, "?", f"invalid: {exc}"])

    if not rows:
        info(f"No clients configured in {store.directory}")
        return
    print_table(["Name", "Preset", "Redirect URL"], rows, title="Clients")


@config_app.command("client")
def config_client(
    name: str = typer.Argument(help="Client name ({name}.client.toml)."),
) -> None:
    """Show the merged preset + client configuration, secrets masked.

    Example::

        pkcegate config client github
    """
    from pkcegate.surface import CommandError, HostCommands

    try:
        data = HostCommands().get_client_config(name)
    except CommandError as exc:
        error(exc.message)
        raise typer.Exit(code=exc.exit_code) from None
    format_response(data)


@config_app.command("set")
def config_set(
    key: str = typer.Argument(
        help="Config key (dot notation, e.g., 'listener.grace_period')."
    ),
    value: str = typer.Argument(help="Value to set."),
) -> None:
    """Set a global setting.

    The value is coerced to the type of the current value (bool, int,
    float or str) and the result is validated before saving.

    Example::

        pkcegate config set duplicate_policy reject
        pkcegate config set listener.stop_after_exchange true
        pkcegate config set token.timeout 10
    """
    from pkcegate.config import load_global_config, save_global_config
    from pkcegate.models import GlobalConfig

    config = load_global_config()
    data = config.model_dump(mode="json")

    keys = key.split(".")
    target = data
    for k in keys[:-1]:
        if k not in target or not isinstance(target[k], dict):
            error(f"Invalid config key: {key}")
            raise typer.Exit(code=2)
        target = target[k]

    final_key = keys[-1]
    if final_key not in target or isinstance(target[final_key], dict):
        error(f"Unknown config key: {key}")
        raise typer.Exit(code=2)

    current = target[final_key]
    coerced: Any
    try:
        if isinstance(current, bool):
            coerced = value.lower() in ("true", "1", "yes")
        elif isinstance(current, int):
            coerced = int(value)
        elif isinstance(current, float):
            coerced = float(value)
        else:
            coerced = value
    except ValueError:
        error(f"Expected {type(current).__name__} for {key}, got: {value}")
        raise typer.Exit(code=2) from None

    target[final_key] = coerced

    try:
        new_config = GlobalConfig.model_validate(data)
    except ValueError as exc:
        error(f"Validation error: {exc}")
        raise typer.Exit(code=2) from None

    save_global_config(new_config)
    success(f"Set {key} = {coerced}")


@config_app.command("reset")
def config_reset(
    force: bool = typer.Option(False, "--force", "-f", help="Skip confirmation."),
) -> None:
    """Reset global settings to defaults."""
    from pkcegate.config import save_global_config
    from pkcegate.models import GlobalConfig

    if not force and not typer.confirm("Reset all settings to defaults?"):
        info("Cancelled.")
        raise typer.Exit()

    save_global_config(GlobalConfig())
    success("Configuration reset to defaults.")

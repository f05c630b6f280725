"""Configuration management with XDG paths, atomic writes, and TOML client files.

This module handles all persistent configuration for pkcegate:

* **Directory layout** -- XDG Base Directory compliant on Linux/BSD,
  ``~/.pkcegate/`` on macOS and Windows. See :func:`get_config_dir`,
  :func:`get_data_dir` and :func:`get_logs_dir`.
* **Global config** -- A single :class:`~pkcegate.models.GlobalConfig`
  JSON file storing listener, token and output defaults.
* **Client files** -- ``{name}.preset.toml`` and ``{name}.client.toml``
  under ``<config_dir>/config/``, read through :class:`ConfigStore`.
* **Credential resolution** -- :func:`resolve_credential` reads a client
  secret from an env var, a file, or an interactive prompt.

All file writes use an atomic temp-file-then-rename strategy
(:func:`_atomic_write`) to prevent data loss on crash or power failure.
"""

from __future__ import annotations

import getpass
import json
import os
import platform
import sys
import tempfile
import tomllib
from pathlib import Path
from typing import Any, Optional

from pydantic import ValidationError

from pkcegate.exceptions import ConfigError
from pkcegate.models import ClientConfig, ClientRawConfig, GlobalConfig, ServicePresetConfig

_APP_NAME = "pkcegate"
_CONFIG_FILENAME = "config.json"
_PRESET_SUFFIX = ".preset.toml"
_CLIENT_SUFFIX = ".client.toml"


# --- XDG path resolution ---


def _is_xdg_platform() -> bool:
    """Return True if the platform supports XDG Base Directory spec (Linux/FreeBSD)."""
    return platform.system() == "Linux" or platform.system().endswith("BSD")


def _fallback_base_dir() -> Path:
    return Path.home() / f".{_APP_NAME}"


def _xdg_base(env_var: str, default_segments: tuple[str, ...]) -> Path:
    """Resolve an XDG base directory from an env var with fallback segments under $HOME."""
    env_value = os.environ.get(env_var, "")
    if env_value:
        return Path(env_value)
    base = Path.home()
    for seg in default_segments:
        base = base / seg
    return base


def get_config_dir() -> Path:
    """Return the configuration directory, creating it if necessary.

    On Linux/BSD: ``$XDG_CONFIG_HOME/pkcegate/`` (default ``~/.config/pkcegate/``).
    On macOS/Windows: ``~/.pkcegate/``.

    Returns:
        Absolute path to the configuration directory (guaranteed to exist).
    """
    if _is_xdg_platform():
        path = _xdg_base("XDG_CONFIG_HOME", (".config",)) / _APP_NAME
    else:
        path = _fallback_base_dir()
    path.mkdir(parents=True, exist_ok=True)
    return path


def get_data_dir() -> Path:
    """Return the data directory (crash logs), creating it if necessary.

    On Linux/BSD: ``$XDG_DATA_HOME/pkcegate/`` (default ``~/.local/share/pkcegate/``).
    On macOS/Windows: ``~/.pkcegate/logs/``.
    """
    if _is_xdg_platform():
        path = _xdg_base("XDG_DATA_HOME", (".local", "share")) / _APP_NAME
    else:
        path = _fallback_base_dir() / "logs"
    path.mkdir(parents=True, exist_ok=True)
    return path


def get_logs_dir() -> Path:
    """Return the crash log directory, creating it if necessary.

    ``logs/`` under the XDG data directory; the fallback data directory is
    already ``~/.pkcegate/logs/``.
    """
    path = get_data_dir()
    if _is_xdg_platform():
        path = path / "logs"
        path.mkdir(parents=True, exist_ok=True)
    return path


def get_clients_dir() -> Path:
    """Return the directory holding preset and client TOML files (``<config_dir>/config/``)."""
    path = get_config_dir() / "config"
    path.mkdir(parents=True, exist_ok=True)
    return path


# --- Atomic file writes ---


def _atomic_write(path: Path, data: str) -> None:
    """Write data to file atomically using temp file + rename.

    The temporary file is created in the same directory as *path* so that
    ``os.replace`` is an atomic rename on POSIX systems. On any failure the
    temp file is removed.
    """
    path.parent.mkdir(parents=True, exist_ok=True)

    fd = None
    tmp_path: Optional[str] = None
    try:
        fd = tempfile.NamedTemporaryFile(
            mode="w",
            dir=path.parent,
            prefix=f".{path.name}.",
            suffix=".tmp",
            delete=False,
            encoding="utf-8",
        )
        tmp_path = fd.name
        fd.write(data)
        fd.flush()
        os.fsync(fd.fileno())
        fd.close()
        fd = None
        os.replace(tmp_path, path)
    except BaseException:
        if fd is not None:
            fd.close()
        if tmp_path is not None:
            try:
                os.unlink(tmp_path)
            except OSError:
                pass
        raise


# --- Global config ---


def _global_config_path() -> Path:
    return get_config_dir() / _CONFIG_FILENAME


def load_global_config() -> GlobalConfig:
    """Load the global configuration from the config directory.

    Returns:
        The deserialised :class:`~pkcegate.models.GlobalConfig`, or a
        default instance when the file does not exist.

    Raises:
        ConfigError: If the file contains invalid JSON or fails validation.
    """
    path = _global_config_path()
    if not path.is_file():
        return GlobalConfig()
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
        return GlobalConfig.model_validate(data)
    except (json.JSONDecodeError, ValueError) as exc:
        raise ConfigError(f"Invalid global config at {path}: {exc}") from exc


def save_global_config(config: GlobalConfig) -> None:
    """Persist the global configuration atomically to disk."""
    data = config.model_dump(mode="json")
    _atomic_write(_global_config_path(), json.dumps(data, indent=2) + "\n")


# --- Credential source resolution ---


def resolve_credential(source: str) -> str:
    """Resolve a credential from its source descriptor.

    Supported formats:
        - ``"env:VAR_NAME"`` -- reads ``os.environ["VAR_NAME"]``
        - ``"file:/path/to/file"`` -- reads file content, stripped of whitespace
        - ``"prompt"`` -- prompts user interactively (requires a TTY)

    Raises:
        ConfigError: If the source can't be resolved.
    """
    if source.startswith("env:"):
        var_name = source[4:]
        value = os.environ.get(var_name)
        if value is None:
            raise ConfigError(
                f"Environment variable '{var_name}' is not set (source: {source})"
            )
        return value

    if source.startswith("file:"):
        path = Path(source[5:]).expanduser()
        if not path.is_file():
            raise ConfigError(f"Credential file not found: {path} (source: {source})")
        try:
            return path.read_text(encoding="utf-8").strip()
        except OSError as exc:
            raise ConfigError(f"Cannot read credential file {path}: {exc}") from exc

    if source == "prompt":
        if not sys.stdin.isatty():
            raise ConfigError(
                "Cannot prompt for credentials: stdin is not a TTY (source: prompt)"
            )
        return getpass.getpass("Enter client secret: ")

    raise ConfigError(f"Unknown credential source format: {source}")


# --- Preset / client files ---


class ConfigStore:
    """Reads service presets and client registrations from a directory.

    Layout::

        <directory>/
            github.preset.toml   # auth_url, token_url, base_url
            github.client.toml   # preset_name, client_id, redirect_url, scopes, ...

    Args:
        directory: Directory holding the TOML files. Defaults to
            :func:`get_clients_dir`. Created on first access.
    """

    def __init__(self, directory: Optional[Path] = None) -> None:
        self._directory = directory

    @property
    def directory(self) -> Path:
        path = self._directory if self._directory is not None else get_clients_dir()
        path.mkdir(parents=True, exist_ok=True)
        return path

    def preset_path(self, name: str) -> Path:
        return self.directory / f"{name}{_PRESET_SUFFIX}"

    def client_path(self, name: str) -> Path:
        return self.directory / f"{name}{_CLIENT_SUFFIX}"

    def list_presets(self) -> list[str]:
        """Return all preset names, sorted alphabetically."""
        return self._list(_PRESET_SUFFIX)

    def list_clients(self) -> list[str]:
        """Return all client names, sorted alphabetically."""
        return self._list(_CLIENT_SUFFIX)

    def open_preset_config(self, name: str) -> ServicePresetConfig:
        """Load ``{name}.preset.toml``.

        Raises:
            ConfigError: If the file is missing, is not valid TOML, or fails
                validation.
        """
        path = self.preset_path(name)
        data = self._read_toml(path, f"Preset '{name}'")
        try:
            return ServicePresetConfig.model_validate(data)
        except ValidationError as exc:
            raise ConfigError(f"Invalid preset '{name}' at {path}: {exc}") from exc

    def open_client_raw_config(self, name: str) -> ClientRawConfig:
        """Load ``{name}.client.toml`` without merging its preset.

        Raises:
            ConfigError: If the file is missing, is not valid TOML, or fails
                validation.
        """
        path = self.client_path(name)
        data = self._read_toml(path, f"Client '{name}'")
        try:
            return ClientRawConfig.model_validate(data)
        except ValidationError as exc:
            raise ConfigError(f"Invalid client config '{name}' at {path}: {exc}") from exc

    def open_client_config(self, name: str) -> ClientConfig:
        """Load client *name*, merge it with its preset and resolve the secret.

        The secret comes from ``client_secret`` when set, otherwise from
        ``client_secret_source`` (see :func:`resolve_credential`).

        Raises:
            ConfigError: If either file is missing or invalid, or the secret
                source cannot be resolved.
        """
        raw = self.open_client_raw_config(name)
        preset = self.open_preset_config(raw.preset_name)
        secret: Optional[str] = None
        if raw.client_secret is None and raw.client_secret_source:
            secret = resolve_credential(raw.client_secret_source)
        return ClientConfig.from_raw(preset, raw, client_secret=secret)

    def _list(self, suffix: str) -> list[str]:
        return sorted(
            p.name[: -len(suffix)] for p in self.directory.glob(f"*{suffix}") if p.is_file()
        )

    @staticmethod
    def _read_toml(path: Path, label: str) -> dict[str, Any]:
        if not path.is_file():
            raise ConfigError(f"{label} not found at {path}")
        try:
            with open(path, "rb") as f:
                return tomllib.load(f)
        except tomllib.TOMLDecodeError as exc:
            raise ConfigError(f"{label} at {path} is not valid TOML: {exc}") from exc
        except OSError as exc:
            raise ConfigError(f"Cannot read {path}: {exc}") from exc

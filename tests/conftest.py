"""Shared test fixtures for pkcegate.

Provides isolated config directories, output state management, a fake
OAuth2 token endpoint backed by :class:`httpx.MockTransport`, loopback
port allocation, and a helper that plays the browser's part of a
redirect.
"""

from __future__ import annotations

import socket
from http.client import HTTPConnection
from pathlib import Path
from typing import Any, Callable, Optional
from urllib.parse import parse_qsl

import httpx
import pytest

from pkcegate.models import ClientConfig, ListenerSettings, ServicePresetConfig
from pkcegate.output import OutputFormat, OutputManager, reset_output, set_output


# ---------------------------------------------------------------------------
# Auto-reset global output state between tests
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def _reset_output_between_tests() -> None:
    """Reset the global OutputManager after every test.

    The OutputManager caches references to sys.stdout/sys.stderr at
    creation time. When Typer's CliRunner swaps those streams and the test
    finishes, the cached references go stale.
    """
    yield
    reset_output()


# ---------------------------------------------------------------------------
# Config isolation fixture
# ---------------------------------------------------------------------------


@pytest.fixture
def isolated_config(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Point XDG_CONFIG_HOME / XDG_DATA_HOME at tmp_path.

    Returns:
        The tmp_path root directory for additional file creation.
    """
    monkeypatch.setattr("pkcegate.config._is_xdg_platform", lambda: True)
    monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path / "config"))
    monkeypatch.setenv("XDG_DATA_HOME", str(tmp_path / "data"))
    monkeypatch.chdir(tmp_path)
    return tmp_path


@pytest.fixture
def clients_dir(isolated_config: Path) -> Path:
    """The directory holding *.preset.toml and *.client.toml files."""
    path = isolated_config / "config" / "pkcegate" / "config"
    path.mkdir(parents=True, exist_ok=True)
    return path


def write_client_files(
    directory: Path,
    name: str,
    redirect_url: str,
    token_url: Optional[str] = "https://github.com/login/oauth/access_token",
    extra_client: str = "",
) -> None:
    """Write a matching ``{name}.preset.toml`` and ``{name}.client.toml``."""
    token_line = f'token_url = "{token_url}"\n' if token_url else ""
    (directory / f"{name}.preset.toml").write_text(
        'auth_url = "https://github.com/login/oauth/authorize"\n'
        f"{token_line}"
        'base_url = "https://api.github.com"\n',
        encoding="utf-8",
    )
    (directory / f"{name}.client.toml").write_text(
        f'preset_name = "{name}"\n'
        'client_id = "Iv1.abc123"\n'
        f'redirect_url = "{redirect_url}"\n'
        'scopes = ["repo", "read:user"]\n'
        f"{extra_client}",
        encoding="utf-8",
    )


@pytest.fixture
def client_files() -> Callable[..., None]:
    return write_client_files


# ---------------------------------------------------------------------------
# Output fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def quiet_output() -> OutputManager:
    output = OutputManager(format=OutputFormat.PLAIN, quiet=True)
    set_output(output)
    yield output
    reset_output()


@pytest.fixture
def json_output() -> OutputManager:
    output = OutputManager(format=OutputFormat.JSON)
    set_output(output)
    yield output
    reset_output()


# ---------------------------------------------------------------------------
# CLI runner fixture
# ---------------------------------------------------------------------------


@pytest.fixture
def cli_runner():
    """Typer CLI test runner."""
    from typer.testing import CliRunner

    return CliRunner()


# ---------------------------------------------------------------------------
# Flow fixtures
# ---------------------------------------------------------------------------


class FakeTokenEndpoint:
    """Records token requests and answers with a canned JSON response."""

    def __init__(self) -> None:
        self.requests: list[httpx.Request] = []
        self.status_code = 200
        self.payload: Any = {"access_token": "tok123", "token_type": "bearer"}
        self.client = httpx.Client(transport=httpx.MockTransport(self.handle))

    def handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if isinstance(self.payload, (dict, list)):
            return httpx.Response(self.status_code, json=self.payload)
        return httpx.Response(self.status_code, text=str(self.payload))

    @property
    def calls(self) -> int:
        return len(self.requests)

    @property
    def forms(self) -> list[dict[str, str]]:
        """Form bodies of every request received, decoded."""
        return [dict(parse_qsl(r.content.decode("utf-8"))) for r in self.requests]


@pytest.fixture
def token_endpoint() -> FakeTokenEndpoint:
    endpoint = FakeTokenEndpoint()
    yield endpoint
    endpoint.client.close()


@pytest.fixture
def free_port() -> int:
    """A loopback TCP port that was free a moment ago."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


@pytest.fixture
def preset() -> ServicePresetConfig:
    return ServicePresetConfig(
        auth_url="https://github.com/login/oauth/authorize",
        token_url="https://github.com/login/oauth/access_token",
        base_url="https://api.github.com",
    )


@pytest.fixture
def client_config(preset: ServicePresetConfig, free_port: int) -> ClientConfig:
    return ClientConfig(
        preset=preset,
        client_id="Iv1.abc123",
        redirect_url=f"http://127.0.0.1:{free_port}/callback",
        scopes=("repo", "read:user"),
    )


@pytest.fixture
def listener_settings() -> ListenerSettings:
    """Fast-polling settings so stop() returns quickly in tests."""
    return ListenerSettings(poll_interval=0.05, grace_period=2.0, max_callbacks=5)


def _send_callback(port: int, path: str) -> tuple[int, str]:
    """Play the browser: GET *path* on the loopback listener."""
    conn = HTTPConnection("127.0.0.1", port, timeout=5)
    try:
        conn.request("GET", path)
        response = conn.getresponse()
        return response.status, response.read().decode("utf-8")
    finally:
        conn.close()


@pytest.fixture
def send_callback() -> Callable[[int, str], tuple[int, str]]:
    return _send_callback

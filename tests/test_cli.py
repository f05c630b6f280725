"""CLI tests for the ``pkcegate`` Typer app, driven through CliRunner."""

from __future__ import annotations

import json
import socket
import threading
import time
from pathlib import Path
from typing import Callable
from unittest.mock import MagicMock, patch
from urllib.parse import parse_qs, urlparse

import httpx
import pytest

from pkcegate import __version__
from pkcegate.app import app
from pkcegate.config import get_config_dir, load_global_config
from pkcegate.models import DuplicatePolicy

SendCallback = Callable[[int, str], tuple[int, str]]


def _token_response() -> MagicMock:
    mock_response = MagicMock(spec=httpx.Response)
    mock_response.status_code = 200
    mock_response.json.return_value = {
        "access_token": "tok123",
        "refresh_token": "ref456",
        "token_type": "bearer",
    }
    mock_response.raise_for_status.return_value = None
    return mock_response


def _state_param(authorize_url: str) -> str:
    return parse_qs(urlparse(authorize_url).query)["state"][0]


@pytest.fixture
def redirect_url(free_port: int) -> str:
    return f"http://127.0.0.1:{free_port}/callback"


@pytest.fixture
def github_client(
    clients_dir: Path, client_files: Callable[..., None], redirect_url: str
) -> Path:
    client_files(clients_dir, "github", redirect_url)
    return clients_dir


class TestRoot:
    def test_version(self, cli_runner) -> None:
        result = cli_runner.invoke(app, ["--version"])
        assert result.exit_code == 0
        assert f"pkcegate {__version__}" in result.output

    def test_help_lists_commands(self, cli_runner) -> None:
        result = cli_runner.invoke(app, ["--help"])
        assert result.exit_code == 0
        for command in ("login", "manual", "config"):
            assert command in result.output


class TestConfigCommands:
    def test_path(self, cli_runner, isolated_config: Path) -> None:
        result = cli_runner.invoke(app, ["--plain", "config", "path"])
        assert result.exit_code == 0
        assert str(isolated_config / "config" / "pkcegate" / "config") in result.output

    def test_show_json(self, cli_runner, isolated_config: Path) -> None:
        result = cli_runner.invoke(app, ["--json", "-q", "config", "show"])
        assert result.exit_code == 0
        data = json.loads(result.output)
        assert data["duplicate_policy"] == "replace"
        assert data["listener"]["max_callbacks"] == 5

    def test_set_nested_float(self, cli_runner, isolated_config: Path) -> None:
        result = cli_runner.invoke(app, ["config", "set", "listener.grace_period", "0.5"])
        assert result.exit_code == 0
        assert load_global_config().listener.grace_period == 0.5

    def test_set_bool(self, cli_runner, isolated_config: Path) -> None:
        result = cli_runner.invoke(
            app, ["config", "set", "listener.stop_after_exchange", "true"]
        )
        assert result.exit_code == 0
        assert load_global_config().listener.stop_after_exchange is True

    def test_set_enum(self, cli_runner, isolated_config: Path) -> None:
        result = cli_runner.invoke(app, ["config", "set", "duplicate_policy", "reject"])
        assert result.exit_code == 0
        assert load_global_config().duplicate_policy is DuplicatePolicy.REJECT

    def test_set_unknown_key(self, cli_runner, isolated_config: Path) -> None:
        result = cli_runner.invoke(app, ["config", "set", "listener.nope", "1"])
        assert result.exit_code == 2
        assert "Unknown config key" in result.output

    def test_set_wrong_type(self, cli_runner, isolated_config: Path) -> None:
        result = cli_runner.invoke(app, ["config", "set", "listener.max_callbacks", "many"])
        assert result.exit_code == 2
        assert "Expected int" in result.output

    def test_set_invalid_value(self, cli_runner, isolated_config: Path) -> None:
        result = cli_runner.invoke(app, ["config", "set", "listener.max_callbacks", "0"])
        assert result.exit_code == 2
        assert "Validation error" in result.output
        assert not (get_config_dir() / "config.json").exists()

    def test_reset_force(self, cli_runner, isolated_config: Path) -> None:
        cli_runner.invoke(app, ["config", "set", "duplicate_policy", "reject"])
        result = cli_runner.invoke(app, ["config", "reset", "--force"])
        assert result.exit_code == 0
        assert load_global_config().duplicate_policy is DuplicatePolicy.REPLACE

    def test_reset_cancelled(self, cli_runner, isolated_config: Path) -> None:
        cli_runner.invoke(app, ["config", "set", "duplicate_policy", "reject"])
        result = cli_runner.invoke(app, ["config", "reset"], input="n\n")
        assert result.exit_code == 0
        assert load_global_config().duplicate_policy is DuplicatePolicy.REJECT

    def test_list_empty(self, cli_runner, clients_dir: Path) -> None:
        result = cli_runner.invoke(app, ["config", "list"])
        assert result.exit_code == 0
        assert "No clients configured" in result.output

    def test_list(self, cli_runner, github_client: Path, redirect_url: str) -> None:
        result = cli_runner.invoke(app, ["--plain", "config", "list"])
        assert result.exit_code == 0
        assert f"github\tgithub\t{redirect_url}" in result.output

    def test_client(self, cli_runner, github_client: Path) -> None:
        result = cli_runner.invoke(app, ["--json", "-q", "config", "client", "github"])
        assert result.exit_code == 0
        data = json.loads(result.output)
        assert data["client_id"] == "Iv1.abc123"
        assert data["scopes"] == ["repo", "read:user"]

    def test_client_missing(self, cli_runner, clients_dir: Path) -> None:
        result = cli_runner.invoke(app, ["config", "client", "nope"])
        assert result.exit_code == 1
        assert "Client 'nope' not found" in result.output


class TestManual:
    def test_paste_redirect(
        self,
        cli_runner,
        github_client: Path,
        redirect_url: str,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        shown: list[str] = []
        monkeypatch.setattr(
            "pkcegate.commands.flow._show_authorize_url",
            lambda url, open_browser: shown.append(url),
        )
        monkeypatch.setattr(
            "pkcegate.commands.flow.typer.prompt",
            lambda *args, **kwargs: f"  {redirect_url}?code=ABC&state={_state_param(shown[0])}\n",
        )

        with patch(
            "pkcegate.flow.authorizer.httpx.post", return_value=_token_response()
        ) as mock_post:
            result = cli_runner.invoke(app, ["--json", "-q", "manual", "github"])

        assert result.exit_code == 0, result.output
        payload = json.loads(result.output)
        assert payload["accessToken"] == "tok123"
        assert payload["refreshToken"] == "ref456"
        form = mock_post.call_args.kwargs["data"]
        assert form["code"] == "ABC"
        assert form["redirect_uri"] == redirect_url

    def test_wrong_state(
        self,
        cli_runner,
        github_client: Path,
        redirect_url: str,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        monkeypatch.setattr("pkcegate.commands.flow._open_browser", lambda url: None)
        monkeypatch.setattr(
            "pkcegate.commands.flow.typer.prompt",
            lambda *args, **kwargs: f"{redirect_url}?code=ABC&state=forged",
        )

        with patch("pkcegate.flow.authorizer.httpx.post") as mock_post:
            result = cli_runner.invoke(app, ["manual", "github"])

        assert result.exit_code == 3
        assert "CSRF" in result.output
        mock_post.assert_not_called()

    def test_missing_client(self, cli_runner, clients_dir: Path) -> None:
        result = cli_runner.invoke(app, ["manual", "nope", "--no-browser"])
        assert result.exit_code == 1
        assert "not found" in result.output


class TestLogin:
    def test_browser_redirect_prints_tokens(
        self,
        cli_runner,
        github_client: Path,
        free_port: int,
        send_callback: SendCallback,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        statuses: list[int] = []

        def fake_browser(url: str) -> None:
            path = f"/callback?code=ABC&state={_state_param(url)}"
            threading.Thread(
                target=lambda: statuses.append(send_callback(free_port, path)[0]),
                daemon=True,
            ).start()

        monkeypatch.setattr(
            "pkcegate.commands.flow._show_authorize_url",
            lambda url, open_browser: fake_browser(url),
        )

        with patch("pkcegate.flow.authorizer.httpx.post", return_value=_token_response()):
            result = cli_runner.invoke(app, ["--json", "-q", "login", "github", "-t", "10"])

        assert result.exit_code == 0, result.output
        assert json.loads(result.output) == {
            "name": "github",
            "accessToken": "tok123",
            "refreshToken": "ref456",
        }
        assert statuses == [200]

    def test_wrong_state_fails_without_waiting(
        self,
        cli_runner,
        github_client: Path,
        free_port: int,
        send_callback: SendCallback,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        statuses: list[int] = []

        def fake_browser(url: str) -> None:
            threading.Thread(
                target=lambda: statuses.append(
                    send_callback(free_port, "/callback?code=ABC&state=forged")[0]
                ),
                daemon=True,
            ).start()

        monkeypatch.setattr(
            "pkcegate.commands.flow._show_authorize_url",
            lambda url, open_browser: fake_browser(url),
        )

        started = time.monotonic()
        with patch("pkcegate.flow.authorizer.httpx.post") as mock_post:
            result = cli_runner.invoke(app, ["login", "github", "-t", "30"])

        assert time.monotonic() - started < 10
        assert result.exit_code == 3
        assert "CSRF" in result.output
        assert "No redirect received" not in result.output
        mock_post.assert_not_called()

    def test_missing_client(self, cli_runner, clients_dir: Path) -> None:
        result = cli_runner.invoke(app, ["login", "nope", "--no-browser"])
        assert result.exit_code == 1
        assert "not found" in result.output

    def test_port_in_use(
        self, cli_runner, github_client: Path, free_port: int
    ) -> None:
        blocker = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        try:
            blocker.bind(("127.0.0.1", free_port))
            blocker.listen(1)
            result = cli_runner.invoke(app, ["login", "github", "--no-browser"])
        finally:
            blocker.close()

        assert result.exit_code == 6
        assert "Cannot listen" in result.output

    def test_timeout(self, cli_runner, github_client: Path) -> None:
        result = cli_runner.invoke(app, ["login", "github", "--no-browser", "-t", "1"])

        assert result.exit_code == 3
        assert "No redirect received" in result.output

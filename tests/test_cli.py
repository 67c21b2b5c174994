"""Tests for the etsy-mcp command line."""

import json
import logging
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest
from click.testing import CliRunner

from etsy_mcp.cli import _handle_loop_exception, add_file_logging, main
from etsy_mcp.oauth.store import PersistentStorage
from etsy_mcp.oauth.tokens import now_ms

ENV_VARS = ["ETSY_API_KEY", "ETSY_CLIENT_SECRET", "ETSY_MCP_TOKEN_PATH", "ETSY_MCP_LOG_PATH", "ETSY_MCP_PORT"]


@pytest.fixture
def runner() -> CliRunner:
    """Create a CLI test runner."""
    return CliRunner()


@pytest.fixture
def token_dir(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> Path:
    """Configure credentials and a temp token directory."""
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setattr("etsy_mcp.config.ENV_SEARCH_PATHS", [])
    monkeypatch.setenv("ETSY_API_KEY", "key123")
    monkeypatch.setenv("ETSY_CLIENT_SECRET", "secret456")
    monkeypatch.setenv("ETSY_MCP_TOKEN_PATH", str(tmp_path / "store"))
    monkeypatch.setenv("ETSY_MCP_LOG_PATH", str(tmp_path / "logs"))
    return tmp_path / "store"


def _write_record(token_dir: Path) -> None:
    PersistentStorage(token_dir / "tokens.json").write(
        {
            "access_token": "111.xyz",
            "refresh_token": "r1",
            "expires_at": now_ms() + 3600 * 1000,
            "user_id": 111,
            "shop_id": 99,
            "shop_name": "Pottery Place",
        }
    )


class TestMainGroup:
    """Tests for the top-level command group."""

    def test_help(self, runner: CliRunner) -> None:
        """Test help lists the commands."""
        result = runner.invoke(main, ["--help"])

        assert result.exit_code == 0
        for command in ("serve", "status", "logout"):
            assert command in result.output

    def test_version(self, runner: CliRunner) -> None:
        """Test --version prints a version."""
        result = runner.invoke(main, ["--version"])
        assert result.exit_code == 0

    def test_missing_configuration(self, runner: CliRunner, monkeypatch: pytest.MonkeyPatch) -> None:
        """Test commands exit 1 when credentials are missing."""
        monkeypatch.delenv("ETSY_API_KEY", raising=False)
        monkeypatch.delenv("ETSY_CLIENT_SECRET", raising=False)
        monkeypatch.setattr("etsy_mcp.config.ENV_SEARCH_PATHS", [])

        result = runner.invoke(main, ["status"])

        assert result.exit_code == 1
        assert "ETSY_API_KEY" in result.output

    def test_missing_configuration_json(self, runner: CliRunner, monkeypatch: pytest.MonkeyPatch) -> None:
        """Test the JSON error envelope."""
        monkeypatch.delenv("ETSY_API_KEY", raising=False)
        monkeypatch.delenv("ETSY_CLIENT_SECRET", raising=False)
        monkeypatch.setattr("etsy_mcp.config.ENV_SEARCH_PATHS", [])

        result = runner.invoke(main, ["--json", "status"])

        assert result.exit_code == 1
        data = json.loads(result.stdout)
        assert data["success"] is False
        assert data["error"]["type"] == "ConfigurationError"


class TestStatusCommand:
    """Tests for the status command."""

    def test_not_authenticated(self, runner: CliRunner, token_dir: Path) -> None:
        """Test status with no stored tokens."""
        result = runner.invoke(main, ["status"])

        assert result.exit_code == 0
        assert "Not authenticated" in result.stdout

    def test_authenticated(self, runner: CliRunner, token_dir: Path) -> None:
        """Test status for a stored record."""
        _write_record(token_dir)

        result = runner.invoke(main, ["status"])

        assert result.exit_code == 0
        assert "Authenticated (access token valid for" in result.stdout
        assert "Pottery Place (ID: 99)" in result.stdout

    def test_json_output(self, runner: CliRunner, token_dir: Path) -> None:
        """Test status in JSON mode."""
        _write_record(token_dir)

        result = runner.invoke(main, ["--json", "status"])

        assert result.exit_code == 0
        data = json.loads(result.stdout)
        assert data["success"] is True
        assert data["data"]["user_id"] == 111
        assert data["data"]["authenticated"] is True


class TestLogoutCommand:
    """Tests for the logout command."""

    def test_logout_removes_tokens(self, runner: CliRunner, token_dir: Path) -> None:
        """Test the token file is deleted."""
        _write_record(token_dir)

        result = runner.invoke(main, ["logout"])

        assert result.exit_code == 0
        assert "Stored Etsy tokens were removed" in result.stdout
        assert not (token_dir / "tokens.json").exists()

    def test_logout_without_tokens(self, runner: CliRunner, token_dir: Path) -> None:
        """Test logout with nothing stored."""
        result = runner.invoke(main, ["--json", "logout"])

        assert result.exit_code == 0
        assert json.loads(result.stdout)["data"] == {"removed": False}


class TestServeCommand:
    """Tests for the serve command."""

    def test_serve_runs_server(self, runner: CliRunner, token_dir: Path) -> None:
        """Test serve hands the loaded settings to the server."""
        with (
            patch("etsy_mcp.cli.run_server") as mock_run,
            patch("etsy_mcp.cli.install_safety_nets") as mock_nets,
            patch("etsy_mcp.cli.add_file_logging") as mock_file_logging,
        ):
            result = runner.invoke(main, ["serve"])

        assert result.exit_code == 0
        mock_nets.assert_called_once()
        mock_file_logging.assert_called_once_with(token_dir.parent / "logs")
        settings = mock_run.call_args.args[0]
        assert settings.api_key == "key123"


class TestLogging:
    """Tests for file logging and the event loop safety net."""

    def test_file_logging(self, tmp_path: Path) -> None:
        """Test a timestamped log file is created."""
        root = logging.getLogger()
        before = list(root.handlers)

        log_path = add_file_logging(tmp_path / "logs")

        try:
            assert log_path is not None
            assert log_path.parent == tmp_path / "logs"
            assert log_path.name.startswith("etsy-mcp-")
            assert log_path.exists()
        finally:
            for handler in list(root.handlers):
                if handler not in before:
                    root.removeHandler(handler)
                    handler.close()

    def test_file_logging_disabled(self) -> None:
        """Test no directory means no file logging."""
        assert add_file_logging(None) is None

    def test_unwritable_log_dir(self, tmp_path: Path) -> None:
        """Test an unusable directory disables file logging without raising."""
        blocker = tmp_path / "not-a-dir"
        blocker.write_text("")

        assert add_file_logging(blocker / "logs") is None

    def test_loop_exception_exits(self) -> None:
        """Test unhandled loop exceptions terminate the process."""
        loop = MagicMock()

        with patch("etsy_mcp.cli.os._exit") as mock_exit, patch("etsy_mcp.cli.logging.shutdown"):
            _handle_loop_exception(loop, {"message": "boom", "exception": RuntimeError("boom")})

        mock_exit.assert_called_once_with(1)
        loop.default_exception_handler.assert_not_called()

    def test_loop_message_without_exception(self) -> None:
        """Test plain loop messages go to the default handler."""
        loop = MagicMock()

        with patch("etsy_mcp.cli.os._exit") as mock_exit:
            _handle_loop_exception(loop, {"message": "slow callback"})

        mock_exit.assert_not_called()
        loop.default_exception_handler.assert_called_once()

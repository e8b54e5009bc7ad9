"""Tests for the shipyard CLI.

Integration tests using CliRunner for:
- shipyard serve
- shipyard services
- shipyard token
"""

import logging
from pathlib import Path
from unittest.mock import MagicMock, patch

import jwt
import pytest
from typer.testing import CliRunner

from shipyard.cli import app
from shipyard.deploy.metadata_store import MetadataStore, ServiceMeta
from shipyard.deploy.models import Release, Service

runner = CliRunner()


@pytest.fixture(autouse=True)
def isolated(monkeypatch, tmp_path):
    """Run from an empty directory with no SHIPYARD_* overrides."""
    for name in ("SHIPYARD_DATA_DIR", "SHIPYARD_PORT", "SHIPYARD_HOST", "SHIPYARD_JWT_SECRET"):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.chdir(tmp_path)
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield
    root.handlers[:] = handlers
    root.setLevel(level)


def _config(tmp_path: Path, data_dir: Path) -> Path:
    path = tmp_path / "shipyard.yaml"
    path.write_text(f"server:\n  data_dir: {data_dir}\n  jwt_secret: cli-secret\n")
    return path


class TestServicesCommand:
    """Tests for 'shipyard services'."""

    def test_empty(self, tmp_path: Path) -> None:
        """Empty data dir prints a notice."""
        result = runner.invoke(app, ["services", "--config", str(_config(tmp_path, tmp_path / "data"))])

        assert result.exit_code == 0
        assert "No services" in result.output

    def test_lists_services(self, tmp_path: Path) -> None:
        """Services and their active release are listed."""
        data_dir = tmp_path / "data"
        release = Release(id="rel-1", filename="rel-1.tgz", created_at="2024-01-01T00:00:00Z")
        MetadataStore(data_dir).save(
            "api",
            ServiceMeta.from_service(Service(name="api", releases=(release,), active_release_id="rel-1")),
        )

        result = runner.invoke(app, ["services", "--data-dir", str(data_dir)])

        assert result.exit_code == 0
        assert "api" in result.output
        assert "rel-1" in result.output

    def test_missing_config_exits_2(self, tmp_path: Path) -> None:
        """An explicit config that does not exist is a config error."""
        result = runner.invoke(app, ["services", "--config", str(tmp_path / "missing.yaml")])

        assert result.exit_code == 2
        assert "Configuration error" in result.output


class TestTokenCommand:
    """Tests for 'shipyard token'."""

    def test_prints_signed_token(self, tmp_path: Path) -> None:
        """Token verifies with the configured secret."""
        result = runner.invoke(app, ["token", "--config", str(_config(tmp_path, tmp_path / "data"))])

        assert result.exit_code == 0
        claims = jwt.decode(result.output.strip(), "cli-secret", algorithms=["HS256"])
        assert claims["sub"] == "admin"


class TestServeCommand:
    """Tests for 'shipyard serve'."""

    @patch("uvicorn.run")
    def test_runs_uvicorn_with_overrides(self, mock_run: MagicMock, tmp_path: Path) -> None:
        """CLI flags override config values."""
        config_path = _config(tmp_path, tmp_path / "data")

        result = runner.invoke(app, ["serve", "--config", str(config_path), "--port", "4123"])

        assert result.exit_code == 0
        mock_run.assert_called_once()
        assert mock_run.call_args.kwargs["port"] == 4123
        assert mock_run.call_args.kwargs["host"] == "127.0.0.1"

    @patch("uvicorn.run")
    def test_invalid_port_exits_2(self, mock_run: MagicMock) -> None:
        """Out-of-range port is a config error."""
        result = runner.invoke(app, ["serve", "--port", "70000"])

        assert result.exit_code == 2
        mock_run.assert_not_called()

    @patch("uvicorn.run", side_effect=OSError("address in use"))
    def test_bind_failure_exits_1(self, mock_run: MagicMock, tmp_path: Path) -> None:
        """Server start failures exit with 1."""
        result = runner.invoke(app, ["serve", "--config", str(_config(tmp_path, tmp_path / "data"))])

        assert result.exit_code == 1


class TestVersion:
    """Tests for --version."""

    def test_version(self) -> None:
        """Version flag prints the package version."""
        result = runner.invoke(app, ["--version"])

        assert result.exit_code == 0
        assert "shipyard" in result.output

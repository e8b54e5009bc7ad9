"""Tests for ServerConfig and load_config()."""

from pathlib import Path

import pytest

from shipyard.core.config import ServerConfig, load_config
from shipyard.core.exceptions import ConfigError


@pytest.fixture(autouse=True)
def clean_env(monkeypatch, tmp_path):
    """Isolate from SHIPYARD_* variables and a shipyard.yaml in cwd."""
    for name in (
        "SHIPYARD_DATA_DIR",
        "SHIPYARD_HOST",
        "SHIPYARD_PORT",
        "SHIPYARD_ADMIN_PASSWORD",
        "SHIPYARD_JWT_SECRET",
    ):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.chdir(tmp_path)


class TestServerConfig:
    """Tests for model defaults and validation."""

    def test_defaults(self):
        """Defaults match the documented values."""
        config = ServerConfig()

        assert config.port == 3000
        assert config.max_upload_bytes == 50 * 1024 * 1024
        assert config.install_command == ["npm", "install", "--omit=dev"]
        assert config.runtime_command == ["node"]
        assert config.default_entry_point == "index.js"
        assert config.admin_password is None
        assert config.install_enabled

    def test_command_from_string(self):
        """A command string is split on whitespace."""
        assert ServerConfig(install_command="yarn install --production").install_command == [
            "yarn",
            "install",
            "--production",
        ]

    def test_install_can_be_disabled(self):
        """Empty install command disables the step."""
        assert not ServerConfig(install_command=[]).install_enabled

    def test_runtime_command_required(self):
        """Empty runtime command is invalid."""
        with pytest.raises(ValueError):
            ServerConfig(runtime_command=[])

    @pytest.mark.parametrize("port", [0, 70000])
    def test_port_range(self, port):
        """Port must be a valid TCP port."""
        with pytest.raises(ValueError):
            ServerConfig(port=port)

    def test_frozen(self):
        """Config cannot be mutated after load."""
        config = ServerConfig()
        with pytest.raises(ValueError):
            config.port = 1


class TestLoadConfig:
    """Tests for layered loading."""

    def test_no_file_uses_defaults(self):
        """Without shipyard.yaml, defaults apply."""
        assert load_config() == ServerConfig()

    def test_reads_server_section(self, tmp_path: Path):
        """Values come from the server: section."""
        path = tmp_path / "custom.yaml"
        path.write_text("server:\n  port: 4000\n  data_dir: /srv/shipyard\n  install_command: []\n")

        config = load_config(path)

        assert config.port == 4000
        assert config.data_dir == Path("/srv/shipyard")
        assert not config.install_enabled

    def test_default_file_in_cwd(self, tmp_path: Path):
        """shipyard.yaml in the working directory is picked up."""
        (tmp_path / "shipyard.yaml").write_text("server:\n  host: 0.0.0.0\n")

        assert load_config().host == "0.0.0.0"

    def test_env_overrides_file(self, tmp_path: Path, monkeypatch):
        """SHIPYARD_* variables win over the file."""
        path = tmp_path / "c.yaml"
        path.write_text("server:\n  port: 4000\n")
        monkeypatch.setenv("SHIPYARD_PORT", "5000")
        monkeypatch.setenv("SHIPYARD_ADMIN_PASSWORD", "pw")

        config = load_config(path)

        assert config.port == 5000
        assert config.admin_password == "pw"

    def test_overrides_win(self, monkeypatch):
        """Explicit overrides beat environment; None overrides are ignored."""
        monkeypatch.setenv("SHIPYARD_PORT", "5000")

        config = load_config(overrides={"port": 6000, "host": None})

        assert config.port == 6000
        assert config.host == "127.0.0.1"

    def test_missing_explicit_file(self, tmp_path: Path):
        """An explicit path that does not exist is an error."""
        with pytest.raises(ConfigError, match="not found"):
            load_config(tmp_path / "missing.yaml")

    def test_invalid_yaml(self, tmp_path: Path):
        """Broken YAML is a ConfigError."""
        path = tmp_path / "bad.yaml"
        path.write_text("server: [unclosed\n")

        with pytest.raises(ConfigError, match="Invalid YAML"):
            load_config(path)

    def test_invalid_value(self, tmp_path: Path):
        """Validation failures are ConfigError."""
        path = tmp_path / "bad.yaml"
        path.write_text("server:\n  port: not-a-port\n")

        with pytest.raises(ConfigError, match="Invalid configuration"):
            load_config(path)

    def test_section_must_be_mapping(self, tmp_path: Path):
        """server: must hold a mapping."""
        path = tmp_path / "bad.yaml"
        path.write_text("server: 3\n")

        with pytest.raises(ConfigError):
            load_config(path)

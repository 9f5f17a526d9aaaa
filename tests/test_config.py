"""Tests for configuration loading."""

from pathlib import Path

import pytest

from portalsync.config import (
    DEFAULT_ADVBOX_BASE_URL,
    DEFAULT_DB_PATH,
    AdvboxConfig,
    find_config_file,
    load_config,
)

ENV_VARS = [
    "PORTALSYNC_ADVBOX_API_TOKEN",
    "PORTALSYNC_ADVBOX_BASE_URL",
    "PORTALSYNC_ADVBOX_PAGE_SIZE",
    "PORTALSYNC_ADVBOX_TIME_BUDGET",
    "PORTALSYNC_DB_PATH",
    "PORTALSYNC_ENCRYPTION_KEY",
    "PORTALSYNC_JWT_SECRET",
    "PORTALSYNC_JWT_ALGORITHM",
    "PORTALSYNC_HOST",
    "PORTALSYNC_PORT",
    "PORTALSYNC_LOG_LEVEL",
    "PORTALSYNC_CORS_ORIGINS",
]


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    """Keep the developer's environment out of the tests."""
    for var in ENV_VARS:
        monkeypatch.delenv(var, raising=False)


class TestAdvboxConfig:
    """Tests for AdvboxConfig."""

    def test_defaults(self):
        """Test the sync tuning defaults."""
        config = AdvboxConfig(api_token="token")
        assert config.base_url == DEFAULT_ADVBOX_BASE_URL
        assert config.page_size == 50
        assert config.page_delay == 0.8
        assert config.rate_limit_delay == 5.0
        assert config.max_rate_limit_retries == 3
        assert config.time_budget == 55.0


class TestFindConfigFile:
    """Tests for find_config_file function."""

    def test_finds_existing_config(self, temp_dir, monkeypatch):
        """Test finding an existing config file."""
        config_path = temp_dir / "config.toml"
        config_path.write_text('[advbox]\napi_token = "test"')
        monkeypatch.setattr("portalsync.config.DEFAULT_CONFIG_PATHS", [config_path])
        assert find_config_file() == config_path

    def test_returns_none_when_no_config(self, temp_dir, monkeypatch):
        """Test returning None when no config file exists."""
        nonexistent = temp_dir / "nonexistent.toml"
        monkeypatch.setattr("portalsync.config.DEFAULT_CONFIG_PATHS", [nonexistent])
        assert find_config_file() is None


class TestLoadConfig:
    """Tests for load_config function."""

    def test_load_from_toml_file(self, temp_dir):
        """Test loading config from a TOML file."""
        config_path = temp_dir / "config.toml"
        config_path.write_text("""
[advbox]
api_token = 'toml-token'
base_url = 'https://advbox.example/api/v1'
page_size = 25
time_budget = 30

[database]
path = 'custom.db'

[security]
encryption_key = 'test-key'
jwt_secret = 'jwt-secret'

[server]
host = '0.0.0.0'
port = 9000
cors_origins = ['https://intranet.example']
""")
        config = load_config(config_path)
        assert config.advbox.api_token == "toml-token"
        assert config.advbox.base_url == "https://advbox.example/api/v1"
        assert config.advbox.page_size == 25
        assert config.advbox.time_budget == 30.0
        assert config.database.path == temp_dir / "custom.db"
        assert config.security.encryption_key == "test-key"
        assert config.security.jwt_secret == "jwt-secret"
        assert config.server.host == "0.0.0.0"
        assert config.server.port == 9000
        assert config.server.cors_origins == ("https://intranet.example",)

    def test_load_with_env_vars(self, temp_dir, monkeypatch):
        """Test environment variables override TOML values."""
        config_path = temp_dir / "config.toml"
        config_path.write_text("""
[advbox]
api_token = 'toml-token'
page_size = 25
""")
        monkeypatch.setenv("PORTALSYNC_ADVBOX_API_TOKEN", "env-token")
        monkeypatch.setenv("PORTALSYNC_ADVBOX_PAGE_SIZE", "10")
        monkeypatch.setenv("PORTALSYNC_JWT_SECRET", "env-secret")
        monkeypatch.setenv("PORTALSYNC_PORT", "8123")
        config = load_config(config_path)
        assert config.advbox.api_token == "env-token"
        assert config.advbox.page_size == 10
        assert config.security.jwt_secret == "env-secret"
        assert config.server.port == 8123

    def test_cors_origins_from_env(self, temp_dir, monkeypatch):
        """Test a comma separated origin list."""
        monkeypatch.setattr("portalsync.config.DEFAULT_CONFIG_PATHS", [])
        monkeypatch.setenv(
            "PORTALSYNC_CORS_ORIGINS", "https://a.example, https://b.example,"
        )
        config = load_config(None)
        assert config.server.cors_origins == ("https://a.example", "https://b.example")

    def test_load_with_defaults(self, temp_dir):
        """Test loading config with default values."""
        config_path = temp_dir / "config.toml"
        config_path.write_text("[advbox]\napi_token = 'token'\n")
        config = load_config(config_path)
        assert config.advbox.base_url == DEFAULT_ADVBOX_BASE_URL
        assert config.database.path == temp_dir / DEFAULT_DB_PATH
        assert config.security.encryption_key is None
        assert config.security.jwt_secret is None
        assert config.security.jwt_algorithm == "HS256"
        assert config.server.cors_origins == ("*",)

    def test_load_without_config_file(self, monkeypatch):
        """Test loading config when no file exists."""
        monkeypatch.setattr("portalsync.config.DEFAULT_CONFIG_PATHS", [])
        config = load_config(None)
        assert config.advbox.api_token is None
        assert config.database.path == Path(DEFAULT_DB_PATH)
        assert config.server.port == 8000

    def test_empty_token_is_none(self, temp_dir):
        """Test an empty token counts as missing."""
        config_path = temp_dir / "config.toml"
        config_path.write_text("[advbox]\napi_token = ''\n")
        assert load_config(config_path).advbox.api_token is None

    def test_absolute_db_path(self, temp_dir):
        """Test absolute database paths are kept."""
        db_path = temp_dir / "data" / "portal.db"
        config_path = temp_dir / "config.toml"
        config_path.write_text(f"[database]\npath = '{db_path}'\n")
        assert load_config(config_path).database.path == db_path

    def test_default_config_path_used(self, temp_dir, monkeypatch):
        """Test the discovered config file is loaded."""
        config_path = temp_dir / "config.toml"
        config_path.write_text("[advbox]\napi_token = 'found'\n")
        monkeypatch.setattr("portalsync.config.DEFAULT_CONFIG_PATHS", [config_path])
        config = load_config()
        assert config.advbox.api_token == "found"
        assert config.database.path == temp_dir / DEFAULT_DB_PATH

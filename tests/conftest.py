"""Shared test fixtures."""

import tempfile
from pathlib import Path

import pytest

from portalsync.config import (
    AdvboxConfig,
    Config,
    DatabaseConfig,
    SecurityConfig,
    ServerConfig,
)
from portalsync.db.repository import Repository

ADVBOX_TEST_URL = "https://advbox.test/api/v1"
JWT_TEST_SECRET = "test-jwt-secret-with-enough-entropy-0123456789"


@pytest.fixture
def temp_dir():
    """Create a temporary directory for test files."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def temp_db_path(temp_dir):
    """Create a temporary database path."""
    return temp_dir / "test.db"


@pytest.fixture
def advbox_config():
    """Create a test ADVBox config."""
    return AdvboxConfig(api_token="advbox-test-token", base_url=ADVBOX_TEST_URL)


@pytest.fixture
def database_config(temp_db_path):
    """Create a test database config."""
    return DatabaseConfig(path=temp_db_path)


@pytest.fixture
def security_config():
    """Create a test security config without encryption."""
    return SecurityConfig(encryption_key=None, jwt_secret=JWT_TEST_SECRET)


@pytest.fixture
def security_config_with_encryption():
    """Create a test security config with encryption."""
    from cryptography.fernet import Fernet

    key = Fernet.generate_key().decode()
    return SecurityConfig(encryption_key=key, jwt_secret=JWT_TEST_SECRET)


@pytest.fixture
def config(advbox_config, database_config, security_config):
    """Create a test config."""
    return Config(
        advbox=advbox_config,
        database=database_config,
        security=security_config,
        server=ServerConfig(),
    )


@pytest.fixture
async def repository(temp_db_path):
    """Create a repository with a temporary database."""
    repo = Repository(temp_db_path)
    await repo.connect()
    yield repo
    await repo.close()

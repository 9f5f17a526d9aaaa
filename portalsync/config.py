"""Configuration loading from TOML files with environment variable fallbacks."""

import os
from dataclasses import dataclass
from pathlib import Path

import tomli

DEFAULT_CONFIG_PATHS = [
    Path("config.toml"),
    Path.home() / ".config" / "portalsync" / "config.toml",
]

DEFAULT_ADVBOX_BASE_URL = "https://app.advbox.com.br/api/v1"
DEFAULT_DB_PATH = "portalsync.db"
DEFAULT_JWT_ALGORITHM = "HS256"


@dataclass(frozen=True)
class AdvboxConfig:
    """ADVBox API and financial sync configuration."""

    api_token: str | None
    base_url: str = DEFAULT_ADVBOX_BASE_URL
    page_size: int = 50
    page_delay: float = 0.8
    rate_limit_delay: float = 5.0
    max_rate_limit_retries: int = 3
    max_iterations: int = 500
    time_budget: float = 55.0
    lock_timeout: float = 120.0
    max_consecutive_page_errors: int = 3
    request_timeout: float = 30.0


@dataclass(frozen=True)
class DatabaseConfig:
    """Database configuration."""

    path: Path


@dataclass(frozen=True)
class SecurityConfig:
    """Security configuration."""

    encryption_key: str | None
    jwt_secret: str | None = None
    jwt_algorithm: str = DEFAULT_JWT_ALGORITHM


@dataclass(frozen=True)
class ServerConfig:
    """HTTP server configuration."""

    host: str = "127.0.0.1"
    port: int = 8000
    log_level: str = "info"
    cors_origins: tuple[str, ...] = ("*",)


@dataclass(frozen=True)
class Config:
    """Application configuration."""

    advbox: AdvboxConfig
    database: DatabaseConfig
    security: SecurityConfig
    server: ServerConfig


def find_config_file() -> Path | None:
    """Find the first existing config file from default paths."""
    for path in DEFAULT_CONFIG_PATHS:
        if path.exists():
            return path
    return None


def load_config(config_path: Path | None = None) -> Config:
    """Load configuration from TOML file with environment variable fallbacks."""
    toml_data = _load_toml_data(config_path)
    return _build_config(toml_data, config_path or find_config_file())


def _load_toml_data(config_path: Path | None) -> dict:
    """Load TOML data from file if it exists."""
    path = config_path or find_config_file()
    if path and path.exists():
        with open(path, "rb") as f:
            return tomli.load(f)
    return {}


def _build_config(toml_data: dict, config_path: Path | None) -> Config:
    """Build Config object from TOML data and environment variables."""
    advbox_config = _build_advbox_config(toml_data.get("advbox", {}))
    db_config = _build_database_config(toml_data.get("database", {}), config_path)
    security_config = _build_security_config(toml_data.get("security", {}))
    server_config = _build_server_config(toml_data.get("server", {}))
    return Config(
        advbox=advbox_config,
        database=db_config,
        security=security_config,
        server=server_config,
    )


def _env(name: str, default):
    """Read a PORTALSYNC_* environment variable, falling back to default."""
    return os.environ.get(f"PORTALSYNC_{name}", default)


def _build_advbox_config(advbox_data: dict) -> AdvboxConfig:
    """Build ADVBox config from TOML data and env vars."""
    defaults = AdvboxConfig(api_token=None)
    return AdvboxConfig(
        api_token=_env("ADVBOX_API_TOKEN", advbox_data.get("api_token")) or None,
        base_url=_env("ADVBOX_BASE_URL", advbox_data.get("base_url", defaults.base_url)),
        page_size=int(_env("ADVBOX_PAGE_SIZE", advbox_data.get("page_size", defaults.page_size))),
        page_delay=float(
            _env("ADVBOX_PAGE_DELAY", advbox_data.get("page_delay", defaults.page_delay))
        ),
        rate_limit_delay=float(
            _env(
                "ADVBOX_RATE_LIMIT_DELAY",
                advbox_data.get("rate_limit_delay", defaults.rate_limit_delay),
            )
        ),
        max_rate_limit_retries=int(
            _env(
                "ADVBOX_MAX_RATE_LIMIT_RETRIES",
                advbox_data.get("max_rate_limit_retries", defaults.max_rate_limit_retries),
            )
        ),
        max_iterations=int(
            _env("ADVBOX_MAX_ITERATIONS", advbox_data.get("max_iterations", defaults.max_iterations))
        ),
        time_budget=float(
            _env("ADVBOX_TIME_BUDGET", advbox_data.get("time_budget", defaults.time_budget))
        ),
        lock_timeout=float(
            _env("ADVBOX_LOCK_TIMEOUT", advbox_data.get("lock_timeout", defaults.lock_timeout))
        ),
        max_consecutive_page_errors=int(
            _env(
                "ADVBOX_MAX_CONSECUTIVE_PAGE_ERRORS",
                advbox_data.get(
                    "max_consecutive_page_errors", defaults.max_consecutive_page_errors
                ),
            )
        ),
        request_timeout=float(
            _env(
                "ADVBOX_REQUEST_TIMEOUT",
                advbox_data.get("request_timeout", defaults.request_timeout),
            )
        ),
    )


def _build_database_config(db_data: dict, config_path: Path | None) -> DatabaseConfig:
    """Build database config, resolving relative paths against config file location."""
    db_path_str = _env("DB_PATH", db_data.get("path", DEFAULT_DB_PATH))
    db_path = Path(db_path_str)
    if not db_path.is_absolute() and config_path:
        db_path = config_path.parent / db_path
    return DatabaseConfig(path=db_path)


def _build_security_config(security_data: dict) -> SecurityConfig:
    """Build security config from TOML data and env vars."""
    encryption_key = _env("ENCRYPTION_KEY", security_data.get("encryption_key") or None)
    jwt_secret = _env("JWT_SECRET", security_data.get("jwt_secret") or None)
    jwt_algorithm = _env(
        "JWT_ALGORITHM", security_data.get("jwt_algorithm", DEFAULT_JWT_ALGORITHM)
    )
    return SecurityConfig(
        encryption_key=encryption_key,
        jwt_secret=jwt_secret,
        jwt_algorithm=jwt_algorithm,
    )


def _build_server_config(server_data: dict) -> ServerConfig:
    """Build server config from TOML data and env vars."""
    defaults = ServerConfig()
    origins = _env("CORS_ORIGINS", server_data.get("cors_origins", defaults.cors_origins))
    if isinstance(origins, str):
        origins = [o.strip() for o in origins.split(",") if o.strip()]
    return ServerConfig(
        host=_env("HOST", server_data.get("host", defaults.host)),
        port=int(_env("PORT", server_data.get("port", defaults.port))),
        log_level=_env("LOG_LEVEL", server_data.get("log_level", defaults.log_level)),
        cors_origins=tuple(origins),
    )

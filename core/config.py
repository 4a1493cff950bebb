"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for Shebamiles happen here. No module should
call os.getenv() or os.environ.get() directly -- import get_settings() instead.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. db_host -> SHEBAMILES_DB_HOST). Type coercion and validation are built in.

  @model_validator(mode="after"): Runs cross-field validation after all fields
      are resolved from environment. Dev mode generates a SECRET_KEY with a
      warning, production mode refuses to start without one.

Security notes:
  SECRET_KEY shorter than 32 chars is rejected outright. It keys the HMAC used
  for password reset token digests.

  In production mode (DEBUG not set or false), a missing SECRET_KEY is a hard
  startup failure.

Layer rule: core/ is the kernel. This module may not import from api/ or auth/.
"""

import logging
import secrets
from functools import lru_cache
from urllib.parse import quote_plus

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("shebamiles.config")


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env file.

    All fields have defaults so Settings() can be instantiated in test
    environments without a real .env file. The model_validator enforces
    production-safety rules at startup.

    Environment variable names carry the SHEBAMILES_ prefix
    (e.g. SHEBAMILES_DB_HOST, SHEBAMILES_DEBUG).
    """

    model_config = SettingsConfigDict(
        env_prefix="SHEBAMILES_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ------------------------------------------------------------------
    # Core
    # ------------------------------------------------------------------

    debug: bool = False
    environment: str = "production"
    # Empty string is the sentinel for "not configured". The model_validator
    # below either generates a dev key or raises, so callers never see "".
    secret_key: str = ""
    base_url: str = "http://localhost:8000/"
    app_version: str = "2.0.0"

    # ------------------------------------------------------------------
    # Database
    # ------------------------------------------------------------------

    # database_url wins when set. Otherwise the URL is assembled from the
    # db_* parts (MySQL by default, matching the original deployment).
    database_url: str = ""
    db_driver: str = "mysql+pymysql"
    db_host: str = "localhost"
    db_port: int = 3306
    db_user: str = "root"
    db_password: str = ""
    db_name: str = "shebamiles_db"
    db_connect_retries: int = 3
    db_retry_delay: float = 1.0

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    session_cookie_name: str = "shebamiles_session"
    session_timeout_seconds: int = 3600
    remember_me_seconds: int = 30 * 24 * 3600
    secure_cookies: bool = False
    bcrypt_rounds: int = 12

    # ------------------------------------------------------------------
    # Rate limiting
    # ------------------------------------------------------------------

    login_rate_limit: int = 5
    login_rate_limit_window: int = 900  # 15 minutes
    register_rate_limit: int = 10
    register_rate_limit_window: int = 3600
    password_reset_rate_limit: int = 5
    password_reset_rate_limit_window: int = 3600
    # slowapi limit string applied to every API route
    api_rate_limit: str = "100/minute"
    api_rate_limit_enabled: bool = True
    rate_limit_backend: str = "database"  # "database" or "file"
    rate_limit_dir: str = ""  # empty = <tmp>/shebamiles_rate_limit

    # ------------------------------------------------------------------
    # HTTP
    # ------------------------------------------------------------------

    cors_allowed_origins: list[str] = [
        "http://localhost",
        "http://localhost:3000",
        "http://localhost:8000",
        "http://127.0.0.1",
    ]
    allowed_hosts: list[str] = ["*"]

    # ------------------------------------------------------------------
    # Logging
    # ------------------------------------------------------------------

    log_level: str = "INFO"
    log_dir: str = ""  # empty = console only
    log_to_database: bool = True
    log_retention_days: int = 30

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_secret_key(self) -> "Settings":
        """Enforce SECRET_KEY policy.

        Dev mode (DEBUG=true): auto-generate a random key with a warning.
            Outstanding password reset tokens will not survive a restart.

        Production mode (DEBUG=false or not set): refuse to start if
            SECRET_KEY is missing.

        Both modes: reject keys shorter than 32 characters.
        """
        if not self.secret_key:
            if self.debug:
                self.secret_key = secrets.token_hex(32)
                logger.warning(
                    "WARNING: Using auto-generated SECRET_KEY. " "Reset tokens will not persist across restarts."
                )
            else:
                raise ValueError(
                    "SECRET_KEY is required in production mode. "
                    "Set SHEBAMILES_SECRET_KEY in your environment or .env file. "
                    "To run in development mode, set SHEBAMILES_DEBUG=true."
                )
        if len(self.secret_key) < 32:
            raise ValueError("SECRET_KEY must be at least 32 characters.")
        return self

    @property
    def resolved_database_url(self) -> str:
        """Return the SQLAlchemy URL for the configured database.

        An explicit database_url always wins. In debug mode without one, a local
        SQLite file is used so the app starts without a MySQL server.
        """
        if self.database_url:
            return self.database_url
        if self.debug:
            return "sqlite:///shebamiles_dev.db"
        password = quote_plus(self.db_password)
        return f"{self.db_driver}://{self.db_user}:{password}@{self.db_host}:{self.db_port}/{self.db_name}"

    def is_production(self) -> bool:
        return not self.debug and self.environment == "production"


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    Uses lru_cache so Settings() is instantiated exactly once -- at first call.
    All modules should call get_settings() rather than constructing Settings() directly.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()

import os
import ssl
import uuid
from functools import lru_cache
from typing import Dict, Any, Optional
from urllib.parse import urlparse, parse_qs, urlencode, urlunparse
from pydantic_settings import BaseSettings, SettingsConfigDict

# Constants
DEFAULT_SSL_MODE = "prefer"


class DatabaseSettings(BaseSettings):
    """Database configuration for the project state store."""

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=True,
        extra="ignore",  # Ignore extra fields from .env
    )

    # CONNECTION URL (postgresql:// in production, sqlite+aiosqlite:// locally)
    DATABASE_URL: str = "sqlite+aiosqlite:///./preview.db"

    # CONNECTION POOL SETTINGS (ignored for SQLite)
    POOL_SIZE: int = 10
    MAX_OVERFLOW: int = 20
    POOL_TIMEOUT: float = 30.0
    POOL_RECYCLE: int = 3600
    POOL_PRE_PING: bool = True

    # TIMEOUTS
    CONNECT_TIMEOUT: int = 10
    COMMAND_TIMEOUT: int = 30

    # LOGGING
    ECHO_SQL: bool = False

    # ENVIRONMENT
    ENV: str = "development"

    def is_sqlite(self, url: Optional[str] = None) -> bool:
        return (url or self.DATABASE_URL).startswith("sqlite")

    def _create_ssl_context(self) -> ssl.SSLContext:
        """
        SSL context for managed Postgres (Neon, Supabase): encrypted, but
        without hostname or certificate verification.
        """
        ssl_context = ssl.create_default_context()
        ssl_context.check_hostname = False
        ssl_context.verify_mode = ssl.CERT_NONE
        return ssl_context

    def _extract_ssl_mode_from_url(self, url: str) -> str:
        parsed = urlparse(url)
        if parsed.query:
            query_params = parse_qs(parsed.query)
            return query_params.get("sslmode", [DEFAULT_SSL_MODE])[0]
        return DEFAULT_SSL_MODE

    def get_connection_url(self, url: Optional[str] = None) -> str:
        """
        Get connection URL with an async dialect enforced.

        - postgresql:// becomes postgresql+asyncpg:// (sslmode stripped, SSL
          is handled through connect_args)
        - sqlite:// becomes sqlite+aiosqlite://

        Raises:
            ValueError: If URL format is invalid
        """
        url = url or self.DATABASE_URL

        if url.startswith("sqlite+aiosqlite://"):
            return url
        if url.startswith("sqlite://"):
            return url.replace("sqlite://", "sqlite+aiosqlite://", 1)

        if url.startswith("postgresql://"):
            url = url.replace("postgresql://", "postgresql+asyncpg://", 1)
        elif not url.startswith("postgresql+asyncpg://"):
            raise ValueError(
                f"Invalid database URL format. "
                f"Expected 'postgresql://', 'postgresql+asyncpg://' or 'sqlite://', "
                f"got: {url[:30]}..."
            )

        # asyncpg doesn't accept these as URL parameters
        parsed = urlparse(url)
        if parsed.query:
            query_params = parse_qs(parsed.query)
            query_params.pop("sslmode", None)
            query_params.pop("channel_binding", None)
            new_query = urlencode(query_params, doseq=True)
            url = urlunparse(parsed._replace(query=new_query))

        return url

    def get_connect_args(self, url: Optional[str] = None) -> Dict[str, Any]:
        """
        Driver connection arguments.

        Returns:
            Dict[str, Any]: asyncpg arguments with SSL, or SQLite arguments
        """
        url = url or self.DATABASE_URL
        if self.is_sqlite(url):
            return {"check_same_thread": False}

        ssl_mode = self._extract_ssl_mode_from_url(url).lower()
        if ssl_mode == DEFAULT_SSL_MODE:
            ssl_mode = os.getenv("SSL_MODE", DEFAULT_SSL_MODE).lower()

        connect_args: Dict[str, Any] = {
            # Prevent prepared statement conflicts with connection poolers
            "statement_cache_size": 0,
            "prepared_statement_cache_size": 0,
            "prepared_statement_name_func": lambda: f"__asyncpg_{uuid.uuid4().hex[:16]}__",
            "timeout": self.CONNECT_TIMEOUT,
            "command_timeout": self.COMMAND_TIMEOUT,
            "server_settings": {
                "application_name": f"preview_{self.ENV}",
                "statement_timeout": str(self.COMMAND_TIMEOUT * 1000),
            },
        }

        if ssl_mode == "disable":
            connect_args["ssl"] = False
        elif ssl_mode in ("require", "prefer"):
            connect_args["ssl"] = self._create_ssl_context()
        else:
            connect_args["ssl"] = True

        return connect_args

    def mask_sensitive_data(self) -> Dict[str, Any]:
        """Return config with masked password for safe logging."""
        config = self.model_dump()
        try:
            parsed = urlparse(config["DATABASE_URL"])
            if parsed.password:
                config["DATABASE_URL"] = config["DATABASE_URL"].replace(
                    parsed.password, "***MASKED***"
                )
        except (ValueError, AttributeError):
            config["DATABASE_URL"] = "***MASKED***"
        return config

    def validate_urls(self) -> None:
        """
        Raises:
            ValueError: If the URL is missing or invalid
        """
        if not self.DATABASE_URL:
            raise ValueError("DATABASE_URL is required")
        try:
            self.get_connection_url()
        except Exception as e:
            raise ValueError(f"Invalid database URL format: {e}")


@lru_cache()
def get_db_settings() -> DatabaseSettings:
    """
    Get cached database settings singleton.

    Returns:
        DatabaseSettings: Singleton instance of database settings
    """
    settings = DatabaseSettings()
    settings.validate_urls()  # Validate on first access
    return settings

"""Application configuration loaded from environment variables."""

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Central configuration, read from environment / .env file."""

    # Storage (single embedded database file)
    database_url: str = "sqlite+aiosqlite:///./recordcache.db"
    database_echo: bool = False

    # SmartSuite
    smartsuite_api_key: str = ""
    smartsuite_account_id: str = ""
    smartsuite_base_url: str = "https://app.smartsuite.com/api/v1"
    smartsuite_page_size: int = 1000
    smartsuite_timeout_seconds: int = 30

    # Cache TTLs (seconds)
    cache_default_ttl_seconds: int = 14400      # 4 hours

    # Reads
    query_default_limit: int = 100
    query_max_limit: int = 1000
    fetch_timeout_seconds: float = 60.0
    serve_stale_on_error: bool = False

    # Server
    host: str = "0.0.0.0"
    port: int = 8000
    allowed_origins: str = "*"
    log_level: str = "INFO"

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}

    @property
    def has_smartsuite_credentials(self) -> bool:
        return bool(self.smartsuite_api_key and self.smartsuite_account_id)

    @property
    def cors_origins(self) -> list[str]:
        if self.allowed_origins == "*":
            return ["*"]
        return [o.strip() for o in self.allowed_origins.split(",")]


settings = Settings()

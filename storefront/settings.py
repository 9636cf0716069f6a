import os

from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, Field, field_validator

load_dotenv()


class Settings(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    # Cache Configuration
    cache_max: int = Field(default=256, ge=1, alias="CACHE_MAX")
    cache_default_ttl_seconds: float = Field(
        default=300.0, ge=0, alias="CACHE_DEFAULT_TTL_SECONDS"
    )
    cache_use_db_invalidation: bool = Field(
        default=False, alias="CACHE_USE_DB_INVALIDATION"
    )
    cache_invalidation_poll_seconds: float = Field(
        default=3.0, alias="CACHE_INVALIDATION_POLL_SECONDS"
    )
    cache_invalidation_batch_size: int = Field(
        default=200, ge=1, alias="CACHE_INVALIDATION_BATCH_SIZE"
    )
    cache_debug: bool = Field(default=False, alias="CACHE_DEBUG")

    # Database Configuration
    database_url: str = Field(
        default="sqlite+aiosqlite:///./storefront.db", alias="DATABASE_URL"
    )
    database_echo: bool = Field(default=False, alias="DATABASE_ECHO")
    database_pool_size: int = Field(default=20, ge=1, alias="DATABASE_POOL_SIZE")
    database_connect_timeout: int = Field(
        default=10, ge=1, alias="DATABASE_CONNECT_TIMEOUT"
    )
    database_retries: int = Field(default=2, ge=0, alias="DATABASE_RETRIES")

    # Connector (OAuth-protected upstream API) Configuration
    connector_base_url: str = Field(default="", alias="CONNECTOR_BASE_URL")
    connector_prefix: str = Field(default="/connector/api", alias="CONNECTOR_PREFIX")
    connector_token_path: str = Field(
        default="/oauth/token", alias="CONNECTOR_TOKEN_PATH"
    )
    connector_bearer: str = Field(default="", alias="CONNECTOR_BEARER")
    connector_client_id: str = Field(default="", alias="CONNECTOR_CLIENT_ID")
    connector_client_secret: str = Field(default="", alias="CONNECTOR_CLIENT_SECRET")
    connector_username: str = Field(default="", alias="CONNECTOR_USERNAME")
    connector_password: str = Field(default="", alias="CONNECTOR_PASSWORD")
    connector_scope: str = Field(default="*", alias="CONNECTOR_SCOPE")
    connector_timeout: float = Field(default=30.0, gt=0, alias="CONNECTOR_TIMEOUT")

    # Admin Configuration
    admin_cache_secret: str = Field(default="", alias="ADMIN_CACHE_SECRET")
    admin_host: str = Field(default="127.0.0.1", alias="ADMIN_HOST")
    admin_port: int = Field(default=8081, alias="ADMIN_PORT")

    @field_validator("cache_invalidation_poll_seconds")
    @classmethod
    def _clamp_poll_interval(cls, value: float) -> float:
        return max(1.0, value)

    @field_validator("connector_bearer", "connector_base_url")
    @classmethod
    def _strip(cls, value: str) -> str:
        return value.strip()

    @classmethod
    def from_env(cls) -> "Settings":
        """Build settings from the process environment (and .env)."""
        return cls.model_validate(dict(os.environ))


global_settings = Settings.from_env()

"""
Settings for applications and tools built on pgmodel.

Values come from the environment (or a `.env` file) through pydantic-settings.
Only the helpers in `pgmodel.infrastructure.db_factory` and the CLI read them;
a `Client` built on a hand-made pool never does.
"""
from __future__ import annotations

from functools import lru_cache
from typing import Any, Dict

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    # Server
    db_host: str = Field("localhost", alias="DB_HOST")
    db_port: int = Field(5432, alias="DB_PORT")
    db_user: str = Field("postgres", alias="DB_USER")
    db_password: str = Field("postgres", alias="DB_PASSWORD")
    db_name: str = Field("pgmodel", alias="DB_NAME")
    application_name: str = Field("pgmodel", alias="DB_APPLICATION_NAME")
    # milliseconds, 0 disables the limit
    statement_timeout: int = Field(0, ge=0, alias="DB_STATEMENT_TIMEOUT")

    # Pool and cache
    pool_min_size: int = Field(1, ge=0, alias="POOL_MIN_SIZE")
    pool_max_size: int = Field(10, ge=1, alias="POOL_MAX_SIZE")
    pool_timeout: float = Field(30.0, gt=0, alias="POOL_TIMEOUT")
    cache_capacity: int = Field(1000, ge=1, alias="CACHE_CAPACITY")

    # Runtime
    app_env: str = Field("development", alias="APP_ENV")
    log_level: str = Field("INFO", alias="LOG_LEVEL")
    log_json: bool = Field(False, alias="LOG_JSON")
    log_sql: bool = Field(False, alias="LOG_SQL")

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    def connection_kwargs(self) -> Dict[str, Any]:
        """Extra `psycopg.connect()` arguments applied to every connection."""
        kwargs: Dict[str, Any] = {"application_name": self.application_name}
        if self.statement_timeout:
            kwargs["options"] = f"-c statement_timeout={self.statement_timeout}"
        return kwargs


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()


__all__ = ["Settings", "get_settings"]

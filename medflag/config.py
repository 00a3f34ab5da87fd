# medflag/config.py - Engine configuration management
from dotenv import load_dotenv

load_dotenv()
from typing import Union
from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field, field_validator

DEFAULT_CORS_ORIGINS = ["http://localhost:3000", "http://localhost:5173"]
SUPPORTED_DATABASE_SCHEMES = ("postgresql://", "postgresql+psycopg2://", "sqlite://")


class Settings(BaseSettings):
    """Runtime knobs for the flagging engine.

    Every field can be overridden through the environment (or a ``.env`` file)
    using the upper-case alias next to it.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        extra="allow",
        case_sensitive=False,
        populate_by_name=True,
    )

    app_name: str = "MedFlag Non-Response Flagging Engine"
    app_version: str = "1.0.0"
    environment: str = Field(default="development", alias="ENVIRONMENT")
    debug: bool = Field(default=False, alias="DEBUG")

    database_url: str = Field(default="sqlite:///./medflag.db", alias="DATABASE_URL")
    statement_timeout_seconds: float = Field(default=10, alias="STATEMENT_TIMEOUT_SECONDS")

    log_level: str = Field(default="INFO", alias="LOG_LEVEL")
    log_json: bool = Field(default=False, alias="LOG_JSON")

    cors_origins: Union[str, list[str]] = Field(default=DEFAULT_CORS_ORIGINS, alias="CORS_ORIGINS")

    # Flagging pass
    flagging_cutoff_hours: float = Field(default=2, alias="FLAGGING_CUTOFF_HOURS")
    query_timeout_seconds: float = Field(default=30, alias="QUERY_TIMEOUT_SECONDS")
    unit_timeout_seconds: float = Field(default=10, alias="UNIT_TIMEOUT_SECONDS")
    pass_max_workers: int = Field(default=8, alias="PASS_MAX_WORKERS")

    # Doctor alerts
    alert_action_window_hours: float = Field(default=24, alias="ALERT_ACTION_WINDOW_HOURS")
    alert_page_size: int = Field(default=50, alias="ALERT_PAGE_SIZE")
    display_timezone: str = Field(default="Europe/Bucharest", alias="DISPLAY_TIMEZONE")

    legal_basis: str = Field(default="legitimate_interest", alias="LEGAL_BASIS")

    @field_validator("cors_origins", mode='before')
    @classmethod
    def split_origins(cls, v):
        # comma separated in the environment
        if not isinstance(v, str):
            return v
        origins = [origin.strip() for origin in v.split(',') if origin.strip()]
        return origins or list(DEFAULT_CORS_ORIGINS)

    @field_validator("database_url")
    @classmethod
    def check_database_url(cls, v):
        if not v or not v.startswith(SUPPORTED_DATABASE_SCHEMES):
            raise ValueError("DATABASE_URL must point at PostgreSQL or SQLite")
        return v

    @field_validator("pass_max_workers", "alert_page_size")
    @classmethod
    def at_least_one(cls, v):
        if v < 1:
            raise ValueError("must be at least 1")
        return v


class DevelopmentConfig(Settings):
    debug: bool = True
    environment: str = "development"


class ProductionConfig(Settings):
    """JSON logs, no debug."""
    debug: bool = False
    environment: str = "production"
    log_json: bool = True


class TestingConfig(Settings):
    """Private in-memory SQLite database per engine."""
    debug: bool = True
    environment: str = "testing"
    database_url: str = "sqlite://"


ENVIRONMENTS = {
    "development": DevelopmentConfig,
    "production": ProductionConfig,
    "testing": TestingConfig,
}


def get_config_by_env(env: str) -> Settings:
    return ENVIRONMENTS.get(env.lower(), Settings)()


@lru_cache()
def get_settings() -> Settings:
    """Settings for the environment named by ENVIRONMENT, built once."""
    return get_config_by_env(Settings().environment)

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Annotated, Any, List

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

DEFAULT_DB_PATH = Path(__file__).parent.parent / "data" / "datebook.db"


class Settings(BaseSettings):
    """Application configuration loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="DATEBOOK_",
        case_sensitive=False,
        env_file=".env",
        env_file_encoding="utf-8",
    )

    app_title: str = Field(default="Datebook API", description="FastAPI application title")
    app_description: str = Field(
        default="Track people and the dates that matter to them.",
        description="Description shown in the OpenAPI document",
    )
    allowed_origins: Annotated[List[str], NoDecode] = Field(
        default_factory=lambda: ["*"],
        description="Origins allowed by the CORS middleware",
    )
    log_level: str = Field(
        default="INFO",
        description="Application log level (DEBUG/INFO/WARNING/ERROR/CRITICAL)",
    )
    enable_request_logging: bool = Field(
        default=True,
        description="Log one line per completed request",
    )
    database_path: Path = Field(
        default=DEFAULT_DB_PATH,
        description="SQLite file backing the record store",
    )
    default_upcoming_days: int = Field(
        default=30,
        ge=1,
        description="Lookahead used when a caller does not pass days_ahead",
    )
    max_upcoming_days: int = Field(
        default=366,
        ge=1,
        le=3650,
        description="Largest lookahead accepted by the upcoming endpoint",
    )
    max_timeline_limit: int = Field(
        default=1_000,
        ge=1,
        le=10_000,
        description="Largest limit accepted by the timeline endpoint",
    )

    @field_validator("allowed_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            raw = value.strip()
            if raw.startswith("["):
                return json.loads(raw)
            return [origin.strip() for origin in raw.split(",") if origin.strip()]
        return value

    @field_validator("log_level")
    @classmethod
    def _normalise_log_level(cls, value: str) -> str:
        candidate = value.upper()
        if candidate not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            logging.getLogger("datebook.settings").warning(
                "Unknown log level '%s', falling back to INFO.", value
            )
            return "INFO"
        return candidate


settings = Settings()

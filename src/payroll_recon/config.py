"""Process settings loaded from environment variables."""

from typing import Any, Optional

from pydantic import AliasChoices, Field, ValidationInfo, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Runtime settings. Business configuration lives on Firm/Client/PayRun rows."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    database_url: Optional[str] = Field(None, description="Overrides DATABASE_URL resolution")
    api_key: Optional[str] = Field(None, description="Bearer token accepted by the API")
    file_read_attempts: int = Field(
        default=3,
        ge=1,
        validation_alias=AliasChoices("RECON_FILE_READ_ATTEMPTS", "file_read_attempts"),
    )
    file_read_delay_ms: int = Field(
        default=200,
        ge=0,
        validation_alias=AliasChoices("RECON_FILE_READ_DELAY_MS", "file_read_delay_ms"),
    )
    max_rows: Optional[int] = Field(
        None,
        ge=1,
        description="Row cap passed to the file reader",
        validation_alias=AliasChoices("RECON_MAX_ROWS", "max_rows"),
    )

    @field_validator("file_read_attempts", "file_read_delay_ms", "max_rows", mode="before")
    @classmethod
    def blank_means_default(cls, value: Any, info: ValidationInfo) -> Any:
        if isinstance(value, str) and not value.strip():
            return cls.model_fields[info.field_name].default
        return value


def get_settings() -> Settings:
    """Build settings from the current environment.

    Read on every call so tests can patch ``os.environ``.
    """
    return Settings()

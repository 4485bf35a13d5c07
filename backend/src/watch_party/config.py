from pydantic_settings.main import SettingsConfigDict
from typing import Annotated, Optional
from pathlib import Path
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, NoDecode


class Settings(BaseSettings):
    """Application settings with environment variable support"""

    # Server settings
    server_host: str = Field(default="0.0.0.0", alias="SERVER_HOST")
    server_port: int = Field(default=3000, alias="SERVER_PORT")

    # CORS settings
    cors_allow_origins: Annotated[list[str], NoDecode] = Field(
        default=["*"], alias="CORS_ALLOW_ORIGINS"
    )

    # Session registry
    idle_session_ttl_secs: float = Field(
        default=24 * 60 * 60, gt=0, alias="IDLE_SESSION_TTL_SECS"
    )
    session_sweep_interval_secs: float = Field(
        default=60 * 60, gt=0, alias="SESSION_SWEEP_INTERVAL_SECS"
    )

    # Outbound frames buffered per connection before senders block
    message_buffer_size: int = Field(default=256, ge=1, alias="MESSAGE_BUFFER_SIZE")

    # Logging
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")
    log_file: Optional[Path] = Field(default=None, alias="LOG_FILE")

    # Front-end assets served from "/" when set
    static_dir: Optional[Path] = Field(default=None, alias="STATIC_DIR")

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def split_origins(cls, v):
        if isinstance(v, str):
            origins = [origin.strip() for origin in v.strip("[]").split(",")]
            # Remove empty strings
            origins = [origin for origin in origins if origin]
            return origins
        return v

    @field_validator("log_level", mode="after")
    @classmethod
    def normalize_log_level(cls, v: str) -> str:
        level = v.strip().upper()
        if level not in ("CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"):
            raise ValueError(f"Unknown LOG_LEVEL: {v}")
        return level

    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", frozen=True
    )

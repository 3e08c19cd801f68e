from pathlib import Path

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from marginalia.constants import (
    BACKFILL_BATCH_SIZE,
    BACKFILL_CHUNK_SIZE,
    DEFAULT_EMBEDDING_MODEL,
    EMBEDDING_BATCH_LIMIT,
    EMBEDDING_MODELS,
    SESSION_EXPIRY_HOURS,
)
from marginalia.embedder import EmbeddingConfig

MARGINALIA_DIR = Path.home() / ".marginalia"


class Config(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="MARGINALIA_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        validate_assignment=True,
        populate_by_name=True,
    )

    # Read from the standard env var via alias
    openai_api_key: str | None = Field(default=None, alias="OPENAI_API_KEY")

    embedding_model: str = DEFAULT_EMBEDDING_MODEL

    data_dir: Path = MARGINALIA_DIR
    log_level: str = "INFO"

    session_expiry_hours: int = SESSION_EXPIRY_HOURS

    backfill_batch_size: int = BACKFILL_BATCH_SIZE
    backfill_chunk_size: int = BACKFILL_CHUNK_SIZE

    @field_validator("embedding_model")
    @classmethod
    def _validate_embedding_model(cls, v: str) -> str:
        if v not in EMBEDDING_MODELS:
            raise ValueError(f"Unsupported embedding model: {v}. Must be one of: {', '.join(EMBEDDING_MODELS)}")
        return v

    @field_validator("log_level")
    @classmethod
    def _validate_log_level(cls, v: str) -> str:
        level = v.upper()
        if level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"Invalid log level: {v}")
        return level

    @field_validator("backfill_chunk_size")
    @classmethod
    def _validate_chunk_size(cls, v: int) -> int:
        if not 1 <= v <= EMBEDDING_BATCH_LIMIT:
            raise ValueError(f"backfill_chunk_size must be 1-{EMBEDDING_BATCH_LIMIT}, got {v}")
        return v

    @field_validator("backfill_batch_size", "session_expiry_hours")
    @classmethod
    def _validate_positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError(f"must be positive, got {v}")
        return v

    @property
    def embedding(self) -> EmbeddingConfig:
        return EmbeddingConfig(model=self.embedding_model, dim=EMBEDDING_MODELS[self.embedding_model])

    @property
    def db_path(self) -> Path:
        return self.data_dir / "marginalia.db"


def get_config() -> Config:
    return Config()

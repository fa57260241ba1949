"""Configuration management for PokeArena."""

from functools import lru_cache
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables (``POKEARENA_*``)."""

    model_config = SettingsConfigDict(
        env_prefix="POKEARENA_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Persistence. Empty means the in-memory store (single process, not durable).
    database_url: str = ""
    database_echo: bool = False

    # PokeAPI settings
    pokeapi_base_url: str = "https://pokeapi.co/api/v2"
    pokeapi_timeout_seconds: float = Field(default=5.0, gt=0)
    max_pokemon_id: int = 1025  # All Pokemon through Gen 9

    # Identity tokens issued by the auth provider
    auth_secret: str = "change-me-in-production"
    auth_algorithm: str = "HS256"
    access_token_expire_minutes: int = 60 * 24

    # Battle settings
    turn_timeout_seconds: int = Field(default=30, ge=1)
    abandon_after_minutes: int = Field(default=60, ge=1)
    sweep_interval_seconds: float = Field(default=300, ge=0)  # 0 disables the background sweep
    battle_level: int = 50

    # Rating settings
    ai_user_id: str = "ai"
    ai_display_name: str = "Wild AI"
    ai_rating: int = 1000
    default_rating: int = 1000
    elo_k_factor: int = 32
    rate_ai_battles: bool = False

    # Logging
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO"
    log_format: Literal["console", "json"] = "console"

    # CLI thin client
    server_url: str = "http://localhost:8000"

    @property
    def uses_database(self) -> bool:
        return bool(self.database_url)


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


# Global settings instance
settings = get_settings()

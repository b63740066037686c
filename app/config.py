"""Application configuration models."""

from __future__ import annotations

from functools import lru_cache
from typing import Annotated, Iterable, Literal

from pydantic import Field, HttpUrl, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


# Netflix, Prime Video, Disney+, Apple TV+, Hulu.
DEFAULT_FEATURED_PROVIDER_IDS: tuple[int, ...] = (8, 9, 337, 350, 119)


class Settings(BaseSettings):
    """Settings loaded from environment variables or a .env file."""

    app_name: str = Field(default="MovieSwipe", alias="APP_NAME")
    server_host: str = Field(default="0.0.0.0", alias="HOST")
    server_port: int = Field(default=3000, alias="PORT")

    tmdb_api_key: str | None = Field(default=None, alias="TMDB_API_KEY")
    tmdb_api_url: HttpUrl = Field(
        default="https://api.themoviedb.org/3", alias="TMDB_API_URL"
    )
    tmdb_image_base_url: str = Field(
        default="https://image.tmdb.org/t/p/w500", alias="TMDB_IMAGE_BASE_URL"
    )
    catalog_language: str = Field(default="ja-JP", alias="CATALOG_LANGUAGE")
    fallback_language: str = Field(default="en-US", alias="FALLBACK_LANGUAGE")
    watch_region: str = Field(default="JP", alias="WATCH_REGION")
    featured_provider_ids: Annotated[tuple[int, ...], NoDecode] = Field(
        default=DEFAULT_FEATURED_PROVIDER_IDS, alias="FEATURED_PROVIDER_IDS"
    )
    discover_page_window: int = Field(
        default=10, alias="DISCOVER_PAGE_WINDOW", ge=1, le=500
    )

    swipe_threshold: float = Field(default=100.0, alias="SWIPE_THRESHOLD", gt=0)
    swipe_cap: int = Field(default=20, alias="SWIPE_CAP", ge=1, le=500)
    duplicate_retry_limit: int = Field(
        default=10, alias="DUPLICATE_RETRY_LIMIT", ge=0, le=100
    )
    exposure_capacity: int = Field(
        default=100, alias="EXPOSURE_CAPACITY", ge=1, le=10_000
    )
    relaxation_delay_seconds: float = Field(
        default=2.0, alias="RELAXATION_DELAY", ge=0
    )
    prefetch_enabled: bool = Field(default=True, alias="PREFETCH_ENABLED")
    swipe_stats_limit: int = Field(
        default=1_000, alias="SWIPE_STATS_LIMIT", ge=1, le=100_000
    )
    max_swipe_sessions: int = Field(
        default=1_000, alias="MAX_SWIPE_SESSIONS", ge=1, le=100_000
    )

    vote_pool_size: int = Field(default=10, alias="VOTE_POOL_SIZE", ge=1, le=50)
    vote_poll_interval_seconds: float = Field(
        default=2.0, alias="VOTE_POLL_INTERVAL", gt=0
    )

    database_url: str = Field(
        default="sqlite+aiosqlite:///./movieswipe.db", alias="DATABASE_URL"
    )

    environment: Literal["development", "production"] = Field(
        default="development", alias="ENVIRONMENT"
    )

    @field_validator("featured_provider_ids", mode="before")
    @classmethod
    def _parse_provider_ids(cls, value: object) -> tuple[int, ...]:
        """Normalise provider id selections from environment values."""

        if value is None:
            return DEFAULT_FEATURED_PROVIDER_IDS
        if isinstance(value, str):
            raw_values = [part.strip() for part in value.split(",")]
        elif isinstance(value, Iterable):
            raw_values = [str(part).strip() for part in value]
        else:
            raise TypeError(
                "FEATURED_PROVIDER_IDS must be a string or iterable of integers"
            )

        cleaned: list[int] = []
        for entry in raw_values:
            if not entry:
                continue
            try:
                provider_id = int(entry)
            except ValueError as exc:
                raise ValueError("Provider ids must be integers") from exc
            if provider_id not in cleaned:
                cleaned.append(provider_id)
        return tuple(cleaned)

    @property
    def language_code(self) -> str:
        """Return the ISO 639-1 part of the catalog language."""

        return self.catalog_language.split("-", 1)[0].lower()

    @property
    def region_code(self) -> str | None:
        """Return the ISO 3166-1 part of the catalog language, if any."""

        parts = self.catalog_language.split("-", 1)
        if len(parts) < 2 or not parts[1]:
            return None
        return parts[1].upper()

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")


@lru_cache
def get_settings() -> Settings:
    """Return a cached settings instance."""

    return Settings()  # type: ignore[call-arg]


settings = get_settings()

"""Pydantic models describing catalog records and locally persisted choices."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Literal, Mapping

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

from .utils import first_text, parse_int_list, utcnow

Disposition = Literal["watch_now", "watch_later"]
SwipeDirection = Literal["left", "right", "up", "down"]

UNTITLED = "Untitled"
NO_SYNOPSIS = "No synopsis available."


class Movie(BaseModel):
    """Canonical movie record handed to swipe sessions and selections."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    id: int
    title: str = ""
    rating: float = Field(
        default=0.0, validation_alias=AliasChoices("rating", "vote_average")
    )
    poster_path: str | None = None
    overview: str = ""
    runtime: int | None = None

    @field_validator("rating", mode="before")
    @classmethod
    def _clamp_rating(cls, value: object) -> float:
        try:
            rating = float(value)  # type: ignore[arg-type]
        except (TypeError, ValueError):
            return 0.0
        return min(max(rating, 0.0), 10.0)

    @field_validator("overview", mode="before")
    @classmethod
    def _coerce_overview(cls, value: object) -> str:
        return value if isinstance(value, str) else ""

    @classmethod
    def from_catalog_payload(cls, data: Mapping[str, Any]) -> "Movie":
        """Build a movie from a raw discovery result without resolving fallbacks."""

        return cls(
            id=int(data["id"]),
            title=first_text(data.get("title")),
            rating=data.get("vote_average", 0.0),
            poster_path=data.get("poster_path") or None,
            overview=first_text(data.get("overview")),
            runtime=data.get("runtime") or None,
        )

    def with_fallbacks(self, raw: Mapping[str, Any] | None = None) -> "Movie":
        """Fill an empty title or synopsis from alternate fields and placeholders."""

        raw = raw or {}
        title = first_text(
            self.title,
            raw.get("name"),
            raw.get("original_title"),
            raw.get("original_name"),
        ) or UNTITLED
        overview = self.overview or NO_SYNOPSIS
        if title == self.title and overview == self.overview:
            return self
        return self.model_copy(update={"title": title, "overview": overview})


class FilterSpec(BaseModel):
    """Declarative, independently optional constraints narrowing catalog queries."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    genres: tuple[int, ...] = ()
    runtime: int | None = Field(default=None, gt=0)
    year_from: int | None = Field(
        default=None, validation_alias=AliasChoices("year_from", "yearFrom")
    )
    year_to: int | None = Field(
        default=None, validation_alias=AliasChoices("year_to", "yearTo")
    )
    providers: tuple[int, ...] = ()

    @field_validator("genres", "providers", mode="before")
    @classmethod
    def _parse_ids(cls, value: object) -> tuple[int, ...]:
        return tuple(parse_int_list(value))

    @field_validator("runtime", "year_from", "year_to", mode="before")
    @classmethod
    def _blank_to_none(cls, value: object) -> object:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @classmethod
    def from_query(cls, params: Mapping[str, str]) -> "FilterSpec":
        """Parse query parameters as produced by :meth:`to_query_params`."""

        keys = ("genres", "runtime", "year_from", "year_to", "providers")
        return cls.model_validate({key: params[key] for key in keys if key in params})

    def active_constraints(self) -> int:
        """Return how many axes are constrained."""

        return sum(
            (
                bool(self.genres),
                self.runtime is not None,
                self.year_from is not None,
                self.year_to is not None,
                bool(self.providers),
            )
        )

    def is_unconstrained(self) -> bool:
        return self.active_constraints() == 0

    def to_query_params(self) -> dict[str, str]:
        """Serialize populated fields; unconstrained fields are omitted."""

        params: dict[str, str] = {}
        if self.genres:
            params["genres"] = ",".join(str(genre) for genre in self.genres)
        if self.runtime is not None:
            params["runtime"] = str(self.runtime)
        if self.year_from is not None:
            params["year_from"] = str(self.year_from)
        if self.year_to is not None:
            params["year_to"] = str(self.year_to)
        if self.providers:
            params["providers"] = ",".join(str(provider) for provider in self.providers)
        return params

    def to_discover_params(self, region: str) -> dict[str, str]:
        """Map populated fields onto catalog discovery constraints."""

        params: dict[str, str] = {}
        if self.genres:
            params["with_genres"] = ",".join(str(genre) for genre in self.genres)
        if self.runtime is not None:
            params["with_runtime.lte"] = str(self.runtime)
        if self.year_from is not None:
            params["primary_release_date.gte"] = f"{self.year_from:04d}-01-01"
        if self.year_to is not None:
            params["primary_release_date.lte"] = f"{self.year_to:04d}-12-31"
        if self.providers:
            params["with_watch_providers"] = "|".join(
                str(provider) for provider in self.providers
            )
            if region:
                params["watch_region"] = region
        return params


class Genre(BaseModel):
    id: int
    name: str


class DistributionService(BaseModel):
    """A streaming or rental service that can narrow discovery."""

    id: int = Field(validation_alias=AliasChoices("id", "provider_id"))
    name: str = Field(validation_alias=AliasChoices("name", "provider_name"))
    logo_path: str | None = None


class WatchProviders(BaseModel):
    """Region-specific availability of a single movie."""

    link: str | None = None
    flatrate: list[DistributionService] = Field(default_factory=list)
    rent: list[DistributionService] = Field(default_factory=list)
    buy: list[DistributionService] = Field(default_factory=list)

    def has_streaming(self) -> bool:
        return bool(self.flatrate)


class CastMember(BaseModel):
    name: str
    character: str | None = None
    profile_path: str | None = None


class MovieDetails(BaseModel):
    """Detail view shown when a candidate card is opened."""

    id: int
    title: str
    runtime: int | None = None
    release_year: int | None = None
    overview: str = ""
    directors: list[str] = Field(default_factory=list)
    cast: list[CastMember] = Field(default_factory=list)
    providers: WatchProviders = Field(default_factory=WatchProviders)


class ShortlistEntry(BaseModel):
    """A committed pick with its watch disposition."""

    movie: Movie
    selected_at: datetime = Field(default_factory=utcnow)
    disposition: Disposition
    watched: bool = False


class FavoriteEntry(BaseModel):
    movie: Movie
    added_at: datetime = Field(default_factory=utcnow)


class SwipeStat(BaseModel):
    movie_id: int
    direction: SwipeDirection
    timestamp: datetime = Field(default_factory=utcnow)


class VoteRecord(BaseModel):
    """A single participant's vote for a pooled movie."""

    movie_id: int
    voter_id: str
    timestamp: datetime = Field(default_factory=utcnow)


class VoteSessionState(BaseModel):
    movies: list[Movie] = Field(default_factory=list)
    current_index: int = 0

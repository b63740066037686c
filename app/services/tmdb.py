"""Client for discovering and describing movies via The Movie Database (TMDB)."""

from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass, field
from typing import Any, Mapping

import httpx

from ..config import Settings
from ..models import (
    CastMember,
    DistributionService,
    FilterSpec,
    Genre,
    Movie,
    MovieDetails,
    WatchProviders,
)
from ..utils import RandomSource, extract_year, first_text

logger = logging.getLogger(__name__)

# TMDB refuses page numbers beyond this.
MAX_DISCOVER_PAGE = 500
TOP_CAST_COUNT = 5


class CatalogError(Exception):
    """Base class for failures talking to the movie catalog."""


class ConfigurationError(CatalogError):
    """Raised when the catalog credential is missing."""

    def __init__(self, message: str = "TMDB_API_KEY is not set in environment variables."):
        super().__init__(message)


class TransportError(CatalogError):
    """Raised when the catalog answers with a non-success status or is unreachable."""

    def __init__(self, message: str, *, status: int | None = None, body: str | None = None):
        super().__init__(message)
        self.status = status
        self.body = body


class NoResultsError(CatalogError):
    """Raised when a discovery query matches nothing."""


@dataclass(slots=True)
class DiscoverPage:
    """A single page of raw discovery results."""

    results: list[dict[str, Any]] = field(default_factory=list)
    page: int = 1
    total_pages: int = 0
    total_results: int = 0


class TMDBClient:
    """Client responsible for the catalog queries behind swiping and voting."""

    def __init__(
        self,
        settings: Settings,
        http_client: httpx.AsyncClient,
        rng: RandomSource | None = None,
    ):
        self._settings = settings
        self._client = http_client
        self._rng: RandomSource = rng or random.Random()

    async def list_genres(self) -> list[Genre]:
        payload = await self._get(
            "/genre/movie/list",
            {"language": self._settings.catalog_language},
            description="genres",
        )
        return [Genre.model_validate(entry) for entry in payload.get("genres") or []]

    async def list_providers(self) -> list[DistributionService]:
        """Return the region's streaming services, narrowed to the featured ones."""

        payload = await self._get(
            "/watch/providers/movie",
            {
                "language": self._settings.catalog_language,
                "watch_region": self._settings.watch_region,
            },
            description="providers",
        )
        providers = [
            DistributionService.model_validate(entry)
            for entry in payload.get("results") or []
        ]
        featured = set(self._settings.featured_provider_ids)
        narrowed = [provider for provider in providers if provider.id in featured]
        return narrowed or providers

    async def discover(self, filters: FilterSpec, page: int) -> DiscoverPage:
        params: dict[str, Any] = {
            "language": self._settings.catalog_language,
            "sort_by": "popularity.desc",
            "include_adult": "false",
            "page": page,
        }
        params.update(filters.to_discover_params(self._settings.watch_region))
        payload = await self._get("/discover/movie", params, description="movies")
        results = [entry for entry in payload.get("results") or [] if isinstance(entry, dict)]
        return DiscoverPage(
            results=results,
            page=int(payload.get("page") or page),
            total_pages=int(payload.get("total_pages") or 0),
            total_results=int(payload.get("total_results") or 0),
        )

    async def random_movie(
        self,
        filters: FilterSpec,
        *,
        exclude: set[int] | frozenset[int] = frozenset(),
    ) -> Movie:
        """Pick one movie at random for the filter and resolve its localized text.

        A page is drawn from a window that narrows as constraints are added, and
        the movie is drawn uniformly from that page, preferring results outside
        ``exclude``.
        """

        window = self.page_window(filters)
        page_number = self._rng.randint(1, window)
        page = await self.discover(filters, page_number)
        if page.total_results == 0 and not page.results:
            raise NoResultsError("No movies found for the current filters.")
        if not page.results and page.total_pages:
            retry_window = max(1, min(window, page.total_pages))
            page = await self.discover(filters, self._rng.randint(1, retry_window))
        if not page.results:
            raise NoResultsError("No movies found for the current filters.")

        fresh = [entry for entry in page.results if self._entry_id(entry) not in exclude]
        raw = self._rng.choice(fresh or page.results)
        movie = Movie.from_catalog_payload(raw)
        return await self.resolve_localized(movie, raw)

    def page_window(self, filters: FilterSpec) -> int:
        """Return how many leading pages a random pick may draw from."""

        base = min(self._settings.discover_page_window, MAX_DISCOVER_PAGE)
        return max(1, base // (1 + filters.active_constraints()))

    async def resolve_localized(self, movie: Movie, raw: Mapping[str, Any]) -> Movie:
        """Fill missing title/synopsis through translations and detail lookups.

        Each step only fills values that are still empty and never fails the
        overall resolution.
        """

        if not movie.title or not movie.overview:
            try:
                translation = await self._best_translation(movie.id)
            except Exception as exc:
                logger.warning("Translation lookup failed for movie %s: %s", movie.id, exc)
                translation = None
            if translation:
                movie = self._overlay(
                    movie,
                    translation.get("title"),
                    translation.get("overview"),
                )

        if not movie.title or not movie.overview:
            try:
                details = await self.get_details(movie.id, self._settings.catalog_language)
            except Exception as exc:
                logger.warning("Localized detail lookup failed for movie %s: %s", movie.id, exc)
            else:
                movie = self._overlay(movie, details.get("title"), details.get("overview"))
                if movie.runtime is None and details.get("runtime"):
                    movie = movie.model_copy(update={"runtime": int(details["runtime"])})

        if not movie.overview:
            try:
                details = await self.get_details(movie.id, self._settings.fallback_language)
            except Exception as exc:
                logger.warning("Fallback detail lookup failed for movie %s: %s", movie.id, exc)
            else:
                movie = self._overlay(movie, None, details.get("overview"))

        return movie.with_fallbacks(raw)

    async def get_details(self, movie_id: int, language: str | None = None) -> dict[str, Any]:
        params: dict[str, Any] = {}
        if language:
            params["language"] = language
        return await self._get(f"/movie/{movie_id}", params, description="movie details")

    async def get_translations(self, movie_id: int) -> list[dict[str, Any]]:
        payload = await self._get(
            f"/movie/{movie_id}/translations", {}, description="translations"
        )
        return [entry for entry in payload.get("translations") or [] if isinstance(entry, dict)]

    async def get_credits(self, movie_id: int) -> dict[str, Any]:
        payload = await self._get(
            f"/movie/{movie_id}/credits",
            {"language": self._settings.catalog_language},
            description="credits",
        )
        return {
            "cast": [entry for entry in payload.get("cast") or [] if isinstance(entry, dict)],
            "crew": [entry for entry in payload.get("crew") or [] if isinstance(entry, dict)],
        }

    async def get_watch_providers(self, movie_id: int) -> WatchProviders:
        """Return where the movie can be watched in the configured region."""

        payload = await self._get(
            f"/movie/{movie_id}/watch/providers", {}, description="watch providers"
        )
        regional = (payload.get("results") or {}).get(self._settings.watch_region)
        if not regional:
            return WatchProviders()
        return WatchProviders(
            link=regional.get("link") or None,
            flatrate=self._providers(regional.get("flatrate")),
            rent=self._providers(regional.get("rent")),
            buy=self._providers(regional.get("buy")),
        )

    async def get_movie_details(self, movie_id: int) -> MovieDetails:
        """Combine details, credits and availability for a single movie."""

        details, credits, providers = await asyncio.gather(
            self.get_details(movie_id, self._settings.catalog_language),
            self.get_credits(movie_id),
            self.get_watch_providers(movie_id),
            return_exceptions=True,
        )
        if isinstance(details, BaseException):
            raise details
        if isinstance(credits, BaseException):
            logger.warning("Credits lookup failed for movie %s: %s", movie_id, credits)
            credits = {"cast": [], "crew": []}
        if isinstance(providers, BaseException):
            logger.warning("Provider lookup failed for movie %s: %s", movie_id, providers)
            providers = WatchProviders()

        directors = [
            str(member.get("name"))
            for member in credits["crew"]
            if member.get("job") == "Director" and member.get("name")
        ]
        cast = [
            CastMember(
                name=str(member.get("name") or ""),
                character=member.get("character") or None,
                profile_path=member.get("profile_path") or None,
            )
            for member in credits["cast"][:TOP_CAST_COUNT]
        ]
        return MovieDetails(
            id=int(details.get("id") or movie_id),
            title=first_text(details.get("title"), details.get("original_title")) or "Untitled",
            runtime=details.get("runtime") or None,
            release_year=extract_year(details.get("release_date")),
            overview=first_text(details.get("overview")),
            directors=directors,
            cast=cast,
            providers=providers,
        )

    async def _best_translation(self, movie_id: int) -> dict[str, Any] | None:
        translations = await self.get_translations(movie_id)
        language = self._settings.language_code
        region = self._settings.region_code

        def matches(entry: dict[str, Any], *, by_language: bool, by_region: bool) -> bool:
            if by_language and str(entry.get("iso_639_1") or "").lower() != language:
                return False
            if by_region and (
                region is None or str(entry.get("iso_3166_1") or "").upper() != region
            ):
                return False
            return True

        for by_language, by_region in ((True, True), (True, False), (False, True)):
            for entry in translations:
                if matches(entry, by_language=by_language, by_region=by_region):
                    data = entry.get("data")
                    return data if isinstance(data, dict) else None
        return None

    @staticmethod
    def _overlay(movie: Movie, title: Any, overview: Any) -> Movie:
        update: dict[str, str] = {}
        if not movie.title and first_text(title):
            update["title"] = first_text(title)
        if not movie.overview and first_text(overview):
            update["overview"] = first_text(overview)
        if not update:
            return movie
        return movie.model_copy(update=update)

    @staticmethod
    def _providers(entries: Any) -> list[DistributionService]:
        if not isinstance(entries, list):
            return []
        return [
            DistributionService.model_validate(entry)
            for entry in entries
            if isinstance(entry, dict)
        ]

    @staticmethod
    def _entry_id(entry: Mapping[str, Any]) -> int | None:
        try:
            return int(entry["id"])
        except (KeyError, TypeError, ValueError):
            return None

    async def _get(
        self, path: str, params: Mapping[str, Any], *, description: str
    ) -> dict[str, Any]:
        if not self._settings.tmdb_api_key:
            raise ConfigurationError()
        query = {**params, "api_key": self._settings.tmdb_api_key}
        try:
            response = await self._client.get(path, params=query)
        except httpx.HTTPError as exc:
            logger.warning("TMDB request for %s failed: %s", description, exc)
            raise TransportError(f"Failed to fetch {description} from TMDb.") from exc

        if response.status_code >= 400:
            logger.warning(
                "TMDB %s request failed with %s: %s",
                description,
                response.status_code,
                response.text,
            )
            raise TransportError(
                f"Failed to fetch {description} from TMDb.",
                status=response.status_code,
                body=response.text or None,
            )
        try:
            payload = response.json()
        except ValueError as exc:
            raise TransportError(f"TMDb returned invalid JSON for {description}.") from exc
        if not isinstance(payload, dict):
            raise TransportError(f"Unexpected TMDb payload for {description}.")
        return payload

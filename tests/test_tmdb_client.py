"""Tests for the TMDB catalog client."""

from __future__ import annotations

import random
from typing import Any, Callable, Sequence

import httpx
import pytest

from app.config import Settings
from app.models import FilterSpec
from app.services.tmdb import (
    ConfigurationError,
    NoResultsError,
    TMDBClient,
    TransportError,
)


@pytest.fixture
def anyio_backend() -> str:
    """Force AnyIO tests to run on asyncio without requiring trio."""

    return "asyncio"


class RecordingRandom:
    """Deterministic random source recording the ranges it was asked for."""

    def __init__(self, picks: Sequence[int] = ()) -> None:
        self.ranges: list[tuple[int, int]] = []
        self._picks = list(picks)

    def randint(self, a: int, b: int) -> int:
        self.ranges.append((a, b))
        return self._picks.pop(0) if self._picks else a

    def choice(self, seq: Sequence[Any]) -> Any:
        return seq[0]


def build_settings(**overrides: Any) -> Settings:
    """Return a settings object with defaults suitable for tests."""

    base: dict[str, Any] = {"TMDB_API_KEY": "test-key"}
    base.update(overrides)
    return Settings(_env_file=None, **base)  # type: ignore[arg-type]


def build_client(
    handler: Callable[[httpx.Request], httpx.Response],
    *,
    settings: Settings | None = None,
    rng: Any = None,
) -> tuple[TMDBClient, httpx.AsyncClient]:
    http_client = httpx.AsyncClient(
        transport=httpx.MockTransport(handler),
        base_url="https://api.themoviedb.org/3",
    )
    return TMDBClient(settings or build_settings(), http_client, rng=rng), http_client


def discover_payload(results: list[dict[str, Any]], *, total_pages: int = 1) -> dict[str, Any]:
    return {
        "page": 1,
        "results": results,
        "total_pages": total_pages,
        "total_results": len(results) if total_pages <= 1 else total_pages * 20,
    }


@pytest.mark.anyio("asyncio")
async def test_random_movie_picks_from_first_page_results() -> None:
    requests: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(
            200,
            json=discover_payload(
                [
                    {"id": 1, "title": "One", "overview": "a", "vote_average": 7.1},
                    {"id": 2, "title": "Two", "overview": "b"},
                    {"id": 3, "title": "Three", "overview": "c"},
                ]
            ),
        )

    client, http_client = build_client(handler, rng=random.Random(7))
    async with http_client:
        movie = await client.random_movie(FilterSpec())

    assert movie.id in {1, 2, 3}
    assert len(requests) == 1
    params = requests[0].url.params
    assert params["api_key"] == "test-key"
    assert params["language"] == "ja-JP"
    assert params["sort_by"] == "popularity.desc"
    assert params["include_adult"] == "false"


@pytest.mark.anyio("asyncio")
async def test_page_window_narrows_with_constraints() -> None:
    requests: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(
            200, json=discover_payload([{"id": 4, "title": "Four", "overview": "d"}], total_pages=40)
        )

    rng = RecordingRandom(picks=[2])
    client, http_client = build_client(handler, rng=rng)
    filters = FilterSpec(genres=[28], runtime=90, providers=[8])
    async with http_client:
        await client.random_movie(filters)

    assert rng.ranges == [(1, 2)]
    params = requests[0].url.params
    assert params["page"] == "2"
    assert params["with_genres"] == "28"
    assert params["with_runtime.lte"] == "90"
    assert params["with_watch_providers"] == "8"
    assert params["watch_region"] == "JP"


@pytest.mark.anyio("asyncio")
async def test_random_movie_redraws_page_beyond_total_pages() -> None:
    pages: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        page = request.url.params["page"]
        pages.append(page)
        if page == "9":
            return httpx.Response(
                200,
                json={"page": 9, "results": [], "total_pages": 2, "total_results": 25},
            )
        return httpx.Response(
            200, json=discover_payload([{"id": 8, "title": "Eight", "overview": "e"}])
        )

    client, http_client = build_client(handler, rng=RecordingRandom(picks=[9, 2]))
    async with http_client:
        movie = await client.random_movie(FilterSpec())

    assert pages == ["9", "2"]
    assert movie.id == 8


@pytest.mark.anyio("asyncio")
async def test_random_movie_prefers_results_outside_exclusions() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            200,
            json=discover_payload(
                [
                    {"id": 1, "title": "One", "overview": "a"},
                    {"id": 2, "title": "Two", "overview": "b"},
                ]
            ),
        )

    client, http_client = build_client(handler, rng=RecordingRandom())
    async with http_client:
        movie = await client.random_movie(FilterSpec(), exclude=frozenset({1}))

    assert movie.id == 2


@pytest.mark.anyio("asyncio")
async def test_random_movie_without_results_raises() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            200, json={"page": 1, "results": [], "total_pages": 0, "total_results": 0}
        )

    client, http_client = build_client(handler)
    async with http_client:
        with pytest.raises(NoResultsError):
            await client.random_movie(FilterSpec(genres=[999]))


@pytest.mark.anyio("asyncio")
async def test_missing_api_key_raises_before_any_request() -> None:
    requests: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:  # pragma: no cover - must not run
        requests.append(request)
        return httpx.Response(200, json={})

    client, http_client = build_client(handler, settings=build_settings(TMDB_API_KEY=None))
    async with http_client:
        with pytest.raises(ConfigurationError, match="TMDB_API_KEY is not set"):
            await client.list_genres()

    assert requests == []


@pytest.mark.anyio("asyncio")
async def test_error_status_raises_transport_error_with_details() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(503, text="maintenance")

    client, http_client = build_client(handler)
    async with http_client:
        with pytest.raises(TransportError) as excinfo:
            await client.discover(FilterSpec(), 1)

    assert excinfo.value.status == 503
    assert excinfo.value.body == "maintenance"


@pytest.mark.anyio("asyncio")
async def test_network_failure_raises_transport_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("unreachable", request=request)

    client, http_client = build_client(handler)
    async with http_client:
        with pytest.raises(TransportError):
            await client.list_genres()


@pytest.mark.anyio("asyncio")
async def test_translation_prefers_language_and_region_match() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        path = request.url.path
        if path.endswith("/discover/movie"):
            return httpx.Response(
                200,
                json=discover_payload(
                    [{"id": 11, "title": "", "overview": "", "original_title": "Orig"}]
                ),
            )
        if path.endswith("/movie/11/translations"):
            return httpx.Response(
                200,
                json={
                    "translations": [
                        {"iso_639_1": "en", "iso_3166_1": "JP", "data": {"title": "Region"}},
                        {"iso_639_1": "ja", "iso_3166_1": "", "data": {"title": "Language"}},
                        {
                            "iso_639_1": "ja",
                            "iso_3166_1": "JP",
                            "data": {"title": "Both", "overview": "あらすじ"},
                        },
                    ]
                },
            )
        raise AssertionError(f"unexpected request {path}")

    client, http_client = build_client(handler, rng=RecordingRandom())
    async with http_client:
        movie = await client.random_movie(FilterSpec())

    assert movie.title == "Both"
    assert movie.overview == "あらすじ"


@pytest.mark.anyio("asyncio")
async def test_enrichment_failures_fall_through_to_fallbacks() -> None:
    languages: list[str | None] = []

    def handler(request: httpx.Request) -> httpx.Response:
        path = request.url.path
        if path.endswith("/discover/movie"):
            return httpx.Response(
                200,
                json=discover_payload(
                    [{"id": 12, "title": "", "overview": "", "original_title": "Foo"}]
                ),
            )
        if path.endswith("/translations"):
            return httpx.Response(500, text="boom")
        if path.endswith("/movie/12"):
            language = request.url.params.get("language")
            languages.append(language)
            if language == "en-US":
                return httpx.Response(200, json={"id": 12, "overview": "English synopsis"})
            return httpx.Response(500, text="boom")
        raise AssertionError(f"unexpected request {path}")

    client, http_client = build_client(handler, rng=RecordingRandom())
    async with http_client:
        movie = await client.random_movie(FilterSpec())

    assert languages == ["ja-JP", "en-US"]
    assert movie.title == "Foo"
    assert movie.overview == "English synopsis"


@pytest.mark.anyio("asyncio")
async def test_list_providers_narrows_to_featured_services() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.params["watch_region"] == "JP"
        return httpx.Response(
            200,
            json={
                "results": [
                    {"provider_id": 8, "provider_name": "Netflix", "logo_path": "/n.png"},
                    {"provider_id": 2, "provider_name": "Apple iTunes", "logo_path": None},
                    {"provider_id": 337, "provider_name": "Disney Plus", "logo_path": "/d.png"},
                ]
            },
        )

    client, http_client = build_client(handler)
    async with http_client:
        providers = await client.list_providers()

    assert [provider.id for provider in providers] == [8, 337]
    assert providers[0].name == "Netflix"


@pytest.mark.anyio("asyncio")
async def test_list_providers_falls_back_to_full_list() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            200,
            json={"results": [{"provider_id": 2, "provider_name": "Apple iTunes"}]},
        )

    client, http_client = build_client(handler)
    async with http_client:
        providers = await client.list_providers()

    assert [provider.id for provider in providers] == [2]


@pytest.mark.anyio("asyncio")
async def test_watch_providers_missing_region_is_empty() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"id": 5, "results": {"US": {"link": "x"}}})

    client, http_client = build_client(handler)
    async with http_client:
        providers = await client.get_watch_providers(5)

    assert providers.link is None
    assert providers.flatrate == []
    assert not providers.has_streaming()


@pytest.mark.anyio("asyncio")
async def test_movie_details_degrade_when_credits_fail() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        path = request.url.path
        if path.endswith("/credits"):
            return httpx.Response(500, text="boom")
        if path.endswith("/watch/providers"):
            return httpx.Response(
                200,
                json={
                    "results": {
                        "JP": {
                            "link": "https://example.com/watch",
                            "flatrate": [
                                {"provider_id": 8, "provider_name": "Netflix", "logo_path": "/n.png"}
                            ],
                        }
                    }
                },
            )
        return httpx.Response(
            200,
            json={
                "id": 21,
                "title": "Details",
                "runtime": 118,
                "release_date": "2004-07-17",
                "overview": "Text",
            },
        )

    client, http_client = build_client(handler)
    async with http_client:
        details = await client.get_movie_details(21)

    assert details.title == "Details"
    assert details.release_year == 2004
    assert details.runtime == 118
    assert details.directors == []
    assert details.cast == []
    assert details.providers.link == "https://example.com/watch"
    assert [provider.id for provider in details.providers.flatrate] == [8]


@pytest.mark.anyio("asyncio")
async def test_movie_details_collects_directors_and_top_cast() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        path = request.url.path
        if path.endswith("/credits"):
            return httpx.Response(
                200,
                json={
                    "cast": [{"name": f"Actor {index}", "character": "Role"} for index in range(8)],
                    "crew": [
                        {"name": "Writer", "job": "Screenplay"},
                        {"name": "Director One", "job": "Director"},
                    ],
                },
            )
        if path.endswith("/watch/providers"):
            return httpx.Response(200, json={"results": {}})
        return httpx.Response(200, json={"id": 22, "original_title": "Original"})

    client, http_client = build_client(handler)
    async with http_client:
        details = await client.get_movie_details(22)

    assert details.title == "Original"
    assert details.directors == ["Director One"]
    assert [member.name for member in details.cast] == [f"Actor {index}" for index in range(5)]


@pytest.mark.anyio("asyncio")
async def test_movie_details_failure_raises() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path.endswith("/movie/23"):
            return httpx.Response(404, text="not found")
        return httpx.Response(200, json={"results": {}, "cast": [], "crew": []})

    client, http_client = build_client(handler)
    async with http_client:
        with pytest.raises(TransportError) as excinfo:
            await client.get_movie_details(23)

    assert excinfo.value.status == 404

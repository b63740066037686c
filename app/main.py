"""Entry point for the FastAPI-powered MovieSwipe service."""

from __future__ import annotations

import logging
from contextlib import AsyncExitStack, asynccontextmanager
from datetime import datetime
from typing import Annotated, Any, Literal

import httpx
from fastapi import FastAPI, HTTPException, Path, Query, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field, ValidationError

from .config import Settings, settings
from .database import Database
from .filters import apply_preset, recommend_for_time
from .models import Disposition, FilterSpec, Movie
from .services.selection import (
    FavoritesService,
    ShortlistService,
    StatPeriod,
    SwipeStatsService,
)
from .services.swipe import (
    CandidateCatalog,
    GestureOutcome,
    SwipePhase,
    SwipeRules,
    SwipeSession,
    SwipeSessionRegistry,
)
from .services.tmdb import (
    CatalogError,
    ConfigurationError,
    NoResultsError,
    TMDBClient,
    TransportError,
)
from .services.voting import (
    PollingVoteFeed,
    UnknownMovieError,
    UnknownSessionError,
    VoteFeed,
    VoteService,
)
from .storage import (
    VOTE_NAMESPACE,
    KeyValueStore,
    StoreFactory,
    database_store_factory,
)
from .utils import build_image_url

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

app: FastAPI

CLIENT_ID_PATTERN = r"^[A-Za-z0-9_-]{1,48}$"
SESSION_ID_PATTERN = r"^[a-z0-9]{1,32}$"
MAX_FEED_TIMEOUT = 30.0

ClientId = Annotated[str, Path(pattern=CLIENT_ID_PATTERN)]
SessionId = Annotated[str, Path(pattern=SESSION_ID_PATTERN)]


class GestureRequest(BaseModel):
    dx: float
    dy: float


class CommitRequest(BaseModel):
    movie: Movie
    disposition: Disposition
    from_candidates: bool = False


class VoteRequest(BaseModel):
    client: str = Field(pattern=CLIENT_ID_PATTERN)
    movie_id: int


class CursorRequest(BaseModel):
    delta: int


@asynccontextmanager
async def lifespan(fastapi_app: FastAPI):
    exit_stack = AsyncExitStack()
    tmdb_http_client = await exit_stack.enter_async_context(
        httpx.AsyncClient(
            base_url=str(settings.tmdb_api_url),
            timeout=httpx.Timeout(15.0, connect=5.0),
        )
    )
    database = Database(settings.database_url)
    await database.create_all()

    catalog = TMDBClient(settings, tmdb_http_client)
    install_services(
        fastapi_app,
        settings=settings,
        catalog=catalog,
        store_factory=database_store_factory(database.session_factory),
    )
    fastapi_app.state.database = database
    if not settings.tmdb_api_key:
        logger.warning("TMDB_API_KEY is not set; catalog requests will fail")

    try:
        yield
    finally:  # pragma: no cover - teardown path exercised at runtime
        await fastapi_app.state.sessions.close()
        await database.dispose()
        await exit_stack.aclose()


def create_app() -> FastAPI:
    fastapi_app = FastAPI(
        title=settings.app_name,
        description="Swipe through movie candidates, shortlist them and vote as a group",
        version="1.0.0",
        lifespan=lifespan,
    )

    fastapi_app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET", "POST", "DELETE"],
        allow_headers=["*"],
    )

    register_routes(fastapi_app)
    return fastapi_app


def client_namespace(client_id: str) -> str:
    return f"client:{client_id}"


def install_services(
    fastapi_app: FastAPI,
    *,
    settings: Settings,
    catalog: CandidateCatalog,
    store_factory: StoreFactory,
) -> None:
    """Wire the catalog and stores into the services kept on ``app.state``."""

    rules = SwipeRules.from_settings(settings)

    def session_factory(client_id: str) -> SwipeSession:
        return SwipeSession(catalog, store_factory(client_namespace(client_id)), rules)

    votes = VoteService(
        catalog,
        store_factory(VOTE_NAMESPACE),
        pool_size=settings.vote_pool_size,
    )
    fastapi_app.state.settings = settings
    fastapi_app.state.catalog = catalog
    fastapi_app.state.store_factory = store_factory
    fastapi_app.state.sessions = SwipeSessionRegistry(
        session_factory, max_sessions=settings.max_swipe_sessions
    )
    fastapi_app.state.votes = votes
    fastapi_app.state.vote_feed = PollingVoteFeed(
        votes, settings.vote_poll_interval_seconds
    )


def _state(fastapi_app: FastAPI, name: str) -> Any:
    value = getattr(fastapi_app.state, name, None)
    if value is None:
        raise RuntimeError(f"Service '{name}' not initialised")
    return value


def catalog_http_error(exc: CatalogError) -> HTTPException:
    if isinstance(exc, ConfigurationError):
        return HTTPException(status_code=500, detail={"error": str(exc)})
    if isinstance(exc, NoResultsError):
        return HTTPException(status_code=404, detail={"error": str(exc)})
    if isinstance(exc, TransportError):
        detail: dict[str, Any] = {"error": str(exc)}
        if exc.status is not None:
            detail["status"] = exc.status
        if exc.body:
            detail["body"] = exc.body
        return HTTPException(status_code=502, detail=detail)
    return HTTPException(status_code=500, detail={"error": str(exc)})


def movie_payload(movie: Movie, image_base_url: str) -> dict[str, Any]:
    payload = movie.model_dump()
    payload["poster_url"] = build_image_url(movie.poster_path, image_base_url)
    return payload


def _outcome_payload(outcome: GestureOutcome) -> dict[str, Any]:
    return {
        "direction": outcome.direction,
        "movie": outcome.movie.model_dump() if outcome.movie else None,
        "counted": outcome.counted,
        "ignored": outcome.ignored,
        "session_complete": outcome.session_complete,
        "handed_off": [movie.model_dump() for movie in outcome.handed_off],
    }


def register_routes(fastapi_app: FastAPI) -> None:
    def catalog() -> Any:
        return _state(fastapi_app, "catalog")

    def client_store(client_id: str) -> KeyValueStore:
        factory: StoreFactory = _state(fastapi_app, "store_factory")
        return factory(client_namespace(client_id))

    def current_settings() -> Settings:
        return _state(fastapi_app, "settings")

    def sessions() -> SwipeSessionRegistry:
        return _state(fastapi_app, "sessions")

    def votes() -> VoteService:
        return _state(fastapi_app, "votes")

    @fastapi_app.get("/healthz")
    async def healthcheck() -> dict[str, str]:
        return {"status": "ok"}

    @fastapi_app.get("/api/genres")
    async def list_genres() -> list[dict[str, Any]]:
        try:
            genres = await catalog().list_genres()
        except CatalogError as exc:
            raise catalog_http_error(exc) from exc
        return [genre.model_dump() for genre in genres]

    @fastapi_app.get("/api/providers")
    async def list_providers() -> list[dict[str, Any]]:
        try:
            providers = await catalog().list_providers()
        except CatalogError as exc:
            raise catalog_http_error(exc) from exc
        return [provider.model_dump() for provider in providers]

    @fastapi_app.get("/api/movies")
    async def random_movie(request: Request) -> dict[str, Any]:
        try:
            filters = FilterSpec.from_query(request.query_params)
        except (ValidationError, ValueError) as exc:
            raise HTTPException(status_code=400, detail="Invalid filter parameters.") from exc
        try:
            movie = await catalog().random_movie(filters)
        except CatalogError as exc:
            raise catalog_http_error(exc) from exc
        return movie_payload(movie, current_settings().tmdb_image_base_url)

    @fastapi_app.get("/api/movies/{movie_id}/details")
    async def movie_details(movie_id: int) -> dict[str, Any]:
        try:
            details = await catalog().get_movie_details(movie_id)
        except CatalogError as exc:
            raise catalog_http_error(exc) from exc
        return details.model_dump()

    @fastapi_app.get("/api/movies/{movie_id}/providers")
    async def movie_providers(movie_id: int) -> dict[str, Any]:
        try:
            providers = await catalog().get_watch_providers(movie_id)
        except CatalogError as exc:
            raise catalog_http_error(exc) from exc
        payload = providers.model_dump()
        payload["has_streaming"] = providers.has_streaming()
        return payload

    @fastapi_app.get("/api/recommendations/time")
    async def time_recommendation(at: datetime | None = None) -> dict[str, Any]:
        recommendation = recommend_for_time(at or datetime.now())
        return {
            "message": recommendation.message,
            "filters": recommendation.filters.model_dump(),
            "query": recommendation.filters.to_query_params(),
        }

    @fastapi_app.get("/api/recommendations/presets/{name}")
    async def preset_recommendation(
        name: Literal["tired", "bored", "with_friends"],
    ) -> dict[str, Any]:
        try:
            genres = await catalog().list_genres()
        except CatalogError as exc:
            raise catalog_http_error(exc) from exc
        filters = apply_preset(name, genres)
        return {"filters": filters.model_dump(), "query": filters.to_query_params()}

    @fastapi_app.get("/api/swipe/{client_id}")
    async def swipe_state(client_id: ClientId) -> dict[str, Any]:
        async with sessions().acquire(client_id) as session:
            if session.phase is SwipePhase.IDLE:
                await session.load()
            return session.snapshot().model_dump(mode="json")

    @fastapi_app.post("/api/swipe/{client_id}/filters")
    async def swipe_filters(client_id: ClientId, filters: FilterSpec) -> dict[str, Any]:
        async with sessions().acquire(client_id) as session:
            await session.replace_filters(filters)
            return session.snapshot().model_dump(mode="json")

    @fastapi_app.post("/api/swipe/{client_id}/gesture")
    async def swipe_gesture(client_id: ClientId, gesture: GestureRequest) -> dict[str, Any]:
        async with sessions().acquire(client_id) as session:
            outcome = await session.swipe(gesture.dx, gesture.dy)
            return {
                "outcome": _outcome_payload(outcome),
                "state": session.snapshot().model_dump(mode="json"),
            }

    @fastapi_app.post("/api/swipe/{client_id}/reload")
    async def swipe_reload(client_id: ClientId) -> dict[str, Any]:
        async with sessions().acquire(client_id) as session:
            await session.load()
            return session.snapshot().model_dump(mode="json")

    @fastapi_app.get("/api/clients/{client_id}/candidates")
    async def list_candidates(client_id: ClientId) -> list[dict[str, Any]]:
        movies = await ShortlistService(client_store(client_id)).candidates()
        base_url = current_settings().tmdb_image_base_url
        return [movie_payload(movie, base_url) for movie in movies]

    @fastapi_app.delete("/api/clients/{client_id}/candidates")
    async def clear_candidates(client_id: ClientId) -> dict[str, str]:
        await ShortlistService(client_store(client_id)).clear_candidates()
        return {"status": "cleared"}

    @fastapi_app.post("/api/clients/{client_id}/candidates/pick")
    async def pick_candidate(client_id: ClientId) -> dict[str, Any]:
        movie = await ShortlistService(client_store(client_id)).pick_random()
        if movie is None:
            raise HTTPException(status_code=404, detail="No candidates to pick from")
        return movie_payload(movie, current_settings().tmdb_image_base_url)

    @fastapi_app.get("/api/clients/{client_id}/shortlist")
    async def list_shortlist(
        client_id: ClientId, disposition: Disposition | None = None
    ) -> list[dict[str, Any]]:
        entries = await ShortlistService(client_store(client_id)).entries(disposition)
        return [entry.model_dump(mode="json") for entry in entries]

    @fastapi_app.post("/api/clients/{client_id}/shortlist")
    async def commit_shortlist(
        client_id: ClientId, body: CommitRequest, response: Response
    ) -> dict[str, Any]:
        service = ShortlistService(client_store(client_id))
        entry, created = await service.commit(
            body.movie, body.disposition, from_candidates=body.from_candidates
        )
        response.status_code = 201 if created else 200
        return {"entry": entry.model_dump(mode="json"), "created": created}

    @fastapi_app.delete("/api/clients/{client_id}/shortlist/{movie_id}")
    async def remove_shortlist(client_id: ClientId, movie_id: int) -> dict[str, str]:
        removed = await ShortlistService(client_store(client_id)).remove(movie_id)
        if not removed:
            raise HTTPException(status_code=404, detail="Movie is not shortlisted")
        return {"status": "removed"}

    @fastapi_app.post("/api/clients/{client_id}/shortlist/{movie_id}/watched")
    async def mark_watched(client_id: ClientId, movie_id: int) -> dict[str, Any]:
        entry = await ShortlistService(client_store(client_id)).mark_watched(movie_id)
        if entry is None:
            raise HTTPException(status_code=404, detail="Movie is not shortlisted")
        return entry.model_dump(mode="json")

    @fastapi_app.get("/api/clients/{client_id}/favorites")
    async def list_favorites(client_id: ClientId) -> dict[str, Any]:
        store = client_store(client_id)
        favorites = FavoritesService(store)
        stats = SwipeStatsService(store, current_settings().swipe_stats_limit)
        entries = await favorites.entries()
        recommended = await favorites.recommendations(await stats.entries())
        return {
            "favorites": [entry.model_dump(mode="json") for entry in entries],
            "recommended_ids": recommended,
        }

    @fastapi_app.delete("/api/clients/{client_id}/favorites/{movie_id}")
    async def remove_favorite(client_id: ClientId, movie_id: int) -> dict[str, str]:
        removed = await FavoritesService(client_store(client_id)).remove(movie_id)
        if not removed:
            raise HTTPException(status_code=404, detail="Movie is not a favorite")
        return {"status": "removed"}

    @fastapi_app.get("/api/clients/{client_id}/stats")
    async def swipe_stats(client_id: ClientId, period: StatPeriod = "week") -> dict[str, Any]:
        store = client_store(client_id)
        shortlist = await ShortlistService(store).entries()
        stats = SwipeStatsService(store, current_settings().swipe_stats_limit)
        summary = await stats.summary(period, shortlist)
        return summary.model_dump()

    @fastapi_app.post("/api/vote", status_code=201)
    async def create_vote_session() -> dict[str, Any]:
        service = votes()
        session_id = service.new_session_id()
        try:
            state = await service.ensure_pool(session_id)
        except CatalogError as exc:
            raise catalog_http_error(exc) from exc
        return {"session_id": session_id, **state.model_dump(mode="json")}

    @fastapi_app.get("/api/vote/{session_id}")
    async def vote_session(
        session_id: SessionId,
        client: Annotated[str | None, Query(pattern=CLIENT_ID_PATTERN)] = None,
    ) -> dict[str, Any]:
        service = votes()
        try:
            state = await service.ensure_pool(session_id)
        except CatalogError as exc:
            raise catalog_http_error(exc) from exc
        tally = await service.tally(session_id)
        voter_id: str | None = None
        my_votes: list[int] = []
        if client is not None:
            voter_id = await service.voter_token(session_id, client_store(client))
            my_votes = [
                record.movie_id
                for record in await service.records(session_id)
                if record.voter_id == voter_id
            ]
        return {
            "session_id": session_id,
            **state.model_dump(mode="json"),
            "voter_id": voter_id,
            "my_votes": my_votes,
            "tally": tally.model_dump(mode="json"),
        }

    @fastapi_app.post("/api/vote/{session_id}/votes")
    async def cast_vote(session_id: SessionId, body: VoteRequest) -> dict[str, Any]:
        service = votes()
        voter_id = await service.voter_token(session_id, client_store(body.client))
        try:
            voted = await service.toggle_vote(session_id, body.movie_id, voter_id)
        except (UnknownSessionError, UnknownMovieError) as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        tally = await service.tally(session_id)
        return {"voted": voted, "voter_id": voter_id, "tally": tally.model_dump(mode="json")}

    @fastapi_app.post("/api/vote/{session_id}/cursor")
    async def move_cursor(session_id: SessionId, body: CursorRequest) -> dict[str, Any]:
        try:
            state = await votes().move_cursor(session_id, body.delta)
        except UnknownSessionError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        return state.model_dump(mode="json")

    @fastapi_app.get("/api/vote/{session_id}/results")
    async def vote_results(session_id: SessionId) -> list[dict[str, Any]]:
        try:
            ranking = await votes().ranking(session_id)
        except UnknownSessionError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        return [entry.model_dump(mode="json") for entry in ranking]

    @fastapi_app.get("/api/vote/{session_id}/results/next")
    async def next_vote_change(
        session_id: SessionId,
        since: str | None = None,
        timeout: Annotated[float, Query(ge=0, le=MAX_FEED_TIMEOUT)] = 25.0,
    ) -> Response:
        feed: VoteFeed = _state(fastapi_app, "vote_feed")
        tally = await feed.next_change(session_id, since, timeout)
        if tally is None:
            return Response(status_code=204)
        return Response(
            content=tally.model_dump_json(),
            media_type="application/json",
        )


app = create_app()


if __name__ == "__main__":  # pragma: no cover - manual execution
    import uvicorn

    uvicorn.run(
        "app.main:app",
        host=settings.server_host,
        port=settings.server_port,
        reload=settings.environment == "development",
    )

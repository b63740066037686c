"""Shared group votes over a fixed pool of movies."""

from __future__ import annotations

import asyncio
import hashlib
import logging
import time
from typing import Awaitable, Callable, Protocol

from pydantic import BaseModel, Field

from ..models import FilterSpec, Movie, VoteRecord, VoteSessionState
from ..storage import (
    KeyValueStore,
    vote_records_key,
    vote_session_key,
    voter_token_key,
)
from ..utils import KeyedLocks, generate_token, utcnow
from .swipe import CandidateCatalog

logger = logging.getLogger(__name__)

# Extra draws allowed per pool slot when the catalog keeps returning repeats.
DRAW_ATTEMPTS_PER_SLOT = 3


class VoteError(Exception):
    """Base class for vote session failures."""


class UnknownSessionError(VoteError, LookupError):
    """Raised when a vote session has no movie pool yet."""


class UnknownMovieError(VoteError, LookupError):
    """Raised when a vote targets a movie outside the session pool."""


class RankedMovie(BaseModel):
    movie: Movie
    votes: int = 0


class VoteTally(BaseModel):
    """Vote counts for every pooled movie plus a change fingerprint."""

    session_id: str
    counts: dict[int, int] = Field(default_factory=dict)
    total_votes: int = 0
    fingerprint: str = ""


class VoteService:
    """Draws the shared pool and aggregates participants' votes.

    Pool and votes live in the shared vote namespace; voter tokens live in each
    participant's own namespace.
    """

    def __init__(
        self,
        catalog: CandidateCatalog,
        store: KeyValueStore,
        *,
        pool_size: int = 10,
    ) -> None:
        self._catalog = catalog
        self._store = store
        self._pool_size = pool_size
        self._locks = KeyedLocks()

    @staticmethod
    def new_session_id() -> str:
        return generate_token()

    async def get_session(self, session_id: str) -> VoteSessionState | None:
        payload = await self._store.get(vote_session_key(session_id))
        if not isinstance(payload, dict):
            return None
        try:
            return VoteSessionState.model_validate(payload)
        except ValueError:
            logger.warning("Ignoring malformed vote session %s", session_id)
            return None

    async def ensure_pool(self, session_id: str) -> VoteSessionState:
        """Return the session, drawing and persisting its movie pool on first use."""

        async with self._locks.hold(session_id):
            state = await self.get_session(session_id)
            if state is not None and state.movies:
                return state

            movies: list[Movie] = []
            drawn: set[int] = set()
            attempts = self._pool_size * DRAW_ATTEMPTS_PER_SLOT
            while len(movies) < self._pool_size and attempts > 0:
                attempts -= 1
                movie = await self._catalog.random_movie(
                    FilterSpec(), exclude=frozenset(drawn)
                )
                if movie.id in drawn:
                    continue
                drawn.add(movie.id)
                movies.append(movie)

            state = VoteSessionState(movies=movies, current_index=0)
            await self._save_session(session_id, state)
            logger.info("Created vote session %s with %s movies", session_id, len(movies))
            return state

    async def voter_token(self, session_id: str, client_store: KeyValueStore) -> str:
        """Return the participant's voter id for the session, creating it once."""

        key = voter_token_key(session_id)
        token = await client_store.get(key)
        if isinstance(token, str) and token.strip():
            return token
        token = generate_token()
        await client_store.set(key, token)
        return token

    async def records(self, session_id: str) -> list[VoteRecord]:
        return await self._store.get_models(vote_records_key(session_id), VoteRecord)

    async def toggle_vote(self, session_id: str, movie_id: int, voter_id: str) -> bool:
        """Add the voter's vote for the movie, or withdraw it if already cast.

        Returns whether the vote is present afterwards.
        """

        state = await self._require_session(session_id)
        if all(movie.id != movie_id for movie in state.movies):
            raise UnknownMovieError(f"Movie {movie_id} is not part of session {session_id}")

        async with self._locks.hold(session_id):
            records = await self.records(session_id)
            remaining = [
                record
                for record in records
                if not (record.movie_id == movie_id and record.voter_id == voter_id)
            ]
            voted = len(remaining) == len(records)
            if voted:
                remaining.append(
                    VoteRecord(movie_id=movie_id, voter_id=voter_id, timestamp=utcnow())
                )
            await self._store.set_models(vote_records_key(session_id), remaining)
        return voted

    async def tally(self, session_id: str) -> VoteTally:
        state = await self.get_session(session_id)
        records = await self.records(session_id)
        counts: dict[int, int] = {movie.id: 0 for movie in (state.movies if state else [])}
        for record in records:
            counts[record.movie_id] = counts.get(record.movie_id, 0) + 1
        return VoteTally(
            session_id=session_id,
            counts=counts,
            total_votes=len(records),
            fingerprint=_fingerprint(records),
        )

    async def ranking(self, session_id: str) -> list[RankedMovie]:
        """Pool movies ordered by vote count; ties keep pool order."""

        state = await self._require_session(session_id)
        tally = await self.tally(session_id)
        ranked = [
            RankedMovie(movie=movie, votes=tally.counts.get(movie.id, 0))
            for movie in state.movies
        ]
        return sorted(ranked, key=lambda entry: -entry.votes)

    async def move_cursor(self, session_id: str, delta: int) -> VoteSessionState:
        async with self._locks.hold(session_id):
            state = await self._require_session(session_id)
            last = max(0, len(state.movies) - 1)
            index = min(max(state.current_index + delta, 0), last)
            if index == state.current_index:
                return state
            state = state.model_copy(update={"current_index": index})
            await self._save_session(session_id, state)
            return state

    async def _require_session(self, session_id: str) -> VoteSessionState:
        state = await self.get_session(session_id)
        if state is None:
            raise UnknownSessionError(f"Vote session {session_id} not found")
        return state

    async def _save_session(self, session_id: str, state: VoteSessionState) -> None:
        await self._store.set(vote_session_key(session_id), state.model_dump(mode="json"))


def _fingerprint(records: list[VoteRecord]) -> str:
    pairs = sorted(f"{record.movie_id}:{record.voter_id}" for record in records)
    return hashlib.sha1("|".join(pairs).encode("utf-8")).hexdigest()


class VoteFeed(Protocol):
    async def next_change(
        self, session_id: str, since: str | None, timeout: float
    ) -> VoteTally | None: ...


class PollingVoteFeed:
    """Observe tally changes by re-reading the store at a fixed interval."""

    def __init__(
        self,
        service: VoteService,
        interval: float = 2.0,
        *,
        sleep: Callable[[float], Awaitable[object]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._service = service
        self._interval = interval
        self._sleep = sleep
        self._clock = clock

    async def next_change(
        self, session_id: str, since: str | None, timeout: float
    ) -> VoteTally | None:
        """Return the first tally whose fingerprint differs from ``since``.

        Returns ``None`` once ``timeout`` seconds pass without a change.
        """

        deadline = self._clock() + max(timeout, 0.0)
        while True:
            tally = await self._service.tally(session_id)
            if tally.fingerprint != since:
                return tally
            remaining = deadline - self._clock()
            if remaining <= 0:
                return None
            await self._sleep(min(self._interval, remaining))

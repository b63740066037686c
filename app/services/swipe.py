"""Swipe session state machine driving candidate presentation and decisions."""

from __future__ import annotations

import asyncio
import logging
from collections import OrderedDict
from contextlib import asynccontextmanager, suppress
from dataclasses import dataclass, field
from enum import Enum
from typing import AsyncIterator, Awaitable, Callable, Protocol

from pydantic import BaseModel, Field

from ..config import Settings
from ..models import FilterSpec, Movie, SwipeDirection
from ..storage import KeyValueStore
from ..utils import KeyedLocks
from .ledger import ExposureLedger
from .selection import FavoritesService, ShortlistService, SwipeStatsService
from .tmdb import CatalogError, NoResultsError

logger = logging.getLogger(__name__)

NO_MATCHES_MESSAGE = "No movies match the current filters."


class SwipePhase(str, Enum):
    IDLE = "idle"
    LOADING = "loading"
    PRESENTING = "presenting"
    DRAGGING = "dragging"
    DECIDING = "deciding"
    SESSION_COMPLETE = "session_complete"
    ERROR = "error"


class CandidateCatalog(Protocol):
    async def random_movie(
        self, filters: FilterSpec, *, exclude: frozenset[int] = frozenset()
    ) -> Movie: ...


@dataclass(frozen=True)
class SwipeRules:
    """Fixed parameters of a swipe session."""

    threshold: float = 100.0
    cap: int = 20
    duplicate_retry_limit: int = 10
    exposure_capacity: int = 100
    relaxation_delay: float = 2.0
    prefetch: bool = True
    stats_limit: int = 1_000

    @classmethod
    def from_settings(cls, settings: Settings) -> "SwipeRules":
        return cls(
            threshold=settings.swipe_threshold,
            cap=settings.swipe_cap,
            duplicate_retry_limit=settings.duplicate_retry_limit,
            exposure_capacity=settings.exposure_capacity,
            relaxation_delay=settings.relaxation_delay_seconds,
            prefetch=settings.prefetch_enabled,
            stats_limit=settings.swipe_stats_limit,
        )


@dataclass
class GestureOutcome:
    """Result of finishing a gesture."""

    direction: SwipeDirection | None = None
    movie: Movie | None = None
    counted: bool = False
    ignored: bool = False
    session_complete: bool = False
    handed_off: list[Movie] = field(default_factory=list)


class SwipeSnapshot(BaseModel):
    phase: SwipePhase
    current: Movie | None = None
    next_ready: bool = False
    swipe_count: int = 0
    swipe_cap: int
    shortlist: list[Movie] = Field(default_factory=list)
    filters: FilterSpec = Field(default_factory=FilterSpec)
    offset: tuple[float, float] | None = None
    error: str | None = None


def classify_gesture(dx: float, dy: float, threshold: float) -> SwipeDirection | None:
    """Map a final drag offset to a decision.

    The vertical axis is checked first, so it wins whenever both axes cross
    the threshold. Screen coordinates grow downwards.
    """

    # Vertical wins even when the horizontal offset is larger.
    if abs(dy) >= threshold:
        return "down" if dy > 0 else "up"
    if abs(dx) >= threshold:
        return "right" if dx > 0 else "left"
    return None


class SwipeSession:
    """Per-client swipe flow: loading, presenting, dragging and deciding.

    Transitions are driven by explicit events (``load``, ``replace_filters``
    and the gesture calls); callers serialize events for one session.
    """

    def __init__(
        self,
        catalog: CandidateCatalog,
        store: KeyValueStore,
        rules: SwipeRules | None = None,
        *,
        sleep: Callable[[float], Awaitable[object]] = asyncio.sleep,
    ) -> None:
        self._catalog = catalog
        self._store = store
        self._rules = rules or SwipeRules()
        self._sleep = sleep
        self._shortlist_service = ShortlistService(store)
        self._favorites = FavoritesService(store)
        self._stats = SwipeStatsService(store, self._rules.stats_limit)

        self.phase = SwipePhase.IDLE
        self.filters = FilterSpec()
        self.current: Movie | None = None
        self.next: Movie | None = None
        self.swipe_count = 0
        self.shortlist: list[Movie] = []
        self.error: str | None = None
        self._origin: tuple[float, float] | None = None
        self.offset: tuple[float, float] | None = None
        self._generation = 0
        self._prefetch_task: asyncio.Task[None] | None = None

    @property
    def rules(self) -> SwipeRules:
        return self._rules

    def snapshot(self) -> SwipeSnapshot:
        return SwipeSnapshot(
            phase=self.phase,
            current=self.current,
            next_ready=self.next is not None,
            swipe_count=self.swipe_count,
            swipe_cap=self._rules.cap,
            shortlist=list(self.shortlist),
            filters=self.filters,
            offset=self.offset,
            error=self.error,
        )

    async def load(self) -> None:
        """Fetch and present a fresh candidate for the active filter."""

        if self.phase is SwipePhase.SESSION_COMPLETE:
            self._reset_session()
        self._clear_drag()
        self.phase = SwipePhase.LOADING
        self.error = None
        generation = self._generation

        try:
            try:
                movie = await self._draw(self.filters)
            except NoResultsError:
                logger.info("No candidates for %s, relaxing filters", self.filters)
                self._apply_filters(FilterSpec())
                generation = self._generation
                await self._sleep(self._rules.relaxation_delay)
                try:
                    movie = await self._draw(self.filters)
                except NoResultsError:
                    if generation == self._generation:
                        self._fail(NO_MATCHES_MESSAGE)
                    return
        except CatalogError as exc:
            if generation == self._generation:
                self._fail(str(exc))
            return

        if generation != self._generation:
            logger.debug("Ignoring superseded candidate %s", movie.id)
            return
        await self._present(movie)

    async def replace_filters(self, filters: FilterSpec) -> None:
        """Swap the active filter, drop any prefetched candidate and reload."""

        self._apply_filters(filters)
        await self.load()

    def begin_gesture(self, x: float, y: float) -> bool:
        if self.phase is not SwipePhase.PRESENTING:
            return False
        self.phase = SwipePhase.DRAGGING
        self._origin = (x, y)
        self.offset = (0.0, 0.0)
        return True

    def move_gesture(self, x: float, y: float) -> None:
        if self.phase is not SwipePhase.DRAGGING or self._origin is None:
            return
        origin_x, origin_y = self._origin
        self.offset = (x - origin_x, y - origin_y)

    async def end_gesture(self) -> GestureOutcome:
        if self.phase is not SwipePhase.DRAGGING:
            return GestureOutcome(ignored=True)
        dx, dy = self.offset or (0.0, 0.0)
        self._clear_drag()
        direction = classify_gesture(dx, dy, self._rules.threshold)
        if direction is None or self.current is None:
            self.phase = SwipePhase.PRESENTING
            return GestureOutcome(movie=self.current)
        self.phase = SwipePhase.DECIDING
        return await self._decide(self.current, direction)

    async def swipe(self, dx: float, dy: float) -> GestureOutcome:
        """Run a complete gesture ending at the given offset."""

        if not self.begin_gesture(0.0, 0.0):
            return GestureOutcome(ignored=True)
        self.move_gesture(dx, dy)
        return await self.end_gesture()

    async def wait_for_prefetch(self) -> None:
        task = self._prefetch_task
        if task is not None and not task.done():
            await task

    async def close(self) -> None:
        task = self._prefetch_task
        self._prefetch_task = None
        if task is not None and not task.done():
            task.cancel()
            with suppress(asyncio.CancelledError):
                await task

    async def _decide(self, movie: Movie, direction: SwipeDirection) -> GestureOutcome:
        self.swipe_count += 1
        await self._apply_decision(movie, direction)

        if self.swipe_count >= self._rules.cap:
            handed_off = list(self.shortlist)
            await self._complete(handed_off)
            return GestureOutcome(
                direction=direction,
                movie=movie,
                counted=True,
                session_complete=True,
                handed_off=handed_off,
            )

        if self.next is not None:
            upcoming, self.next = self.next, None
            await self._present(upcoming)
        else:
            await self.load()
        return GestureOutcome(direction=direction, movie=movie, counted=True)

    async def _apply_decision(self, movie: Movie, direction: SwipeDirection) -> None:
        if direction == "down":
            ledger = await ExposureLedger.load(self._store, self._rules.exposure_capacity)
            ledger.mark_seen(movie.id)
            await ledger.save(self._store)
        elif direction == "up":
            await self._favorites.add(movie)
        elif direction == "right":
            if all(entry.id != movie.id for entry in self.shortlist):
                self.shortlist.append(movie)
        await self._stats.record(movie.id, direction)

    async def _complete(self, handed_off: list[Movie]) -> None:
        self.phase = SwipePhase.SESSION_COMPLETE
        self.current = None
        self.next = None
        # Invalidate any prefetch still in flight.
        self._generation += 1
        await self._shortlist_service.hand_off(handed_off)
        logger.info("Swipe session complete with %s shortlisted", len(handed_off))

    async def _draw(self, filters: FilterSpec) -> Movie:
        """Fetch a candidate, re-drawing a bounded number of times on repeats."""

        ledger = await ExposureLedger.load(self._store, self._rules.exposure_capacity)
        excluded = ledger.excluded_ids()
        attempts = 0
        while True:
            movie = await self._catalog.random_movie(filters, exclude=excluded)
            if not ledger.excludes(movie.id) or attempts >= self._rules.duplicate_retry_limit:
                return movie
            attempts += 1
            logger.debug("Candidate %s already exposed, re-drawing (%s)", movie.id, attempts)

    async def _present(self, movie: Movie) -> None:
        ledger = await ExposureLedger.load(self._store, self._rules.exposure_capacity)
        ledger.record_shown(movie.id)
        await ledger.save(self._store)
        self.current = movie
        if self.next is not None and self.next.id == movie.id:
            self.next = None
        self.phase = SwipePhase.PRESENTING
        self._schedule_prefetch()

    def _schedule_prefetch(self) -> None:
        if not self._rules.prefetch or self.next is not None:
            return
        if self._prefetch_task is not None and not self._prefetch_task.done():
            return
        self._prefetch_task = asyncio.create_task(self._prefetch(self._generation))

    async def _prefetch(self, generation: int) -> None:
        try:
            movie = await self._draw(self.filters)
        except CatalogError as exc:
            logger.info("Prefetch failed: %s", exc)
            return
        if generation != self._generation:
            logger.debug("Discarding stale prefetch %s", movie.id)
            return
        if self.current is not None and movie.id == self.current.id:
            return
        self.next = movie

    def _apply_filters(self, filters: FilterSpec) -> None:
        self.filters = filters
        self.next = None
        self._generation += 1

    def _reset_session(self) -> None:
        self.swipe_count = 0
        self.shortlist = []
        self.next = None

    def _clear_drag(self) -> None:
        self._origin = None
        self.offset = None

    def _fail(self, message: str) -> None:
        logger.warning("Swipe session failed: %s", message)
        self.phase = SwipePhase.ERROR
        self.current = None
        self.error = message


SessionFactory = Callable[[str], SwipeSession]


class SwipeSessionRegistry:
    """Keeps one swipe session per client and serializes its events.

    At most ``max_sessions`` sessions stay in memory; when a new client arrives
    the least recently used sessions nobody holds are closed and forgotten.
    """

    def __init__(self, factory: SessionFactory, *, max_sessions: int = 1_000) -> None:
        self._factory = factory
        self._max_sessions = max_sessions
        self._sessions: OrderedDict[str, SwipeSession] = OrderedDict()
        self._locks = KeyedLocks()

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, client_id: object) -> bool:
        return client_id in self._sessions

    def get(self, client_id: str) -> SwipeSession:
        session = self._sessions.get(client_id)
        if session is None:
            session = self._factory(client_id)
            self._sessions[client_id] = session
        self._sessions.move_to_end(client_id)
        return session

    @asynccontextmanager
    async def acquire(self, client_id: str) -> AsyncIterator[SwipeSession]:
        async with self._locks.hold(client_id):
            session = self.get(client_id)
            await self._evict_idle()
            yield session

    async def close(self) -> None:
        for session in self._sessions.values():
            await session.close()
        self._sessions.clear()

    async def _evict_idle(self) -> None:
        for client_id in list(self._sessions):
            if len(self._sessions) <= self._max_sessions:
                break
            if client_id in self._locks:
                continue
            session = self._sessions.pop(client_id)
            logger.debug("Evicting idle swipe session %s", client_id)
            await session.close()

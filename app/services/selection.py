"""Shortlist, favorites and swipe statistics kept per client."""

from __future__ import annotations

import logging
import random
from collections import Counter
from datetime import datetime, timedelta
from typing import Literal

from pydantic import BaseModel

from ..models import (
    Disposition,
    FavoriteEntry,
    Movie,
    ShortlistEntry,
    SwipeDirection,
    SwipeStat,
)
from ..storage import (
    CANDIDATES_KEY,
    FAVORITES_KEY,
    SHORTLIST_KEY,
    SWIPE_STATS_KEY,
    KeyValueStore,
)
from ..utils import RandomSource, utcnow

logger = logging.getLogger(__name__)

StatPeriod = Literal["today", "week", "month", "all"]

PERIOD_SPANS: dict[str, timedelta | None] = {
    "today": timedelta(days=1),
    "week": timedelta(days=7),
    "month": timedelta(days=30),
    "all": None,
}


class ShortlistService:
    """Committed picks plus the hand-off pile produced by a finished swipe session."""

    def __init__(self, store: KeyValueStore, rng: RandomSource | None = None) -> None:
        self._store = store
        self._rng: RandomSource = rng or random.Random()

    async def entries(self, disposition: Disposition | None = None) -> list[ShortlistEntry]:
        entries = await self._store.get_models(SHORTLIST_KEY, ShortlistEntry)
        if disposition is None:
            return entries
        return [entry for entry in entries if entry.disposition == disposition]

    async def commit(
        self,
        movie: Movie,
        disposition: Disposition,
        *,
        now: datetime | None = None,
        from_candidates: bool = False,
    ) -> tuple[ShortlistEntry, bool]:
        """Append an entry unless the movie is already listed.

        Returns the stored entry and whether it was newly created. Committing
        from the hand-off pile clears the pile either way.
        """

        entries = await self.entries()
        existing = next((entry for entry in entries if entry.movie.id == movie.id), None)
        if existing is None:
            entry = ShortlistEntry(
                movie=movie,
                disposition=disposition,
                selected_at=now or utcnow(),
            )
            entries.append(entry)
            await self._store.set_models(SHORTLIST_KEY, entries)
            logger.info("Shortlisted movie %s (%s)", movie.id, disposition)
        else:
            entry = existing
        if from_candidates:
            await self.clear_candidates()
        return entry, existing is None

    async def remove(self, movie_id: int) -> bool:
        entries = await self.entries()
        remaining = [entry for entry in entries if entry.movie.id != movie_id]
        if len(remaining) == len(entries):
            return False
        await self._store.set_models(SHORTLIST_KEY, remaining)
        return True

    async def mark_watched(self, movie_id: int) -> ShortlistEntry | None:
        entries = await self.entries()
        updated: ShortlistEntry | None = None
        for index, entry in enumerate(entries):
            if entry.movie.id == movie_id:
                if entry.watched:
                    return entry
                updated = entry.model_copy(update={"watched": True})
                entries[index] = updated
                break
        if updated is None:
            return None
        await self._store.set_models(SHORTLIST_KEY, entries)
        return updated

    async def candidates(self) -> list[Movie]:
        return await self._store.get_models(CANDIDATES_KEY, Movie)

    async def hand_off(self, movies: list[Movie]) -> None:
        await self._store.set_models(CANDIDATES_KEY, list(movies))

    async def pick_random(self) -> Movie | None:
        candidates = await self.candidates()
        if not candidates:
            return None
        return self._rng.choice(candidates)

    async def clear_candidates(self) -> None:
        await self._store.delete(CANDIDATES_KEY)


class FavoritesService:
    """Movies flagged with an upward swipe, newest first."""

    def __init__(self, store: KeyValueStore) -> None:
        self._store = store

    async def entries(self) -> list[FavoriteEntry]:
        return await self._store.get_models(FAVORITES_KEY, FavoriteEntry)

    async def add(self, movie: Movie, *, now: datetime | None = None) -> bool:
        entries = await self.entries()
        if any(entry.movie.id == movie.id for entry in entries):
            return False
        entries.insert(0, FavoriteEntry(movie=movie, added_at=now or utcnow()))
        await self._store.set_models(FAVORITES_KEY, entries)
        return True

    async def remove(self, movie_id: int) -> bool:
        entries = await self.entries()
        remaining = [entry for entry in entries if entry.movie.id != movie_id]
        if len(remaining) == len(entries):
            return False
        await self._store.set_models(FAVORITES_KEY, remaining)
        return True

    async def recommendations(
        self, stats: list[SwipeStat], *, limit: int = 5
    ) -> list[int]:
        """Rank movies swiped right or up most often, excluding current favorites."""

        favorite_ids = {entry.movie.id for entry in await self.entries()}
        counts: Counter[int] = Counter(
            stat.movie_id
            for stat in stats
            if stat.direction in ("right", "up") and stat.movie_id not in favorite_ids
        )
        return [movie_id for movie_id, _ in counts.most_common(limit)]


class StatsSummary(BaseModel):
    period: StatPeriod
    total_swipes: int = 0
    left_swipes: int = 0
    right_swipes: int = 0
    up_swipes: int = 0
    down_swipes: int = 0
    right_ratio: float = 0.0
    total_selected: int = 0
    watch_now: int = 0
    watch_later: int = 0


class SwipeStatsService:
    """Bounded log of swipe decisions."""

    def __init__(self, store: KeyValueStore, limit: int) -> None:
        self._store = store
        self._limit = limit

    async def entries(self) -> list[SwipeStat]:
        return await self._store.get_models(SWIPE_STATS_KEY, SwipeStat)

    async def record(
        self,
        movie_id: int,
        direction: SwipeDirection,
        *,
        now: datetime | None = None,
    ) -> None:
        stats = await self.entries()
        stats.append(SwipeStat(movie_id=movie_id, direction=direction, timestamp=now or utcnow()))
        if len(stats) > self._limit:
            stats = stats[-self._limit :]
        await self._store.set_models(SWIPE_STATS_KEY, stats)

    async def summary(
        self,
        period: StatPeriod,
        shortlist: list[ShortlistEntry],
        *,
        now: datetime | None = None,
    ) -> StatsSummary:
        span = PERIOD_SPANS[period]
        start = None if span is None else (now or utcnow()) - span

        stats = [
            stat for stat in await self.entries() if start is None or stat.timestamp >= start
        ]
        selected = [
            entry for entry in shortlist if start is None or entry.selected_at >= start
        ]
        directions = Counter(stat.direction for stat in stats)
        total = len(stats)
        return StatsSummary(
            period=period,
            total_swipes=total,
            left_swipes=directions["left"],
            right_swipes=directions["right"],
            up_swipes=directions["up"],
            down_swipes=directions["down"],
            right_ratio=(directions["right"] / total * 100) if total else 0.0,
            total_selected=len(selected),
            watch_now=sum(1 for entry in selected if entry.disposition == "watch_now"),
            watch_later=sum(1 for entry in selected if entry.disposition == "watch_later"),
        )

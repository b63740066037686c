"""Bookkeeping of movies already presented to, or already seen by, a client."""

from __future__ import annotations

import logging
from collections import OrderedDict
from typing import Iterable

from ..storage import SEEN_KEY, SHOWN_KEY, KeyValueStore

logger = logging.getLogger(__name__)


class ExposureLedger:
    """FIFO-bounded record of shown ids plus an unbounded set of seen ids."""

    def __init__(
        self,
        capacity: int,
        shown: Iterable[int] = (),
        seen: Iterable[int] = (),
    ) -> None:
        if capacity < 1:
            raise ValueError("Ledger capacity must be positive")
        self.capacity = capacity
        self._shown: OrderedDict[int, None] = OrderedDict()
        self._seen: set[int] = set(seen)
        for movie_id in shown:
            self.record_shown(movie_id)

    def was_shown(self, movie_id: int) -> bool:
        return movie_id in self._shown

    def was_seen(self, movie_id: int) -> bool:
        return movie_id in self._seen

    def excludes(self, movie_id: int) -> bool:
        """Return whether the movie must not be presented again."""

        return self.was_shown(movie_id) or self.was_seen(movie_id)

    def record_shown(self, movie_id: int) -> None:
        self._shown.pop(movie_id, None)
        self._shown[movie_id] = None
        while len(self._shown) > self.capacity:
            self._shown.popitem(last=False)

    def mark_seen(self, movie_id: int) -> None:
        self._seen.add(movie_id)

    @property
    def shown(self) -> list[int]:
        """Shown ids, oldest first."""

        return list(self._shown)

    @property
    def seen(self) -> list[int]:
        return sorted(self._seen)

    def excluded_ids(self) -> frozenset[int]:
        return frozenset(self._shown) | frozenset(self._seen)

    @classmethod
    async def load(cls, store: KeyValueStore, capacity: int) -> "ExposureLedger":
        """Read the ledger records, ignoring entries that are not integers."""

        shown = _int_entries(await store.get_list(SHOWN_KEY), SHOWN_KEY)
        seen = _int_entries(await store.get_list(SEEN_KEY), SEEN_KEY)
        return cls(capacity, shown=shown, seen=seen)

    async def save(self, store: KeyValueStore) -> None:
        await store.set(SHOWN_KEY, self.shown)
        await store.set(SEEN_KEY, self.seen)


def _int_entries(values: list[object], key: str) -> list[int]:
    parsed: list[int] = []
    for value in values:
        if isinstance(value, bool) or not isinstance(value, int):
            logger.debug("Ignoring non-integer entry %r in %s", value, key)
            continue
        parsed.append(value)
    return parsed

"""Utility helpers for the MovieSwipe service."""

from __future__ import annotations

import asyncio
import re
import secrets
import string
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Iterable, Protocol, Sequence, TypeVar

T = TypeVar("T")

TOKEN_ALPHABET = string.ascii_lowercase + string.digits
YEAR_RE = re.compile(r"^(\d{4})")


class RandomSource(Protocol):
    """Subset of :class:`random.Random` used for page and candidate picks."""

    def randint(self, a: int, b: int) -> int: ...

    def choice(self, seq: Sequence[T]) -> T: ...


def generate_token(length: int = 7) -> str:
    """Return a short lowercase alphanumeric identifier."""

    return "".join(secrets.choice(TOKEN_ALPHABET) for _ in range(length))


def parse_int_list(value: Any) -> list[int]:
    """Parse comma separated or iterable integer values, skipping blanks."""

    if value is None:
        return []
    if isinstance(value, str):
        raw_values: Iterable[Any] = value.split(",")
    elif isinstance(value, int):
        raw_values = [value]
    else:
        raw_values = value

    parsed: list[int] = []
    for entry in raw_values:
        text = str(entry).strip()
        if not text:
            continue
        number = int(text)
        if number not in parsed:
            parsed.append(number)
    return parsed


def first_text(*values: Any) -> str:
    """Return the first value that is a non-blank string."""

    for value in values:
        if isinstance(value, str) and value.strip():
            return value.strip()
    return ""


def extract_year(value: Any) -> int | None:
    """Return the year of a ``YYYY-MM-DD`` date string."""

    if not isinstance(value, str):
        return None
    match = YEAR_RE.match(value)
    if not match:
        return None
    return int(match.group(1))


def build_image_url(path: str | None, base_url: str) -> str | None:
    if not path:
        return None
    if path.startswith("http"):
        return path
    return f"{base_url.rstrip('/')}{path}"


def utcnow() -> datetime:
    """Return the current time as an aware UTC datetime."""

    return datetime.now(timezone.utc)


class KeyedLocks:
    """One :class:`asyncio.Lock` per key, dropped once nobody holds or awaits it."""

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}
        self._users: dict[str, int] = {}

    def __len__(self) -> int:
        return len(self._locks)

    def __contains__(self, key: object) -> bool:
        return key in self._locks

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._users[key] = self._users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if self._users[key] == 0:
                del self._users[key]
                del self._locks[key]

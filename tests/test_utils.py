import asyncio
from datetime import timezone

import pytest

from app.utils import (
    KeyedLocks,
    build_image_url,
    extract_year,
    first_text,
    generate_token,
    parse_int_list,
    utcnow,
)


def test_generate_token_is_short_lowercase_alphanumeric():
    token = generate_token()
    assert len(token) == 7
    assert token.isalnum()
    assert token == token.lower()


def test_parse_int_list_skips_blanks_and_duplicates():
    assert parse_int_list("28, 35,,28") == [28, 35]
    assert parse_int_list(["12", 16]) == [12, 16]
    assert parse_int_list(None) == []
    assert parse_int_list(7) == [7]


def test_parse_int_list_rejects_non_integers():
    with pytest.raises(ValueError):
        parse_int_list("28,action")


def test_first_text_skips_blank_values():
    assert first_text("", "  ", None, " Foo ") == "Foo"
    assert first_text(None, 3) == ""


def test_extract_year():
    assert extract_year("1999-03-31") == 1999
    assert extract_year("") is None
    assert extract_year(None) is None


def test_build_image_url():
    assert build_image_url("/abc.jpg", "https://img/t/p/w500/") == "https://img/t/p/w500/abc.jpg"
    assert build_image_url(None, "https://img") is None
    assert build_image_url("https://cdn/x.jpg", "https://img") == "https://cdn/x.jpg"


def test_utcnow_is_timezone_aware():
    assert utcnow().tzinfo is timezone.utc


def test_keyed_locks_serialize_per_key_and_forget_released_keys():
    locks = KeyedLocks()
    events: list[str] = []

    async def worker(key: str, name: str) -> None:
        async with locks.hold(key):
            events.append(f"{name}:start")
            await asyncio.sleep(0)
            events.append(f"{name}:end")

    async def runner() -> None:
        await asyncio.gather(worker("a", "first"), worker("a", "second"))
        assert "a" not in locks

    asyncio.run(runner())

    assert events == ["first:start", "first:end", "second:start", "second:end"]
    assert len(locks) == 0

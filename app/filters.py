"""Filter suggestions derived from the clock or a named mood."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, Literal

from .models import FilterSpec, Genre

PresetName = Literal["tired", "bored", "with_friends"]

PRESET_GENRE_NAMES: dict[str, tuple[tuple[str, ...], ...]] = {
    # Each slot lists the accepted genre names, localized first.
    "tired": (("コメディ", "Comedy"),),
    "bored": (),
    "with_friends": (("アクション", "Action"), ("コメディ", "Comedy")),
}
PRESET_RUNTIME: dict[str, int | None] = {
    "tired": 90,
    "bored": None,
    "with_friends": 120,
}


@dataclass(frozen=True)
class FilterRecommendation:
    message: str
    filters: FilterSpec


def recommend_for_time(now: datetime) -> FilterRecommendation:
    """Suggest a runtime ceiling that suits the local time of day."""

    hour = now.hour
    is_weekend = now.weekday() >= 5

    if hour >= 22:
        return FilterRecommendation(
            message="Heading to bed soon? Try something light, 90 minutes or less.",
            filters=FilterSpec(runtime=90),
        )
    if is_weekend and 10 <= hour < 18:
        return FilterRecommendation(
            message="You have time today, so longer movies are fair game.",
            filters=FilterSpec(),
        )
    if not is_weekend and 18 <= hour < 22:
        return FilterRecommendation(
            message="After work, a movie under two hours fits nicely.",
            filters=FilterSpec(runtime=120),
        )
    return FilterRecommendation(
        message="Let's find a movie that fits right now.",
        filters=FilterSpec(runtime=120),
    )


def apply_preset(name: PresetName, genres: Iterable[Genre]) -> FilterSpec:
    """Build the filter for a mood preset; unknown genre names are skipped."""

    if name not in PRESET_RUNTIME:
        raise ValueError(f"Unknown preset: {name}")
    by_name = {genre.name: genre.id for genre in genres}
    genre_ids: list[int] = []
    for accepted in PRESET_GENRE_NAMES[name]:
        for genre_name in accepted:
            if genre_name in by_name:
                genre_ids.append(by_name[genre_name])
                break
    return FilterSpec(genres=tuple(genre_ids), runtime=PRESET_RUNTIME[name])

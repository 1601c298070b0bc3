"""Scoring utilities for championship series standings.

Everything here is pure: per-race category ranks, the rank-to-points scale,
best-N selection and per-participant aggregation. Storage access lives in
:mod:`raceseries.standings`.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Tuple

from .models import ParticipantResult, RankableResult
from .timefmt import UNKNOWN_AGE_GROUP, seconds_to_interval, time_to_seconds

MAX_POINTS = 10


@dataclass(frozen=True)
class CategoryRanks:
    overall: int
    age_group: Optional[int]


@dataclass
class ParticipantTotals:
    overall_points: int
    age_group_points: int
    races_participated: int
    total_time: str
    total_distance: float


def points_for_rank(rank: Optional[int]) -> int:
    """10 points for rank 1 down to 1 for rank 10, nothing beyond."""
    if rank is None or rank < 1 or rank > MAX_POINTS:
        return 0
    return MAX_POINTS + 1 - rank


def qualifying_races(total_races: int) -> int:
    """Races that count toward a series total: half the calendar, rounded up."""
    return math.ceil(max(total_races, 0) / 2)


def _dense_ranks(results: List[RankableResult]) -> Dict[int, int]:
    ranks: Dict[int, int] = {}
    rank = 0
    last_place = None
    for res in sorted(results, key=lambda r: r.place):
        if res.place != last_place:
            rank += 1
            last_place = res.place
        ranks[res.registration_id] = rank
    return ranks


def rank_race_results(
    results: Iterable[RankableResult],
    club: Optional[str] = None,
) -> Dict[int, CategoryRanks]:
    """Overall (by gender) and age-group (by gender + age group) ranks for one race.

    Ranks are dense and ordered by overall place. When ``club`` is given only
    runners whose club contains it (case-insensitive) are ranked. Runners with
    no published age get an overall rank only.
    Returns registration_id -> :class:`CategoryRanks`.
    """
    eligible = list(results)
    if club:
        needle = club.lower()
        eligible = [r for r in eligible if r.club and needle in r.club.lower()]

    by_gender: Dict[str, List[RankableResult]] = {}
    by_group: Dict[Tuple[str, str], List[RankableResult]] = {}
    for res in eligible:
        by_gender.setdefault(res.gender, []).append(res)
        if res.age_group != UNKNOWN_AGE_GROUP:
            by_group.setdefault((res.gender, res.age_group), []).append(res)

    overall: Dict[int, int] = {}
    for group in by_gender.values():
        overall.update(_dense_ranks(group))
    age_group: Dict[int, int] = {}
    for group in by_group.values():
        age_group.update(_dense_ranks(group))

    return {reg_id: CategoryRanks(overall[reg_id], age_group.get(reg_id)) for reg_id in overall}


def best_n_total(points: Iterable[int], n: int) -> int:
    """Sum of the ``n`` largest values."""
    return sum(sorted(points, reverse=True)[: max(n, 0)])


def aggregate_participant(
    results: Iterable[ParticipantResult],
    race_ranks: Dict[int, Dict[int, CategoryRanks]],
    qualifying: int,
) -> ParticipantTotals:
    """Series totals for one runner from their results and the per-race ranks.

    DNF/DQ results earn no points and are left out of the participation count
    and the time and distance sums. Unknown race distance adds nothing.
    """
    overall_points: List[int] = []
    age_group_points: List[int] = []
    seconds = 0
    distance = 0.0
    counted = 0
    for res in results:
        if not res.counted:
            continue
        counted += 1
        seconds += time_to_seconds(res.gun_time)
        distance += res.distance or 0.0
        ranks = race_ranks.get(res.race_id, {}).get(res.registration_id)
        overall_points.append(points_for_rank(ranks.overall) if ranks else 0)
        age_group_points.append(points_for_rank(ranks.age_group) if ranks else 0)
    return ParticipantTotals(
        overall_points=best_n_total(overall_points, qualifying),
        age_group_points=best_n_total(age_group_points, qualifying),
        races_participated=counted,
        total_time=seconds_to_interval(seconds),
        total_distance=round(distance, 2),
    )


__all__ = [
    "MAX_POINTS",
    "CategoryRanks",
    "ParticipantTotals",
    "points_for_rank",
    "qualifying_races",
    "rank_race_results",
    "best_n_total",
    "aggregate_participant",
]

"""Compute and persist championship series standings.

Ranks are worked out once per race and held in memory; each participant's
totals are then aggregated by a bounded pool of workers. Standings are fully
rebuilt on every run and ranked afterwards in a single SQL pass.
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Dict, List, Optional

from . import datastore_pg as pg
from .config import Settings
from .models import ParticipantResult, RaceRecord, StandingRow
from .scoring import CategoryRanks, aggregate_participant, qualifying_races, rank_race_results

logger = logging.getLogger(__name__)


def build_race_ranks(races: List[RaceRecord], club: Optional[str] = None) -> Dict[int, Dict[int, CategoryRanks]]:
    """race_id -> registration_id -> category ranks, one storage read per race."""
    return {race.id: rank_race_results(pg.fetch_rankable_results(race.id), club=club) for race in races}


def _attached_registration(results: List[ParticipantResult]) -> Optional[ParticipantResult]:
    """The result whose registration carries the standing: the latest race run."""
    with_reg = [r for r in results if r.registration_id is not None]
    if not with_reg:
        return None
    return max(with_reg, key=lambda r: (r.race_date, r.race_id))


def standing_for_participant(
    series_id: int,
    year: int,
    runner_id: int,
    race_ranks: Dict[int, Dict[int, CategoryRanks]],
    qualifying: int,
) -> Optional[StandingRow]:
    results = pg.fetch_participant_results(series_id, year, runner_id)
    anchor = _attached_registration(results)
    if anchor is None:
        logger.warning(f"Runner {runner_id} has no resolvable registration; skipped")
        return None
    totals = aggregate_participant(results, race_ranks, qualifying)
    return StandingRow(
        series_id=series_id,
        year=year,
        runner_id=runner_id,
        registration_id=anchor.registration_id,
        gender=anchor.gender,
        age_group=anchor.age_group or "",
        overall_points=totals.overall_points,
        age_group_points=totals.age_group_points,
        races_participated=totals.races_participated,
        total_time=totals.total_time,
        total_distance=totals.total_distance,
    )


def compute_standings(series_id: int, year: int, settings: Optional[Settings] = None) -> None:
    """Rebuild the standings of ``series_id`` for ``year``.

    A series with no races for the year is left untouched.
    """
    settings = settings or Settings.from_env()
    races = pg.list_races_for_year(series_id, year)
    if not races:
        logger.info(f"No races for series {series_id} in {year}; nothing to compute")
        return

    total_races = len(races) + pg.count_open_planned_races(series_id)
    qualifying = qualifying_races(total_races)
    logger.info(
        f"Computing standings for series {series_id} ({year}): {len(races)} races held, "
        f"{total_races} in calendar, best {qualifying} count"
    )

    race_ranks = build_race_ranks(races, club=settings.scoring_club)
    participants = pg.fetch_participants(series_id, year)

    standings: List[StandingRow] = []
    skipped = 0
    batch_size = settings.standings_batch_size
    with ThreadPoolExecutor(max_workers=settings.standings_concurrency) as executor:
        for start in range(0, len(participants), batch_size):
            batch = participants[start:start + batch_size]
            for row in executor.map(
                lambda rid: standing_for_participant(series_id, year, rid, race_ranks, qualifying),
                batch,
            ):
                if row is None:
                    skipped += 1
                else:
                    standings.append(row)
            logger.info(f"Processed {min(start + batch_size, len(participants))}/{len(participants)} participants")

    written = pg.replace_standings(series_id, year, standings)
    ranked = pg.rank_standings(series_id, year)
    logger.info(
        f"standings_counts series={series_id} year={year} races={len(races)} qualifying={qualifying} "
        f"participants={len(participants)} written={written} ranked={ranked} skipped={skipped}"
    )


__all__ = ["build_race_ranks", "standing_for_participant", "compute_standings"]

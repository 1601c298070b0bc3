"""Reconcile a scraped race with stored series state.

One call handles one race, in order: race row, runner identities,
registrations, then result replacement. Re-running on the same page leaves
the stored results identical. Callers must not ingest into the same series
from two runs at once.
"""

from __future__ import annotations

import logging
import math
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Dict, List, Optional, Sequence, Tuple

import psycopg2
import requests

from . import datastore_pg as pg
from .config import Settings
from .extractor import ScrapedRace, ScrapedRunner, make_session, scrape_race
from .models import IngestSummary, PlannedRace, RaceRecord, RunnerRecord
from .timefmt import UNKNOWN_AGE_GROUP, age_group_for
from .validation import validate_result_batch, validate_runner_batch

logger = logging.getLogger(__name__)

RunnerKey = Tuple[str, str, Optional[int]]


def _significant_words(name: str) -> List[str]:
    return [w for w in (name or "").lower().split() if len(w) > 3]


def match_planned_race(name: str, year: int, planned: Sequence[PlannedRace]) -> Optional[PlannedRace]:
    """First planned race sharing at least half of the scraped name's significant words.

    Words longer than three characters are significant; a pair matches when
    either contains the other. A course must be established before ``year``.
    """
    scraped_words = _significant_words(name)
    if not scraped_words:
        return None
    needed = math.ceil(len(scraped_words) * 0.5)
    for candidate in planned:
        if candidate.established_year is not None and candidate.established_year >= year:
            continue
        planned_words = _significant_words(candidate.name)
        matching = [w for w in scraped_words if any(pw in w or w in pw for pw in planned_words)]
        if matching and len(matching) >= needed:
            return candidate
    return None


def birth_year_for(race_year: int, age: int) -> int:
    return race_year - age


def runner_key(runner: ScrapedRunner, race_year: int) -> RunnerKey:
    """Identity key; a fallback age gives no birth year, so it never matches an observed one."""
    birth_year = None if runner.age_estimated else birth_year_for(race_year, runner.age)
    return (
        runner.first_name.strip().lower(),
        runner.last_name.strip().lower(),
        birth_year,
    )


def registration_age_group(runner: ScrapedRunner) -> str:
    return UNKNOWN_AGE_GROUP if runner.age_estimated else age_group_for(runner.age)


def _upsert_race(series_id: int, scraped: ScrapedRace) -> RaceRecord:
    existing = pg.find_race_by_url(series_id, scraped.url)
    if existing is None:
        existing = pg.find_race_by_name_date(series_id, scraped.name, scraped.date)

    planned = match_planned_race(scraped.name, scraped.year, pg.list_planned_races(series_id))
    planned_id = planned.id if planned else None

    if existing is not None:
        race = pg.update_race(existing.id, scraped, planned_id)
        logger.info(f"Updated race {race.id}: {race.name} ({race.date})")
    else:
        race = pg.insert_race(series_id, scraped, planned_id)
        logger.info(f"Created race {race.id}: {race.name} ({race.date})")

    if planned is not None and race.planned_race_id == planned.id:
        pg.mark_planned_scraped(planned.id)
        logger.info(f"Linked race {race.id} to planned race {planned.id} ({planned.name})")
    return race


def _resolve_runner(runner: ScrapedRunner, birth_year: Optional[int]) -> Tuple[RunnerRecord, bool]:
    """Return the stored identity for ``runner`` and whether it was created."""
    existing = pg.find_runner(runner.first_name, runner.last_name, birth_year)
    if existing is None:
        return pg.insert_runner(runner, birth_year), True
    club = runner.club or existing.club
    pg.update_runner(existing.id, runner.gender, club)
    return existing, False


def _resolve_identities(
    runners: Sequence[ScrapedRunner],
    race_year: int,
    concurrency: int,
) -> Tuple[Dict[RunnerKey, RunnerRecord], int, int]:
    unique: Dict[RunnerKey, ScrapedRunner] = {}
    for runner in runners:
        unique.setdefault(runner_key(runner, race_year), runner)

    identities: Dict[RunnerKey, RunnerRecord] = {}
    created = updated = 0
    with ThreadPoolExecutor(max_workers=concurrency) as executor:
        futures = {
            key: executor.submit(_resolve_runner, runner, key[2])
            for key, runner in unique.items()
        }
        for key, future in futures.items():
            record, was_created = future.result()
            identities[key] = record
            if was_created:
                created += 1
            else:
                updated += 1
    return identities, created, updated


def _register(
    series_id: int,
    runners: Sequence[ScrapedRunner],
    identities: Dict[RunnerKey, RunnerRecord],
    race_year: int,
    summary: IngestSummary,
) -> set:
    """Write registrations; returns the bibs registered by this run."""
    bib_map = pg.load_bib_map(series_id)
    registered = set()
    for runner in runners:
        record = identities[runner_key(runner, race_year)]
        bib = runner.bib_number
        holder = bib_map.get(bib)
        conflict = holder is not None and holder != record.id
        if conflict:
            summary.bib_conflicts += 1
            logger.warning(
                f"Bib {bib} in series {series_id} moves from runner {holder} to runner {record.id}"
            )
        try:
            pg.upsert_registration(
                series_id,
                record.id,
                bib,
                runner.age,
                registration_age_group(runner),
                age_estimated=runner.age_estimated,
                supersede=conflict,
            )
        except psycopg2.IntegrityError as exc:
            summary.registrations_skipped += 1
            logger.warning(
                f"Registration conflict for {runner.first_name} {runner.last_name} (bib {bib}) - skipping: {exc}"
            )
            continue
        bib_map[bib] = record.id
        registered.add(bib)
    return registered


def ingest_race(series_id: int, scraped: ScrapedRace, settings: Optional[Settings] = None) -> IngestSummary:
    """Persist one scraped race into a series and report what changed."""
    settings = settings or Settings.from_env()
    summary = IngestSummary(race=None)
    if not scraped.results:
        logger.warning(f"No results extracted from {scraped.url}; stored state left unchanged")
        return summary

    runner_batch = validate_runner_batch(scraped.runners)
    result_batch = validate_result_batch(scraped.results)
    summary.invalid_runners = runner_batch.stats["invalid"]
    summary.invalid_results = result_batch.stats["invalid"]
    summary.warnings = runner_batch.stats["warnings"] + result_batch.stats["warnings"]
    summary.estimated_ages = sum(1 for r in runner_batch.valid if r.age_estimated)
    if summary.estimated_ages:
        logger.warning(
            f"{summary.estimated_ages} runners at {scraped.url} have no published age; "
            f"registered in age group {UNKNOWN_AGE_GROUP!r}"
        )

    race = _upsert_race(series_id, scraped)
    summary.race = race

    identities, summary.runners_created, summary.runners_updated = _resolve_identities(
        runner_batch.valid, scraped.year, settings.ingest_concurrency
    )
    registered = _register(series_id, runner_batch.valid, identities, scraped.year, summary)

    registration_ids = pg.load_registration_ids(series_id)
    rows = []
    for result in result_batch.valid:
        reg_id = registration_ids.get(result.bib_number) if result.bib_number in registered else None
        if reg_id is None:
            summary.results_skipped += 1
            logger.warning(f"No registration for bib {result.bib_number} in race {race.id}; result skipped")
            continue
        rows.append((reg_id, result))
    summary.results_created = pg.replace_race_results(race.id, rows)

    logger.info(
        f"ingest_counts race={race.id} runners_created={summary.runners_created} "
        f"runners_updated={summary.runners_updated} results_created={summary.results_created} "
        f"results_skipped={summary.results_skipped} registrations_skipped={summary.registrations_skipped} "
        f"bib_conflicts={summary.bib_conflicts} invalid_runners={summary.invalid_runners} "
        f"invalid_results={summary.invalid_results} estimated_ages={summary.estimated_ages}"
    )
    return summary


def ingest(
    series_id: int,
    source_url: str,
    settings: Optional[Settings] = None,
    session: Optional[requests.Session] = None,
) -> IngestSummary:
    """Fetch ``source_url``, extract it and ingest it into ``series_id``."""
    settings = settings or Settings.from_env()
    session = session or make_session(settings.user_agent)
    scraped = scrape_race(source_url, session=session, timeout=settings.scrape_timeout)
    return ingest_race(series_id, scraped, settings=settings)


def ingest_many(
    series_id: int,
    urls: Sequence[str],
    settings: Optional[Settings] = None,
    session: Optional[requests.Session] = None,
) -> Dict[str, object]:
    """Ingest several pages one after another with a politeness delay.

    A failing page is recorded in ``errors`` and the batch moves on.
    """
    settings = settings or Settings.from_env()
    session = session or make_session(settings.user_agent)
    report: Dict[str, object] = {
        "total_urls": len(urls),
        "successful": 0,
        "failures": 0,
        "total_runners": 0,
        "total_results": 0,
        "races": [],
        "errors": [],
    }
    for index, url in enumerate(urls):
        if index and settings.scrape_delay:
            time.sleep(settings.scrape_delay)
        logger.info(f"Scraping {index + 1}/{len(urls)}: {url}")
        try:
            summary = ingest(series_id, url, settings=settings, session=session)
        except (requests.RequestException, psycopg2.DataError, psycopg2.IntegrityError, ValueError) as exc:
            report["failures"] += 1
            report["errors"].append({"url": url, "error": str(exc)})
            logger.error(f"Failed to ingest {url}: {exc}")
            continue
        if summary.race is None:
            report["failures"] += 1
            report["errors"].append({"url": url, "error": "no results extracted"})
            continue
        report["successful"] += 1
        report["total_runners"] += summary.runners_created + summary.runners_updated
        report["total_results"] += summary.results_created
        report["races"].append(summary.to_dict())
    logger.info(
        f"scrape_all_counts series={series_id} total={report['total_urls']} "
        f"successful={report['successful']} failures={report['failures']}"
    )
    return report


__all__ = [
    "match_planned_race",
    "birth_year_for",
    "runner_key",
    "registration_age_group",
    "ingest_race",
    "ingest",
    "ingest_many",
]

import psycopg2
import pytest

import raceseries.datastore_pg as pg
from conftest import results_page
from raceseries.config import Settings
from raceseries.extractor import extract_race
from raceseries.ingest import ingest_many, ingest_race, match_planned_race
from raceseries.models import PlannedRace

CAKE_URL = "https://mcrrc.org/race-result/piece-of-cake-10k-14/"
HENSON_URL = "https://mcrrc.org/race-result/matthew-henson-5k-2025/"

SETTINGS = Settings(scrape_delay=0.0, ingest_concurrency=2)


def _cake(rows):
    return extract_race(results_page("Piece of Cake 10K", "March 23, 2025   Wheaton, MD", rows), CAKE_URL)


def _henson(rows):
    return extract_race(results_page("Matthew Henson 5K", "August 9, 2025   Silver Spring, MD", rows), HENSON_URL)


@pytest.fixture()
def series_id():
    return pg.ensure_series("MCRRC Championship Series", 2025).id


def _active_regs(store, bib):
    return [r for r in store["registrations"] if r["bib_number"] == bib and r["is_active"]]


def test_first_ingest_creates_race_runner_registration_and_result(series_id, memory_store):
    summary = ingest_race(series_id, _cake([("1", "101", "Doe, Jane", "30", "F", "16:30")]), SETTINGS)

    assert summary.race is not None
    assert summary.race.name == "Piece of Cake 10K"
    assert summary.runners_created == 1
    assert summary.runners_updated == 0
    assert summary.results_created == 1
    assert summary.results_skipped == 0

    (runner,) = memory_store["runners"]
    assert (runner["first_name"], runner["last_name"], runner["birth_year"]) == ("Jane", "Doe", 1995)
    (reg,) = memory_store["registrations"]
    assert (reg["bib_number"], reg["age"], reg["age_group"], reg["is_active"]) == ("101", 30, "30-34", True)
    (result,) = memory_store["results"]
    assert result["registration_id"] == reg["id"]
    assert result["gun_time"] == "00:16:30"


def test_reingesting_same_page_is_idempotent(series_id, memory_store):
    rows = [
        ("1", "101", "Doe, Jane", "30", "F", "16:30"),
        ("2", "102", "Roe, Rick", "44", "M", "17:05"),
    ]
    ingest_race(series_id, _cake(rows), SETTINGS)
    snapshot = sorted(
        (r["race_id"], r["registration_id"], r["place"], r["gun_time"]) for r in memory_store["results"]
    )

    again = ingest_race(series_id, _cake(rows), SETTINGS)

    assert again.runners_created == 0
    assert again.runners_updated == 2
    assert len(memory_store["races"]) == 1
    assert len(memory_store["runners"]) == 2
    assert len(memory_store["registrations"]) == 2
    assert sorted(
        (r["race_id"], r["registration_id"], r["place"], r["gun_time"]) for r in memory_store["results"]
    ) == snapshot


def test_bib_handed_to_new_runner_supersedes_old_registration(series_id, memory_store):
    ingest_race(series_id, _cake([("1", "101", "Doe, Jane", "30", "F", "16:30")]), SETTINGS)
    summary = ingest_race(series_id, _henson([("1", "101", "Smith, Mary", "52", "F", "21:10")]), SETTINGS)

    assert summary.bib_conflicts == 1
    assert summary.registrations_skipped == 0
    assert summary.results_created == 1

    active = _active_regs(memory_store, "101")
    assert len(active) == 1
    mary = next(r for r in memory_store["runners"] if r["first_name"] == "Mary")
    assert active[0]["runner_id"] == mary["id"]
    # Jane keeps her earlier result under the deactivated registration
    assert len([r for r in memory_store["registrations"] if r["bib_number"] == "101"]) == 2
    assert len(memory_store["results"]) == 2


def test_registration_integrity_error_skips_runner_and_result(series_id, memory_store, monkeypatch, caplog):
    real_upsert = pg.upsert_registration

    def flaky(series_id, runner_id, bib_number, age, age_group, **kwargs):
        if bib_number == "102":
            raise psycopg2.IntegrityError("duplicate key value violates unique constraint")
        return real_upsert(series_id, runner_id, bib_number, age, age_group, **kwargs)

    monkeypatch.setattr(pg, "upsert_registration", flaky)
    caplog.set_level("WARNING")
    rows = [
        ("1", "101", "Doe, Jane", "30", "F", "16:30"),
        ("2", "102", "Roe, Rick", "44", "M", "17:05"),
    ]
    summary = ingest_race(series_id, _cake(rows), SETTINGS)

    assert summary.registrations_skipped == 1
    assert summary.results_created == 1
    assert summary.results_skipped == 1
    assert any("Registration conflict" in r.getMessage() and "bib 102" in r.getMessage() for r in caplog.records)


def test_invalid_runner_is_rejected_and_its_result_skipped(series_id, memory_store):
    rows = [
        ("1", "101", "Doe, Jane", "30", "F", "16:30"),
        ("2", "103", "Mystery, Max", "40", "", "17:45"),
    ]
    summary = ingest_race(series_id, _cake(rows), SETTINGS)

    assert summary.invalid_runners == 1
    assert summary.results_created == 1
    assert summary.results_skipped == 1
    assert [r["first_name"] for r in memory_store["runners"]] == ["Jane"]


def test_zero_results_leave_state_unchanged(series_id, memory_store):
    empty = extract_race("<html><body><h1>Piece of Cake 10K</h1><p>No results yet</p></body></html>", CAKE_URL)
    summary = ingest_race(series_id, empty, SETTINGS)

    assert summary.race is None
    assert memory_store["races"] == []
    assert memory_store["results"] == []


def test_race_links_to_matching_planned_race(series_id, memory_store, add_planned):
    planned = add_planned(series_id, "Piece of Cake 10K")
    summary = ingest_race(series_id, _cake([("1", "101", "Doe, Jane", "30", "F", "16:30")]), SETTINGS)

    assert summary.race.planned_race_id == planned["id"]
    assert planned["status"] == "scraped"


def test_planned_race_established_after_race_year_is_not_linked(series_id, memory_store, add_planned):
    planned = add_planned(series_id, "Matthew Henson 5K", established_year=2026)
    summary = ingest_race(series_id, _henson([("1", "101", "Doe, Jane", "30", "F", "21:30")]), SETTINGS)

    assert summary.race.planned_race_id is None
    assert planned["status"] == "planned"


def _planned(pid, name, established_year=None):
    return PlannedRace(id=pid, series_id=1, name=name, status="planned", estimated_date=None,
                       estimated_distance=None, established_year=established_year, series_order=None)


def test_match_planned_race_needs_half_of_significant_words():
    planned = [_planned(1, "Riley's Rumble Half Marathon"), _planned(2, "Piece of Cake 10K")]
    assert match_planned_race("Piece of Cake 10K Results", 2025, planned).id == 2
    assert match_planned_race("Rileys Rumble Half Marathon 2025", 2025, planned).id == 1
    assert match_planned_race("Turkey Chase", 2025, planned) is None
    assert match_planned_race("5K", 2025, planned) is None


def test_match_planned_race_respects_established_year():
    planned = [_planned(1, "Matthew Henson 5K", established_year=2018)]
    assert match_planned_race("Matthew Henson 5K", 2017, planned) is None
    # the course must predate the race year
    assert match_planned_race("Matthew Henson 5K", 2018, planned) is None
    assert match_planned_race("Matthew Henson 5K", 2019, planned).id == 1


def test_ingest_many_reports_failures_and_keeps_going(series_id, fake_web):
    fake_web.pages[CAKE_URL] = results_page(
        "Piece of Cake 10K", "March 23, 2025   Wheaton, MD", [("1", "101", "Doe, Jane", "30", "F", "16:30")]
    )
    missing = "https://mcrrc.org/race-result/gone/"

    report = ingest_many(series_id, [missing, CAKE_URL], settings=SETTINGS)

    assert report["total_urls"] == 2
    assert report["successful"] == 1
    assert report["failures"] == 1
    assert report["total_results"] == 1
    assert report["errors"][0]["url"] == missing
    assert report["races"][0]["race"]["name"] == "Piece of Cake 10K"
    assert [c["url"] for c in fake_web.calls] == [missing, CAKE_URL]
    assert all(c["timeout"] == SETTINGS.scrape_timeout for c in fake_web.calls)


def test_runner_without_published_age_gets_unknown_age_group(series_id, memory_store, caplog):
    caplog.set_level("WARNING")
    summary = ingest_race(series_id, _cake([("1", "101", "Doe, Jane", "", "F", "16:30")]), SETTINGS)

    assert summary.estimated_ages == 1
    assert summary.results_created == 1
    (runner,) = memory_store["runners"]
    assert runner["birth_year"] is None
    (reg,) = memory_store["registrations"]
    assert (reg["age_group"], reg["age_estimated"]) == ("unknown", True)
    assert "have no published age" in caplog.text


def test_estimated_age_never_merges_with_observed_identity(series_id, memory_store):
    ingest_race(series_id, _cake([("1", "101", "Doe, Jane", "", "F", "16:30")]), SETTINGS)
    summary = ingest_race(series_id, _henson([("1", "205", "Doe, Jane", "35", "F", "21:30")]), SETTINGS)

    assert summary.runners_created == 1
    assert summary.estimated_ages == 0
    assert sorted((r["birth_year"] is None) for r in memory_store["runners"]) == [False, True]
    observed = next(r for r in memory_store["registrations"] if r["bib_number"] == "205")
    assert (observed["age_group"], observed["age_estimated"]) == ("35-39", False)


def test_estimated_age_runner_matches_itself_on_reingest(series_id, memory_store):
    rows = [("1", "101", "Doe, Jane", "", "F", "16:30")]
    ingest_race(series_id, _cake(rows), SETTINGS)
    again = ingest_race(series_id, _cake(rows), SETTINGS)

    assert again.runners_created == 0
    assert again.runners_updated == 1
    assert len(memory_store["runners"]) == 1

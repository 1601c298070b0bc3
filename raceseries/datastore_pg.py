import os
from contextlib import contextmanager
from typing import Any, Dict, List, Optional, Sequence, Tuple

import psycopg2
from psycopg2 import pool as pg_pool
from psycopg2.extras import RealDictCursor, execute_values

from .extractor import ScrapedRace, ScrapedResult, ScrapedRunner
from .models import (
    PlannedRace,
    ParticipantResult,
    RaceRecord,
    RankableResult,
    RunnerRecord,
    Series,
    StandingRow,
)
from .timefmt import UNKNOWN_AGE_GROUP


_POOL: Optional[pg_pool.AbstractConnectionPool] = None


def _env_int(name: str, default: Optional[int] = None) -> Optional[int]:
    val = os.environ.get(name)
    if val is None:
        return default
    try:
        return int(val)
    except ValueError:
        return default


def _connect_kwargs() -> Dict[str, Any]:
    """Common connection kwargs: connect_timeout + TCP keepalives.

    Defaults:
      - connect_timeout: 10 seconds (overridable via DB_CONNECT_TIMEOUT)
      - keepalives: enabled by default; can be disabled by DB_KEEPALIVES=0
      - keepalive tunables applied if provided (IDLE/INTERVAL/COUNT)
    """
    kwargs: Dict[str, Any] = {}
    ct_env = _env_int("DB_CONNECT_TIMEOUT")
    kwargs["connect_timeout"] = ct_env if ct_env is not None else 10

    ka_env = os.environ.get("DB_KEEPALIVES")
    if ka_env is None:
        kwargs["keepalives"] = 1
    else:
        kwargs["keepalives"] = 0 if str(ka_env).lower() in ("0", "false") else 1

    for env_name, key in (
        ("DB_KEEPALIVES_IDLE", "keepalives_idle"),
        ("DB_KEEPALIVES_INTERVAL", "keepalives_interval"),
        ("DB_KEEPALIVES_COUNT", "keepalives_count"),
    ):
        val = _env_int(env_name)
        if val is not None:
            kwargs[key] = val
    return kwargs


def init_pool(minconn: int = 1, maxconn: int = 10) -> None:
    """Initialize a global threaded connection pool using DATABASE_URL.

    Safe to call multiple times; subsequent calls are ignored once a pool exists.
    The pool is shared by ingestion and standings worker threads.
    """
    global _POOL
    if _POOL is not None:
        return
    url = os.environ.get("DATABASE_URL")
    if not url:
        return
    _POOL = pg_pool.ThreadedConnectionPool(minconn, maxconn, dsn=url, **_connect_kwargs())


def _rollback_quietly(conn) -> None:
    try:
        conn.rollback()
    except psycopg2.Error:
        pass


@contextmanager
def _get_conn():
    """Yield a database connection from the pool if available, else direct.

    Pooled connections get a ``SELECT 1`` liveness check; a stale one is
    discarded and checkout is retried once.
    """
    url = os.environ.get("DATABASE_URL")
    if not url:
        raise RuntimeError("DATABASE_URL not set; configure a PostgreSQL connection string")
    if _POOL is None:
        conn = psycopg2.connect(url, **_connect_kwargs())
        try:
            try:
                yield conn
            except Exception:
                _rollback_quietly(conn)
                raise
        finally:
            conn.close()
        return

    retried = False
    while True:
        conn = _POOL.getconn()
        try:
            with conn.cursor() as cur:
                cur.execute("SELECT 1")
            if not getattr(conn, "autocommit", False):
                conn.rollback()
        except (psycopg2.OperationalError, psycopg2.InterfaceError):
            _POOL.putconn(conn, close=True)
            if retried:
                raise psycopg2.OperationalError("Failed to acquire healthy DB connection after retry")
            retried = True
            continue
        break

    try:
        try:
            yield conn
        except Exception:
            _rollback_quietly(conn)
            raise
    finally:
        # status 1 = active, 2 = intrans, 3 = inerror
        if getattr(conn, "closed", 0) == 0 and getattr(conn, "status", 0) in (1, 2, 3):
            _rollback_quietly(conn)
        _POOL.putconn(conn)


def ping() -> Dict[str, Any]:
    with _get_conn() as conn, conn.cursor() as cur:
        cur.execute("SELECT current_user, current_database()")
        user, db = cur.fetchone()
    return {"connected": True, "user": user, "database": db}


# ---------------------------------------------------------------------------
# Series and planned races
# ---------------------------------------------------------------------------

def ensure_series(name: str, year: int) -> Series:
    """Return the series with this name and year, creating it if absent."""
    with _get_conn() as conn, conn.cursor(cursor_factory=RealDictCursor) as cur:
        cur.execute(
            """
            INSERT INTO series (name, year) VALUES (%s, %s)
            ON CONFLICT (name, year) DO UPDATE SET name = EXCLUDED.name
            RETURNING id, name, year
            """,
            (name, int(year)),
        )
        row = cur.fetchone()
        conn.commit()
    return Series.from_row(row)


def get_series(series_id: int) -> Optional[Series]:
    with _get_conn() as conn, conn.cursor(cursor_factory=RealDictCursor) as cur:
        cur.execute("SELECT id, name, year FROM series WHERE id = %s", (series_id,))
        row = cur.fetchone()
    return Series.from_row(row) if row else None


def list_planned_races(series_id: int, status: Optional[str] = "planned") -> List[PlannedRace]:
    sql = "SELECT * FROM planned_races WHERE series_id = %s"
    params: List[Any] = [series_id]
    if status:
        sql += " AND status = %s"
        params.append(status)
    sql += " ORDER BY series_order NULLS LAST, estimated_date NULLS LAST, id"
    with _get_conn() as conn, conn.cursor(cursor_factory=RealDictCursor) as cur:
        cur.execute(sql, params)
        rows = cur.fetchall() or []
    return [PlannedRace.from_row(r) for r in rows]


def upsert_planned_races(series_id: int, planned: Sequence[Dict[str, Any]]) -> int:
    """Insert or refresh planned races by (series, name); scraped status is kept."""
    rows = [
        (
            series_id,
            p["name"],
            p.get("estimated_date"),
            p.get("estimated_distance"),
            p.get("established_year"),
            p.get("series_order"),
            p.get("status") or "planned",
        )
        for p in planned
    ]
    if not rows:
        return 0
    with _get_conn() as conn, conn.cursor() as cur:
        execute_values(
            cur,
            """
            INSERT INTO planned_races
                (series_id, name, estimated_date, estimated_distance, established_year, series_order, status)
            VALUES %s
            ON CONFLICT (series_id, name) DO UPDATE SET
                estimated_date = EXCLUDED.estimated_date,
                estimated_distance = EXCLUDED.estimated_distance,
                established_year = EXCLUDED.established_year,
                series_order = EXCLUDED.series_order,
                status = CASE WHEN planned_races.status = 'scraped'
                              THEN planned_races.status ELSE EXCLUDED.status END
            """,
            rows,
        )
        conn.commit()
    return len(rows)


def mark_planned_scraped(planned_race_id: int) -> None:
    with _get_conn() as conn, conn.cursor() as cur:
        cur.execute(
            "UPDATE planned_races SET status = 'scraped', updated_at = NOW() WHERE id = %s",
            (planned_race_id,),
        )
        conn.commit()


def count_open_planned_races(series_id: int) -> int:
    """Planned races not yet held (status 'planned')."""
    with _get_conn() as conn, conn.cursor() as cur:
        cur.execute(
            "SELECT COUNT(*) FROM planned_races WHERE series_id = %s AND status = 'planned'",
            (series_id,),
        )
        (count,) = cur.fetchone()
    return int(count or 0)


# ---------------------------------------------------------------------------
# Races
# ---------------------------------------------------------------------------

def find_race_by_url(series_id: int, source_url: str) -> Optional[RaceRecord]:
    with _get_conn() as conn, conn.cursor(cursor_factory=RealDictCursor) as cur:
        cur.execute(
            "SELECT * FROM races WHERE series_id = %s AND source_url = %s ORDER BY id LIMIT 1",
            (series_id, source_url),
        )
        row = cur.fetchone()
    return RaceRecord.from_row(row) if row else None


def find_race_by_name_date(series_id: int, name: str, race_date: str) -> Optional[RaceRecord]:
    with _get_conn() as conn, conn.cursor(cursor_factory=RealDictCursor) as cur:
        cur.execute(
            "SELECT * FROM races WHERE series_id = %s AND name = %s AND date = %s ORDER BY id LIMIT 1",
            (series_id, name, race_date),
        )
        row = cur.fetchone()
    return RaceRecord.from_row(row) if row else None


def insert_race(series_id: int, race: ScrapedRace, planned_race_id: Optional[int] = None) -> RaceRecord:
    with _get_conn() as conn, conn.cursor(cursor_factory=RealDictCursor) as cur:
        cur.execute(
            """
            INSERT INTO races
                (series_id, name, date, year, distance, location, source_url, planned_race_id, results_scraped_at)
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, NOW())
            RETURNING *
            """,
            (series_id, race.name, race.date, race.year, race.distance, race.location, race.url, planned_race_id),
        )
        row = cur.fetchone()
        conn.commit()
    return RaceRecord.from_row(row)


def update_race(race_id: int, race: ScrapedRace, planned_race_id: Optional[int] = None) -> RaceRecord:
    """Refresh metadata of a stored race; an existing planned link is kept."""
    with _get_conn() as conn, conn.cursor(cursor_factory=RealDictCursor) as cur:
        cur.execute(
            """
            UPDATE races SET
                name = %s, date = %s, year = %s, distance = %s, location = %s,
                source_url = %s,
                planned_race_id = COALESCE(planned_race_id, %s),
                results_scraped_at = NOW()
            WHERE id = %s
            RETURNING *
            """,
            (race.name, race.date, race.year, race.distance, race.location, race.url, planned_race_id, race_id),
        )
        row = cur.fetchone()
        conn.commit()
    return RaceRecord.from_row(row)


def list_races_for_year(series_id: int, year: int) -> List[RaceRecord]:
    with _get_conn() as conn, conn.cursor(cursor_factory=RealDictCursor) as cur:
        cur.execute(
            "SELECT * FROM races WHERE series_id = %s AND year = %s ORDER BY date, id",
            (series_id, int(year)),
        )
        rows = cur.fetchall() or []
    return [RaceRecord.from_row(r) for r in rows]


# ---------------------------------------------------------------------------
# Runners and registrations
# ---------------------------------------------------------------------------

def find_runner(first_name: str, last_name: str, birth_year: Optional[int]) -> Optional[RunnerRecord]:
    """Active runner matching the identity key, compared case-insensitively.

    A ``None`` birth year only matches runners stored without one.
    """
    with _get_conn() as conn, conn.cursor(cursor_factory=RealDictCursor) as cur:
        cur.execute(
            """
            SELECT * FROM runners
            WHERE LOWER(TRIM(first_name)) = LOWER(TRIM(%s))
              AND LOWER(TRIM(last_name)) = LOWER(TRIM(%s))
              AND birth_year IS NOT DISTINCT FROM %s
              AND is_active
            ORDER BY id
            LIMIT 1
            """,
            (first_name, last_name, birth_year),
        )
        row = cur.fetchone()
    return RunnerRecord.from_row(row) if row else None


def insert_runner(runner: ScrapedRunner, birth_year: Optional[int]) -> RunnerRecord:
    with _get_conn() as conn, conn.cursor(cursor_factory=RealDictCursor) as cur:
        cur.execute(
            """
            INSERT INTO runners (first_name, last_name, gender, birth_year, club)
            VALUES (%s, %s, %s, %s, %s)
            RETURNING *
            """,
            (runner.first_name, runner.last_name, runner.gender, birth_year, runner.club),
        )
        row = cur.fetchone()
        conn.commit()
    return RunnerRecord.from_row(row)


def update_runner(runner_id: int, gender: str, club: Optional[str]) -> None:
    with _get_conn() as conn, conn.cursor() as cur:
        cur.execute(
            "UPDATE runners SET gender = %s, club = %s, updated_at = NOW() WHERE id = %s",
            (gender, club, runner_id),
        )
        conn.commit()


def list_runners(active_only: bool = True) -> List[RunnerRecord]:
    sql = "SELECT * FROM runners"
    if active_only:
        sql += " WHERE is_active"
    sql += " ORDER BY last_name, first_name, id"
    with _get_conn() as conn, conn.cursor(cursor_factory=RealDictCursor) as cur:
        cur.execute(sql)
        rows = cur.fetchall() or []
    return [RunnerRecord.from_row(r) for r in rows]


def deactivate_runner(runner_id: int) -> bool:
    with _get_conn() as conn, conn.cursor() as cur:
        cur.execute(
            "UPDATE runners SET is_active = FALSE, updated_at = NOW() WHERE id = %s AND is_active",
            (runner_id,),
        )
        changed = cur.rowcount or 0
        conn.commit()
    return changed > 0


def load_bib_map(series_id: int) -> Dict[str, int]:
    """bib_number -> runner_id for the active registrations of a series."""
    with _get_conn() as conn, conn.cursor() as cur:
        cur.execute(
            "SELECT bib_number, runner_id FROM series_registrations WHERE series_id = %s AND is_active",
            (series_id,),
        )
        rows = cur.fetchall() or []
    return {str(bib): int(rid) for bib, rid in rows}


def load_registration_ids(series_id: int) -> Dict[str, int]:
    """bib_number -> registration id for the active registrations of a series."""
    with _get_conn() as conn, conn.cursor() as cur:
        cur.execute(
            "SELECT bib_number, id FROM series_registrations WHERE series_id = %s AND is_active",
            (series_id,),
        )
        rows = cur.fetchall() or []
    return {str(bib): int(reg_id) for bib, reg_id in rows}


def upsert_registration(
    series_id: int,
    runner_id: int,
    bib_number: str,
    age: int,
    age_group: str,
    age_estimated: bool = False,
    supersede: bool = False,
) -> int:
    """Write the (series, bib, runner) registration and return its id.

    With ``supersede`` the bib's current holder is deactivated first, in the
    same transaction. A remaining unique violation surfaces as
    ``psycopg2.IntegrityError``.
    """
    with _get_conn() as conn, conn.cursor() as cur:
        if supersede:
            cur.execute(
                """
                UPDATE series_registrations SET is_active = FALSE, updated_at = NOW()
                WHERE series_id = %s AND bib_number = %s AND runner_id <> %s AND is_active
                """,
                (series_id, bib_number, runner_id),
            )
        cur.execute(
            """
            INSERT INTO series_registrations
                (series_id, runner_id, bib_number, age, age_group, age_estimated, is_active)
            VALUES (%s, %s, %s, %s, %s, %s, TRUE)
            ON CONFLICT (series_id, bib_number, runner_id) DO UPDATE SET
                age = EXCLUDED.age,
                age_group = EXCLUDED.age_group,
                age_estimated = EXCLUDED.age_estimated,
                is_active = TRUE,
                updated_at = NOW()
            RETURNING id
            """,
            (series_id, runner_id, bib_number, age, age_group, age_estimated),
        )
        (reg_id,) = cur.fetchone()
        conn.commit()
    return int(reg_id)


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------

def replace_race_results(race_id: int, rows: Sequence[Tuple[int, ScrapedResult]]) -> int:
    """Replace all result rows of one race with ``(registration_id, result)`` pairs."""
    with _get_conn() as conn, conn.cursor() as cur:
        cur.execute("DELETE FROM race_results WHERE race_id = %s", (race_id,))
        values = [
            (
                race_id,
                reg_id,
                res.place,
                res.gender_place or None,
                res.age_group_place or None,
                res.gun_time,
                res.chip_time,
                res.pace,
                res.is_dnf,
                res.is_dq,
            )
            for reg_id, res in rows
        ]
        if values:
            execute_values(
                cur,
                """
                INSERT INTO race_results
                    (race_id, registration_id, place, gender_place, age_group_place,
                     gun_time, chip_time, pace_per_mile, is_dnf, is_dq)
                VALUES %s
                ON CONFLICT (race_id, registration_id) DO UPDATE SET
                    place = EXCLUDED.place,
                    gender_place = EXCLUDED.gender_place,
                    age_group_place = EXCLUDED.age_group_place,
                    gun_time = EXCLUDED.gun_time,
                    chip_time = EXCLUDED.chip_time,
                    pace_per_mile = EXCLUDED.pace_per_mile,
                    is_dnf = EXCLUDED.is_dnf,
                    is_dq = EXCLUDED.is_dq
                """,
                values,
            )
        conn.commit()
    return len(values)


def fetch_rankable_results(race_id: int) -> List[RankableResult]:
    """Finished results of one race with gender, age group and club."""
    with _get_conn() as conn, conn.cursor(cursor_factory=RealDictCursor) as cur:
        cur.execute(
            """
            SELECT rr.race_id, rr.registration_id, reg.runner_id, ru.gender, reg.age_group,
                   rr.place, ru.club
            FROM race_results rr
            JOIN series_registrations reg ON reg.id = rr.registration_id
            JOIN runners ru ON ru.id = reg.runner_id
            WHERE rr.race_id = %s AND NOT rr.is_dnf AND NOT rr.is_dq
            ORDER BY rr.place, rr.registration_id
            """,
            (race_id,),
        )
        rows = cur.fetchall() or []
    return [RankableResult.from_row(r) for r in rows]


def fetch_participants(series_id: int, year: int) -> List[int]:
    """Runner ids with at least one result in the series races of ``year``."""
    with _get_conn() as conn, conn.cursor() as cur:
        cur.execute(
            """
            SELECT DISTINCT reg.runner_id
            FROM race_results rr
            JOIN races r ON r.id = rr.race_id
            JOIN series_registrations reg ON reg.id = rr.registration_id
            WHERE r.series_id = %s AND r.year = %s
            ORDER BY reg.runner_id
            """,
            (series_id, int(year)),
        )
        rows = cur.fetchall() or []
    return [int(r[0]) for r in rows]


def fetch_participant_results(series_id: int, year: int, runner_id: int) -> List[ParticipantResult]:
    """Every result of one runner in the series, across all their registrations."""
    with _get_conn() as conn, conn.cursor(cursor_factory=RealDictCursor) as cur:
        cur.execute(
            """
            SELECT reg.runner_id, rr.registration_id, rr.race_id, r.date AS race_date,
                   rr.gun_time, r.distance, ru.gender, reg.age_group, rr.is_dnf, rr.is_dq
            FROM race_results rr
            JOIN races r ON r.id = rr.race_id
            JOIN series_registrations reg ON reg.id = rr.registration_id
            JOIN runners ru ON ru.id = reg.runner_id
            WHERE r.series_id = %s AND r.year = %s AND reg.runner_id = %s
            ORDER BY r.date, r.id
            """,
            (series_id, int(year), runner_id),
        )
        rows = cur.fetchall() or []
    return [ParticipantResult.from_row(r) for r in rows]


# ---------------------------------------------------------------------------
# Standings
# ---------------------------------------------------------------------------

def replace_standings(series_id: int, year: int, standings: Sequence[StandingRow]) -> int:
    with _get_conn() as conn, conn.cursor() as cur:
        cur.execute(
            "DELETE FROM series_standings WHERE series_id = %s AND year = %s",
            (series_id, int(year)),
        )
        values = [
            (
                s.series_id,
                s.year,
                s.runner_id,
                s.registration_id,
                s.gender,
                s.age_group,
                s.overall_points,
                s.age_group_points,
                s.races_participated,
                s.total_time,
                s.total_distance,
            )
            for s in standings
        ]
        if values:
            execute_values(
                cur,
                """
                INSERT INTO series_standings
                    (series_id, year, runner_id, registration_id, gender, age_group,
                     overall_points, age_group_points, races_participated, total_time, total_distance)
                VALUES %s
                """,
                values,
                template="(%s, %s, %s, %s, %s, %s, %s, %s, %s, %s::interval, %s)",
            )
        conn.commit()
    return len(values)


RANK_STANDINGS_SQL = """
UPDATE series_standings AS s
SET overall_rank = ranked.overall_rank,
    age_group_rank = ranked.age_group_rank,
    calculated_at = NOW()
FROM (
    SELECT id,
           DENSE_RANK() OVER (
               PARTITION BY gender
               ORDER BY overall_points DESC, races_participated DESC, total_time ASC
           ) AS overall_rank,
           CASE WHEN age_group = %s THEN NULL ELSE DENSE_RANK() OVER (
               PARTITION BY gender, age_group
               ORDER BY age_group_points DESC, races_participated DESC, total_time ASC
           ) END AS age_group_rank
    FROM series_standings
    WHERE series_id = %s AND year = %s
) AS ranked
WHERE s.id = ranked.id
"""


def rank_standings(series_id: int, year: int) -> int:
    """Assign dense category ranks to the stored standings of a series year.

    Runners without a published age get no age-group rank.
    """
    with _get_conn() as conn, conn.cursor() as cur:
        cur.execute(RANK_STANDINGS_SQL, (UNKNOWN_AGE_GROUP, series_id, int(year)))
        ranked = cur.rowcount or 0
        conn.commit()
    return ranked


def list_standings(
    series_id: int,
    year: int,
    category: str = "overall",
    gender: Optional[str] = None,
    age_group: Optional[str] = None,
) -> List[StandingRow]:
    rank_col, points_col = (
        ("age_group_rank", "age_group_points") if category == "age_group" else ("overall_rank", "overall_points")
    )
    sql = """
        SELECT s.*, ru.first_name, ru.last_name, reg.bib_number
        FROM series_standings s
        JOIN runners ru ON ru.id = s.runner_id
        JOIN series_registrations reg ON reg.id = s.registration_id
        WHERE s.series_id = %s AND s.year = %s
    """
    params: List[Any] = [series_id, int(year)]
    if gender:
        sql += " AND s.gender = %s"
        params.append(gender)
    if age_group:
        sql += " AND s.age_group = %s"
        params.append(age_group)
    order = "s.gender, s.age_group, " if category == "age_group" else "s.gender, "
    sql += f" ORDER BY {order}s.{rank_col} NULLS LAST, s.{points_col} DESC, ru.last_name"
    with _get_conn() as conn, conn.cursor(cursor_factory=RealDictCursor) as cur:
        cur.execute(sql, params)
        rows = cur.fetchall() or []
    return [StandingRow.from_row(r) for r in rows]

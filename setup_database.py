#!/usr/bin/env python3
"""
Create the race series schema in PostgreSQL and optionally seed a series
calendar of planned races from a YAML file.
"""
import argparse
import logging
import os
import sys

import psycopg2
import yaml

from raceseries import datastore_pg

logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(levelname)s - %(message)s')
logger = logging.getLogger(__name__)

SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS series (
        id SERIAL PRIMARY KEY,
        name VARCHAR(255) NOT NULL,
        year INTEGER NOT NULL,
        created_at TIMESTAMPTZ DEFAULT NOW(),
        UNIQUE (name, year)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS planned_races (
        id SERIAL PRIMARY KEY,
        series_id INTEGER NOT NULL REFERENCES series(id) ON DELETE CASCADE,
        name VARCHAR(255) NOT NULL,
        estimated_date DATE,
        estimated_distance NUMERIC(5,2),
        established_year INTEGER,
        series_order INTEGER,
        status VARCHAR(20) NOT NULL DEFAULT 'planned',
            CHECK (status IN ('planned', 'scraped', 'cancelled')),
        created_at TIMESTAMPTZ DEFAULT NOW(),
        updated_at TIMESTAMPTZ DEFAULT NOW(),
        UNIQUE (series_id, name)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS runners (
        id SERIAL PRIMARY KEY,
        first_name VARCHAR(100) NOT NULL,
        last_name VARCHAR(100) NOT NULL,
        gender CHAR(1) NOT NULL CHECK (gender IN ('M', 'F')),
        birth_year INTEGER,
        club VARCHAR(255),
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        created_at TIMESTAMPTZ DEFAULT NOW(),
        updated_at TIMESTAMPTZ DEFAULT NOW()
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_runners_identity
        ON runners (LOWER(TRIM(first_name)), LOWER(TRIM(last_name)), birth_year)
    """,
    """
    CREATE TABLE IF NOT EXISTS races (
        id SERIAL PRIMARY KEY,
        series_id INTEGER NOT NULL REFERENCES series(id) ON DELETE CASCADE,
        planned_race_id INTEGER REFERENCES planned_races(id) ON DELETE SET NULL,
        name VARCHAR(255) NOT NULL,
        date DATE NOT NULL,
        year INTEGER NOT NULL,
        distance NUMERIC(5,2),
        location VARCHAR(255),
        source_url TEXT,
        results_scraped_at TIMESTAMPTZ
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_races_series_year ON races (series_id, year)",
    "CREATE INDEX IF NOT EXISTS idx_races_source_url ON races (series_id, source_url)",
    """
    CREATE TABLE IF NOT EXISTS series_registrations (
        id SERIAL PRIMARY KEY,
        series_id INTEGER NOT NULL REFERENCES series(id) ON DELETE CASCADE,
        runner_id INTEGER NOT NULL REFERENCES runners(id) ON DELETE CASCADE,
        bib_number VARCHAR(10) NOT NULL,
        age INTEGER NOT NULL CHECK (age BETWEEN 1 AND 120),
        age_group VARCHAR(10) NOT NULL,
        age_estimated BOOLEAN NOT NULL DEFAULT FALSE,
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        created_at TIMESTAMPTZ DEFAULT NOW(),
        updated_at TIMESTAMPTZ DEFAULT NOW(),
        UNIQUE (series_id, bib_number, runner_id)
    )
    """,
    # One active holder per bib within a series
    """
    CREATE UNIQUE INDEX IF NOT EXISTS uq_registrations_active_bib
        ON series_registrations (series_id, bib_number) WHERE is_active
    """,
    """
    CREATE TABLE IF NOT EXISTS race_results (
        id SERIAL PRIMARY KEY,
        race_id INTEGER NOT NULL REFERENCES races(id) ON DELETE CASCADE,
        registration_id INTEGER NOT NULL REFERENCES series_registrations(id) ON DELETE CASCADE,
        place INTEGER NOT NULL,
        gender_place INTEGER,
        age_group_place INTEGER,
        gun_time INTERVAL NOT NULL,
        chip_time INTERVAL,
        pace_per_mile VARCHAR(10),
        is_dnf BOOLEAN NOT NULL DEFAULT FALSE,
        is_dq BOOLEAN NOT NULL DEFAULT FALSE,
        override_reason TEXT,
        UNIQUE (race_id, registration_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS series_standings (
        id SERIAL PRIMARY KEY,
        series_id INTEGER NOT NULL REFERENCES series(id) ON DELETE CASCADE,
        year INTEGER NOT NULL,
        runner_id INTEGER NOT NULL REFERENCES runners(id) ON DELETE CASCADE,
        registration_id INTEGER NOT NULL REFERENCES series_registrations(id) ON DELETE CASCADE,
        gender CHAR(1) NOT NULL,
        age_group VARCHAR(10) NOT NULL,
        overall_points INTEGER NOT NULL DEFAULT 0,
        age_group_points INTEGER NOT NULL DEFAULT 0,
        races_participated INTEGER NOT NULL DEFAULT 0,
        total_time INTERVAL NOT NULL DEFAULT '0 seconds',
        total_distance NUMERIC(7,2) NOT NULL DEFAULT 0,
        overall_rank INTEGER,
        age_group_rank INTEGER,
        calculated_at TIMESTAMPTZ DEFAULT NOW(),
        UNIQUE (series_id, year, runner_id)
    )
    """,
]


def create_tables(conn):
    """Create the database schema"""
    with conn.cursor() as cur:
        for statement in SCHEMA:
            cur.execute(statement)
    conn.commit()


def load_calendar(path):
    """Read a series calendar: {series: {name, year}, planned_races: [...]}."""
    with open(path, 'r') as fh:
        config = yaml.safe_load(fh) or {}
    series = config.get('series') or {}
    if not series.get('name') or not series.get('year'):
        raise ValueError(f"{path}: 'series' needs a name and a year")
    planned = config.get('planned_races') or []
    for entry in planned:
        if not entry.get('name'):
            raise ValueError(f"{path}: every planned race needs a name")
    return series, planned


def main():
    parser = argparse.ArgumentParser(description='Create the race series schema')
    parser.add_argument('--calendar', type=str, help='YAML file with a series and its planned races')
    args = parser.parse_args()

    database_url = os.getenv('DATABASE_URL')
    if not database_url:
        logger.error("DATABASE_URL environment variable not set")
        sys.exit(1)

    conn = psycopg2.connect(database_url)
    try:
        create_tables(conn)
    finally:
        conn.close()
    logger.info("Schema created")

    if args.calendar:
        series_cfg, planned = load_calendar(args.calendar)
        series = datastore_pg.ensure_series(series_cfg['name'], int(series_cfg['year']))
        count = datastore_pg.upsert_planned_races(series.id, planned)
        logger.info(f"Seeded {count} planned races for {series.name} {series.year} (series {series.id})")


if __name__ == '__main__':
    main()

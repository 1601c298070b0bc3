#!/usr/bin/env python3
"""
Operator commands for a race series: discover and ingest result pages,
recompute standings, and review suspected duplicate runners.
"""
import argparse
import json
import logging
import os
import pathlib
import sys

sys.path.append(str(pathlib.Path(__file__).resolve().parents[1]))

from raceseries import datastore_pg
from raceseries.config import DEFAULT_SERIES_NAME, Settings
from raceseries.extractor import discover_source_urls, make_session
from raceseries.ingest import ingest, ingest_many
from raceseries.standings import compute_standings
from raceseries.validation import duplicate_candidates

logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(levelname)s - %(message)s')
logger = logging.getLogger(__name__)


def _series(args):
    if args.series_id:
        series = datastore_pg.get_series(args.series_id)
        if series is None:
            logger.error(f"Unknown series id: {args.series_id}")
            sys.exit(1)
        return series
    return datastore_pg.ensure_series(args.series_name, args.year)


def cmd_discover(args, settings):
    urls = discover_source_urls(args.year, index_url=settings.index_url,
                                session=make_session(settings.user_agent), timeout=settings.scrape_timeout)
    for url in urls:
        print(url)


def cmd_ingest(args, settings):
    series = _series(args)
    if args.url:
        summary = ingest(series.id, args.url, settings=settings)
        print(json.dumps(summary.to_dict(), indent=2, default=str))
        return
    session = make_session(settings.user_agent)
    urls = discover_source_urls(args.year, index_url=settings.index_url, session=session,
                                timeout=settings.scrape_timeout)
    report = ingest_many(series.id, urls, settings=settings, session=session)
    print(json.dumps(report, indent=2, default=str))


def cmd_standings(args, settings):
    series = _series(args)
    compute_standings(series.id, args.year, settings=settings)
    for row in datastore_pg.list_standings(series.id, args.year, category=args.category)[: args.top]:
        rank = row.age_group_rank if args.category == 'age_group' else row.overall_rank
        points = row.age_group_points if args.category == 'age_group' else row.overall_points
        print(f"{row.gender} {row.age_group:>6} #{rank if rank is not None else '-'} {row.first_name} {row.last_name} "
              f"{points} pts, {row.races_participated} races, {row.total_time}")


def cmd_duplicates(args, settings):
    pairs = duplicate_candidates(datastore_pg.list_runners())
    for a, b in pairs:
        print(f"{a.id}: {a.first_name} {a.last_name} ({a.birth_year})  <->  "
              f"{b.id}: {b.first_name} {b.last_name} ({b.birth_year})")
    logger.info(f"{len(pairs)} candidate duplicate pairs")


def cmd_deactivate_runner(args, settings):
    if datastore_pg.deactivate_runner(args.runner_id):
        logger.info(f"Runner {args.runner_id} deactivated")
    else:
        logger.warning(f"Runner {args.runner_id} not found or already inactive")


def build_parser():
    parser = argparse.ArgumentParser(description='Race series administration')
    sub = parser.add_subparsers(dest='command', required=True)

    def series_args(p):
        p.add_argument('--year', type=int, required=True)
        p.add_argument('--series-id', type=int)
        p.add_argument('--series-name', type=str, default=DEFAULT_SERIES_NAME)

    p = sub.add_parser('discover', help='List candidate result URLs for a year')
    p.add_argument('--year', type=int, required=True)
    p.set_defaults(func=cmd_discover)

    p = sub.add_parser('ingest', help='Ingest one result URL, or every discovered URL')
    series_args(p)
    p.add_argument('--url', type=str)
    p.set_defaults(func=cmd_ingest)

    p = sub.add_parser('standings', help='Recompute and print standings')
    series_args(p)
    p.add_argument('--category', choices=['overall', 'age_group'], default='overall')
    p.add_argument('--top', type=int, default=20)
    p.set_defaults(func=cmd_standings)

    p = sub.add_parser('duplicates', help='List runners that look like the same person')
    p.set_defaults(func=cmd_duplicates)

    p = sub.add_parser('deactivate-runner', help='Deactivate a duplicate or corrupted runner')
    p.add_argument('runner_id', type=int)
    p.set_defaults(func=cmd_deactivate_runner)
    return parser


def main(argv=None):
    args = build_parser().parse_args(argv)
    if not os.getenv('DATABASE_URL'):
        logger.error("DATABASE_URL environment variable not set")
        sys.exit(1)
    datastore_pg.init_pool()
    args.func(args, Settings.from_env())


if __name__ == '__main__':
    main()

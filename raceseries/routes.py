from datetime import date

import requests
from flask import Blueprint, abort, current_app, request

from . import datastore_pg as pg
from .config import DEFAULT_SERIES_NAME, Settings
from .extractor import discover_source_urls, make_session
from .ingest import ingest, ingest_many
from .standings import compute_standings


bp = Blueprint('main', __name__)

_SCRAPE_ACTIONS = ('discover', 'scrape-race', 'scrape-all')


def _settings() -> Settings:
    return current_app.config.get('SERIES_SETTINGS') or Settings.from_env()


def _int_field(data: dict, key: str, default=None):
    val = data.get(key, default)
    if val is None:
        return None
    try:
        return int(val)
    except (TypeError, ValueError):
        abort(400, description=f"Invalid {key} '{val}'. Expected an integer.")


def _resolve_series(data: dict):
    """Series named by ``series_id``, else the default series for ``year``."""
    series_id = _int_field(data, 'series_id')
    if series_id is not None:
        series = pg.get_series(series_id)
        if series is None:
            abort(404, description=f"Unknown series id: {series_id}")
        return series
    year = _int_field(data, 'year', date.today().year)
    return pg.ensure_series(data.get('series_name') or DEFAULT_SERIES_NAME, year)


@bp.route('/health/db')
def health_db():
    """Database connectivity health check; always HTTP 200."""
    try:
        return pg.ping()
    except Exception as exc:  # pylint: disable=broad-except
        return {'connected': False, 'status': 'error', 'message': str(exc)}


@bp.route('/api/scrape', methods=['POST'])
def scrape():
    """Discover result pages, ingest one page, or ingest every discovered page.

    Body: ``{"action": "discover"|"scrape-race"|"scrape-all", "year": 2025,
    "series_id": 1, "url": "..."}``.
    """
    data = request.get_json(silent=True) or {}
    action = data.get('action')
    if action not in _SCRAPE_ACTIONS:
        abort(400, description=f"Invalid action '{action}'. Expected one of {', '.join(_SCRAPE_ACTIONS)}.")
    settings = _settings()
    session = make_session(settings.user_agent)
    year = _int_field(data, 'year', date.today().year)

    if action == 'discover':
        urls = discover_source_urls(year, index_url=settings.index_url, session=session, timeout=settings.scrape_timeout)
        return {'year': year, 'urls': urls, 'count': len(urls)}

    series = _resolve_series(data)
    if action == 'scrape-race':
        url = (data.get('url') or '').strip()
        if not url:
            abort(400, description="'url' is required for scrape-race.")
        try:
            summary = ingest(series.id, url, settings=settings, session=session)
        except requests.RequestException as exc:
            current_app.logger.warning(f"scrape-race fetch failed for {url}: {exc}")
            abort(502, description=f"Could not fetch {url}: {exc}")
        current_app.logger.info(f"scrape-race {url} -> series {series.id}")
        return {'series_id': series.id, **summary.to_dict()}

    urls = data.get('urls') or discover_source_urls(
        year, index_url=settings.index_url, session=session, timeout=settings.scrape_timeout
    )
    report = ingest_many(series.id, urls, settings=settings, session=session)
    return {'series_id': series.id, 'year': year, **report}


@bp.route('/api/standings/calculate', methods=['POST'])
def calculate_standings():
    data = request.get_json(silent=True) or {}
    series = _resolve_series(data)
    year = _int_field(data, 'year', series.year)
    compute_standings(series.id, year, settings=_settings())
    return {'status': 'ok', 'series_id': series.id, 'year': year}


@bp.route('/api/standings')
def get_standings():
    series_id = _int_field(request.args, 'series_id')
    if series_id is None:
        abort(400, description="'series_id' is required.")
    year = _int_field(request.args, 'year', date.today().year)
    category = request.args.get('category', 'overall')
    if category not in ('overall', 'age_group'):
        abort(400, description=f"Invalid category '{category}'. Expected overall or age_group.")
    rows = pg.list_standings(
        series_id,
        year,
        category=category,
        gender=request.args.get('gender') or None,
        age_group=request.args.get('age_group') or None,
    )
    return {'series_id': series_id, 'year': year, 'category': category, 'standings': [r.to_dict() for r in rows]}

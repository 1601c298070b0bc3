"""Environment-driven settings for scraping, ingestion and standings runs."""

import os
from dataclasses import dataclass
from typing import Optional

DEFAULT_INDEX_URL = "https://mcrrc.org/club-race-series/championship-series-cs/"
DEFAULT_USER_AGENT = "Mozilla/5.0 (compatible; MCRRC-Championship-Series-Bot)"
DEFAULT_SERIES_NAME = "MCRRC Championship Series"


def env_int(name: str, default: int) -> int:
    val = os.environ.get(name)
    if val is None:
        return default
    try:
        return int(val)
    except ValueError:
        return default


def env_float(name: str, default: float) -> float:
    val = os.environ.get(name)
    if val is None:
        return default
    try:
        return float(val)
    except ValueError:
        return default


@dataclass(frozen=True)
class Settings:
    scrape_timeout: int = 30
    scrape_delay: float = 1.0
    user_agent: str = DEFAULT_USER_AGENT
    index_url: str = DEFAULT_INDEX_URL
    ingest_concurrency: int = 8
    standings_concurrency: int = 8
    standings_batch_size: int = 10
    # None scores every finisher; a value restricts ranking to that club
    scoring_club: Optional[str] = None

    @classmethod
    def from_env(cls) -> "Settings":
        club = (os.environ.get("SCORING_CLUB") or "").strip()
        return cls(
            scrape_timeout=max(env_int("SCRAPE_TIMEOUT", 30), 1),
            scrape_delay=max(env_float("SCRAPE_DELAY", 1.0), 0.0),
            user_agent=os.environ.get("SCRAPE_USER_AGENT") or DEFAULT_USER_AGENT,
            index_url=os.environ.get("SERIES_INDEX_URL") or DEFAULT_INDEX_URL,
            ingest_concurrency=max(env_int("INGEST_CONCURRENCY", 8), 1),
            standings_concurrency=max(env_int("STANDINGS_CONCURRENCY", 8), 1),
            standings_batch_size=max(env_int("STANDINGS_BATCH_SIZE", 10), 1),
            scoring_club=club or None,
        )

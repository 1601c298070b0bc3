"""Heuristic extraction of race results from published result pages.

Pages come in two shapes: an HTML table with a header row, or a legacy
fixed-width text block (``Place Sex/Tot Div/Tot Num Name ...``) under a
``=====`` separator. Both produce a :class:`ScrapedRace` whose result and
runner lists are deduplicated by bib number. Structural problems never
raise; they yield an empty result list and a warning in the log.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Callable, Dict, List, Optional, Tuple
from urllib.parse import urljoin, urlparse

import requests
from bs4 import BeautifulSoup

from .config import DEFAULT_INDEX_URL, DEFAULT_USER_AGENT
from .timefmt import ZERO_TIME, normalize_time

logger = logging.getLogger(__name__)

FALLBACK_AGE = 35
DNF_DQ_PLACE = 999
BIB_MAXLEN = 10
LOCATION_MAXLEN = 255
KM_TO_MILES = 0.621371


@dataclass
class ScrapedRunner:
    bib_number: str
    first_name: str
    last_name: str
    gender: Optional[str]
    age: int
    club: Optional[str] = None
    # True when ``age`` is the fallback value rather than read from the page
    age_estimated: bool = False


@dataclass
class ScrapedResult:
    bib_number: str
    place: int
    gender_place: int = 0
    age_group_place: int = 0
    gun_time: str = ZERO_TIME
    chip_time: Optional[str] = None
    pace: str = "0:00"
    is_dnf: bool = False
    is_dq: bool = False


@dataclass
class ScrapedRace:
    name: str
    date: str
    distance: Optional[float]
    location: str
    url: str
    results: List[ScrapedResult] = field(default_factory=list)
    runners: List[ScrapedRunner] = field(default_factory=list)

    @property
    def year(self) -> int:
        return int(self.date[:4])


# ---------------------------------------------------------------------------
# Column mapping
# ---------------------------------------------------------------------------

# Evaluated top to bottom for each header cell; the first matching rule names
# the field. A field keeps the first column that claimed it.
COLUMN_RULES: List[Tuple[Callable[[str], bool], str]] = [
    (lambda h: h in ("gen/tot", "gen", "sex/tot") or "gender total" in h or "gender place" in h, "gender_place"),
    (lambda h: h in ("div/tot", "div") or "division" in h or "age group" in h, "age_group_place"),
    (lambda h: "place" in h or "pos" in h or h in ("#", "pl"), "place"),
    (lambda h: h in ("num", "number", "no.") or "bib" in h, "bib"),
    (lambda h: "name" in h or "runner" in h, "name"),
    (lambda h: "pace" in h, "pace"),
    (lambda h: h == "age" or "age" in h, "age"),
    (lambda h: "gender" in h or "sex" in h or h in ("m/f", "s"), "gender"),
    (lambda h: "chip" in h or "net" in h, "chip_time"),
    (lambda h: "time" in h, "gun_time"),
    (lambda h: "club" in h or "team" in h, "club"),
]


def map_columns(headers: List[str]) -> Dict[str, int]:
    """Map semantic field names to column indexes using :data:`COLUMN_RULES`."""
    mapping: Dict[str, int] = {}
    for index, raw in enumerate(headers):
        h = (raw or "").strip().lower()
        if not h:
            continue
        for predicate, name in COLUMN_RULES:
            if predicate(h):
                mapping.setdefault(name, index)
                break
    return mapping


# ---------------------------------------------------------------------------
# Field helpers
# ---------------------------------------------------------------------------

_RANK_OF_TOTAL = re.compile(r"^\s*(\d+)\s*/")
_LEADING_INT = re.compile(r"\d+")


def sanitize_bib(raw: Optional[str]) -> str:
    """Upper-case, keep ``[A-Z0-9-]`` and cap at 10 characters."""
    cleaned = re.sub(r"[^A-Z0-9-]", "", str(raw or "").upper())
    return cleaned[:BIB_MAXLEN]


def rank_numerator(raw: Optional[str]) -> int:
    """Numerator of an ``N/Total`` cell, 0 when the cell has no such shape."""
    m = _RANK_OF_TOTAL.match(raw or "")
    return int(m.group(1)) if m else 0


def split_name(full_name: str) -> Tuple[str, str]:
    """Return ``(first, last)`` from ``Last, First`` or ``First Last``."""
    full_name = " ".join((full_name or "").split())
    if "," in full_name:
        last, _, first = full_name.partition(",")
        return first.strip(), last.strip()
    parts = full_name.split(" ")
    return (parts[0] if parts else ""), " ".join(parts[1:])


def parse_age(raw: Optional[str]) -> Tuple[int, bool]:
    """Return ``(age, estimated)``; missing or zero ages use the fallback."""
    m = _LEADING_INT.search(raw or "")
    if m and int(m.group(0)) > 0:
        return int(m.group(0)), False
    return FALLBACK_AGE, True


def parse_gender(raw: Optional[str]) -> Optional[str]:
    text = (raw or "").strip().lower()
    if not text:
        return None
    if "f" in text or "w" in text:
        return "F"
    if "m" in text:
        return "M"
    return None


# ---------------------------------------------------------------------------
# Metadata
# ---------------------------------------------------------------------------

_DATE_LOCATION = re.compile(r"([A-Za-z]+ \d{1,2}, \d{4})(?:[ \t\xa0]+([^,\n]+(?:, [A-Z]{2})?))?")
_NUMERIC_DATE = re.compile(r"(\d{1,2}/\d{1,2}/\d{4}|\d{4}-\d{2}-\d{2})")
_DISTANCE = re.compile(r"\b(\d+(?:\.\d+)?)\s*(km|k|miler|miles?|mi)\b", re.IGNORECASE)
_YEAR = re.compile(r"^(19|20)\d\d$")
_NAMED_DISTANCES = [
    (re.compile(r"\b10 ?k\b"), 6.2),
    (re.compile(r"\b15 ?k\b"), 9.3),
    (re.compile(r"\b5 ?k\b"), 3.1),
    # bare "mile": no count in front, not "miler"
    (re.compile(r"(?<!\d)(?<!\d )\bmile\b"), 1.0),
]


def _parse_long_date(text: str) -> Optional[str]:
    for fmt in ("%B %d, %Y", "%b %d, %Y"):
        try:
            return datetime.strptime(text, fmt).date().isoformat()
        except ValueError:
            continue
    return None


def _parse_numeric_date(text: str) -> Optional[str]:
    try:
        if "/" in text:
            return datetime.strptime(text, "%m/%d/%Y").date().isoformat()
        return datetime.strptime(text, "%Y-%m-%d").date().isoformat()
    except ValueError:
        return None


def infer_distance(race_name: str) -> Optional[float]:
    """Distance in miles implied by the race name, or ``None`` when unknown."""
    name = (race_name or "").lower()
    if "half marathon" in name or "half-marathon" in name:
        return 13.1
    if "marathon" in name and "half" not in name:
        return 26.2
    for pattern, miles in _NAMED_DISTANCES:
        if pattern.search(name):
            return miles
    for m in _DISTANCE.finditer(race_name or ""):
        # "2025 Kensington 8K": a leading year is not a distance
        if _YEAR.match(m.group(1)):
            continue
        value = float(m.group(1))
        if m.group(2).lower().startswith("k"):
            value = value * KM_TO_MILES
        return round(value, 2)
    return None


def extract_metadata(soup: BeautifulSoup, url: str, today: Optional[date] = None) -> ScrapedRace:
    heading = soup.find("h1")
    name = heading.get_text(" ", strip=True) if heading else ""
    body = soup.get_text("\n")

    race_date: Optional[str] = None
    location = ""
    m = _DATE_LOCATION.search(body)
    if m:
        race_date = _parse_long_date(m.group(1))
        location = (m.group(2) or "").strip()[:LOCATION_MAXLEN]
    if not race_date:
        m = _NUMERIC_DATE.search(body)
        if m:
            race_date = _parse_numeric_date(m.group(1))
    if not race_date:
        race_date = (today or date.today()).isoformat()
        logger.warning(f"No race date found at {url}; using {race_date}")

    return ScrapedRace(
        name=name or "Unknown Race",
        date=race_date,
        distance=infer_distance(name),
        location=location or "Unknown Location",
        url=url,
    )


# ---------------------------------------------------------------------------
# HTML tables
# ---------------------------------------------------------------------------

_TABLE_HINTS = ("Place", "Time", "Bib")


def find_results_table(soup: BeautifulSoup):
    tables = soup.find_all("table")
    if not tables:
        return None
    for table in tables:
        classes = table.get("class") or []
        if "results" in classes or table.get("id") == "results-table":
            return table
        text = table.get_text()
        if any(hint in text for hint in _TABLE_HINTS):
            return table
    return tables[0]


def _parse_table_row(cells: List[str], columns: Dict[str, int]) -> Optional[Tuple[ScrapedResult, ScrapedRunner]]:
    def cell(key: str) -> str:
        idx = columns.get(key)
        if idx is None or idx >= len(cells):
            return ""
        return cells[idx]

    place_text = cell("place")
    gun_text = cell("gun_time")
    lowered = place_text.lower()
    is_dnf = "dnf" in lowered
    is_dq = "dq" in lowered
    if not place_text or (not gun_text and not (is_dnf or is_dq)):
        return None
    if is_dnf or is_dq:
        place = DNF_DQ_PLACE
    else:
        m = _LEADING_INT.search(place_text)
        if not m:
            return None
        place = int(m.group(0))

    full_name = cell("name")
    if not full_name:
        return None
    bib = sanitize_bib(cell("bib")) or "0"
    first, last = split_name(full_name)
    age, estimated = parse_age(cell("age"))
    chip_text = cell("chip_time")
    club = cell("club").strip()

    result = ScrapedResult(
        bib_number=bib,
        place=place,
        gender_place=0 if (is_dnf or is_dq) else rank_numerator(cell("gender_place")),
        age_group_place=0 if (is_dnf or is_dq) else rank_numerator(cell("age_group_place")),
        gun_time=normalize_time(gun_text),
        chip_time=normalize_time(chip_text) if chip_text else None,
        pace=cell("pace") or "0:00",
        is_dnf=is_dnf,
        is_dq=is_dq,
    )
    runner = ScrapedRunner(
        bib_number=bib,
        first_name=first,
        last_name=last,
        gender=parse_gender(cell("gender")),
        age=age,
        club=club or None,
        age_estimated=estimated,
    )
    return result, runner


def extract_table_results(table) -> Tuple[List[ScrapedResult], List[ScrapedRunner]]:
    rows = table.find_all("tr")
    if not rows:
        return [], []
    headers = [c.get_text(" ", strip=True) for c in rows[0].find_all(["th", "td"])]
    columns = map_columns(headers)
    logger.debug(f"Column mapping: {columns}")

    pairs = []
    for row_index, row in enumerate(rows[1:], start=1):
        cells = [c.get_text(" ", strip=True) for c in row.find_all("td")]
        if len(cells) < 3:
            continue
        parsed = _parse_table_row(cells, columns)
        if parsed is None:
            logger.debug(f"Skipping row {row_index}: missing place, time or name")
            continue
        pairs.append(parsed)
    return _dedupe(pairs)


# ---------------------------------------------------------------------------
# Legacy fixed-width text
# ---------------------------------------------------------------------------

_PLAIN_ROW_HINT = re.compile(r"^\s*\d+\s+\d+/\d+\s+\d+/\d+\s+\d+\s+[A-Za-z]")
_PLAIN_ROW = re.compile(
    r"^\s*(\d+)\s+(\d+/\d+)\s+(\d+/\d+)\s+(\d+)\s+(.+?)\s+([MF])\s+(\d+)\s+(.+?)\s+(\w*)"
    r"\s+([\d:]+)\s+([\d:]+)\s+([\d:]+)\s+([\d:]+).*$"
)
_CLOCK_TOKEN = re.compile(r"^\d{1,2}:\d{2}(:\d{2})?$")
_FOOTER_MARKERS = ("Stay Informed", "Email:", "Copyright", "Terms & Conditions")


def _is_plain_header(line: str) -> bool:
    return "Place" in line and "Sex/Tot" in line and "Name" in line


def is_plain_text_results(text: str) -> bool:
    has_header = "Place Sex/Tot" in text or any(_is_plain_header(line) for line in text.splitlines())
    has_separator = "=====" in text
    has_row = any(_PLAIN_ROW_HINT.match(line.strip()) for line in text.splitlines())
    return has_header and has_separator and has_row


def _parse_plain_line(line: str) -> Optional[Tuple[ScrapedResult, ScrapedRunner]]:
    m = _PLAIN_ROW.match(line)
    if not m:
        return _parse_plain_line_positional(line)
    place, sex_tot, div_tot, bib, name, gender, age, _hometown, club, net, net_pace, gun, gun_pace = m.groups()
    first, _, last = name.strip().partition(" ")
    parsed_age, estimated = parse_age(age)
    bib = sanitize_bib(bib)
    result = ScrapedResult(
        bib_number=bib,
        place=int(place),
        gender_place=rank_numerator(sex_tot) or int(place),
        age_group_place=rank_numerator(div_tot) or int(place),
        gun_time=normalize_time(gun),
        chip_time=normalize_time(net),
        pace=gun_pace or net_pace or "0:00",
    )
    runner = ScrapedRunner(
        bib_number=bib,
        first_name=first.strip(),
        last_name=last.strip(),
        gender=gender,
        age=parsed_age,
        club=club.strip() or None,
        age_estimated=estimated,
    )
    return result, runner


def _parse_plain_line_positional(line: str) -> Optional[Tuple[ScrapedResult, ScrapedRunner]]:
    parts = line.split()
    if len(parts) < 8 or not parts[0].isdigit():
        return None
    gender_index = next((i for i in range(4, len(parts)) if parts[i] in ("M", "F")), -1)
    if gender_index == -1:
        return None
    place = int(parts[0])
    bib = sanitize_bib(parts[3])
    age_token = parts[gender_index + 1] if gender_index + 1 < len(parts) else ""
    age, estimated = parse_age(age_token)
    name_parts = parts[4:gender_index]
    times = [p for p in parts if _CLOCK_TOKEN.match(p)]
    gun = times[-1] if times else ZERO_TIME
    result = ScrapedResult(
        bib_number=bib,
        place=place,
        gender_place=place,
        age_group_place=place,
        gun_time=normalize_time(gun),
        chip_time=normalize_time(times[0] if times else gun),
    )
    runner = ScrapedRunner(
        bib_number=bib,
        first_name=name_parts[0] if name_parts else "",
        last_name=" ".join(name_parts[1:]),
        gender=parts[gender_index],
        age=age,
        age_estimated=estimated,
    )
    return result, runner


def extract_plain_text_results(text: str) -> Tuple[List[ScrapedResult], List[ScrapedRunner]]:
    lines = text.splitlines()
    header_index = next((i for i, line in enumerate(lines) if _is_plain_header(line)), -1)
    if header_index == -1:
        logger.warning("Plain text results without a header line")
        return [], []
    separator_index = next(
        (i for i in range(header_index + 1, len(lines)) if "=====" in lines[i]), -1
    )
    if separator_index == -1:
        logger.warning("Plain text results without a separator line")
        return [], []

    pairs = []
    for line in lines[separator_index + 1:]:
        line = line.strip()
        if not line:
            continue
        if any(marker in line for marker in _FOOTER_MARKERS):
            break
        if not line[0].isdigit():
            continue
        parsed = _parse_plain_line(line)
        if parsed is None:
            logger.debug(f"Line didn't match result pattern: '{line[:50]}'")
            continue
        pairs.append(parsed)
    logger.info(f"Parsed {len(pairs)} rows from plain text format")
    return _dedupe(pairs)


def _dedupe(pairs) -> Tuple[List[ScrapedResult], List[ScrapedRunner]]:
    results: List[ScrapedResult] = []
    runners: List[ScrapedRunner] = []
    seen_results = set()
    seen_runners = set()
    for result, runner in pairs:
        if result.bib_number not in seen_results:
            seen_results.add(result.bib_number)
            results.append(result)
        if runner.bib_number not in seen_runners:
            seen_runners.add(runner.bib_number)
            runners.append(runner)
    return results, runners


# ---------------------------------------------------------------------------
# Entry points
# ---------------------------------------------------------------------------

def extract_race(document: str, url: str, today: Optional[date] = None) -> ScrapedRace:
    """Parse a fetched result page into race metadata plus result rows."""
    soup = BeautifulSoup(document or "", "html.parser")
    race = extract_metadata(soup, url, today=today)
    body = soup.get_text("\n")

    if is_plain_text_results(body):
        logger.info(f"Detected plain text results format at {url}")
        race.results, race.runners = extract_plain_text_results(body)
    else:
        table = find_results_table(soup)
        if table is None:
            logger.warning(f"No results table found at {url}")
        else:
            race.results, race.runners = extract_table_results(table)

    logger.info(f"Scraped {len(race.results)} results for race: {race.name}")
    return race


def make_session(user_agent: str = DEFAULT_USER_AGENT) -> requests.Session:
    session = requests.Session()
    session.headers.update({"User-Agent": user_agent})
    return session


def fetch_document(url: str, session: Optional[requests.Session] = None, timeout: int = 30) -> str:
    """GET ``url`` and return its text. Network errors propagate."""
    session = session or make_session()
    response = session.get(url, timeout=timeout)
    response.raise_for_status()
    return response.text


def scrape_race(url: str, session: Optional[requests.Session] = None, timeout: int = 30) -> ScrapedRace:
    return extract_race(fetch_document(url, session=session, timeout=timeout), url)


def discover_source_urls(
    year: int,
    index_url: str = DEFAULT_INDEX_URL,
    session: Optional[requests.Session] = None,
    timeout: int = 30,
) -> List[str]:
    """Best-effort scan of the series index page for result links for ``year``.

    A link qualifies when its text mentions results or the year, or its href
    points at a results or race page. Only links on the index page's host are
    returned, in page order without duplicates.
    """
    soup = BeautifulSoup(fetch_document(index_url, session=session, timeout=timeout), "html.parser")
    host = urlparse(index_url).netloc
    year_token = str(year)
    urls: List[str] = []
    for link in soup.find_all("a", href=True):
        href = link["href"].strip()
        text = link.get_text(" ", strip=True).lower()
        if not ("result" in text or year_token in text or "result" in href.lower() or "/races/" in href):
            continue
        full = urljoin(index_url, href)
        if urlparse(full).netloc != host or full in urls:
            continue
        urls.append(full)
    logger.info(f"Discovered {len(urls)} candidate result URLs for {year}")
    return urls


__all__ = [
    "FALLBACK_AGE",
    "DNF_DQ_PLACE",
    "ScrapedRunner",
    "ScrapedResult",
    "ScrapedRace",
    "COLUMN_RULES",
    "map_columns",
    "sanitize_bib",
    "split_name",
    "infer_distance",
    "extract_race",
    "fetch_document",
    "scrape_race",
    "make_session",
    "discover_source_urls",
]

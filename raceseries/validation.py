"""Plausibility checks for scraped runner and result records.

Hard errors mark a record that is almost certainly a mis-mapped column (a
clock time in a name, a gender letter as a surname); such records are kept
out of the database. Warnings flag oddities that are still stored.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field, replace
from itertools import combinations
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from .extractor import ScrapedResult, ScrapedRunner
from .timefmt import ZERO_TIME

logger = logging.getLogger(__name__)

_TIME_SHAPE = re.compile(r"^\d{1,2}:\d{2}(:\d{2})?(\.\d+)?$")
_CLOCK_IN_TEXT = re.compile(r"\d+:\d+")
_UNUSUAL_CHARS = re.compile(r"[^\w\s\-'.]")
_GENDER_LETTER = re.compile(r"^[MF]$", re.IGNORECASE)

NICKNAMES: Dict[str, Tuple[str, ...]] = {
    "rob": ("robert",),
    "bob": ("robert",),
    "bill": ("william",),
    "will": ("william",),
    "liz": ("elizabeth",),
    "beth": ("elizabeth",),
    "dick": ("richard",),
    "rick": ("richard",),
    "jim": ("james",),
    "jimmy": ("james",),
    "mike": ("michael",),
    "tom": ("thomas",),
    "dave": ("david",),
    "dan": ("daniel",),
    "chris": ("christopher",),
    "matt": ("matthew",),
    "pat": ("patricia", "patrick"),
    "sue": ("susan",),
    "nancy": ("anne",),
}


@dataclass
class ValidationResult:
    valid: bool
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)


@dataclass
class BatchValidation:
    valid: list
    invalid: List[Tuple[object, ValidationResult]]
    stats: Dict[str, int]


def is_valid_time_format(value: Optional[str]) -> bool:
    """True for ``M:SS``/``H:MM:SS`` shapes with minutes <= 59 and seconds < 60."""
    if not value or not isinstance(value, str):
        return False
    if not _TIME_SHAPE.match(value):
        return False
    parts = value.split(":")
    if len(parts) >= 2 and int(float(parts[1])) > 59:
        return False
    if len(parts) >= 3 and float(parts[2]) >= 60:
        return False
    return True


def _name_errors(label: str, value: str) -> List[str]:
    errors = []
    if ":" in value:
        errors.append(f"{label} appears to be a time string")
    if _GENDER_LETTER.match(value):
        errors.append(f"{label} appears to be a gender marker")
    if value.isdigit():
        errors.append(f"{label} appears to be numeric (possibly bib or age)")
    return errors


def validate_runner(runner: ScrapedRunner) -> ValidationResult:
    errors: List[str] = []
    warnings: List[str] = []
    first = runner.first_name or ""
    last = runner.last_name or ""

    if not first:
        errors.append("Missing or invalid first_name")
    if runner.gender not in ("M", "F"):
        errors.append("Missing or invalid gender (must be M or F)")
    if not isinstance(runner.age, int) or not 1 <= runner.age <= 120:
        errors.append("Missing or invalid age (must be 1-120)")

    if first:
        errors.extend(_name_errors("first_name", first))
        if " MD" in first or " VA" in first:
            errors.append("first_name appears to contain location data")
        if len(first) < 2:
            warnings.append("first_name is very short (less than 2 characters)")
        if _UNUSUAL_CHARS.search(first):
            warnings.append("first_name contains unusual characters")

    if not last.strip():
        errors.append("last_name is empty")
    else:
        errors.extend(_name_errors("last_name", last))
        if _UNUSUAL_CHARS.search(last):
            warnings.append("last_name contains unusual characters")

    bib = runner.bib_number or ""
    if bib:
        if not bib.isdigit():
            warnings.append("bib_number contains non-numeric characters")
        if len(bib) > 6:
            warnings.append("bib_number is unusually long")

    club = runner.club or ""
    if club:
        if _CLOCK_IN_TEXT.search(club):
            warnings.append("club field appears to contain time data")
        if _GENDER_LETTER.match(club):
            warnings.append("club field appears to be gender marker")

    return ValidationResult(valid=not errors, errors=errors, warnings=warnings)


def validate_result(result: ScrapedResult) -> ValidationResult:
    errors: List[str] = []
    warnings: List[str] = []
    place = result.place

    if not isinstance(place, int) or place < 1:
        errors.append("Missing or invalid place (must be positive number)")
        place = None
    elif place > 10000 and not (result.is_dnf or result.is_dq):
        warnings.append("place is very high (over 10,000)")

    if not result.gun_time:
        errors.append("Missing gun_time")
    elif not is_valid_time_format(result.gun_time):
        errors.append("gun_time is not in valid time format")
    elif result.gun_time == ZERO_TIME and not (result.is_dnf or result.is_dq):
        warnings.append("gun_time is zero (source time missing or unparseable)")

    if result.chip_time and not is_valid_time_format(result.chip_time):
        warnings.append("chip_time is not in valid time format")

    if place is not None:
        if result.gender_place and (result.gender_place < 1 or result.gender_place > place):
            warnings.append("gender_place is invalid (should be <= overall place)")
        if result.age_group_place and (result.age_group_place < 1 or result.age_group_place > place):
            warnings.append("age_group_place is invalid (should be <= overall place)")

    return ValidationResult(valid=not errors, errors=errors, warnings=warnings)


def sanitize_runner(runner: ScrapedRunner) -> Optional[ScrapedRunner]:
    """Whitespace-normalised copy of ``runner``; ``None`` if a name is blank."""
    first = " ".join((runner.first_name or "").split())
    last = " ".join((runner.last_name or "").split())
    if not first or not last:
        return None
    club = (runner.club or "").strip() or None
    return replace(runner, first_name=first, last_name=last, club=club)


def _batch(records: Sequence, check, clean=None) -> BatchValidation:
    valid = []
    invalid: List[Tuple[object, ValidationResult]] = []
    warned = 0
    for record in records:
        outcome = check(record)
        if not outcome.valid:
            invalid.append((record, outcome))
            continue
        cleaned = clean(record) if clean else record
        if cleaned is None:
            invalid.append((record, ValidationResult(False, ["record could not be sanitized"], outcome.warnings)))
            continue
        valid.append(cleaned)
        if outcome.warnings:
            warned += 1
    stats = {"total": len(records), "valid": len(valid), "invalid": len(invalid), "warnings": warned}
    return BatchValidation(valid=valid, invalid=invalid, stats=stats)


def validate_runner_batch(runners: Sequence[ScrapedRunner]) -> BatchValidation:
    batch = _batch(runners, validate_runner, sanitize_runner)
    for runner, outcome in batch.invalid:
        logger.warning(f"Rejected runner bib={runner.bib_number!r}: {'; '.join(outcome.errors)}")
    return batch


def validate_result_batch(results: Sequence[ScrapedResult]) -> BatchValidation:
    batch = _batch(results, validate_result)
    for result, outcome in batch.invalid:
        logger.warning(f"Rejected result bib={result.bib_number!r}: {'; '.join(outcome.errors)}")
    zero = [r.bib_number for r in batch.valid if r.gun_time == ZERO_TIME and not (r.is_dnf or r.is_dq)]
    if zero:
        logger.warning(f"{len(zero)} finishers have no usable gun time (bibs {', '.join(zero)})")
    return batch


def _clean_name(value: str) -> str:
    return " ".join(re.sub(r"[^a-z\s]", "", (value or "").lower()).split())


def normalize_runner_name(first_name: str, last_name: str) -> str:
    return f"{_clean_name(first_name)}|{_clean_name(last_name)}"


def are_runners_similar(a, b) -> bool:
    """Heuristic same-person check on ``first_name``/``last_name`` attributes.

    Meant for operator review; false positives are expected.
    """
    if normalize_runner_name(a.first_name, a.last_name) == normalize_runner_name(b.first_name, b.last_name):
        return True
    first_a = (a.first_name or "").strip().lower()
    first_b = (b.first_name or "").strip().lower()
    if (a.last_name or "").strip().lower() != (b.last_name or "").strip().lower():
        return False
    if not first_a or not first_b:
        return False
    if first_a.startswith(first_b) or first_b.startswith(first_a):
        return True
    return first_b in NICKNAMES.get(first_a, ()) or first_a in NICKNAMES.get(first_b, ())


def duplicate_candidates(runners: Iterable) -> List[Tuple[object, object]]:
    """Pairs of runners that look like the same person.

    Only runners sharing a gender are compared; birth years more than two
    years apart are not considered duplicates.
    """
    by_last: Dict[str, List] = {}
    for r in runners:
        by_last.setdefault(_clean_name(r.last_name), []).append(r)
    pairs = []
    for group in by_last.values():
        for a, b in combinations(group, 2):
            if getattr(a, "gender", None) != getattr(b, "gender", None):
                continue
            ya, yb = getattr(a, "birth_year", None), getattr(b, "birth_year", None)
            if ya is not None and yb is not None and abs(ya - yb) > 2:
                continue
            if are_runners_similar(a, b):
                pairs.append((a, b))
    return pairs


__all__ = [
    "ValidationResult",
    "BatchValidation",
    "is_valid_time_format",
    "validate_runner",
    "validate_result",
    "sanitize_runner",
    "validate_runner_batch",
    "validate_result_batch",
    "normalize_runner_name",
    "are_runners_similar",
    "duplicate_candidates",
]

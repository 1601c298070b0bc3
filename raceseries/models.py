"""Typed records for the rows the storage layer hands back.

Rows arrive from psycopg2 as ``RealDictCursor`` mappings; each ``from_row``
narrows them once so nothing downstream handles raw dicts. Durations are
carried as ``HH:MM:SS`` strings and dates as ISO strings.
"""

from __future__ import annotations

import datetime as dt
from dataclasses import asdict, dataclass
from typing import Any, Dict, Mapping, Optional


def _iso(val) -> Optional[str]:
    if val is None:
        return None
    if isinstance(val, (dt.date, dt.datetime)):
        return val.isoformat()
    return str(val)


def interval_to_str(val) -> Optional[str]:
    """Render a TIME/INTERVAL column as ``HH:MM:SS`` (hours may exceed 24)."""
    if val is None:
        return None
    if isinstance(val, dt.timedelta):
        total = int(val.total_seconds())
        return f"{total // 3600:02d}:{(total % 3600) // 60:02d}:{total % 60:02d}"
    if isinstance(val, dt.time):
        return val.strftime("%H:%M:%S")
    return str(val)


def _float(val) -> Optional[float]:
    return None if val is None else float(val)


@dataclass
class Series:
    id: int
    name: str
    year: int

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "Series":
        return cls(id=int(row["id"]), name=row["name"], year=int(row["year"]))


@dataclass
class PlannedRace:
    id: int
    series_id: int
    name: str
    status: str = "planned"
    estimated_date: Optional[str] = None
    estimated_distance: Optional[float] = None
    established_year: Optional[int] = None
    series_order: Optional[int] = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "PlannedRace":
        return cls(
            id=int(row["id"]),
            series_id=int(row["series_id"]),
            name=row["name"],
            status=row.get("status") or "planned",
            estimated_date=_iso(row.get("estimated_date")),
            estimated_distance=_float(row.get("estimated_distance")),
            established_year=row.get("established_year"),
            series_order=row.get("series_order"),
        )


@dataclass
class RaceRecord:
    id: int
    series_id: int
    name: str
    date: str
    year: int
    distance: Optional[float]
    location: Optional[str]
    source_url: Optional[str]
    planned_race_id: Optional[int] = None
    results_scraped_at: Optional[str] = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "RaceRecord":
        return cls(
            id=int(row["id"]),
            series_id=int(row["series_id"]),
            name=row["name"],
            date=_iso(row["date"]),
            year=int(row["year"]),
            distance=_float(row.get("distance")),
            location=row.get("location"),
            source_url=row.get("source_url"),
            planned_race_id=row.get("planned_race_id"),
            results_scraped_at=_iso(row.get("results_scraped_at")),
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class RunnerRecord:
    id: int
    first_name: str
    last_name: str
    gender: str
    birth_year: Optional[int]
    club: Optional[str] = None
    is_active: bool = True

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "RunnerRecord":
        return cls(
            id=int(row["id"]),
            first_name=row["first_name"],
            last_name=row["last_name"],
            gender=row["gender"],
            birth_year=row.get("birth_year"),
            club=row.get("club"),
            is_active=bool(row.get("is_active", True)),
        )


@dataclass
class RankableResult:
    """A finished (non-DNF, non-DQ) result with its partition keys."""

    race_id: int
    registration_id: int
    runner_id: int
    gender: str
    age_group: str
    place: int
    club: Optional[str] = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "RankableResult":
        return cls(
            race_id=int(row["race_id"]),
            registration_id=int(row["registration_id"]),
            runner_id=int(row["runner_id"]),
            gender=row["gender"],
            age_group=row["age_group"],
            place=int(row["place"]),
            club=row.get("club"),
        )


@dataclass
class ParticipantResult:
    runner_id: int
    registration_id: Optional[int]
    race_id: int
    race_date: str
    gun_time: Optional[str]
    distance: Optional[float]
    gender: str
    age_group: Optional[str]
    is_dnf: bool = False
    is_dq: bool = False

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "ParticipantResult":
        reg = row.get("registration_id")
        return cls(
            runner_id=int(row["runner_id"]),
            registration_id=int(reg) if reg is not None else None,
            race_id=int(row["race_id"]),
            race_date=_iso(row["race_date"]),
            gun_time=interval_to_str(row.get("gun_time")),
            distance=_float(row.get("distance")),
            gender=row["gender"],
            age_group=row.get("age_group"),
            is_dnf=bool(row.get("is_dnf")),
            is_dq=bool(row.get("is_dq")),
        )

    @property
    def counted(self) -> bool:
        return not (self.is_dnf or self.is_dq)


@dataclass
class StandingRow:
    series_id: int
    year: int
    runner_id: int
    registration_id: int
    gender: str
    age_group: str
    overall_points: int = 0
    age_group_points: int = 0
    races_participated: int = 0
    total_time: str = "00:00:00"
    total_distance: float = 0.0
    overall_rank: Optional[int] = None
    age_group_rank: Optional[int] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    bib_number: Optional[str] = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "StandingRow":
        return cls(
            series_id=int(row["series_id"]),
            year=int(row["year"]),
            runner_id=int(row["runner_id"]),
            registration_id=int(row["registration_id"]),
            gender=row["gender"],
            age_group=row["age_group"],
            overall_points=int(row.get("overall_points") or 0),
            age_group_points=int(row.get("age_group_points") or 0),
            races_participated=int(row.get("races_participated") or 0),
            total_time=interval_to_str(row.get("total_time")) or "00:00:00",
            total_distance=float(row.get("total_distance") or 0),
            overall_rank=row.get("overall_rank"),
            age_group_rank=row.get("age_group_rank"),
            first_name=row.get("first_name"),
            last_name=row.get("last_name"),
            bib_number=row.get("bib_number"),
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class IngestSummary:
    race: Optional[RaceRecord]
    runners_created: int = 0
    runners_updated: int = 0
    results_created: int = 0
    results_skipped: int = 0
    registrations_skipped: int = 0
    bib_conflicts: int = 0
    invalid_runners: int = 0
    invalid_results: int = 0
    estimated_ages: int = 0
    warnings: int = 0

    def to_dict(self) -> Dict[str, Any]:
        out = asdict(self)
        out["race"] = self.race.to_dict() if self.race else None
        return out

"""
External factor records and sources.

An external factor is anything outside the business that can move its
numbers on a given day: weather, nearby events, holidays, sports games, the
day of week and the hour. Records are small tagged dataclasses that round
trip through JSON (``to_dict`` / ``factor_from_dict``).

Records for one day are flattened into a ``FactorSnapshot``. Pattern
conditions are evaluated against snapshots, so discovery (historical days)
and forecasting (known factors for a target day) share one evaluation path.
"""

from __future__ import annotations

import json
import logging
import sqlite3
from collections import defaultdict
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeout
from dataclasses import dataclass, field, asdict, fields
from datetime import date, timedelta
from typing import Any, Dict, Iterable, List, Optional, Protocol, Union

from .db_adapter import get_connection
from .exceptions import DegenerateInput, PulseError, UpstreamUnavailable

logger = logging.getLogger(__name__)


# =============================================================================
# FACTOR RECORDS
# =============================================================================

@dataclass
class WeatherFactor:
    temperature_f: Optional[float] = None
    precipitation_in: float = 0.0
    condition: str = "clear"  # clear, cloudy, rain, snow, storm
    factor_type: str = field(default="weather", init=False)


@dataclass
class EventFactor:
    name: str
    category: str = "other"  # sports, festival, concert, conference, other
    distance_mi: Optional[float] = None
    attendance: Optional[int] = None
    factor_type: str = field(default="event", init=False)

    @property
    def impact_level(self) -> str:
        return event_impact_level(self.distance_mi, self.attendance, self.category)


@dataclass
class HolidayFactor:
    name: str
    impact: str = "medium"  # low, medium, high, critical
    factor_type: str = field(default="holiday", init=False)


@dataclass
class SportsFactor:
    league: str
    team: str = ""
    distance_mi: Optional[float] = None
    attendance: Optional[int] = None
    is_rivalry: bool = False
    factor_type: str = field(default="sports", init=False)


@dataclass
class DayOfWeekFactor:
    weekday: int  # 0=Monday
    factor_type: str = field(default="day_of_week", init=False)


@dataclass
class TimeOfDayFactor:
    hour: int
    factor_type: str = field(default="time_of_day", init=False)


ExternalFactorRecord = Union[
    WeatherFactor, EventFactor, HolidayFactor, SportsFactor, DayOfWeekFactor, TimeOfDayFactor
]

FACTOR_TYPES: Dict[str, type] = {
    "weather": WeatherFactor,
    "event": EventFactor,
    "holiday": HolidayFactor,
    "sports": SportsFactor,
    "day_of_week": DayOfWeekFactor,
    "time_of_day": TimeOfDayFactor,
}


def factor_to_dict(record: ExternalFactorRecord) -> Dict[str, Any]:
    return asdict(record)


def factor_from_dict(data: Dict[str, Any]) -> ExternalFactorRecord:
    """Rebuild a factor record from its dict form (``factor_type`` selects the class)."""
    factor_type = data.get("factor_type")
    cls = FACTOR_TYPES.get(factor_type)
    if cls is None:
        raise DegenerateInput(
            f"Unknown factor type: {factor_type}",
            code="UNKNOWN_FACTOR_TYPE",
            details={"factor_type": factor_type},
        )
    init_names = {f.name for f in fields(cls) if f.init}
    return cls(**{k: v for k, v in data.items() if k in init_names})


def event_impact_level(distance_mi: Optional[float], attendance: Optional[int], category: str) -> str:
    """Score an event by proximity, size and category into low/medium/high/critical."""
    score = 0
    if distance_mi is not None:
        if distance_mi < 0.5:
            score += 40
        elif distance_mi < 1:
            score += 30
        elif distance_mi < 2:
            score += 20
        elif distance_mi < 5:
            score += 10

    attendance = attendance or 0
    if attendance > 10000:
        score += 40
    elif attendance > 5000:
        score += 30
    elif attendance > 1000:
        score += 20
    elif attendance > 500:
        score += 10

    score += {"sports": 20, "festival": 15, "concert": 15, "conference": 10, "other": 5}.get(category, 0)

    if score >= 75:
        return "critical"
    if score >= 50:
        return "high"
    if score >= 25:
        return "medium"
    return "low"


# =============================================================================
# SNAPSHOT
# =============================================================================

HOLIDAY_IMPACT_RANK = {"low": 1, "medium": 2, "high": 3, "critical": 4}


@dataclass
class FactorSnapshot:
    """Flattened view of all factor records for one day (and optionally an hour)."""

    temperature_f: Optional[float] = None
    precipitation_in: Optional[float] = None
    is_rainy: Optional[bool] = None
    is_good_weather: Optional[bool] = None
    nearest_event_distance_mi: Optional[float] = None
    max_event_attendance: Optional[int] = None
    is_holiday: bool = False
    holiday_impact: int = 0
    has_sports_game: bool = False
    nearest_game_distance_mi: Optional[float] = None
    is_rivalry_game: bool = False
    weekday: Optional[int] = None
    is_weekend: Optional[bool] = None
    hour: Optional[int] = None

    @classmethod
    def from_records(
        cls,
        records: Iterable[ExternalFactorRecord],
        day: Optional[date] = None,
        rain_threshold_in: float = 0.1,
        sports_radius_mi: float = 30.0,
    ) -> "FactorSnapshot":
        snap = cls()
        if day is not None:
            snap.weekday = day.weekday()

        for record in records:
            if isinstance(record, WeatherFactor):
                snap.temperature_f = record.temperature_f
                snap.precipitation_in = record.precipitation_in
                snap.is_rainy = (
                    (record.precipitation_in or 0.0) >= rain_threshold_in
                    or record.condition in ("rain", "storm")
                )
                if record.temperature_f is not None:
                    snap.is_good_weather = (
                        not snap.is_rainy and 60.0 <= record.temperature_f <= 85.0
                    )
            elif isinstance(record, EventFactor):
                if record.distance_mi is not None and (
                    snap.nearest_event_distance_mi is None
                    or record.distance_mi < snap.nearest_event_distance_mi
                ):
                    snap.nearest_event_distance_mi = record.distance_mi
                if record.attendance is not None:
                    snap.max_event_attendance = max(snap.max_event_attendance or 0, record.attendance)
            elif isinstance(record, HolidayFactor):
                snap.is_holiday = True
                snap.holiday_impact = max(snap.holiday_impact, HOLIDAY_IMPACT_RANK.get(record.impact, 2))
            elif isinstance(record, SportsFactor):
                if record.distance_mi is None or record.distance_mi <= sports_radius_mi:
                    snap.has_sports_game = True
                    snap.is_rivalry_game = snap.is_rivalry_game or record.is_rivalry
                if record.distance_mi is not None and (
                    snap.nearest_game_distance_mi is None
                    or record.distance_mi < snap.nearest_game_distance_mi
                ):
                    snap.nearest_game_distance_mi = record.distance_mi
            elif isinstance(record, DayOfWeekFactor):
                snap.weekday = record.weekday
            elif isinstance(record, TimeOfDayFactor):
                snap.hour = record.hour

        if snap.weekday is not None:
            snap.is_weekend = snap.weekday >= 5
        return snap

    def get(self, name: str) -> Any:
        return getattr(self, name, None)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


# =============================================================================
# SOURCES
# =============================================================================

class FactorSource(Protocol):
    """Anything that can answer 'which external factors applied on this date'."""

    def factors_for_date(self, entity_id: str, day: date) -> List[ExternalFactorRecord]:
        ...

    def factors_for_range(self, entity_id: str, start: date, end: date) -> Dict[date, List[ExternalFactorRecord]]:
        ...


class InMemoryFactorSource:
    """Dict-backed factor source, keyed by (entity_id, date)."""

    def __init__(self):
        self._records: Dict[tuple, List[ExternalFactorRecord]] = defaultdict(list)

    def add(self, entity_id: str, day: date, *records: ExternalFactorRecord) -> None:
        self._records[(entity_id, day)].extend(records)

    def factors_for_date(self, entity_id: str, day: date) -> List[ExternalFactorRecord]:
        return list(self._records.get((entity_id, day), []))

    def factors_for_range(self, entity_id: str, start: date, end: date) -> Dict[date, List[ExternalFactorRecord]]:
        out = {}
        day = start
        while day <= end:
            records = self.factors_for_date(entity_id, day)
            if records:
                out[day] = records
            day += timedelta(days=1)
        return out


class SqliteFactorSource:
    """
    Factor source backed by the ``external_factors`` table.

    Rows are written by whatever ingests weather/events/holidays/sports;
    the payload column holds the record's JSON dict.
    """

    def __init__(self, db_path: str):
        self.db_path = db_path
        self._init_schema()

    def _init_schema(self):
        conn = get_connection(self.db_path)
        try:
            conn.executescript("""
                CREATE TABLE IF NOT EXISTS external_factors (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    entity_id TEXT NOT NULL,
                    date TEXT NOT NULL,
                    factor_type TEXT NOT NULL,
                    payload TEXT NOT NULL  -- JSON
                );

                CREATE INDEX IF NOT EXISTS idx_factors_entity_date
                ON external_factors(entity_id, date);
            """)
            conn.commit()
        finally:
            conn.close()

    def add(self, entity_id: str, day: date, *records: ExternalFactorRecord) -> None:
        conn = get_connection(self.db_path)
        try:
            conn.executemany(
                "INSERT INTO external_factors (entity_id, date, factor_type, payload) VALUES (?, ?, ?, ?)",
                [
                    (entity_id, day.isoformat(), r.factor_type, json.dumps(factor_to_dict(r)))
                    for r in records
                ],
            )
            conn.commit()
        finally:
            conn.close()

    def factors_for_date(self, entity_id: str, day: date) -> List[ExternalFactorRecord]:
        return self.factors_for_range(entity_id, day, day).get(day, [])

    def factors_for_range(self, entity_id: str, start: date, end: date) -> Dict[date, List[ExternalFactorRecord]]:
        conn = get_connection(self.db_path)
        try:
            rows = conn.execute("""
                SELECT date, payload FROM external_factors
                WHERE entity_id = ? AND date BETWEEN ? AND ?
                ORDER BY date, id
            """, (entity_id, start.isoformat(), end.isoformat())).fetchall()
        finally:
            conn.close()

        out: Dict[date, List[ExternalFactorRecord]] = defaultdict(list)
        for row in rows:
            out[date.fromisoformat(row["date"])].append(factor_from_dict(json.loads(row["payload"])))
        return dict(out)


class TimedFactorSource:
    """
    Wraps a factor source so each lookup runs under a timeout.

    Any failure of the underlying source (including the timeout) is
    reported as ``UpstreamUnavailable``.
    """

    def __init__(self, source: FactorSource, timeout: float, max_workers: int = 4):
        self.source = source
        self.timeout = timeout
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="factor-fetch")

    def _call(self, fn, *args):
        future = self._executor.submit(fn, *args)
        try:
            return future.result(timeout=self.timeout)
        except FutureTimeout as e:
            future.cancel()
            raise UpstreamUnavailable(
                f"Factor source timed out after {self.timeout:.1f}s",
                details={"timeout": self.timeout},
            ) from e
        except PulseError:
            raise
        except (OSError, sqlite3.Error, ValueError) as e:
            logger.warning(f"Factor source failed: {e}")
            raise UpstreamUnavailable(f"Factor source failed: {e}") from e

    def factors_for_date(self, entity_id: str, day: date) -> List[ExternalFactorRecord]:
        return self._call(self.source.factors_for_date, entity_id, day)

    def factors_for_range(self, entity_id: str, start: date, end: date) -> Dict[date, List[ExternalFactorRecord]]:
        return self._call(self.source.factors_for_range, entity_id, start, end)

    def close(self) -> None:
        self._executor.shutdown(wait=False)

"""
Factor Normalizer

Joins daily transaction aggregates with the external factors for each day
into one ``DailyOutcomeRow`` per calendar day. Days without transactions
are kept (revenue 0, ``closed=True``) so downstream engines can decide
whether a closed day is an observation or a gap.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, timedelta
from typing import Dict, List, Mapping, Optional

import pandas as pd

from .factors import ExternalFactorRecord, FactorSnapshot, FactorSource
from .transactions import TransactionStore

logger = logging.getLogger(__name__)


@dataclass
class DailyOutcomeRow:
    entity_id: str
    date: date
    revenue: float
    transactions: int
    avg_ticket: float
    weekday: int
    hourly_revenue: Dict[int, float] = field(default_factory=dict)
    factors: FactorSnapshot = field(default_factory=FactorSnapshot)
    closed: bool = False


def normalize(
    entity_id: str,
    start: date,
    end: date,
    daily: pd.DataFrame,
    hourly: Optional[pd.DataFrame] = None,
    factors_by_date: Optional[Mapping[date, List[ExternalFactorRecord]]] = None,
    rain_threshold_in: float = 0.1,
    sports_radius_mi: float = 30.0,
) -> List[DailyOutcomeRow]:
    """
    Build one row per calendar day in [start, end].

    Args:
        daily: frame with columns date (ISO str), revenue, transactions
        hourly: optional frame with columns date, hour, revenue
        factors_by_date: factor records keyed by date
    """
    factors_by_date = factors_by_date or {}

    by_day = {}
    if daily is not None and not daily.empty:
        for rec in daily.to_dict("records"):
            by_day[date.fromisoformat(str(rec["date"]))] = rec

    hours_by_day: Dict[date, Dict[int, float]] = {}
    if hourly is not None and not hourly.empty:
        for (day_str, group) in hourly.groupby("date"):
            hours_by_day[date.fromisoformat(str(day_str))] = {
                int(h): float(r) for h, r in zip(group["hour"], group["revenue"])
            }

    rows = []
    day = start
    while day <= end:
        rec = by_day.get(day)
        revenue = float(rec["revenue"]) if rec else 0.0
        count = int(rec["transactions"]) if rec else 0
        rows.append(DailyOutcomeRow(
            entity_id=entity_id,
            date=day,
            revenue=max(revenue, 0.0),
            transactions=count,
            avg_ticket=revenue / count if count else 0.0,
            weekday=day.weekday(),
            hourly_revenue=hours_by_day.get(day, {}),
            factors=FactorSnapshot.from_records(
                factors_by_date.get(day, []),
                day=day,
                rain_threshold_in=rain_threshold_in,
                sports_radius_mi=sports_radius_mi,
            ),
            closed=count == 0,
        ))
        day += timedelta(days=1)

    closed = sum(1 for r in rows if r.closed)
    logger.debug(f"Normalized {len(rows)} days for {entity_id} ({closed} closed)")
    return rows


def load_daily_rows(
    store: TransactionStore,
    source: FactorSource,
    entity_id: str,
    start: date,
    end: date,
    rain_threshold_in: float = 0.1,
    sports_radius_mi: float = 30.0,
) -> List[DailyOutcomeRow]:
    """Fetch aggregates and factors for the range, then normalize."""
    daily = store.daily_aggregates(entity_id, start, end)
    hourly = store.hourly_by_date(entity_id, start, end)
    factors = source.factors_for_range(entity_id, start, end)
    return normalize(
        entity_id, start, end, daily, hourly, factors,
        rain_threshold_in=rain_threshold_in,
        sports_radius_mi=sports_radius_mi,
    )


def rows_to_frame(rows: List[DailyOutcomeRow]) -> pd.DataFrame:
    """Flatten rows (and their factor snapshots) into a DataFrame indexed by date."""
    records = []
    for row in rows:
        rec = {
            "date": row.date,
            "revenue": row.revenue,
            "transactions": row.transactions,
            "avg_ticket": row.avg_ticket,
            "weekday": row.weekday,
            "closed": row.closed,
        }
        rec.update({k: v for k, v in row.factors.to_dict().items() if k != "weekday"})
        records.append(rec)
    if not records:
        return pd.DataFrame()
    return pd.DataFrame.from_records(records).set_index("date")

"""
Correlation Discovery Engine

Scans an entity's normalized daily history for significant relationships
between external factors and outcomes:

    weather       - hot / cold / rainy days vs revenue
    event         - nearby events vs revenue, attendance vs traffic
    holiday       - holidays (and high-impact holidays) vs revenue
    sports        - game days, rivalry games, game proximity vs revenue
    day type      - weekend vs weekday revenue
    menu weather  - item quantities on hot / cold / rainy days
    multi-factor  - AND of two conditions that are significant on their own

Bucket analyzers compare in-bucket vs out-of-bucket days using the
point-biserial r, so every candidate goes through the same gate:
|r| >= min_abs_r, p < max_p_value and enough in-bucket days for its type.

Analyzers run concurrently; accepted candidates are written to the learning
store, which creates or refreshes the entity-scoped record.
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from datetime import date
from itertools import combinations
from typing import Callable, Dict, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd

from ..core import stats
from ..core.config import PulseConfig
from ..core.exceptions import DegenerateInput, InsufficientData
from ..core.normalizer import DailyOutcomeRow
from .correlation import (
    Correlation,
    CorrelationType,
    FactorCondition,
    Outcome,
    PatternFactor,
    PatternText,
    Statistics,
)
from .learning_store import CREATED, CorrelationStore

logger = logging.getLogger(__name__)


# =============================================================================
# RECOMMENDATION TEMPLATES
# =============================================================================

RECOMMENDATIONS: Dict[Tuple[str, str], str] = {
    ("weather_sales", "up"): "Schedule extra staff and stock up when {when}.",
    ("weather_sales", "down"): "Run a promotion or trim staffing when {when}.",
    ("weather_menu", "up"): "Increase prep of {item} when {when}.",
    ("weather_menu", "down"): "Reduce prep of {item} when {when}.",
    ("event_sales", "up"): "Prepare for event crowds: add staff when {when}.",
    ("event_sales", "down"): "Expect a dip when {when}; consider event-goer specials.",
    ("event_traffic", "up"): "Larger events bring more tickets; open extra registers when {when}.",
    ("event_traffic", "down"): "Large events pull traffic away; plan lighter shifts when {when}.",
    ("holiday_sales", "up"): "Plan holiday staffing and inventory ahead when {when}.",
    ("holiday_sales", "down"): "Consider reduced hours or holiday promotions when {when}.",
    ("sports_sales", "up"): "Run game-day specials and staff up when {when}.",
    ("sports_sales", "down"): "Games pull customers away; promote to the home crowd when {when}.",
    ("day_type", "up"): "Weekend volume is higher; weight schedules toward {when}.",
    ("day_type", "down"): "Weekends are slower; target weekend promotions.",
    ("multi_factor", "up"): "Combined conditions compound demand; staff up well ahead when {when}.",
    ("multi_factor", "down"): "Combined conditions compound the dip; run targeted promotions when {when}.",
}


def recommendation_for(correlation_type: str, change: float, when: str, item: str = "") -> str:
    direction = "up" if change >= 0 else "down"
    template = RECOMMENDATIONS.get((correlation_type, direction), "Monitor performance when {when}.")
    return template.format(when=when, item=item)


# =============================================================================
# DATA CLASSES
# =============================================================================

@dataclass
class Bucket:
    """A named factor condition set to test."""
    label: str
    conditions: List[FactorCondition]
    family: str
    correlation_type: str
    require_known: Tuple[str, ...] = ()


@dataclass
class Candidate:
    correlation: Correlation
    row_dates: List[date]
    bucket: Optional[Bucket] = None


@dataclass
class DiscoveryResult:
    entity_id: str
    created: int = 0
    updated: int = 0
    open_days: int = 0
    accepted: List[Dict] = field(default_factory=list)
    skipped_analyzers: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict:
        return {
            "entity_id": self.entity_id,
            "created": self.created,
            "updated": self.updated,
            "open_days": self.open_days,
            "accepted": self.accepted,
            "skipped_analyzers": self.skipped_analyzers,
        }


# =============================================================================
# ENGINE
# =============================================================================

class CorrelationDiscovery:
    """Runs every analyzer over an entity's daily rows and persists what passes."""

    def __init__(self, store: CorrelationStore, config: Optional[PulseConfig] = None):
        self.store = store
        self.config = config or store.config

    # -------------------------------------------------------------------------
    # Gate
    # -------------------------------------------------------------------------

    def _passes(self, r: float, p_value: float, in_n: int, correlation_type: str) -> bool:
        return (
            abs(r) >= self.config.min_abs_r
            and p_value < self.config.max_p_value
            and in_n >= self.config.min_samples_for(correlation_type)
        )

    def _build(
        self,
        entity_id: str,
        correlation_type: str,
        factor: PatternFactor,
        label: str,
        comparison: stats.BucketComparison,
        r: float,
        p_value: float,
        sample_size: int,
        metric: str = "revenue",
        item: str = "",
    ) -> Correlation:
        change = round(comparison.change_pct, 2)
        direction = "up" if change >= 0 else "down"
        subject = item or metric
        return Correlation(
            type=correlation_type,
            factor=factor,
            entity_id=entity_id,
            outcome=Outcome(
                metric=metric,
                value=round(comparison.in_mean, 2),
                baseline=round(comparison.out_mean, 2),
                change=change,
                change_kind="percent",
            ),
            statistics=Statistics.from_r(r, p_value, sample_size),
            pattern=PatternText(
                description=f"{subject.capitalize()} {direction} {abs(change):.0f}% when {label}",
                when=label,
                then=f"{subject} {change:+.0f}%",
                actionable=True,
                recommendation=recommendation_for(correlation_type, change, label, item=item),
            ),
        )

    # -------------------------------------------------------------------------
    # Bucket analysis
    # -------------------------------------------------------------------------

    def _test_bucket(self, entity_id: str, rows: Sequence[DailyOutcomeRow], bucket: Bucket) -> Optional[Candidate]:
        usable = [
            r for r in rows
            if all(r.factors.get(name) is not None for name in bucket.require_known)
        ]
        mask = [all(c.evaluate(r.factors) for c in bucket.conditions) for r in usable]
        in_n = sum(mask)
        if in_n < self.config.min_samples_for(bucket.correlation_type):
            logger.debug(f"{entity_id}: {bucket.label} has {in_n} days, below minimum")
            return None

        comparison = stats.compare_buckets([r.revenue for r in usable], mask)
        if not self._passes(comparison.r, comparison.p_value, in_n, bucket.correlation_type):
            return None

        factor = PatternFactor(family=bucket.family, conditions=list(bucket.conditions))
        correlation = self._build(
            entity_id, bucket.correlation_type, factor, bucket.label,
            comparison, comparison.r, comparison.p_value, comparison.sample_size,
        )
        return Candidate(correlation=correlation, row_dates=[r.date for r in usable], bucket=bucket)

    def _run_buckets(self, entity_id: str, rows: Sequence[DailyOutcomeRow], buckets: List[Bucket]) -> List[Candidate]:
        out = []
        for bucket in buckets:
            try:
                candidate = self._test_bucket(entity_id, rows, bucket)
            except (InsufficientData, DegenerateInput) as e:
                logger.debug(f"{entity_id}: skipped {bucket.label}: {e}")
                continue
            if candidate:
                out.append(candidate)
        return out

    def _continuous(
        self,
        entity_id: str,
        rows: Sequence[DailyOutcomeRow],
        field_name: str,
        metric: str,
        correlation_type: str,
        family: str,
        label_fmt: str,
        op: str,
    ) -> List[Candidate]:
        """
        Pearson between a continuous factor and a metric over the days where
        the factor is present. An accepted relationship is stored as the
        median split (``field op median``) so it can be matched later.
        """
        present = [r for r in rows if r.factors.get(field_name) is not None]
        if len(present) < self.config.min_samples_for(correlation_type):
            return []

        xs = [float(r.factors.get(field_name)) for r in present]
        ys = [float(getattr(r, metric)) for r in present]
        r = stats.pearson(xs, ys)
        p_value = stats.significance(r, len(present))
        if not self._passes(r, p_value, len(present), correlation_type):
            return []

        median = float(np.median(xs))
        condition = FactorCondition(field_name, op, round(median, 2))
        mask = [condition.evaluate(row.factors) for row in rows]
        comparison = stats.compare_buckets([float(getattr(row, metric)) for row in rows], mask)
        label = label_fmt.format(value=round(median, 1))
        factor = PatternFactor(family=family, conditions=[condition])
        correlation = self._build(
            entity_id, correlation_type, factor, label, comparison, r, p_value, len(present), metric=metric,
        )
        return [Candidate(correlation=correlation, row_dates=[row.date for row in rows])]

    # -------------------------------------------------------------------------
    # Analyzers
    # -------------------------------------------------------------------------

    def analyze_weather(self, entity_id: str, rows: Sequence[DailyOutcomeRow]) -> List[Candidate]:
        cfg = self.config
        t = CorrelationType.WEATHER_SALES.value
        return self._run_buckets(entity_id, rows, [
            Bucket(f"temperature is above {cfg.hot_temp_f:.0f}°F",
                   [FactorCondition("temperature_f", "gt", cfg.hot_temp_f)], "weather", t, ("temperature_f",)),
            Bucket(f"temperature is below {cfg.cold_temp_f:.0f}°F",
                   [FactorCondition("temperature_f", "lt", cfg.cold_temp_f)], "weather", t, ("temperature_f",)),
            Bucket("it is raining",
                   [FactorCondition("is_rainy", "eq", True)], "weather", t, ("is_rainy",)),
        ])

    def analyze_events(self, entity_id: str, rows: Sequence[DailyOutcomeRow]) -> List[Candidate]:
        cfg = self.config
        candidates = self._run_buckets(entity_id, rows, [
            Bucket(f"an event is within {cfg.event_radius_mi:.0f} miles",
                   [FactorCondition("nearest_event_distance_mi", "lt", cfg.event_radius_mi)],
                   "event", CorrelationType.EVENT_SALES.value),
        ])
        candidates.extend(self._continuous(
            entity_id, rows, "max_event_attendance", "transactions",
            CorrelationType.EVENT_TRAFFIC.value, "event",
            "nearby event attendance is at least {value:,.0f}", "gte",
        ))
        return candidates

    def analyze_holidays(self, entity_id: str, rows: Sequence[DailyOutcomeRow]) -> List[Candidate]:
        t = CorrelationType.HOLIDAY_SALES.value
        return self._run_buckets(entity_id, rows, [
            Bucket("it is a holiday", [FactorCondition("is_holiday", "eq", True)], "holiday", t),
            Bucket("it is a major holiday", [FactorCondition("holiday_impact", "gte", 3)], "holiday", t),
        ])

    def analyze_sports(self, entity_id: str, rows: Sequence[DailyOutcomeRow]) -> List[Candidate]:
        t = CorrelationType.SPORTS_SALES.value
        candidates = self._run_buckets(entity_id, rows, [
            Bucket("there is a local game", [FactorCondition("has_sports_game", "eq", True)], "sports", t),
            Bucket("there is a rivalry game", [FactorCondition("is_rivalry_game", "eq", True)], "sports", t),
        ])
        candidates.extend(self._continuous(
            entity_id, rows, "nearest_game_distance_mi", "revenue", t, "sports",
            "a game is within {value} miles", "lte",
        ))
        return candidates

    def analyze_day_type(self, entity_id: str, rows: Sequence[DailyOutcomeRow]) -> List[Candidate]:
        return self._run_buckets(entity_id, rows, [
            Bucket("it is the weekend", [FactorCondition("is_weekend", "eq", True)],
                   "day_type", CorrelationType.DAY_TYPE.value),
        ])

    def analyze_menu_weather(
        self,
        entity_id: str,
        rows: Sequence[DailyOutcomeRow],
        item_quantities: Optional[pd.DataFrame],
    ) -> List[Candidate]:
        """Item quantity shifts on hot / cold / rainy days; keeps the strongest few."""
        if item_quantities is None or item_quantities.empty:
            return []

        cfg = self.config
        t = CorrelationType.WEATHER_MENU.value
        buckets = [
            (f"temperature is above {cfg.hot_temp_f:.0f}°F", FactorCondition("temperature_f", "gt", cfg.hot_temp_f)),
            (f"temperature is below {cfg.cold_temp_f:.0f}°F", FactorCondition("temperature_f", "lt", cfg.cold_temp_f)),
            ("it is raining", FactorCondition("is_rainy", "eq", True)),
        ]
        usable = [r for r in rows if r.factors.temperature_f is not None]
        quantities = item_quantities.reindex([r.date.isoformat() for r in usable], fill_value=0)

        found = []
        for item in sorted(quantities.columns):
            values = quantities[item].astype(float).tolist()
            for label, condition in buckets:
                mask = [condition.evaluate(r.factors) for r in usable]
                in_n = sum(mask)
                if in_n < cfg.min_samples_for(t):
                    continue
                try:
                    comparison = stats.compare_buckets(values, mask)
                except InsufficientData:
                    continue
                if not self._passes(comparison.r, comparison.p_value, in_n, t):
                    continue
                factor = PatternFactor(family="weather", conditions=[condition], attributes={"item": item})
                correlation = self._build(
                    entity_id, t, factor, label, comparison, comparison.r, comparison.p_value,
                    comparison.sample_size, metric="item_quantity", item=item,
                )
                found.append(Candidate(correlation=correlation, row_dates=[r.date for r in usable]))

        found.sort(key=lambda c: (-abs(c.correlation.outcome.change), c.correlation.factor_key))
        return found[:cfg.menu_top_items]

    def analyze_multi_factor(
        self,
        entity_id: str,
        rows: Sequence[DailyOutcomeRow],
        accepted: Sequence[Candidate],
    ) -> List[Candidate]:
        """
        Pairs of individually significant bucket conditions. A compound is
        kept only when its effect is larger than both of its parts.
        """
        singles = [
            c for c in accepted
            if c.bucket is not None and c.correlation.is_revenue_pattern
        ]
        singles.sort(key=lambda c: c.correlation.factor_key)
        t = CorrelationType.MULTI_FACTOR.value

        out = []
        for a, b in combinations(singles, 2):
            fields_a = {cond.field for cond in a.bucket.conditions}
            fields_b = {cond.field for cond in b.bucket.conditions}
            if fields_a & fields_b:
                continue
            bucket = Bucket(
                label=f"{a.bucket.label} and {b.bucket.label}",
                conditions=list(a.bucket.conditions) + list(b.bucket.conditions),
                family="multi",
                correlation_type=t,
                require_known=a.bucket.require_known + b.bucket.require_known,
            )
            try:
                candidate = self._test_bucket(entity_id, rows, bucket)
            except (InsufficientData, DegenerateInput):
                continue
            if candidate is None:
                continue
            change = abs(candidate.correlation.outcome.change)
            if change > abs(a.correlation.outcome.change) and change > abs(b.correlation.outcome.change):
                out.append(candidate)
        return out

    # -------------------------------------------------------------------------
    # Orchestration
    # -------------------------------------------------------------------------

    def discover(
        self,
        entity_id: str,
        rows: Sequence[DailyOutcomeRow],
        item_quantities: Optional[pd.DataFrame] = None,
        max_workers: Optional[int] = None,
    ) -> DiscoveryResult:
        """
        Run all analyzers over ``rows`` and persist accepted candidates.

        Closed days (no transactions) are excluded from the analysis.
        """
        result = DiscoveryResult(entity_id=entity_id)
        open_rows = [r for r in rows if not r.closed]
        result.open_days = len(open_rows)
        if len(open_rows) < 3:
            logger.info(f"{entity_id}: only {len(open_rows)} open days, nothing to discover")
            result.skipped_analyzers.append("all")
            return result

        analyzers: Dict[str, Callable[[], List[Candidate]]] = {
            "weather": lambda: self.analyze_weather(entity_id, open_rows),
            "events": lambda: self.analyze_events(entity_id, open_rows),
            "holidays": lambda: self.analyze_holidays(entity_id, open_rows),
            "sports": lambda: self.analyze_sports(entity_id, open_rows),
            "day_type": lambda: self.analyze_day_type(entity_id, open_rows),
            "menu_weather": lambda: self.analyze_menu_weather(entity_id, open_rows, item_quantities),
        }

        accepted: List[Candidate] = []
        workers = max_workers or self.config.max_workers
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="discover") as executor:
            futures = {executor.submit(fn): name for name, fn in analyzers.items()}
            for future in as_completed(futures):
                name = futures[future]
                try:
                    accepted.extend(future.result())
                except (InsufficientData, DegenerateInput) as e:
                    logger.debug(f"{entity_id}: analyzer {name} skipped: {e}")
                    result.skipped_analyzers.append(name)

        accepted.sort(key=lambda c: (c.correlation.type, c.correlation.factor_key))
        accepted.extend(self.analyze_multi_factor(entity_id, open_rows, accepted))
        result.skipped_analyzers.sort()

        for candidate in accepted:
            outcome = self.store.upsert_entity_correlation(candidate.correlation, candidate.row_dates)
            if outcome == CREATED:
                result.created += 1
            else:
                result.updated += 1
            c = candidate.correlation
            result.accepted.append({
                "id": c.id,
                "type": c.type,
                "when": c.pattern.when,
                "change": c.outcome.change,
                "r": round(c.statistics.r, 4),
                "p_value": c.statistics.p_value,
                "strength": c.statistics.strength,
                "status": outcome,
            })

        logger.info(
            f"Discovery for {entity_id}: {len(accepted)} accepted "
            f"({result.created} created, {result.updated} updated) over {len(open_rows)} open days"
        )
        return result

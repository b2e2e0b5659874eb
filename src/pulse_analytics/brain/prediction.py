"""
Prediction Engine

Forecasts revenue for an entity on a target date:

    baseline   trailing weekday average (optionally scaled to one hour)
    patterns   learned correlations resolved most-specific-first
    adjust     each matching revenue pattern contributes change * confidence / 100
    combine    percentages compound, flat amounts add
    interval   width shrinks as combined confidence grows

When pattern resolution or the baseline query cannot finish in time the
forecast degrades to baseline-only and says so (``degraded=True``).
"""

from __future__ import annotations

import logging
import sqlite3
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeout
from dataclasses import dataclass, field, asdict
from datetime import date, datetime, timedelta
from typing import Any, Dict, List, Optional, Sequence

from ..core.config import PulseConfig
from ..core.exceptions import ResolutionExhausted, UpstreamUnavailable
from ..core.factors import ExternalFactorRecord, FactorSnapshot, FactorSource
from ..core.locations import LocationResolver
from ..core.transactions import TransactionStore
from .correlation import Correlation, CorrelationType
from .internal_patterns import WEEKDAY_NAMES
from .learning_store import CorrelationStore

logger = logging.getLogger(__name__)


@dataclass
class AppliedFactor:
    correlation_id: int
    type: str
    scope: str
    description: str
    change: float
    change_kind: str
    confidence: float
    weight: float
    contribution: float


@dataclass
class Baseline:
    value: float = 0.0
    weekday_occurrences: int = 0
    peak_hours: List[int] = field(default_factory=list)


@dataclass
class ForecastResult:
    entity_id: str
    target_date: date
    baseline: float
    low: float
    mid: float
    high: float
    confidence: float
    applied_factors: List[AppliedFactor] = field(default_factory=list)
    recommendations: List[str] = field(default_factory=list)
    peak_hours: List[int] = field(default_factory=list)
    degraded: bool = False
    generated_at: str = field(default_factory=lambda: datetime.now().isoformat())

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["target_date"] = self.target_date.isoformat()
        return data


class PredictionEngine:
    """Baseline + learned-pattern revenue forecasts."""

    def __init__(
        self,
        transactions: TransactionStore,
        store: CorrelationStore,
        factors: FactorSource,
        locations: LocationResolver,
        config: Optional[PulseConfig] = None,
    ):
        self.transactions = transactions
        self.store = store
        self.factors = factors
        self.locations = locations
        self.config = config or store.config
        self._executor = ThreadPoolExecutor(
            max_workers=max(2, self.config.max_workers), thread_name_prefix="predict"
        )

    # =========================================================================
    # Baseline
    # =========================================================================

    def baseline(self, entity_id: str, target_date: date, hour: Optional[int] = None) -> Baseline:
        """
        Average revenue for the target weekday over the trailing window.

        Weekday occurrences are counted on the calendar from the entity's
        first activity in the window, so closed days pull the average down
        instead of disappearing.
        """
        window_end = target_date - timedelta(days=1)
        window_start = target_date - timedelta(days=self.config.baseline_window_days)
        first = self.transactions.first_activity(entity_id, window_start, window_end)
        if first is None:
            return Baseline()

        weekday = target_date.weekday()
        occurrences = sum(
            1 for offset in range((window_end - first).days + 1)
            if (first + timedelta(days=offset)).weekday() == weekday
        )
        by_weekday = self.transactions.weekday_revenue(entity_id, first, window_end)
        match = by_weekday[by_weekday["weekday"] == weekday]
        revenue = float(match["revenue"].iloc[0]) if not match.empty else 0.0
        value = revenue / occurrences if occurrences else 0.0

        profile = self.transactions.hourly_profile(entity_id, first, window_end, weekday=weekday)
        peak_hours: List[int] = []
        if not profile.empty:
            ranked = profile.sort_values(["revenue", "hour"], ascending=[False, True])
            peak_hours = [int(h) for h in ranked["hour"].head(3)]
            if hour is not None:
                total = float(profile["revenue"].sum())
                at_hour = profile.loc[profile["hour"] == hour, "revenue"]
                share = float(at_hour.iloc[0]) / total if total > 0 and not at_hour.empty else 0.0
                value *= share

        return Baseline(value=round(value, 2), weekday_occurrences=occurrences, peak_hours=peak_hours)

    def _baseline_confidence(self, baseline: Baseline) -> float:
        # A dozen same-weekday observations is as good as history alone gets
        return round(min(baseline.weekday_occurrences / 12.0, 1.0) * 60.0, 1)

    # =========================================================================
    # Pattern selection
    # =========================================================================

    def select_patterns(self, patterns: Sequence[Correlation], snapshot: FactorSnapshot) -> List[Correlation]:
        """
        Patterns that apply to ``snapshot``.

        Weekday effects are already in the baseline, so ``day_type`` patterns
        are skipped. A single-factor pattern whose conditions are all covered
        by an applied multi-factor pattern is skipped to avoid counting the
        same effect twice.
        """
        matching = [
            p for p in patterns
            if p.is_revenue_pattern
            and p.type != CorrelationType.DAY_TYPE.value
            and p.matches(snapshot)
        ]
        multi = [p for p in matching if p.type == CorrelationType.MULTI_FACTOR.value]
        covered = [set(p.factor.conditions) for p in multi]

        selected = list(multi)
        for p in matching:
            if p.type == CorrelationType.MULTI_FACTOR.value:
                continue
            conds = set(p.factor.conditions)
            if any(conds <= cover for cover in covered):
                continue
            selected.append(p)
        return selected

    # =========================================================================
    # Forecast
    # =========================================================================

    def _resolve(self, entity_id: str) -> List[Correlation]:
        location = self.locations.resolve(entity_id)
        region = location.region if location else None
        category = location.category if location else None
        return self.store.resolve(
            entity_id, region, category, timeout=self.config.resolve_timeout,
        )

    def _with_timeout(self, fn, *args):
        future = self._executor.submit(fn, *args)
        try:
            return future.result(timeout=self.config.resolve_timeout)
        except FutureTimeout as e:
            future.cancel()
            raise UpstreamUnavailable(
                f"{getattr(fn, '__name__', 'call')} timed out after {self.config.resolve_timeout:.1f}s"
            ) from e

    def predict(
        self,
        entity_id: str,
        target_date: date,
        known_factors: Optional[Sequence[ExternalFactorRecord]] = None,
    ) -> ForecastResult:
        degraded = False

        if known_factors is None:
            try:
                known_factors = self.factors.factors_for_date(entity_id, target_date)
            except UpstreamUnavailable as e:
                logger.warning(f"Factors unavailable for {entity_id} on {target_date}: {e}")
                known_factors = []
                degraded = True
        snapshot = FactorSnapshot.from_records(
            known_factors, day=target_date,
            rain_threshold_in=self.config.rain_threshold_in,
            sports_radius_mi=self.config.sports_radius_mi,
        )

        try:
            base = self._with_timeout(self.baseline, entity_id, target_date, snapshot.hour)
        except (UpstreamUnavailable, sqlite3.Error) as e:
            logger.warning(f"Baseline unavailable for {entity_id} on {target_date}: {e}")
            base = Baseline()
            degraded = True

        try:
            patterns = self._with_timeout(self._resolve, entity_id)
        except (ResolutionExhausted, UpstreamUnavailable) as e:
            logger.warning(f"Pattern resolution failed for {entity_id}, using baseline only: {e}")
            patterns = []
            degraded = True

        applied: List[AppliedFactor] = []
        multiplier = 1.0
        flat = 0.0
        for p in self.select_patterns(patterns, snapshot):
            weight = p.confidence / 100.0
            adjustment = p.outcome.change * weight
            if p.outcome.change_kind == "amount":
                flat += adjustment
                contribution = adjustment
            else:
                multiplier *= 1.0 + adjustment / 100.0
                contribution = base.value * adjustment / 100.0
            applied.append(AppliedFactor(
                correlation_id=p.id,
                type=p.type,
                scope=p.scope,
                description=p.pattern.description,
                change=p.outcome.change,
                change_kind=p.outcome.change_kind,
                confidence=p.confidence,
                weight=round(weight, 4),
                contribution=round(contribution, 2),
            ))

        mid = max(base.value * multiplier + flat, 0.0)
        applied.sort(key=lambda a: (-abs(a.contribution), a.correlation_id))

        total_weight = sum(abs(a.contribution) for a in applied)
        if applied and total_weight > 0:
            confidence = sum(abs(a.contribution) * a.confidence for a in applied) / total_weight
        elif applied:
            confidence = sum(a.confidence for a in applied) / len(applied)
        else:
            confidence = self._baseline_confidence(base)

        cfg = self.config
        half_width = cfg.min_interval_pct + (cfg.max_interval_pct - cfg.min_interval_pct) * (1 - confidence / 100.0)
        low = max(mid * (1 - half_width / 100.0), 0.0)
        high = mid * (1 + half_width / 100.0)

        by_id = {p.id: p for p in patterns}
        recommendations = self._recommendations(target_date, base.value, mid, applied, by_id)

        if applied:
            try:
                self.store.record_application(a.correlation_id for a in applied)
            except sqlite3.Error as e:
                logger.warning(f"Could not record pattern usage for {entity_id}: {e}")

        logger.debug(
            f"Forecast {entity_id} {target_date}: baseline {base.value:.2f} -> {mid:.2f} "
            f"with {len(applied)} factors (confidence {confidence:.1f})"
        )
        return ForecastResult(
            entity_id=entity_id,
            target_date=target_date,
            baseline=base.value,
            low=round(low, 2),
            mid=round(mid, 2),
            high=round(high, 2),
            confidence=round(confidence, 1),
            applied_factors=applied,
            recommendations=recommendations,
            peak_hours=base.peak_hours,
            degraded=degraded,
        )

    def _recommendations(
        self,
        target_date: date,
        baseline: float,
        mid: float,
        applied: Sequence[AppliedFactor],
        by_id: Dict[int, Correlation],
    ) -> List[str]:
        if not applied:
            return []

        recommendations = []
        dominant = by_id.get(applied[0].correlation_id)
        if dominant and dominant.pattern.recommendation:
            recommendations.append(dominant.pattern.recommendation)

        if baseline > 0:
            change = (mid - baseline) / baseline * 100.0
            day = WEEKDAY_NAMES[target_date.weekday()]
            threshold = self.config.recommendation_change_pct
            if change > threshold:
                recommendations.append(
                    f"Expect about {change:.0f}% above a typical {day}: add staff and extra prep."
                )
            elif change < -threshold:
                recommendations.append(
                    f"Expect about {abs(change):.0f}% below a typical {day}: run a promotion or trim shifts."
                )
        return recommendations

    def close(self) -> None:
        self._executor.shutdown(wait=False)

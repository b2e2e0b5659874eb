"""
Pattern Validator

Backtests learned patterns against days that were not used to discover
them. For each active entity pattern:

    1. Take open days after the last day this entity validated it through,
       or, before its first trial, after the window it was discovered on.
       Later rediscovery widens the coverage window but not this cursor.
    2. Split them into days where the pattern's conditions hold and the rest.
    3. observed = (mean(matching) - mean(rest)) / mean(rest) * 100, on the
       pattern's metric (revenue, transactions or one item's daily quantity)
    4. Confirmed when |observed - predicted| / |predicted| is within tolerance.

Each trial updates the pattern's counters, accuracy and confidence in the
learning store. Patterns whose accuracy drops below the decay threshold
after enough trials are deactivated.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date
from typing import Dict, List, Optional, Sequence

import numpy as np
import pandas as pd

from ..core.config import PulseConfig
from ..core.normalizer import DailyOutcomeRow
from .correlation import Correlation, Scope
from .learning_store import CorrelationStore

logger = logging.getLogger(__name__)

ROW_METRICS = ("revenue", "transactions")
ITEM_METRIC = "item_quantity"


@dataclass
class TrialResult:
    correlation_id: int
    observed_change: float
    predicted_change: float
    error: float
    confirmed: bool
    matching_days: int
    through: date


@dataclass
class ValidationSummary:
    entity_id: str
    confirmed: int = 0
    refuted: int = 0
    deactivated: int = 0
    skipped: int = 0
    trials: List[Dict] = field(default_factory=list)

    def to_dict(self) -> Dict:
        return {
            "entity_id": self.entity_id,
            "confirmed": self.confirmed,
            "refuted": self.refuted,
            "deactivated": self.deactivated,
            "skipped": self.skipped,
            "trials": self.trials,
        }


class PatternValidator:
    """Deterministic held-out backtest for learned correlations."""

    def __init__(self, store: CorrelationStore, config: Optional[PulseConfig] = None):
        self.store = store
        self.config = config or store.config

    def cutoff(self, pattern: Correlation, entity_id: str) -> Optional[date]:
        """Last day already spent on ``pattern``; only later days are fresh."""
        through = self.store.validated_through(pattern.id, entity_id)
        if through:
            return through
        first_seen = pattern.holdout_from or pattern.coverage_end
        return date.fromisoformat(first_seen) if first_seen else None

    def fresh_rows(self, pattern: Correlation, entity_id: str, rows: Sequence[DailyOutcomeRow]) -> List[DailyOutcomeRow]:
        """Open rows strictly after the pattern's validation cutoff."""
        cutoff = self.cutoff(pattern, entity_id)
        return [r for r in rows if not r.closed and (cutoff is None or r.date > cutoff)]

    @staticmethod
    def _metric_values(
        pattern: Correlation,
        rows: Sequence[DailyOutcomeRow],
        item_quantities: Optional[pd.DataFrame],
    ) -> Optional[List[float]]:
        metric = pattern.outcome.metric
        if metric in ROW_METRICS:
            return [float(getattr(r, metric)) for r in rows]
        if metric == ITEM_METRIC:
            item = pattern.factor.attributes.get("item")
            if item is None or item_quantities is None or item not in item_quantities.columns:
                return None
            column = item_quantities[item].reindex([r.date.isoformat() for r in rows], fill_value=0)
            return column.astype(float).tolist()
        return None

    def backtest(
        self,
        pattern: Correlation,
        rows: Sequence[DailyOutcomeRow],
        item_quantities: Optional[pd.DataFrame] = None,
    ) -> Optional[TrialResult]:
        """
        Score one pattern against ``rows``. Returns None (no trial) when
        there are too few matching or baseline days, or no values for the
        pattern's metric.

        Item-quantity patterns read their item's column from
        ``item_quantities`` (one row per ISO date, one column per item).
        """
        if not rows:
            return None
        values = self._metric_values(pattern, rows, item_quantities)
        if values is None:
            return None

        hits = [pattern.matches(r.factors) for r in rows]
        matching = [v for v, hit in zip(values, hits) if hit]
        rest = [v for v, hit in zip(values, hits) if not hit]
        if len(matching) < self.config.validation_min_rows or not rest:
            return None

        rest_mean = float(np.mean(rest))
        if rest_mean <= 0:
            return None

        observed = (float(np.mean(matching)) - rest_mean) / rest_mean * 100.0
        predicted = pattern.outcome.change
        if predicted == 0:
            error = abs(observed) / 100.0
        else:
            error = abs(observed - predicted) / abs(predicted)

        return TrialResult(
            correlation_id=pattern.id,
            observed_change=round(observed, 2),
            predicted_change=predicted,
            error=round(error, 4),
            confirmed=error < self.config.validation_error_tolerance,
            matching_days=len(matching),
            through=max(r.date for r in rows),
        )

    def validate(
        self,
        entity_id: str,
        rows: Sequence[DailyOutcomeRow],
        item_quantities: Optional[pd.DataFrame] = None,
    ) -> ValidationSummary:
        """Backtest every active entity-scoped pattern for ``entity_id``."""
        summary = ValidationSummary(entity_id=entity_id)
        patterns = self.store.list_correlations(
            scope=Scope.ENTITY.value, entity_id=entity_id, active_only=True,
        )

        for pattern in patterns:
            fresh = self.fresh_rows(pattern, entity_id, rows)
            trial = self.backtest(pattern, fresh, item_quantities)
            if trial is None:
                summary.skipped += 1
                continue

            updated, deactivated = self.store.record_validation(
                pattern.id, entity_id, trial.confirmed, trial.through,
            )
            if trial.confirmed:
                summary.confirmed += 1
            else:
                summary.refuted += 1
            if deactivated:
                summary.deactivated += 1
                logger.info(
                    f"Deactivated pattern {pattern.id} ({pattern.type}: {pattern.pattern.when}) "
                    f"for {entity_id}: accuracy {updated.accuracy:.1f}% over {updated.trials} trials"
                )

            summary.trials.append({
                "correlation_id": pattern.id,
                "observed_change": trial.observed_change,
                "predicted_change": trial.predicted_change,
                "confirmed": trial.confirmed,
                "accuracy": updated.accuracy,
                "confidence": updated.confidence,
            })

        logger.info(
            f"Validation for {entity_id}: {summary.confirmed} confirmed, {summary.refuted} refuted, "
            f"{summary.deactivated} deactivated, {summary.skipped} without fresh data"
        )
        return summary

"""
Pulse Service

Entry point that wires the stores and engines together and exposes the
five operations other systems call:

    discover(entity_id, start, end)          -> DiscoveryResult (then roll-up)
    validate(entity_id, as_of)               -> ValidationSummary
    roll_up(entity_id)                       -> shared records written
    predict(entity_id, target_date, factors) -> ForecastResult
    internal_patterns(entity_id, start, end) -> InternalPatternReport

``run_batch`` fans any of these out over many entities with a bounded
thread pool; one entity failing never stops the others.
"""

from __future__ import annotations

import logging
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from datetime import date, timedelta
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence

from .brain.correlation import Correlation, Scope
from .brain.discovery import CorrelationDiscovery, DiscoveryResult
from .brain.internal_patterns import InternalPatternEngine, InternalPatternReport
from .brain.learning_store import CorrelationStore
from .brain.prediction import ForecastResult, PredictionEngine
from .brain.validator import ITEM_METRIC, PatternValidator, ValidationSummary
from .core.config import PulseConfig
from .core.exceptions import EntityNotFound
from .core.factors import ExternalFactorRecord, FactorSource, SqliteFactorSource, TimedFactorSource
from .core.locations import LocationResolver, SqliteLocationResolver
from .core.normalizer import load_daily_rows
from .core.transactions import TransactionStore

logger = logging.getLogger(__name__)


@dataclass
class BatchSummary:
    """Outcome of running one operation over many entities."""

    operation: str
    succeeded: Dict[str, Any] = field(default_factory=dict)
    failed: Dict[str, str] = field(default_factory=dict)
    duration_seconds: float = 0.0

    @property
    def status(self) -> str:
        if not self.failed:
            return "success"
        return "partial" if self.succeeded else "error"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "operation": self.operation,
            "status": self.status,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "duration_seconds": round(self.duration_seconds, 3),
        }


class PulseService:
    """Facade over the transaction store, learning store and engines."""

    def __init__(
        self,
        config: Optional[PulseConfig] = None,
        transactions: Optional[TransactionStore] = None,
        factors: Optional[FactorSource] = None,
        locations: Optional[LocationResolver] = None,
        store: Optional[CorrelationStore] = None,
    ):
        self.config = config or PulseConfig()
        db_path = self.config.db_path
        self.transactions = transactions or TransactionStore(db_path, query_timeout=self.config.query_timeout)
        self.raw_factors = factors or SqliteFactorSource(db_path)
        self.factors = TimedFactorSource(
            self.raw_factors, self.config.factor_timeout, max_workers=self.config.max_workers,
        )
        self.locations = locations or SqliteLocationResolver(db_path)
        self.store = store or CorrelationStore(db_path, self.config)

        self.discovery = CorrelationDiscovery(self.store, self.config)
        self.validator = PatternValidator(self.store, self.config)
        self.internal = InternalPatternEngine(self.transactions, self.config)
        self.prediction = PredictionEngine(
            self.transactions, self.store, self.factors, self.locations, self.config,
        )

    # =========================================================================
    # Operations
    # =========================================================================

    def discover(self, entity_id: str, start: date, end: date) -> DiscoveryResult:
        """Find correlations in [start, end], persist them, then roll up."""
        logger.info(f"Discovering correlations for {entity_id} ({start} to {end})")
        rows = load_daily_rows(
            self.transactions, self.factors, entity_id, start, end,
            rain_threshold_in=self.config.rain_threshold_in,
            sports_radius_mi=self.config.sports_radius_mi,
        )
        items = self.transactions.daily_item_quantities(entity_id, start, end)
        result = self.discovery.discover(entity_id, rows, item_quantities=items)

        if self.locations.resolve(entity_id) is None:
            logger.warning(f"No location for {entity_id}; skipping roll-up")
        else:
            self.roll_up(entity_id)
        return result

    def validate(self, entity_id: str, as_of: Optional[date] = None) -> ValidationSummary:
        """Backtest the entity's active patterns on days they were not discovered or validated on."""
        as_of = as_of or date.today()
        patterns = self.store.list_correlations(
            scope=Scope.ENTITY.value, entity_id=entity_id, active_only=True,
        )
        cutoffs = [self.validator.cutoff(p, entity_id) for p in patterns]
        cutoffs = [c for c in cutoffs if c is not None]
        if not cutoffs:
            return ValidationSummary(entity_id=entity_id, skipped=len(patterns))

        start = min(cutoffs) + timedelta(days=1)
        if start > as_of:
            return ValidationSummary(entity_id=entity_id, skipped=len(patterns))

        rows = load_daily_rows(
            self.transactions, self.factors, entity_id, start, as_of,
            rain_threshold_in=self.config.rain_threshold_in,
            sports_radius_mi=self.config.sports_radius_mi,
        )
        items = [
            p.factor.attributes["item"] for p in patterns
            if p.outcome.metric == ITEM_METRIC and p.factor.attributes.get("item")
        ]
        item_quantities = (
            self.transactions.daily_item_quantities(entity_id, start, as_of, items=items) if items else None
        )
        return self.validator.validate(entity_id, rows, item_quantities)

    def roll_up(self, entity_id: str) -> int:
        location = self.locations.resolve(entity_id)
        if location is None:
            raise EntityNotFound(
                f"No location registered for {entity_id}",
                details={"entity_id": entity_id},
            )
        return self.store.contribute_upward(entity_id, location)

    def predict(
        self,
        entity_id: str,
        target_date: date,
        known_factors: Optional[Sequence[ExternalFactorRecord]] = None,
    ) -> ForecastResult:
        return self.prediction.predict(entity_id, target_date, known_factors)

    def internal_patterns(self, entity_id: str, start: date, end: date) -> InternalPatternReport:
        return self.internal.analyze(entity_id, start, end)

    def correlations(self, entity_id: str, min_confidence: Optional[float] = None) -> List[Correlation]:
        """Everything that would apply to ``entity_id`` right now, most specific first."""
        location = self.locations.resolve(entity_id)
        return self.store.resolve(
            entity_id,
            location.region if location else None,
            location.category if location else None,
            min_confidence=min_confidence,
        )

    # =========================================================================
    # Batch
    # =========================================================================

    def run_batch(
        self,
        operation: str,
        entity_ids: Iterable[str],
        fn: Callable[[str], Any],
        max_workers: Optional[int] = None,
    ) -> BatchSummary:
        """
        Run ``fn(entity_id)`` for each entity on a bounded pool.

        Failures are logged and recorded per entity.
        """
        summary = BatchSummary(operation=operation)
        started = time.monotonic()
        entity_ids = list(entity_ids)
        workers = max_workers or self.config.max_workers

        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix=f"batch-{operation}") as executor:
            futures = {executor.submit(fn, entity_id): entity_id for entity_id in entity_ids}
            for future in as_completed(futures):
                entity_id = futures[future]
                try:
                    result = future.result()
                except Exception as e:
                    logger.error(f"{operation} failed for {entity_id}: {e}")
                    summary.failed[entity_id] = f"{type(e).__name__}: {e}"
                    continue
                summary.succeeded[entity_id] = result.to_dict() if hasattr(result, "to_dict") else result

        summary.duration_seconds = time.monotonic() - started
        logger.info(
            f"Batch {operation}: {len(summary.succeeded)} succeeded, "
            f"{len(summary.failed)} failed in {summary.duration_seconds:.1f}s"
        )
        return summary

    def entity_ids(self) -> List[str]:
        ids = set(self.transactions.entity_ids())
        if isinstance(self.locations, SqliteLocationResolver):
            ids.update(self.locations.entity_ids())
        return sorted(ids)

    def close(self) -> None:
        self.prediction.close()
        self.factors.close()

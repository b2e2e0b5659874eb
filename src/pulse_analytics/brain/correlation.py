"""
Correlation records.

A ``Correlation`` is a learned relationship between an external factor
condition and an outcome, at one of three scopes:

    entity    - learned from one business's data
    regional  - merged from entities in a region (optionally one category)
    global    - merged from every contributing entity

Confidence is always derived from the learning counters (see
``refresh_confidence``); nothing sets it directly.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field, asdict
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from ..core import stats
from ..core.factors import FactorSnapshot


class Scope(str, Enum):
    ENTITY = "entity"
    REGIONAL = "regional"
    GLOBAL = "global"


class CorrelationType(str, Enum):
    WEATHER_SALES = "weather_sales"
    WEATHER_MENU = "weather_menu"
    EVENT_SALES = "event_sales"
    EVENT_TRAFFIC = "event_traffic"
    HOLIDAY_SALES = "holiday_sales"
    SPORTS_SALES = "sports_sales"
    DAY_TYPE = "day_type"
    MULTI_FACTOR = "multi_factor"


REVENUE_METRICS = ("revenue",)


# =============================================================================
# CONDITIONS
# =============================================================================

_OPS = {
    "gt": lambda a, b: a > b,
    "gte": lambda a, b: a >= b,
    "lt": lambda a, b: a < b,
    "lte": lambda a, b: a <= b,
    "eq": lambda a, b: a == b,
    "ne": lambda a, b: a != b,
}


@dataclass(frozen=True)
class FactorCondition:
    """One predicate on a snapshot field, e.g. ``temperature_f gt 85``."""

    field: str
    op: str
    value: Any

    def evaluate(self, snapshot: FactorSnapshot) -> bool:
        actual = snapshot.get(self.field)
        if actual is None:
            return False
        try:
            return bool(_OPS[self.op](actual, self.value))
        except TypeError:
            return False

    def describe(self) -> str:
        symbol = {"gt": ">", "gte": ">=", "lt": "<", "lte": "<=", "eq": "=", "ne": "!="}[self.op]
        return f"{self.field} {symbol} {self.value}"

    def to_list(self) -> list:
        return [self.field, self.op, self.value]


@dataclass
class PatternFactor:
    family: str  # weather, event, holiday, sports, day_type, multi
    conditions: List[FactorCondition] = field(default_factory=list)
    attributes: Dict[str, Any] = field(default_factory=dict)

    def matches(self, snapshot: FactorSnapshot) -> bool:
        return bool(self.conditions) and all(c.evaluate(snapshot) for c in self.conditions)

    def key(self) -> str:
        """Canonical JSON shape used to identify 'the same pattern' across scopes."""
        return json.dumps({
            "family": self.family,
            "conditions": sorted((c.to_list() for c in self.conditions), key=json.dumps),
            "attributes": self.attributes,
        }, sort_keys=True, default=str)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "family": self.family,
            "conditions": [c.to_list() for c in self.conditions],
            "attributes": self.attributes,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PatternFactor":
        return cls(
            family=data["family"],
            conditions=[FactorCondition(*c) for c in data.get("conditions", [])],
            attributes=data.get("attributes", {}),
        )


# =============================================================================
# RECORD
# =============================================================================

@dataclass
class Outcome:
    metric: str = "revenue"
    value: float = 0.0
    baseline: float = 0.0
    change: float = 0.0
    change_kind: str = "percent"  # percent or amount


@dataclass
class Statistics:
    r: float = 0.0
    p_value: float = 1.0
    sample_size: int = 0
    r_squared: float = 0.0
    strength: str = "very_weak"

    @classmethod
    def from_r(cls, r: float, p_value: float, sample_size: int) -> "Statistics":
        return cls(
            r=r,
            p_value=p_value,
            sample_size=sample_size,
            r_squared=r * r,
            strength=stats.classify_strength(r),
        )


@dataclass
class PatternText:
    description: str = ""
    when: str = ""
    then: str = ""
    actionable: bool = True
    recommendation: str = ""


@dataclass
class Correlation:
    type: str
    factor: PatternFactor
    outcome: Outcome = field(default_factory=Outcome)
    statistics: Statistics = field(default_factory=Statistics)
    pattern: PatternText = field(default_factory=PatternText)

    scope: str = Scope.ENTITY.value
    entity_id: Optional[str] = None
    region: Optional[str] = None
    category: Optional[str] = None

    # Learning
    first_discovered: str = field(default_factory=lambda: datetime.now().isoformat())
    last_updated: str = field(default_factory=lambda: datetime.now().isoformat())
    data_points: int = 0
    coverage_start: Optional[str] = None
    coverage_end: Optional[str] = None
    # Last day the creating discovery run saw; rediscovery never moves it
    holdout_from: Optional[str] = None
    entities_contributing: int = 1
    times_validated: int = 0
    times_invalidated: int = 0
    accuracy: float = 0.0

    is_active: bool = True
    confidence: float = 0.0
    times_applied: int = 0
    last_applied: Optional[str] = None

    # Versioning
    id: Optional[int] = None
    version: int = 1
    previous_version_id: Optional[int] = None
    is_head: bool = True
    row_version: int = 0

    @property
    def factor_key(self) -> str:
        return self.factor.key()

    @property
    def trials(self) -> int:
        return self.times_validated + self.times_invalidated

    @property
    def is_revenue_pattern(self) -> bool:
        return self.outcome.metric in REVENUE_METRICS

    def matches(self, snapshot: FactorSnapshot) -> bool:
        return self.factor.matches(snapshot)

    def refresh_confidence(self, trial_saturation: int = 100, sample_saturation: int = 30) -> float:
        self.confidence = stats.confidence(
            self.accuracy,
            self.trials,
            p_value=self.statistics.p_value,
            sample_size=self.statistics.sample_size,
            trial_saturation=trial_saturation,
            sample_saturation=sample_saturation,
        )
        return self.confidence

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["factor"] = self.factor.to_dict()
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Correlation":
        data = dict(data)
        data["factor"] = PatternFactor.from_dict(data["factor"])
        data["outcome"] = Outcome(**data.get("outcome", {}))
        data["statistics"] = Statistics(**data.get("statistics", {}))
        data["pattern"] = PatternText(**data.get("pattern", {}))
        return cls(**data)

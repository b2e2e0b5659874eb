"""
Internal Pattern Engine

Patterns that come from the business's own transactions rather than from
external factors:

    temporal   - strong and weak weekdays, peak hour
    employees  - ticket and revenue per shift, 1-5 rating within the entity
    menu       - items bought together, items that under-attach in their category
    customers  - new vs returning split, rush hours
    velocity   - recent revenue momentum and naive projections

All aggregation happens in SQL (see ``TransactionStore``); this module only
post-processes small grouped frames. Results are regenerated on every run
and never persisted.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, asdict
from datetime import date, datetime, timedelta
from typing import Any, Dict, List, Optional

import pandas as pd

from ..core.config import PulseConfig
from ..core.transactions import TransactionStore

logger = logging.getLogger(__name__)

WEEKDAY_NAMES = ["Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday", "Sunday"]


# =============================================================================
# DATA CLASSES
# =============================================================================

@dataclass
class TemporalPattern:
    kind: str  # 'weekday' or 'peak_hour'
    key: int
    label: str
    avg_revenue: float
    deviation_pct: float
    impact: float
    confidence: float
    recommendation: str


@dataclass
class EmployeePattern:
    employee_id: str
    transactions: int
    revenue: float
    avg_ticket: float
    shifts: int
    revenue_per_shift: float
    rating: Optional[float]
    recommendation: str


@dataclass
class MenuPattern:
    kind: str  # 'combo' or 'low_attach'
    items: List[str]
    category: Optional[str]
    occurrences: int
    attach_rate: Optional[float]
    impact: float
    confidence: float
    recommendation: str


@dataclass
class CustomerPattern:
    kind: str  # 'segment' or 'rush_hour'
    label: str
    occurrences: float
    revenue: float
    impact: float
    recommendation: str


@dataclass
class RevenueVelocity:
    daily: float
    weekly: float
    monthly: float
    growth_pct: float
    trend: str  # accelerating, steady, decelerating
    next_week: float
    next_month: float
    confidence: float
    insights: List[str] = field(default_factory=list)


@dataclass
class InternalPatternReport:
    entity_id: str
    start: date
    end: date
    temporal: List[TemporalPattern] = field(default_factory=list)
    employees: List[EmployeePattern] = field(default_factory=list)
    menu: List[MenuPattern] = field(default_factory=list)
    customers: List[CustomerPattern] = field(default_factory=list)
    velocity: Optional[RevenueVelocity] = None
    generated_at: str = field(default_factory=lambda: datetime.now().isoformat())

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["start"] = self.start.isoformat()
        data["end"] = self.end.isoformat()
        return data


# =============================================================================
# ENGINE
# =============================================================================

class InternalPatternEngine:
    """Derives operational patterns from an entity's transaction aggregates."""

    def __init__(self, transactions: TransactionStore, config: Optional[PulseConfig] = None):
        self.transactions = transactions
        self.config = config or PulseConfig()

    def analyze(self, entity_id: str, start: date, end: date) -> InternalPatternReport:
        report = InternalPatternReport(entity_id=entity_id, start=start, end=end)
        report.temporal = self.temporal_patterns(entity_id, start, end)
        report.employees = self.employee_patterns(entity_id, start, end)
        report.menu = self.menu_patterns(entity_id, start, end)
        report.customers = self.customer_patterns(entity_id, start, end)
        report.velocity = self.revenue_velocity(entity_id, start, end)

        logger.info(
            f"Internal patterns for {entity_id}: {len(report.temporal)} temporal, "
            f"{len(report.employees)} employees, {len(report.menu)} menu, "
            f"{len(report.customers)} customer"
        )
        return report

    # =========================================================================
    # Temporal
    # =========================================================================

    def temporal_patterns(self, entity_id: str, start: date, end: date) -> List[TemporalPattern]:
        patterns: List[TemporalPattern] = []

        by_weekday = self.transactions.weekday_revenue(entity_id, start, end)
        if not by_weekday.empty:
            by_weekday["avg_revenue"] = by_weekday["revenue"] / by_weekday["active_days"]
            mean = float(by_weekday["avg_revenue"].mean())
            threshold = self.config.weekday_deviation_pct
            for rec in by_weekday.to_dict("records"):
                deviation = (rec["avg_revenue"] - mean) / mean * 100.0 if mean else 0.0
                if abs(deviation) <= threshold:
                    continue
                name = WEEKDAY_NAMES[int(rec["weekday"])]
                if deviation > 0:
                    recommendation = f"{name} is a strong day: schedule your best staff and full inventory."
                else:
                    recommendation = f"{name} is slow: try a {name} promotion or trim the schedule."
                patterns.append(TemporalPattern(
                    kind="weekday",
                    key=int(rec["weekday"]),
                    label=name,
                    avg_revenue=round(float(rec["avg_revenue"]), 2),
                    deviation_pct=round(deviation, 1),
                    impact=round(float(rec["avg_revenue"]) - mean, 2),
                    confidence=round(min(float(rec["active_days"]) / 8.0, 1.0) * 100.0, 1),
                    recommendation=recommendation,
                ))

        by_hour = self.transactions.hourly_profile(entity_id, start, end)
        if not by_hour.empty:
            by_hour["avg_revenue"] = by_hour["revenue"] / by_hour["days"]
            peak = by_hour.sort_values(["avg_revenue", "hour"], ascending=[False, True]).iloc[0]
            mean = float(by_hour["avg_revenue"].mean())
            deviation = (float(peak["avg_revenue"]) - mean) / mean * 100.0 if mean else 0.0
            hour = int(peak["hour"])
            patterns.append(TemporalPattern(
                kind="peak_hour",
                key=hour,
                label=f"{hour:02d}:00",
                avg_revenue=round(float(peak["avg_revenue"]), 2),
                deviation_pct=round(deviation, 1),
                impact=round(float(peak["avg_revenue"]) - mean, 2),
                confidence=round(min(float(peak["days"]) / 14.0, 1.0) * 100.0, 1),
                recommendation=f"Peak hour is {hour:02d}:00; make sure staffing peaks with it.",
            ))

        patterns.sort(key=lambda p: (p.kind, -abs(p.deviation_pct), p.key))
        return patterns

    # =========================================================================
    # Employees
    # =========================================================================

    def employee_patterns(self, entity_id: str, start: date, end: date) -> List[EmployeePattern]:
        df = self.transactions.employee_stats(entity_id, start, end)
        if df.empty:
            return []

        min_shifts = self.config.min_employee_shifts
        eligible = df[df["shifts"] >= min_shifts]
        mean_ticket = float(eligible["avg_ticket"].mean()) if not eligible.empty else 0.0
        std_ticket = float(eligible["avg_ticket"].std(ddof=0)) if len(eligible) > 1 else 0.0

        patterns = []
        for rec in df.to_dict("records"):
            shifts = int(rec["shifts"])
            rating: Optional[float] = None
            if shifts >= min_shifts:
                z = (rec["avg_ticket"] - mean_ticket) / std_ticket if std_ticket > 0 else 0.0
                rating = round(max(1.0, min(5.0, 3.0 + z)), 1)

            if rating is None:
                recommendation = f"Not enough shifts yet ({shifts}/{min_shifts}) to rate."
            elif rating >= 4.0:
                recommendation = "Top performer: pair with newer staff on busy shifts."
            elif rating <= 2.0:
                recommendation = "Below-average ticket size: coach on upselling."
            else:
                recommendation = "Performing in line with the team."

            patterns.append(EmployeePattern(
                employee_id=str(rec["employee_id"]),
                transactions=int(rec["transactions"]),
                revenue=round(float(rec["revenue"]), 2),
                avg_ticket=round(float(rec["avg_ticket"]), 2),
                shifts=shifts,
                revenue_per_shift=round(float(rec["revenue"]) / shifts, 2) if shifts else 0.0,
                rating=rating,
                recommendation=recommendation,
            ))
        return patterns

    # =========================================================================
    # Menu
    # =========================================================================

    def menu_patterns(self, entity_id: str, start: date, end: date) -> List[MenuPattern]:
        patterns: List[MenuPattern] = []

        pairs = self.transactions.item_pairs(entity_id, start, end, min_count=self.config.min_pair_count)
        for rec in pairs.head(10).to_dict("records"):
            together = int(rec["together"])
            patterns.append(MenuPattern(
                kind="combo",
                items=[rec["item_a"], rec["item_b"]],
                category=None,
                occurrences=together,
                attach_rate=None,
                impact=float(together),
                confidence=round(min(together / 20.0, 1.0) * 100.0, 1),
                recommendation=f"Bundle {rec['item_a']} with {rec['item_b']} as a combo.",
            ))

        attach = self.transactions.item_attach_rates(entity_id, start, end)
        if not attach.empty:
            attach["category_size"] = attach.groupby("category")["item_name"].transform("count")
            attach["category_median"] = attach.groupby("category")["attach_rate"].transform("median")
            low = attach[
                (attach["category_size"] >= 2)
                & (attach["attach_rate"] < 0.5 * attach["category_median"])
            ].sort_values(["attach_rate", "item_name"])
            for rec in low.to_dict("records"):
                patterns.append(MenuPattern(
                    kind="low_attach",
                    items=[rec["item_name"]],
                    category=rec["category"],
                    occurrences=int(rec["txn_count"]),
                    attach_rate=round(float(rec["attach_rate"]), 4),
                    impact=round(float(rec["category_median"] - rec["attach_rate"]) * 100.0, 2),
                    confidence=round(min(int(rec["txn_count"]) / 10.0, 1.0) * 100.0, 1),
                    recommendation=(
                        f"{rec['item_name']} sells in {rec['attach_rate']:.1%} of tickets vs "
                        f"{rec['category_median']:.1%} for {rec['category']}; feature it or rework it."
                    ),
                ))
        return patterns

    # =========================================================================
    # Customers
    # =========================================================================

    def customer_patterns(self, entity_id: str, start: date, end: date) -> List[CustomerPattern]:
        patterns: List[CustomerPattern] = []

        segments = self.transactions.customer_segments(entity_id, start, end)
        for rec in segments.to_dict("records"):
            if rec["segment"] == "returning":
                recommendation = "Reward returning customers with a loyalty offer."
            else:
                recommendation = "Convert first-time customers with a come-back incentive."
            patterns.append(CustomerPattern(
                kind="segment",
                label=rec["segment"],
                occurrences=float(rec["customers"]),
                revenue=round(float(rec["revenue"]), 2),
                impact=round(float(rec["avg_ticket"]), 2),
                recommendation=recommendation,
            ))

        by_hour = self.transactions.hourly_profile(entity_id, start, end)
        if not by_hour.empty:
            by_hour["per_day"] = by_hour["transactions"] / by_hour["days"]
            average = float(by_hour["per_day"].mean())
            rush = by_hour[by_hour["per_day"] > self.config.rush_hour_multiplier * average]
            for rec in rush.sort_values("hour").to_dict("records"):
                hour = int(rec["hour"])
                patterns.append(CustomerPattern(
                    kind="rush_hour",
                    label=f"{hour:02d}:00",
                    occurrences=round(float(rec["per_day"]), 2),
                    revenue=round(float(rec["revenue"]), 2),
                    impact=round(float(rec["per_day"]) / average, 2) if average else 0.0,
                    recommendation=f"Rush at {hour:02d}:00: add a register and prep ahead.",
                ))
        return patterns

    # =========================================================================
    # Velocity
    # =========================================================================

    def revenue_velocity(self, entity_id: str, start: date, end: date) -> Optional[RevenueVelocity]:
        window_start = max(start, end - timedelta(days=self.config.velocity_window_days - 1))
        days = (end - window_start).days + 1
        if days < 2:
            return None

        daily = self.transactions.daily_aggregates(entity_id, window_start, end)
        if daily.empty:
            return None

        # Halves differ by a day on odd windows, so compare per-day means
        first_days = days // 2
        midpoint = window_start + timedelta(days=first_days)
        dates = pd.to_datetime(daily["date"]).dt.date
        first = float(daily.loc[dates < midpoint, "revenue"].sum()) / first_days
        second = float(daily.loc[dates >= midpoint, "revenue"].sum()) / (days - first_days)
        growth = (second - first) / first if first > 0 else 0.0

        threshold = self.config.velocity_threshold_pct / 100.0
        if growth > threshold:
            trend = "accelerating"
        elif growth < -threshold:
            trend = "decelerating"
        else:
            trend = "steady"

        daily_avg = float(daily["revenue"].sum()) / days
        weekly = daily_avg * 7
        monthly = daily_avg * 30

        insights = [
            f"Current daily velocity: ${daily_avg:,.0f}",
            f"Trend: {trend} ({growth * 100:+.1f}% half over half)",
        ]
        if trend == "accelerating":
            insights.append("Revenue is accelerating; keep the current playbook running.")
        elif trend == "decelerating":
            insights.append("Revenue is slowing; review recent changes to pricing, menu and staffing.")

        return RevenueVelocity(
            daily=round(daily_avg, 2),
            weekly=round(weekly, 2),
            monthly=round(monthly, 2),
            growth_pct=round(growth * 100.0, 2),
            trend=trend,
            next_week=round(weekly * (1 + growth), 2),
            next_month=round(monthly * (1 + growth), 2),
            confidence=round(min(70.0 + abs(growth) * 100.0, 95.0), 1),
            insights=insights,
        )

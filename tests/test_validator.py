"""Tests for the held-out pattern validator."""

from datetime import timedelta

import pandas as pd
import pytest

from pulse_analytics.brain.correlation import (
    Correlation,
    CorrelationType,
    FactorCondition,
    Outcome,
    PatternFactor,
    PatternText,
    Scope,
    Statistics,
)
from pulse_analytics.core.factors import FactorSnapshot, WeatherFactor
from pulse_analytics.core.normalizer import DailyOutcomeRow
from pulse_analytics.core.transactions import TransactionItem

from conftest import HISTORY_START, day_transactions, days, hot_candidate, seed_history


FRESH_START = HISTORY_START + timedelta(days=40)
ITEM = "iced latte"


def fresh_rows(n: int = 20, hot_revenue: float = 1200.0, hot_every: int = 4, start=FRESH_START):
    rows = []
    for offset in range(n):
        day = start + timedelta(days=offset)
        hot = offset % hot_every == 0
        rows.append(DailyOutcomeRow(
            entity_id="s1",
            date=day,
            revenue=hot_revenue if hot else 1000.0,
            transactions=10,
            avg_ticket=(hot_revenue if hot else 1000.0) / 10,
            weekday=day.weekday(),
            factors=FactorSnapshot.from_records([WeatherFactor(temperature_f=92.0 if hot else 72.0)], day=day),
        ))
    return rows


def item_quantities(rows, hot_quantity: int, base_quantity: int = 10) -> pd.DataFrame:
    """Daily quantities of ``ITEM``, ``hot_quantity`` on days above 85F."""
    return pd.DataFrame(
        {ITEM: [hot_quantity if r.factors.temperature_f > 85 else base_quantity for r in rows]},
        index=[r.date.isoformat() for r in rows],
    )


@pytest.fixture
def pattern(service):
    candidate = hot_candidate("s1")
    service.store.upsert_entity_correlation(candidate, days(40))
    return service.store.get(candidate.id)


@pytest.fixture
def menu_pattern(service):
    """Item sales double on hot days."""
    candidate = Correlation(
        type=CorrelationType.WEATHER_MENU.value,
        factor=PatternFactor("weather", [FactorCondition("temperature_f", "gt", 85.0)], attributes={"item": ITEM}),
        entity_id="s1",
        outcome=Outcome(metric="item_quantity", value=20.0, baseline=10.0, change=100.0),
        statistics=Statistics.from_r(0.8, 0.001, 40),
        pattern=PatternText(when="temperature is above 85°F", then=f"{ITEM} +100%"),
    )
    service.store.upsert_entity_correlation(candidate, days(40))
    return service.store.get(candidate.id)


class TestBacktest:
    def test_matching_effect_confirms(self, service, pattern):
        trial = service.validator.backtest(pattern, fresh_rows())
        assert trial.confirmed is True
        assert trial.observed_change == pytest.approx(20.0)
        assert trial.matching_days == 5
        assert trial.through == FRESH_START + timedelta(days=19)

    def test_vanished_effect_refutes(self, service, pattern):
        trial = service.validator.backtest(pattern, fresh_rows(hot_revenue=1000.0))
        assert trial.confirmed is False
        assert trial.error == pytest.approx(1.0)

    def test_too_few_matching_days(self, service, pattern):
        assert service.validator.backtest(pattern, fresh_rows(n=16)) is None

    def test_item_quantity_pattern_confirms(self, service, menu_pattern):
        rows = fresh_rows()
        trial = service.validator.backtest(menu_pattern, rows, item_quantities(rows, hot_quantity=20))
        assert trial.confirmed is True
        assert trial.observed_change == pytest.approx(100.0)

    def test_item_quantity_pattern_refutes(self, service, menu_pattern):
        rows = fresh_rows()
        trial = service.validator.backtest(menu_pattern, rows, item_quantities(rows, hot_quantity=10))
        assert trial.confirmed is False
        assert trial.error == pytest.approx(1.0)

    def test_item_quantity_pattern_needs_its_item(self, service, menu_pattern):
        rows = fresh_rows()
        assert service.validator.backtest(menu_pattern, rows) is None
        other = item_quantities(rows, hot_quantity=20).rename(columns={ITEM: "scone"})
        assert service.validator.backtest(menu_pattern, rows, other) is None


class TestValidate:
    def test_trial_updates_the_record(self, service, pattern):
        summary = service.validator.validate("s1", fresh_rows())

        assert summary.confirmed == 1
        c = service.store.get(pattern.id)
        assert c.times_validated == 1
        assert c.accuracy == 100.0
        assert service.store.validated_through(pattern.id, "s1") == FRESH_START + timedelta(days=19)

    def test_rows_are_never_reused(self, service, pattern):
        rows = fresh_rows()
        service.validator.validate("s1", rows)
        again = service.validator.validate("s1", rows)

        assert again.confirmed == again.refuted == 0
        assert again.skipped == 1
        assert service.store.get(pattern.id).trials == 1

    def test_discovery_window_is_held_out(self, service, pattern):
        summary = service.validator.validate("s1", fresh_rows(start=HISTORY_START))
        assert summary.skipped == 1

    def test_rediscovery_leaves_fresh_days_testable(self, service, pattern):
        # A later discovery run over the fresh days widens coverage only
        service.store.upsert_entity_correlation(hot_candidate("s1"), days(60))
        assert service.store.get(pattern.id).coverage_end == (FRESH_START + timedelta(days=19)).isoformat()

        summary = service.validator.validate("s1", fresh_rows())

        assert summary.confirmed == 1
        assert service.store.validated_through(pattern.id, "s1") == FRESH_START + timedelta(days=19)

    def test_closed_days_are_ignored(self, service, pattern):
        rows = fresh_rows()
        for row in rows[1:4]:
            row.closed = True
            row.revenue = 0.0
        trial = service.validator.backtest(pattern, service.validator.fresh_rows(pattern, "s1", rows))
        assert trial.observed_change == pytest.approx(20.0)

    def test_deactivation_is_reported(self, service, pattern):
        for i in range(20):
            service.store.record_validation(pattern.id, "s1", False, HISTORY_START + timedelta(days=39))

        summary = service.validator.validate("s1", fresh_rows(hot_revenue=1000.0))

        assert summary.refuted == 1
        assert summary.deactivated == 1
        assert service.store.get(pattern.id).is_active is False


def test_service_validate_after_discovery(service, factor_source, hot_day_entity):
    service.discover(hot_day_entity, HISTORY_START, HISTORY_START + timedelta(days=39))

    revenues, temperatures = [], []
    for offset in range(20):
        hot = offset % 4 == 0
        revenues.append(1200.0 if hot else 1000.0)
        temperatures.append(92.0 if hot else 72.0)
    seed_history(service, factor_source, hot_day_entity, revenues, temperatures, start=FRESH_START)

    summary = service.validate(hot_day_entity, as_of=FRESH_START + timedelta(days=19))

    [hot] = [
        c for c in service.store.list_correlations(scope=Scope.ENTITY.value, entity_id=hot_day_entity)
        if c.type == CorrelationType.WEATHER_SALES.value
    ]
    [trial] = [t for t in summary.trials if t["correlation_id"] == hot.id]
    assert trial["confirmed"] is True
    assert hot.times_validated == 1


def test_service_validates_menu_patterns(service, factor_source, menu_pattern):
    transactions = []
    for offset in range(20):
        day = FRESH_START + timedelta(days=offset)
        hot = offset % 4 == 0
        factor_source.add("s1", day, WeatherFactor(temperature_f=92.0 if hot else 72.0))
        latte = TransactionItem(ITEM, "coffee", 2 if hot else 1, 5.0)
        transactions.extend(day_transactions("s1", day, 1000.0, items=[latte]))
    service.transactions.insert(transactions)

    summary = service.validate("s1", as_of=FRESH_START + timedelta(days=19))

    [trial] = summary.trials
    assert trial["correlation_id"] == menu_pattern.id
    assert trial["confirmed"] is True
    assert trial["observed_change"] == pytest.approx(100.0)
    assert service.store.get(menu_pattern.id).times_validated == 1

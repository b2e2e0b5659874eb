"""Tests for transaction-only internal patterns."""

from datetime import datetime, timedelta

import pytest

from pulse_analytics.core.transactions import Transaction, TransactionItem

from conftest import HISTORY_START, day_transactions

FOUR_WEEKS_END = HISTORY_START + timedelta(days=27)


def ticket(entity_id, day, hour, total, n, employee_id=None, customer_id=None, items=()):
    return Transaction(
        id=f"{entity_id}-{day.isoformat()}-{hour}-{n}",
        entity_id=entity_id,
        timestamp=datetime(day.year, day.month, day.day, hour, 5),
        total=total,
        employee_id=employee_id,
        customer_id=customer_id,
        items=list(items),
    )


class TestTemporal:
    def test_strong_saturday_and_peak_hour(self, service):
        txns = []
        for offset in range(28):
            day = HISTORY_START + timedelta(days=offset)
            txns.extend(day_transactions("shop", day, 1300.0 if day.weekday() == 5 else 1000.0))
        service.transactions.insert(txns)

        patterns = service.internal.temporal_patterns("shop", HISTORY_START, FOUR_WEEKS_END)

        weekdays = [p for p in patterns if p.kind == "weekday"]
        assert [p.label for p in weekdays] == ["Saturday"]
        assert weekdays[0].deviation_pct > 10
        assert "strong day" in weekdays[0].recommendation

        [peak] = [p for p in patterns if p.kind == "peak_hour"]
        assert peak.label == "11:00"


class TestEmployees:
    def test_ratings_relative_to_team(self, service):
        txns = []
        for offset in range(10):
            day = HISTORY_START + timedelta(days=offset)
            txns.append(ticket("crew", day, 12, 150.0, 0, employee_id="ava"))
            txns.append(ticket("crew", day, 13, 100.0, 1, employee_id="ben"))
            txns.append(ticket("crew", day, 14, 50.0, 2, employee_id="cy"))
            if offset < 2:
                txns.append(ticket("crew", day, 15, 500.0, 3, employee_id="trainee"))
        service.transactions.insert(txns)

        patterns = {p.employee_id: p for p in service.internal.employee_patterns(
            "crew", HISTORY_START, HISTORY_START + timedelta(days=9),
        )}

        assert patterns["ava"].rating == pytest.approx(4.2)
        assert patterns["ben"].rating == pytest.approx(3.0)
        assert patterns["cy"].rating == pytest.approx(1.8)
        assert patterns["trainee"].rating is None
        assert patterns["ava"].revenue_per_shift == pytest.approx(150.0)
        assert "Top performer" in patterns["ava"].recommendation
        assert "upselling" in patterns["cy"].recommendation


class TestMenu:
    @pytest.fixture
    def bakery(self, service):
        latte = TransactionItem("latte", "coffee", 1, 5.0)
        croissant = TransactionItem("croissant", "bakery", 1, 4.0)
        muffin = TransactionItem("muffin", "bakery", 1, 3.5)
        scone = TransactionItem("scone", "bakery", 1, 3.0)

        txns = []
        for offset in range(10):
            day = HISTORY_START + timedelta(days=offset)
            for k in range(10):
                items = [latte]
                if k < 6:
                    items.append(croissant)
                if k < 5:
                    items.append(muffin)
                if k == 0:
                    items.append(scone)
                txns.append(ticket("bakery", day, 8 + k, sum(i.price for i in items), k, items=items))
        service.transactions.insert(txns)
        return service.internal.menu_patterns("bakery", HISTORY_START, HISTORY_START + timedelta(days=9))

    def test_combos_ranked_by_co_occurrence(self, bakery):
        combos = [p for p in bakery if p.kind == "combo"]
        assert combos[0].items == ["croissant", "latte"]
        assert combos[0].occurrences == 60
        assert len(combos) == 6

    def test_low_attach_within_category(self, bakery):
        [low] = [p for p in bakery if p.kind == "low_attach"]
        assert low.items == ["scone"]
        assert low.category == "bakery"
        assert low.attach_rate == pytest.approx(0.1)


class TestCustomers:
    def test_segments_and_rush_hour(self, service):
        txns = []
        for offset in range(10):
            day = HISTORY_START + timedelta(days=offset)
            for n in range(5):
                txns.append(ticket("corner", day, 12, 20.0, n))
            for hour in (9, 10, 11, 13, 14, 15, 16, 17):
                txns.append(ticket("corner", day, hour, 20.0, 0))
        first = HISTORY_START
        txns.append(ticket("corner", first, 18, 30.0, 0, customer_id="regular"))
        txns.append(ticket("corner", first + timedelta(days=1), 18, 30.0, 0, customer_id="regular"))
        txns.append(ticket("corner", first + timedelta(days=2), 18, 30.0, 0, customer_id="regular"))
        txns.append(ticket("corner", first, 19, 10.0, 0, customer_id="walk-in"))
        service.transactions.insert(txns)

        patterns = service.internal.customer_patterns("corner", HISTORY_START, HISTORY_START + timedelta(days=9))

        segments = {p.label: p for p in patterns if p.kind == "segment"}
        assert segments["returning"].occurrences == 1
        assert segments["returning"].revenue == pytest.approx(90.0)
        assert segments["new"].occurrences == 1

        rush = [p.label for p in patterns if p.kind == "rush_hour"]
        assert rush == ["12:00"]


class TestVelocity:
    def test_growth_is_projected(self, service):
        txns = []
        for offset in range(28):
            day = HISTORY_START + timedelta(days=offset)
            txns.extend(day_transactions("rising", day, 1000.0 if offset < 14 else 1200.0))
        service.transactions.insert(txns)

        velocity = service.internal.revenue_velocity("rising", HISTORY_START, FOUR_WEEKS_END)

        assert velocity.trend == "accelerating"
        assert velocity.growth_pct == pytest.approx(20.0)
        assert velocity.daily == pytest.approx(1100.0)
        assert velocity.next_week == pytest.approx(7700.0 * 1.2)
        assert velocity.confidence == pytest.approx(90.0)

    def test_flat_revenue_is_steady(self, service):
        txns = []
        for offset in range(28):
            txns.extend(day_transactions("flat", HISTORY_START + timedelta(days=offset), 1000.0))
        service.transactions.insert(txns)

        velocity = service.internal.revenue_velocity("flat", HISTORY_START, FOUR_WEEKS_END)
        assert velocity.trend == "steady"
        assert velocity.growth_pct == 0.0

    def test_odd_length_window_with_flat_revenue_is_steady(self, service):
        txns = []
        for offset in range(7):
            txns.extend(day_transactions("week", HISTORY_START + timedelta(days=offset), 1000.0))
        service.transactions.insert(txns)

        velocity = service.internal.revenue_velocity("week", HISTORY_START, HISTORY_START + timedelta(days=6))

        assert velocity.trend == "steady"
        assert velocity.growth_pct == 0.0
        assert velocity.daily == pytest.approx(1000.0)

    def test_no_transactions(self, service):
        assert service.internal.revenue_velocity("ghost", HISTORY_START, FOUR_WEEKS_END) is None


def test_full_report(service, make_history):
    make_history("shop", [1000.0] * 28)
    report = service.internal_patterns("shop", HISTORY_START, FOUR_WEEKS_END).to_dict()

    assert report["entity_id"] == "shop"
    assert report["start"] == HISTORY_START.isoformat()
    assert report["velocity"]["trend"] == "steady"
    assert len(report["employees"]) == 3

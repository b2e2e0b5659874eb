"""Tests for correlation discovery."""

from datetime import date, timedelta

import pandas as pd
import pytest

from pulse_analytics.brain.correlation import CorrelationType, Scope
from pulse_analytics.core.factors import EventFactor, FactorSnapshot, HolidayFactor, WeatherFactor
from pulse_analytics.core.normalizer import DailyOutcomeRow

from conftest import HISTORY_START, HOT_DAY_OFFSETS, hot_day_series, seed_history


def make_row(day: date, revenue: float, records=(), transactions: int = 10) -> DailyOutcomeRow:
    return DailyOutcomeRow(
        entity_id="unit",
        date=day,
        revenue=revenue,
        transactions=transactions,
        avg_ticket=revenue / transactions if transactions else 0.0,
        weekday=day.weekday(),
        factors=FactorSnapshot.from_records(list(records), day=day),
        closed=transactions == 0,
    )


def weather_patterns(service, entity_id):
    return [
        c for c in service.store.list_correlations(scope=Scope.ENTITY.value, entity_id=entity_id)
        if c.type == CorrelationType.WEATHER_SALES.value
    ]


# =============================================================================
# END TO END
# =============================================================================

class TestDiscoverEndToEnd:
    def test_hot_days_produce_one_weather_pattern(self, service, hot_day_entity):
        end = HISTORY_START + timedelta(days=39)
        result = service.discover(hot_day_entity, HISTORY_START, end)

        assert result.open_days == 40
        assert result.created >= 1

        patterns = weather_patterns(service, hot_day_entity)
        assert len(patterns) == 1
        hot = patterns[0]
        assert [(c.field, c.op) for c in hot.factor.conditions] == [("temperature_f", "gt")]
        assert hot.data_points == 40
        assert hot.statistics.strength in ("moderate", "strong")
        assert hot.statistics.p_value < 0.05
        assert hot.outcome.change == pytest.approx(20.0, abs=5.0)
        assert hot.coverage_start == HISTORY_START.isoformat()
        assert hot.coverage_end == end.isoformat()
        assert hot.is_active and hot.is_head and hot.version == 1
        assert "Schedule extra staff" in hot.pattern.recommendation

    def test_rerun_over_same_range_creates_nothing(self, service, hot_day_entity):
        end = HISTORY_START + timedelta(days=39)
        first = service.discover(hot_day_entity, HISTORY_START, end)
        second = service.discover(hot_day_entity, HISTORY_START, end)

        assert second.created == 0
        assert second.updated == first.created + first.updated
        [hot] = weather_patterns(service, hot_day_entity)
        assert hot.data_points == 40

    def test_extending_the_window_adds_only_new_days(self, service, factor_source):
        revenues, temperatures = hot_day_series(days=50)
        seed_history(service, factor_source, "store-long", revenues, temperatures)

        service.discover("store-long", HISTORY_START, HISTORY_START + timedelta(days=39))
        service.discover("store-long", HISTORY_START, HISTORY_START + timedelta(days=49))

        [hot] = weather_patterns(service, "store-long")
        assert hot.data_points == 50
        assert hot.coverage_end == (HISTORY_START + timedelta(days=49)).isoformat()

    def test_days_without_weather_are_not_counted(self, service, factor_source, hot_day_entity):
        tail_start = HISTORY_START + timedelta(days=40)
        seed_history(service, factor_source, hot_day_entity, [1000.0] * 5, start=tail_start)

        result = service.discover(hot_day_entity, HISTORY_START, tail_start + timedelta(days=4))

        assert result.open_days == 45
        [hot] = weather_patterns(service, hot_day_entity)
        assert hot.data_points == 40

    def test_too_few_open_days(self, service, make_history):
        make_history("tiny", [500.0, 0.0, 0.0, 450.0])
        result = service.discover("tiny", HISTORY_START, HISTORY_START + timedelta(days=3))

        assert result.open_days == 2
        assert result.skipped_analyzers == ["all"]
        assert result.created == 0

    def test_history_is_logged(self, service, hot_day_entity):
        end = HISTORY_START + timedelta(days=39)
        service.discover(hot_day_entity, HISTORY_START, end)
        service.discover(hot_day_entity, HISTORY_START, end)

        [hot] = weather_patterns(service, hot_day_entity)
        events = [e["event"] for e in service.store.history(hot.id)]
        assert events == ["created", "updated"]


# =============================================================================
# ANALYZERS
# =============================================================================

class TestAnalyzers:
    def test_rain_lowers_revenue(self, service):
        rows = []
        for offset in range(40):
            day = HISTORY_START + timedelta(days=offset)
            rainy = offset % 4 == 0
            weather = WeatherFactor(temperature_f=65.0, precipitation_in=0.5 if rainy else 0.0)
            rows.append(make_row(day, 700.0 if rainy else 1000.0, [weather]))

        candidates = service.discovery.analyze_weather("unit", rows)

        assert len(candidates) == 1
        rain = candidates[0].correlation
        assert rain.pattern.when == "it is raining"
        assert rain.outcome.change == pytest.approx(-30.0)
        assert rain.statistics.r < 0
        assert "promotion" in rain.pattern.recommendation

    def test_too_few_bucket_days_rejected(self, service):
        rows = []
        for offset in range(40):
            day = HISTORY_START + timedelta(days=offset)
            hot = offset in (3, 13, 23, 33)
            rows.append(make_row(day, 2000.0 if hot else 1000.0, [WeatherFactor(temperature_f=95.0 if hot else 70.0)]))

        assert service.discovery.analyze_weather("unit", rows) == []

    def test_attendance_drives_traffic(self, service):
        rows = []
        for offset in range(20):
            day = HISTORY_START + timedelta(days=offset)
            attendance = 1000 * (offset + 1)
            event = EventFactor("Show", category="concert", attendance=attendance)
            rows.append(make_row(day, 1000.0, [event], transactions=100 + attendance // 100))

        candidates = service.discovery.analyze_events("unit", rows)

        assert len(candidates) == 1
        traffic = candidates[0].correlation
        assert traffic.type == CorrelationType.EVENT_TRAFFIC.value
        assert traffic.outcome.metric == "transactions"
        assert traffic.statistics.r == pytest.approx(1.0)
        [condition] = traffic.factor.conditions
        assert (condition.field, condition.op, condition.value) == ("max_event_attendance", "gte", 10500.0)

    def test_menu_item_follows_heat(self, service):
        rows, quantities = [], {}
        for offset in range(40):
            day = HISTORY_START + timedelta(days=offset)
            hot = offset in HOT_DAY_OFFSETS
            rows.append(make_row(day, 1000.0, [WeatherFactor(temperature_f=92.0 if hot else 70.0)]))
            quantities[day.isoformat()] = {"iced coffee": 30 if hot else 10, "hot cocoa": 12}
        frame = pd.DataFrame.from_dict(quantities, orient="index")

        candidates = service.discovery.analyze_menu_weather("unit", rows, frame)

        assert len(candidates) == 1
        menu = candidates[0].correlation
        assert menu.type == CorrelationType.WEATHER_MENU.value
        assert menu.factor.attributes == {"item": "iced coffee"}
        assert menu.outcome.metric == "item_quantity"
        assert menu.outcome.change == pytest.approx(200.0)
        assert "Increase prep of iced coffee" in menu.pattern.recommendation

    def test_compound_condition_beats_its_parts(self, service):
        rows = []
        for offset in range(60):
            day = HISTORY_START + timedelta(days=offset)
            hot = offset % 5 == 0
            holiday = offset % 10 in (0, 3)
            records = [WeatherFactor(temperature_f=92.0 if hot else 70.0)]
            if holiday:
                records.append(HolidayFactor("Festival", impact="medium"))
            revenue = 1000.0 * (1 + 0.2 * hot + 0.2 * holiday + 0.4 * (hot and holiday))
            rows.append(make_row(day, revenue, records))

        discovery = service.discovery
        singles = discovery.analyze_weather("unit", rows) + discovery.analyze_holidays("unit", rows)
        assert {c.correlation.type for c in singles} == {
            CorrelationType.WEATHER_SALES.value, CorrelationType.HOLIDAY_SALES.value,
        }

        compounds = discovery.analyze_multi_factor("unit", rows, singles)

        assert len(compounds) == 1
        multi = compounds[0].correlation
        assert multi.type == CorrelationType.MULTI_FACTOR.value
        assert {c.field for c in multi.factor.conditions} == {"temperature_f", "is_holiday"}
        assert multi.outcome.change > max(abs(c.correlation.outcome.change) for c in singles)

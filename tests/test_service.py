"""Tests for the service facade, batch runs and scheduled jobs."""

from datetime import timedelta

import numpy as np
import pytest

from pulse_analytics.brain.correlation import CorrelationType, FactorCondition, Scope
from pulse_analytics.core.exceptions import EntityNotFound
from pulse_analytics.jobs import scheduler

from conftest import HISTORY_START, seed_history

DISCOVERY_END = HISTORY_START + timedelta(days=39)
FRESH_START = HISTORY_START + timedelta(days=40)
NIGHTLY_DAYS = 65


def seed_fresh_hot_days(service, factor_source, entity_id):
    revenues = [1200.0 if offset % 4 == 0 else 1000.0 for offset in range(20)]
    temperatures = [92.0 if offset % 4 == 0 else 72.0 for offset in range(20)]
    seed_history(service, factor_source, entity_id, revenues, temperatures, start=FRESH_START)


# =============================================================================
# BATCH
# =============================================================================

class TestRunBatch:
    def test_one_failure_does_not_stop_the_rest(self, service):
        def work(entity_id):
            if entity_id == "boom":
                raise RuntimeError("bad data")
            return {"entity_id": entity_id}

        summary = service.run_batch("demo", ["a", "boom", "b", "c"], work, max_workers=2)

        assert sorted(summary.succeeded) == ["a", "b", "c"]
        assert summary.failed == {"boom": "RuntimeError: bad data"}
        assert summary.status == "partial"
        assert summary.to_dict()["status"] == "partial"

    def test_status_values(self, service):
        def fail(_):
            raise ValueError("nope")

        assert service.run_batch("demo", ["a"], fail).status == "error"
        assert service.run_batch("demo", ["a"], lambda e: e).status == "success"
        assert service.run_batch("demo", [], lambda e: e).status == "success"

    def test_results_are_serialized(self, service, make_history):
        make_history("steady", [1000.0] * 14)
        target = HISTORY_START + timedelta(days=14)
        summary = service.run_batch("predict", ["steady"], lambda e: service.predict(e, target))

        assert summary.succeeded["steady"]["target_date"] == target.isoformat()


class TestService:
    def test_entity_ids_merge_locations_and_transactions(self, service, make_history, register_location):
        make_history("with-sales", [100.0])
        register_location("registered-only")
        assert service.entity_ids() == ["registered-only", "with-sales"]

    def test_roll_up_needs_a_location(self, service):
        with pytest.raises(EntityNotFound):
            service.roll_up("nowhere")

    def test_validate_without_patterns(self, service):
        summary = service.validate("empty", as_of=FRESH_START)
        assert summary.confirmed == summary.refuted == summary.skipped == 0

    def test_learning_loop_shares_with_neighbours(self, service, factor_source, hot_day_entity, register_location):
        register_location(hot_day_entity)
        register_location("neighbour")

        service.discover(hot_day_entity, HISTORY_START, DISCOVERY_END)
        assert service.store.list_correlations(scope=Scope.REGIONAL.value) == []

        seed_fresh_hot_days(service, factor_source, hot_day_entity)
        summary = service.validate(hot_day_entity, as_of=FRESH_START + timedelta(days=19))
        assert summary.confirmed >= 1

        assert service.roll_up(hot_day_entity) >= 3
        shared = service.correlations("neighbour")
        assert shared
        assert {c.scope for c in shared} == {Scope.REGIONAL.value}
        assert shared[0].category == "cafe"

        own = service.correlations(hot_day_entity)
        assert {c.scope for c in own} == {Scope.ENTITY.value}


# =============================================================================
# JOBS
# =============================================================================

class TestJobs:
    def test_discover_job(self, service, hot_day_entity):
        result = scheduler.job_discover(service, days_back=40, entity_ids=[hot_day_entity], end=DISCOVERY_END)

        assert result["status"] == "success"
        assert result["succeeded"][hot_day_entity]["open_days"] == 40

    def test_forecast_job_defaults_to_all_entities(self, service, make_history):
        make_history("a", [1000.0] * 7)
        make_history("b", [500.0] * 7)

        result = scheduler.job_forecast(service, target_date=HISTORY_START + timedelta(days=7))

        assert sorted(result["succeeded"]) == ["a", "b"]

    def test_unknown_job(self, service):
        result = scheduler.run_job(service, "defrost")
        assert result["status"] == "error"
        assert scheduler._failed(result)

    def test_nightly_reports_each_step(self, service, hot_day_entity):
        result = scheduler.run_nightly_jobs(service, days_back=30)
        assert set(result) == {"discover", "validate", "rollup"}
        # No location registered for the entity, so roll-up fails for it alone
        assert result["rollup"]["failed"].keys() == {hot_day_entity}
        assert scheduler._failed(result)

    def test_consecutive_nights_validate_and_share(self, service, factor_source, register_location):
        rng = np.random.default_rng(7)
        noise = rng.normal(0.0, 10.0, NIGHTLY_DAYS)
        revenues, temperatures = [], []
        for offset in range(NIGHTLY_DAYS):
            hot = offset % 5 == 2
            revenues.append(round(1000.0 * (1.2 if hot else 1.0) + float(noise[offset]), 2))
            temperatures.append(92.0 if hot else 72.0)
        seed_history(service, factor_source, "nightly", revenues, temperatures)
        register_location("nightly")

        for night in range(39, NIGHTLY_DAYS):
            end = HISTORY_START + timedelta(days=night)
            assert scheduler.job_discover(service, days_back=40, entity_ids=["nightly"], end=end)["status"] == "success"
            assert scheduler.job_validate(service, entity_ids=["nightly"], as_of=end)["status"] == "success"

        [hot] = [
            c for c in service.store.list_correlations(scope=Scope.ENTITY.value, entity_id="nightly")
            if c.type == CorrelationType.WEATHER_SALES.value
            and c.factor.conditions == [FactorCondition("temperature_f", "gt", 85.0)]
        ]
        assert hot.trials > 0
        assert hot.accuracy >= 70.0
        assert hot.data_points >= 20

        shared = service.store.list_correlations(scope=Scope.REGIONAL.value)
        assert hot.factor_key in {s.factor_key for s in shared}

    def test_cli(self, db_path, monkeypatch, capsys):
        monkeypatch.delenv("PULSE_JOB_TYPE", raising=False)
        code = scheduler.main(["patterns", "--db", db_path, "--entity", "x", "--days-back", "7"])

        assert code == 0
        out = capsys.readouterr().out
        assert "Job: patterns" in out
        assert '"status": "success"' in out

"""
Pulse configuration.

All thresholds used by discovery, validation, roll-up and forecasting live
here. Defaults can be overridden through ``PULSE_*`` environment variables
or by constructing ``PulseConfig`` directly (tests do the latter).
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field, asdict
from typing import Any, Dict


def _env_float(name: str, default: float) -> float:
    value = os.environ.get(name)
    return float(value) if value not in (None, "") else default


def _env_int(name: str, default: int) -> int:
    value = os.environ.get(name)
    return int(value) if value not in (None, "") else default


DEFAULT_MIN_SAMPLES: Dict[str, int] = {
    "weather_sales": 5,
    "weather_menu": 5,
    "day_type": 5,
    "holiday_sales": 5,
    "sports_sales": 6,
    "event_sales": 8,
    "event_traffic": 8,
    "multi_factor": 6,
}


@dataclass
class PulseConfig:
    """Runtime configuration for the pulse engine."""

    db_path: str = field(
        default_factory=lambda: os.environ.get("PULSE_DB_PATH", "pulse_analytics.db")
    )

    # Discovery acceptance gates
    min_abs_r: float = 0.15
    max_p_value: float = 0.05
    min_samples: Dict[str, int] = field(default_factory=lambda: dict(DEFAULT_MIN_SAMPLES))

    # Bucket definitions
    hot_temp_f: float = 85.0
    cold_temp_f: float = 50.0
    rain_threshold_in: float = 0.1
    event_radius_mi: float = 2.0
    sports_radius_mi: float = 30.0
    menu_top_items: int = 5

    # Confidence
    trial_saturation: int = 100
    sample_saturation: int = 30

    # Resolution / roll-up
    resolve_min_confidence: float = 60.0
    rollup_min_accuracy: float = 70.0
    rollup_min_data_points: int = 20

    # Validation
    validation_error_tolerance: float = 0.25
    validation_min_rows: int = 5
    decay_accuracy: float = 40.0
    decay_min_trials: int = 20

    # Internal patterns
    weekday_deviation_pct: float = 10.0
    min_employee_shifts: int = 5
    min_pair_count: int = 5
    rush_hour_multiplier: float = 1.5
    velocity_window_days: int = 28
    velocity_threshold_pct: float = 5.0

    # Forecasting
    baseline_window_days: int = 90
    min_interval_pct: float = 5.0
    max_interval_pct: float = 30.0
    recommendation_change_pct: float = 15.0

    # Concurrency / resources
    max_workers: int = field(default_factory=lambda: _env_int("PULSE_MAX_WORKERS", 4))
    query_timeout: float = field(default_factory=lambda: _env_float("PULSE_QUERY_TIMEOUT", 10.0))
    factor_timeout: float = field(default_factory=lambda: _env_float("PULSE_FACTOR_TIMEOUT", 5.0))
    resolve_timeout: float = field(default_factory=lambda: _env_float("PULSE_RESOLVE_TIMEOUT", 5.0))
    max_write_retries: int = field(default_factory=lambda: _env_int("PULSE_WRITE_RETRIES", 5))

    def min_samples_for(self, correlation_type: str) -> int:
        return self.min_samples.get(correlation_type, 5)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

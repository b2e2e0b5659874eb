"""
Pytest fixtures for Pulse Analytics tests.

Every test gets its own SQLite file under ``tmp_path`` and an in-memory
factor source, so nothing touches a shared database.
"""

from collections.abc import Callable, Generator, Sequence
from datetime import date, datetime, timedelta
from typing import Optional

import numpy as np
import pytest

from pulse_analytics.brain.correlation import (
    Correlation,
    CorrelationType,
    FactorCondition,
    Outcome,
    PatternFactor,
    PatternText,
    Statistics,
)
from pulse_analytics.core.config import PulseConfig
from pulse_analytics.core.factors import InMemoryFactorSource, WeatherFactor
from pulse_analytics.core.locations import Location
from pulse_analytics.core.transactions import Transaction, TransactionItem
from pulse_analytics.service import PulseService

# Monday
HISTORY_START = date(2024, 6, 3)

# Hot days in the 40-day weather history; 2 of the 10 weekend days, same share as overall
HOT_DAY_OFFSETS = (2, 7, 11, 16, 20, 25, 30, 34)


# =============================================================================
# INFRASTRUCTURE FIXTURES
# =============================================================================

@pytest.fixture
def db_path(tmp_path) -> str:
    return str(tmp_path / "pulse_test.db")


@pytest.fixture
def config(db_path: str) -> PulseConfig:
    return PulseConfig(db_path=db_path, max_workers=4)


@pytest.fixture
def factor_source() -> InMemoryFactorSource:
    return InMemoryFactorSource()


@pytest.fixture
def service(config: PulseConfig, factor_source: InMemoryFactorSource) -> Generator[PulseService, None, None]:
    svc = PulseService(config, factors=factor_source)
    yield svc
    svc.close()


# =============================================================================
# DATA BUILDERS
# =============================================================================

def day_transactions(
    entity_id: str,
    day: date,
    revenue: float,
    tickets: int = 10,
    employees: Sequence[str] = ("emp-a", "emp-b", "emp-c"),
    items: Optional[Sequence[TransactionItem]] = None,
) -> list[Transaction]:
    """Split ``revenue`` evenly over ``tickets`` tickets between 11:00 and 20:00."""
    out = []
    for k in range(tickets):
        out.append(Transaction(
            id=f"{entity_id}-{day.isoformat()}-{k}",
            entity_id=entity_id,
            timestamp=datetime(day.year, day.month, day.day, 11 + k % 10, 15),
            total=round(revenue / tickets, 2),
            employee_id=employees[k % len(employees)],
            items=list(items or []),
        ))
    return out


def seed_history(
    service: PulseService,
    factor_source: InMemoryFactorSource,
    entity_id: str,
    revenues: Sequence[float],
    temperatures: Optional[Sequence[float]] = None,
    start: date = HISTORY_START,
) -> None:
    """One entry per day from ``start``; revenue <= 0 means the entity was closed."""
    transactions = []
    for offset, revenue in enumerate(revenues):
        day = start + timedelta(days=offset)
        if temperatures is not None:
            factor_source.add(entity_id, day, WeatherFactor(temperature_f=temperatures[offset]))
        if revenue > 0:
            transactions.extend(day_transactions(entity_id, day, revenue))
    service.transactions.insert(transactions)


def hot_day_series(days: int = 40, base: float = 1000.0, uplift: float = 0.2, seed: int = 42):
    """Revenue and temperatures where hot days (>85F) run ``uplift`` above base."""
    rng = np.random.default_rng(seed)
    noise = rng.normal(0.0, 25.0, days)
    revenues, temperatures = [], []
    for offset in range(days):
        hot = offset in HOT_DAY_OFFSETS
        temperatures.append(90.0 + offset % 3 if hot else 72.0 + offset % 5)
        revenues.append(round(base * (1 + uplift * hot) + float(noise[offset]), 2))
    return revenues, temperatures


@pytest.fixture
def make_history(service: PulseService, factor_source: InMemoryFactorSource) -> Callable[..., None]:
    def _make(entity_id: str, revenues: Sequence[float], temperatures=None, start: date = HISTORY_START):
        seed_history(service, factor_source, entity_id, revenues, temperatures, start)
    return _make


@pytest.fixture
def hot_day_entity(make_history) -> str:
    """Entity with 40 days of weather where hot days lift revenue about 20%."""
    revenues, temperatures = hot_day_series()
    make_history("store-hot", revenues, temperatures)
    return "store-hot"


@pytest.fixture
def register_location(service: PulseService) -> Callable[..., None]:
    def _register(entity_id: str, region: str = "pnw", category: Optional[str] = "cafe"):
        service.locations.register(entity_id, Location(lat=47.6, lon=-122.3, region=region, category=category))
    return _register


def days(n: int, start: date = HISTORY_START) -> list[date]:
    return [start + timedelta(days=i) for i in range(n)]


def hot_candidate(entity_id: str, change: float = 20.0, p_value: float = 0.001, n: int = 40) -> Correlation:
    """Entity-scoped 'temperature above 85F lifts revenue' candidate."""
    return Correlation(
        type=CorrelationType.WEATHER_SALES.value,
        factor=PatternFactor("weather", [FactorCondition("temperature_f", "gt", 85.0)]),
        entity_id=entity_id,
        outcome=Outcome(metric="revenue", value=1000 * (1 + change / 100), baseline=1000.0, change=change),
        statistics=Statistics.from_r(0.8, p_value, n),
        pattern=PatternText(
            description=f"Revenue up {change:.0f}% when temperature is above 85°F",
            when="temperature is above 85°F",
            then=f"revenue {change:+.0f}%",
            recommendation="Schedule extra staff and stock up when temperature is above 85°F.",
        ),
    )

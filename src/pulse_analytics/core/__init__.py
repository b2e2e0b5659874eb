"""
Pulse Core - storage, factors, statistics and configuration.

Everything the learning engines in ``pulse_analytics.brain`` build on.
"""

from .config import PulseConfig
from .factors import (
    DayOfWeekFactor,
    EventFactor,
    FactorSnapshot,
    HolidayFactor,
    InMemoryFactorSource,
    SportsFactor,
    SqliteFactorSource,
    TimeOfDayFactor,
    WeatherFactor,
)
from .locations import Location, SqliteLocationResolver
from .normalizer import DailyOutcomeRow, normalize
from .transactions import Transaction, TransactionItem, TransactionStore

__all__ = [
    "PulseConfig",
    "WeatherFactor",
    "EventFactor",
    "HolidayFactor",
    "SportsFactor",
    "DayOfWeekFactor",
    "TimeOfDayFactor",
    "FactorSnapshot",
    "InMemoryFactorSource",
    "SqliteFactorSource",
    "Location",
    "SqliteLocationResolver",
    "DailyOutcomeRow",
    "normalize",
    "Transaction",
    "TransactionItem",
    "TransactionStore",
]

"""
Pulse Brain - the learning loop.

    discovery         find significant factor/outcome relationships
    learning_store    persist them per entity, roll up to regional/global
    validator         backtest them on held-out days, retire the ones that fail
    prediction        apply them on top of a weekday baseline
    internal_patterns transaction-only staffing, menu and momentum insights
"""

from .correlation import Correlation, CorrelationType, FactorCondition, PatternFactor, Scope
from .discovery import CorrelationDiscovery, DiscoveryResult
from .internal_patterns import InternalPatternEngine, InternalPatternReport
from .learning_store import CorrelationStore
from .prediction import ForecastResult, PredictionEngine
from .validator import PatternValidator, ValidationSummary

__all__ = [
    "Correlation",
    "CorrelationType",
    "FactorCondition",
    "PatternFactor",
    "Scope",
    "CorrelationDiscovery",
    "DiscoveryResult",
    "CorrelationStore",
    "PatternValidator",
    "ValidationSummary",
    "PredictionEngine",
    "ForecastResult",
    "InternalPatternEngine",
    "InternalPatternReport",
]

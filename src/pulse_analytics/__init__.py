"""
Pulse Analytics - Context-aware correlation learning for multi-tenant businesses.

Learns how weather, local events, holidays and sports move each business's
revenue, shares what holds up across similar businesses, and turns it into
forecasts with actionable recommendations.

Usage:
    # Direct Python imports (for same-process integration)
    from pulse_analytics import PulseService, PulseConfig
    service = PulseService(PulseConfig(db_path="pulse.db"))
    result = service.discover("store-42", start, end)
    forecast = service.predict("store-42", tomorrow)

    # HTTP client (for cross-process/service integration)
    from pulse_analytics import PulseClient
    client = PulseClient()
    forecast = client.forecast("store-42", tomorrow)
"""

__version__ = "0.1.0"

from .core.config import PulseConfig
from .core.exceptions import (
    DegenerateInput,
    EntityNotFound,
    InsufficientData,
    PulseError,
    ResolutionExhausted,
    StaleVersionConflict,
    UpstreamUnavailable,
)
from .service import BatchSummary, PulseService
from .client import PulseClient, PulseClientConfig

__all__ = [
    "__version__",
    "PulseConfig",
    "PulseService",
    "BatchSummary",
    "PulseClient",
    "PulseClientConfig",
    # Errors
    "PulseError",
    "InsufficientData",
    "DegenerateInput",
    "UpstreamUnavailable",
    "StaleVersionConflict",
    "ResolutionExhausted",
    "EntityNotFound",
]

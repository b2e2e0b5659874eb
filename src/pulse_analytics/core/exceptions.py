"""
Pulse error taxonomy.

Every failure raised by the engine carries a machine-readable ``code`` and a
``details`` dict so the API layer can serialize it without special cases.
"""

from __future__ import annotations


class PulseError(Exception):
    """Base exception for pulse analytics errors."""

    code = "PULSE_ERROR"

    def __init__(self, message: str, code: str | None = None, details: dict | None = None):
        super().__init__(message)
        self.message = message
        self.code = code or self.code
        self.details = details or {}

    def to_dict(self) -> dict:
        return {"code": self.code, "message": self.message, "details": self.details}


class InsufficientData(PulseError):
    """Too few valid samples for a statistic or an analyzer."""

    code = "INSUFFICIENT_DATA"


class DegenerateInput(PulseError):
    """Input that cannot produce a meaningful statistic."""

    code = "DEGENERATE_INPUT"


class UpstreamUnavailable(PulseError):
    """A factor source, location lookup or aggregation query failed or timed out."""

    code = "UPSTREAM_UNAVAILABLE"


class StaleVersionConflict(PulseError):
    """Optimistic write lost the race more times than the retry budget allows."""

    code = "STALE_VERSION_CONFLICT"


class ResolutionExhausted(PulseError):
    """Pattern resolution could not complete (timeout or store failure)."""

    code = "RESOLUTION_EXHAUSTED"


class EntityNotFound(PulseError):
    """The entity has no registered location."""

    code = "ENTITY_NOT_FOUND"

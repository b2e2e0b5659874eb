"""
Pulse Analytics REST API Server.

FastAPI application that exposes discovery, validation, roll-up,
forecasting and internal pattern reports to other services. Errors raised
by the engine come back as ``{"error": {"code", "message", "details"}}``,
the shape ``PulseClient`` expects.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from datetime import date
from typing import Any, Optional

from fastapi import APIRouter, Depends, FastAPI, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from .. import __version__
from ..core.config import PulseConfig
from ..core.exceptions import (
    DegenerateInput,
    EntityNotFound,
    InsufficientData,
    PulseError,
    StaleVersionConflict,
    UpstreamUnavailable,
)
from ..core.factors import factor_from_dict
from ..service import PulseService

logger = logging.getLogger(__name__)


# =============================================================================
# Pydantic Models for API
# =============================================================================


class HealthResponse(BaseModel):
    """Health check response."""

    status: str
    version: str
    database_path: str


class DiscoverRequest(BaseModel):
    """Request to discover correlations over a date range."""

    start_date: date = Field(..., description="First day to analyze")
    end_date: date = Field(..., description="Last day to analyze")


class DiscoverResponse(BaseModel):
    entity_id: str
    created: int
    updated: int
    open_days: int
    accepted: list[dict[str, Any]]
    skipped_analyzers: list[str]


class ValidateRequest(BaseModel):
    as_of: Optional[date] = Field(None, description="Validate through this day (default today)")


class ValidateResponse(BaseModel):
    entity_id: str
    confirmed: int
    refuted: int
    deactivated: int
    skipped: int
    trials: list[dict[str, Any]]


class RollupResponse(BaseModel):
    entity_id: str
    shared_records: int


class ForecastRequest(BaseModel):
    """Forecast request with optional known factors for the target day."""

    target_date: date
    known_factors: Optional[list[dict[str, Any]]] = Field(
        None, description="Factor records, each with a factor_type (weather, event, ...)"
    )


class ForecastResponse(BaseModel):
    entity_id: str
    target_date: str
    baseline: float
    low: float
    mid: float
    high: float
    confidence: float
    applied_factors: list[dict[str, Any]]
    recommendations: list[str]
    peak_hours: list[int]
    degraded: bool
    generated_at: str


class CorrelationResponse(BaseModel):
    id: int
    scope: str
    type: str
    when: str
    description: str
    change: float
    r: float
    p_value: float
    strength: str
    confidence: float
    accuracy: float
    data_points: int
    entities_contributing: int
    recommendation: str


# =============================================================================
# Dependencies & errors
# =============================================================================


def get_service(request: Request) -> PulseService:
    """Dependency returning the app's service instance."""
    return request.app.state.service


_STATUS_BY_ERROR = (
    (EntityNotFound, 404),
    (UpstreamUnavailable, 503),
    (StaleVersionConflict, 409),
    (InsufficientData, 422),
    (DegenerateInput, 422),
)


async def pulse_error_handler(request: Request, exc: PulseError) -> JSONResponse:
    status = next((code for cls, code in _STATUS_BY_ERROR if isinstance(exc, cls)), 500)
    if status >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.code}: {exc.message}")
    return JSONResponse(status_code=status, content={"error": exc.to_dict()})


# =============================================================================
# Routes
# =============================================================================

health_router = APIRouter(tags=["health"])
entity_router = APIRouter(prefix="/api/v1/entities", tags=["entities"])


@health_router.get("/health", response_model=HealthResponse)
def health(service: PulseService = Depends(get_service)) -> HealthResponse:
    return HealthResponse(
        status="healthy",
        version=__version__,
        database_path=service.config.db_path,
    )


@entity_router.post("/{entity_id}/discover", response_model=DiscoverResponse)
def discover(
    entity_id: str,
    body: DiscoverRequest,
    service: PulseService = Depends(get_service),
) -> DiscoverResponse:
    if body.end_date < body.start_date:
        raise DegenerateInput(
            "end_date is before start_date",
            details={"start_date": body.start_date.isoformat(), "end_date": body.end_date.isoformat()},
        )
    result = service.discover(entity_id, body.start_date, body.end_date)
    return DiscoverResponse(**result.to_dict())


@entity_router.post("/{entity_id}/validate", response_model=ValidateResponse)
def validate(
    entity_id: str,
    body: ValidateRequest,
    service: PulseService = Depends(get_service),
) -> ValidateResponse:
    summary = service.validate(entity_id, body.as_of)
    return ValidateResponse(**summary.to_dict())


@entity_router.post("/{entity_id}/rollup", response_model=RollupResponse)
def rollup(entity_id: str, service: PulseService = Depends(get_service)) -> RollupResponse:
    written = service.roll_up(entity_id)
    return RollupResponse(entity_id=entity_id, shared_records=written)


@entity_router.get("/{entity_id}/forecast", response_model=ForecastResponse)
def forecast(
    entity_id: str,
    target_date: date = Query(..., description="Day to forecast (YYYY-MM-DD)"),
    service: PulseService = Depends(get_service),
) -> ForecastResponse:
    result = service.predict(entity_id, target_date)
    return ForecastResponse(**result.to_dict())


@entity_router.post("/{entity_id}/forecast", response_model=ForecastResponse)
def forecast_with_factors(
    entity_id: str,
    body: ForecastRequest,
    service: PulseService = Depends(get_service),
) -> ForecastResponse:
    known = None
    if body.known_factors is not None:
        known = [factor_from_dict(f) for f in body.known_factors]
    result = service.predict(entity_id, body.target_date, known)
    return ForecastResponse(**result.to_dict())


@entity_router.get("/{entity_id}/patterns")
def internal_patterns(
    entity_id: str,
    start_date: date = Query(...),
    end_date: date = Query(...),
    service: PulseService = Depends(get_service),
) -> dict[str, Any]:
    return service.internal_patterns(entity_id, start_date, end_date).to_dict()


@entity_router.get("/{entity_id}/correlations", response_model=list[CorrelationResponse])
def correlations(
    entity_id: str,
    min_confidence: Optional[float] = Query(None, ge=0, le=100),
    service: PulseService = Depends(get_service),
) -> list[CorrelationResponse]:
    return [
        CorrelationResponse(
            id=c.id,
            scope=c.scope,
            type=c.type,
            when=c.pattern.when,
            description=c.pattern.description,
            change=c.outcome.change,
            r=c.statistics.r,
            p_value=c.statistics.p_value,
            strength=c.statistics.strength,
            confidence=c.confidence,
            accuracy=c.accuracy,
            data_points=c.data_points,
            entities_contributing=c.entities_contributing,
            recommendation=c.pattern.recommendation,
        )
        for c in service.correlations(entity_id, min_confidence=min_confidence)
    ]


# =============================================================================
# Application Factory
# =============================================================================


def create_app(service: Optional[PulseService] = None, db_path: Optional[str] = None) -> FastAPI:
    """Create the FastAPI application.

    Args:
        service: Pre-built service (tests pass one wired to a temp database).
        db_path: Optional database path override when building the service here.

    Returns:
        Configured FastAPI application.
    """
    if service is None:
        config = PulseConfig()
        if db_path:
            config.db_path = db_path
        service = PulseService(config)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info(f"Pulse Analytics API starting up with database: {service.config.db_path}")
        yield
        logger.info("Pulse Analytics API shutting down")
        service.close()

    app = FastAPI(
        title="Pulse Analytics API",
        description="Context-aware correlation discovery and revenue forecasting",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.service = service

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_exception_handler(PulseError, pulse_error_handler)

    app.include_router(health_router)
    app.include_router(entity_router)

    return app

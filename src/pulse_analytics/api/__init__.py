"""
FastAPI server for Pulse Analytics.

Run with: uvicorn pulse_analytics.api:create_app --factory --port 8002
"""

from .server import create_app

__all__ = ["create_app"]

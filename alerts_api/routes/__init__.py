"""
Alerts API Routes Package

This package contains modular API route handlers for different endpoints.
"""

from alerts_api.routes.alerts import router as alerts_router
from alerts_api.routes.health import router as health_router

__all__ = ['alerts_router', 'health_router']

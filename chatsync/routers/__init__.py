"""Routers exposed by the backend app."""
from .functions import router as functions_router
from .realtime import router as realtime_router

__all__ = ["functions_router", "realtime_router"]

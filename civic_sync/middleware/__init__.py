"""Middleware package for FastAPI application."""

from civic_sync.middleware.correlation import CorrelationMiddleware

__all__ = ["CorrelationMiddleware"]

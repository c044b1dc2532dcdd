"""API Services Package."""

from api.services.dependencies import get_caller, get_service

__all__ = [
    "get_caller",
    "get_service",
]

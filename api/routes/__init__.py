"""API Routes Package."""

from api.routes import admin, health, resolution

__all__ = [
    "admin",
    "health",
    "resolution",
]

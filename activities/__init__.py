"""Activity definitions module."""

from activities.refresh import (
    refresh_value_store,
    RefreshStoreInput,
    RefreshStoreOutput,
)

__all__ = [
    "refresh_value_store",
    "RefreshStoreInput",
    "RefreshStoreOutput",
]

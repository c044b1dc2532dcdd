"""Value Resolver Errors.

Error taxonomy shared by the registry, refresh pipeline, resolution engine
and learning ledger:
- ConfigError: invalid/missing store configuration or an invalid scope
- SourceQueryError: the external source query failed during refresh
- NotFoundError: unknown store, row or entity type
- RefreshInProgressError: a refresh for the same store is already running
- PromotionRaceError: internal, a concurrent promotion already happened
- ResolutionTimeoutError: a call exceeded its configured duration

Timeouts are deliberately not ValueResolverError subclasses so callers can
tell a slow source or candidate set apart from an application error.
"""

from typing import Any, Dict, Optional


class ValueResolverError(Exception):
    """Base class for application errors."""

    kind = "value_resolver_error"

    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.message = message
        self.context = {k: v for k, v in context.items() if v is not None}

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"error": self.kind, "message": self.message}
        data.update(self.context)
        return data


class ConfigError(ValueResolverError):
    """Invalid or missing value store configuration, or an invalid scope."""

    kind = "config_error"


class SourceQueryError(ValueResolverError):
    """The store's source query failed; the previous generation is untouched."""

    kind = "source_query_error"

    def __init__(self, message: str, store_name: str, cause: Optional[BaseException] = None):
        super().__init__(
            message,
            store_name=store_name,
            cause=f"{type(cause).__name__}: {cause}" if cause else None,
        )
        self.store_name = store_name
        self.__cause__ = cause


class NotFoundError(ValueResolverError):
    """Unknown store name, row or entity type."""

    kind = "not_found"


class RefreshInProgressError(ValueResolverError):
    """Another refresh of the same store has not finished yet."""

    kind = "refresh_in_progress"


class PromotionRaceError(ValueResolverError):
    """A concurrent confirmation already promoted the term. Never surfaced."""

    kind = "promotion_race"


class ResolutionTimeoutError(TimeoutError):
    """A resolution or refresh call exceeded its configured duration.

    Attributes:
        store_name: Store being worked on when the deadline passed (if known)
        phase: "prefilter", "scoring" or "refresh"
        timeout_s: The configured limit in seconds
    """

    kind = "timeout"

    def __init__(self, phase: str, timeout_s: float, store_name: Optional[str] = None):
        where = f" on store '{store_name}'" if store_name else ""
        super().__init__(f"Timed out after {timeout_s:g}s during {phase}{where}")
        self.phase = phase
        self.timeout_s = timeout_s
        self.store_name = store_name

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "error": self.kind,
            "message": str(self),
            "phase": self.phase,
            "timeout_s": self.timeout_s,
        }
        if self.store_name:
            data["store_name"] = self.store_name
        return data

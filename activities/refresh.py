"""Refresh activities for the value resolver.

Activities run by the Temporal worker:
- refresh_value_store: reload one value store from its source
"""

import asyncio
from dataclasses import dataclass
from typing import Optional

from temporalio import activity

from core.observability.logging import get_logger, with_correlation
from value_resolver.service import ValueResolverService, build_service


logger = get_logger(__name__)

_service: Optional[ValueResolverService] = None


def get_service() -> ValueResolverService:
    """Service shared by every activity run in this worker process."""
    global _service
    if _service is None:
        _service = build_service()
    return _service


def set_service(service: Optional[ValueResolverService]) -> None:
    """Replace the worker's service (tests and embedded workers)."""
    global _service
    _service = service


@dataclass
class RefreshStoreInput:
    """Input for refresh_value_store activity.

    Attributes:
        store_name: Value store to refresh
    """
    store_name: str


@dataclass
class RefreshStoreOutput:
    """Output from refresh_value_store activity."""
    store_name: str
    generation: int
    rows_loaded: int
    search_terms_created: int
    orphans_removed: int
    duration_ms: int


@activity.defn
async def refresh_value_store(input: RefreshStoreInput) -> RefreshStoreOutput:
    """Refresh a value store.

    ConfigError and NotFoundError are not worth retrying; SourceQueryError,
    RefreshInProgressError and timeouts are.
    """
    info = activity.info()
    with with_correlation(workflow_id=info.workflow_id, store_name=input.store_name):
        logger.info("Refresh activity started", extra_fields={"attempt": info.attempt})
        report = await asyncio.to_thread(get_service().pipeline.refresh, input.store_name)

    return RefreshStoreOutput(
        store_name=report.store_name,
        generation=report.generation,
        rows_loaded=report.rows_loaded,
        search_terms_created=report.search_terms_created,
        orphans_removed=report.orphans_removed,
        duration_ms=report.duration_ms,
    )

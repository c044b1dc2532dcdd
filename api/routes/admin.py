"""Value store administration endpoints.

Create, inspect, refresh and delete value stores.
"""

import asyncio
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel

from api.services.dependencies import get_service
from value_resolver.models import ConfirmationRecord, RefreshReport, StoreStats, ValueStoreConfig
from value_resolver.service import ValueResolverService


router = APIRouter()


class ValueStoreResponse(BaseModel):
    """A store configuration with its current state."""
    config: ValueStoreConfig
    stats: StoreStats


class ConfirmationResponse(BaseModel):
    """A confirmation record as returned by the API."""
    term: str
    row_id: int
    scope: str
    confirmed_by: str
    confirmed_at: Optional[str]


@router.put("/value-stores", response_model=ValueStoreConfig)
async def upsert_value_store(
    config: ValueStoreConfig,
    service: ValueResolverService = Depends(get_service),
) -> ValueStoreConfig:
    """Create or update a value store configuration.

    The source connection must be registered with the service.
    """
    service.sources.get(config.source_connection)
    return await asyncio.to_thread(service.registry.upsert, config)


@router.get("/value-stores", response_model=List[ValueStoreConfig])
async def list_value_stores(
    domain: Optional[str] = Query(None, description="Only stores of this domain"),
    service: ValueResolverService = Depends(get_service),
) -> List[ValueStoreConfig]:
    """List value store configurations."""
    return await asyncio.to_thread(service.registry.list, domain)


@router.get("/value-stores/{name}", response_model=ValueStoreResponse)
async def get_value_store(
    name: str,
    service: ValueResolverService = Depends(get_service),
) -> ValueStoreResponse:
    """A store's configuration and row/term counts."""
    config = await asyncio.to_thread(service.registry.require, name)
    stats = await asyncio.to_thread(service.pipeline.stats, name)
    return ValueStoreResponse(config=config, stats=stats)


@router.delete("/value-stores/{name}")
async def delete_value_store(
    name: str,
    service: ValueResolverService = Depends(get_service),
) -> Dict[str, Any]:
    """Delete a store configuration and all of its data (409 while refreshing)."""
    await asyncio.to_thread(service.pipeline.delete, name)
    return {"status": "deleted", "name": name}


@router.post("/value-stores/{name}/refresh", response_model=RefreshReport)
async def refresh_value_store(
    name: str,
    service: ValueResolverService = Depends(get_service),
) -> RefreshReport:
    """Reload a store from its source.

    Returns 409 while another refresh of the same store is running.
    """
    return await asyncio.to_thread(service.pipeline.refresh, name)


@router.get("/value-stores/{name}/confirmations", response_model=List[ConfirmationResponse])
async def list_store_confirmations(
    name: str,
    term: Optional[str] = Query(None, description="Only confirmations of this term"),
    service: ValueResolverService = Depends(get_service),
) -> List[ConfirmationResponse]:
    """Confirmation records of a store."""
    records: List[ConfirmationRecord] = await asyncio.to_thread(
        service.ledger.list_confirmations, name, term
    )
    return [
        ConfirmationResponse(
            term=r.term,
            row_id=r.row_id,
            scope=str(r.scope),
            confirmed_by=r.confirmed_by,
            confirmed_at=r.confirmed_at.isoformat() if r.confirmed_at else None,
        )
        for r in records
    ]

"""Resolution and confirmation endpoints."""

import asyncio
from typing import Any, Dict

from fastapi import APIRouter, Depends, Query

from api.services.dependencies import get_caller, get_service
from value_resolver.models import (
    CallerIdentity,
    ConfirmRequest,
    ConfirmResponse,
    ResolveRequest,
    ResolveResponse,
)
from value_resolver.service import ValueResolverService


router = APIRouter()


@router.post("/resolve-values", response_model=ResolveResponse)
async def resolve_values(
    request: ResolveRequest,
    caller: CallerIdentity = Depends(get_caller),
    service: ValueResolverService = Depends(get_service),
) -> ResolveResponse:
    """Resolve up to 1000 terms in one call.

    Candidates are ranked relative to the caller's identity: the caller's
    own terms first, then its teams', then system, then primary.
    """
    return await service.engine.resolve(request, caller)


@router.post("/confirm-match", response_model=ConfirmResponse)
async def confirm_match(
    request: ConfirmRequest,
    caller: CallerIdentity = Depends(get_caller),
    service: ValueResolverService = Depends(get_service),
) -> ConfirmResponse:
    """Record that a term means a specific row. Re-confirming is a no-op."""
    return await asyncio.to_thread(
        service.ledger.confirm,
        request.term,
        request.value_row_id,
        request.store_name,
        caller,
        request.scope,
    )


@router.get("/promotion-status")
async def promotion_status(
    store_name: str = Query(...),
    term: str = Query(...),
    row_id: int = Query(...),
    service: ValueResolverService = Depends(get_service),
) -> Dict[str, Any]:
    """Confirmer count and promotion state of a (term, row) pair."""
    return await asyncio.to_thread(service.ledger.promotion_status, store_name, term, row_id)

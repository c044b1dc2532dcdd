"""Request dependencies shared by the routers.

The service container lives on app.state; routes receive it (and the
caller's identity) through FastAPI dependencies.
"""

from fastapi import Depends, Request

from value_resolver.models import CallerIdentity
from value_resolver.service import ValueResolverService


def get_service(request: Request) -> ValueResolverService:
    """The ValueResolverService attached to the running app."""
    service = getattr(request.app.state, "service", None)
    if service is None:
        raise RuntimeError("Value resolver service is not initialized")
    return service


def get_caller(
    request: Request,
    service: ValueResolverService = Depends(get_service),
) -> CallerIdentity:
    """Parse the caller identity header (e.g. "user:bob,team:finance").

    A malformed header raises ConfigError, reported as 400.
    """
    return CallerIdentity.from_header(request.headers.get(service.settings.identity_header))

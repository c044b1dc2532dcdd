"""Shared pytest fixtures: a temporary database and a seeded service."""

import pytest

from value_resolver.config import ResolverSettings
from value_resolver.models import ValueStoreConfig
from value_resolver.service import build_service
from value_resolver.sources import SourceConnectionRegistry, StaticSourceConnection


VENDOR_QUERY = "SELECT supplier_id, supplier_name FROM suppliers"

VENDOR_ROWS = [
    {"supplier_id": "V001", "supplier_name": "NIKE, INC."},
    {"supplier_id": "V002", "supplier_name": "ADIDAS AG"},
    {"supplier_id": "V003", "supplier_name": "MORGAN STANLEY"},
    {"supplier_id": "V004", "supplier_name": "MICROSOFT CORPORATION"},
    {"supplier_id": "V005", "supplier_name": "BANK OF AMERICA"},
]


@pytest.fixture
def settings(tmp_path):
    return ResolverSettings(
        db_path=tmp_path / "value_resolver.db",
        promotion_threshold=3,
        resolve_timeout_s=10.0,
        refresh_timeout_s=10.0,
    )


@pytest.fixture
def erp_rows():
    """Mutable rows served by the "erp" static source, keyed by query."""
    return {VENDOR_QUERY: [dict(r) for r in VENDOR_ROWS]}


@pytest.fixture
def service(settings, erp_rows):
    sources = SourceConnectionRegistry({
        "erp": StaticSourceConnection("erp", lambda query: erp_rows[query]),
    })
    return build_service(settings, sources=sources)


@pytest.fixture
def vendor_config():
    return ValueStoreConfig(
        name="vendors",
        description="Approved suppliers",
        domain="procurement",
        entity_types=["Vendor"],
        source_connection="erp",
        source_query=VENDOR_QUERY,
        match_columns=["supplier_name"],
    )


@pytest.fixture
def vendors(service, vendor_config):
    """Service with the vendors store registered and refreshed once."""
    service.registry.upsert(vendor_config)
    service.pipeline.refresh("vendors")
    return service

"""Service wiring.

Builds the registry, source connections, refresh pipeline, resolution
engine and learning ledger from one ResolverSettings, so the API, the
Temporal activities and the CLI all share the same construction.
"""

from dataclasses import dataclass
from typing import Optional

from value_resolver import db
from value_resolver.config import ResolverSettings, load_settings
from value_resolver.engine import ResolutionEngine
from value_resolver.ledger import LearningLedger
from value_resolver.refresh import RefreshPipeline
from value_resolver.registry import SqliteValueStoreRegistry, ValueStoreRegistry
from value_resolver.scoring import ScoringKernel
from value_resolver.sources import SourceConnectionRegistry


@dataclass
class ValueResolverService:
    """The components of a running value resolver."""
    settings: ResolverSettings
    registry: ValueStoreRegistry
    sources: SourceConnectionRegistry
    pipeline: RefreshPipeline
    engine: ResolutionEngine
    ledger: LearningLedger


def build_service(
    settings: Optional[ResolverSettings] = None,
    sources: Optional[SourceConnectionRegistry] = None,
    kernel: Optional[ScoringKernel] = None,
) -> ValueResolverService:
    """Create every component and make sure the database schema exists.

    Args:
        settings: Settings to use (load_settings() when omitted)
        sources: Source connections (built from settings.sources when omitted)
        kernel: Scoring kernel (default weights when omitted)
    """
    settings = settings or load_settings()
    db.init_value_resolver_db(settings.db_path)

    registry = SqliteValueStoreRegistry(settings.db_path)
    if sources is None:
        sources = SourceConnectionRegistry.from_urls(settings.sources)

    return ValueResolverService(
        settings=settings,
        registry=registry,
        sources=sources,
        pipeline=RefreshPipeline(
            registry,
            sources,
            db_path=settings.db_path,
            timeout_s=settings.refresh_timeout_s,
        ),
        engine=ResolutionEngine(
            registry,
            db_path=settings.db_path,
            kernel=kernel,
            max_prefilter_terms=settings.max_prefilter_terms,
            timeout_s=settings.resolve_timeout_s,
        ),
        ledger=LearningLedger(
            registry,
            db_path=settings.db_path,
            promotion_threshold=settings.promotion_threshold,
        ),
    )

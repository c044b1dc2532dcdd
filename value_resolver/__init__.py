"""Value Resolver Package.

Resolves free-text terms ("Nike", "MS", "Adids") to canonical rows held in
refreshable value stores, and learns from human confirmations.

Components:
- ScoringKernel: six-strategy fuzzy scoring of (candidate, input) pairs
- RefreshPipeline: loads a store from its source with a generation swap
- ResolutionEngine: bulk, scope-aware resolution with a key prefilter
- LearningLedger: scoped confirmations and consensus promotion
"""

from value_resolver.config import ResolverSettings, load_settings
from value_resolver.engine import ResolutionEngine, explain_candidate
from value_resolver.errors import (
    ConfigError,
    NotFoundError,
    PromotionRaceError,
    RefreshInProgressError,
    ResolutionTimeoutError,
    SourceQueryError,
    ValueResolverError,
)
from value_resolver.ledger import LearningLedger
from value_resolver.models import (
    CallerIdentity,
    Candidate,
    ConfirmRequest,
    RefreshReport,
    ResolveQuery,
    ResolveRequest,
    ResolveResponse,
    Scope,
    ScopeKind,
    StrategyName,
    ValueStoreConfig,
)
from value_resolver.refresh import RefreshPipeline
from value_resolver.registry import SqliteValueStoreRegistry, ValueStoreRegistry
from value_resolver.scoring import ScoreResult, ScoringKernel, score
from value_resolver.service import ValueResolverService, build_service
from value_resolver.sources import (
    SourceConnection,
    SourceConnectionRegistry,
    SqliteSourceConnection,
    StaticSourceConnection,
)

__all__ = [
    # Settings
    "ResolverSettings",
    "load_settings",
    # Components
    "ScoringKernel",
    "ScoreResult",
    "score",
    "RefreshPipeline",
    "ResolutionEngine",
    "explain_candidate",
    "LearningLedger",
    "ValueStoreRegistry",
    "SqliteValueStoreRegistry",
    "SourceConnection",
    "SourceConnectionRegistry",
    "SqliteSourceConnection",
    "StaticSourceConnection",
    "ValueResolverService",
    "build_service",
    # Models
    "CallerIdentity",
    "Candidate",
    "ConfirmRequest",
    "RefreshReport",
    "ResolveQuery",
    "ResolveRequest",
    "ResolveResponse",
    "Scope",
    "ScopeKind",
    "StrategyName",
    "ValueStoreConfig",
    # Errors
    "ValueResolverError",
    "ConfigError",
    "NotFoundError",
    "PromotionRaceError",
    "RefreshInProgressError",
    "ResolutionTimeoutError",
    "SourceQueryError",
]

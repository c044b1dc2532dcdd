"""Value Resolver Data Models.

This module defines the models used across value resolution:
- Scope / CallerIdentity: visibility tags and the caller's identity set
- ValueStoreConfig: configuration of one refreshable value store
- ValueRow / SearchTerm / ConfirmationRecord: stored data
- RefreshReport: outcome of a refresh
- ResolveRequest / ResolveResponse / Candidate: bulk resolution shapes
- ConfirmRequest / ConfirmResponse: learning ledger shapes
- ScoringConfig: weights and thresholds for the scoring kernel
"""

import re
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator

from value_resolver.errors import ConfigError


# =============================================================================
# Scopes and Identity
# =============================================================================

class ScopeKind(str, Enum):
    """Kinds of scope a search term or confirmation can carry."""
    PRIMARY = "primary"  # From refresh; read-only to callers
    SYSTEM = "system"    # Consensus-promoted; written only by promotion
    TEAM = "team"        # team:<team-id>
    USER = "user"        # user:<identity>


# Higher wins when ranking candidates for a caller
SCOPE_RANK = {
    ScopeKind.USER: 3,
    ScopeKind.TEAM: 2,
    ScopeKind.SYSTEM: 1,
    ScopeKind.PRIMARY: 0,
}


@dataclass(frozen=True)
class Scope:
    """A parsed scope tag.

    `ident` is set for team and user scopes and None otherwise.
    """
    kind: ScopeKind
    ident: Optional[str] = None

    @classmethod
    def parse(cls, text: str) -> "Scope":
        """Parse "primary", "system", "team:<id>" or "user:<id>".

        Raises:
            ConfigError: If the string is not a valid scope
        """
        if text is None:
            raise ConfigError("Scope is required")
        raw = text.strip()
        lowered = raw.lower()
        if lowered == ScopeKind.PRIMARY.value:
            return PRIMARY
        if lowered == ScopeKind.SYSTEM.value:
            return SYSTEM

        kind_text, sep, ident = raw.partition(":")
        ident = ident.strip()
        if not sep or not ident:
            raise ConfigError(
                f"Invalid scope '{text}'. Expected primary, system, team:<id> or user:<id>",
                scope=text,
            )
        try:
            kind = ScopeKind(kind_text.strip().lower())
        except ValueError:
            raise ConfigError(f"Unknown scope kind in '{text}'", scope=text)
        if kind not in (ScopeKind.TEAM, ScopeKind.USER):
            raise ConfigError(f"Scope kind '{kind.value}' takes no identifier", scope=text)
        return cls(kind=kind, ident=ident)

    @property
    def is_learned(self) -> bool:
        return self.kind is not ScopeKind.PRIMARY

    def __str__(self) -> str:
        if self.ident is None:
            return self.kind.value
        return f"{self.kind.value}:{self.ident}"


PRIMARY = Scope(ScopeKind.PRIMARY)
SYSTEM = Scope(ScopeKind.SYSTEM)


@dataclass(frozen=True)
class CallerIdentity:
    """The identity set presented with a request.

    Parsed from a header such as "user:bob,team:finance,team:sales".
    """
    user: Optional[str] = None
    teams: Tuple[str, ...] = field(default_factory=tuple)

    @classmethod
    def from_header(cls, value: Optional[str]) -> "CallerIdentity":
        """Parse the identity header.

        Raises:
            ConfigError: On malformed entries, more than one user, or
                primary/system entries (callers cannot claim those)
        """
        if not value or not value.strip():
            return cls()

        user = None
        teams: List[str] = []
        for part in value.split(","):
            if not part.strip():
                continue
            scope = Scope.parse(part)
            if scope.kind is ScopeKind.USER:
                if user is not None and user != scope.ident:
                    raise ConfigError("Identity header lists more than one user", identity=value)
                user = scope.ident
            elif scope.kind is ScopeKind.TEAM:
                if scope.ident not in teams:
                    teams.append(scope.ident)
            else:
                raise ConfigError(
                    f"Identity header cannot contain '{scope}'", identity=value
                )
        return cls(user=user, teams=tuple(teams))

    @property
    def user_scope(self) -> Optional[Scope]:
        if self.user is None:
            return None
        return Scope(ScopeKind.USER, self.user)

    def visible_scopes(self) -> List[Scope]:
        """Every scope whose terms this caller may see."""
        scopes = [PRIMARY, SYSTEM]
        scopes.extend(Scope(ScopeKind.TEAM, t) for t in self.teams)
        if self.user is not None:
            scopes.append(Scope(ScopeKind.USER, self.user))
        return scopes

    def scope_priority(self, scope: Scope) -> Optional[int]:
        """Rank of a scope for this caller, or None if it is not visible."""
        if scope.kind is ScopeKind.USER:
            return SCOPE_RANK[ScopeKind.USER] if scope.ident == self.user else None
        if scope.kind is ScopeKind.TEAM:
            return SCOPE_RANK[ScopeKind.TEAM] if scope.ident in self.teams else None
        return SCOPE_RANK[scope.kind]

    def __str__(self) -> str:
        parts = [f"team:{t}" for t in self.teams]
        if self.user is not None:
            parts.insert(0, f"user:{self.user}")
        return ",".join(parts) or "anonymous"


# =============================================================================
# Value Store Configuration and Data
# =============================================================================

STORE_NAME_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]{0,127}$")

# source_column value for terms created by confirmation/promotion
LEARNED_COLUMN = "__learned__"


class ValueStoreConfig(BaseModel):
    """Configuration of a refreshable value store.

    Attributes:
        name: Unique store name (letters, digits, '_', '.', '-')
        description: Free-text description
        domain: Business domain the store belongs to (e.g. "procurement")
        entity_types: Entity types this store can resolve (ordered set)
        source_connection: Name of a registered source connection
        source_query: Query whose rows become the canonical values
        match_columns: Columns used to derive search terms
        schedule: Optional cron expression for scheduled refresh
    """
    model_config = ConfigDict(from_attributes=True)

    name: str = Field(..., description="Unique store name")
    description: str = Field(default="", description="What this store contains")
    domain: Optional[str] = Field(default=None, description="Business domain")
    entity_types: List[str] = Field(..., description="Entity types served by this store")
    source_connection: str = Field(..., description="Registered source connection name")
    source_query: str = Field(..., description="Query producing canonical rows")
    match_columns: List[str] = Field(..., description="Columns that become search terms")
    schedule: Optional[str] = Field(default=None, description="Cron expression for refresh")
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @field_validator("name")
    @classmethod
    def _check_name(cls, v: str) -> str:
        if not STORE_NAME_PATTERN.match(v or ""):
            raise ValueError(
                "name must start with a letter or digit and contain only letters, digits, '_', '.', '-'"
            )
        return v

    @field_validator("entity_types", "match_columns")
    @classmethod
    def _ordered_set(cls, v: List[str]) -> List[str]:
        seen = []
        for item in v:
            item = item.strip()
            if item and item not in seen:
                seen.append(item)
        if not seen:
            raise ValueError("must contain at least one non-empty entry")
        return seen

    @field_validator("source_query", "source_connection")
    @classmethod
    def _not_blank(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("must not be blank")
        return v.strip()

    @field_validator("schedule")
    @classmethod
    def _check_schedule(cls, v: Optional[str]) -> Optional[str]:
        if v is None or not v.strip():
            return None
        if len(v.split()) not in (5, 6) and not v.startswith("@"):
            raise ValueError("schedule must be a cron expression (5 or 6 fields) or an @-macro")
        return v.strip()


class ValueRow(BaseModel):
    """One canonical record of a store generation."""
    row_id: int
    generation: int
    data: Dict[str, Any] = Field(default_factory=dict)


class SearchTerm(BaseModel):
    """A matchable string pointing at a ValueRow."""
    model_config = ConfigDict(arbitrary_types_allowed=True)

    term_id: Optional[int] = None
    store_name: str
    term: str
    row_id: int
    source_column: str
    scope: Scope
    generation: Optional[int] = None


class ConfirmationRecord(BaseModel):
    """A confirmed term→row mapping within a scope."""
    model_config = ConfigDict(arbitrary_types_allowed=True)

    store_name: str
    term: str
    row_id: int
    scope: Scope
    confirmed_by: str
    confirmed_at: Optional[datetime] = None


class RefreshReport(BaseModel):
    """Outcome of refreshing one store."""
    store_name: str
    generation: int
    rows_loaded: int = 0
    search_terms_created: int = 0
    orphans_removed: int = 0
    started_at: datetime
    completed_at: datetime
    duration_ms: int = 0


class StoreStats(BaseModel):
    """Counts describing the current state of a store."""
    store_name: str
    generation: int = 0
    rows: int = 0
    terms_by_scope: Dict[str, int] = Field(default_factory=dict)
    confirmations: int = 0
    last_refreshed_at: Optional[datetime] = None


# =============================================================================
# Resolution Request / Response
# =============================================================================

MAX_QUERIES_PER_REQUEST = 1000


class StrategyName(str, Enum):
    """Matching strategies of the scoring kernel."""
    PREFIX = "prefix"
    LEVENSHTEIN = "levenshtein"
    INITIALS = "initials"
    REVERSE_INITIALS = "reverse_initials"
    WORDS = "words"
    PHONETICS = "phonetics"


class ResolveQuery(BaseModel):
    """One term to resolve."""
    term: str = Field(..., description="Free-text term supplied by the caller")
    entity_types: List[str] = Field(..., description="Entity types to search")
    exclude_values: List[str] = Field(default_factory=list, description="Terms never to return")


class ResolveRequest(BaseModel):
    """Bulk resolution request."""
    domain: Optional[str] = Field(default=None, description="Restrict to stores of this domain")
    queries: List[ResolveQuery] = Field(..., min_length=1, max_length=MAX_QUERIES_PER_REQUEST)
    max_candidates: int = Field(default=5, ge=1, le=100)
    min_score: float = Field(default=0.5, ge=0.0, le=1.0)


class Candidate(BaseModel):
    """A scored match for a query term."""
    row: Dict[str, Any]
    row_id: int
    store_name: str
    matched_term: str
    matched_column: str
    score: float = Field(..., description="Composite score (0-1)")
    strategy: StrategyName
    source: str = Field(..., description="Scope that produced the match")
    strategy_scores: Dict[str, float] = Field(default_factory=dict)


class EntityTypeResult(BaseModel):
    candidates: List[Candidate] = Field(default_factory=list)


class QueryResult(BaseModel):
    term: str
    by_entity_type: Dict[str, EntityTypeResult] = Field(default_factory=dict)


class ResolveResponse(BaseModel):
    results: List[QueryResult] = Field(default_factory=list)


class ConfirmRequest(BaseModel):
    """Record a human-validated match."""
    term: str = Field(..., description="The term that was matched")
    value_row_id: int = Field(..., description="row_id of the confirmed value")
    store_name: str = Field(..., description="Store the row belongs to")
    scope: Optional[str] = Field(default=None, description="user:<you> or team:<your team>")


class ConfirmResponse(BaseModel):
    status: str = "confirmed"


# =============================================================================
# Scoring Configuration
# =============================================================================

class ScoringConfig(BaseModel):
    """Weights and thresholds for the scoring kernel.

    Weights only decide which strategy is reported as the winner; the
    composite score is built from raw scores.
    """
    weights: Dict[StrategyName, int] = Field(
        default_factory=lambda: {
            StrategyName.PREFIX: 500,
            StrategyName.LEVENSHTEIN: 400,
            StrategyName.INITIALS: 400,
            StrategyName.REVERSE_INITIALS: 300,
            StrategyName.WORDS: 200,
            StrategyName.PHONETICS: 100,
        }
    )
    corroboration_bonus: float = Field(default=0.15, description="Multiplier for other strategies")
    levenshtein_max_ratio: float = Field(default=0.4, description="Max edit distance / longer length")
    reverse_initials_floor: float = Field(default=0.5, description="Ratios below this score 0")
    reverse_initials_max_len: int = Field(default=8, description="Longest input treated as acronym")


DEFAULT_SCORING_CONFIG = ScoringConfig()

"""Resolution Engine.

Bulk, read-only resolution of free-text terms to canonical rows.

For every query:
1. Select stores whose entity_types intersect the query's (and domain)
2. Per store, inside one read transaction bound to the current generation,
   fetch the search terms sharing a prefilter key with the query
3. Score survivors with the ScoringKernel (nothing is scored when the
   prefilter finds nothing)
4. Drop excluded terms and scores below min_score
5. Rank by (scope priority, score, row_id), keep one candidate per row,
   truncate to max_candidates

Queries run concurrently in worker threads; the whole call has a deadline.
"""

import asyncio
import sqlite3
import time
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Set

from core.observability.logging import get_logger, with_correlation
from core.observability.metrics import get_metrics
from value_resolver import db
from value_resolver.config import DEFAULT_DB_PATH
from value_resolver.errors import NotFoundError, ResolutionTimeoutError
from value_resolver.models import (
    Candidate,
    CallerIdentity,
    EntityTypeResult,
    QueryResult,
    ResolveQuery,
    ResolveRequest,
    ResolveResponse,
    Scope,
    ValueStoreConfig,
)
from value_resolver.normalize import query_keys, query_prefixes, term_key
from value_resolver.registry import ValueStoreRegistry
from value_resolver.scoring import ScoreResult, ScoringKernel


logger = get_logger(__name__)

# Deadline checks in the scoring loop happen every this many terms
_DEADLINE_CHECK_EVERY = 256

# Extra wait after the deadline before giving up on worker threads
_DEADLINE_GRACE_S = 0.5


@dataclass
class _Ranked:
    """A scored term before it is turned into a Candidate."""
    priority: int
    score: float
    row_id: int
    term: str
    column: str
    scope: Scope
    result: ScoreResult
    row: Optional[Dict[str, Any]] = None


class ResolutionEngine:
    """Resolves terms against the value stores in a registry.

    Example:
        engine = ResolutionEngine(registry, db_path=path)
        response = asyncio.run(engine.resolve(request, caller))
    """

    def __init__(
        self,
        registry: ValueStoreRegistry,
        db_path: Path = DEFAULT_DB_PATH,
        kernel: Optional[ScoringKernel] = None,
        max_prefilter_terms: int = 5000,
        timeout_s: Optional[float] = 30.0,
    ):
        self.registry = registry
        self.db_path = db_path
        self.kernel = kernel or ScoringKernel()
        self.max_prefilter_terms = max_prefilter_terms
        self.timeout_s = timeout_s

    async def resolve(
        self,
        request: ResolveRequest,
        caller: CallerIdentity,
        request_id: Optional[str] = None,
    ) -> ResolveResponse:
        """Resolve every query of a bulk request.

        Raises:
            ResolutionTimeoutError: If the call runs past timeout_s
        """
        request_id = request_id or f"res-{uuid.uuid4().hex[:12]}"
        deadline = time.monotonic() + self.timeout_s if self.timeout_s else None
        metrics = get_metrics()
        start = time.perf_counter()

        with with_correlation(request_id=request_id, caller=str(caller)):
            stores = await asyncio.to_thread(self.registry.list, request.domain)
            tasks = [
                asyncio.to_thread(self.resolve_query, query, stores, request, caller, deadline)
                for query in request.queries
            ]
            wait_s = self.timeout_s + _DEADLINE_GRACE_S if self.timeout_s else None
            try:
                results = await asyncio.wait_for(asyncio.gather(*tasks), timeout=wait_s)
            except ResolutionTimeoutError as e:
                metrics.record_timeout(e.phase)
                logger.warning(f"Resolution timed out: {e}")
                raise
            except asyncio.TimeoutError:
                metrics.record_timeout("scoring")
                logger.warning("Resolution timed out waiting for worker threads")
                raise ResolutionTimeoutError("scoring", self.timeout_s)

            duration_ms = (time.perf_counter() - start) * 1000
            returned = sum(
                len(r.candidates) for q in results for r in q.by_entity_type.values()
            )
            empty = sum(
                1 for q in results if not any(r.candidates for r in q.by_entity_type.values())
            )
            metrics.record_resolution(
                queries=len(results), candidates=returned, empty=empty, duration_ms=duration_ms
            )
            logger.info(
                "Resolution completed",
                extra_fields={
                    "queries": len(results),
                    "candidates": returned,
                    "empty": empty,
                    "duration_ms": round(duration_ms, 1),
                },
            )
        return ResolveResponse(results=list(results))

    def resolve_query(
        self,
        query: ResolveQuery,
        stores: Sequence[ValueStoreConfig],
        request: ResolveRequest,
        caller: CallerIdentity,
        deadline: Optional[float] = None,
    ) -> QueryResult:
        """Resolve one query against the given stores (runs in a worker thread)."""
        wanted: List[str] = []
        for entity_type in query.entity_types:
            if entity_type not in wanted:
                wanted.append(entity_type)
        exclude = {term_key(v) for v in query.exclude_values}

        per_type: Dict[str, List[tuple]] = {et: [] for et in wanted}
        for store_index, store in enumerate(stores):
            served = [et for et in wanted if et in store.entity_types]
            if not served:
                continue
            try:
                ranked = self.search_store(
                    store.name, query.term, caller, exclude,
                    request.min_score, request.max_candidates, deadline,
                )
            except NotFoundError as e:
                logger.debug(f"Skipping store: {e}", extra_fields={"store_name": store.name})
                continue
            for et in served:
                per_type[et].extend((store_index, store.name, r) for r in ranked)

        by_entity_type: Dict[str, EntityTypeResult] = {}
        for et, entries in per_type.items():
            entries.sort(key=lambda e: (-e[2].priority, -e[2].score, e[0], e[2].row_id))
            by_entity_type[et] = EntityTypeResult(
                candidates=[self._to_candidate(name, r) for _, name, r in entries[:request.max_candidates]]
            )
            if not entries:
                logger.debug("No candidates", extra_fields={"term": query.term, "entity_type": et})
        return QueryResult(term=query.term, by_entity_type=by_entity_type)

    def search_store(
        self,
        store_name: str,
        term: str,
        caller: CallerIdentity,
        exclude_keys: Set[str],
        min_score: float,
        limit: int,
        deadline: Optional[float] = None,
    ) -> List[_Ranked]:
        """Ranked, deduplicated matches of `term` within one store."""
        metrics = get_metrics()
        conn = db.connect(self.db_path)
        try:
            with db.transaction(conn):
                generation = db.current_generation(conn, store_name)

                with with_correlation(store_name=store_name, phase="prefilter"):
                    with db.deadline_guard(conn, deadline, "prefilter", self.timeout_s, store_name):
                        terms = db.find_candidate_terms(
                            conn, store_name, generation,
                            query_keys(term), query_prefixes(term),
                            caller.visible_scopes(), self.max_prefilter_terms,
                        )
                    metrics.record_store_search(store_name, prefilter_hit=bool(terms))
                    if not terms:
                        return []
                    if len(terms) >= self.max_prefilter_terms:
                        logger.warning(
                            "Prefilter cap reached, scoring a truncated candidate set",
                            extra_fields={"cap": self.max_prefilter_terms, "term": term},
                        )

                with with_correlation(store_name=store_name, phase="scoring"):
                    ranked = self._score_terms(terms, term, caller, exclude_keys, min_score, deadline, store_name)

                # One candidate per row: the first one in rank order wins
                seen: Set[int] = set()
                unique: List[_Ranked] = []
                for r in ranked:
                    if r.row_id in seen:
                        continue
                    seen.add(r.row_id)
                    unique.append(r)
                    if len(unique) == limit:
                        break

                with db.deadline_guard(conn, deadline, "prefilter", self.timeout_s, store_name):
                    rows = db.fetch_rows(conn, store_name, generation, (r.row_id for r in unique))
        finally:
            conn.close()

        result = []
        for r in unique:
            if r.row_id in rows:
                r.row = rows[r.row_id]
                result.append(r)
        return result

    def _score_terms(
        self,
        terms: Sequence[sqlite3.Row],
        query: str,
        caller: CallerIdentity,
        exclude_keys: Set[str],
        min_score: float,
        deadline: Optional[float],
        store_name: str,
    ) -> List[_Ranked]:
        start = time.perf_counter()
        ranked: List[_Ranked] = []
        for i, row in enumerate(terms):
            if deadline is not None and i % _DEADLINE_CHECK_EVERY == 0 and time.monotonic() > deadline:
                raise ResolutionTimeoutError("scoring", self.timeout_s, store_name)
            if term_key(row["term"]) in exclude_keys:
                continue
            scope = Scope.parse(row["scope"])
            priority = caller.scope_priority(scope)
            if priority is None:
                continue
            result = self.kernel.score(row["term"], query)
            if result.strategy is None or result.composite < min_score:
                continue
            ranked.append(_Ranked(
                priority=priority,
                score=result.composite,
                row_id=row["row_id"],
                term=row["term"],
                column=row["source_column"],
                scope=scope,
                result=result,
            ))
        ranked.sort(key=lambda r: (-r.priority, -r.score, r.row_id))
        get_metrics().record_processing_time("scoring", (time.perf_counter() - start) * 1000)
        return ranked

    @staticmethod
    def _to_candidate(store_name: str, ranked: _Ranked) -> Candidate:
        result = ranked.result
        return Candidate(
            row=ranked.row,
            row_id=ranked.row_id,
            store_name=store_name,
            matched_term=ranked.term,
            matched_column=ranked.column,
            score=round(ranked.score, 4),
            strategy=result.strategy,
            source=str(ranked.scope),
            strategy_scores=result.as_dict(),
        )


def explain_candidate(query: str, candidate: Candidate) -> str:
    """Multi-line text describing why a candidate matched (for debugging)."""
    lines = [
        f"{query!r} -> {candidate.matched_term!r} "
        f"[{candidate.store_name} row {candidate.row_id}, via {candidate.source}]",
        f"  score={candidate.score:.4f} strategy={candidate.strategy.value} "
        f"column={candidate.matched_column}",
    ]
    for name, value in sorted(candidate.strategy_scores.items(), key=lambda kv: -kv[1]):
        if value > 0:
            marker = "*" if name == candidate.strategy.value else " "
            lines.append(f"  {marker} {name:<17} {value:.4f}")
    return "\n".join(lines)

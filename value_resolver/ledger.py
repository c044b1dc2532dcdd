"""Learning Ledger.

Records human-validated term → row mappings and promotes a mapping to the
`system` scope once enough distinct users have confirmed it.

Confirmation flow:
1. Validate the term and the requested scope against the caller's identity
2. Record the confirmation and the scoped search term (idempotent)
3. Under a lock for (store, term, row_id), count distinct user confirmers
   and insert the system term once the threshold is reached

The unique index on search_term guarantees at most one system term per
(term, row_id), even across processes. A promotion that loses that race is
reported as success.
"""

import sqlite3
import threading
from collections import defaultdict
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Hashable, Iterator, List, Optional

from core.observability.logging import get_logger, with_correlation
from core.observability.metrics import get_metrics
from value_resolver import db
from value_resolver.config import DEFAULT_DB_PATH
from value_resolver.errors import ConfigError, NotFoundError, PromotionRaceError
from value_resolver.models import (
    SYSTEM,
    CallerIdentity,
    ConfirmationRecord,
    ConfirmResponse,
    Scope,
    ScopeKind,
)
from value_resolver.normalize import term_key
from value_resolver.registry import ValueStoreRegistry


logger = get_logger(__name__)


class KeyedLocks:
    """One lock per key, created on demand and dropped when unused."""

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: Dict[Hashable, threading.Lock] = {}
        self._users: Dict[Hashable, int] = defaultdict(int)

    @contextmanager
    def hold(self, key: Hashable) -> Iterator[None]:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = self._locks[key] = threading.Lock()
            self._users[key] += 1
        try:
            with lock:
                yield
        finally:
            with self._guard:
                self._users[key] -= 1
                if self._users[key] == 0:
                    del self._users[key]
                    del self._locks[key]

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)


class LearningLedger:
    """Confirmation recording and consensus promotion.

    Example:
        ledger = LearningLedger(registry, db_path=path, promotion_threshold=3)
        ledger.confirm("MS", 3, "vendors", CallerIdentity(user="alice"))
    """

    def __init__(
        self,
        registry: ValueStoreRegistry,
        db_path: Path = DEFAULT_DB_PATH,
        promotion_threshold: int = 3,
    ):
        if promotion_threshold < 1:
            raise ConfigError("promotion_threshold must be at least 1", promotion_threshold=promotion_threshold)
        self.registry = registry
        self.db_path = db_path
        self.promotion_threshold = promotion_threshold
        self._locks = KeyedLocks()

    def confirm(
        self,
        term: str,
        row_id: int,
        store_name: str,
        caller: CallerIdentity,
        scope: Optional[str] = None,
    ) -> ConfirmResponse:
        """Record that `term` means row `row_id` of `store_name`.

        Raises:
            ConfigError: Blank term, missing user identity, or a scope the
                caller may not write
            NotFoundError: Unknown store or row
        """
        text = (term or "").strip()
        if not text:
            raise ConfigError("term must not be blank", store_name=store_name)
        target = self.resolve_scope(scope, caller)
        self.registry.require(store_name)

        metrics = get_metrics()
        key = (store_name, term_key(text), row_id)
        with with_correlation(store_name=store_name, caller=str(caller), phase="confirm"):
            with self._locks.hold(key):
                conn = db.connect(self.db_path)
                try:
                    with db.transaction(conn, "IMMEDIATE"):
                        if not db.row_exists(conn, store_name, row_id):
                            raise NotFoundError(
                                f"Row {row_id} not found in value store '{store_name}'",
                                store_name=store_name,
                                row_id=row_id,
                            )
                        recorded = db.insert_confirmation(
                            conn, store_name, text, row_id, target, caller.user
                        )
                        db.insert_learned_term(conn, store_name, text, row_id, target)
                    metrics.record_confirmation(duplicate=not recorded)
                    logger.info(
                        "Confirmation recorded" if recorded else "Confirmation already recorded",
                        extra_fields={"term": text, "row_id": row_id, "scope": str(target)},
                    )

                    try:
                        self._promote_if_due(conn, store_name, text, row_id)
                    except PromotionRaceError:
                        metrics.record_promotion_race()
                        logger.info(
                            "Promotion already done by a concurrent confirmation",
                            extra_fields={"term": text, "row_id": row_id},
                        )
                finally:
                    conn.close()
        return ConfirmResponse()

    def resolve_scope(self, scope: Optional[str], caller: CallerIdentity) -> Scope:
        """The scope a confirmation is written to.

        Defaults to the caller's user scope. Only the caller's own user
        scope or one of its teams is accepted.

        Raises:
            ConfigError: If the caller has no user identity or the scope is
                not writable by the caller
        """
        if caller.user is None:
            raise ConfigError("A user identity is required to confirm matches")
        if scope is None or not scope.strip():
            return caller.user_scope

        target = Scope.parse(scope)
        if target.kind is ScopeKind.USER and target.ident == caller.user:
            return target
        if target.kind is ScopeKind.TEAM and target.ident in caller.teams:
            return target
        raise ConfigError(
            f"Scope '{scope}' is not writable by {caller}. "
            f"Use user:{caller.user} or team:<one of your teams>",
            scope=scope,
        )

    def _promote_if_due(self, conn: sqlite3.Connection, store_name: str, term: str, row_id: int) -> bool:
        """Insert the system term when the threshold is reached.

        Returns:
            True if this call promoted the mapping

        Raises:
            PromotionRaceError: If another writer inserted it first
        """
        with db.transaction(conn, "IMMEDIATE"):
            confirmers = db.count_user_confirmers(conn, store_name, term, row_id)
            if confirmers < self.promotion_threshold:
                return False
            if db.learned_term_exists(conn, store_name, term, row_id, SYSTEM):
                return False
            try:
                db.insert_learned_term(conn, store_name, term, row_id, SYSTEM, ignore_existing=False)
            except sqlite3.IntegrityError as e:
                raise PromotionRaceError(
                    "System term already exists",
                    store_name=store_name,
                    term=term,
                    row_id=row_id,
                ) from e

        get_metrics().record_promotion()
        logger.info(
            "Promoted to system scope",
            extra_fields={"term": term, "row_id": row_id, "confirmers": confirmers},
        )
        return True

    def list_confirmations(self, store_name: str, term: Optional[str] = None) -> List[ConfirmationRecord]:
        """Confirmation records of a store, optionally for one term."""
        self.registry.require(store_name)
        return db.list_confirmations(store_name, term=term, db_path=self.db_path)

    def promotion_status(self, store_name: str, term: str, row_id: int) -> Dict[str, Any]:
        """How close (term, row_id) is to promotion."""
        self.registry.require(store_name)
        conn = db.connect(self.db_path)
        try:
            with db.transaction(conn):
                confirmers = db.count_user_confirmers(conn, store_name, term, row_id)
                promoted = db.learned_term_exists(conn, store_name, term, row_id, SYSTEM)
        finally:
            conn.close()
        return {
            "store_name": store_name,
            "term": term,
            "row_id": row_id,
            "confirmers": confirmers,
            "threshold": self.promotion_threshold,
            "promoted": promoted,
        }

"""Refresh Pipeline.

Loads a value store from its source and swaps the new generation in:

1. Fetch rows by running source_query on the source connection
2. Check every match column is present in the result set
3. Derive primary search terms and prefilter keys
4. Write the generation, drop the previous one and orphaned learned terms,
   and move the generation pointer, all in one transaction

A failing source query leaves the current generation untouched.
"""

import threading
import time
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional

from core.observability.logging import get_logger, with_correlation
from core.observability.metrics import get_metrics
from value_resolver import db
from value_resolver.config import DEFAULT_DB_PATH
from value_resolver.errors import (
    ConfigError,
    RefreshInProgressError,
    ResolutionTimeoutError,
    SourceQueryError,
)
from value_resolver.models import RefreshReport, StoreStats, ValueStoreConfig
from value_resolver.registry import ValueStoreRegistry
from value_resolver.sources import SourceConnectionRegistry


logger = get_logger(__name__)


class RefreshPipeline:
    """Refreshes value stores, one refresh per store at a time.

    Example:
        pipeline = RefreshPipeline(registry, sources, db_path=path)
        report = pipeline.refresh("vendors")
        print(report.rows_loaded, report.generation)
    """

    def __init__(
        self,
        registry: ValueStoreRegistry,
        sources: SourceConnectionRegistry,
        db_path: Path = DEFAULT_DB_PATH,
        timeout_s: Optional[float] = 300.0,
    ):
        self.registry = registry
        self.sources = sources
        self.db_path = db_path
        self.timeout_s = timeout_s
        self._locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def _lock_for(self, store_name: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(store_name)
            if lock is None:
                lock = self._locks[store_name] = threading.Lock()
            return lock

    def is_refreshing(self, store_name: str) -> bool:
        return self._lock_for(store_name).locked()

    def refresh(self, store_name: str) -> RefreshReport:
        """Refresh one store.

        Raises:
            NotFoundError: Unknown store
            RefreshInProgressError: A refresh of this store is running
            ConfigError: Source connection unknown or match column missing
            SourceQueryError: The source query failed
            ResolutionTimeoutError: The source query ran past timeout_s
        """
        config = self.registry.require(store_name)
        lock = self._lock_for(store_name)
        if not lock.acquire(blocking=False):
            get_metrics().record_refresh_rejected(store_name)
            raise RefreshInProgressError(
                f"A refresh of '{store_name}' is already in progress",
                store_name=store_name,
            )
        try:
            with with_correlation(store_name=store_name, phase="refresh"):
                return self._run(config)
        finally:
            lock.release()

    def delete(self, store_name: str) -> bool:
        """Delete a store and its data while no refresh of it runs.

        Raises:
            NotFoundError: Unknown store
            RefreshInProgressError: A refresh of this store is running
        """
        self.registry.require(store_name)
        lock = self._lock_for(store_name)
        if not lock.acquire(blocking=False):
            raise RefreshInProgressError(
                f"Cannot delete '{store_name}' while it is being refreshed",
                store_name=store_name,
            )
        try:
            deleted = self.registry.delete(store_name)
        finally:
            lock.release()
        with with_correlation(store_name=store_name, phase="delete"):
            logger.info("Store deleted")
        return deleted

    def _run(self, config: ValueStoreConfig) -> RefreshReport:
        metrics = get_metrics()
        started_at = datetime.utcnow()
        start = time.perf_counter()
        metrics.record_refresh_started(config.name)
        logger.info("Refresh started", extra_fields={"source": config.source_connection})

        try:
            rows = self._fetch(config)
            self._check_columns(config, rows)
            generation, terms, orphans = db.replace_generation(
                config.name, rows, config.match_columns, db_path=self.db_path
            )
        except ResolutionTimeoutError:
            metrics.record_refresh_failed(config.name, "timeout")
            metrics.record_timeout("refresh")
            logger.warning("Refresh timed out", extra_fields={"timeout_s": self.timeout_s})
            raise
        except Exception as e:
            metrics.record_refresh_failed(config.name, type(e).__name__)
            logger.error(f"Refresh failed: {e}")
            raise

        duration_ms = int((time.perf_counter() - start) * 1000)
        metrics.record_refresh_completed(config.name, rows=len(rows), duration_ms=duration_ms)
        report = RefreshReport(
            store_name=config.name,
            generation=generation,
            rows_loaded=len(rows),
            search_terms_created=terms,
            orphans_removed=orphans,
            started_at=started_at,
            completed_at=datetime.utcnow(),
            duration_ms=duration_ms,
        )
        logger.info(
            "Refresh completed",
            extra_fields={
                "generation": generation,
                "rows": len(rows),
                "terms": terms,
                "orphans_removed": orphans,
                "duration_ms": duration_ms,
            },
        )
        return report

    def _fetch(self, config: ValueStoreConfig) -> List[dict]:
        connection = self.sources.get(config.source_connection)
        try:
            return connection.fetch_rows(config.source_query, timeout_s=self.timeout_s)
        except ResolutionTimeoutError as e:
            raise ResolutionTimeoutError(e.phase, e.timeout_s, config.name) from e
        except Exception as e:
            raise SourceQueryError(
                f"Source query for '{config.name}' failed", config.name, cause=e
            ) from e

    def _check_columns(self, config: ValueStoreConfig, rows: List[dict]) -> None:
        """Every match column must exist in the result set.

        An empty result set has no columns to check and is accepted.
        """
        if not rows:
            return
        present = set()
        for row in rows:
            present.update(row.keys())
        missing = [c for c in config.match_columns if c not in present]
        if missing:
            raise ConfigError(
                f"Source query for '{config.name}' returned no column(s) {', '.join(missing)}",
                store_name=config.name,
                missing_columns=missing,
                available_columns=sorted(present),
            )

    def stats(self, store_name: str) -> StoreStats:
        """Counts for a store (NotFoundError when unknown)."""
        self.registry.require(store_name)
        return db.store_stats(store_name, db_path=self.db_path)

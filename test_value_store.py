"""
Value Store Tests

Covers the registry, the refresh pipeline and the generation swap:
1. Refresh loads rows and primary search terms
2. A failed refresh leaves the previous generation serviceable
3. Concurrent readers only ever see complete generations
4. A second refresh of the same store is rejected while one runs
5. Learned terms of rows that disappeared are removed
6. A store cannot be deleted under a running refresh, and a refresh never
   brings back a deleted store
"""

import sqlite3
import threading

import pytest

from conftest import VENDOR_QUERY, VENDOR_ROWS
from value_resolver import db
from value_resolver.errors import (
    ConfigError,
    NotFoundError,
    RefreshInProgressError,
    SourceQueryError,
)
from value_resolver.models import CallerIdentity, ValueStoreConfig
from value_resolver.sources import (
    SourceConnectionRegistry,
    SqliteSourceConnection,
    StaticSourceConnection,
    connection_from_url,
)


class TestValueStoreRegistry:
    """Test configuration CRUD."""

    def test_upsert_and_get(self, service, vendor_config):
        saved = service.registry.upsert(vendor_config)
        assert saved.created_at is not None

        loaded = service.registry.get("vendors")
        assert loaded.entity_types == ["Vendor"]
        assert loaded.match_columns == ["supplier_name"]

    def test_upsert_keeps_created_at(self, service, vendor_config):
        first = service.registry.upsert(vendor_config)
        second = service.registry.upsert(vendor_config.model_copy(update={"description": "changed"}))
        assert second.created_at == first.created_at
        assert second.description == "changed"

    def test_list_by_domain(self, service, vendor_config):
        service.registry.upsert(vendor_config)
        service.registry.upsert(vendor_config.model_copy(update={"name": "gl", "domain": "finance"}))
        assert [c.name for c in service.registry.list()] == ["gl", "vendors"]
        assert [c.name for c in service.registry.list("finance")] == ["gl"]

    def test_require_unknown(self, service):
        with pytest.raises(NotFoundError):
            service.registry.require("nope")

    def test_delete_cascades(self, vendors):
        assert vendors.registry.delete("vendors") is True
        stats = db.store_stats("vendors", db_path=vendors.settings.db_path)
        assert stats.rows == 0
        assert stats.terms_by_scope == {}
        assert vendors.registry.delete("vendors") is False

    def test_config_validation(self):
        with pytest.raises(ValueError):
            ValueStoreConfig(
                name="bad name!",
                entity_types=["Vendor"],
                source_connection="erp",
                source_query="SELECT 1",
                match_columns=["x"],
            )
        with pytest.raises(ValueError):
            ValueStoreConfig(
                name="ok",
                entity_types=[" "],
                source_connection="erp",
                source_query="SELECT 1",
                match_columns=["x"],
            )

    def test_entity_types_are_an_ordered_set(self):
        config = ValueStoreConfig(
            name="ok",
            entity_types=["Vendor", "Supplier", "Vendor"],
            source_connection="erp",
            source_query="SELECT 1",
            match_columns=["x"],
        )
        assert config.entity_types == ["Vendor", "Supplier"]


class TestRefreshPipeline:
    """Test refresh and the generation swap."""

    def test_refresh_loads_rows(self, service, vendor_config):
        service.registry.upsert(vendor_config)
        report = service.pipeline.refresh("vendors")

        assert report.generation == 1
        assert report.rows_loaded == len(VENDOR_ROWS)
        assert report.search_terms_created == len(VENDOR_ROWS)
        assert report.orphans_removed == 0

        stats = service.pipeline.stats("vendors")
        assert stats.rows == len(VENDOR_ROWS)
        assert stats.terms_by_scope == {"primary": len(VENDOR_ROWS)}
        assert stats.last_refreshed_at is not None

    def test_refresh_replaces_generation(self, vendors, erp_rows):
        erp_rows[VENDOR_QUERY] = erp_rows[VENDOR_QUERY][:2]
        report = vendors.pipeline.refresh("vendors")

        assert report.generation == 2
        stats = vendors.pipeline.stats("vendors")
        assert stats.generation == 2
        assert stats.rows == 2
        assert stats.terms_by_scope == {"primary": 2}

    def test_null_and_blank_values_skipped(self, service, vendor_config, erp_rows):
        erp_rows[VENDOR_QUERY] = [
            {"supplier_id": "V1", "supplier_name": "NIKE"},
            {"supplier_id": "V2", "supplier_name": None},
            {"supplier_id": "V3", "supplier_name": "   "},
        ]
        service.registry.upsert(vendor_config)
        report = service.pipeline.refresh("vendors")
        assert report.rows_loaded == 3
        assert report.search_terms_created == 1

    def test_multiple_match_columns(self, service, vendor_config):
        service.registry.upsert(vendor_config.model_copy(
            update={"match_columns": ["supplier_name", "supplier_id"]}
        ))
        report = service.pipeline.refresh("vendors")
        assert report.search_terms_created == 2 * len(VENDOR_ROWS)

    def test_missing_match_column(self, vendors, vendor_config):
        vendors.registry.upsert(vendor_config.model_copy(update={"match_columns": ["vendor_name"]}))
        with pytest.raises(ConfigError) as exc_info:
            vendors.pipeline.refresh("vendors")
        assert exc_info.value.context["missing_columns"] == ["vendor_name"]
        assert vendors.pipeline.stats("vendors").generation == 1

    def test_source_failure_keeps_previous_generation(self, vendors, vendor_config):
        vendors.registry.upsert(vendor_config.model_copy(update={"source_query": "SELECT broken"}))
        with pytest.raises(SourceQueryError) as exc_info:
            vendors.pipeline.refresh("vendors")
        assert exc_info.value.store_name == "vendors"
        assert "KeyError" in exc_info.value.context["cause"]

        stats = vendors.pipeline.stats("vendors")
        assert stats.generation == 1
        assert stats.rows == len(VENDOR_ROWS)

    def test_unknown_source_connection(self, service, vendor_config):
        service.registry.upsert(vendor_config.model_copy(update={"source_connection": "crm"}))
        with pytest.raises(ConfigError):
            service.pipeline.refresh("vendors")

    def test_unknown_store(self, service):
        with pytest.raises(NotFoundError):
            service.pipeline.refresh("nope")

    def test_second_refresh_rejected_while_running(self, service, vendor_config, erp_rows):
        entered = threading.Event()
        release = threading.Event()

        def slow_rows(query):
            entered.set()
            release.wait(timeout=10)
            return erp_rows[query]

        service.sources.register("slow", StaticSourceConnection("slow", slow_rows))
        service.registry.upsert(vendor_config.model_copy(update={"source_connection": "slow"}))

        results = []
        worker = threading.Thread(target=lambda: results.append(service.pipeline.refresh("vendors")))
        worker.start()
        try:
            assert entered.wait(timeout=10)
            assert service.pipeline.is_refreshing("vendors")
            with pytest.raises(RefreshInProgressError):
                service.pipeline.refresh("vendors")
        finally:
            release.set()
            worker.join(timeout=10)

        assert results[0].generation == 1
        assert not service.pipeline.is_refreshing("vendors")

    def _start_slow_refresh(self, service, vendor_config, erp_rows):
        entered = threading.Event()
        release = threading.Event()

        def slow_rows(query):
            entered.set()
            release.wait(timeout=10)
            return erp_rows[query]

        service.sources.register("slow", StaticSourceConnection("slow", slow_rows))
        service.registry.upsert(vendor_config.model_copy(update={"source_connection": "slow"}))

        outcome = []

        def run():
            try:
                outcome.append(service.pipeline.refresh("vendors"))
            except Exception as e:
                outcome.append(e)

        worker = threading.Thread(target=run)
        worker.start()
        assert entered.wait(timeout=10)
        return worker, release, outcome

    def test_delete_rejected_while_refreshing(self, service, vendor_config, erp_rows):
        worker, release, outcome = self._start_slow_refresh(service, vendor_config, erp_rows)
        try:
            with pytest.raises(RefreshInProgressError):
                service.pipeline.delete("vendors")
        finally:
            release.set()
            worker.join(timeout=10)

        assert outcome[0].generation == 1
        assert service.registry.get("vendors") is not None
        assert service.pipeline.delete("vendors") is True
        assert service.registry.get("vendors") is None

    def test_refresh_does_not_recreate_deleted_store(self, service, vendor_config, erp_rows):
        worker, release, outcome = self._start_slow_refresh(service, vendor_config, erp_rows)
        try:
            # Registry delete does not wait for the refresh
            assert service.registry.delete("vendors") is True
        finally:
            release.set()
            worker.join(timeout=10)

        assert isinstance(outcome[0], NotFoundError)
        conn = db.connect(service.settings.db_path)
        try:
            for table in ("value_row", "search_term", "term_key_index", "store_generation"):
                count = conn.execute(
                    f"SELECT COUNT(*) FROM {table} WHERE store_name = ?", ("vendors",)
                ).fetchone()[0]
                assert count == 0, table
        finally:
            conn.close()

    def test_delete_unknown_store(self, service):
        with pytest.raises(NotFoundError):
            service.pipeline.delete("nope")

    def test_orphaned_learned_terms_removed(self, vendors, erp_rows):
        alice = CallerIdentity(user="alice")
        vendors.ledger.confirm("BofA", 5, "vendors", alice)
        vendors.ledger.confirm("Swoosh", 1, "vendors", alice)

        erp_rows[VENDOR_QUERY] = erp_rows[VENDOR_QUERY][:4]
        report = vendors.pipeline.refresh("vendors")

        assert report.orphans_removed == 1
        stats = vendors.pipeline.stats("vendors")
        assert stats.terms_by_scope["user:alice"] == 1
        # Confirmation records are history and stay
        assert stats.confirmations == 2

    def test_readers_only_see_complete_generations(self, vendors, erp_rows):
        db_path = vendors.settings.db_path
        size = len(VENDOR_ROWS)
        bigger = [{"supplier_id": f"X{i}", "supplier_name": f"SUPPLIER {i}"} for i in range(size)]
        stop = threading.Event()
        problems = []

        def reader():
            conn = db.connect(db_path)
            try:
                while not stop.is_set():
                    with db.transaction(conn):
                        generation = db.current_generation(conn, "vendors")
                        rows = conn.execute(
                            "SELECT COUNT(*) FROM value_row WHERE store_name = ?", ("vendors",)
                        ).fetchone()[0]
                        current = conn.execute(
                            "SELECT COUNT(*) FROM search_term "
                            "WHERE store_name = ? AND scope = 'primary' AND generation = ?",
                            ("vendors", generation),
                        ).fetchone()[0]
                    if rows != size or current != size:
                        problems.append((generation, rows, current))
            finally:
                conn.close()

        threads = [threading.Thread(target=reader) for _ in range(3)]
        for t in threads:
            t.start()
        try:
            for i in range(10):
                erp_rows[VENDOR_QUERY] = bigger if i % 2 == 0 else [dict(r) for r in VENDOR_ROWS]
                vendors.pipeline.refresh("vendors")
        finally:
            stop.set()
            for t in threads:
                t.join(timeout=10)

        assert problems == []
        assert vendors.pipeline.stats("vendors").generation == 11


class TestSourceConnections:
    """Test source connection implementations."""

    def test_sqlite_source(self, tmp_path):
        path = tmp_path / "erp.db"
        conn = sqlite3.connect(str(path))
        conn.execute("CREATE TABLE suppliers (supplier_id TEXT, supplier_name TEXT)")
        conn.execute("INSERT INTO suppliers VALUES ('V001', 'NIKE, INC.')")
        conn.commit()
        conn.close()

        source = connection_from_url("erp", f"sqlite:///{path}")
        assert isinstance(source, SqliteSourceConnection)
        rows = source.fetch_rows("SELECT supplier_id, supplier_name FROM suppliers", timeout_s=5)
        assert rows == [{"supplier_id": "V001", "supplier_name": "NIKE, INC."}]

    def test_sqlite_source_is_read_only(self, tmp_path):
        path = tmp_path / "erp.db"
        sqlite3.connect(str(path)).close()
        source = SqliteSourceConnection("erp", path)
        with pytest.raises(sqlite3.OperationalError):
            source.fetch_rows("CREATE TABLE t (x)")

    def test_unsupported_url(self):
        with pytest.raises(ConfigError):
            connection_from_url("erp", "postgres://localhost/erp")

    def test_registry_lookup_is_case_insensitive(self):
        registry = SourceConnectionRegistry({"ERP": StaticSourceConnection("ERP", {})})
        assert registry.names() == ["erp"]
        assert registry.get("Erp").name == "ERP"
        with pytest.raises(ConfigError):
            registry.get("crm")

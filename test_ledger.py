"""
Learning Ledger Tests

Covers confirmation recording and consensus promotion:
1. Confirming twice is a no-op
2. Promotion happens at exactly the threshold
3. Only the caller's own user scope or teams are writable
4. Concurrent confirmations promote at most once
"""

import asyncio
import sqlite3
import threading
from concurrent.futures import ThreadPoolExecutor

import pytest

from value_resolver.errors import ConfigError, NotFoundError
from value_resolver.ledger import KeyedLocks, LearningLedger
from value_resolver.models import CallerIdentity, ResolveQuery, ResolveRequest


def user(name, *teams):
    return CallerIdentity(user=name, teams=tuple(teams))


def count_terms(service, scope):
    conn = sqlite3.connect(str(service.settings.db_path))
    try:
        return conn.execute(
            "SELECT COUNT(*) FROM search_term WHERE store_name = 'vendors' AND scope = ?",
            (scope,),
        ).fetchone()[0]
    finally:
        conn.close()


class TestConfirm:
    """Test recording confirmations."""

    def test_confirm_records_term_and_confirmation(self, vendors):
        response = vendors.ledger.confirm("Swoosh", 1, "vendors", user("alice"))
        assert response.status == "confirmed"

        records = vendors.ledger.list_confirmations("vendors")
        assert len(records) == 1
        assert str(records[0].scope) == "user:alice"
        assert records[0].confirmed_by == "alice"
        assert count_terms(vendors, "user:alice") == 1

    def test_confirm_is_idempotent(self, vendors):
        vendors.ledger.confirm("Swoosh", 1, "vendors", user("alice"))
        vendors.ledger.confirm("swoosh ", 1, "vendors", user("alice"))

        assert len(vendors.ledger.list_confirmations("vendors")) == 1
        assert count_terms(vendors, "user:alice") == 1

    def test_same_term_different_scopes(self, vendors):
        alice = user("alice", "finance")
        vendors.ledger.confirm("Swoosh", 1, "vendors", alice)
        vendors.ledger.confirm("Swoosh", 1, "vendors", alice, scope="team:finance")

        scopes = sorted(str(r.scope) for r in vendors.ledger.list_confirmations("vendors", term="SWOOSH"))
        assert scopes == ["team:finance", "user:alice"]

    @pytest.mark.parametrize("scope", [
        "system",
        "primary",
        "user:bob",
        "team:sales",
        "group:finance",
        "user:",
    ])
    def test_invalid_scope_rejected(self, vendors, scope):
        with pytest.raises(ConfigError):
            vendors.ledger.confirm("Swoosh", 1, "vendors", user("alice", "finance"), scope=scope)
        assert vendors.ledger.list_confirmations("vendors") == []

    def test_identity_required(self, vendors):
        with pytest.raises(ConfigError):
            vendors.ledger.confirm("Swoosh", 1, "vendors", CallerIdentity(teams=("finance",)))

    def test_blank_term_rejected(self, vendors):
        with pytest.raises(ConfigError):
            vendors.ledger.confirm("   ", 1, "vendors", user("alice"))

    def test_unknown_store(self, vendors):
        with pytest.raises(NotFoundError):
            vendors.ledger.confirm("Swoosh", 1, "nope", user("alice"))

    def test_unknown_row(self, vendors):
        with pytest.raises(NotFoundError):
            vendors.ledger.confirm("Swoosh", 99, "vendors", user("alice"))
        assert vendors.ledger.list_confirmations("vendors") == []


class TestPromotion:
    """Test consensus promotion to the system scope."""

    def test_no_promotion_below_threshold(self, vendors):
        for name in ("alice", "bob"):
            vendors.ledger.confirm("Swoosh", 1, "vendors", user(name))

        status = vendors.ledger.promotion_status("vendors", "Swoosh", 1)
        assert status["confirmers"] == 2
        assert status["promoted"] is False
        assert count_terms(vendors, "system") == 0

    def test_promotion_at_threshold(self, vendors):
        for name in ("alice", "bob", "carol"):
            vendors.ledger.confirm("Swoosh", 1, "vendors", user(name))

        status = vendors.ledger.promotion_status("vendors", "Swoosh", 1)
        assert status == {
            "store_name": "vendors",
            "term": "Swoosh",
            "row_id": 1,
            "confirmers": 3,
            "threshold": 3,
            "promoted": True,
        }
        assert count_terms(vendors, "system") == 1

        # Now visible to everyone
        request = ResolveRequest(queries=[ResolveQuery(term="Swoosh", entity_types=["Vendor"])])
        response = asyncio.run(vendors.engine.resolve(request, CallerIdentity()))
        top = response.results[0].by_entity_type["Vendor"].candidates[0]
        assert top.row_id == 1
        assert top.source == "system"

    def test_repeat_confirmer_counted_once(self, vendors):
        alice = user("alice", "finance")
        vendors.ledger.confirm("Swoosh", 1, "vendors", alice)
        vendors.ledger.confirm("Swoosh", 1, "vendors", alice, scope="team:finance")
        vendors.ledger.confirm("Swoosh", 1, "vendors", user("bob"))

        assert vendors.ledger.promotion_status("vendors", "Swoosh", 1)["confirmers"] == 2
        assert count_terms(vendors, "system") == 0

    def test_team_confirmations_do_not_count(self, vendors):
        for name in ("alice", "bob", "carol"):
            vendors.ledger.confirm("Swoosh", 1, "vendors", user(name, "finance"), scope="team:finance")
        assert count_terms(vendors, "system") == 0

    def test_further_confirmations_do_not_promote_again(self, vendors):
        for name in ("alice", "bob", "carol", "dave", "erin"):
            vendors.ledger.confirm("Swoosh", 1, "vendors", user(name))
        assert count_terms(vendors, "system") == 1

    def test_threshold_of_one(self, vendors):
        ledger = LearningLedger(vendors.registry, db_path=vendors.settings.db_path, promotion_threshold=1)
        ledger.confirm("Swoosh", 1, "vendors", user("alice"))
        assert count_terms(vendors, "system") == 1

    def test_invalid_threshold(self, vendors):
        with pytest.raises(ConfigError):
            LearningLedger(vendors.registry, db_path=vendors.settings.db_path, promotion_threshold=0)

    def test_concurrent_confirmations_promote_once(self, vendors):
        names = [f"user{i}" for i in range(12)]
        with ThreadPoolExecutor(max_workers=8) as pool:
            list(pool.map(lambda n: vendors.ledger.confirm("Swoosh", 1, "vendors", user(n)), names))

        assert count_terms(vendors, "system") == 1
        assert vendors.ledger.promotion_status("vendors", "Swoosh", 1)["confirmers"] == 12

    def test_concurrent_ledgers_promote_once(self, vendors):
        # Separate ledgers share no locks; the unique index still holds
        ledgers = [
            LearningLedger(vendors.registry, db_path=vendors.settings.db_path, promotion_threshold=3)
            for _ in range(4)
        ]
        names = [f"user{i}" for i in range(8)]
        with ThreadPoolExecutor(max_workers=8) as pool:
            list(pool.map(
                lambda i: ledgers[i % 4].confirm("Swoosh", 1, "vendors", user(names[i])),
                range(len(names)),
            ))
        assert count_terms(vendors, "system") == 1


class TestKeyedLocks:
    """Test the per-key lock registry."""

    def test_locks_released_and_dropped(self):
        locks = KeyedLocks()
        with locks.hold("a"):
            assert len(locks) == 1
        assert len(locks) == 0

    def test_different_keys_do_not_block(self):
        locks = KeyedLocks()
        entered = threading.Event()

        def other():
            with locks.hold("b"):
                entered.set()

        with locks.hold("a"):
            t = threading.Thread(target=other)
            t.start()
            assert entered.wait(timeout=5)
            t.join(timeout=5)

"""Value Store Database Operations.

This module handles all SQLite operations for value resolution:
- Schema initialization
- Store configuration rows (used by SqliteValueStoreRegistry)
- Generation swap for refresh
- Prefilter lookups over the term key index
- Learned terms and confirmation records

Tables:
- value_store_config: one row per store configuration
- store_generation: current generation pointer per store
- value_row: canonical rows, tagged with their generation
- search_term: matchable strings (primary terms carry their generation,
  learned terms use generation 0)
- term_key_index: inverted index of prefilter keys → term ids
- confirmation_record: confirmed (term, row_id, scope) tuples

The database runs in WAL mode. A reader that opens a transaction keeps
seeing the generation that was current when it started, while a refresh
commits the next one.
"""

import json
import sqlite3
import time
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Optional, Sequence, Tuple

from value_resolver.config import DEFAULT_DB_PATH
from value_resolver.errors import NotFoundError, ResolutionTimeoutError
from value_resolver.models import (
    LEARNED_COLUMN,
    PRIMARY,
    ConfirmationRecord,
    Scope,
    StoreStats,
    ValueStoreConfig,
)
from value_resolver.normalize import prefilter_keys, term_key


# Generation value stored on learned (non-primary) search terms
LEARNED_GENERATION = 0

# Upper bound used for prefix range scans over the key index
_RANGE_END = "\U0010ffff"


def connect(db_path: Path = DEFAULT_DB_PATH) -> sqlite3.Connection:
    """Open a connection in autocommit mode; use transaction() for writes."""
    conn = sqlite3.connect(str(db_path), timeout=30.0, isolation_level=None)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA synchronous=NORMAL")
    return conn


@contextmanager
def transaction(conn: sqlite3.Connection, mode: str = "DEFERRED") -> Iterator[sqlite3.Connection]:
    """Run a block in one transaction (DEFERRED for reads, IMMEDIATE for writes)."""
    conn.execute(f"BEGIN {mode}")
    try:
        yield conn
    except BaseException:
        # An interrupted statement may already have ended the transaction
        if conn.in_transaction:
            conn.execute("ROLLBACK")
        raise
    else:
        conn.execute("COMMIT")


@contextmanager
def deadline_guard(
    conn: sqlite3.Connection,
    deadline: Optional[float],
    phase: str,
    timeout_s: float,
    store_name: Optional[str] = None,
) -> Iterator[None]:
    """Abort SQLite work that runs past `deadline` (time.monotonic value).

    Raises:
        ResolutionTimeoutError: If the statement was interrupted
    """
    if deadline is None:
        yield
        return

    conn.set_progress_handler(lambda: int(time.monotonic() > deadline), 10_000)
    try:
        yield
    except sqlite3.OperationalError as e:
        if "interrupted" in str(e).lower():
            raise ResolutionTimeoutError(phase, timeout_s, store_name) from e
        raise
    finally:
        conn.set_progress_handler(None, 0)


def init_value_resolver_db(db_path: Path = DEFAULT_DB_PATH) -> None:
    """Initialize value resolver tables and indexes.

    Args:
        db_path: Path to SQLite database file
    """
    conn = connect(db_path)
    try:
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS value_store_config (
                name TEXT PRIMARY KEY,
                description TEXT DEFAULT '',
                domain TEXT,
                entity_types TEXT NOT NULL DEFAULT '[]',
                source_connection TEXT NOT NULL,
                source_query TEXT NOT NULL,
                match_columns TEXT NOT NULL DEFAULT '[]',
                schedule TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS store_generation (
                store_name TEXT PRIMARY KEY,
                generation INTEGER NOT NULL,
                rows_loaded INTEGER NOT NULL DEFAULT 0,
                refreshed_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS value_row (
                store_name TEXT NOT NULL,
                generation INTEGER NOT NULL,
                row_id INTEGER NOT NULL,
                data TEXT NOT NULL,
                PRIMARY KEY (store_name, generation, row_id)
            );

            CREATE TABLE IF NOT EXISTS search_term (
                term_id INTEGER PRIMARY KEY,
                store_name TEXT NOT NULL,
                term TEXT NOT NULL,
                term_key TEXT NOT NULL,
                row_id INTEGER NOT NULL,
                source_column TEXT NOT NULL,
                scope TEXT NOT NULL,
                generation INTEGER NOT NULL DEFAULT 0,
                created_at TEXT NOT NULL,
                UNIQUE (store_name, generation, scope, term_key, row_id, source_column)
            );

            CREATE INDEX IF NOT EXISTS idx_search_term_store_scope
                ON search_term(store_name, scope, generation);
            CREATE INDEX IF NOT EXISTS idx_search_term_row
                ON search_term(store_name, row_id);

            CREATE TABLE IF NOT EXISTS term_key_index (
                store_name TEXT NOT NULL,
                key TEXT NOT NULL,
                term_id INTEGER NOT NULL,
                PRIMARY KEY (store_name, key, term_id)
            ) WITHOUT ROWID;

            CREATE INDEX IF NOT EXISTS idx_term_key_term
                ON term_key_index(term_id);

            CREATE TABLE IF NOT EXISTS confirmation_record (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                store_name TEXT NOT NULL,
                term TEXT NOT NULL,
                term_key TEXT NOT NULL,
                row_id INTEGER NOT NULL,
                scope TEXT NOT NULL,
                confirmed_by TEXT NOT NULL,
                confirmed_at TEXT NOT NULL,
                UNIQUE (store_name, term_key, row_id, scope)
            );

            CREATE INDEX IF NOT EXISTS idx_confirmation_pair
                ON confirmation_record(store_name, term_key, row_id);
        """)
    finally:
        conn.close()


# =============================================================================
# Store Configuration
# =============================================================================

def upsert_store_config(config: ValueStoreConfig, db_path: Path = DEFAULT_DB_PATH) -> ValueStoreConfig:
    """Insert or update a store configuration, keeping its created_at."""
    now = datetime.utcnow().isoformat()
    conn = connect(db_path)
    try:
        with transaction(conn, "IMMEDIATE"):
            conn.execute("""
                INSERT INTO value_store_config
                (name, description, domain, entity_types, source_connection,
                 source_query, match_columns, schedule, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(name) DO UPDATE SET
                    description = excluded.description,
                    domain = excluded.domain,
                    entity_types = excluded.entity_types,
                    source_connection = excluded.source_connection,
                    source_query = excluded.source_query,
                    match_columns = excluded.match_columns,
                    schedule = excluded.schedule,
                    updated_at = excluded.updated_at
            """, (
                config.name,
                config.description,
                config.domain,
                json.dumps(config.entity_types),
                config.source_connection,
                config.source_query,
                json.dumps(config.match_columns),
                config.schedule,
                now,
                now,
            ))
            row = conn.execute(
                "SELECT * FROM value_store_config WHERE name = ?", (config.name,)
            ).fetchone()
        return _row_to_store_config(row)
    finally:
        conn.close()


def get_store_config(name: str, db_path: Path = DEFAULT_DB_PATH) -> Optional[ValueStoreConfig]:
    conn = connect(db_path)
    try:
        row = conn.execute(
            "SELECT * FROM value_store_config WHERE name = ?", (name,)
        ).fetchone()
        return _row_to_store_config(row) if row else None
    finally:
        conn.close()


def list_store_configs(domain: Optional[str] = None, db_path: Path = DEFAULT_DB_PATH) -> List[ValueStoreConfig]:
    conn = connect(db_path)
    try:
        if domain is not None:
            cursor = conn.execute(
                "SELECT * FROM value_store_config WHERE domain = ? ORDER BY name", (domain,)
            )
        else:
            cursor = conn.execute("SELECT * FROM value_store_config ORDER BY name")
        return [_row_to_store_config(row) for row in cursor.fetchall()]
    finally:
        conn.close()


def delete_store(name: str, db_path: Path = DEFAULT_DB_PATH) -> bool:
    """Delete a store's configuration and every piece of its data.

    Returns:
        True if a configuration existed
    """
    conn = connect(db_path)
    try:
        with transaction(conn, "IMMEDIATE"):
            cursor = conn.execute("DELETE FROM value_store_config WHERE name = ?", (name,))
            existed = cursor.rowcount > 0
            conn.execute("DELETE FROM term_key_index WHERE store_name = ?", (name,))
            conn.execute("DELETE FROM search_term WHERE store_name = ?", (name,))
            conn.execute("DELETE FROM value_row WHERE store_name = ?", (name,))
            conn.execute("DELETE FROM confirmation_record WHERE store_name = ?", (name,))
            conn.execute("DELETE FROM store_generation WHERE store_name = ?", (name,))
        return existed
    finally:
        conn.close()


def _row_to_store_config(row: sqlite3.Row) -> ValueStoreConfig:
    """Convert a database row to ValueStoreConfig."""
    return ValueStoreConfig(
        name=row["name"],
        description=row["description"] or "",
        domain=row["domain"],
        entity_types=json.loads(row["entity_types"]),
        source_connection=row["source_connection"],
        source_query=row["source_query"],
        match_columns=json.loads(row["match_columns"]),
        schedule=row["schedule"],
        created_at=datetime.fromisoformat(row["created_at"]) if row["created_at"] else None,
        updated_at=datetime.fromisoformat(row["updated_at"]) if row["updated_at"] else None,
    )


# =============================================================================
# Generations
# =============================================================================

def current_generation(conn: sqlite3.Connection, store_name: str) -> int:
    """Current generation of a store (0 if it was never refreshed)."""
    row = conn.execute(
        "SELECT generation FROM store_generation WHERE store_name = ?", (store_name,)
    ).fetchone()
    return row["generation"] if row else 0


def replace_generation(
    store_name: str,
    rows: Sequence[Dict[str, Any]],
    match_columns: Sequence[str],
    db_path: Path = DEFAULT_DB_PATH,
) -> Tuple[int, int, int]:
    """Write a new generation and swap it in, in one transaction.

    Primary rows, terms and index keys of older generations are deleted,
    as are learned terms whose row_id does not exist in the new generation.
    Learned terms for surviving row ids and all confirmation records stay.

    Args:
        store_name: Store being refreshed
        rows: Canonical rows in source order (row_id = position + 1)
        match_columns: Columns that produce primary search terms

    Returns:
        (generation, search_terms_created, orphans_removed)

    Raises:
        NotFoundError: The store configuration was deleted meanwhile
    """
    now = datetime.utcnow().isoformat()
    primary = str(PRIMARY)
    conn = connect(db_path)
    try:
        with transaction(conn, "IMMEDIATE"):
            exists = conn.execute(
                "SELECT 1 FROM value_store_config WHERE name = ?", (store_name,)
            ).fetchone()
            if exists is None:
                raise NotFoundError(f"Value store '{store_name}' not found", store_name=store_name)
            generation = current_generation(conn, store_name) + 1

            conn.executemany(
                "INSERT INTO value_row (store_name, generation, row_id, data) VALUES (?, ?, ?, ?)",
                (
                    (store_name, generation, row_id, json.dumps(row, default=str))
                    for row_id, row in enumerate(rows, start=1)
                ),
            )

            next_id = conn.execute(
                "SELECT COALESCE(MAX(term_id), 0) FROM search_term"
            ).fetchone()[0] + 1
            term_rows = []
            key_rows = []
            for row_id, row in enumerate(rows, start=1):
                for column in match_columns:
                    value = row.get(column)
                    if value is None:
                        continue
                    text = str(value).strip()
                    if not text:
                        continue
                    term_rows.append((
                        next_id, store_name, text, term_key(text), row_id,
                        column, primary, generation, now,
                    ))
                    key_rows.extend((store_name, k, next_id) for k in prefilter_keys(text))
                    next_id += 1

            conn.executemany("""
                INSERT INTO search_term
                (term_id, store_name, term, term_key, row_id, source_column,
                 scope, generation, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, term_rows)
            conn.executemany(
                "INSERT OR IGNORE INTO term_key_index (store_name, key, term_id) VALUES (?, ?, ?)",
                key_rows,
            )

            # Drop the previous generation
            stale = """
                SELECT term_id FROM search_term
                WHERE store_name = ? AND scope = ? AND generation <> ?
            """
            conn.execute(
                f"DELETE FROM term_key_index WHERE term_id IN ({stale})",
                (store_name, primary, generation),
            )
            conn.execute(
                "DELETE FROM search_term WHERE store_name = ? AND scope = ? AND generation <> ?",
                (store_name, primary, generation),
            )
            conn.execute(
                "DELETE FROM value_row WHERE store_name = ? AND generation <> ?",
                (store_name, generation),
            )

            # Learned terms pointing at rows that no longer exist
            orphans = """
                SELECT term_id FROM search_term
                WHERE store_name = ? AND generation = ?
                  AND row_id NOT IN (
                      SELECT row_id FROM value_row WHERE store_name = ? AND generation = ?
                  )
            """
            orphan_args = (store_name, LEARNED_GENERATION, store_name, generation)
            conn.execute(f"DELETE FROM term_key_index WHERE term_id IN ({orphans})", orphan_args)
            cursor = conn.execute(
                f"DELETE FROM search_term WHERE term_id IN ({orphans})", orphan_args
            )
            orphans_removed = cursor.rowcount

            conn.execute("""
                INSERT INTO store_generation (store_name, generation, rows_loaded, refreshed_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(store_name) DO UPDATE SET
                    generation = excluded.generation,
                    rows_loaded = excluded.rows_loaded,
                    refreshed_at = excluded.refreshed_at
            """, (store_name, generation, len(rows), now))

        return generation, len(term_rows), orphans_removed
    finally:
        conn.close()


# =============================================================================
# Reads (run inside a caller-owned read transaction)
# =============================================================================

def find_candidate_terms(
    conn: sqlite3.Connection,
    store_name: str,
    generation: int,
    exact_keys: Iterable[str],
    prefix_keys: Iterable[str],
    scopes: Sequence[Scope],
    limit: int,
) -> List[sqlite3.Row]:
    """Prefilter: terms sharing at least one key with the query.

    Args:
        conn: Connection with an open read transaction
        store_name: Store to search
        generation: Generation bound at the start of the read
        exact_keys: Keys matched by equality
        prefix_keys: Keys matched as prefixes of indexed keys
        scopes: Scopes visible to the caller
        limit: Maximum number of terms returned

    Returns:
        Rows with term_id, term, row_id, source_column, scope
    """
    exact = sorted(set(exact_keys))
    prefixes = sorted(set(prefix_keys))
    if (not exact and not prefixes) or not scopes:
        return []

    clauses = []
    args: List[Any] = [store_name]
    if exact:
        clauses.append(f"key IN ({','.join('?' * len(exact))})")
        args.extend(exact)
    for p in prefixes:
        clauses.append("(key >= ? AND key < ?)")
        args.extend([p, p + _RANGE_END])

    scope_values = [str(s) for s in scopes]
    args.extend(scope_values)
    args.extend([generation, LEARNED_GENERATION, limit])

    sql = f"""
        SELECT t.term_id, t.term, t.row_id, t.source_column, t.scope
        FROM search_term t
        WHERE t.term_id IN (
            SELECT term_id FROM term_key_index
            WHERE store_name = ? AND ({' OR '.join(clauses)})
        )
          AND t.scope IN ({','.join('?' * len(scope_values))})
          AND t.generation IN (?, ?)
        ORDER BY t.term_id
        LIMIT ?
    """
    return conn.execute(sql, args).fetchall()


def fetch_rows(
    conn: sqlite3.Connection,
    store_name: str,
    generation: int,
    row_ids: Iterable[int],
) -> Dict[int, Dict[str, Any]]:
    """Canonical rows of one generation by row_id."""
    ids = sorted(set(row_ids))
    if not ids:
        return {}
    cursor = conn.execute(f"""
        SELECT row_id, data FROM value_row
        WHERE store_name = ? AND generation = ?
          AND row_id IN ({','.join('?' * len(ids))})
    """, [store_name, generation, *ids])
    return {row["row_id"]: json.loads(row["data"]) for row in cursor.fetchall()}


def row_exists(conn: sqlite3.Connection, store_name: str, row_id: int) -> bool:
    """Whether row_id exists in the store's current generation."""
    generation = current_generation(conn, store_name)
    row = conn.execute(
        "SELECT 1 FROM value_row WHERE store_name = ? AND generation = ? AND row_id = ?",
        (store_name, generation, row_id),
    ).fetchone()
    return row is not None


# =============================================================================
# Learned Terms and Confirmations
# =============================================================================

def insert_learned_term(
    conn: sqlite3.Connection,
    store_name: str,
    term: str,
    row_id: int,
    scope: Scope,
    ignore_existing: bool = True,
) -> bool:
    """Insert a non-primary search term with its index keys.

    Args:
        ignore_existing: If False, a duplicate raises sqlite3.IntegrityError

    Returns:
        True if a new term was inserted
    """
    verb = "INSERT OR IGNORE" if ignore_existing else "INSERT"
    cursor = conn.execute(f"""
        {verb} INTO search_term
        (store_name, term, term_key, row_id, source_column, scope, generation, created_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?)
    """, (
        store_name, term, term_key(term), row_id, LEARNED_COLUMN,
        str(scope), LEARNED_GENERATION, datetime.utcnow().isoformat(),
    ))
    if cursor.rowcount == 0:
        return False
    term_id = cursor.lastrowid
    conn.executemany(
        "INSERT OR IGNORE INTO term_key_index (store_name, key, term_id) VALUES (?, ?, ?)",
        [(store_name, k, term_id) for k in prefilter_keys(term)],
    )
    return True


def learned_term_exists(
    conn: sqlite3.Connection,
    store_name: str,
    term: str,
    row_id: int,
    scope: Scope,
) -> bool:
    row = conn.execute("""
        SELECT 1 FROM search_term
        WHERE store_name = ? AND generation = ? AND scope = ?
          AND term_key = ? AND row_id = ?
    """, (store_name, LEARNED_GENERATION, str(scope), term_key(term), row_id)).fetchone()
    return row is not None


def insert_confirmation(
    conn: sqlite3.Connection,
    store_name: str,
    term: str,
    row_id: int,
    scope: Scope,
    confirmed_by: str,
) -> bool:
    """Record a confirmation; an existing (term, row_id, scope) is left as is.

    Returns:
        True if a new record was written
    """
    cursor = conn.execute("""
        INSERT OR IGNORE INTO confirmation_record
        (store_name, term, term_key, row_id, scope, confirmed_by, confirmed_at)
        VALUES (?, ?, ?, ?, ?, ?, ?)
    """, (
        store_name, term, term_key(term), row_id, str(scope),
        confirmed_by, datetime.utcnow().isoformat(),
    ))
    return cursor.rowcount > 0


def count_user_confirmers(conn: sqlite3.Connection, store_name: str, term: str, row_id: int) -> int:
    """Distinct identities behind user-scoped confirmations of (term, row_id)."""
    row = conn.execute("""
        SELECT COUNT(DISTINCT confirmed_by) AS n FROM confirmation_record
        WHERE store_name = ? AND term_key = ? AND row_id = ? AND scope LIKE 'user:%'
    """, (store_name, term_key(term), row_id)).fetchone()
    return row["n"]


def list_confirmations(
    store_name: str,
    term: Optional[str] = None,
    db_path: Path = DEFAULT_DB_PATH,
) -> List[ConfirmationRecord]:
    conn = connect(db_path)
    try:
        if term is not None:
            cursor = conn.execute("""
                SELECT * FROM confirmation_record
                WHERE store_name = ? AND term_key = ?
                ORDER BY confirmed_at, id
            """, (store_name, term_key(term)))
        else:
            cursor = conn.execute("""
                SELECT * FROM confirmation_record WHERE store_name = ?
                ORDER BY confirmed_at, id
            """, (store_name,))
        return [_row_to_confirmation(row) for row in cursor.fetchall()]
    finally:
        conn.close()


def _row_to_confirmation(row: sqlite3.Row) -> ConfirmationRecord:
    return ConfirmationRecord(
        store_name=row["store_name"],
        term=row["term"],
        row_id=row["row_id"],
        scope=Scope.parse(row["scope"]),
        confirmed_by=row["confirmed_by"],
        confirmed_at=datetime.fromisoformat(row["confirmed_at"]),
    )


# =============================================================================
# Stats
# =============================================================================

def store_stats(store_name: str, db_path: Path = DEFAULT_DB_PATH) -> StoreStats:
    conn = connect(db_path)
    try:
        with transaction(conn):
            gen_row = conn.execute(
                "SELECT * FROM store_generation WHERE store_name = ?", (store_name,)
            ).fetchone()
            generation = gen_row["generation"] if gen_row else 0
            rows = conn.execute(
                "SELECT COUNT(*) FROM value_row WHERE store_name = ? AND generation = ?",
                (store_name, generation),
            ).fetchone()[0]
            by_scope: Dict[str, int] = {}
            for row in conn.execute("""
                SELECT scope, COUNT(*) AS n FROM search_term
                WHERE store_name = ? GROUP BY scope ORDER BY scope
            """, (store_name,)):
                by_scope[row["scope"]] = row["n"]
            confirmations = conn.execute(
                "SELECT COUNT(*) FROM confirmation_record WHERE store_name = ?", (store_name,)
            ).fetchone()[0]
        return StoreStats(
            store_name=store_name,
            generation=generation,
            rows=rows,
            terms_by_scope=by_scope,
            confirmations=confirmations,
            last_refreshed_at=datetime.fromisoformat(gen_row["refreshed_at"]) if gen_row else None,
        )
    finally:
        conn.close()

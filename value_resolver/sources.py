"""Source Connections.

A value store's canonical rows come from `source_query` executed against a
named source connection. This module defines the interface the refresh
pipeline depends on, plus two implementations:
- SqliteSourceConnection: runs SQL against a SQLite database file
- StaticSourceConnection: serves fixed rows per query (seeding and tests)

Connections are looked up by name through a SourceConnectionRegistry.
"""

import sqlite3
import time
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional, Union

from value_resolver.errors import ConfigError, ResolutionTimeoutError


Row = Dict[str, Any]


class SourceConnection(ABC):
    """Interface to an upstream database supplying canonical rows."""

    name: str = "source"

    @abstractmethod
    def fetch_rows(self, query: str, timeout_s: Optional[float] = None) -> List[Row]:
        """Execute `query` and return every row as a column → value dict.

        Raises:
            ResolutionTimeoutError: If the query runs longer than timeout_s
            Exception: Any driver error (syntax, permission, network)
        """
        ...


class SqliteSourceConnection(SourceConnection):
    """Read-only SQL source backed by a SQLite file.

    Example:
        source = SqliteSourceConnection("erp", "/data/erp.db")
        rows = source.fetch_rows("SELECT supplier_name FROM suppliers")
    """

    def __init__(self, name: str, path: Union[str, Path]):
        self.name = name
        self.path = Path(path)

    def fetch_rows(self, query: str, timeout_s: Optional[float] = None) -> List[Row]:
        if not self.path.exists():
            raise FileNotFoundError(f"Source database not found: {self.path}")

        uri = f"file:{self.path.as_posix()}?mode=ro"
        conn = sqlite3.connect(uri, uri=True)
        conn.row_factory = sqlite3.Row
        if timeout_s is not None:
            deadline = time.monotonic() + timeout_s
            conn.set_progress_handler(lambda: int(time.monotonic() > deadline), 10_000)
        try:
            cursor = conn.execute(query)
            return [dict(row) for row in cursor.fetchall()]
        except sqlite3.OperationalError as e:
            if timeout_s is not None and "interrupted" in str(e).lower():
                raise ResolutionTimeoutError("refresh", timeout_s) from e
            raise
        finally:
            conn.close()


class StaticSourceConnection(SourceConnection):
    """Serves rows held in memory.

    `rows` is either a mapping of query text → rows, or a callable taking the
    query and returning rows.
    """

    def __init__(
        self,
        name: str,
        rows: Union[Mapping[str, List[Row]], Callable[[str], List[Row]]],
    ):
        self.name = name
        self._rows = rows

    def fetch_rows(self, query: str, timeout_s: Optional[float] = None) -> List[Row]:
        if callable(self._rows):
            return [dict(r) for r in self._rows(query)]
        if query not in self._rows:
            raise LookupError(f"Unknown query for static source '{self.name}': {query}")
        return [dict(r) for r in self._rows[query]]


def connection_from_url(name: str, url: str) -> SourceConnection:
    """Build a connection from a URL such as sqlite:///data/erp.db.

    Raises:
        ConfigError: On unsupported schemes
    """
    if url.startswith("sqlite:///"):
        return SqliteSourceConnection(name, url[len("sqlite:///"):])
    raise ConfigError(
        f"Unsupported source URL for connection '{name}': {url}",
        source_connection=name,
    )


class SourceConnectionRegistry:
    """Named source connections available to refresh."""

    def __init__(self, connections: Optional[Dict[str, SourceConnection]] = None):
        self._connections: Dict[str, SourceConnection] = {}
        for name, conn in (connections or {}).items():
            self.register(name, conn)

    @classmethod
    def from_urls(cls, urls: Mapping[str, str]) -> "SourceConnectionRegistry":
        return cls({name: connection_from_url(name, url) for name, url in urls.items()})

    def register(self, name: str, connection: SourceConnection) -> None:
        self._connections[name.lower()] = connection

    def names(self) -> List[str]:
        return sorted(self._connections)

    def get(self, name: str) -> SourceConnection:
        """Look a connection up by (case-insensitive) name.

        Raises:
            ConfigError: If no such connection is registered
        """
        conn = self._connections.get(name.lower())
        if conn is None:
            raise ConfigError(
                f"Source connection '{name}' is not registered",
                source_connection=name,
                available=self.names(),
            )
        return conn

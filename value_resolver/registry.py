"""Value Store Registry.

The registry is the boundary to the metadata store that persists value
store configuration. Engines, the refresh pipeline and the ledger receive
a registry instance explicitly; nothing looks stores up through globals.
"""

from abc import ABC, abstractmethod
from pathlib import Path
from typing import List, Optional

from value_resolver import db
from value_resolver.config import DEFAULT_DB_PATH
from value_resolver.errors import NotFoundError
from value_resolver.models import ValueStoreConfig


class ValueStoreRegistry(ABC):
    """CRUD interface over value store configurations."""

    @abstractmethod
    def upsert(self, config: ValueStoreConfig) -> ValueStoreConfig:
        """Create or update a configuration."""
        ...

    @abstractmethod
    def get(self, name: str) -> Optional[ValueStoreConfig]:
        """Return a configuration, or None if unknown."""
        ...

    @abstractmethod
    def list(self, domain: Optional[str] = None) -> List[ValueStoreConfig]:
        """All configurations, optionally restricted to one domain."""
        ...

    @abstractmethod
    def delete(self, name: str) -> bool:
        """Delete a configuration and all data of its store."""
        ...

    def require(self, name: str) -> ValueStoreConfig:
        """Like get(), but unknown names raise NotFoundError."""
        config = self.get(name)
        if config is None:
            raise NotFoundError(f"Value store '{name}' not found", store_name=name)
        return config

    def stores_for(self, entity_types: List[str], domain: Optional[str] = None) -> List[ValueStoreConfig]:
        """Stores serving any of the entity types (and the domain, if given)."""
        wanted = set(entity_types)
        return [
            config for config in self.list(domain)
            if wanted.intersection(config.entity_types)
        ]


class SqliteValueStoreRegistry(ValueStoreRegistry):
    """Registry kept in the same SQLite database as the store data."""

    def __init__(self, db_path: Path = DEFAULT_DB_PATH):
        self.db_path = db_path

    def upsert(self, config: ValueStoreConfig) -> ValueStoreConfig:
        return db.upsert_store_config(config, db_path=self.db_path)

    def get(self, name: str) -> Optional[ValueStoreConfig]:
        return db.get_store_config(name, db_path=self.db_path)

    def list(self, domain: Optional[str] = None) -> List[ValueStoreConfig]:
        return db.list_store_configs(domain=domain, db_path=self.db_path)

    def delete(self, name: str) -> bool:
        return db.delete_store(name, db_path=self.db_path)

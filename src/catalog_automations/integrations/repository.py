"""Catalog record repository interface."""

import copy
import uuid
from typing import Any, Optional, Protocol, runtime_checkable

from ..core.errors import RecordStoreError


ENTITY_TABLES: dict[str, str] = {
    "asset": "assets",
    "issue": "issues",
    "data_product": "data_products",
    "quality_rule": "quality_rules",
}


def table_name(entity_type: str) -> str:
    """Collection name backing an entity type."""
    try:
        return ENTITY_TABLES[entity_type]
    except KeyError:
        raise RecordStoreError(f"Unknown entity type: {entity_type}", entity_type=entity_type)


@runtime_checkable
class RecordRepository(Protocol):
    """Keyed record store for catalog entities (assets, issues, ...)."""

    async def select(self, entity_type: str, limit: int = 100) -> list[dict[str, Any]]:
        ...

    async def insert(self, entity_type: str, data: dict[str, Any]) -> dict[str, Any]:
        ...

    async def update(
        self,
        entity_type: str,
        record_id: str,
        updates: dict[str, Any],
    ) -> dict[str, Any]:
        ...


class InMemoryRecordRepository:
    """
    Dict-backed repository.

    Used for local runs and tests; production deployments inject an adapter
    over the catalog database.
    """

    def __init__(self, seed: Optional[dict[str, list[dict[str, Any]]]] = None):
        self._tables: dict[str, dict[str, dict[str, Any]]] = {
            name: {} for name in ENTITY_TABLES.values()
        }
        for entity_type, rows in (seed or {}).items():
            for row in rows:
                self._store(entity_type, row)

    async def select(self, entity_type: str, limit: int = 100) -> list[dict[str, Any]]:
        rows = list(self._tables[table_name(entity_type)].values())[:limit]
        return copy.deepcopy(rows)

    async def get(self, entity_type: str, record_id: str) -> Optional[dict[str, Any]]:
        row = self._tables[table_name(entity_type)].get(record_id)
        return copy.deepcopy(row) if row is not None else None

    async def insert(self, entity_type: str, data: dict[str, Any]) -> dict[str, Any]:
        return copy.deepcopy(self._store(entity_type, data))

    async def update(
        self,
        entity_type: str,
        record_id: str,
        updates: dict[str, Any],
    ) -> dict[str, Any]:
        table = self._tables[table_name(entity_type)]
        if record_id not in table:
            raise RecordStoreError(
                f"{entity_type} not found: {record_id}",
                entity_type=entity_type,
                record_id=record_id,
            )
        # Last writer wins
        table[record_id].update(copy.deepcopy(updates))
        return copy.deepcopy(table[record_id])

    def _store(self, entity_type: str, data: dict[str, Any]) -> dict[str, Any]:
        row = copy.deepcopy(data)
        row.setdefault("id", str(uuid.uuid4()))
        self._tables[table_name(entity_type)][str(row["id"])] = row
        return row

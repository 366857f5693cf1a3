"""
Service: store_adapter.py
Rôle:
- Interface "query builder" uniforme au-dessus du record store :
    adapter.collection("participants").eq("event_id", eid).order("score", "desc").limit(10)
- Terminaux asynchrones : `execute()`, `single()`, `maybe_single()`.

Choix de conception:
- Seuls les filtres (ET logique) sont transmis au store. Le tri et la limite sont appliqués
  ici, après lecture, pour ne jamais exiger d'index composite côté stockage. Acceptable car
  les volumes restent petits (centaines de participants/questions, pas des millions).
- Les erreurs remontent sous forme d'exceptions (NotFoundError, UniqueViolationError, ...).

Sémantique des terminaux:
- select : execute() → list[dict]; single() → dict (NotFoundError si 0, StoreError si > 1);
  maybe_single() → dict | None (StoreError si > 1).
- insert : execute() → dict ou list[dict] selon l'entrée; single() → premier record inséré.
- update : execute() → nb de records modifiés; single() → record relu (filtre `id` requis).
- delete : execute() → nb de records supprimés (au moins un filtre requis).
"""
from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Tuple, Union

from .errors import AtomicIncrementUnavailable, NotFoundError, StoreError
from .record_store import Filter, sort_records

logger = logging.getLogger(__name__)

_SELECT = "select"
_INSERT = "insert"
_UPDATE = "update"
_DELETE = "delete"


class QueryBuilder:
    """Requête chaînable sur une collection (un seul usage)."""

    def __init__(self, store: Any, collection: str) -> None:
        self.store = store
        self.collection = collection
        self.filters: List[Filter] = []
        self._order_by: List[Tuple[str, str]] = []
        self._limit: Optional[int] = None
        self._mode = _SELECT
        self._data: Any = None

    # ---------- construction ----------
    def filter(self, fld: str, op: str, value: Any) -> "QueryBuilder":
        self.filters.append((fld, op, value))
        return self

    def eq(self, fld: str, value: Any) -> "QueryBuilder":
        return self.filter(fld, "==", value)

    def order(self, fld: str, direction: str = "asc") -> "QueryBuilder":
        if direction not in ("asc", "desc"):
            raise ValueError(f"invalid sort direction: {direction}")
        self._order_by.append((fld, direction))
        return self

    def limit(self, count: int) -> "QueryBuilder":
        self._limit = count
        return self

    def insert(self, data: Union[Dict[str, Any], List[Dict[str, Any]]]) -> "QueryBuilder":
        self._mode, self._data = _INSERT, data
        return self

    def update(self, patch: Dict[str, Any]) -> "QueryBuilder":
        self._mode, self._data = _UPDATE, dict(patch)
        return self

    def delete(self) -> "QueryBuilder":
        self._mode = _DELETE
        return self

    # ---------- terminaux ----------
    def _id_filter(self) -> Optional[str]:
        for fld, op, value in self.filters:
            if fld == "id" and op == "==":
                return value
        return None

    def _target(self):
        record_id = self._id_filter()
        if record_id is not None and len(self.filters) == 1:
            return record_id
        return list(self.filters)

    async def _select(self) -> List[Dict[str, Any]]:
        rows = await self.store.query(self.collection, list(self.filters))
        if self._order_by:
            rows = sort_records(rows, self._order_by)
        if self._limit is not None:
            rows = rows[: self._limit]
        return rows

    async def execute(self):
        if self._mode == _INSERT:
            return await self.store.insert(self.collection, self._data)
        if self._mode == _UPDATE:
            return await self.store.update(self.collection, self._target(), self._data)
        if self._mode == _DELETE:
            if not self.filters:
                raise StoreError("delete requires at least one filter")
            return await self.store.delete(self.collection, self._target())
        return await self._select()

    async def single(self) -> Dict[str, Any]:
        if self._mode == _INSERT:
            inserted = await self.execute()
            return inserted[0] if isinstance(inserted, list) else inserted
        if self._mode == _UPDATE:
            record_id = self._id_filter()
            if record_id is None:
                raise StoreError("single() after update requires an id filter")
            count = await self.execute()
            if count == 0:
                raise NotFoundError(f"{self.collection}/{record_id} not found")
            rows = await self.store.query(self.collection, [("id", "==", record_id)])
            return rows[0]
        rows = await self.execute()
        if not rows:
            raise NotFoundError(f"No results found in '{self.collection}'")
        if len(rows) > 1:
            raise StoreError(f"single() expected 1 row in '{self.collection}', got {len(rows)}")
        return rows[0]

    async def maybe_single(self) -> Optional[Dict[str, Any]]:
        try:
            return await self.single()
        except NotFoundError:
            return None


class RecordStoreAdapter:
    """Point d'entrée des services vers le store (query builder + incrément atomique)."""

    def __init__(self, store: Any) -> None:
        self.store = store

    def collection(self, name: str) -> QueryBuilder:
        return QueryBuilder(self.store, name)

    async def ping(self) -> bool:
        ping = getattr(self.store, "ping", None)
        if ping is None:
            await self.store.query("events", [], None, 1)
            return True
        return await ping()

    async def atomic_increment(self, collection: str, record_id: str, fld: str, amount: float) -> float:
        """Délègue à l'incrément atomique du store; `AtomicIncrementUnavailable` s'il n'existe pas."""
        increment = getattr(self.store, "atomic_increment", None)
        if increment is None:
            raise AtomicIncrementUnavailable(f"{type(self.store).__name__} has no atomic increment")
        return await increment(collection, record_id, fld, amount)

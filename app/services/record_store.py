"""
Service: record_store.py
Rôle :
- Implémenter le "record store" générique (collections de documents clé → dict) consommé
  par l'adaptateur de requêtes (`store_adapter.py`).
- Fournir les contraintes d'unicité qui font foi (inscription, réponses, codes d'event),
  et un incrément atomique pour les scores.

Stockage :
- En mémoire, protégé par un RLock (plusieurs workers FastAPI peuvent écrire).
- Optionnellement persisté dans `DATA_DIR/records.json` (orjson, écriture atomique).

Interface (toutes les méthodes publiques sont des coroutines, comme un store distant) :
- query(collection, filters, order_by=None, limit=None) → list[dict]
- insert(collection, record | [records]) → dict | list[dict]
- update(collection, id | filters, patch) → nb de records modifiés
- delete(collection, id | filters) → nb de records supprimés
- atomic_increment(collection, id, field, amount) → nouvelle valeur
- ping() → True si le store répond

Notes :
- `order_by` n'est accepté qu'en l'absence de filtres sur d'autres champs (pas d'index
  composite), d'où le tri côté adaptateur.
"""
from __future__ import annotations

import copy
import operator
import time
from dataclasses import dataclass, field
from pathlib import Path
from threading import RLock
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple, Union
from uuid import uuid4

from .errors import NotFoundError, StoreError, UniqueViolationError
from .io_utils import dump_collections, load_collections

Filter = Tuple[str, str, Any]
Target = Union[str, Sequence[Filter]]

STORE_FILENAME = "records.json"

# Contraintes d'unicité par collection (source de vérité contre les courses check-then-insert)
DEFAULT_UNIQUE_CONSTRAINTS: Dict[str, List[Tuple[str, ...]]] = {
    "events": [("code",)],
    "participants": [("event_id", "player_id")],
    "questions": [("event_id", "order_index")],
    "answers": [("participant_id", "question_id")],
}


def _contains(value: Any, candidates: Any) -> bool:
    try:
        return value in candidates
    except TypeError:
        return False


OPERATORS = {
    "==": operator.eq,
    "!=": operator.ne,
    "<": operator.lt,
    "<=": operator.le,
    ">": operator.gt,
    ">=": operator.ge,
    "in": _contains,
}


def matches(record: Dict[str, Any], filters: Iterable[Filter]) -> bool:
    """Vrai si le record satisfait tous les filtres (ET logique uniquement)."""
    for fld, op, value in filters:
        fn = OPERATORS.get(op)
        if fn is None:
            raise StoreError(f"unsupported operator: {op}")
        try:
            if not fn(record.get(fld), value):
                return False
        except TypeError:
            # comparaison impossible (ex: None < 3) → non concordant
            return False
    return True


def sort_records(records: List[Dict[str, Any]], order_by: Sequence[Tuple[str, str]]) -> List[Dict[str, Any]]:
    """Tri multi-champs stable; un champ absent passe avant toute valeur (après en desc). Le premier critère est prioritaire."""
    out = list(records)
    for fld, direction in reversed(list(order_by)):
        out.sort(key=lambda r: (r.get(fld) is not None, r.get(fld)), reverse=(direction == "desc"))
    return out


@dataclass
class MemoryRecordStore:
    path: Optional[Path] = None
    unique_constraints: Dict[str, List[Tuple[str, ...]]] = field(
        default_factory=lambda: {k: list(v) for k, v in DEFAULT_UNIQUE_CONSTRAINTS.items()}
    )
    _lock: RLock = field(default_factory=RLock, init=False, repr=False)
    _collections: Dict[str, Dict[str, Dict[str, Any]]] = field(default_factory=dict, init=False, repr=False)

    def __post_init__(self) -> None:
        if self.path is not None:
            self.path = Path(self.path)
            self.load()

    # -----------------------------
    # Persistance
    # -----------------------------
    def load(self) -> None:
        """Recharge les collections depuis le disque (ou vide si absent)."""
        with self._lock:
            self._collections = load_collections(self.path) if self.path else {}

    def save(self) -> None:
        with self._lock:
            if self.path is not None:
                dump_collections(self.path, self._collections)

    def reset(self) -> None:
        """Vide toutes les collections (sans toucher au disque)."""
        with self._lock:
            self._collections = {}

    # -----------------------------
    # Helpers internes
    # -----------------------------
    def _coll(self, collection: str) -> Dict[str, Dict[str, Any]]:
        return self._collections.setdefault(collection, {})

    def _select_nolock(self, collection: str, target: Target) -> List[Dict[str, Any]]:
        coll = self._coll(collection)
        if isinstance(target, str):
            rec = coll.get(target)
            return [rec] if rec is not None else []
        return [rec for rec in coll.values() if matches(rec, target)]

    def _check_unique_nolock(self, collection: str, candidate: Dict[str, Any], pending: List[Dict[str, Any]]) -> None:
        existing = list(self._coll(collection).values()) + pending
        for fields in self.unique_constraints.get(collection, []):
            key = tuple(candidate.get(f) for f in fields)
            if any(v is None for v in key):
                continue
            for other in existing:
                if other.get("id") == candidate.get("id"):
                    continue
                if tuple(other.get(f) for f in fields) == key:
                    raise UniqueViolationError(collection, fields, key)

    # -----------------------------
    # Interface publique
    # -----------------------------
    async def ping(self) -> bool:
        return True

    async def query(
        self,
        collection: str,
        filters: Sequence[Filter] = (),
        order_by: Optional[Sequence[Tuple[str, str]]] = None,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        with self._lock:
            rows = self._select_nolock(collection, list(filters))
            if order_by:
                order_fields = {f for f, _ in order_by}
                if any(f not in order_fields for f, _, _ in filters):
                    raise StoreError(f"composite index required on {collection} for {sorted(order_fields)}")
                rows = sort_records(rows, order_by)
            if limit is not None:
                rows = rows[:limit]
            return copy.deepcopy(rows)

    async def insert(self, collection: str, records: Union[Dict[str, Any], List[Dict[str, Any]]]):
        """Insère un ou plusieurs records (tout ou rien si une contrainte d'unicité échoue)."""
        many = isinstance(records, list)
        batch = records if many else [records]
        now = time.time()
        with self._lock:
            prepared: List[Dict[str, Any]] = []
            for rec in batch:
                doc = copy.deepcopy(rec)
                doc.setdefault("id", uuid4().hex)
                doc["created_at"] = now
                doc["updated_at"] = now
                self._check_unique_nolock(collection, doc, prepared)
                prepared.append(doc)
            coll = self._coll(collection)
            for doc in prepared:
                coll[doc["id"]] = doc
            self.save()
            inserted = copy.deepcopy(prepared)
        return inserted if many else inserted[0]

    async def update(self, collection: str, target: Target, patch: Dict[str, Any]) -> int:
        with self._lock:
            rows = self._select_nolock(collection, target)
            now = time.time()
            for rec in rows:
                candidate = {**rec, **patch}
                self._check_unique_nolock(collection, candidate, [])
            for rec in rows:
                rec.update(copy.deepcopy(patch))
                rec["updated_at"] = now
            if rows:
                self.save()
            return len(rows)

    async def delete(self, collection: str, target: Target) -> int:
        if not isinstance(target, str) and not target:
            raise StoreError("delete requires an id or at least one filter")
        with self._lock:
            rows = self._select_nolock(collection, target)
            coll = self._coll(collection)
            for rec in rows:
                coll.pop(rec["id"], None)
            if rows:
                self.save()
            return len(rows)

    async def atomic_increment(self, collection: str, record_id: str, fld: str, amount: float) -> float:
        """Ajoute `amount` à `fld` sous verrou (pas de mise à jour perdue)."""
        with self._lock:
            rec = self._coll(collection).get(record_id)
            if rec is None:
                raise NotFoundError(f"{collection}/{record_id} not found")
            rec[fld] = (rec.get(fld) or 0) + amount
            rec["updated_at"] = time.time()
            self.save()
            return rec[fld]

    def stats(self) -> Dict[str, int]:
        with self._lock:
            return {name: len(coll) for name, coll in self._collections.items()}


def build_store(data_dir: Optional[str], persist: bool) -> MemoryRecordStore:
    """Store en mémoire, persisté dans `<data_dir>/records.json` si demandé."""
    if persist and data_dir:
        return MemoryRecordStore(path=Path(data_dir) / STORE_FILENAME)
    return MemoryRecordStore()

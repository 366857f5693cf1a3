"""
Registry des singletons du service
==================================

Expose le record store, l'adapter, le hub de diffusion et le contrôleur admin
partagés par les routes. Les instances sont créées à la demande puis mises en
cache en mémoire; `reset_registry()` repart de zéro (tests, reset admin).
"""
from __future__ import annotations

from threading import RLock
from typing import Optional

from app.config.settings import settings
from .admin_control import AdminController
from .broadcast import BroadcastHub
from .record_store import MemoryRecordStore, build_store
from .store_adapter import RecordStoreAdapter

_LOCK = RLock()
_STORE: Optional[MemoryRecordStore] = None
_ADAPTER: Optional[RecordStoreAdapter] = None
_HUB: Optional[BroadcastHub] = None
_ADMIN: Optional[AdminController] = None


def get_store() -> MemoryRecordStore:
    """Retourne le record store (chargé depuis `DATA_DIR` si la persistance est active)."""
    global _STORE
    with _LOCK:
        if _STORE is None:
            _STORE = build_store(settings.DATA_DIR, settings.STORE_PERSIST)
        return _STORE


def get_adapter() -> RecordStoreAdapter:
    global _ADAPTER
    with _LOCK:
        if _ADAPTER is None:
            _ADAPTER = RecordStoreAdapter(get_store())
        return _ADAPTER


def get_hub() -> BroadcastHub:
    global _HUB
    with _LOCK:
        if _HUB is None:
            _HUB = BroadcastHub()
        return _HUB


def get_admin() -> AdminController:
    global _ADMIN
    with _LOCK:
        if _ADMIN is None:
            _ADMIN = AdminController(get_adapter(), get_hub())
        return _ADMIN


def reset_registry(store: Optional[MemoryRecordStore] = None) -> None:
    """Oublie toutes les instances; `store` permet d'injecter un backend (tests)."""
    global _STORE, _ADAPTER, _HUB, _ADMIN
    with _LOCK:
        _STORE = store
        _ADAPTER = None
        _HUB = None
        _ADMIN = None

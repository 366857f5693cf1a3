"""
Service: broadcast.py
- `BroadcastHub` : primitive de diffusion. UN enregistrement écrasable par canal
  (pas une file). Chaque écriture remplace la valeur complète, nonce compris, et
  notifie tous les observateurs du canal.
- `BroadcastChannel` : pub/sub côté client au-dessus du hub
  (subscribe / on / send / unsubscribe), avec :
    * saut de la toute première notification (état du canal au moment de l'abonnement),
    * déduplication par nonce (un même nonce n'est jamais traité deux fois),
    * envoi "fail soft" : 3 tentatives, backoff linéaire 200ms × tentative.

Garanties:
- Boîte aux lettres à cohérence à terme : un observateur lit la DERNIÈRE valeur au
  moment de la livraison. Deux envois rapprochés peuvent n'être livrés qu'une fois
  (le premier est alors invisible pour cet observateur). Pas d'ordre global entre clients.
- Les livraisons se font sur la boucle asyncio de l'observateur (call_soon_threadsafe),
  donc un envoi depuis un thread (route sync) reste sûr.
"""
from __future__ import annotations

import asyncio
import logging
from threading import RLock
from typing import Any, Awaitable, Callable, Dict, Optional, Set
from uuid import uuid4

from app.config.settings import settings
from app.models.broadcast import BroadcastEventType, BroadcastMessage
from .errors import TransientError

logger = logging.getLogger(__name__)

MessageCallback = Callable[[Optional[BroadcastMessage]], None]
PayloadHandler = Callable[[Dict[str, Any]], None]


def event_channel_name(event_id: str) -> str:
    return f"event-{event_id}"


class _Watcher:
    """Observateur d'un canal : un drapeau "sale" + une livraison planifiée sur sa boucle."""

    def __init__(self, hub: "BroadcastHub", channel: str, callback: MessageCallback, loop: asyncio.AbstractEventLoop):
        self.hub = hub
        self.channel = channel
        self.callback = callback
        self.loop = loop
        self._dirty = False
        self._closed = False
        self._lock = RLock()

    def notify(self) -> None:
        with self._lock:
            if self._closed or self._dirty:
                return
            self._dirty = True
        try:
            self.loop.call_soon_threadsafe(self._deliver)
        except RuntimeError:
            # boucle fermée : l'observateur est orphelin
            self.close()

    def send_snapshot(self, message: Optional[BroadcastMessage]) -> None:
        try:
            self.loop.call_soon_threadsafe(self._call, message)
        except RuntimeError:
            self.close()

    def _deliver(self) -> None:
        with self._lock:
            self._dirty = False
        self._call(self.hub.read(self.channel))

    def _call(self, message: Optional[BroadcastMessage]) -> None:
        if self._closed:
            return
        try:
            self.callback(message)
        except Exception:
            logger.exception("Broadcast watcher callback failed", extra={"channel": self.channel})

    def close(self) -> None:
        with self._lock:
            self._closed = True


class BroadcastHub:
    """Un enregistrement par canal + observateurs (un seul écrivain légitime : l'admin)."""

    def __init__(self) -> None:
        self._lock = RLock()
        self._records: Dict[str, BroadcastMessage] = {}
        self._watchers: Dict[str, Set[_Watcher]] = {}

    def read(self, channel: str) -> Optional[BroadcastMessage]:
        with self._lock:
            message = self._records.get(channel)
            return message.model_copy(deep=True) if message else None

    def write(self, channel: str, message: BroadcastMessage) -> None:
        """Remplace l'enregistrement du canal puis notifie les observateurs."""
        with self._lock:
            self._records[channel] = message.model_copy(deep=True)
            watchers = list(self._watchers.get(channel, ()))
        for watcher in watchers:
            watcher.notify()

    async def publish(self, channel: str, event_type: BroadcastEventType, payload: Optional[Dict[str, Any]] = None) -> BroadcastMessage:
        message = BroadcastMessage(event_type=event_type, payload=dict(payload or {}), nonce=uuid4().hex)
        self.write(channel, message)
        return message

    def subscribe(self, channel: str, on_message: MessageCallback) -> Callable[[], None]:
        """
        Abonne `on_message` au canal (doit être appelé depuis une boucle asyncio active).
        Le premier appel reçoit l'état du canal AU MOMENT de l'abonnement (éventuellement
        None); toute écriture ultérieure est livrée après lui. Retourne la fonction de
        désabonnement (idempotente).
        """
        loop = asyncio.get_running_loop()
        watcher = _Watcher(self, channel, on_message, loop)
        with self._lock:
            self._watchers.setdefault(channel, set()).add(watcher)
            watcher.send_snapshot(self.read(channel))

        def _unsubscribe() -> None:
            watcher.close()
            with self._lock:
                bucket = self._watchers.get(channel)
                if bucket is not None:
                    bucket.discard(watcher)
                    if not bucket:
                        self._watchers.pop(channel, None)

        return _unsubscribe

    def clear(self, channel: Optional[str] = None) -> None:
        with self._lock:
            if channel is None:
                self._records.clear()
            else:
                self._records.pop(channel, None)

    def stats(self) -> Dict[str, int]:
        with self._lock:
            return {name: len(bucket) for name, bucket in self._watchers.items()}


class BroadcastChannel:
    """
    Canal nommé côté client.
    - `on(event_type, handler)` : un handler par type d'événement (reçoit le payload).
    - `subscribe()` / `unsubscribe()` : aussi utilisable comme context manager.
    - `send(event_type, payload)` → True si publié, False après épuisement des tentatives.
    """

    def __init__(
        self,
        hub: BroadcastHub,
        name: str,
        *,
        send_attempts: Optional[int] = None,
        backoff_ms: Optional[int] = None,
        sleep: Optional[Callable[[float], Awaitable[None]]] = None,
    ) -> None:
        self.hub = hub
        self.name = name
        self.send_attempts = send_attempts or settings.BROADCAST_SEND_ATTEMPTS
        self.backoff_ms = settings.BROADCAST_BACKOFF_MS if backoff_ms is None else backoff_ms
        self._sleep = sleep or asyncio.sleep
        self._handlers: Dict[str, PayloadHandler] = {}
        self._unsubscribe: Optional[Callable[[], None]] = None
        self._initial_snapshot_skipped = False
        self._last_nonce: Optional[str] = None

    @property
    def subscribed(self) -> bool:
        return self._unsubscribe is not None

    def on(self, event_type: str, handler: PayloadHandler) -> "BroadcastChannel":
        self._handlers[event_type] = handler
        return self

    def subscribe(self) -> "BroadcastChannel":
        self.unsubscribe()
        self._initial_snapshot_skipped = False
        self._last_nonce = None
        self._unsubscribe = self.hub.subscribe(self.name, self._on_snapshot)
        return self

    def _on_snapshot(self, message: Optional[BroadcastMessage]) -> None:
        if message is None:
            # canal encore vide : la prochaine écriture est un vrai événement
            self._initial_snapshot_skipped = True
            return
        if not self._initial_snapshot_skipped:
            # état antérieur à l'abonnement : mémorisé, jamais rejoué
            self._initial_snapshot_skipped = True
            self._last_nonce = message.nonce
            return
        if message.nonce == self._last_nonce:
            return
        self._last_nonce = message.nonce

        handler = self._handlers.get(message.event_type)
        if handler is None:
            logger.debug("No handler for broadcast", extra={"channel": self.name, "event_type": message.event_type})
            return
        handler(dict(message.payload))

    async def send(self, event_type: BroadcastEventType, payload: Optional[Dict[str, Any]] = None) -> bool:
        for attempt in range(1, self.send_attempts + 1):
            try:
                await self.hub.publish(self.name, event_type, payload)
                return True
            except (TransientError, OSError):
                logger.warning(
                    "Broadcast attempt failed, retrying",
                    extra={"channel": self.name, "event_type": event_type, "attempt": attempt},
                )
                if attempt < self.send_attempts:
                    await self._sleep(self.backoff_ms * attempt / 1000.0)
        logger.error(
            "Broadcast failed after retries",
            extra={"channel": self.name, "event_type": event_type, "attempts": self.send_attempts},
        )
        return False

    def unsubscribe(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None

    def __enter__(self) -> "BroadcastChannel":
        return self.subscribe()

    def __exit__(self, exc_type, exc, tb) -> None:
        self.unsubscribe()

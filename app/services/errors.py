"""
Service: errors.py
- Taxonomie des erreurs du quiz (NotFound, Conflict, Transient, Validation, Fatal).
- Erreurs bas niveau du record store (contrainte d'unicité, incrément atomique absent).
- Helper `retry_transient` : nouvelles tentatives avec backoff linéaire.

Politique:
- NotFound / Conflict remontent directement à l'acteur (joueur ou admin), sans retry.
- Transient est retenté N fois (backoff = base × tentative) puis propagé.
- Fatal interrompt l'opération admin (aucun event partiel).
"""
from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Optional, Sequence, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class QuizError(RuntimeError):
    """Base de toutes les erreurs métier du quiz."""


class NotFoundError(QuizError):
    """Ressource introuvable (ex: code d'event inconnu) — corrigeable par l'utilisateur."""


class ConflictError(QuizError):
    """Opération rejetée car elle entre en conflit avec l'état existant (jamais retentée)."""


class DuplicateJoinError(ConflictError):
    """Le couple (event_id, player_id) est déjà inscrit."""

    def __init__(self, message: str = "This Player ID has already been used to join this event. Each ID can only be used once."):
        super().__init__(message)


class DuplicateAnswerError(ConflictError):
    """Une réponse existe déjà pour ce couple (participant, question)."""


class TransientError(QuizError):
    """Échec passager (timeout réseau/stockage) — peut être retenté."""


class QuestionValidationError(QuizError):
    """Brouillon de question invalide (écarté du lot, jamais fatal pour le lot)."""


class FatalError(QuizError):
    """Stockage injoignable : opération abandonnée, remontée à l'admin."""


class StoreError(RuntimeError):
    """Erreur générique du record store."""


class UniqueViolationError(StoreError):
    """Insertion refusée par une contrainte d'unicité du store."""

    def __init__(self, collection: str, fields: Sequence[str], values: Sequence[object]):
        self.collection = collection
        self.fields = tuple(fields)
        self.values = tuple(values)
        super().__init__(f"duplicate key on {collection}{self.fields}: {self.values}")


class AtomicIncrementUnavailable(StoreError):
    """Le backend ne fournit pas d'incrément atomique (déclenche le repli lecture+écriture)."""


async def retry_transient(
    fn: Callable[[], Awaitable[T]],
    *,
    attempts: int,
    backoff_ms: int,
    label: str = "operation",
    sleep: Optional[Callable[[float], Awaitable[None]]] = None,
) -> T:
    """
    Exécute `fn` en retentant sur `TransientError`.
    Backoff linéaire `backoff_ms × tentative`; la dernière erreur est propagée.
    """
    sleeper = sleep or asyncio.sleep
    attempts = max(1, attempts)
    for attempt in range(1, attempts + 1):
        try:
            return await fn()
        except TransientError:
            if attempt >= attempts:
                logger.error("Transient failure, giving up", extra={"label": label, "attempts": attempts})
                raise
            logger.warning(
                "Transient failure, retrying",
                extra={"label": label, "attempt": attempt, "attempts": attempts},
            )
            await sleeper(backoff_ms * attempt / 1000.0)
    raise AssertionError("unreachable")

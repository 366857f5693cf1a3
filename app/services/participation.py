"""
Service: participation.py
Protocoles joueur partagés par le client (`game_client.py`) et les routes HTTP :

1) Inscription (join) :
   - résolution de l'event par code (insensible à la casse), rejet si terminé ;
   - pré-vérification (event_id, player_id) → DuplicateJoinError ;
   - insertion ; une violation d'unicité (join concurrent passé entre la vérification et
     l'insertion) remonte la MÊME DuplicateJoinError. La contrainte du store fait foi,
     la pré-vérification n'est qu'une optimisation ;
   - lecture des questions ordonnées par `order_index`.

2) Persistance d'une réponse :
   - insertion de l'Answer (immuable) + incrément du score du participant ;
   - incrément atomique du store si disponible, sinon repli lecture puis écriture.
     ⚠️ Le repli laisse une fenêtre de course (deux soumissions simultanées du même
     participant peuvent perdre un incrément). Compromis assumé, journalisé en warning.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import List, Optional, Tuple

from app.models.answer import Answer
from app.models.event import Event
from app.models.player import LeaderboardEntry, Participant
from app.models.question import Question
from .errors import (
    AtomicIncrementUnavailable,
    ConflictError,
    DuplicateAnswerError,
    DuplicateJoinError,
    NotFoundError,
    UniqueViolationError,
)
from .store_adapter import RecordStoreAdapter

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class JoinResult:
    event: Event
    participant: Participant
    questions: Tuple[Question, ...]


def normalize_code(code: Optional[str]) -> str:
    return (code or "").strip().upper()


def normalize_player_id(player_id: Optional[str]) -> str:
    return (player_id or "").strip().upper()


async def resolve_event(adapter: RecordStoreAdapter, code: str) -> Event:
    normalized = normalize_code(code)
    record = None
    if normalized:
        record = await adapter.collection("events").eq("code", normalized).maybe_single()
    if record is None:
        raise NotFoundError("Event not found. Check the code and try again.")
    return Event.model_validate(record)


async def fetch_questions(adapter: RecordStoreAdapter, event_id: str) -> Tuple[Question, ...]:
    rows = await adapter.collection("questions").eq("event_id", event_id).order("order_index").execute()
    return tuple(Question.model_validate(r) for r in rows)


async def join_event(adapter: RecordStoreAdapter, code: str, player_id: str, name: str) -> JoinResult:
    pid = normalize_player_id(player_id)
    display_name = (name or "").strip()
    if not pid or not display_name:
        raise ValueError("player_id and name are required")

    event = await resolve_event(adapter, code)
    if event.is_finished:
        raise ConflictError("This event has already ended.")

    existing = await (
        adapter.collection("participants").eq("event_id", event.id).eq("player_id", pid).maybe_single()
    )
    if existing:
        raise DuplicateJoinError()

    try:
        record = await adapter.collection("participants").insert(
            {"event_id": event.id, "player_id": pid, "name": display_name, "score": 0}
        ).single()
    except UniqueViolationError as exc:
        logger.info("Concurrent duplicate join rejected by store", extra={"event_id": event.id, "player_id": pid})
        raise DuplicateJoinError() from exc

    participant = Participant.model_validate(record)
    questions = await fetch_questions(adapter, event.id)
    logger.info(
        "Participant joined",
        extra={"event_id": event.id, "participant_id": participant.id, "status": event.status},
    )
    return JoinResult(event=event, participant=participant, questions=questions)


async def increment_score(adapter: RecordStoreAdapter, participant_id: str, amount: float) -> float:
    """Incrémente `participants.score`; jamais d'écrasement aveugle hors du repli documenté."""
    try:
        return await adapter.atomic_increment("participants", participant_id, "score", amount)
    except AtomicIncrementUnavailable:
        logger.warning(
            "Atomic increment unavailable, falling back to read-then-write (race window)",
            extra={"participant_id": participant_id},
        )
    current = await adapter.collection("participants").eq("id", participant_id).single()
    new_score = (current.get("score") or 0) + amount
    await adapter.collection("participants").eq("id", participant_id).update({"score": new_score}).execute()
    return new_score


async def _insert_answer(adapter: RecordStoreAdapter, answer: Answer) -> dict:
    try:
        return await adapter.collection("answers").insert(answer.model_dump()).single()
    except UniqueViolationError as exc:
        raise DuplicateAnswerError("An answer was already recorded for this question.") from exc


async def persist_answer(adapter: RecordStoreAdapter, answer: Answer, *, parallel: bool = True) -> Optional[float]:
    """
    Enregistre l'Answer et crédite le score.
    - parallel=True (client) : les deux écritures partent ensemble; le garde local du client
      empêche les doublons en amont.
    - parallel=False (route serveur) : l'insertion passe d'abord; un doublon est rejeté
      (DuplicateAnswerError) sans toucher au score.
    Retourne le nouveau score du participant.
    """
    if not parallel:
        await _insert_answer(adapter, answer)
        return await increment_score(adapter, answer.participant_id, answer.score)

    inserted, new_score = await asyncio.gather(
        _insert_answer(adapter, answer),
        increment_score(adapter, answer.participant_id, answer.score),
        return_exceptions=True,
    )
    for outcome in (inserted, new_score):
        if isinstance(outcome, BaseException):
            raise outcome
    return new_score


async def leaderboard(adapter: RecordStoreAdapter, event_id: str) -> List[LeaderboardEntry]:
    """Classement recalculé à la demande depuis les participants (score décroissant)."""
    rows = await adapter.collection("participants").eq("event_id", event_id).order("score", "desc").execute()
    return [
        LeaderboardEntry(participant_id=r["id"], name=r.get("name", ""), score=float(r.get("score") or 0))
        for r in rows
    ]

"""
Service: admin_control.py
Rôle:
- Surface de commande de l'admin (seul écrivain légitime du canal d'un event).
- Chaque commande écrit d'abord l'Event dans le store, PUIS diffuse sur `event-<id>`.

Canal "dernier écrit gagnant":
- Le message FINAL de chaque commande porte tout l'état utile au joueur
  (event complet, classement frais), de sorte que la perte d'un message
  intermédiaire de la même commande est sans conséquence.

Création d'event:
- ping du store avant tout travail (FatalError si injoignable → aucun event partiel),
- code = 4 caractères alphanumériques du nom + 4 aléatoires, en majuscules,
  régénéré si la contrainte d'unicité `events.code` refuse l'insertion,
- insertion de l'event avec retries (TransientError, backoff linéaire),
- questions insérées par lots; un lot en échec → suppression de l'event et de ses questions.

Un event `finished` est immuable : toute commande d'écriture lève ConflictError
(lectures, export et purge explicite restent permis).
"""
from __future__ import annotations

import csv
import io
import logging
import random
import re
import string
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Tuple

import anyio

from app.config.settings import settings
from app.models.event import Event
from app.models.player import LeaderboardEntry
from app.models.question import Question, QuestionDraft
from . import participation
from .broadcast import BroadcastChannel, BroadcastHub, event_channel_name
from .errors import (
    ConflictError,
    FatalError,
    NotFoundError,
    StoreError,
    TransientError,
    UniqueViolationError,
    retry_transient,
)
from .question_generator import get_generator
from .store_adapter import RecordStoreAdapter

logger = logging.getLogger(__name__)

CODE_RANDOM_CHARS = 4
CODE_ATTEMPTS = 5
CSV_HEADERS = ["Rank", "Name", "Player ID", "Score", "Correct Answers", "Total Questions"]

_rng = random.SystemRandom()


def generate_code(name: str) -> str:
    prefix = re.sub(r"[^a-zA-Z0-9]", "", name or "")[:4]
    suffix = "".join(_rng.choice(string.ascii_lowercase + string.digits) for _ in range(CODE_RANDOM_CHARS))
    return (prefix + suffix).upper()


class AdminController:
    def __init__(
        self,
        adapter: RecordStoreAdapter,
        hub: BroadcastHub,
        *,
        generator: Any = None,
        retry_attempts: Optional[int] = None,
        retry_backoff_ms: Optional[int] = None,
        batch_size: Optional[int] = None,
        sleep: Optional[Callable[[float], Awaitable[None]]] = None,
    ) -> None:
        self.adapter = adapter
        self.hub = hub
        self.generator = generator
        self.retry_attempts = retry_attempts or settings.STORE_RETRY_ATTEMPTS
        self.retry_backoff_ms = settings.STORE_RETRY_BACKOFF_MS if retry_backoff_ms is None else retry_backoff_ms
        self.batch_size = batch_size or settings.QUESTION_BATCH_SIZE
        self._sleep = sleep

    # ------------------------------------------------------------------
    # Lectures
    # ------------------------------------------------------------------
    async def get_event(self, event_id: str) -> Event:
        record = await self.adapter.collection("events").eq("id", event_id).maybe_single()
        if record is None:
            raise NotFoundError("Event not found.")
        return Event.model_validate(record)

    async def list_events(self, limit: int = 20) -> List[Event]:
        rows = await self.adapter.collection("events").order("created_at", "desc").limit(limit).execute()
        return [Event.model_validate(r) for r in rows]

    async def questions(self, event_id: str) -> Tuple[Question, ...]:
        return await participation.fetch_questions(self.adapter, event_id)

    async def leaderboard(self, event_id: str) -> List[LeaderboardEntry]:
        await self.get_event(event_id)
        return await participation.leaderboard(self.adapter, event_id)

    async def _leaderboard_payload(self, event_id: str) -> List[Dict[str, Any]]:
        return [entry.model_dump() for entry in await participation.leaderboard(self.adapter, event_id)]

    async def round_stats(self, event_id: str, index: int) -> Dict[str, Any]:
        questions = await self.questions(event_id)
        if not 0 <= index < len(questions):
            raise NotFoundError(f"No question at index {index}.")
        question = questions[index]
        answers = await self.adapter.collection("answers").eq("question_id", question.id).execute()
        participants = await self.adapter.collection("participants").eq("event_id", event_id).execute()
        return {
            "question_index": index,
            "question_id": question.id,
            "answered": len(answers),
            "correct": sum(1 for a in answers if a.get("is_correct")),
            "participants": len(participants),
        }

    async def export_results_csv(self, event_id: str) -> str:
        """CSV des résultats (classement décroissant, réponses correctes par joueur)."""
        await self.get_event(event_id)
        participants = await (
            self.adapter.collection("participants").eq("event_id", event_id).order("score", "desc").execute()
        )
        answers = await self.adapter.collection("answers").eq("event_id", event_id).execute()
        total_questions = len(await self.questions(event_id))

        correct_by_participant: Dict[str, int] = {}
        for a in answers:
            if a.get("is_correct"):
                pid = a.get("participant_id")
                correct_by_participant[pid] = correct_by_participant.get(pid, 0) + 1

        buf = io.StringIO()
        writer = csv.writer(buf, lineterminator="\n")
        writer.writerow(CSV_HEADERS)
        for rank, p in enumerate(participants, start=1):
            writer.writerow([
                rank,
                p.get("name") or "",
                p.get("player_id") or "",
                p.get("score") or 0,
                correct_by_participant.get(p["id"], 0),
                total_questions,
            ])
        return buf.getvalue()

    # ------------------------------------------------------------------
    # Écritures
    # ------------------------------------------------------------------
    async def _require_mutable(self, event_id: str) -> Event:
        event = await self.get_event(event_id)
        if event.is_finished:
            raise ConflictError("This event has already ended.")
        return event

    async def _save_event(self, event_id: str, patch: Dict[str, Any]) -> Event:
        record = await self.adapter.collection("events").eq("id", event_id).update(patch).single()
        return Event.model_validate(record)

    async def _broadcast(self, event_id: str, event_type: str, payload: Dict[str, Any]) -> bool:
        channel = BroadcastChannel(self.hub, event_channel_name(event_id))
        return await channel.send(event_type, payload)

    async def _with_retry(self, fn, label: str):
        return await retry_transient(
            fn,
            attempts=self.retry_attempts,
            backoff_ms=self.retry_backoff_ms,
            label=label,
            sleep=self._sleep,
        )

    async def _health_check(self) -> None:
        try:
            ok = await self.adapter.ping()
        except (StoreError, TransientError, OSError) as exc:
            raise FatalError("Cannot reach the record store. Check that it is running, then try again.") from exc
        if not ok:
            raise FatalError("Cannot reach the record store. Check that it is running, then try again.")

    async def _insert_event(self, data: Dict[str, Any]) -> Dict[str, Any]:
        for attempt in range(1, CODE_ATTEMPTS + 1):
            doc = {**data, "code": generate_code(data["name"])}
            try:
                return await self._with_retry(
                    lambda: self.adapter.collection("events").insert(doc).single(),
                    label="event insert",
                )
            except UniqueViolationError:
                logger.info("Event code collision, regenerating", extra={"attempt": attempt})
        raise ConflictError("Could not allocate a unique event code.")

    async def _rollback_event(self, event_id: str) -> None:
        try:
            await self.adapter.collection("questions").eq("event_id", event_id).delete().execute()
            await self.adapter.collection("events").eq("id", event_id).delete().execute()
        except (StoreError, TransientError):
            logger.exception("Rollback of partial event failed", extra={"event_id": event_id})

    async def create_event(
        self,
        name: str,
        questions: Sequence[QuestionDraft],
        *,
        topic: Optional[str] = None,
        difficulty: str = "medium",
        time_per_question: Optional[int] = None,
    ) -> Tuple[Event, Tuple[Question, ...]]:
        name = (name or "").strip()
        if not name:
            raise ValueError("event name is required")
        if not questions:
            raise ValueError("at least one question is required")

        await self._health_check()

        record = await self._insert_event({
            "name": name,
            "topic": topic,
            "difficulty": difficulty,
            "question_count": len(questions),
            "time_per_question": time_per_question or settings.DEFAULT_TIME_PER_QUESTION,
            "status": "waiting",
            "current_question_index": -1,
        })
        event = Event.model_validate(record)
        logger.info("Event created", extra={"event_id": event.id, "code": event.code})

        docs = [
            {
                "event_id": event.id,
                "question_text": q.question_text,
                "options": list(q.options),
                "correct_answer": q.correct_answer,
                "explanation": q.explanation,
                "category": q.category,
                "order_index": idx,
            }
            for idx, q in enumerate(questions)
        ]
        total_batches = (len(docs) + self.batch_size - 1) // self.batch_size
        try:
            for start in range(0, len(docs), self.batch_size):
                batch = docs[start:start + self.batch_size]
                batch_num = start // self.batch_size + 1
                await self._with_retry(
                    lambda: self.adapter.collection("questions").insert(batch).execute(),
                    label=f"question batch {batch_num}",
                )
                logger.info(
                    "Question batch inserted",
                    extra={"event_id": event.id, "batch": batch_num, "batches": total_batches, "count": len(batch)},
                )
        except (StoreError, TransientError):
            logger.error("Question insert failed, rolling back event", extra={"event_id": event.id})
            await self._rollback_event(event.id)
            raise

        return event, await self.questions(event.id)

    async def generate_questions(self, topic: str, count: int = 10, difficulty: str = "medium") -> List[QuestionDraft]:
        generator = self.generator or get_generator()
        return await anyio.to_thread.run_sync(lambda: generator.generate(topic, count, difficulty))

    async def start_event(self, event_id: str) -> Event:
        await self._require_mutable(event_id)
        event = await self._save_event(event_id, {"status": "active", "current_question_index": 0})
        await self._broadcast(event_id, "question_reveal", {"questionIndex": 0})
        await self._broadcast(event_id, "event_update", {"status": "active", "event": event.model_dump()})
        logger.info("Event started", extra={"event_id": event_id})
        return event

    async def reveal_question(self, event_id: str, index: int) -> Event:
        event = await self._require_mutable(event_id)
        if index >= event.question_count:
            return await self.end_event(event_id)
        if index < 0:
            raise ValueError("question index must be >= 0")
        event = await self._save_event(event_id, {"status": "active", "current_question_index": index})
        await self._broadcast(event_id, "question_reveal", {"questionIndex": index})
        logger.info("Question revealed", extra={"event_id": event_id, "index": index})
        return event

    async def send_question_now(self, event_id: str) -> Event:
        event = await self._require_mutable(event_id)
        return await self.reveal_question(event_id, event.current_question_index + 1)

    async def start_countdown(self, event_id: str, seconds: Optional[int] = None) -> Event:
        event = await self._require_mutable(event_id)
        if event.current_question_index + 1 >= event.question_count:
            return await self.end_event(event_id)
        await self._broadcast(
            event_id,
            "next_question_countdown",
            {"seconds": seconds or settings.NEXT_QUESTION_COUNTDOWN, "leaderboard": await self._leaderboard_payload(event_id)},
        )
        return event

    async def show_review(self, event_id: str) -> Event:
        event = await self._require_mutable(event_id)
        await self._broadcast(event_id, "round_review", {"leaderboard": await self._leaderboard_payload(event_id)})
        return event

    async def publish_leaderboard(self, event_id: str) -> List[Dict[str, Any]]:
        await self._require_mutable(event_id)
        board = await self._leaderboard_payload(event_id)
        await self._broadcast(event_id, "leaderboard_update", {"leaderboard": board})
        return board

    async def end_event(self, event_id: str) -> Event:
        await self._require_mutable(event_id)
        event = await self._save_event(event_id, {"status": "finished"})
        await self._broadcast(event_id, "game_end", {"leaderboard": await self._leaderboard_payload(event_id)})
        logger.info("Event finished", extra={"event_id": event_id})
        return event

    async def purge_participants(self, event_id: str) -> Dict[str, int]:
        await self.get_event(event_id)
        answers = await self.adapter.collection("answers").eq("event_id", event_id).delete().execute()
        participants = await self.adapter.collection("participants").eq("event_id", event_id).delete().execute()
        logger.info("Participants purged", extra={"event_id": event_id, "participants": participants, "answers": answers})
        return {"participants": participants, "answers": answers}

    async def delete_event(self, event_id: str) -> None:
        """Supprime l'event et toutes ses données (réponses, questions, participants)."""
        await self.get_event(event_id)
        for coll in ("answers", "questions", "participants"):
            await self.adapter.collection(coll).eq("event_id", event_id).delete().execute()
        await self.adapter.collection("events").eq("id", event_id).delete().execute()
        self.hub.clear(event_channel_name(event_id))
        logger.info("Event deleted", extra={"event_id": event_id})

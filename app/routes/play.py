"""
Module routes/play.py
Rôle:
- Protocoles joueur côté serveur, pour les clients distants (navigateur, bots).

Endpoints:
- POST /play/join     : inscription (code insensible à la casse, player_id unique par event).
- POST /play/answer   : enregistrement d'une réponse; score calculé ici depuis la question stockée.
- GET  /play/{event_id}/questions : questions ordonnées de l'event.

Notes:
- Une seconde réponse pour la même question est rejetée (409) sans toucher au score.
- Le temps de réponse est fourni par le client (mesuré depuis l'affichage de la question).
"""
import logging

from fastapi import APIRouter
from pydantic import BaseModel, Field

from app.config.settings import settings
from app.models.answer import NO_ANSWER, Answer, SubmittedAnswer
from app.models.player import Participant
from app.services import participation
from app.services.errors import ConflictError, NotFoundError
from app.services.registry import get_adapter
from app.services.scoring import score

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/play", tags=["play"])


class JoinPayload(BaseModel):
    code: str = Field(min_length=1)
    player_id: str = Field(min_length=1)
    name: str = Field(min_length=1)


class AnswerPayload(BaseModel):
    participant_id: str
    question_id: str
    answer_index: int = Field(ge=NO_ANSWER)
    response_time_ms: int = Field(ge=0)


@router.post("/join")
async def join(payload: JoinPayload):
    result = await participation.join_event(get_adapter(), payload.code, payload.player_id, payload.name)
    return {
        "event": result.event.model_dump(),
        "participant": result.participant.model_dump(),
        "questions": [q.model_dump() for q in result.questions],
    }


@router.post("/answer")
async def answer(payload: AnswerPayload):
    adapter = get_adapter()
    record = await adapter.collection("participants").eq("id", payload.participant_id).maybe_single()
    if record is None:
        raise NotFoundError("Participant not found.")
    participant = Participant.model_validate(record)

    event = await adapter.collection("events").eq("id", participant.event_id).single()
    if event.get("status") == "finished":
        raise ConflictError("This event has already ended.")

    question = await (
        adapter.collection("questions")
        .eq("id", payload.question_id)
        .eq("event_id", participant.event_id)
        .maybe_single()
    )
    if question is None:
        raise NotFoundError("Question not found for this event.")

    is_correct = payload.answer_index >= 0 and payload.answer_index == int(question["correct_answer"])
    points = score(payload.response_time_ms, is_correct, event.get("time_per_question") or settings.DEFAULT_TIME_PER_QUESTION)
    total = await participation.persist_answer(
        adapter,
        Answer(
            event_id=participant.event_id,
            participant_id=participant.id,
            question_id=payload.question_id,
            answer_index=payload.answer_index,
            is_correct=is_correct,
            response_time_ms=payload.response_time_ms,
            score=points,
        ),
        parallel=False,
    )
    logger.info(
        "Answer recorded",
        extra={"participant_id": participant.id, "question_id": payload.question_id, "is_correct": is_correct},
    )
    submitted = SubmittedAnswer(
        question_id=payload.question_id,
        answer=payload.answer_index,
        is_correct=is_correct,
        response_time_ms=payload.response_time_ms,
        score=points,
    )
    return {"answer": submitted.model_dump(), "total_score": total}


@router.get("/{event_id}/questions")
async def questions(event_id: str):
    rows = await participation.fetch_questions(get_adapter(), event_id)
    return {"event_id": event_id, "questions": [q.model_dump() for q in rows]}

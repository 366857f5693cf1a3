"""
Module routes/events.py
Rôle:
- Surface de commande de l'admin (création, déroulé, export, purge).
- Classement public d'un event.

Intégrations:
- `AdminController` (registry) : écrit l'Event puis diffuse sur `event-<id>`.
- `admin_required` est posé PAR ROUTE (pas sur le router) pour laisser passer les préflights OPTIONS.
- Les erreurs métier (NotFound/Conflict/Fatal/Transient) sont traduites en HTTP par `app.main`.
"""
from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from fastapi.responses import PlainTextResponse
from pydantic import BaseModel, Field

from app.deps.auth import admin_required
from app.models.question import QuestionDraft
from app.services.registry import get_admin

router = APIRouter(prefix="/events", tags=["events"])


class CreateEventPayload(BaseModel):
    name: str = Field(min_length=1)
    topic: Optional[str] = None
    difficulty: str = "medium"
    time_per_question: Optional[int] = Field(default=None, gt=0)
    questions: List[QuestionDraft] = Field(min_length=1)


class GeneratePayload(BaseModel):
    topic: str = "General Knowledge"
    count: int = Field(default=10, ge=1, le=50)
    difficulty: str = "medium"


class RevealPayload(BaseModel):
    index: int = Field(ge=0)


class CountdownPayload(BaseModel):
    seconds: Optional[int] = Field(default=None, gt=0)


@router.get("", dependencies=[Depends(admin_required)])
async def list_events(limit: int = Query(default=20, ge=1, le=100)):
    return [e.model_dump() for e in await get_admin().list_events(limit)]


@router.post("", dependencies=[Depends(admin_required)])
async def create_event(payload: CreateEventPayload):
    """Crée l'event et ses questions (aucun event partiel en cas d'échec)."""
    event, questions = await get_admin().create_event(
        payload.name,
        payload.questions,
        topic=payload.topic,
        difficulty=payload.difficulty,
        time_per_question=payload.time_per_question,
    )
    return {"event": event.model_dump(), "questions": [q.model_dump() for q in questions]}


@router.post("/generate", dependencies=[Depends(admin_required)])
async def generate_questions(payload: GeneratePayload):
    """Aperçu des questions générées (non persistées)."""
    drafts = await get_admin().generate_questions(payload.topic, payload.count, payload.difficulty)
    return {"questions": [d.model_dump() for d in drafts]}


@router.get("/{event_id}", dependencies=[Depends(admin_required)])
async def get_event(event_id: str):
    admin = get_admin()
    event = await admin.get_event(event_id)
    questions = await admin.questions(event_id)
    return {"event": event.model_dump(), "questions": [q.model_dump() for q in questions]}


@router.delete("/{event_id}", dependencies=[Depends(admin_required)])
async def delete_event(event_id: str):
    await get_admin().delete_event(event_id)
    return {"ok": True, "event_id": event_id}


@router.post("/{event_id}/start", dependencies=[Depends(admin_required)])
async def start_event(event_id: str):
    return {"event": (await get_admin().start_event(event_id)).model_dump()}


@router.post("/{event_id}/reveal", dependencies=[Depends(admin_required)])
async def reveal_question(event_id: str, payload: RevealPayload):
    return {"event": (await get_admin().reveal_question(event_id, payload.index)).model_dump()}


@router.post("/{event_id}/next", dependencies=[Depends(admin_required)])
async def send_question_now(event_id: str):
    return {"event": (await get_admin().send_question_now(event_id)).model_dump()}


@router.post("/{event_id}/countdown", dependencies=[Depends(admin_required)])
async def start_countdown(event_id: str, payload: Optional[CountdownPayload] = None):
    seconds = payload.seconds if payload else None
    return {"event": (await get_admin().start_countdown(event_id, seconds)).model_dump()}


@router.post("/{event_id}/review", dependencies=[Depends(admin_required)])
async def show_review(event_id: str):
    return {"event": (await get_admin().show_review(event_id)).model_dump()}


@router.post("/{event_id}/leaderboard", dependencies=[Depends(admin_required)])
async def publish_leaderboard(event_id: str):
    return {"leaderboard": await get_admin().publish_leaderboard(event_id)}


@router.post("/{event_id}/end", dependencies=[Depends(admin_required)])
async def end_event(event_id: str):
    return {"event": (await get_admin().end_event(event_id)).model_dump()}


@router.delete("/{event_id}/participants", dependencies=[Depends(admin_required)])
async def purge_participants(event_id: str):
    return {"ok": True, "deleted": await get_admin().purge_participants(event_id)}


@router.get("/{event_id}/stats", dependencies=[Depends(admin_required)])
async def round_stats(event_id: str, index: int = Query(ge=0)):
    return await get_admin().round_stats(event_id, index)


@router.get("/{event_id}/results.csv", dependencies=[Depends(admin_required)])
async def export_results(event_id: str):
    admin = get_admin()
    event = await admin.get_event(event_id)
    filename = "".join(c if c.isalnum() else "_" for c in event.name) + "_results.csv"
    return PlainTextResponse(
        await admin.export_results_csv(event_id),
        media_type="text/csv; charset=utf-8",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@router.get("/{event_id}/leaderboard")
async def leaderboard(event_id: str):
    """Classement public (recalculé à chaque appel)."""
    entries = await get_admin().leaderboard(event_id)
    return {"event_id": event_id, "leaderboard": [e.model_dump() for e in entries]}

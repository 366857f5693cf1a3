"""
Service: game_machine.py
Rôle:
- Machine à états du joueur : `reduce(state, action) → state`, fonction PURE.
- États : idle → waiting → active ⇄ review → finished.
- Les actions sont des dataclasses gelées (union étiquetée `Action`).

Règle clé:
- Un rejeu de diffusion (livraison dupliquée, reconnexion) est idempotent :
  SHOW_QUESTION sur une question déjà répondue ou déjà affichée ne change rien,
  SUBMIT_ANSWER n'est compté qu'une fois par question.
- `reduce` renvoie l'objet `state` inchangé (même identité) quand l'action est sans effet ;
  le coordinateur s'en sert pour ne pas réarmer les timers.

Les effets de bord (timers, persistance, abonnements) vivent dans `game_client.py`.
"""
from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Literal, Optional, Tuple, Union

from app.config.settings import settings
from app.models.answer import NO_ANSWER, SubmittedAnswer
from app.models.event import Event
from app.models.player import LeaderboardEntry, Participant
from app.models.question import Question

GameStatus = Literal["idle", "waiting", "active", "review", "finished"]


@dataclass(frozen=True)
class GameState:
    status: GameStatus = "idle"
    event: Optional[Event] = None
    participant: Optional[Participant] = None
    questions: Tuple[Question, ...] = ()
    current_question_index: int = -1
    selected_answer: Optional[int] = None
    answer_submitted: bool = False
    question_started_at_ms: Optional[float] = None
    round_score: float = 0
    total_score: float = 0
    my_answers: Tuple[SubmittedAnswer, ...] = ()
    leaderboard: Tuple[LeaderboardEntry, ...] = ()
    next_question_countdown: int = 0
    time_left: int = field(default_factory=lambda: settings.DEFAULT_TIME_PER_QUESTION)
    loading: bool = False
    error: Optional[str] = None

    @property
    def event_id(self) -> Optional[str]:
        return self.event.id if self.event else None

    @property
    def participant_id(self) -> Optional[str]:
        return self.participant.id if self.participant else None

    @property
    def time_per_question(self) -> int:
        if self.event and self.event.time_per_question:
            return self.event.time_per_question
        return settings.DEFAULT_TIME_PER_QUESTION

    @property
    def current_question(self) -> Optional[Question]:
        if 0 <= self.current_question_index < len(self.questions):
            return self.questions[self.current_question_index]
        return None

    def has_answered(self, question_id: str) -> bool:
        return any(a.question_id == question_id for a in self.my_answers)

    @property
    def timer_should_run(self) -> bool:
        return self.status == "active" and self.time_left > 0 and not self.answer_submitted

    @property
    def needs_auto_submit(self) -> bool:
        return self.status == "active" and self.time_left == 0 and not self.answer_submitted

    @property
    def auto_submit_index(self) -> int:
        return self.selected_answer if self.selected_answer is not None else NO_ANSWER


# ---------------------------------------------------------------------------
# Actions
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class JoinSuccess:
    event: Event
    participant: Participant
    questions: Tuple[Question, ...]


@dataclass(frozen=True)
class ShowQuestion:
    index: int
    now_ms: float


@dataclass(frozen=True)
class SelectAnswer:
    index: int


@dataclass(frozen=True)
class SubmitAnswer:
    answer: SubmittedAnswer


@dataclass(frozen=True)
class Tick:
    pass


@dataclass(frozen=True)
class SetReview:
    pass


@dataclass(frozen=True)
class SetNextCountdown:
    seconds: int


@dataclass(frozen=True)
class TickNextCountdown:
    pass


@dataclass(frozen=True)
class SetFinished:
    pass


@dataclass(frozen=True)
class SetStatus:
    status: GameStatus


@dataclass(frozen=True)
class SetEvent:
    event: Event


@dataclass(frozen=True)
class SetLeaderboard:
    entries: Tuple[LeaderboardEntry, ...]


@dataclass(frozen=True)
class SetLoading:
    loading: bool


@dataclass(frozen=True)
class SetError:
    message: Optional[str]


@dataclass(frozen=True)
class Reset:
    pass


Action = Union[
    JoinSuccess, ShowQuestion, SelectAnswer, SubmitAnswer, Tick, SetReview, SetNextCountdown,
    TickNextCountdown, SetFinished, SetStatus, SetEvent, SetLeaderboard, SetLoading, SetError, Reset,
]


# ---------------------------------------------------------------------------
# Transitions
# ---------------------------------------------------------------------------

def _show_question(state: GameState, action: ShowQuestion) -> GameState:
    if state.status in ("idle", "finished"):
        return state
    idx = action.index
    if not 0 <= idx < len(state.questions):
        return state
    target = state.questions[idx]
    # déjà répondue, ou déjà affichée : rejeu sans effet
    if state.has_answered(target.id) or idx == state.current_question_index:
        return state
    return replace(
        state,
        status="active",
        current_question_index=idx,
        selected_answer=None,
        answer_submitted=False,
        question_started_at_ms=action.now_ms,
        round_score=0,
        time_left=state.time_per_question,
        next_question_countdown=0,
    )


def _submit_answer(state: GameState, action: SubmitAnswer) -> GameState:
    question = state.current_question
    if state.status != "active" or state.answer_submitted or question is None:
        return state
    answer = action.answer
    if answer.question_id != question.id or state.has_answered(answer.question_id):
        return state
    return replace(
        state,
        answer_submitted=True,
        selected_answer=answer.answer if answer.answer != NO_ANSWER else state.selected_answer,
        round_score=answer.score,
        total_score=state.total_score + answer.score,
        my_answers=state.my_answers + (answer,),
    )


def reduce(state: GameState, action: Action) -> GameState:
    """Transition pure. Retourne `state` lui-même si l'action ne s'applique pas."""
    if isinstance(action, Reset):
        return GameState()

    if isinstance(action, JoinSuccess):
        if state.status != "idle":
            return state
        return replace(
            state,
            status="waiting",
            event=action.event,
            participant=action.participant,
            questions=tuple(action.questions),
            error=None,
        )

    if isinstance(action, ShowQuestion):
        return _show_question(state, action)

    if isinstance(action, SelectAnswer):
        if state.status != "active" or state.answer_submitted:
            return state
        return replace(state, selected_answer=action.index)

    if isinstance(action, SubmitAnswer):
        return _submit_answer(state, action)

    if isinstance(action, Tick):
        if not state.timer_should_run:
            return state
        return replace(state, time_left=state.time_left - 1)

    if isinstance(action, SetReview):
        if state.status not in ("active", "review") or state.current_question is None:
            return state
        if state.status == "review":
            return state
        return replace(state, status="review")

    if isinstance(action, SetNextCountdown):
        seconds = max(0, int(action.seconds))
        if state.status == "finished" or seconds == state.next_question_countdown:
            return state
        return replace(state, next_question_countdown=seconds)

    if isinstance(action, TickNextCountdown):
        if state.next_question_countdown <= 0:
            return state
        return replace(state, next_question_countdown=state.next_question_countdown - 1)

    if isinstance(action, SetFinished):
        if state.status == "finished":
            return state
        return replace(state, status="finished", next_question_countdown=0)

    if isinstance(action, SetStatus):
        if action.status == "finished":
            return reduce(state, SetFinished())
        if state.status in ("idle", "finished") or state.status == action.status:
            return state
        if action.status == "active" and state.current_question is None:
            # "active" sans question affichée : on reste en attente de la révélation
            return state
        return replace(state, status=action.status)

    if isinstance(action, SetEvent):
        return replace(state, event=action.event)

    if isinstance(action, SetLeaderboard):
        return replace(state, leaderboard=tuple(action.entries))

    if isinstance(action, SetLoading):
        return replace(state, loading=action.loading)

    if isinstance(action, SetError):
        return replace(state, error=action.message, loading=False)

    raise TypeError(f"unknown action: {action!r}")

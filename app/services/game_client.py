"""
Service: game_client.py
Rôle:
- Coordinateur côté joueur : possède l'unique `GameState`, le canal de diffusion de l'event
  et les deux timers d'une seconde (timer de question, compte à rebours avant la suivante).
- Traduit les diffusions de l'admin en actions de la machine à états (`game_machine.reduce`).
- Lance la soumission de réponse (calcul du score + persistance non bloquante).

Concurrence:
- Une boucle asyncio par client : callbacks de diffusion et ticks des timers s'entrelacent
  sans parallélisme réel, appliqués dans l'ordre d'arrivée.
- Chaque callback relit `self.state` au moment où il s'exécute (jamais une copie capturée).
- `close()` (ou la sortie du `async with`) désabonne le canal et annule les timers sur
  tous les chemins, y compris avant un nouveau `join_event`.

Diffusions gérées (payloads):
- event_update {status?, event?}        - question_reveal {questionIndex}
- round_review {leaderboard?}           - leaderboard_update {leaderboard}
- next_question_countdown {seconds?, leaderboard?}
- game_end {leaderboard?}
"""
from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Callable, Dict, List, Optional, Set

from app.config.settings import settings
from app.models.answer import Answer, SubmittedAnswer
from app.models.event import Event
from app.models.player import LeaderboardEntry
from app.services import participation
from app.services.broadcast import BroadcastChannel, BroadcastHub, event_channel_name
from app.services.errors import QuizError, StoreError
from app.services.game_machine import (
    Action,
    GameState,
    JoinSuccess,
    Reset,
    SelectAnswer,
    SetError,
    SetEvent,
    SetFinished,
    SetLeaderboard,
    SetLoading,
    SetNextCountdown,
    SetReview,
    SetStatus,
    ShowQuestion,
    SubmitAnswer,
    Tick,
    TickNextCountdown,
    reduce,
)
from app.services.scoring import score
from app.services.store_adapter import RecordStoreAdapter

logger = logging.getLogger(__name__)

StateListener = Callable[[GameState], None]


def _monotonic_ms() -> float:
    return time.monotonic() * 1000


def _parse_leaderboard(raw: Any) -> List[LeaderboardEntry]:
    entries: List[LeaderboardEntry] = []
    for item in raw or []:
        if not isinstance(item, dict):
            continue
        entries.append(
            LeaderboardEntry(
                participant_id=str(item.get("participant_id") or item.get("id") or ""),
                name=item.get("name") or "",
                score=float(item.get("score") or 0),
            )
        )
    return entries


class GameClient:
    def __init__(
        self,
        adapter: RecordStoreAdapter,
        hub: BroadcastHub,
        *,
        tick_interval: Optional[float] = None,
        clock: Optional[Callable[[], float]] = None,
        countdown_default: Optional[int] = None,
    ) -> None:
        self.adapter = adapter
        self.hub = hub
        self.tick_interval = settings.TICK_INTERVAL_S if tick_interval is None else tick_interval
        self.clock = clock or _monotonic_ms
        self.countdown_default = countdown_default or settings.NEXT_QUESTION_COUNTDOWN
        self.state = GameState()
        self._channel: Optional[BroadcastChannel] = None
        self._question_timer: Optional[asyncio.Task] = None
        self._question_timer_index: Optional[int] = None
        self._countdown_timer: Optional[asyncio.Task] = None
        self._pending_writes: Set[asyncio.Task] = set()
        self._listeners: List[StateListener] = []

    # ------------------------------------------------------------------
    # État
    # ------------------------------------------------------------------
    def add_listener(self, listener: StateListener) -> Callable[[], None]:
        """Notifié après chaque transition effective (rendu hors périmètre)."""
        self._listeners.append(listener)
        return lambda: self._listeners.remove(listener) if listener in self._listeners else None

    def dispatch(self, action: Action) -> GameState:
        previous = self.state
        self.state = reduce(previous, action)
        if self.state is previous:
            return self.state
        self._sync_timers()
        for listener in list(self._listeners):
            listener(self.state)
        return self.state

    # ------------------------------------------------------------------
    # Timers
    # ------------------------------------------------------------------
    def _sync_timers(self) -> None:
        state = self.state
        try:
            current = asyncio.current_task()
        except RuntimeError:
            current = None

        if state.timer_should_run:
            running = self._question_timer is not None and not self._question_timer.done()
            if not running or self._question_timer_index != state.current_question_index:
                self._cancel_question_timer(current)
                self._question_timer_index = state.current_question_index
                self._question_timer = asyncio.create_task(self._run_question_timer())
        else:
            self._cancel_question_timer(current)

        if state.next_question_countdown > 0:
            if self._countdown_timer is None or self._countdown_timer.done():
                self._countdown_timer = asyncio.create_task(self._run_countdown())
        elif self._countdown_timer is not None:
            if self._countdown_timer is not current:
                self._countdown_timer.cancel()
            self._countdown_timer = None

    def _cancel_question_timer(self, current: Optional[asyncio.Task]) -> None:
        # la tâche courante sort d'elle-même de sa boucle; on ne l'annule pas en plein tick
        if self._question_timer is not None and self._question_timer is not current:
            self._question_timer.cancel()
        self._question_timer = None
        self._question_timer_index = None

    async def _run_question_timer(self) -> None:
        index = self.state.current_question_index
        while self.state.timer_should_run and self.state.current_question_index == index:
            await asyncio.sleep(self.tick_interval)
            self.dispatch(Tick())
            if self.state.needs_auto_submit:
                self.submit_answer(self.state.auto_submit_index)
                return

    async def _run_countdown(self) -> None:
        while self.state.next_question_countdown > 0:
            await asyncio.sleep(self.tick_interval)
            self.dispatch(TickNextCountdown())

    async def _stop_timers(self) -> None:
        tasks = [t for t in (self._question_timer, self._countdown_timer) if t is not None]
        self._question_timer = None
        self._question_timer_index = None
        self._countdown_timer = None
        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass

    # ------------------------------------------------------------------
    # Diffusion
    # ------------------------------------------------------------------
    def _apply_leaderboard(self, payload: Dict[str, Any]) -> None:
        if isinstance(payload.get("leaderboard"), list):
            self.dispatch(SetLeaderboard(tuple(_parse_leaderboard(payload["leaderboard"]))))

    def _on_event_update(self, payload: Dict[str, Any]) -> None:
        if isinstance(payload.get("event"), dict):
            self.dispatch(SetEvent(Event.model_validate(payload["event"])))
        status = payload.get("status")
        if status in ("waiting", "active", "review", "finished"):
            self.dispatch(SetStatus(status))
        event = self.state.event
        if event and event.status == "active" and event.current_question_index >= 0:
            # rattrapage si la révélation précédente a été écrasée sur le canal
            self.dispatch(ShowQuestion(event.current_question_index, self.clock()))

    def _on_question_reveal(self, payload: Dict[str, Any]) -> None:
        try:
            index = int(payload.get("questionIndex"))
        except (TypeError, ValueError):
            logger.warning("question_reveal without valid index", extra={"payload": payload})
            return
        self.dispatch(ShowQuestion(index, self.clock()))

    def _on_round_review(self, payload: Dict[str, Any]) -> None:
        self._apply_leaderboard(payload)
        self.dispatch(SetReview())

    def _on_countdown(self, payload: Dict[str, Any]) -> None:
        self._apply_leaderboard(payload)
        self.dispatch(SetNextCountdown(int(payload.get("seconds") or self.countdown_default)))

    def _on_game_end(self, payload: Dict[str, Any]) -> None:
        self._apply_leaderboard(payload)
        self.dispatch(SetFinished())

    def _subscribe(self, event_id: str) -> None:
        if self._channel is not None:
            self._channel.unsubscribe()
        channel = BroadcastChannel(self.hub, event_channel_name(event_id))
        channel.on("event_update", self._on_event_update)
        channel.on("question_reveal", self._on_question_reveal)
        channel.on("round_review", self._on_round_review)
        channel.on("leaderboard_update", self._apply_leaderboard)
        channel.on("next_question_countdown", self._on_countdown)
        channel.on("game_end", self._on_game_end)
        self._channel = channel.subscribe()

    # ------------------------------------------------------------------
    # Protocoles
    # ------------------------------------------------------------------
    async def join_event(self, code: str, player_id: str, name: str) -> participation.JoinResult:
        """Réinitialise tout (canal, timers, état) puis inscrit le joueur et s'abonne."""
        await self._teardown()
        self.dispatch(Reset())
        self.dispatch(SetLoading(True))
        try:
            result = await participation.join_event(self.adapter, code, player_id, name)
        except (QuizError, ValueError) as exc:
            self.dispatch(SetError(str(exc)))
            raise

        self.dispatch(JoinSuccess(result.event, result.participant, result.questions))
        event = result.event
        if event.status == "active" and event.current_question_index >= 0:
            # arrivée tardive : directement sur la question en cours
            self.dispatch(ShowQuestion(event.current_question_index, self.clock()))
        self._subscribe(event.id)
        self.dispatch(SetLoading(False))
        return result

    def select_answer(self, index: int) -> GameState:
        return self.dispatch(SelectAnswer(index))

    def submit_answer(self, index: int) -> Optional[SubmittedAnswer]:
        """
        Soumet une réponse pour la question courante (au plus une fois par question).
        Le score affiché est mis à jour immédiatement; la persistance part en tâche de fond
        et un échec de stockage n'annule pas l'état local.
        """
        s = self.state
        question = s.current_question
        if s.status != "active" or s.answer_submitted or question is None or s.has_answered(question.id):
            return None

        answer_index = int(index)
        now = self.clock()
        started = s.question_started_at_ms if s.question_started_at_ms is not None else now
        response_time_ms = max(0, int(now - started))
        is_correct = answer_index >= 0 and answer_index == int(question.correct_answer)
        points = score(response_time_ms, is_correct, s.time_per_question)
        submitted = SubmittedAnswer(
            question_id=question.id,
            answer=answer_index,
            is_correct=is_correct,
            response_time_ms=response_time_ms,
            score=points,
        )
        self.dispatch(SubmitAnswer(submitted))

        record = Answer(
            event_id=s.event_id,
            participant_id=s.participant_id,
            question_id=question.id,
            answer_index=answer_index,
            is_correct=is_correct,
            response_time_ms=response_time_ms,
            score=points,
        )
        task = asyncio.create_task(self._persist(record))
        self._pending_writes.add(task)
        task.add_done_callback(self._pending_writes.discard)
        return submitted

    async def _persist(self, record: Answer) -> None:
        try:
            await participation.persist_answer(self.adapter, record)
        except (QuizError, StoreError):
            logger.exception(
                "Failed to save answer",
                extra={"participant_id": record.participant_id, "question_id": record.question_id},
            )

    async def flush(self) -> None:
        """Attend la fin des écritures de réponses en cours."""
        while self._pending_writes:
            await asyncio.gather(*list(self._pending_writes))

    # ------------------------------------------------------------------
    # Cycle de vie
    # ------------------------------------------------------------------
    async def _teardown(self) -> None:
        try:
            if self._channel is not None:
                self._channel.unsubscribe()
                self._channel = None
        finally:
            await self._stop_timers()

    async def close(self) -> None:
        try:
            await self._teardown()
            await self.flush()
        finally:
            self.dispatch(Reset())

    async def __aenter__(self) -> "GameClient":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

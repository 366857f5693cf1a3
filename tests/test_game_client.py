import asyncio

import pytest

from app.models.question import QuestionDraft
from app.services.admin_control import AdminController
from app.services.errors import DuplicateJoinError, NotFoundError
from app.services.game_client import GameClient

TICK = 0.005


class FakeClock:
    def __init__(self, now: float = 0.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


async def wait_for(predicate, timeout: float = 2.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(TICK)


def drafts(n=3):
    return [
        QuestionDraft(question_text=f"Q{i}?", options=["a", "b", "c", "d"], correct_answer=1, order_index=i)
        for i in range(n)
    ]


async def create_event(adapter, hub, *, time_per_question=30, n=3):
    admin = AdminController(adapter, hub)
    event, _ = await admin.create_event("Trivia Night", drafts(n), topic="General", time_per_question=time_per_question)
    return admin, event


@pytest.mark.asyncio
async def test_join_then_reveal_and_submit(adapter, hub):
    admin, event = await create_event(adapter, hub)
    clock = FakeClock(1000)

    async with GameClient(adapter, hub, tick_interval=TICK, clock=clock) as client:
        await client.join_event(event.code.lower(), "alice", "Alice")
        assert client.state.status == "waiting"
        assert not client.state.loading

        await admin.start_event(event.id)
        await wait_for(lambda: client.state.status == "active")
        assert client.state.current_question_index == 0

        clock.now = 4000
        submitted = client.submit_answer(1)
        assert submitted.is_correct
        assert submitted.response_time_ms == 3000
        assert submitted.score == pytest.approx(9.0)
        assert client.state.total_score == pytest.approx(9.0)

        # deuxième soumission pour la même question : ignorée
        assert client.submit_answer(2) is None
        await client.flush()

        participant_id = client.state.participant_id
        record = await adapter.collection("participants").eq("id", participant_id).single()
        assert record["score"] == pytest.approx(9.0)
        answers = await adapter.collection("answers").eq("participant_id", participant_id).execute()
        assert len(answers) == 1


@pytest.mark.asyncio
async def test_question_shown_at_clock_zero_still_measures_response_time(adapter, hub):
    admin, event = await create_event(adapter, hub)
    clock = FakeClock(0.0)

    async with GameClient(adapter, hub, tick_interval=TICK, clock=clock) as client:
        await client.join_event(event.code, "zoe", "Zoe")
        await admin.start_event(event.id)
        await wait_for(lambda: client.state.status == "active")
        assert client.state.question_started_at_ms == 0.0

        clock.now = 31000
        submitted = client.submit_answer(1)

        assert submitted.is_correct
        assert submitted.response_time_ms == 31000
        assert submitted.score == 1


@pytest.mark.asyncio
async def test_timer_auto_submits_no_answer(adapter, hub):
    admin, event = await create_event(adapter, hub, time_per_question=3)

    async with GameClient(adapter, hub, tick_interval=TICK, clock=FakeClock()) as client:
        await client.join_event(event.code, "bob", "Bob")
        await admin.start_event(event.id)
        await wait_for(lambda: client.state.answer_submitted)

        assert client.state.time_left == 0
        assert client.state.my_answers[0].answer == -1
        assert client.state.my_answers[0].score == 0
        await client.flush()
        answers = await adapter.collection("answers").eq("event_id", event.id).execute()
        assert answers[0]["answer_index"] == -1


@pytest.mark.asyncio
async def test_timer_auto_submits_selected_answer(adapter, hub):
    admin, event = await create_event(adapter, hub, time_per_question=40)

    async with GameClient(adapter, hub, tick_interval=TICK, clock=FakeClock()) as client:
        await client.join_event(event.code, "cara", "Cara")
        await admin.start_event(event.id)
        await wait_for(lambda: client.state.status == "active")
        client.select_answer(1)
        await wait_for(lambda: client.state.answer_submitted)

        assert client.state.my_answers[0].answer == 1
        assert client.state.my_answers[0].is_correct


@pytest.mark.asyncio
async def test_late_joiner_lands_on_current_question(adapter, hub):
    admin, event = await create_event(adapter, hub)
    await admin.start_event(event.id)
    await admin.send_question_now(event.id)

    async with GameClient(adapter, hub, tick_interval=TICK, clock=FakeClock()) as client:
        await client.join_event(event.code, "late", "Late")
        assert client.state.status == "active"
        assert client.state.current_question_index == 1


@pytest.mark.asyncio
async def test_review_countdown_and_next_question(adapter, hub):
    admin, event = await create_event(adapter, hub)
    seen = []

    async with GameClient(adapter, hub, tick_interval=TICK, clock=FakeClock()) as client:
        client.add_listener(lambda s: seen.append(s.next_question_countdown))
        await client.join_event(event.code, "dan", "Dan")
        await admin.start_event(event.id)
        await wait_for(lambda: client.state.status == "active")

        await admin.show_review(event.id)
        await wait_for(lambda: client.state.status == "review")
        assert [e.name for e in client.state.leaderboard] == ["Dan"]

        await admin.start_countdown(event.id, 3)
        await wait_for(lambda: client.state.next_question_countdown == 0 and 3 in seen)
        assert {1, 2, 3} <= set(seen)

        await admin.send_question_now(event.id)
        await wait_for(lambda: client.state.current_question_index == 1)
        assert client.state.status == "active"
        assert not client.state.answer_submitted


@pytest.mark.asyncio
async def test_game_end_finishes_and_stops_timers(adapter, hub):
    admin, event = await create_event(adapter, hub)

    async with GameClient(adapter, hub, tick_interval=TICK, clock=FakeClock()) as client:
        await client.join_event(event.code, "eve", "Eve")
        await admin.start_event(event.id)
        await wait_for(lambda: client.state.status == "active")

        await admin.end_event(event.id)
        await wait_for(lambda: client.state.status == "finished")
        left = client.state.time_left
        await asyncio.sleep(TICK * 5)
        assert client.state.time_left == left
        assert client.state.leaderboard[0].name == "Eve"


@pytest.mark.asyncio
async def test_close_unsubscribes_and_resets(adapter, hub):
    _, event = await create_event(adapter, hub)
    client = GameClient(adapter, hub, tick_interval=TICK, clock=FakeClock())
    await client.join_event(event.code, "fay", "Fay")
    assert hub.stats() == {f"event-{event.id}": 1}

    await client.close()

    assert hub.stats() == {}
    assert client.state.status == "idle"


@pytest.mark.asyncio
async def test_join_errors_are_reported_in_state(adapter, hub):
    _, event = await create_event(adapter, hub)

    async with GameClient(adapter, hub, tick_interval=TICK) as first:
        await first.join_event(event.code, "gus", "Gus")

    async with GameClient(adapter, hub, tick_interval=TICK) as second:
        with pytest.raises(DuplicateJoinError):
            await second.join_event(event.code, "GUS", "Gus again")
        assert second.state.status == "idle"
        assert "already been used" in second.state.error
        assert not second.state.loading

        with pytest.raises(NotFoundError):
            await second.join_event("ZZZZ0000", "new", "New")
        assert hub.stats() == {}

import asyncio
import csv
import io

import pytest

from app.models.answer import Answer
from app.models.question import QuestionDraft
from app.services import participation
from app.services.admin_control import AdminController, generate_code
from app.services.broadcast import event_channel_name
from app.services.errors import ConflictError, FatalError, TransientError, UniqueViolationError
from app.services.record_store import MemoryRecordStore
from app.services.store_adapter import RecordStoreAdapter


def drafts(n=3):
    return [
        QuestionDraft(question_text=f"Q{i}?", options=["a", "b", "c", "d"], correct_answer=2, order_index=i)
        for i in range(n)
    ]


async def no_sleep(_seconds):
    return None


def test_generate_code_shape():
    code = generate_code("Mind Matrix!")
    assert code.startswith("MIND")
    assert len(code) == 8
    assert code == code.upper()
    assert len(generate_code("!!")) == 4


@pytest.mark.asyncio
async def test_create_event_inserts_questions_in_order(adapter, hub):
    admin = AdminController(adapter, hub, batch_size=2)

    event, questions = await admin.create_event("Trivia", drafts(5), topic="Science", time_per_question=20)

    assert event.status == "waiting"
    assert event.current_question_index == -1
    assert event.question_count == 5
    assert event.time_per_question == 20
    assert [q.order_index for q in questions] == [0, 1, 2, 3, 4]
    assert all(q.event_id == event.id for q in questions)


@pytest.mark.asyncio
async def test_create_event_aborts_when_store_unreachable(hub):
    class DownStore(MemoryRecordStore):
        async def ping(self):
            return False

    store = DownStore()
    admin = AdminController(RecordStoreAdapter(store), hub)
    with pytest.raises(FatalError):
        await admin.create_event("Trivia", drafts())
    assert store.stats() == {}


@pytest.mark.asyncio
async def test_create_event_retries_transient_insert(hub):
    class FlakyStore(MemoryRecordStore):
        failures = 2

        async def insert(self, collection, records):
            if collection == "events" and self.failures:
                self.failures -= 1
                raise TransientError("timeout")
            return await super().insert(collection, records)

    admin = AdminController(RecordStoreAdapter(FlakyStore()), hub, sleep=no_sleep)
    event, questions = await admin.create_event("Trivia", drafts())
    assert event.code
    assert len(questions) == 3


@pytest.mark.asyncio
async def test_create_event_regenerates_code_on_collision(hub):
    class CollidingStore(MemoryRecordStore):
        collisions = 1

        async def insert(self, collection, records):
            if collection == "events" and self.collisions:
                self.collisions -= 1
                raise UniqueViolationError("events", ("code",), ("TRIVXXXX",))
            return await super().insert(collection, records)

    admin = AdminController(RecordStoreAdapter(CollidingStore()), hub, sleep=no_sleep)
    event, _ = await admin.create_event("Trivia", drafts())
    assert event.code.startswith("TRIV")


@pytest.mark.asyncio
async def test_failed_question_batch_rolls_back_event(hub):
    class BrokenQuestionsStore(MemoryRecordStore):
        batches = 0

        async def insert(self, collection, records):
            if collection == "questions":
                self.batches += 1
                if self.batches == 2:
                    raise TransientError("batch lost")
            return await super().insert(collection, records)

    store = BrokenQuestionsStore()
    admin = AdminController(RecordStoreAdapter(store), hub, batch_size=2, retry_attempts=1, sleep=no_sleep)

    with pytest.raises(TransientError):
        await admin.create_event("Trivia", drafts(5))

    assert await store.query("events") == []
    assert await store.query("questions") == []


@pytest.mark.asyncio
async def test_start_event_final_message_is_self_sufficient(adapter, hub):
    admin = AdminController(adapter, hub)
    event, _ = await admin.create_event("Trivia", drafts())

    started = await admin.start_event(event.id)

    assert started.status == "active"
    assert started.current_question_index == 0
    latest = hub.read(event_channel_name(event.id))
    assert latest.event_type == "event_update"
    assert latest.payload["event"]["current_question_index"] == 0


@pytest.mark.asyncio
async def test_question_flow_ends_after_last_question(adapter, hub):
    admin = AdminController(adapter, hub)
    event, _ = await admin.create_event("Trivia", drafts(2))
    await admin.start_event(event.id)

    nxt = await admin.send_question_now(event.id)
    assert nxt.current_question_index == 1
    assert hub.read(event_channel_name(event.id)).payload == {"questionIndex": 1}

    ended = await admin.start_countdown(event.id)
    assert ended.status == "finished"
    assert hub.read(event_channel_name(event.id)).event_type == "game_end"

    with pytest.raises(ConflictError):
        await admin.send_question_now(event.id)
    with pytest.raises(ConflictError):
        await admin.publish_leaderboard(event.id)


@pytest.mark.asyncio
async def test_countdown_and_review_carry_leaderboard(adapter, hub):
    admin = AdminController(adapter, hub)
    event, _ = await admin.create_event("Trivia", drafts())
    joined = await participation.join_event(adapter, event.code, "a", "Alice")
    await participation.increment_score(adapter, joined.participant.id, 6)
    await admin.start_event(event.id)

    await admin.show_review(event.id)
    review = hub.read(event_channel_name(event.id))
    assert review.event_type == "round_review"
    assert review.payload["leaderboard"][0]["score"] == pytest.approx(6)

    await admin.start_countdown(event.id, 10)
    countdown = hub.read(event_channel_name(event.id))
    assert countdown.payload["seconds"] == 10
    assert countdown.payload["leaderboard"][0]["name"] == "Alice"


@pytest.mark.asyncio
async def test_stats_export_and_purge(adapter, hub):
    admin = AdminController(adapter, hub)
    event, questions = await admin.create_event("Quiz, \"Night\"", drafts(2))
    alice = await participation.join_event(adapter, event.code, "a", 'Alice "A"')
    bob = await participation.join_event(adapter, event.code, "b", "Bob")

    for who, idx, points in ((alice, 2, 8.5), (bob, 0, 0)):
        await participation.persist_answer(
            adapter,
            Answer(
                event_id=event.id,
                participant_id=who.participant.id,
                question_id=questions[0].id,
                answer_index=idx,
                is_correct=points > 0,
                response_time_ms=4500,
                score=points,
            ),
        )

    stats = await admin.round_stats(event.id, 0)
    assert stats["answered"] == 2
    assert stats["correct"] == 1
    assert stats["participants"] == 2

    rows = list(csv.reader(io.StringIO(await admin.export_results_csv(event.id))))
    assert rows[0] == ["Rank", "Name", "Player ID", "Score", "Correct Answers", "Total Questions"]
    assert rows[1][:3] == ["1", 'Alice "A"', "A"]
    assert rows[1][4:] == ["1", "2"]
    assert rows[2][0] == "2"

    assert await admin.purge_participants(event.id) == {"participants": 2, "answers": 2}
    assert await admin.leaderboard(event.id) == []


@pytest.mark.asyncio
async def test_list_and_delete_events(adapter, hub):
    admin = AdminController(adapter, hub)
    first, _ = await admin.create_event("First", drafts(1))
    await asyncio.sleep(0.01)
    second, _ = await admin.create_event("Second", drafts(1))

    listed = await admin.list_events()
    assert [e.id for e in listed] == [second.id, first.id]

    await admin.delete_event(first.id)
    assert [e.id for e in await admin.list_events()] == [second.id]
    assert await adapter.collection("questions").eq("event_id", first.id).execute() == []


@pytest.mark.asyncio
async def test_generate_questions_runs_generator_off_loop(adapter, hub):
    class FixedGenerator:
        def generate(self, topic, count, difficulty):
            return drafts(count)

    admin = AdminController(adapter, hub, generator=FixedGenerator())
    result = await admin.generate_questions("Space", 4, "hard")
    assert len(result) == 4

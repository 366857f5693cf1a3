import asyncio
import threading

import pytest
from pydantic import ValidationError

from app.services.broadcast import BroadcastChannel, BroadcastHub, event_channel_name
from app.services.errors import TransientError


async def settle(rounds: int = 5):
    for _ in range(rounds):
        await asyncio.sleep(0)


def test_channel_name():
    assert event_channel_name("abc") == "event-abc"


@pytest.mark.asyncio
async def test_first_snapshot_is_skipped(hub):
    await hub.publish("event-1", "question_reveal", {"questionIndex": 0})
    received = []
    channel = BroadcastChannel(hub, "event-1").on("question_reveal", received.append).subscribe()
    await settle()
    assert received == []

    await channel.send("question_reveal", {"questionIndex": 1})
    await settle()
    assert received == [{"questionIndex": 1}]
    channel.unsubscribe()


@pytest.mark.asyncio
async def test_empty_channel_delivers_first_real_write(hub):
    received = []
    channel = BroadcastChannel(hub, "event-1").on("game_end", received.append).subscribe()
    await settle()
    await hub.publish("event-1", "game_end", {"leaderboard": []})
    await settle()
    assert received == [{"leaderboard": []}]
    channel.unsubscribe()


@pytest.mark.asyncio
async def test_same_nonce_is_processed_once(hub):
    received = []
    channel = BroadcastChannel(hub, "event-1").on("round_review", received.append).subscribe()
    await settle()
    message = await hub.publish("event-1", "round_review", {})
    await settle()
    # réécriture du même enregistrement (reconnexion, rejeu)
    hub.write("event-1", message)
    await settle()
    assert len(received) == 1
    channel.unsubscribe()


@pytest.mark.asyncio
async def test_rapid_writes_coalesce_to_latest(hub):
    received = []
    channel = BroadcastChannel(hub, "event-1")
    channel.on("question_reveal", lambda p: received.append(("reveal", p)))
    channel.on("event_update", lambda p: received.append(("update", p)))
    channel.subscribe()
    await settle()

    await hub.publish("event-1", "question_reveal", {"questionIndex": 0})
    await hub.publish("event-1", "event_update", {"status": "active"})
    await settle()

    assert received == [("update", {"status": "active"})]
    channel.unsubscribe()


@pytest.mark.asyncio
async def test_unsubscribe_stops_delivery(hub):
    received = []
    channel = BroadcastChannel(hub, "event-1").on("game_end", received.append).subscribe()
    await settle()
    channel.unsubscribe()
    channel.unsubscribe()
    await hub.publish("event-1", "game_end", {})
    await settle()
    assert received == []
    assert hub.stats() == {}


@pytest.mark.asyncio
async def test_write_from_another_thread_is_delivered_on_loop(hub):
    received = []
    with BroadcastChannel(hub, "event-1").on("leaderboard_update", received.append) as channel:
        await settle()
        worker = threading.Thread(
            target=lambda: asyncio.run(hub.publish("event-1", "leaderboard_update", {"leaderboard": [1]}))
        )
        worker.start()
        worker.join()
        await settle()
        assert channel.subscribed
    assert received == [{"leaderboard": [1]}]


@pytest.mark.asyncio
async def test_send_retries_then_fails_soft():
    class FlakyHub(BroadcastHub):
        def __init__(self, failures):
            super().__init__()
            self.failures = failures
            self.calls = 0

        async def publish(self, channel, event_type, payload=None):
            self.calls += 1
            if self.calls <= self.failures:
                raise TransientError("network down")
            return await super().publish(channel, event_type, payload)

    sleeps = []

    async def fake_sleep(seconds):
        sleeps.append(seconds)

    flaky = FlakyHub(failures=2)
    ok = await BroadcastChannel(flaky, "event-1", sleep=fake_sleep).send("game_end", {})
    assert ok is True
    assert sleeps == [pytest.approx(0.2), pytest.approx(0.4)]

    dead = FlakyHub(failures=10)
    sleeps.clear()
    ok = await BroadcastChannel(dead, "event-1", sleep=fake_sleep).send("game_end", {})
    assert ok is False
    assert dead.calls == 3
    assert len(sleeps) == 2


@pytest.mark.asyncio
async def test_publish_rejects_unknown_event_type(hub):
    with pytest.raises(ValidationError):
        await hub.publish("event-1", "score_changed", {})
    assert hub.read("event-1") is None

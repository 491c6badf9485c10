import asyncio
import json

import pytest

from reviewflow.broadcast import ConversationBroadcaster, SubscriptionClosed
from reviewflow.events import REFRESH_PAYLOAD, ConversationDeleted

WORKSPACE = "0f3c6f0e-6a39-4d1e-9f51-5b0d3b0a7c11"
OTHER_WORKSPACE = "7d9e2b44-2a51-4c4b-8a2e-0c9e6a1f3d22"


def _deleted(n: int) -> ConversationDeleted:
    return ConversationDeleted(conversation_id=f"conv-{n}")


def _ids(payloads: list[str]) -> list[str]:
    return [json.loads(p)["conversation_id"] for p in payloads]


class StubRelay:
    def __init__(self) -> None:
        self.forwarded: list[tuple[str, str]] = []

    async def forward(self, workspace_id: str, payload: str) -> bool:
        self.forwarded.append((workspace_id, payload))
        return True


@pytest.mark.asyncio
async def test_every_subscriber_sees_events_in_publish_order() -> None:
    broadcaster = ConversationBroadcaster(capacity=8)
    first = broadcaster.subscribe(WORKSPACE)
    second = broadcaster.subscribe(WORKSPACE)

    for n in range(3):
        assert await broadcaster.publish(WORKSPACE, _deleted(n)) == 2

    assert _ids([await first.recv() for _ in range(3)]) == ["conv-0", "conv-1", "conv-2"]
    assert _ids([await second.recv() for _ in range(3)]) == ["conv-0", "conv-1", "conv-2"]


@pytest.mark.asyncio
async def test_events_stay_in_their_workspace() -> None:
    broadcaster = ConversationBroadcaster(capacity=8)
    mine = broadcaster.subscribe(WORKSPACE)
    theirs = broadcaster.subscribe(OTHER_WORKSPACE)

    await broadcaster.publish(WORKSPACE, _deleted(1))

    assert mine.pending == 1
    assert theirs.pending == 0


@pytest.mark.asyncio
async def test_no_replay_of_events_before_subscribing() -> None:
    broadcaster = ConversationBroadcaster(capacity=8)
    assert await broadcaster.publish(WORKSPACE, _deleted(0)) == 0

    late = broadcaster.subscribe(WORKSPACE)
    await broadcaster.publish(WORKSPACE, _deleted(1))

    assert _ids([await late.recv()]) == ["conv-1"]
    assert late.pending == 0


@pytest.mark.asyncio
async def test_recv_waits_for_next_publish() -> None:
    broadcaster = ConversationBroadcaster(capacity=8)
    subscription = broadcaster.subscribe(WORKSPACE)

    waiter = asyncio.create_task(subscription.recv())
    await asyncio.sleep(0)
    assert not waiter.done()

    await broadcaster.publish(WORKSPACE, _deleted(7))
    payload = await asyncio.wait_for(waiter, timeout=1)
    assert _ids([payload]) == ["conv-7"]


@pytest.mark.asyncio
async def test_lagging_subscriber_gets_refresh_then_newest_events() -> None:
    broadcaster = ConversationBroadcaster(capacity=2)
    slow = broadcaster.subscribe(WORKSPACE)
    fast = broadcaster.subscribe(WORKSPACE)

    for n in range(5):
        await broadcaster.publish(WORKSPACE, _deleted(n))
        await fast.recv()

    assert await slow.recv() == REFRESH_PAYLOAD
    assert json.loads(REFRESH_PAYLOAD) == {"type": "refresh"}
    assert _ids([await slow.recv(), await slow.recv()]) == ["conv-3", "conv-4"]
    assert slow.pending == 0


@pytest.mark.asyncio
async def test_close_releases_handle_and_channel() -> None:
    broadcaster = ConversationBroadcaster(capacity=4)
    subscription = broadcaster.subscribe(WORKSPACE)
    assert broadcaster.subscriber_count(WORKSPACE) == 1

    subscription.close()
    subscription.close()

    assert subscription.closed
    assert broadcaster.subscriber_count(WORKSPACE) == 0
    assert broadcaster.channel_count() == 0
    with pytest.raises(SubscriptionClosed):
        await subscription.recv()


@pytest.mark.asyncio
async def test_close_wakes_pending_receiver() -> None:
    broadcaster = ConversationBroadcaster(capacity=4)
    subscription = broadcaster.subscribe(WORKSPACE)

    collected: list[str] = []

    async def consume() -> None:
        async for payload in subscription:
            collected.append(payload)

    consumer = asyncio.create_task(consume())
    await broadcaster.publish(WORKSPACE, _deleted(1))
    await asyncio.sleep(0)
    subscription.close()
    await asyncio.wait_for(consumer, timeout=1)

    assert _ids(collected) == ["conv-1"]


@pytest.mark.asyncio
async def test_context_manager_closes_subscription() -> None:
    broadcaster = ConversationBroadcaster(capacity=4)
    async with broadcaster.subscribe(WORKSPACE) as subscription:
        assert broadcaster.subscriber_count(WORKSPACE) == 1
    assert subscription.closed
    assert broadcaster.subscriber_count(WORKSPACE) == 0


@pytest.mark.asyncio
async def test_evict_idle_drops_only_unsubscribed_channels() -> None:
    broadcaster = ConversationBroadcaster(capacity=4)
    await broadcaster.publish(OTHER_WORKSPACE, _deleted(0))
    kept = broadcaster.subscribe(WORKSPACE)
    assert broadcaster.channel_count() == 2

    assert broadcaster.evict_idle(max_idle_seconds=3600) == 0
    assert broadcaster.evict_idle(max_idle_seconds=0) == 1
    assert broadcaster.channel_count() == 1
    assert broadcaster.subscriber_count(WORKSPACE) == 1
    kept.close()


@pytest.mark.asyncio
async def test_publish_forwards_to_relay() -> None:
    relay = StubRelay()
    broadcaster = ConversationBroadcaster(capacity=4, relay=relay)

    await broadcaster.publish(WORKSPACE, _deleted(3))

    expected = json.dumps({"type": "conversation_deleted", "conversation_id": "conv-3"})
    assert relay.forwarded == [(WORKSPACE, expected)]


def test_capacity_must_be_positive() -> None:
    with pytest.raises(ValueError):
        ConversationBroadcaster(capacity=0)

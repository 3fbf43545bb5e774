from __future__ import annotations

import pytest

from facility_messaging.realtime import ChangeEvent, ChangeFeed, ChangeKind


def _event(kind: ChangeKind, thread_id: str = "t-1", **payload) -> ChangeEvent:
    return ChangeEvent(kind=kind, payload={"thread_id": thread_id, **payload})


@pytest.mark.asyncio
async def test_listeners_are_scoped_by_kind_and_predicate():
    feed = ChangeFeed()
    seen: list[ChangeEvent] = []
    feed.subscribe(
        seen.append,
        kinds=[ChangeKind.MESSAGE_INSERT],
        predicate=lambda event: event.thread_id == "t-1",
    )

    await feed.publish(_event(ChangeKind.MESSAGE_INSERT))
    await feed.publish(_event(ChangeKind.MESSAGE_INSERT, thread_id="t-2"))
    await feed.publish(_event(ChangeKind.VOTE_CHANGE))

    assert len(seen) == 1
    assert seen[0].thread_id == "t-1"


@pytest.mark.asyncio
async def test_async_listeners_are_awaited():
    feed = ChangeFeed()
    seen: list[ChangeKind] = []

    async def listener(event: ChangeEvent) -> None:
        seen.append(event.kind)

    feed.subscribe(listener)
    await feed.publish(_event(ChangeKind.POLL_INSERT))

    assert seen == [ChangeKind.POLL_INSERT]


@pytest.mark.asyncio
async def test_failing_listener_does_not_stop_delivery(caplog):
    feed = ChangeFeed()
    seen: list[ChangeEvent] = []

    def broken(event: ChangeEvent) -> None:
        raise RuntimeError("boom")

    feed.subscribe(broken)
    feed.subscribe(seen.append)

    await feed.publish(_event(ChangeKind.MESSAGE_INSERT))

    assert len(seen) == 1
    assert "Change listener failed" in caplog.text


@pytest.mark.asyncio
async def test_unsubscribed_listener_receives_nothing():
    feed = ChangeFeed()
    seen: list[ChangeEvent] = []
    subscription = feed.subscribe(seen.append)
    assert feed.subscriber_count == 1

    subscription.unsubscribe()
    await feed.publish(_event(ChangeKind.MESSAGE_INSERT))

    assert seen == []
    assert feed.subscriber_count == 0


def test_actor_id_prefers_sender_then_voter_then_user():
    assert _event(ChangeKind.MESSAGE_INSERT, sender_id="a").actor_id == "a"
    assert _event(ChangeKind.VOTE_CHANGE, voter_id="b").actor_id == "b"
    assert _event(ChangeKind.READ_CURSOR_CHANGE, user_id="c").actor_id == "c"
    assert ChangeEvent(kind=ChangeKind.POLL_INSERT).actor_id is None

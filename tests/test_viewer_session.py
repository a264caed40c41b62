import asyncio

import pytest

from market_chat.exceptions import ChannelLost, ConversationNotFound, NotAParticipant, ValidationError
from market_chat.services.timeline import ConversationTimeline
from tests.fakes.waiting import eventually, settle


def _read_by(store, user_id):
    return {mid for (mid, user) in store.receipts.rows if user == user_id}


async def test_open_returns_history_and_marks_it_read(service, store, conversation):
    cid = conversation["_id"]
    greeting = await service.send_message(cid, "u1", "Hi, your order shipped")

    viewer = service.open_viewer("u2")
    messages = await viewer.open(cid)

    assert [m["content"] for m in messages] == ['Conversation "Order Q&A" created', "Hi, your order shipped"]
    assert greeting["_id"] in _read_by(store, "u2")
    await viewer.close()


async def test_own_send_shows_once_and_is_not_forwarded(service, conversation):
    forwarded = []
    viewer = service.open_viewer("u2", on_message=forwarded.append)
    await viewer.open(conversation["_id"])

    message = await viewer.send("Is it insured?", client_message_id="c-1")
    await settle()

    rows = viewer.timeline.messages()
    assert [r["_id"] for r in rows].count(message["_id"]) == 1
    assert not any(r.get("pending") for r in rows)
    assert forwarded == []
    await viewer.close()


async def test_other_senders_are_forwarded_and_marked_read(service, store, conversation):
    cid = conversation["_id"]
    forwarded = []
    viewer = service.open_viewer("u2", on_message=lambda m: forwarded.append(m["content"]))
    await viewer.open(cid)

    reply = await service.send_message(cid, "u1", "Yes, fully insured")

    await eventually(lambda: forwarded == ["Yes, fully insured"])
    await eventually(lambda: reply["_id"] in _read_by(store, "u2"))
    assert viewer.timeline.contains(reply["_id"])
    await viewer.close()


async def test_switching_conversations_keeps_one_channel(service, bus, conversation):
    other = await service.create_conversation("u3", "Stock check", "group", ["u2"])
    viewer = service.open_viewer("u2")

    await viewer.open(conversation["_id"])
    await viewer.open(other["_id"])

    assert viewer.conversation_id == other["_id"]
    assert service.channel.open_handles == 1
    assert bus.subscriber_count(f"conversation:{conversation['_id']}") == 0
    assert bus.subscriber_count(f"conversation:{other['_id']}") == 1
    await viewer.close()


async def test_close_releases_the_channel(service, bus, conversation):
    forwarded = []
    async with service.open_viewer("u2", on_message=forwarded.append) as viewer:
        await viewer.open(conversation["_id"])

    assert service.channel.open_handles == 0
    assert viewer.timeline is None
    await service.send_message(conversation["_id"], "u1", "late reply")
    await settle()
    assert forwarded == []


async def test_send_without_open_conversation_is_rejected(service):
    viewer = service.open_viewer("u2")
    with pytest.raises(ValidationError):
        await viewer.send("hello?")


async def test_failed_send_drops_the_optimistic_row(service, store, conversation):
    viewer = service.open_viewer("u2")
    await viewer.open(conversation["_id"])
    before = len(viewer.timeline)
    store.fail_on["messages.insert"] = ConnectionError("primary stepped down")

    with pytest.raises(ConnectionError):
        await viewer.send("will not arrive", client_message_id="c-9")

    assert len(viewer.timeline) == before
    await viewer.close()


async def test_lost_channel_is_surfaced_to_the_viewer(service, bus, conversation):
    lost = []
    viewer = service.open_viewer("u2", on_lost=lost.append)
    await viewer.open(conversation["_id"])

    await bus.lose()

    await eventually(lambda: len(lost) == 1)
    assert isinstance(lost[0], ChannelLost)
    assert service.channel.open_handles == 0


def test_timeline_replaces_pending_row_with_stored_message():
    timeline = ConversationTimeline()
    timeline.add_optimistic("c-1", "u2", "hello")
    stored = {"_id": "m-1", "seq": 3, "client_message_id": "c-1", "sender_id": "u2", "content": "hello"}

    assert timeline.merge(stored) is False
    assert timeline.merge(dict(stored)) is False
    assert timeline.messages() == [stored]
    assert len(timeline) == 1


def test_timeline_orders_by_sequence():
    timeline = ConversationTimeline([{"_id": "b", "seq": 2}, {"_id": "a", "seq": 1}])

    assert timeline.merge({"_id": "c", "seq": 3}) is True
    assert [m["_id"] for m in timeline.messages()] == ["a", "b", "c"]
    assert len(timeline) == 3


async def test_open_during_an_unfinished_append_still_shows_it(service, store, conversation):
    cid = conversation["_id"]
    gate = store.hold("messages.insert")
    slow = asyncio.create_task(service.send_message(cid, "u1", "slow"))
    await eventually(lambda: store.count("messages.insert") == 2)
    await service.send_message(cid, "u1", "fast")

    viewer = service.open_viewer("u2")
    shown = await viewer.open(cid)
    assert [m["content"] for m in shown] == ['Conversation "Order Q&A" created']

    gate.set()
    await slow
    await eventually(lambda: len(viewer.timeline) == 3)
    assert [m["content"] for m in viewer.timeline.messages()] == ['Conversation "Order Q&A" created', "slow", "fast"]
    await viewer.close()


async def test_outsider_cannot_open_a_conversation(service, conversation):
    viewer = service.open_viewer("u3")

    with pytest.raises(NotAParticipant):
        await viewer.open(conversation["_id"])

    assert viewer.conversation_id is None
    assert service.channel.open_handles == 0


async def test_outsider_cannot_load_history(service, store, conversation):
    with pytest.raises(NotAParticipant):
        await service.load_conversation("u3", conversation["_id"])
    with pytest.raises(ConversationNotFound):
        await service.load_conversation("u3", "missing")

    assert store.receipts.rows == {}

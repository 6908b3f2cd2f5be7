import json

import pytest
from sqlalchemy import func, select

from pivogram.history import HistoryStore, dm_key, direct_partition, room_partition
from pivogram.models import StoredMessage
from pivogram.schemas import ChatMessage


def make_message(store: HistoryStore, author: str = "alice", body: str = "hi", **kw) -> ChatMessage:
    return ChatMessage(id=store.next_message_id(), username=author, message=body, **kw)


def test_dm_key_is_symmetric_and_trimmed():
    assert dm_key("alice", "bob") == dm_key("bob", "alice") == "alice|bob"
    assert dm_key(" bob", "alice ") == "alice|bob"


def test_message_ids_strictly_increase():
    store = HistoryStore(None)
    ids = [store.next_message_id() for _ in range(50)]
    assert ids == sorted(set(ids))


@pytest.mark.asyncio
async def test_recent_of_unknown_partition_is_empty():
    store = HistoryStore(None)
    assert store.recent("nowhere", 100) == []
    assert store.recent_direct("a", "b", 100) == []


@pytest.mark.asyncio
async def test_cap_keeps_most_recent_entries_oldest_first(session_factory):
    store = HistoryStore(session_factory, max_history=5)
    sent = []
    for i in range(8):
        msg = make_message(store, body=f"m{i}")
        sent.append(msg.id)
        await store.append_room("general", msg)

    assert [m.message for m in store.recent("general", 100)] == ["m3", "m4", "m5", "m6", "m7"]

    async with session_factory() as db:
        rows = (await db.execute(
            select(StoredMessage.message_id).where(StoredMessage.key == "general").order_by(StoredMessage.id)
        )).scalars().all()
    assert rows == sent[-5:]


@pytest.mark.asyncio
async def test_recent_limit_returns_tail(session_factory):
    store = HistoryStore(session_factory)
    for i in range(4):
        await store.append_room("r", make_message(store, body=str(i)))
    assert [m.message for m in store.recent("r", 2)] == ["2", "3"]


@pytest.mark.asyncio
async def test_direct_messages_share_one_partition(session_factory):
    store = HistoryStore(session_factory)
    await store.append_direct("alice", "bob", make_message(store, "alice", "ping", to="bob"))
    await store.append_direct("bob", "alice", make_message(store, "bob", "pong", to="alice"))

    assert [m.message for m in store.recent_direct("bob", "alice", 10)] == ["ping", "pong"]
    assert list(store.partitions) == [direct_partition("alice", "bob")]


@pytest.mark.asyncio
async def test_update_requires_matching_author(session_factory):
    store = HistoryStore(session_factory)
    msg = make_message(store, "alice", "hi")
    await store.append_room("general", msg)

    assert await store.update_message(room_partition("general"), msg.id, "bob", "pwned") is None
    assert await store.update_message(room_partition("general"), 12345, "alice", "x") is None
    assert store.recent("general", 1)[0].message == "hi"
    assert store.recent("general", 1)[0].edited is False

    updated = await store.update_message(room_partition("general"), msg.id, "alice", "hello")
    assert updated.message == "hello"
    assert updated.edited is True
    assert updated.edited_at is not None


@pytest.mark.asyncio
async def test_history_survives_reload(session_factory):
    store = HistoryStore(session_factory)
    first = make_message(store, "alice", "hi", room_id="general")
    await store.append_room("general", first)
    await store.update_message(room_partition("general"), first.id, "alice", "hello")
    await store.append_direct("alice", "bob", make_message(store, "alice", "secret", to="bob"))

    fresh = HistoryStore(session_factory)
    assert await fresh.load() == 2

    (room_msg,) = fresh.recent("general", 10)
    assert room_msg.message == "hello"
    assert room_msg.edited is True
    assert fresh.recent_direct("bob", "alice", 10)[0].message == "secret"
    assert fresh.next_message_id() > first.id


@pytest.mark.asyncio
async def test_reply_fields_are_stored_as_given(session_factory):
    store = HistoryStore(session_factory)
    original = make_message(store, "bob", "lunch?")
    await store.append_room("general", original)
    reply = make_message(store, "alice", "sure", reply_to_id=original.id,
                         reply_to_username="bob", reply_to_snippet="lunch?")
    await store.append_room("general", reply)

    await store.update_message(room_partition("general"), original.id, "bob", "dinner?")

    stored = store.recent("general", 1)[0]
    assert stored.reply_to_snippet == "lunch?"


@pytest.mark.asyncio
async def test_import_legacy_room_only_layout(tmp_path, session_factory):
    path = tmp_path / "messages.json"
    path.write_text(json.dumps({
        "general": [
            {"id": 1, "username": "alice", "message": "old", "timestamp": "2024-01-01T00:00:00Z"},
        ],
    }))
    store = HistoryStore(session_factory)

    assert await store.import_legacy(path) == 1
    assert store.recent("general", 10)[0].message == "old"
    assert store.next_message_id() > 1


@pytest.mark.asyncio
async def test_import_legacy_v2_layout_and_only_into_empty_store(tmp_path, session_factory):
    path = tmp_path / "messages.json"
    path.write_text(json.dumps({
        "__format": "v2",
        "rooms": {"general": [{"id": 1, "username": "alice", "message": "a"}]},
        "dms": {"alice|bob": [{"id": 2, "username": "bob", "to": "alice", "message": "b"}]},
    }))
    store = HistoryStore(session_factory)

    assert await store.import_legacy(path) == 2
    assert store.recent_direct("alice", "bob", 10)[0].message == "b"
    assert await store.import_legacy(path) == 0

    async with session_factory() as db:
        count = (await db.execute(select(func.count()).select_from(StoredMessage))).scalar_one()
    assert count == 2


@pytest.mark.asyncio
async def test_import_legacy_rekeys_direct_threads_sorted_without_case_folding(tmp_path, session_factory):
    path = tmp_path / "messages.json"
    path.write_text(json.dumps({
        "__format": "v2",
        "rooms": {},
        "dms": {"alice|Bob": [{"id": 3, "username": "Bob", "to": "alice", "message": "hey"}]},
    }))
    store = HistoryStore(session_factory)

    assert await store.import_legacy(path) == 1
    assert [m.message for m in store.recent_direct("alice", "Bob", 10)] == ["hey"]
    assert direct_partition("alice", "Bob") == ("dm", "Bob|alice")

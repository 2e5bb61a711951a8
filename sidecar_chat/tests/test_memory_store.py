from datetime import datetime, timedelta, timezone

import pytest

from sidecar_chat.domain.exceptions import InvalidRequestError, NotFoundError
from sidecar_chat.domain.models import Message
from sidecar_chat.infrastructure.storage.memory_store import InMemoryConversationStore


class FakeClock:
    def __init__(self):
        self.now = datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)


def make_store(max_messages=20, hours=24):
    clock = FakeClock()
    store = InMemoryConversationStore(max_messages=max_messages, retention=timedelta(hours=hours), clock=clock)
    return store, clock


def test_create_and_get_conversation():
    store, _ = make_store()
    conv = store.create_conversation(title="Trip planning", metadata={"temperature": 0.2})
    assert conv.id
    assert conv.title == "Trip planning"
    assert conv.messages == []

    fetched = store.get_conversation(conv.id)
    assert fetched.id == conv.id
    assert fetched.metadata == {"temperature": 0.2}
    assert fetched.created_at == fetched.last_activity


def test_default_title_and_caller_supplied_id():
    store, _ = make_store()
    conv = store.create_conversation(conversation_id="abc")
    assert conv.id == "abc"
    assert conv.title == "New Chat Session"
    with pytest.raises(InvalidRequestError):
        store.create_conversation(conversation_id="abc")


def test_get_unknown_conversation_not_found():
    store, _ = make_store()
    with pytest.raises(NotFoundError):
        store.get_conversation("missing")


def test_snapshot_cannot_mutate_store():
    store, _ = make_store()
    conv = store.create_conversation()
    snap = store.get_conversation(conv.id)
    snap.messages.append(Message.create("user", "sneaky"))
    snap.metadata["x"] = 1
    assert store.get_conversation(conv.id).messages == []
    assert store.get_conversation(conv.id).metadata == {}


def test_append_keeps_order_and_evicts_oldest():
    store, _ = make_store(max_messages=3)
    conv = store.create_conversation()
    lengths = [store.append_message(conv.id, Message.create("user", f"m{i}")) for i in range(5)]
    assert lengths == [1, 2, 3, 3, 3]
    assert [m.content for m in store.get_conversation(conv.id).messages] == ["m2", "m3", "m4"]


def test_list_orders_by_recent_activity_and_respects_limit():
    store, clock = make_store()
    a = store.create_conversation(title="a")
    clock.advance(minutes=1)
    b = store.create_conversation(title="b")
    clock.advance(minutes=1)
    c = store.create_conversation(title="c")
    clock.advance(minutes=1)
    store.append_message(a.id, Message.create("user", "bump"))

    assert [x.id for x in store.list_conversations()] == [a.id, c.id, b.id]
    assert [x.id for x in store.list_conversations(limit=2)] == [a.id, c.id]
    assert store.count() == 3


def test_delete_twice_is_not_found():
    store, _ = make_store()
    conv = store.create_conversation()
    store.delete_conversation(conv.id)
    with pytest.raises(NotFoundError):
        store.delete_conversation(conv.id)
    with pytest.raises(NotFoundError):
        store.get_conversation(conv.id)


def test_sweep_removes_only_expired_conversations():
    store, clock = make_store(hours=24)
    old = store.create_conversation(title="old")
    clock.advance(hours=20)
    fresh = store.create_conversation(title="fresh")
    clock.advance(hours=5)

    assert store.sweep_expired() == 1
    with pytest.raises(NotFoundError):
        store.get_conversation(old.id)
    assert store.get_conversation(fresh.id).title == "fresh"


def test_activity_postpones_expiry():
    store, clock = make_store(hours=1)
    conv = store.create_conversation()
    clock.advance(minutes=50)
    store.touch(conv.id)
    clock.advance(minutes=50)
    assert store.sweep_expired() == 0
    clock.advance(minutes=11)
    assert store.sweep_expired() == 1


def test_conversation_lock_unknown_id():
    store, _ = make_store()
    with pytest.raises(NotFoundError):
        with store.conversation_lock("missing"):
            pass


def test_statistics():
    store, _ = make_store()
    assert store.statistics()["total_conversations"] == 0
    a = store.create_conversation()
    store.create_conversation()
    store.append_message(a.id, Message.create("user", "hi"))
    store.append_message(a.id, Message.create("assistant", "hello", model="phi4", tokens=2))
    stats = store.statistics()
    assert stats["total_conversations"] == 2
    assert stats["total_messages"] == 2
    assert stats["average_conversation_length"] == 1.0
    assert stats["oldest_conversation"].endswith("Z")


def test_export_and_import():
    store, _ = make_store()
    conv = store.create_conversation(title="keep")
    store.append_message(conv.id, Message.create("user", "hi"))
    store.append_message(conv.id, Message.create("assistant", "sorry", error=True, error_code="SIDECAR_UNAVAILABLE"))

    single = store.export_conversations(conv.id)
    assert single["title"] == "keep"
    assert store.export_conversations("missing") is None

    dump = store.export_conversations()
    other, _ = make_store(max_messages=1)
    imported = other.import_conversations({**dump, "broken": {"title": "no messages"}})
    assert imported == 1

    restored = other.get_conversation(conv.id)
    assert restored.title == "keep"
    assert len(restored.messages) == 1
    assert restored.messages[0].error is True
    assert restored.messages[0].error_code == "SIDECAR_UNAVAILABLE"


@pytest.mark.parametrize(
    "bad_message",
    [
        {"content": "no role", "timestamp": "2025-01-01T00:00:00Z"},
        {"role": "robot", "content": "unknown role"},
        {"role": "user", "content": "hi", "timestamp": "yesterday"},
        {"role": "user", "content": "hi", "timestamp": 12345},
        {"role": "assistant", "content": "hi", "tokens": "many"},
        "just a string",
    ],
)
def test_import_rejects_invalid_messages_atomically(bad_message):
    store, _ = make_store()
    data = {
        "good": {"title": "good", "messages": [{"role": "user", "content": "hi"}]},
        "bad": {"title": "bad", "messages": [{"role": "user", "content": "ok"}, bad_message]},
    }
    with pytest.raises(InvalidRequestError) as exc_info:
        store.import_conversations(data)
    assert exc_info.value.code == "INVALID_IMPORT"
    assert store.count() == 0


def test_import_rejects_non_object_payload():
    store, _ = make_store()
    with pytest.raises(InvalidRequestError):
        store.import_conversations(["not", "a", "mapping"])
    assert store.count() == 0


def test_import_naive_timestamps_are_utc_and_sweepable():
    store, clock = make_store(hours=24)
    store.import_conversations(
        {
            "legacy": {
                "created_at": "2024-12-30T12:00:00",
                "last_activity": "2024-12-30T12:00:00",
                "messages": [{"role": "user", "content": "old", "timestamp": "2024-12-30T12:00:00"}],
            }
        }
    )
    restored = store.get_conversation("legacy")
    assert restored.last_activity.tzinfo is not None
    assert restored.messages[0].timestamp.tzinfo is not None
    assert store.sweep_expired() == 1


def test_import_replaces_live_conversation_in_place():
    store, _ = make_store()
    conv = store.create_conversation(title="live")
    store.append_message(conv.id, Message.create("user", "before"))

    with store.conversation_lock(conv.id):
        store.import_conversations({conv.id: {"title": "restored", "messages": []}})
        store.append_message(conv.id, Message.create("user", "after"))

    restored = store.get_conversation(conv.id)
    assert restored.title == "restored"
    assert [m.content for m in restored.messages] == ["after"]
    assert store.count() == 1

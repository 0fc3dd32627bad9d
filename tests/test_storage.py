import asyncio
import time

import pytest

from advisor.persistence import PersistenceGateway
from storage.memory_store import InMemoryStore


def test_conversations_are_scoped_to_their_owner():
    store = InMemoryStore()
    convo = store.create_conversation("u1", property_id="p1", title="Sea View", context={"property": {"id": "p1"}})
    store.append_message(convo["id"], role="user", content="Hi")

    assert store.get_conversation(convo["id"], "someone-else") is None
    loaded = store.get_conversation(convo["id"], "u1")
    assert loaded["title"] == "Sea View"
    assert [m["content"] for m in loaded["messages"]] == ["Hi"]
    assert [c["id"] for c in store.list_conversations("u1")] == [convo["id"]]


def test_message_for_unknown_conversation_fails():
    with pytest.raises(RuntimeError):
        InMemoryStore().append_message("missing", role="user", content="Hi")


def test_context_snapshot_is_copied():
    store = InMemoryStore()
    context = {"property": {"id": "p1"}}
    convo = store.create_conversation("u1", context=context)
    context["property"]["id"] = "changed"
    assert store.conversations[convo["id"]]["context"]["property"]["id"] == "p1"


class SlowFirstWriteStore(InMemoryStore):
    def __init__(self):
        super().__init__()
        self.calls = 0

    def append_message(self, conversation_id, **kwargs):
        self.calls += 1
        if self.calls == 1:
            time.sleep(0.05)
        return super().append_message(conversation_id, **kwargs)


@pytest.mark.asyncio
async def test_gateway_keeps_write_order_without_blocking_the_caller():
    store = SlowFirstWriteStore()
    gateway = PersistenceGateway(store)
    conversation_id = await gateway.create_conversation("u1", {"property": {"id": "p1", "title": "Sea View"}})

    gateway.append_message(conversation_id, role="user", content="first")
    gateway.append_message(conversation_id, role="assistant", content="second")
    gateway.append_message(conversation_id, role="user", content="third")
    assert gateway.pending == 3

    await gateway.flush()
    assert [m["content"] for m in store.list_messages(conversation_id)] == ["first", "second", "third"]
    assert gateway.pending == 0
    assert store.conversations[conversation_id]["title"] == "Sea View"


@pytest.mark.asyncio
async def test_gateway_logs_and_survives_store_errors():
    class BrokenStore(InMemoryStore):
        def create_conversation(self, user_id, **kwargs):
            raise ConnectionError("supabase down")

    gateway = PersistenceGateway(BrokenStore())
    assert await gateway.create_conversation("u1") is None
    task = gateway.append_message("missing", role="user", content="Hi")
    await gateway.flush()

    assert task.result() is None
    assert [f.operation for f in gateway.failures] == ["create_conversation", "append_message"]
    assert isinstance(gateway.failures[0].original, ConnectionError)


@pytest.mark.asyncio
async def test_flush_with_nothing_pending_returns():
    await asyncio.wait_for(PersistenceGateway(InMemoryStore()).flush(), timeout=1)

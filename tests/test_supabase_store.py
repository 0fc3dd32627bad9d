from types import SimpleNamespace

import httpx
import pytest

from storage.supabase_store import SupabaseStore


class FakeQuery:
    def __init__(self, client, table):
        self.client = client
        self.table = table
        self.row = None
        self.action = "select"

    def insert(self, row):
        self.action, self.row = "insert", row
        return self

    def update(self, row):
        self.action, self.row = "update", row
        return self

    def select(self, *_):
        return self

    def eq(self, *_):
        return self

    def order(self, *_, **__):
        return self

    def limit(self, *_):
        return self

    def execute(self):
        if self.client.failures:
            raise self.client.failures.pop(0)
        self.client.calls.append((self.table, self.action, self.row))
        if self.action == "insert" and self.table in self.client.empty_tables:
            return SimpleNamespace(data=[])
        return SimpleNamespace(data=[{"id": f"{self.table}-1", **(self.row or {})}])


class FakeClient:
    def __init__(self, failures=None, empty_tables=()):
        self.failures = list(failures or [])
        self.empty_tables = set(empty_tables)
        self.calls = []

    def table(self, name):
        return FakeQuery(self, name)


def _store(client):
    store = SupabaseStore("http://supabase.test", "service-key", client=client)
    store._retry_backoff_seconds = 0
    return store


def test_append_message_inserts_and_touches_conversation():
    client = FakeClient()
    row = _store(client).append_message("c1", role="assistant", content="Hello", metadata={"turn": 1})

    assert row["content"] == "Hello"
    assert [(table, action) for table, action, _ in client.calls] == [
        ("messages", "insert"),
        ("conversations", "update"),
    ]
    assert client.calls[0][2]["metadata"] == {"turn": 1}


def test_transient_protocol_errors_are_retried():
    client = FakeClient(failures=[httpx.RemoteProtocolError("server disconnected")])
    convo = _store(client).create_conversation("u1", title="Sea View", context={"property": {"id": "p1"}})
    assert convo["title"] == "Sea View"
    assert len(client.calls) == 1


def test_other_errors_are_not_retried():
    client = FakeClient(failures=[KeyError("bad column")])
    with pytest.raises(KeyError):
        _store(client).create_lead({"lead_type": "legal"})
    assert client.calls == []


def test_empty_insert_result_is_an_error():
    client = FakeClient(empty_tables={"property_analyses"})
    with pytest.raises(RuntimeError):
        _store(client).save_property_analysis({"property_id": "p1"})

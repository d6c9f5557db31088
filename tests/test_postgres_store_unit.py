from contextlib import contextmanager
from datetime import datetime, timezone
from unittest.mock import MagicMock

import pytest
from psycopg import errors
from psycopg_pool import PoolTimeout

from chatrelay.logging import get_logger
from chatrelay.storage.errors import ConstraintViolation, StoreUnavailable
from chatrelay.storage.models import MessageRole
from chatrelay.storage.postgres import PostgresStore


class StubPool:
    def __init__(self, conn=None, error=None):
        self.conn = conn or MagicMock()
        self.error = error

    @contextmanager
    def connection(self):
        if self.error:
            raise self.error
        yield self.conn


def _store(pool) -> PostgresStore:
    store: PostgresStore = PostgresStore.__new__(PostgresStore)
    store.pool = pool
    store.logger = get_logger("test")
    return store


def test_pool_timeout_maps_to_store_unavailable():
    store = _store(StubPool(error=PoolTimeout("no connection")))
    with pytest.raises(StoreUnavailable):
        store.get_user("u1")


def test_duplicate_username_maps_to_constraint_violation():
    conn = MagicMock()
    conn.execute.side_effect = errors.UniqueViolation()
    store = _store(StubPool(conn))
    with pytest.raises(ConstraintViolation):
        store.create_user("alice")


def test_conversation_lookup_scoped_to_owner():
    now = datetime.now(timezone.utc)
    conn = MagicMock()
    conn.execute.return_value.fetchone.return_value = {
        "id": "c1",
        "user_id": "u1",
        "title": "Hello",
        "created_at": now,
        "updated_at": now,
    }
    store = _store(StubPool(conn))

    conv = store.get_conversation("c1", user_id="u1")
    assert conv.id == "c1" and conv.title == "Hello"
    query, params = conn.execute.call_args[0]
    assert "user_id = %s" in query
    assert params == ("c1", "u1")


def test_message_rows_mapped_in_order():
    now = datetime.now(timezone.utc)
    conn = MagicMock()
    conn.execute.return_value.fetchall.return_value = [
        {"id": "m1", "conversation_id": "c1", "role": "USER", "content": "hi", "seq": 0, "created_at": now},
        {"id": "m2", "conversation_id": "c1", "role": "ASSISTANT", "content": "hello", "seq": 1,
         "created_at": now, "model": "m"},
    ]
    store = _store(StubPool(conn))

    messages = store.list_messages("c1", offset=1, limit=2)
    assert [m.role for m in messages] == [MessageRole.USER, MessageRole.ASSISTANT]
    assert messages[1].model == "m"
    query, params = conn.execute.call_args[0]
    assert "ORDER BY seq ASC" in query
    assert params == ("c1", 2, 1)

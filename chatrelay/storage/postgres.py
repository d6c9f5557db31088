from __future__ import annotations

import uuid
from contextlib import contextmanager
from typing import Any, Iterator, List, Optional, Tuple

from psycopg import Connection, errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool, PoolTimeout

from chatrelay.logging import get_logger
from chatrelay.storage.errors import ConstraintViolation, StoreUnavailable
from chatrelay.storage.models import (
    DEFAULT_CONVERSATION_TITLE,
    Conversation,
    Message,
    MessageRole,
    User,
    utcnow,
)

_SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS app_user (
        id TEXT PRIMARY KEY,
        username TEXT NOT NULL UNIQUE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS user_auth_credential (
        user_id TEXT PRIMARY KEY REFERENCES app_user(id) ON DELETE CASCADE,
        password_hash TEXT NOT NULL,
        password_algo TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS conversation (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        title TEXT NOT NULL,
        created_at TIMESTAMPTZ NOT NULL,
        updated_at TIMESTAMPTZ NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS message (
        id TEXT PRIMARY KEY,
        conversation_id TEXT NOT NULL REFERENCES conversation(id) ON DELETE CASCADE,
        role TEXT NOT NULL,
        content TEXT NOT NULL,
        model TEXT,
        image_url TEXT,
        seq INTEGER NOT NULL,
        created_at TIMESTAMPTZ NOT NULL,
        UNIQUE (conversation_id, seq)
    )
    """,
    "CREATE INDEX IF NOT EXISTS conversation_user_updated_idx ON conversation (user_id, updated_at DESC)",
)


class PostgresStore:
    """PostgreSQL-backed conversation store using a psycopg connection pool."""

    def __init__(self, dsn: str) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()

    @contextmanager
    def _connect(self) -> Iterator[Connection]:
        try:
            with self.pool.connection() as conn:
                yield conn
        except PoolTimeout as exc:
            self.logger.error("postgres_pool_exhausted", error=str(exc))
            raise StoreUnavailable("database connection pool exhausted") from exc

    def _ensure_schema(self) -> None:
        with self._connect() as conn:
            for statement in _SCHEMA_STATEMENTS:
                conn.execute(statement)

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def close(self) -> None:
        self.pool.close()

    @staticmethod
    def _conversation_from_row(row: dict[str, Any]) -> Conversation:
        return Conversation(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            title=row.get("title") or DEFAULT_CONVERSATION_TITLE,
        )

    @staticmethod
    def _message_from_row(row: dict[str, Any]) -> Message:
        return Message(
            id=str(row["id"]),
            conversation_id=str(row["conversation_id"]),
            role=MessageRole(row["role"]),
            content=row["content"],
            seq=row["seq"],
            created_at=row["created_at"],
            model=row.get("model"),
            image_url=row.get("image_url"),
        )

    # users
    def create_user(self, username: str) -> User:
        user = User(id=str(uuid.uuid4()), username=username)
        try:
            with self._connect() as conn:
                conn.execute(
                    "INSERT INTO app_user (id, username, created_at) VALUES (%s, %s, %s)",
                    (user.id, user.username, user.created_at),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("username already exists", {"username": username})
        return user

    def get_user(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE id = %s", (user_id,)
            ).fetchone()
        if not row:
            return None
        return User(id=str(row["id"]), username=row["username"], created_at=row["created_at"])

    def get_user_by_username(self, username: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE username = %s", (username,)
            ).fetchone()
        if not row:
            return None
        return User(id=str(row["id"]), username=row["username"], created_at=row["created_at"])

    def save_password(self, user_id: str, password_hash: str, algo: str) -> None:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO user_auth_credential (user_id, password_hash, password_algo)
                    VALUES (%s, %s, %s)
                    ON CONFLICT (user_id) DO UPDATE
                    SET password_hash = EXCLUDED.password_hash, password_algo = EXCLUDED.password_algo
                    """,
                    (user_id, password_hash, algo),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user missing", {"user_id": user_id})

    def get_password_record(self, user_id: str) -> Optional[Tuple[str, str]]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT password_hash, password_algo FROM user_auth_credential WHERE user_id = %s",
                (user_id,),
            ).fetchone()
        if not row:
            return None
        return row["password_hash"], row["password_algo"]

    # conversations
    def create_conversation(
        self, user_id: str, title: str = DEFAULT_CONVERSATION_TITLE
    ) -> Conversation:
        now = utcnow()
        conv = Conversation(
            id=str(uuid.uuid4()), user_id=user_id, created_at=now, updated_at=now, title=title
        )
        try:
            with self._connect() as conn:
                conn.execute(
                    "INSERT INTO conversation (id, user_id, title, created_at, updated_at) VALUES (%s, %s, %s, %s, %s)",
                    (conv.id, user_id, title, now, now),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("conversation owner missing", {"user_id": user_id})
        return conv

    def get_conversation(
        self, conversation_id: str, *, user_id: Optional[str] = None
    ) -> Optional[Conversation]:
        with self._connect() as conn:
            params: tuple[Any, ...] = (conversation_id,)
            query = "SELECT * FROM conversation WHERE id = %s"
            if user_id:
                query += " AND user_id = %s"
                params = (conversation_id, user_id)
            row = conn.execute(query, params).fetchone()
        if not row:
            return None
        return self._conversation_from_row(row)

    def list_conversations(
        self, user_id: str, *, offset: int = 0, limit: int = 20
    ) -> List[Conversation]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM conversation
                WHERE user_id = %s
                ORDER BY updated_at DESC
                LIMIT %s OFFSET %s
                """,
                (user_id, limit, offset),
            ).fetchall()
        return [self._conversation_from_row(row) for row in rows]

    def count_conversations(self, user_id: str) -> int:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT COUNT(*) AS c FROM conversation WHERE user_id = %s", (user_id,)
            ).fetchone()
        return row["c"] if row else 0

    def update_conversation_title(
        self, conversation_id: str, title: str
    ) -> Optional[Conversation]:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE conversation SET title = %s, updated_at = %s WHERE id = %s RETURNING *",
                (title, utcnow(), conversation_id),
            ).fetchone()
        if not row:
            return None
        return self._conversation_from_row(row)

    def delete_conversation(self, conversation_id: str, *, user_id: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM conversation WHERE id = %s AND user_id = %s",
                (conversation_id, user_id),
            )
            return cur.rowcount > 0

    # messages
    def append_message(
        self,
        conversation_id: str,
        role: MessageRole,
        content: str,
        *,
        model: Optional[str] = None,
        image_url: Optional[str] = None,
    ) -> Message:
        role = MessageRole(role)
        try:
            with self._connect() as conn:
                with conn.transaction():
                    locked = conn.execute(
                        "SELECT 1 FROM conversation WHERE id = %s FOR UPDATE",
                        (conversation_id,),
                    ).fetchone()
                    if not locked:
                        raise ConstraintViolation(
                            "conversation not found", {"conversation_id": conversation_id}
                        )
                    seq_row = conn.execute(
                        "SELECT COUNT(*) AS c FROM message WHERE conversation_id = %s",
                        (conversation_id,),
                    ).fetchone()
                    msg = Message(
                        id=str(uuid.uuid4()),
                        conversation_id=conversation_id,
                        role=role,
                        content=content,
                        seq=seq_row["c"] if seq_row else 0,
                        created_at=utcnow(),
                        model=model,
                        image_url=image_url,
                    )
                    conn.execute(
                        """
                        INSERT INTO message (id, conversation_id, role, content, model, image_url, seq, created_at)
                        VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                        """,
                        (
                            msg.id,
                            conversation_id,
                            role.value,
                            content,
                            model,
                            image_url,
                            msg.seq,
                            msg.created_at,
                        ),
                    )
                    conn.execute(
                        "UPDATE conversation SET updated_at = %s WHERE id = %s",
                        (msg.created_at, conversation_id),
                    )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "conversation not found", {"conversation_id": conversation_id}
            )
        return msg

    def list_messages(
        self,
        conversation_id: str,
        *,
        offset: int = 0,
        limit: Optional[int] = None,
    ) -> List[Message]:
        query = "SELECT * FROM message WHERE conversation_id = %s ORDER BY seq ASC, created_at ASC"
        params: list[Any] = [conversation_id]
        if limit is not None:
            query += " LIMIT %s"
            params.append(limit)
        if offset:
            query += " OFFSET %s"
            params.append(offset)
        with self._connect() as conn:
            rows = conn.execute(query, tuple(params)).fetchall()
        return [self._message_from_row(row) for row in rows]

    def count_messages(self, conversation_id: str) -> int:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT COUNT(*) AS c FROM message WHERE conversation_id = %s",
                (conversation_id,),
            ).fetchone()
        return row["c"] if row else 0

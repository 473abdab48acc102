"""Message log and session store.

Two tables:
  - chat_sessions  — id, user_id, title, rolling summary
  - chat_messages  — append-only log, one JSONB ``{type, content}`` per row,
                     type ∈ {human, ai, system}

Connection pooling via psycopg2 ThreadedConnectionPool.  Every operation
borrows one connection and returns it on all exit paths.  The blocking
psycopg2 calls run in worker threads so the event loop stays free.
DATABASE_URL env var takes priority over individual POSTGRES_* vars.

``InMemoryHistoryStore`` implements the same contract in-process, for local
development (HISTORY_BACKEND=memory) and tests.
"""
from __future__ import annotations

import abc
import asyncio
import logging
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from urllib.parse import urlparse

from psycopg2 import pool
from psycopg2.extras import Json

from errors import StoreError
from models import Message, Role, Session
from settings import settings

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════
#  CONTRACT
# ═══════════════════════════════════════════════════════════════════

class HistoryStore(abc.ABC):
    """Async access contract over the message log and session records."""

    @abc.abstractmethod
    async def create_session(self, user_id: str, title: str) -> str: ...

    @abc.abstractmethod
    async def append_many(self, session_id: str, messages: list[Message]) -> None:
        """Append *messages* atomically, preserving their order."""

    async def append(self, session_id: str, message: Message) -> None:
        await self.append_many(session_id, [message])

    @abc.abstractmethod
    async def get_all(self, session_id: str) -> list[Message]: ...

    @abc.abstractmethod
    async def get_summary(self, session_id: str) -> str: ...

    @abc.abstractmethod
    async def set_summary(self, session_id: str, summary: str) -> None: ...

    @abc.abstractmethod
    async def get_session(self, session_id: str) -> Session | None: ...

    @abc.abstractmethod
    async def list_sessions(self, user_id: str, limit: int = 50) -> list[Session]:
        """Sessions with at least one persisted message, newest first."""

    @abc.abstractmethod
    async def rename_session(self, session_id: str, title: str) -> Session | None: ...

    @abc.abstractmethod
    async def delete_session(self, session_id: str) -> bool: ...

    async def close(self) -> None:
        return None


# ═══════════════════════════════════════════════════════════════════
#  POSTGRES — connection config
# ═══════════════════════════════════════════════════════════════════

def _db_config() -> dict:
    if settings.DATABASE_URL:
        _p = urlparse(settings.DATABASE_URL)
        return {
            "host": _p.hostname or "localhost",
            "port": _p.port or 5432,
            "database": (_p.path or "/chatapp").lstrip("/"),
            "user": _p.username or "root",
            "password": _p.password or "password",
        }
    return {
        "host": settings.POSTGRES_HOST,
        "port": settings.POSTGRES_PORT,
        "database": settings.POSTGRES_DB,
        "user": settings.POSTGRES_USER,
        "password": settings.POSTGRES_PASSWORD,
    }


_pool: pool.ThreadedConnectionPool | None = None


def _get_pool() -> pool.ThreadedConnectionPool:
    global _pool
    if _pool is None or _pool.closed:
        _pool = pool.ThreadedConnectionPool(
            minconn=settings.DB_POOL_MIN,
            maxconn=settings.DB_POOL_MAX,
            **_db_config(),
        )
    return _pool


def close_pool() -> None:
    global _pool
    if _pool is not None and not _pool.closed:
        _pool.closeall()
        logger.info("PostgreSQL pool closed")
    _pool = None


@contextmanager
def _connection():
    """Borrow a pooled connection; commit on success, roll back on error."""
    conn = _get_pool().getconn()
    try:
        yield conn
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        _get_pool().putconn(conn)


# ═══════════════════════════════════════════════════════════════════
#  POSTGRES — schema
# ═══════════════════════════════════════════════════════════════════

def init_db() -> bool:
    """Create the session and message tables if they do not exist."""
    try:
        with _connection() as conn, conn.cursor() as cur:
            cur.execute("""
                CREATE TABLE IF NOT EXISTS chat_sessions (
                    id          TEXT PRIMARY KEY,
                    user_id     TEXT NOT NULL,
                    title       TEXT NOT NULL DEFAULT 'New Chat',
                    summary     TEXT NOT NULL DEFAULT '',
                    created_at  TIMESTAMPTZ DEFAULT CURRENT_TIMESTAMP
                );
            """)
            cur.execute("""
                CREATE TABLE IF NOT EXISTS chat_messages (
                    id          SERIAL PRIMARY KEY,
                    session_id  TEXT NOT NULL,
                    message     JSONB NOT NULL,
                    created_at  TIMESTAMPTZ DEFAULT CURRENT_TIMESTAMP
                );
            """)
            cur.execute(
                "CREATE INDEX IF NOT EXISTS idx_msgs_session ON chat_messages(session_id, created_at, id);"
            )
            cur.execute(
                "CREATE INDEX IF NOT EXISTS idx_sessions_user ON chat_sessions(user_id, created_at DESC);"
            )
        logger.info("Database initialized – chat_sessions / chat_messages ready")
        return True
    except Exception as e:
        logger.error(f"Error initializing database: {e}")
        return False


# ═══════════════════════════════════════════════════════════════════
#  POSTGRES — session records
# ═══════════════════════════════════════════════════════════════════

_SESSION_COLUMNS = """
    s.id, s.user_id, s.title, s.summary, s.created_at,
    (SELECT COUNT(*) FROM chat_messages m WHERE m.session_id = s.id)
"""


def _row_to_session(r) -> Session:
    return Session(id=r[0], user_id=r[1], title=r[2], summary=r[3] or "",
                   created_at=r[4], message_count=int(r[5] or 0))


def create_session(user_id: str, title: str) -> str:
    try:
        sid = str(uuid.uuid4())
        with _connection() as conn, conn.cursor() as cur:
            cur.execute(
                "INSERT INTO chat_sessions (id, user_id, title) VALUES (%s, %s, %s) RETURNING id;",
                (sid, user_id, title),
            )
            sid = cur.fetchone()[0]
        logger.info(f"Session created {sid} for user {user_id}")
        return sid
    except Exception as e:
        logger.error(f"Error creating session: {e}")
        raise StoreError(f"could not create session: {e}") from e


def get_session(session_id: str) -> Session | None:
    try:
        with _connection() as conn, conn.cursor() as cur:
            cur.execute(f"SELECT {_SESSION_COLUMNS} FROM chat_sessions s WHERE s.id = %s;",
                        (session_id,))
            r = cur.fetchone()
        return _row_to_session(r) if r else None
    except Exception as e:
        logger.error(f"Error getting session {session_id}: {e}")
        raise StoreError(f"could not load session: {e}") from e


def list_sessions(user_id: str, limit: int = 50) -> list[Session]:
    try:
        with _connection() as conn, conn.cursor() as cur:
            cur.execute(f"""
                SELECT {_SESSION_COLUMNS}
                FROM chat_sessions s
                WHERE s.user_id = %s
                  AND EXISTS (SELECT 1 FROM chat_messages m WHERE m.session_id = s.id)
                ORDER BY s.created_at DESC
                LIMIT %s;
            """, (user_id, limit))
            rows = cur.fetchall()
        return [_row_to_session(r) for r in rows]
    except Exception as e:
        logger.error(f"Error listing sessions for {user_id}: {e}")
        raise StoreError(f"could not list sessions: {e}") from e


def rename_session(session_id: str, title: str) -> Session | None:
    try:
        with _connection() as conn, conn.cursor() as cur:
            cur.execute("UPDATE chat_sessions SET title = %s WHERE id = %s;", (title, session_id))
            if cur.rowcount == 0:
                return None
        return get_session(session_id)
    except StoreError:
        raise
    except Exception as e:
        logger.error(f"Error renaming session {session_id}: {e}")
        raise StoreError(f"could not rename session: {e}") from e


def delete_session(session_id: str) -> bool:
    try:
        with _connection() as conn, conn.cursor() as cur:
            cur.execute("DELETE FROM chat_messages WHERE session_id = %s;", (session_id,))
            cur.execute("DELETE FROM chat_sessions WHERE id = %s;", (session_id,))
            return cur.rowcount > 0
    except Exception as e:
        logger.error(f"Error deleting session {session_id}: {e}")
        raise StoreError(f"could not delete session: {e}") from e


def get_summary(session_id: str) -> str:
    try:
        with _connection() as conn, conn.cursor() as cur:
            cur.execute("SELECT summary FROM chat_sessions WHERE id = %s LIMIT 1;", (session_id,))
            r = cur.fetchone()
        return (r[0] or "") if r else ""
    except Exception as e:
        logger.error(f"Error getting summary for {session_id}: {e}")
        raise StoreError(f"could not load summary: {e}") from e


def set_summary(session_id: str, summary: str) -> None:
    try:
        with _connection() as conn, conn.cursor() as cur:
            cur.execute("UPDATE chat_sessions SET summary = %s WHERE id = %s;", (summary, session_id))
            if cur.rowcount == 0:
                logger.warning(f"Summary update matched no session {session_id}")
    except Exception as e:
        logger.error(f"Error setting summary for {session_id}: {e}")
        raise StoreError(f"could not store summary: {e}") from e


# ═══════════════════════════════════════════════════════════════════
#  POSTGRES — message log
# ═══════════════════════════════════════════════════════════════════

def append_messages(session_id: str, messages: list[Message]) -> None:
    if not messages:
        return
    try:
        with _connection() as conn, conn.cursor() as cur:
            cur.executemany(
                "INSERT INTO chat_messages (session_id, message) VALUES (%s, %s);",
                [
                    (session_id, Json({"type": m.role.storage_label, "content": m.content}))
                    for m in messages
                ],
            )
    except Exception as e:
        logger.error(f"Error appending {len(messages)} messages to {session_id}: {e}")
        raise StoreError(f"could not append messages: {e}") from e


def _row_to_message(r) -> Message:
    """Decode one ``(id, type, message, created_at)`` row; untyped rows are human."""
    data = r[2] or {}
    content = data.get("content") or data.get("text") or data.get("message") or ""
    return Message(
        id=str(r[0]),
        role=Role.from_storage_label(r[1] or "human"),
        content=content,
        created_at=r[3],
    )


def get_messages(session_id: str) -> list[Message]:
    try:
        with _connection() as conn, conn.cursor() as cur:
            cur.execute("""
                SELECT id, message->>'type', message, created_at
                FROM chat_messages WHERE session_id = %s
                ORDER BY created_at ASC, id ASC;
            """, (session_id,))
            rows = cur.fetchall()
        return [_row_to_message(r) for r in rows]
    except Exception as e:
        logger.error(f"Error getting messages for {session_id}: {e}")
        raise StoreError(f"could not load history: {e}") from e


class PostgresHistoryStore(HistoryStore):
    """HistoryStore backed by the module-level psycopg2 pool."""

    async def create_session(self, user_id: str, title: str) -> str:
        return await asyncio.to_thread(create_session, user_id, title)

    async def append_many(self, session_id: str, messages: list[Message]) -> None:
        await asyncio.to_thread(append_messages, session_id, messages)

    async def get_all(self, session_id: str) -> list[Message]:
        return await asyncio.to_thread(get_messages, session_id)

    async def get_summary(self, session_id: str) -> str:
        return await asyncio.to_thread(get_summary, session_id)

    async def set_summary(self, session_id: str, summary: str) -> None:
        await asyncio.to_thread(set_summary, session_id, summary)

    async def get_session(self, session_id: str) -> Session | None:
        return await asyncio.to_thread(get_session, session_id)

    async def list_sessions(self, user_id: str, limit: int = 50) -> list[Session]:
        return await asyncio.to_thread(list_sessions, user_id, limit)

    async def rename_session(self, session_id: str, title: str) -> Session | None:
        return await asyncio.to_thread(rename_session, session_id, title)

    async def delete_session(self, session_id: str) -> bool:
        return await asyncio.to_thread(delete_session, session_id)

    async def close(self) -> None:
        await asyncio.to_thread(close_pool)


# ═══════════════════════════════════════════════════════════════════
#  IN-MEMORY
# ═══════════════════════════════════════════════════════════════════

class InMemoryHistoryStore(HistoryStore):
    """Process-local store.  Mutations never await, so each is atomic."""

    def __init__(self):
        self.sessions: dict[str, Session] = {}
        self.messages: dict[str, list[Message]] = {}

    async def create_session(self, user_id: str, title: str) -> str:
        sid = str(uuid.uuid4())
        self.sessions[sid] = Session(id=sid, user_id=user_id, title=title,
                                     created_at=datetime.now(timezone.utc))
        return sid

    async def append_many(self, session_id: str, messages: list[Message]) -> None:
        self.messages.setdefault(session_id, []).extend(messages)

    async def get_all(self, session_id: str) -> list[Message]:
        return list(self.messages.get(session_id, []))

    async def get_summary(self, session_id: str) -> str:
        s = self.sessions.get(session_id)
        return s.summary if s else ""

    async def set_summary(self, session_id: str, summary: str) -> None:
        s = self.sessions.get(session_id)
        if s is None:
            logger.warning(f"Summary update matched no session {session_id}")
            return
        s.summary = summary

    def _with_count(self, s: Session) -> Session:
        s.message_count = len(self.messages.get(s.id, []))
        return s

    async def get_session(self, session_id: str) -> Session | None:
        s = self.sessions.get(session_id)
        return self._with_count(s) if s else None

    async def list_sessions(self, user_id: str, limit: int = 50) -> list[Session]:
        visible = [
            self._with_count(s) for s in self.sessions.values()
            if s.user_id == user_id and self.messages.get(s.id)
        ]
        visible.sort(key=lambda s: s.created_at, reverse=True)
        return visible[:limit]

    async def rename_session(self, session_id: str, title: str) -> Session | None:
        s = self.sessions.get(session_id)
        if s is None:
            return None
        s.title = title
        return self._with_count(s)

    async def delete_session(self, session_id: str) -> bool:
        self.messages.pop(session_id, None)
        return self.sessions.pop(session_id, None) is not None


def create_store(backend: str | None = None) -> HistoryStore:
    backend = (backend or settings.HISTORY_BACKEND).lower()
    if backend == "memory":
        return InMemoryHistoryStore()
    if backend == "postgres":
        return PostgresHistoryStore()
    raise ValueError(f"Unknown HISTORY_BACKEND: {backend}")

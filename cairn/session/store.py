import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import timedelta
from typing import Literal

import aiosqlite

from cairn.constants import DEFAULT_LIST_LIMIT, SESSION_MAX_AGE_DAYS
from cairn.logging import get_logger
from cairn.messages import ContentBlock, Message
from cairn.session.export import export_json, parse_export, render_markdown
from cairn.session.models import (
    Session,
    SessionBusyError,
    SessionNotFoundError,
    SessionStatus,
    SessionSummary,
)
from cairn.usage import Usage
from cairn.utils import new_id, now_ms

_logger = get_logger(__name__)

type ExportFormat = Literal["json", "markdown"]

SCHEMA = """
CREATE TABLE IF NOT EXISTS sessions (
    id TEXT PRIMARY KEY,
    project_path TEXT NOT NULL,
    title TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'active',
    created_at INTEGER NOT NULL,
    updated_at INTEGER NOT NULL,
    message_count INTEGER NOT NULL DEFAULT 0,
    document TEXT NOT NULL,
    archived_at INTEGER
);

CREATE INDEX IF NOT EXISTS idx_sessions_updated ON sessions(updated_at);
CREATE INDEX IF NOT EXISTS idx_sessions_project ON sessions(project_path, updated_at);

CREATE TABLE IF NOT EXISTS store_state (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL
);
"""

SQL_SAVE_SESSION = """
INSERT OR REPLACE INTO sessions (
    id, project_path, title, status,
    created_at, updated_at, message_count, document, archived_at
) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
"""

SQL_SUMMARY_COLUMNS = "id, title, project_path, created_at, updated_at, message_count, status, archived_at"

SQL_LIST_SESSIONS = f"""
SELECT {SQL_SUMMARY_COLUMNS}
FROM sessions
WHERE {{archived}}
ORDER BY updated_at DESC
LIMIT ?
"""

SQL_LIST_PROJECT_SESSIONS = f"""
SELECT {SQL_SUMMARY_COLUMNS}
FROM sessions
WHERE project_path = ? AND {{archived}}
ORDER BY updated_at DESC
LIMIT ?
"""

SQL_PREFIX_MATCH = """
SELECT id FROM sessions
WHERE substr(id, 1, ?) = ?
ORDER BY updated_at DESC
LIMIT 1
"""

LAST_SESSION_KEY = "last_session"

ARCHIVED_FILTER = {False: "archived_at IS NULL", True: "archived_at IS NOT NULL"}


def _summary(row: aiosqlite.Row) -> SessionSummary:
    return SessionSummary(
        id=row["id"],
        title=row["title"],
        project_path=row["project_path"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
        message_count=row["message_count"],
        status=SessionStatus(row["status"]),
        archived_at=row["archived_at"],
    )


def _search_score(summary: SessionSummary, query: str) -> int:
    score = 0
    if query in summary.title.lower():
        score += 10
    if query in summary.id:
        score += 5
    return score


class SessionStore:
    """Durable session documents, one JSON document per row.

    Summary columns are denormalized on every write so listing never parses
    message bodies. Writes to a session are serialized; whole turns are
    guarded separately by `acquire()`. Archived sessions stay addressable by
    id but drop out of listings, search and resume.
    """

    def __init__(self, conn: aiosqlite.Connection):
        self.conn = conn
        self._write_locks: dict[str, asyncio.Lock] = {}
        self._active_turns: set[str] = set()

    async def init_schema(self) -> None:
        await self.conn.executescript(SCHEMA)
        columns = {row["name"] for row in await self.conn.execute_fetchall("PRAGMA table_info(sessions)")}
        if "archived_at" not in columns:
            await self.conn.execute("ALTER TABLE sessions ADD COLUMN archived_at INTEGER")
        await self.conn.commit()

    def _lock(self, session_id: str) -> asyncio.Lock:
        return self._write_locks.setdefault(session_id, asyncio.Lock())

    async def _save(self, session: Session) -> None:
        await self.conn.execute(
            SQL_SAVE_SESSION,
            (
                session.id,
                session.project_path,
                session.display_title,
                session.status.value,
                session.created_at,
                session.updated_at,
                len(session.messages),
                session.model_dump_json(),
                session.archived_at,
            ),
        )
        await self.conn.commit()

    async def _load(self, session_id: str) -> Session | None:
        rows = await self.conn.execute_fetchall("SELECT document FROM sessions WHERE id = ?", (session_id,))
        if not rows:
            return None
        return Session.model_validate_json(rows[0]["document"])

    async def _load_or_raise(self, session_id: str) -> Session:
        session = await self._load(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        return session

    # --- CRUD ---

    async def create(self, project_path: str, title: str | None = None) -> Session:
        session = Session(project_path=project_path, title=title)
        async with self._lock(session.id):
            await self._save(session)
        return session

    async def get(self, session_id: str) -> Session | None:
        return await self._load(session_id)

    async def resolve(self, id_or_prefix: str) -> Session | None:
        """Look a session up by full id, or by the most recent id starting with the prefix."""
        if session := await self._load(id_or_prefix):
            return session
        if not id_or_prefix:
            return None
        rows = await self.conn.execute_fetchall(SQL_PREFIX_MATCH, (len(id_or_prefix), id_or_prefix))
        return await self._load(rows[0]["id"]) if rows else None

    async def update(self, session: Session) -> Session:
        async with self._lock(session.id):
            session.updated_at = now_ms()
            await self._save(session)
        return session

    async def delete(self, session_id: str) -> bool:
        async with self._lock(session_id):
            cursor = await self.conn.execute("DELETE FROM sessions WHERE id = ?", (session_id,))
            await self.conn.commit()
        self._write_locks.pop(session_id, None)
        return cursor.rowcount > 0

    # --- Message operations ---

    async def add_message(self, session_id: str, message: Message) -> Session:
        async with self._lock(session_id):
            session = await self._load_or_raise(session_id)
            session.messages.append(message)
            session.updated_at = now_ms()
            await self._save(session)
        return session

    async def update_message(
        self,
        session_id: str,
        message_id: str,
        content: list[ContentBlock],
        usage: Usage | None = None,
    ) -> Session:
        async with self._lock(session_id):
            session = await self._load_or_raise(session_id)
            for message in session.messages:
                if message.id == message_id:
                    message.content = list(content)
                    if usage is not None:
                        message.usage = usage
                    break
            else:
                raise KeyError(f"Message {message_id} not found in session {session_id}")
            session.updated_at = now_ms()
            await self._save(session)
        return session

    async def set_status(self, session_id: str, status: SessionStatus) -> Session:
        async with self._lock(session_id):
            session = await self._load_or_raise(session_id)
            session.status = status
            session.updated_at = now_ms()
            await self._save(session)
        return session

    async def set_title(self, session_id: str, title: str) -> Session:
        async with self._lock(session_id):
            session = await self._load_or_raise(session_id)
            session.title = title
            session.updated_at = now_ms()
            await self._save(session)
        return session

    async def prune(self, max_age: timedelta = timedelta(days=SESSION_MAX_AGE_DAYS)) -> int:
        cutoff = now_ms() - int(max_age.total_seconds() * 1000)
        rows = await self.conn.execute_fetchall("SELECT id FROM sessions WHERE updated_at < ?", (cutoff,))
        session_ids = [row["id"] for row in rows]
        if not session_ids:
            return 0
        await self.conn.executemany("DELETE FROM sessions WHERE id = ?", [(sid,) for sid in session_ids])
        await self.conn.commit()
        for sid in session_ids:
            self._write_locks.pop(sid, None)
        _logger.info("Pruned %d sessions older than %s", len(session_ids), max_age)
        return len(session_ids)

    # --- Archive ---

    async def _set_archived(self, session_id: str, archived: bool) -> bool:
        async with self._lock(session_id):
            session = await self._load(session_id)
            if session is None or (session.archived_at is not None) == archived:
                return False
            session.archived_at = now_ms() if archived else None
            await self._save(session)
        return True

    async def archive(self, session_id: str) -> bool:
        return await self._set_archived(session_id, True)

    async def restore(self, session_id: str) -> bool:
        return await self._set_archived(session_id, False)

    async def archive_older_than(self, max_age: timedelta) -> list[str]:
        cutoff = now_ms() - int(max_age.total_seconds() * 1000)
        rows = await self.conn.execute_fetchall(
            "SELECT id FROM sessions WHERE updated_at < ? AND archived_at IS NULL ORDER BY updated_at",
            (cutoff,),
        )
        archived = [row["id"] for row in rows if await self.archive(row["id"])]
        if archived:
            _logger.info("Archived %d sessions older than %s", len(archived), max_age)
        return archived

    # --- Turn lock ---

    @asynccontextmanager
    async def acquire(self, session_id: str) -> AsyncIterator[None]:
        """Advisory per-session turn lock; a second holder is rejected, not queued."""
        if session_id in self._active_turns:
            raise SessionBusyError(session_id)
        self._active_turns.add(session_id)
        try:
            yield
        finally:
            self._active_turns.discard(session_id)

    def is_busy(self, session_id: str) -> bool:
        return session_id in self._active_turns

    # --- Resume ---

    async def track_last(self, session_id: str) -> None:
        await self.conn.execute(
            "INSERT OR REPLACE INTO store_state (key, value) VALUES (?, ?)",
            (LAST_SESSION_KEY, session_id),
        )
        await self.conn.commit()

    async def last_session_id(self) -> str | None:
        rows = await self.conn.execute_fetchall("SELECT value FROM store_state WHERE key = ?", (LAST_SESSION_KEY,))
        return rows[0]["value"] if rows else None

    async def latest(self, project_path: str | None = None) -> Session | None:
        summaries = await self.list(project_path, limit=1)
        return await self._load(summaries[0].id) if summaries else None

    async def resume(self, project_path: str | None = None) -> Session | None:
        """The session to continue: the project's latest, else the last one used, else the latest overall."""
        if project_path is not None and (session := await self.latest(project_path)):
            return session
        if last_id := await self.last_session_id():
            session = await self._load(last_id)
            if session is not None and session.archived_at is None:
                return session
        return await self.latest()

    # --- Copies ---

    async def clone(self, session_id: str, up_to_message_id: str | None = None) -> Session:
        """Copy a session's history into a new session, optionally ending at one message.

        A cut right after a tool-calling message keeps the results that answer it.
        """
        original = await self._load_or_raise(session_id)
        messages = original.messages
        if up_to_message_id is not None:
            for i, message in enumerate(messages):
                if message.id == up_to_message_id:
                    end = i + 1
                    if message.tool_uses and end < len(messages) and messages[end].tool_results:
                        end += 1
                    messages = messages[:end]
                    break
            else:
                raise KeyError(f"Message {up_to_message_id} not found in session {session_id}")

        session = Session(
            project_path=original.project_path,
            title=f"{original.display_title} (copy)",
            messages=[message.model_copy(update={"id": new_id()}, deep=True) for message in messages],
            metadata={"cloned_from": original.id},
        )
        async with self._lock(session.id):
            await self._save(session)
        return session

    # --- Export / import ---

    async def export(
        self,
        session_id: str,
        format: ExportFormat = "json",
        include_tool_results: bool = False,
        include_metadata: bool = True,
    ) -> str:
        session = await self._load_or_raise(session_id)
        if format == "markdown":
            return render_markdown(session, include_tool_results=include_tool_results)
        return export_json(session, include_metadata=include_metadata)

    async def import_session(self, data: str) -> Session:
        """Store an exported session under a fresh id. Raises SessionImportError."""
        exported = parse_export(data)
        session = exported.model_copy(
            update={
                "id": new_id("ses_"),
                "updated_at": now_ms(),
                "archived_at": None,
                "metadata": {**exported.metadata, "imported_from": exported.id, "imported_at": now_ms()},
            }
        )
        async with self._lock(session.id):
            await self._save(session)
        return session

    # --- Listing ---

    async def search(
        self, query: str, project_path: str | None = None, limit: int = DEFAULT_LIST_LIMIT
    ) -> list[SessionSummary]:
        """Sessions whose title or id contains the query; title hits rank first."""
        query = query.strip().lower()
        if not query:
            return []
        candidates = await self.list(project_path, limit=-1)
        scored = [(score, summary) for summary in candidates if (score := _search_score(summary, query))]
        scored.sort(key=lambda item: (item[0], item[1].updated_at), reverse=True)
        return [summary for _, summary in scored[:limit]]

    async def recent(self, limit: int = 10) -> list[SessionSummary]:
        return await self.list(limit=limit)

    async def list(
        self,
        project_path: str | None = None,
        limit: int = DEFAULT_LIST_LIMIT,
        archived: bool = False,
    ) -> list[SessionSummary]:
        where = ARCHIVED_FILTER[archived]
        if project_path is None:
            rows = await self.conn.execute_fetchall(SQL_LIST_SESSIONS.format(archived=where), (limit,))
        else:
            rows = await self.conn.execute_fetchall(
                SQL_LIST_PROJECT_SESSIONS.format(archived=where), (project_path, limit)
            )
        return [_summary(row) for row in rows]

import asyncio
import json
from datetime import timedelta
from pathlib import Path

import pytest

from cairn.database import Database
from cairn.messages import Message, Role, TextContent, ToolResultContent, ToolUseContent, user_message
from cairn.session.export import EXPORT_VERSION, SessionImportError
from cairn.session.models import DEFAULT_TITLE, SessionBusyError, SessionNotFoundError, SessionStatus, derive_title
from cairn.session.store import SessionStore
from cairn.usage import Usage


class TestSessionCRUD:
    @pytest.mark.asyncio
    async def test_create_and_get(self, store: SessionStore):
        session = await store.create("/proj")

        assert session.id.startswith("ses_")
        loaded = await store.get(session.id)
        assert loaded is not None
        assert loaded.project_path == "/proj"
        assert loaded.messages == []
        assert loaded.status == SessionStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_get_nonexistent(self, store: SessionStore):
        assert await store.get("ses_nope") is None

    @pytest.mark.asyncio
    async def test_delete(self, store: SessionStore):
        session = await store.create("/proj")
        assert await store.delete(session.id)
        assert await store.get(session.id) is None
        assert not await store.delete(session.id)

    @pytest.mark.asyncio
    async def test_update_persists_changes(self, store: SessionStore):
        session = await store.create("/proj")
        session.metadata["tag"] = "x"
        session.messages.append(user_message("hello"))
        await store.update(session)

        loaded = await store.get(session.id)
        assert loaded.metadata == {"tag": "x"}
        assert loaded.messages[0].text == "hello"


class TestMessages:
    @pytest.mark.asyncio
    async def test_round_trip_preserves_order_and_blocks(self, store: SessionStore):
        session = await store.create("/proj")
        appended = [
            user_message("read the file"),
            Message(
                role=Role.ASSISTANT,
                content=[
                    TextContent(text="Reading."),
                    ToolUseContent(id="call_1", name="read", input={"file_path": "a.py"}),
                ],
                usage=Usage(input_tokens=10, output_tokens=5),
            ),
            Message(role=Role.USER, content=[ToolResultContent(tool_use_id="call_1", output="x = 1", duration_ms=3)]),
        ]
        for message in appended:
            await store.add_message(session.id, message)

        loaded = await store.get(session.id)
        assert loaded.messages == appended

    @pytest.mark.asyncio
    async def test_add_message_to_missing_session(self, store: SessionStore):
        with pytest.raises(SessionNotFoundError):
            await store.add_message("ses_nope", user_message("hi"))

    @pytest.mark.asyncio
    async def test_update_message(self, store: SessionStore):
        session = await store.create("/proj")
        draft = Message(role=Role.ASSISTANT)
        await store.add_message(session.id, draft)

        await store.update_message(session.id, draft.id, [TextContent(text="done")], usage=Usage(output_tokens=2))

        loaded = await store.get(session.id)
        assert loaded.messages[0].text == "done"
        assert loaded.messages[0].usage.output_tokens == 2

    @pytest.mark.asyncio
    async def test_update_missing_message(self, store: SessionStore):
        session = await store.create("/proj")
        with pytest.raises(KeyError):
            await store.update_message(session.id, "msg_nope", [])
        with pytest.raises(SessionNotFoundError):
            await store.update_message("ses_nope", "msg_nope", [])

    @pytest.mark.asyncio
    async def test_concurrent_appends_are_serialized(self, store: SessionStore):
        session = await store.create("/proj")
        await asyncio.gather(*(store.add_message(session.id, user_message(str(i))) for i in range(10)))

        loaded = await store.get(session.id)
        assert sorted(m.text for m in loaded.messages) == sorted(str(i) for i in range(10))


class TestStatusAndTitle:
    @pytest.mark.asyncio
    async def test_set_status(self, store: SessionStore):
        session = await store.create("/proj")
        await store.set_status(session.id, SessionStatus.CANCELLED)
        assert (await store.get(session.id)).status == SessionStatus.CANCELLED

    @pytest.mark.asyncio
    async def test_title_defaults_to_first_user_line(self, store: SessionStore):
        session = await store.create("/proj")
        await store.add_message(session.id, user_message("Fix the login bug\nmore detail"))

        [summary] = await store.list()
        assert summary.title == "Fix the login bug"
        assert summary.message_count == 1

    @pytest.mark.asyncio
    async def test_explicit_title_wins(self, store: SessionStore):
        session = await store.create("/proj")
        await store.add_message(session.id, user_message("something"))
        await store.set_title(session.id, "Named")

        [summary] = await store.list()
        assert summary.title == "Named"


class TestListing:
    @pytest.mark.asyncio
    async def test_list_newest_first_and_by_project(self, store: SessionStore):
        first = await store.create("/a")
        second = await store.create("/b")
        await asyncio.sleep(0.01)
        await store.add_message(first.id, user_message("touch"))

        summaries = await store.list()
        assert [s.id for s in summaries] == [first.id, second.id]

        only_b = await store.list(project_path="/b")
        assert [s.id for s in only_b] == [second.id]

    @pytest.mark.asyncio
    async def test_recent_limit(self, store: SessionStore):
        for _ in range(3):
            await store.create("/a")
        assert len(await store.recent(limit=2)) == 2

    @pytest.mark.asyncio
    async def test_prune(self, store: SessionStore):
        old = await store.create("/a")
        fresh = await store.create("/a")
        old.updated_at -= int(timedelta(days=40).total_seconds() * 1000)
        await store._save(old)

        assert await store.prune(timedelta(days=30)) == 1
        assert await store.get(old.id) is None
        assert await store.get(fresh.id) is not None
        assert old.id not in store._write_locks
        assert fresh.id in store._write_locks
        assert await store.prune(timedelta(days=30)) == 0


class TestArchive:
    @pytest.mark.asyncio
    async def test_archived_sessions_leave_listings(self, store: SessionStore):
        kept = await store.create("/a")
        hidden = await store.create("/a")

        assert await store.archive(hidden.id)
        assert not await store.archive(hidden.id)

        assert [s.id for s in await store.list()] == [kept.id]
        [archived] = await store.list(archived=True)
        assert archived.id == hidden.id
        assert archived.archived_at is not None
        assert (await store.get(hidden.id)).archived_at == archived.archived_at

        assert await store.restore(hidden.id)
        assert not await store.restore(hidden.id)
        assert {s.id for s in await store.list()} == {kept.id, hidden.id}

    @pytest.mark.asyncio
    async def test_archive_older_than(self, store: SessionStore):
        old = await store.create("/a")
        fresh = await store.create("/a")
        old.updated_at -= int(timedelta(days=10).total_seconds() * 1000)
        await store._save(old)

        assert await store.archive_older_than(timedelta(days=7)) == [old.id]
        assert await store.archive_older_than(timedelta(days=7)) == []
        assert [s.id for s in await store.list()] == [fresh.id]

    @pytest.mark.asyncio
    async def test_missing_session(self, store: SessionStore):
        assert not await store.archive("ses_nope")
        assert not await store.restore("ses_nope")

    @pytest.mark.asyncio
    async def test_schema_upgrade_adds_archive_column(self, tmp_path: Path):
        db = Database(tmp_path / "old.db")
        await db.connect()
        try:
            await db.conn.execute(
                "CREATE TABLE sessions (id TEXT PRIMARY KEY, project_path TEXT NOT NULL, title TEXT NOT NULL, "
                "status TEXT NOT NULL DEFAULT 'active', created_at INTEGER NOT NULL, updated_at INTEGER NOT NULL, "
                "message_count INTEGER NOT NULL DEFAULT 0, document TEXT NOT NULL)"
            )
            await db.conn.commit()
            store = SessionStore(db.conn)
            await store.init_schema()

            session = await store.create("/a")
            assert await store.archive(session.id)
            assert [s.id for s in await store.list(archived=True)] == [session.id]
        finally:
            await db.close()


class TestLookup:
    @pytest.mark.asyncio
    async def test_resolve_by_prefix(self, store: SessionStore):
        session = await store.create("/a")

        assert (await store.resolve(session.id)).id == session.id
        assert (await store.resolve(session.id[:10])).id == session.id
        assert await store.resolve("ses_zzzz") is None
        assert await store.resolve("") is None

    @pytest.mark.asyncio
    async def test_search_ranks_title_matches_first(self, store: SessionStore):
        by_title = await store.create("/a", title="Fix login redirect")
        other = await store.create("/a", title="Refactor parser")
        await store.create("/b", title="Login page styles")

        results = await store.search("LOGIN", project_path="/a")
        assert [s.id for s in results] == [by_title.id]

        by_id = await store.search(other.id[-6:])
        assert [s.id for s in by_id] == [other.id]
        assert await store.search("   ") == []

    @pytest.mark.asyncio
    async def test_search_skips_archived(self, store: SessionStore):
        session = await store.create("/a", title="login")
        await store.archive(session.id)
        assert await store.search("login") == []


class TestResume:
    @pytest.mark.asyncio
    async def test_prefers_latest_project_session(self, store: SessionStore):
        older = await store.create("/proj")
        await store.create("/elsewhere")
        await asyncio.sleep(0.01)
        newer = await store.create("/proj")
        await store.track_last(older.id)

        assert (await store.resume("/proj")).id == newer.id

    @pytest.mark.asyncio
    async def test_falls_back_to_tracked_session(self, store: SessionStore):
        tracked = await store.create("/a")
        await asyncio.sleep(0.01)
        await store.create("/b")
        await store.track_last(tracked.id)

        assert await store.last_session_id() == tracked.id
        assert (await store.resume("/unknown")).id == tracked.id

    @pytest.mark.asyncio
    async def test_falls_back_to_latest_overall(self, store: SessionStore):
        assert await store.resume("/a") is None
        assert await store.last_session_id() is None

        gone = await store.create("/b")
        await store.track_last(gone.id)
        await store.delete(gone.id)
        await asyncio.sleep(0.01)
        latest = await store.create("/c")

        assert (await store.resume("/a")).id == latest.id

    @pytest.mark.asyncio
    async def test_track_last_overwrites(self, store: SessionStore):
        await store.track_last("ses_1")
        await store.track_last("ses_2")
        assert await store.last_session_id() == "ses_2"


def tool_history() -> list[Message]:
    return [
        user_message("list files"),
        Message(role=Role.ASSISTANT, content=[ToolUseContent(id="call_1", name="ls", input={})]),
        Message(role=Role.USER, content=[ToolResultContent(tool_use_id="call_1", output="a.py")]),
        Message(role=Role.ASSISTANT, content=[TextContent(text="One file.")]),
    ]


class TestClone:
    @pytest.mark.asyncio
    async def test_copies_history_under_new_ids(self, store: SessionStore):
        session = await store.create("/proj", title="Original")
        for message in tool_history():
            await store.add_message(session.id, message)
        original = await store.get(session.id)

        clone = await store.clone(session.id)

        assert clone.id != session.id
        assert clone.title == "Original (copy)"
        assert clone.metadata == {"cloned_from": session.id}
        assert [m.content for m in clone.messages] == [m.content for m in original.messages]
        assert not {m.id for m in clone.messages} & {m.id for m in original.messages}
        assert (await store.get(clone.id)).messages == clone.messages

    @pytest.mark.asyncio
    async def test_cut_after_tool_call_keeps_its_results(self, store: SessionStore):
        session = await store.create("/proj")
        history = tool_history()
        for message in history:
            await store.add_message(session.id, message)

        clone = await store.clone(session.id, up_to_message_id=history[1].id)

        assert len(clone.messages) == 3
        assert clone.messages[-1].tool_results[0].tool_use_id == "call_1"

        first_only = await store.clone(session.id, up_to_message_id=history[0].id)
        assert [m.text for m in first_only.messages] == ["list files"]

    @pytest.mark.asyncio
    async def test_unknown_message_or_session(self, store: SessionStore):
        session = await store.create("/proj")
        with pytest.raises(KeyError):
            await store.clone(session.id, up_to_message_id="msg_nope")
        with pytest.raises(SessionNotFoundError):
            await store.clone("ses_nope")


class TestExportImport:
    @pytest.mark.asyncio
    async def test_json_export_imports_as_new_session(self, store: SessionStore):
        session = await store.create("/proj", title="Shared")
        for message in tool_history():
            await store.add_message(session.id, message)

        data = await store.export(session.id)
        document = json.loads(data)
        assert document["version"] == EXPORT_VERSION
        assert document["session"]["id"] == session.id

        imported = await store.import_session(data)

        assert imported.id != session.id
        assert imported.title == "Shared"
        assert imported.metadata["imported_from"] == session.id
        assert "imported_at" in imported.metadata
        stored = await store.get(imported.id)
        assert stored.messages == (await store.get(session.id)).messages

    @pytest.mark.asyncio
    async def test_export_without_metadata(self, store: SessionStore):
        session = await store.create("/proj")
        session.metadata["secret"] = "x"
        message = user_message("hi")
        message.metadata["trace"] = "y"
        session.messages.append(message)
        await store.update(session)

        document = json.loads(await store.export(session.id, include_metadata=False))

        assert document["session"]["metadata"] == {}
        assert document["session"]["messages"][0]["metadata"] == {}

    @pytest.mark.asyncio
    async def test_markdown_export(self, store: SessionStore):
        session = await store.create("/proj", title="Files")
        for message in tool_history():
            await store.add_message(session.id, message)

        plain = await store.export(session.id, format="markdown")
        assert plain.startswith("# Files\n")
        assert f"**Session:** {session.id}" in plain
        assert "## User\n\nlist files" in plain
        assert "**Tool call:** `ls`" in plain
        assert "**Tool result:**" not in plain
        assert "## Assistant\n\nOne file." in plain

        detailed = await store.export(session.id, format="markdown", include_tool_results=True)
        assert "**Tool result:**\n```\na.py\n```" in detailed

    @pytest.mark.asyncio
    async def test_markdown_truncates_long_results(self, store: SessionStore):
        session = await store.create("/proj")
        await store.add_message(
            session.id, Message(role=Role.USER, content=[ToolResultContent(tool_use_id="c", output="x" * 1500)])
        )
        text = await store.export(session.id, format="markdown", include_tool_results=True)
        assert "x" * 1000 + "\n...(truncated)" in text
        assert "x" * 1001 not in text

    @pytest.mark.asyncio
    async def test_export_missing_session(self, store: SessionStore):
        with pytest.raises(SessionNotFoundError):
            await store.export("ses_nope")

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        ("data", "message"),
        [
            ("not json", "Invalid JSON format"),
            ("[1, 2]", "expected a JSON object"),
            ('{"version": "0.9", "session": {}}', "Unsupported export version: 0.9"),
            ('{"version": "1.0", "session": {"id": "x"}}', "Invalid export"),
        ],
    )
    async def test_rejects_bad_documents(self, store: SessionStore, data: str, message: str):
        with pytest.raises(SessionImportError, match=message):
            await store.import_session(data)
        assert await store.list() == []


class TestTurnLock:
    @pytest.mark.asyncio
    async def test_second_acquire_is_rejected(self, store: SessionStore):
        async with store.acquire("ses_1"):
            assert store.is_busy("ses_1")
            with pytest.raises(SessionBusyError):
                async with store.acquire("ses_1"):
                    pass
            async with store.acquire("ses_2"):
                pass
        assert not store.is_busy("ses_1")

    @pytest.mark.asyncio
    async def test_released_on_error(self, store: SessionStore):
        with pytest.raises(RuntimeError):
            async with store.acquire("ses_1"):
                raise RuntimeError("boom")
        async with store.acquire("ses_1"):
            pass


class TestDeriveTitle:
    def test_truncates_long_lines(self):
        title = derive_title([user_message("x" * 80)])
        assert len(title) == 50
        assert title.endswith("...")

    def test_default(self):
        assert derive_title([]) == DEFAULT_TITLE
        assert derive_title([Message(role=Role.ASSISTANT, content=[TextContent(text="hi")])]) == DEFAULT_TITLE


@pytest.mark.asyncio
async def test_database_uses_wal(tmp_path: Path):
    db = Database(tmp_path / "nested" / "s.db")
    await db.connect()
    try:
        rows = await db.conn.execute_fetchall("PRAGMA journal_mode")
        assert rows[0][0] == "wal"
    finally:
        await db.close()

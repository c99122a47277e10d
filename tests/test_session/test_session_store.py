import pytest

from talon.config import Config
from talon.llm import Message, ToolCall
from talon.session import (
    InMemorySessionStore,
    SQLiteSessionStore,
    create_session_store,
    trim_history,
)


def _exchange() -> list[Message]:
    return [
        Message(role="user", content="list files"),
        Message(
            role="assistant",
            content="",
            tool_calls=[ToolCall(id="call_1", name="shell", arguments={"command": "ls"})],
        ),
        Message(role="tool", content="a.txt", tool_call_id="call_1", tool_name="shell"),
        Message(role="assistant", content="There is one file: a.txt"),
    ]


def test_trim_history_never_opens_on_tool_results():
    messages = _exchange()

    assert trim_history(messages, 2) == messages[-1:]
    assert trim_history(messages, 3) == messages[-3:]
    assert trim_history(messages, 0) == []


@pytest.mark.asyncio
async def test_in_memory_store_keeps_sessions_apart():
    store = InMemorySessionStore()
    for message in _exchange():
        await store.append_history("alpha", message)
    await store.append_history("beta", Message(role="user", content="hi"))

    assert await store.load_history("alpha", 50) == _exchange()
    assert [m.content for m in await store.load_history("beta", 50)] == ["hi"]
    assert await store.load_history("missing", 50) == []


@pytest.mark.asyncio
async def test_sqlite_store_uses_db_path_override(tmp_path):
    db_path = tmp_path / "custom-sessions.db"
    store = SQLiteSessionStore(db_path=db_path)
    try:
        await store.append_history("alpha", Message(role="user", content="hello"))
        assert db_path.exists()
    finally:
        await store.close()


@pytest.mark.asyncio
async def test_sqlite_store_round_trip_survives_reopen(tmp_path):
    db_path = tmp_path / "sessions.db"
    store = SQLiteSessionStore(db_path=db_path)
    try:
        for message in _exchange():
            await store.append_history("alpha", message)
    finally:
        await store.close()

    reopened = SQLiteSessionStore(db_path=db_path)
    try:
        loaded = await reopened.load_history("alpha", 50)
        assert loaded == _exchange()
        assert loaded[1].tool_calls[0].arguments == {"command": "ls"}

        windowed = await reopened.load_history("alpha", 2)
        assert [m.content for m in windowed] == ["There is one file: a.txt"]
    finally:
        await reopened.close()


@pytest.mark.asyncio
async def test_sqlite_store_delete_history(tmp_path):
    store = SQLiteSessionStore(db_path=tmp_path / "sessions.db")
    try:
        await store.append_history("alpha", Message(role="user", content="one"))
        await store.append_history("alpha", Message(role="assistant", content="two"))
        await store.append_history("beta", Message(role="user", content="other"))

        assert await store.delete_history("alpha") == 2
        assert await store.load_history("alpha", 10) == []
        assert len(await store.load_history("beta", 10)) == 1
    finally:
        await store.close()


def test_create_session_store_follows_config(tmp_path):
    memory_cfg = Config()
    memory_cfg.session.storage = "memory"
    assert isinstance(create_session_store(memory_cfg), InMemorySessionStore)

    sqlite_cfg = Config()
    sqlite_cfg.session.path = str(tmp_path / "nested" / "sessions.db")
    store = create_session_store(sqlite_cfg)
    assert isinstance(store, SQLiteSessionStore)
    assert store.db_path == tmp_path / "nested" / "sessions.db"

import json

import pytest

from conftest import error_verdict
from tutorloop.session import ConversationTurn, HighlightRegion
from tutorloop.store import JsonFileStore, MemoryStore, build_store, persist


@pytest.fixture(params=["memory", "json"])
def any_store(request, tmp_path):
    if request.param == "memory":
        return MemoryStore()
    return JsonFileStore(tmp_path / "sessions")


async def test_last_verdict_round_trips(any_store):
    assert await any_store.read_last_verdict("s1") is None

    await any_store.append_verdict("s1", error_verdict(feedback="first"))
    await any_store.append_verdict(
        "s1", error_verdict(feedback="second", highlight=HighlightRegion(0.1, 0.1, 0.2, 0.2))
    )
    last = await any_store.read_last_verdict("s1")

    assert last.feedback == "second"
    assert last.hints == ("Divide both sides by minus two",)
    assert last.highlight == HighlightRegion(0.1, 0.1, 0.2, 0.2)


async def test_update_requires_existing_document(any_store):
    assert await any_store.update_session("gone", {"status": "completed"}) is False

    await any_store.save_snapshot("s1", "img", {"kind": "final"})
    assert await any_store.update_session("s1", {"status": "completed"}) is True
    assert any_store.get("s1")["status"] == "completed"


async def test_turns_are_appended(any_store):
    await any_store.append_turns(
        "s1",
        [
            ConversationTurn(role="assistant", content="Hi!", timestamp=1.0),
            ConversationTurn(role="user", content="Hello", timestamp=2.0),
        ],
    )

    turns = any_store.get("s1")["turns"]
    assert [t["role"] for t in turns] == ["assistant", "user"]


async def test_json_store_writes_one_file_per_session(tmp_path):
    store = JsonFileStore(tmp_path)
    await store.append_verdict("abc-123", error_verdict())

    doc = json.loads((tmp_path / "abc-123.json").read_text())
    assert doc["session_id"] == "abc-123"
    assert len(doc["verdicts"]) == 1


def test_build_store_picks_backend(tmp_path):
    assert isinstance(build_store(""), MemoryStore)
    assert isinstance(build_store(str(tmp_path)), JsonFileStore)


async def test_persist_logs_failures(caplog):
    async def failing():
        raise OSError("disk full")

    await persist(failing(), "append verdict", "s1")

    assert "Failed to append verdict for session s1" in caplog.text

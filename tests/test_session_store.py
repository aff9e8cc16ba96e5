"""Tests for the persisted session record."""

import asyncio
import json
import threading

from bili_cli.models.session import CookieEntry, Session
from bili_cli.storage.session_store import SessionStore


def make_session(**overrides):
    fields = {
        "cookies": (
            CookieEntry(name="SESSDATA", value="secret"),
            CookieEntry(name="DedeUserID", value="42"),
        ),
        "user_id": 42,
    }
    fields.update(overrides)
    return Session(**fields)


def test_missing_file_means_not_logged_in(tmp_path):
    store = SessionStore(tmp_path / "session.json")
    assert store.load() is None
    assert store.current is None


def test_save_and_reload(tmp_path):
    path = tmp_path / "session.json"
    SessionStore(path).save(make_session())

    reloaded = SessionStore(path).current
    assert reloaded.user_id == 42
    assert reloaded.get_cookie("SESSDATA") == "secret"
    assert reloaded.cookie_header() == "SESSDATA=secret; DedeUserID=42"


def test_save_leaves_no_temporary_files(tmp_path):
    store = SessionStore(tmp_path / "session.json")
    for i in range(3):
        store.save(make_session(user_id=i))
    assert [p.name for p in tmp_path.iterdir()] == ["session.json"]
    assert json.loads((tmp_path / "session.json").read_text())["user_id"] == 2


def test_corrupt_file_is_ignored(tmp_path):
    path = tmp_path / "session.json"
    path.write_text('{"cookies": [{"name": "SESSDATA"', encoding="utf-8")
    assert SessionStore(path).load() is None


def test_invalidate_marks_record_and_hides_it(tmp_path):
    path = tmp_path / "session.json"
    store = SessionStore(path)
    store.save(make_session())

    store.invalidate()

    assert store.current is None
    assert json.loads(path.read_text())["valid"] is False
    assert SessionStore(path).load() is None


def test_clear_removes_file(tmp_path):
    path = tmp_path / "session.json"
    store = SessionStore(path)
    store.save(make_session())
    store.clear()
    assert not path.exists()
    assert store.current is None


def test_async_writes_run_off_the_event_loop(tmp_path, monkeypatch):
    store = SessionStore(tmp_path / "session.json")
    writer_threads = []
    real_save = SessionStore.save

    def recording_save(self, session):
        writer_threads.append(threading.current_thread())
        real_save(self, session)

    monkeypatch.setattr(SessionStore, "save", recording_save)

    async def scenario():
        await store.save_async(make_session())
        await store.update_signing_key_async("k" * 32)
        await store.invalidate_async()

    asyncio.run(scenario())

    assert len(writer_threads) == 3
    assert threading.main_thread() not in writer_threads
    raw = json.loads((tmp_path / "session.json").read_text(encoding="utf-8"))
    assert raw["signing_key"] == "k" * 32
    assert raw["valid"] is False
    assert store.current is None


def test_expired_cookies_are_not_sent():
    session = make_session(
        cookies=(
            CookieEntry(name="SESSDATA", value="secret", expires=1),
            CookieEntry(name="bili_jct", value="csrf"),
        )
    )
    assert session.cookie_header() == "bili_jct=csrf"


def test_cookie_string_parsing():
    session = Session.from_cookie_string("SESSDATA=abc; DedeUserID=7; bili_jct=x")
    assert session.get_cookie("SESSDATA") == "abc"
    assert session.user_id == 7

    bare = Session.from_cookie_string("  rawvalue ")
    assert bare.get_cookie("SESSDATA") == "rawvalue"

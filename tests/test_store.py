from __future__ import annotations

import logging

from replay.store import SessionStore, drawings_key, session_key


def test_set_get_delete(tmp_path):
    store = SessionStore(tmp_path / "cache")
    payload = {"balance": 100_000.0, "positions": [{"order_id": "O000001", "tags": ("a", "b")}]}

    path = store.set(session_key("EUR_USD"), payload)

    assert path.exists()
    assert path.parent == tmp_path / "cache"
    loaded = store.get(session_key("EUR_USD"))
    assert loaded["positions"][0]["tags"] == ["a", "b"]
    assert store.delete(session_key("EUR_USD")) is True
    assert store.get(session_key("EUR_USD")) is None
    assert store.delete(session_key("EUR_USD")) is False


def test_keys_are_sanitised_into_file_names(tmp_path):
    store = SessionStore(tmp_path)
    assert store.path_for(drawings_key("XAU_USD")).name == "drawings_XAU_USD.json"
    assert store.path_for("../../etc/passwd").parent == tmp_path


def test_corrupt_entries_are_ignored(tmp_path, caplog):
    store = SessionStore(tmp_path)
    store.path_for("session:EUR_USD").write_text("{not json", encoding="utf-8")
    store.path_for("session:GBP_USD").write_text("[1, 2]", encoding="utf-8")

    with caplog.at_level(logging.WARNING, logger="replay.store"):
        assert store.get("session:EUR_USD") is None
        assert store.get("session:GBP_USD") is None

    assert len([record for record in caplog.records if record.levelno == logging.WARNING]) == 2


def test_keys_lists_saved_entries(tmp_path):
    store = SessionStore(tmp_path / "missing")
    assert store.keys() == []
    store.set("b", {})
    store.set("a", {})
    assert store.keys() == ["a", "b"]

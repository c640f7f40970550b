import json
import sqlite3
from datetime import datetime, timedelta, timezone

import pytest

from verity.core.stores import (
    Credential,
    InMemoryTokenStore,
    SQLiteTokenStore,
    create_token_store_from_env,
    open_sqlite_connection,
)


def test_sqlite_token_store_persists_across_instances(tmp_path):
    db_path = tmp_path / "verity_state.db"
    expires_at = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
    SQLiteTokenStore(str(db_path)).set(Credential(access_token="a-1", refresh_token="r-1", expires_at=expires_at))

    restored = SQLiteTokenStore(str(db_path)).get()
    assert restored == Credential(access_token="a-1", refresh_token="r-1", expires_at=expires_at)

    with sqlite3.connect(str(db_path)) as conn:
        row = conn.execute("SELECT payload_json FROM credentials WHERE slot = ?", ("default",)).fetchone()
    raw_payload = json.loads(row[0])
    assert raw_payload["access_token"] == "a-1"
    assert raw_payload["expires_at"] == "2026-03-01T12:00:00+00:00"


def test_sqlite_token_store_set_replaces_whole_credential(tmp_path):
    store = SQLiteTokenStore(str(tmp_path / "verity_state.db"))
    store.set(Credential(access_token="a-1", refresh_token="r-1"))
    store.set(Credential(access_token="a-2"))

    restored = store.get()
    assert restored.access_token == "a-2"
    assert restored.refresh_token is None

    with sqlite3.connect(str(tmp_path / "verity_state.db")) as conn:
        count = conn.execute("SELECT COUNT(*) FROM credentials").fetchone()[0]
    assert count == 1


def test_sqlite_token_store_clear_and_unreadable_row(tmp_path):
    db_path = tmp_path / "verity_state.db"
    store = SQLiteTokenStore(str(db_path))
    store.set(Credential(access_token="a-1"))
    store.clear()
    assert store.get() is None

    with sqlite3.connect(str(db_path)) as conn:
        conn.execute("INSERT INTO credentials (slot, payload_json) VALUES (?, ?)", ("default", "{not json"))
    assert store.get() is None


def test_sqlite_store_initializes_pragmas_and_schema_meta(tmp_path):
    db_path = tmp_path / "verity_state.db"
    SQLiteTokenStore(str(db_path))

    with open_sqlite_connection(str(db_path)) as conn:
        journal_mode = conn.execute("PRAGMA journal_mode").fetchone()[0]
        rows = conn.execute("SELECT component, version FROM schema_meta ORDER BY component").fetchall()
        rows = [(row["component"], row["version"]) for row in rows]

    assert str(journal_mode).lower() == "wal"
    assert ("credentials", 1) in rows


def test_sqlite_store_refuses_newer_schema(tmp_path):
    db_path = tmp_path / "verity_state.db"
    with sqlite3.connect(str(db_path)) as conn:
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS schema_meta (
              component TEXT PRIMARY KEY,
              version INTEGER NOT NULL,
              updated_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
            )
            """
        )
        conn.execute("INSERT INTO schema_meta (component, version) VALUES (?, ?)", ("credentials", 9))

    with pytest.raises(RuntimeError, match="Unsupported newer schema"):
        SQLiteTokenStore(str(db_path))


def test_create_token_store_from_env(monkeypatch, tmp_path):
    monkeypatch.delenv("VERITY_TOKEN_STORE", raising=False)
    assert isinstance(create_token_store_from_env(), InMemoryTokenStore)

    monkeypatch.setenv("VERITY_TOKEN_STORE", "sqlite")
    monkeypatch.setenv("VERITY_SQLITE_PATH", str(tmp_path / "env_state.db"))
    store = create_token_store_from_env()
    assert isinstance(store, SQLiteTokenStore)
    assert store.db_path == str(tmp_path / "env_state.db")


def test_credential_expiry_from_token_payload():
    now = datetime(2026, 1, 1, tzinfo=timezone.utc)

    by_ttl = Credential.from_token_payload(access_token="a", expires_in=60, now=now)
    assert by_ttl.expires_at == now + timedelta(seconds=60)
    assert by_ttl.is_expired(leeway_s=30, now=now) is False
    assert by_ttl.is_expired(leeway_s=30, now=now + timedelta(seconds=31)) is True

    by_stamp = Credential.from_token_payload(access_token="a", expires_at="2026-01-01T00:10:00Z", expires_in=60, now=now)
    assert by_stamp.expires_at == now + timedelta(minutes=10)

    fallback = Credential.from_token_payload(access_token="a", ttl_s=1800, now=now)
    assert fallback.expires_at == now + timedelta(minutes=30)

    assert Credential(access_token="a").is_expired(leeway_s=3600) is False
    assert Credential.from_dict({"refresh_token": "r"}) is None


def test_sqlite_busy_timeout_reads_env(monkeypatch, tmp_path):
    monkeypatch.setenv("VERITY_SQLITE_BUSY_TIMEOUT_MS", "7000")
    db_path = tmp_path / "verity_state.db"
    SQLiteTokenStore(str(db_path))

    with open_sqlite_connection(str(db_path)) as conn:
        busy_timeout = conn.execute("PRAGMA busy_timeout").fetchone()[0]
    assert int(busy_timeout) == 7000


def test_sqlite_token_store_persists_login_profile(tmp_path):
    db_path = str(tmp_path / "verity_state.db")
    user = {"email": "maria@verity.test", "name": "Maria Silva"}
    organization = {"id": "org-1", "name": "Fazenda Boa Vista"}
    SQLiteTokenStore(db_path).set(Credential(access_token="a-1", user=user, organization=organization))

    restored = SQLiteTokenStore(db_path).get()
    assert restored.user == user
    assert restored.organization == organization

    SQLiteTokenStore(db_path).clear()
    assert SQLiteTokenStore(db_path).get() is None

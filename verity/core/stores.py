from __future__ import annotations

import json
import sqlite3
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional, Protocol

from verity.core.config import VerityConfig, config

CREDENTIAL_SLOT = "default"


def _parse_timestamp(value: Any) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        try:
            parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
        except ValueError:
            return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass(frozen=True)
class Credential:
    access_token: str
    refresh_token: Optional[str] = None
    expires_at: Optional[datetime] = None
    # Login profile; persisted with the tokens.
    user: Optional[Dict[str, Any]] = None
    organization: Optional[Dict[str, Any]] = None

    @classmethod
    def from_token_payload(
        cls,
        *,
        access_token: str,
        refresh_token: Optional[str] = None,
        expires_in: Optional[int] = None,
        expires_at: Any = None,
        ttl_s: Optional[int] = None,
        now: Optional[datetime] = None,
        user: Optional[Dict[str, Any]] = None,
        organization: Optional[Dict[str, Any]] = None,
    ) -> "Credential":
        now = now or datetime.now(timezone.utc)
        parsed = _parse_timestamp(expires_at)
        if parsed is None and expires_in:
            parsed = now + timedelta(seconds=int(expires_in))
        if parsed is None:
            parsed = now + timedelta(seconds=ttl_s or config.auth.access_token_ttl_s)
        return cls(
            access_token=access_token,
            refresh_token=refresh_token,
            expires_at=parsed,
            user=user,
            organization=organization,
        )

    def is_expired(self, leeway_s: float = 0.0, now: Optional[datetime] = None) -> bool:
        # Advisory only; the backend's 401 is what actually ends a token.
        if self.expires_at is None:
            return False
        now = now or datetime.now(timezone.utc)
        return now + timedelta(seconds=leeway_s) >= self.expires_at

    def to_dict(self) -> Dict[str, Any]:
        return {
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
            "user": self.user,
            "organization": self.organization,
        }

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> Optional["Credential"]:
        access_token = payload.get("access_token")
        if not access_token:
            return None
        return cls(
            access_token=str(access_token),
            refresh_token=payload.get("refresh_token") or None,
            expires_at=_parse_timestamp(payload.get("expires_at")),
            user=payload.get("user") if isinstance(payload.get("user"), dict) else None,
            organization=payload.get("organization") if isinstance(payload.get("organization"), dict) else None,
        )


class TokenStore(Protocol):
    def get(self) -> Optional[Credential]: ...

    def set(self, credential: Credential) -> None: ...

    def clear(self) -> None: ...


def sqlite_busy_timeout_ms() -> int:
    return VerityConfig.from_env().auth.sqlite_busy_timeout_ms


def storage_json_dumps(value: Any) -> str:
    return json.dumps(value, ensure_ascii=False, separators=(",", ":"))


def storage_json_loads(value: str) -> Any:
    return json.loads(value)


def open_sqlite_connection(db_path: str) -> sqlite3.Connection:
    conn = sqlite3.connect(db_path, timeout=30)
    conn.row_factory = sqlite3.Row
    conn.execute(f"PRAGMA busy_timeout = {sqlite_busy_timeout_ms()}")
    conn.execute("PRAGMA journal_mode = WAL")
    conn.execute("PRAGMA synchronous = NORMAL")
    return conn


def ensure_sqlite_schema_meta(conn: sqlite3.Connection) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS schema_meta (
          component TEXT PRIMARY KEY,
          version INTEGER NOT NULL,
          updated_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
        )
        """
    )


def ensure_sqlite_component_schema(conn: sqlite3.Connection, component: str, target_version: int) -> int:
    ensure_sqlite_schema_meta(conn)
    row = conn.execute("SELECT version FROM schema_meta WHERE component = ?", (component,)).fetchone()
    if row is None:
        conn.execute(
            """
            INSERT INTO schema_meta (component, version, updated_at)
            VALUES (?, ?, CURRENT_TIMESTAMP)
            """,
            (component, target_version),
        )
        return target_version

    current_version = int(row["version"])
    if current_version > target_version:
        raise RuntimeError(
            f"Unsupported newer schema for component '{component}': {current_version} > {target_version}"
        )
    if current_version < target_version:
        conn.execute(
            """
            UPDATE schema_meta
            SET version = ?, updated_at = CURRENT_TIMESTAMP
            WHERE component = ?
            """,
            (target_version, component),
        )
    return target_version


class InMemoryTokenStore:
    def __init__(self, credential: Optional[Credential] = None) -> None:
        self._credential = credential
        self._lock = threading.Lock()

    def get(self) -> Optional[Credential]:
        with self._lock:
            return self._credential

    def set(self, credential: Credential) -> None:
        with self._lock:
            self._credential = credential

    def clear(self) -> None:
        with self._lock:
            self._credential = None


class SQLiteTokenStore:
    """Credential store that survives process restarts.

    The whole credential is one JSON row, so `set` is a single upsert and a
    reader never sees a new access token paired with an old refresh token.
    """

    SCHEMA_COMPONENT = "credentials"
    SCHEMA_VERSION = 1

    def __init__(self, db_path: Optional[str] = None) -> None:
        self.db_path = db_path or VerityConfig.from_env().auth.sqlite_path
        self._write_lock = threading.Lock()
        self._init_db()

    def _connect(self) -> sqlite3.Connection:
        return open_sqlite_connection(self.db_path)

    def _init_db(self) -> None:
        with self._connect() as conn:
            ensure_sqlite_component_schema(conn, self.SCHEMA_COMPONENT, self.SCHEMA_VERSION)
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS credentials (
                  slot TEXT PRIMARY KEY,
                  payload_json TEXT NOT NULL,
                  updated_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
                )
                """
            )

    def get(self) -> Optional[Credential]:
        with self._connect() as conn:
            row = conn.execute("SELECT payload_json FROM credentials WHERE slot = ?", (CREDENTIAL_SLOT,)).fetchone()
        if not row:
            return None
        try:
            payload = storage_json_loads(row["payload_json"])
        except ValueError:
            return None
        if not isinstance(payload, dict):
            return None
        return Credential.from_dict(payload)

    def set(self, credential: Credential) -> None:
        payload_json = storage_json_dumps(credential.to_dict())
        with self._write_lock:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO credentials (slot, payload_json, updated_at)
                    VALUES (?, ?, CURRENT_TIMESTAMP)
                    ON CONFLICT(slot) DO UPDATE SET
                      payload_json=excluded.payload_json,
                      updated_at=CURRENT_TIMESTAMP
                    """,
                    (CREDENTIAL_SLOT, payload_json),
                )

    def clear(self) -> None:
        with self._write_lock:
            with self._connect() as conn:
                conn.execute("DELETE FROM credentials WHERE slot = ?", (CREDENTIAL_SLOT,))


def create_token_store_from_env() -> InMemoryTokenStore | SQLiteTokenStore:
    settings = VerityConfig.from_env().auth
    if settings.token_store == "sqlite":
        return SQLiteTokenStore(settings.sqlite_path)
    return InMemoryTokenStore()

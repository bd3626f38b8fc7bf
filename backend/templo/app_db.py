from __future__ import annotations

import json
import sqlite3
import uuid
from datetime import datetime, timezone
from typing import Any

from . import config
from .logging_utils import get_logger

log = get_logger(__name__)

_USER_COLUMNS = "user_id, username, email, password_hash, role, magical_name, disabled_at, created_at, updated_at"
_GRIMOIRE_COLUMNS = (
    "grimoire_id, title, content, content_format, excerpt, author, is_paid, is_published, "
    "enable_pdf_download, display_order, word_count, created_at, updated_at"
)
_GRIMOIRE_FLAGS = ("is_paid", "is_published", "enable_pdf_download")


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _connect() -> sqlite3.Connection:
    db_path = config.APP_DB_PATH
    db_path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(str(db_path), check_same_thread=False)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL;")
    conn.execute("PRAGMA synchronous=NORMAL;")
    conn.execute("PRAGMA foreign_keys=ON;")
    return conn


def init_db() -> None:
    conn = _connect()
    try:
        conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS settings (
              key TEXT PRIMARY KEY,
              value_json TEXT NOT NULL,
              created_at TEXT NOT NULL,
              updated_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS users (
              user_id TEXT PRIMARY KEY,
              username TEXT NOT NULL UNIQUE,
              email TEXT UNIQUE,
              password_hash TEXT NOT NULL,
              role TEXT NOT NULL CHECK(role IN ('admin','member')),
              magical_name TEXT,
              disabled_at TEXT,
              created_at TEXT NOT NULL,
              updated_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS auth_sessions (
              token_hash TEXT PRIMARY KEY,
              user_id TEXT NOT NULL,
              created_at TEXT NOT NULL,
              expires_at TEXT NOT NULL,
              last_seen_at TEXT NOT NULL,
              FOREIGN KEY(user_id) REFERENCES users(user_id) ON DELETE CASCADE
            );

            CREATE TABLE IF NOT EXISTS grimoires (
              grimoire_id INTEGER PRIMARY KEY AUTOINCREMENT,
              title TEXT NOT NULL,
              content TEXT NOT NULL DEFAULT '',
              content_format TEXT NOT NULL DEFAULT 'html' CHECK(content_format IN ('html','markdown')),
              excerpt TEXT,
              author TEXT,
              is_paid INTEGER NOT NULL DEFAULT 0,
              is_published INTEGER NOT NULL DEFAULT 1,
              enable_pdf_download INTEGER NOT NULL DEFAULT 0,
              display_order INTEGER NOT NULL DEFAULT 0,
              word_count INTEGER NOT NULL DEFAULT 0,
              created_at TEXT NOT NULL,
              updated_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS grimoire_access (
              user_id TEXT NOT NULL,
              grimoire_id INTEGER NOT NULL,
              granted_at TEXT NOT NULL,
              PRIMARY KEY(user_id, grimoire_id),
              FOREIGN KEY(user_id) REFERENCES users(user_id) ON DELETE CASCADE,
              FOREIGN KEY(grimoire_id) REFERENCES grimoires(grimoire_id) ON DELETE CASCADE
            );

            CREATE TABLE IF NOT EXISTS grimoire_progress (
              user_id TEXT NOT NULL,
              grimoire_id INTEGER NOT NULL,
              current_page INTEGER NOT NULL DEFAULT 1,
              total_pages INTEGER NOT NULL DEFAULT 1,
              progress_percentage REAL NOT NULL DEFAULT 0,
              is_completed INTEGER NOT NULL DEFAULT 0,
              completed_at TEXT,
              last_read_at TEXT NOT NULL,
              PRIMARY KEY(user_id, grimoire_id),
              FOREIGN KEY(user_id) REFERENCES users(user_id) ON DELETE CASCADE,
              FOREIGN KEY(grimoire_id) REFERENCES grimoires(grimoire_id) ON DELETE CASCADE
            );

            CREATE INDEX IF NOT EXISTS idx_users_role
              ON users(role);

            CREATE INDEX IF NOT EXISTS idx_grimoires_order
              ON grimoires(display_order, grimoire_id);
            """
        )
        _migrate_db(conn)
        conn.commit()
    finally:
        conn.close()


def _migrate_db(conn: sqlite3.Connection) -> None:
    # grimoires.author was added after the initial schema.
    cols = [r["name"] for r in conn.execute("PRAGMA table_info(grimoires)").fetchall()]
    if "author" not in cols:
        log.info("Migrating grimoires: adding author column")
        conn.execute("ALTER TABLE grimoires ADD COLUMN author TEXT")


def get_setting(key: str) -> Any | None:
    conn = _connect()
    try:
        row = conn.execute("SELECT value_json FROM settings WHERE key = ?", (key,)).fetchone()
        if not row:
            return None
        try:
            return json.loads(row["value_json"])
        except json.JSONDecodeError:
            return row["value_json"]
    finally:
        conn.close()


def list_settings() -> dict[str, Any]:
    conn = _connect()
    try:
        rows = conn.execute("SELECT key, value_json FROM settings ORDER BY key ASC").fetchall()
    finally:
        conn.close()
    out: dict[str, Any] = {}
    for r in rows:
        try:
            out[r["key"]] = json.loads(r["value_json"])
        except json.JSONDecodeError:
            out[r["key"]] = r["value_json"]
    return out


def set_settings(values: dict[str, Any]) -> None:
    now = _utc_now()
    rows = [(k, json.dumps(v, ensure_ascii=False), now, now) for k, v in values.items()]
    conn = _connect()
    try:
        conn.executemany(
            """
            INSERT INTO settings(key, value_json, created_at, updated_at)
            VALUES (?,?,?,?)
            ON CONFLICT(key) DO UPDATE SET value_json=excluded.value_json, updated_at=excluded.updated_at
            """,
            rows,
        )
        conn.commit()
    finally:
        conn.close()


def count_users() -> int:
    conn = _connect()
    try:
        row = conn.execute("SELECT COUNT(1) AS c FROM users").fetchone()
        return int(row["c"] or 0) if row else 0
    finally:
        conn.close()


def create_user(
    *,
    username: str,
    password_hash: str,
    role: str,
    email: str | None = None,
    magical_name: str | None = None,
) -> dict[str, Any]:
    user_id = str(uuid.uuid4())
    now = _utc_now()
    conn = _connect()
    try:
        conn.execute(
            """
            INSERT INTO users(user_id, username, email, password_hash, role, magical_name, created_at, updated_at)
            VALUES (?,?,?,?,?,?,?,?)
            """,
            (user_id, username, email, password_hash, role, magical_name, now, now),
        )
        conn.commit()
    finally:
        conn.close()
    return {
        "user_id": user_id,
        "username": username,
        "email": email,
        "role": role,
        "magical_name": magical_name,
        "disabled_at": None,
        "created_at": now,
        "updated_at": now,
    }


def _get_user_where(clause: str, value: str) -> dict[str, Any] | None:
    conn = _connect()
    try:
        row = conn.execute(f"SELECT {_USER_COLUMNS} FROM users WHERE {clause} = ?", (value,)).fetchone()
        return dict(row) if row else None
    finally:
        conn.close()


def get_user(user_id: str) -> dict[str, Any] | None:
    return _get_user_where("user_id", user_id)


def get_user_by_username(username: str) -> dict[str, Any] | None:
    return _get_user_where("username", username)


def get_user_by_email(email: str) -> dict[str, Any] | None:
    return _get_user_where("email", email)


def update_user(
    *,
    user_id: str,
    role: str | None = None,
    magical_name: str | None = None,
    password_hash: str | None = None,
    **extra: Any,
) -> dict[str, Any] | None:
    updates: list[str] = []
    params: list[Any] = []
    if role is not None:
        updates.append("role = ?")
        params.append(role)
    if magical_name is not None:
        updates.append("magical_name = ?")
        params.append(magical_name)
    if password_hash is not None:
        updates.append("password_hash = ?")
        params.append(password_hash)
    if "disabled_at" in extra:
        updates.append("disabled_at = ?")
        params.append(extra["disabled_at"])
    if not updates:
        return get_user(user_id)

    now = _utc_now()
    updates.append("updated_at = ?")
    params.append(now)
    params.append(user_id)

    conn = _connect()
    try:
        conn.execute(f"UPDATE users SET {', '.join(updates)} WHERE user_id = ?", params)
        conn.commit()
    finally:
        conn.close()
    return get_user(user_id)


def create_auth_session(*, token_hash: str, user_id: str, expires_at: str) -> None:
    now = _utc_now()
    conn = _connect()
    try:
        conn.execute(
            """
            INSERT INTO auth_sessions(token_hash, user_id, created_at, expires_at, last_seen_at)
            VALUES (?,?,?,?,?)
            """,
            (token_hash, user_id, now, expires_at, now),
        )
        conn.commit()
    finally:
        conn.close()


def get_auth_session(token_hash: str) -> dict[str, Any] | None:
    conn = _connect()
    try:
        row = conn.execute(
            """
            SELECT s.token_hash, s.user_id, s.created_at, s.expires_at, s.last_seen_at,
                   u.username, u.email, u.role, u.magical_name, u.disabled_at
            FROM auth_sessions s
            JOIN users u ON u.user_id = s.user_id
            WHERE s.token_hash = ?
            """,
            (token_hash,),
        ).fetchone()
        return dict(row) if row else None
    finally:
        conn.close()


def touch_auth_session(token_hash: str) -> None:
    now = _utc_now()
    conn = _connect()
    try:
        conn.execute("UPDATE auth_sessions SET last_seen_at = ? WHERE token_hash = ?", (now, token_hash))
        conn.commit()
    finally:
        conn.close()


def delete_auth_session(token_hash: str) -> None:
    conn = _connect()
    try:
        conn.execute("DELETE FROM auth_sessions WHERE token_hash = ?", (token_hash,))
        conn.commit()
    finally:
        conn.close()


def delete_expired_auth_sessions(now_iso: str) -> int:
    conn = _connect()
    try:
        cur = conn.execute("DELETE FROM auth_sessions WHERE expires_at < ?", (now_iso,))
        conn.commit()
        return int(cur.rowcount or 0)
    finally:
        conn.close()


def _grimoire_row(row: sqlite3.Row | None) -> dict[str, Any] | None:
    if not row:
        return None
    rec = dict(row)
    for flag in _GRIMOIRE_FLAGS:
        rec[flag] = bool(rec.get(flag))
    return rec


def create_grimoire(
    *,
    title: str,
    content: str,
    content_format: str = "html",
    excerpt: str | None = None,
    author: str | None = None,
    is_paid: bool = False,
    is_published: bool = True,
    enable_pdf_download: bool = False,
    display_order: int = 0,
    word_count: int = 0,
) -> dict[str, Any]:
    now = _utc_now()
    conn = _connect()
    try:
        cur = conn.execute(
            f"""
            INSERT INTO grimoires({_GRIMOIRE_COLUMNS})
            VALUES (NULL,?,?,?,?,?,?,?,?,?,?,?,?)
            """,
            (
                title,
                content,
                content_format,
                excerpt,
                author,
                int(is_paid),
                int(is_published),
                int(enable_pdf_download),
                display_order,
                word_count,
                now,
                now,
            ),
        )
        conn.commit()
        grimoire_id = int(cur.lastrowid)
    finally:
        conn.close()
    rec = get_grimoire(grimoire_id)
    assert rec is not None
    return rec


def get_grimoire(grimoire_id: int) -> dict[str, Any] | None:
    conn = _connect()
    try:
        row = conn.execute(f"SELECT {_GRIMOIRE_COLUMNS} FROM grimoires WHERE grimoire_id = ?", (grimoire_id,)).fetchone()
        return _grimoire_row(row)
    finally:
        conn.close()


def list_grimoires(*, published_only: bool = False, limit: int = 500) -> list[dict[str, Any]]:
    where = "WHERE is_published = 1" if published_only else ""
    conn = _connect()
    try:
        rows = conn.execute(
            f"""
            SELECT {_GRIMOIRE_COLUMNS}
            FROM grimoires
            {where}
            ORDER BY display_order ASC, grimoire_id ASC
            LIMIT ?
            """,
            (limit,),
        ).fetchall()
    finally:
        conn.close()
    return [r for r in (_grimoire_row(row) for row in rows) if r]


_GRIMOIRE_UPDATABLE = (
    "title",
    "content",
    "content_format",
    "excerpt",
    "author",
    "is_paid",
    "is_published",
    "enable_pdf_download",
    "display_order",
    "word_count",
)


def update_grimoire(grimoire_id: int, **fields: Any) -> dict[str, Any] | None:
    updates: list[str] = []
    params: list[Any] = []
    for key in _GRIMOIRE_UPDATABLE:
        if key not in fields:
            continue
        value = fields[key]
        if key in _GRIMOIRE_FLAGS:
            value = int(bool(value))
        updates.append(f"{key} = ?")
        params.append(value)
    if not updates:
        return get_grimoire(grimoire_id)

    updates.append("updated_at = ?")
    params.append(_utc_now())
    params.append(grimoire_id)

    conn = _connect()
    try:
        conn.execute(f"UPDATE grimoires SET {', '.join(updates)} WHERE grimoire_id = ?", params)
        conn.commit()
    finally:
        conn.close()
    return get_grimoire(grimoire_id)


def delete_grimoire(grimoire_id: int) -> bool:
    conn = _connect()
    try:
        cur = conn.execute("DELETE FROM grimoires WHERE grimoire_id = ?", (grimoire_id,))
        conn.commit()
        return bool(cur.rowcount)
    finally:
        conn.close()


def grant_access(*, user_id: str, grimoire_id: int) -> None:
    conn = _connect()
    try:
        conn.execute(
            "INSERT OR IGNORE INTO grimoire_access(user_id, grimoire_id, granted_at) VALUES (?,?,?)",
            (user_id, grimoire_id, _utc_now()),
        )
        conn.commit()
    finally:
        conn.close()


def has_access(*, user_id: str, grimoire_id: int) -> bool:
    conn = _connect()
    try:
        row = conn.execute(
            "SELECT 1 FROM grimoire_access WHERE user_id = ? AND grimoire_id = ?",
            (user_id, grimoire_id),
        ).fetchone()
        return row is not None
    finally:
        conn.close()


def get_progress(*, user_id: str, grimoire_id: int) -> dict[str, Any] | None:
    conn = _connect()
    try:
        row = conn.execute(
            """
            SELECT user_id, grimoire_id, current_page, total_pages, progress_percentage,
                   is_completed, completed_at, last_read_at
            FROM grimoire_progress
            WHERE user_id = ? AND grimoire_id = ?
            """,
            (user_id, grimoire_id),
        ).fetchone()
    finally:
        conn.close()
    if not row:
        return None
    rec = dict(row)
    rec["is_completed"] = bool(rec["is_completed"])
    return rec


def save_progress(
    *,
    user_id: str,
    grimoire_id: int,
    current_page: int,
    total_pages: int,
    progress_percentage: float,
    is_completed: bool,
) -> dict[str, Any]:
    now = _utc_now()
    completed_at = now if is_completed else None
    conn = _connect()
    try:
        conn.execute(
            """
            INSERT INTO grimoire_progress(
              user_id, grimoire_id, current_page, total_pages, progress_percentage,
              is_completed, completed_at, last_read_at
            )
            VALUES (?,?,?,?,?,?,?,?)
            ON CONFLICT(user_id, grimoire_id) DO UPDATE SET
              current_page=excluded.current_page,
              total_pages=excluded.total_pages,
              progress_percentage=excluded.progress_percentage,
              is_completed=MAX(grimoire_progress.is_completed, excluded.is_completed),
              completed_at=COALESCE(grimoire_progress.completed_at, excluded.completed_at),
              last_read_at=excluded.last_read_at
            """,
            (user_id, grimoire_id, current_page, total_pages, progress_percentage, int(is_completed), completed_at, now),
        )
        conn.commit()
    finally:
        conn.close()
    rec = get_progress(user_id=user_id, grimoire_id=grimoire_id)
    assert rec is not None
    return rec

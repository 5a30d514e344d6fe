from __future__ import annotations

import sqlite3
import threading
from pathlib import Path

SCHEMA_VERSION = 1


class SQLiteBackend:
    """Owns the shared SQLite connection and applies agora migrations.

    ``db_path=None`` opens a private in-memory database, which is what the
    tests and the development server use by default.
    """

    def __init__(self, db_path: str | None = None) -> None:
        self._lock = threading.Lock()
        if db_path is None:
            target = ":memory:"
        else:
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
            target = db_path
        self._conn = sqlite3.connect(target, check_same_thread=False, isolation_level=None)
        self._conn.row_factory = sqlite3.Row
        self._configure()
        self._apply_migrations()

    @property
    def connection(self) -> sqlite3.Connection:
        return self._conn

    @property
    def lock(self) -> threading.Lock:
        return self._lock

    def close(self) -> None:
        self._conn.close()

    def _configure(self) -> None:
        cursor = self._conn.cursor()
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute("PRAGMA synchronous=NORMAL")
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.execute("PRAGMA busy_timeout=5000")
        cursor.close()

    def _apply_migrations(self) -> None:
        user_version = self._conn.execute("PRAGMA user_version").fetchone()[0]
        if user_version == 0:
            self._create_v1_schema()
            self._conn.execute(f"PRAGMA user_version = {SCHEMA_VERSION}")
        elif user_version != SCHEMA_VERSION:
            raise ValueError(f"Unsupported schema version: {user_version}")

    def _create_v1_schema(self) -> None:
        self._conn.execute(
            """
            CREATE TABLE IF NOT EXISTS contexts (
                id TEXT PRIMARY KEY,
                kind TEXT NOT NULL,
                slug TEXT NOT NULL UNIQUE,
                name TEXT NOT NULL,
                description TEXT NOT NULL DEFAULT '',
                visibility TEXT NOT NULL,
                join_policy TEXT NOT NULL,
                owner_id TEXT NOT NULL,
                features_json TEXT NOT NULL,
                plugins_json TEXT NOT NULL,
                is_archived INTEGER NOT NULL DEFAULT 0,
                created_at_ms INTEGER NOT NULL
            )
            """
        )
        self._conn.execute(
            """
            CREATE TABLE IF NOT EXISTS memberships (
                id TEXT PRIMARY KEY,
                context_id TEXT NOT NULL REFERENCES contexts(id),
                user_id TEXT NOT NULL,
                role TEXT NOT NULL,
                status TEXT NOT NULL,
                permissions_json TEXT,
                plugin_data_json TEXT NOT NULL DEFAULT '{}',
                joined_at_ms INTEGER NOT NULL,
                updated_at_ms INTEGER NOT NULL,
                UNIQUE (context_id, user_id)
            )
            """
        )
        self._conn.execute("CREATE INDEX IF NOT EXISTS memberships_user ON memberships (user_id, status)")
        self._conn.execute(
            """
            CREATE TABLE IF NOT EXISTS follows (
                follower_id TEXT NOT NULL,
                following_id TEXT NOT NULL,
                status TEXT NOT NULL,
                created_at_ms INTEGER NOT NULL,
                PRIMARY KEY (follower_id, following_id)
            )
            """
        )
        self._conn.execute("CREATE INDEX IF NOT EXISTS follows_following ON follows (following_id, status)")
        self._conn.execute(
            """
            CREATE TABLE IF NOT EXISTS activities (
                id TEXT PRIMARY KEY,
                type TEXT NOT NULL,
                actor_id TEXT NOT NULL,
                object_type TEXT NOT NULL,
                object_json TEXT NOT NULL,
                to_json TEXT NOT NULL,
                cc_json TEXT NOT NULL,
                context_id TEXT,
                in_reply_to TEXT,
                object_id TEXT,
                published_ms INTEGER NOT NULL,
                deleted INTEGER NOT NULL DEFAULT 0
            )
            """
        )
        self._conn.execute("CREATE INDEX IF NOT EXISTS activities_published ON activities (published_ms)")
        self._conn.execute("CREATE INDEX IF NOT EXISTS activities_actor ON activities (actor_id, published_ms)")
        self._conn.execute("CREATE INDEX IF NOT EXISTS activities_context ON activities (context_id, published_ms)")
        self._conn.execute("CREATE INDEX IF NOT EXISTS activities_reply ON activities (in_reply_to, published_ms)")
        self._conn.execute("CREATE INDEX IF NOT EXISTS activities_object ON activities (object_id, type)")
        self._conn.execute(
            """
            CREATE TABLE IF NOT EXISTS activity_addresses (
                activity_id TEXT NOT NULL REFERENCES activities(id),
                slot TEXT NOT NULL,
                address TEXT NOT NULL,
                PRIMARY KEY (activity_id, slot, address)
            )
            """
        )
        self._conn.execute("CREATE INDEX IF NOT EXISTS activity_addresses_address ON activity_addresses (address)")
        self._conn.execute(
            """
            CREATE TABLE IF NOT EXISTS inbox_items (
                seq INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id TEXT NOT NULL,
                activity_id TEXT NOT NULL REFERENCES activities(id),
                category TEXT NOT NULL,
                read INTEGER NOT NULL DEFAULT 0,
                muted INTEGER NOT NULL DEFAULT 0,
                created_at_ms INTEGER NOT NULL,
                UNIQUE (user_id, activity_id)
            )
            """
        )
        self._conn.execute("CREATE INDEX IF NOT EXISTS inbox_items_user ON inbox_items (user_id, muted, read)")
        self._conn.execute(
            """
            CREATE TABLE IF NOT EXISTS sessions (
                session_token TEXT PRIMARY KEY,
                user_id TEXT NOT NULL,
                expires_at_ms INTEGER NOT NULL
            )
            """
        )

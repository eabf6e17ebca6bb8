from __future__ import annotations

import os
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Iterator


class StateStoreError(RuntimeError):
    """A hysteresis/watch-list read or write failed at the SQLite layer."""


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


SCHEMA_VERSION = 1

# One user -> many exchange accounts; one watch-list row and one hysteresis
# row per (user, symbol); runs/events back the audit trail.
SCHEMA = """
CREATE TABLE IF NOT EXISTS accounts (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    telegram_user_id TEXT NOT NULL,
    telegram_username TEXT,
    account_number INTEGER NOT NULL,
    account_name TEXT,
    web_uid TEXT NOT NULL,
    proxy TEXT,
    default_leverage INTEGER NOT NULL DEFAULT 20,
    default_size INTEGER NOT NULL DEFAULT 10,
    is_active INTEGER NOT NULL DEFAULT 1,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    UNIQUE(telegram_user_id, account_number)
);

CREATE TABLE IF NOT EXISTS watchlist (
    telegram_user_id TEXT NOT NULL,
    symbol TEXT NOT NULL,
    dex_pair_id TEXT,
    created_at TEXT NOT NULL,
    PRIMARY KEY (telegram_user_id, symbol)
);

CREATE TABLE IF NOT EXISTS monitoring (
    telegram_user_id TEXT PRIMARY KEY,
    enabled INTEGER NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS spread_state (
    telegram_user_id TEXT NOT NULL,
    symbol TEXT NOT NULL,
    armed INTEGER NOT NULL DEFAULT 0,
    last_exchange_price REAL,
    last_reference_price REAL,
    last_spread_pct REAL,
    last_action_at TEXT,
    updated_at TEXT NOT NULL,
    PRIMARY KEY (telegram_user_id, symbol)
);

CREATE TABLE IF NOT EXISTS runs (
    run_id TEXT PRIMARY KEY,
    started_at TEXT NOT NULL,
    stopped_at TEXT,
    interval_seconds REAL NOT NULL
);

CREATE TABLE IF NOT EXISTS events (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    timestamp_utc TEXT NOT NULL,
    run_id TEXT,
    cycle_id TEXT,
    user_id TEXT,
    symbol TEXT,
    event_type TEXT NOT NULL,
    action TEXT,
    details_json TEXT
);

CREATE INDEX IF NOT EXISTS idx_accounts_user ON accounts(telegram_user_id);
CREATE INDEX IF NOT EXISTS idx_events_run ON events(run_id);
CREATE INDEX IF NOT EXISTS idx_events_user_symbol ON events(user_id, symbol);
"""


class DB:
    """
    SQLite file shared by every store. Each operation opens its own short-lived
    connection, so stores can be called from asyncio.to_thread workers.
    """

    def __init__(self, path: str = "data/spreadwatch.db"):
        self.path = path

        parent = os.path.dirname(self.path)
        if parent:
            os.makedirs(parent, exist_ok=True)

        self._migrate()

    @contextmanager
    def connect(self) -> Iterator[sqlite3.Connection]:
        """Connection that commits on clean exit and always closes."""
        conn = sqlite3.connect(self.path, timeout=30, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        except BaseException:
            conn.rollback()
            raise
        finally:
            conn.close()

    def schema_version(self) -> int:
        with self.connect() as conn:
            return int(conn.execute("PRAGMA user_version").fetchone()[0])

    def _migrate(self) -> None:
        conn = sqlite3.connect(self.path, timeout=30)
        try:
            # WAL lets the API read while the scheduler writes
            conn.execute("PRAGMA journal_mode=WAL")
            conn.executescript(SCHEMA)
            conn.execute(f"PRAGMA user_version = {SCHEMA_VERSION}")
            conn.commit()
        finally:
            conn.close()

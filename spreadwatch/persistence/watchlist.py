from __future__ import annotations

import sqlite3
from typing import List, Optional

from spreadwatch.persistence.db import DB, StateStoreError, utc_now_iso
from spreadwatch.runner.models import MonitoredSymbol


def normalize_ticker(symbol: str) -> str:
    """'btc_usdt' / ' BTC ' -> 'BTC'"""
    s = (symbol or "").strip().upper()
    if "_" in s:
        s = s.split("_", 1)[0]
    return s


class WatchlistStore:
    """
    Monitored symbols per user and the per-user monitoring switch.
    """

    def __init__(self, db: DB):
        self.db = db

    # ---------- SYMBOLS ----------
    def add_symbol(self, user_id: str, symbol: str, dex_pair_id: Optional[str] = None) -> MonitoredSymbol:
        sym = normalize_ticker(symbol)
        if not sym:
            raise ValueError("symbol is required")
        pair = (dex_pair_id or "").strip() or None

        with self.db.connect() as conn:
            conn.execute(
                """
                INSERT INTO watchlist(telegram_user_id, symbol, dex_pair_id, created_at)
                VALUES (?,?,?,?)
                ON CONFLICT(telegram_user_id, symbol) DO UPDATE SET
                    dex_pair_id=excluded.dex_pair_id
                """,
                (str(user_id), sym, pair, utc_now_iso()),
            )
        return MonitoredSymbol(symbol=sym, dex_pair_id=pair)

    def remove_symbol(self, user_id: str, symbol: str) -> bool:
        sym = normalize_ticker(symbol)
        with self.db.connect() as conn:
            cur = conn.execute(
                "DELETE FROM watchlist WHERE telegram_user_id = ? AND symbol = ?",
                (str(user_id), sym),
            )
            return cur.rowcount > 0

    def list_symbols(self, user_id: str) -> List[MonitoredSymbol]:
        try:
            with self.db.connect() as conn:
                rows = conn.execute(
                    "SELECT symbol, dex_pair_id FROM watchlist WHERE telegram_user_id = ? ORDER BY created_at, symbol",
                    (str(user_id),),
                ).fetchall()
        except sqlite3.Error as e:
            raise StateStoreError(f"list watchlist failed: {e}") from e

        return [MonitoredSymbol(symbol=r["symbol"], dex_pair_id=r["dex_pair_id"]) for r in rows]

    # ---------- ENABLEMENT ----------
    def set_enabled(self, user_id: str, enabled: bool) -> None:
        with self.db.connect() as conn:
            conn.execute(
                """
                INSERT INTO monitoring(telegram_user_id, enabled, updated_at)
                VALUES (?,?,?)
                ON CONFLICT(telegram_user_id) DO UPDATE SET
                    enabled=excluded.enabled,
                    updated_at=excluded.updated_at
                """,
                (str(user_id), 1 if enabled else 0, utc_now_iso()),
            )

    def is_enabled(self, user_id: str) -> bool:
        with self.db.connect() as conn:
            row = conn.execute(
                "SELECT enabled FROM monitoring WHERE telegram_user_id = ?",
                (str(user_id),),
            ).fetchone()
        return bool(row["enabled"]) if row else False

    def enabled_users(self) -> List[str]:
        try:
            with self.db.connect() as conn:
                rows = conn.execute(
                    "SELECT telegram_user_id FROM monitoring WHERE enabled = 1 ORDER BY telegram_user_id"
                ).fetchall()
        except sqlite3.Error as e:
            raise StateStoreError(f"list enabled users failed: {e}") from e

        return [r["telegram_user_id"] for r in rows]

# spreadwatch/persistence/state_store.py

from __future__ import annotations

import sqlite3
from typing import List, Optional

from spreadwatch.persistence.db import DB, StateStoreError, utc_now_iso
from spreadwatch.runner.models import HysteresisState, PriceSnapshot


def _row_to_state(r: sqlite3.Row) -> HysteresisState:
    return HysteresisState(
        user_id=r["telegram_user_id"],
        symbol=r["symbol"],
        armed=bool(r["armed"]),
        last_exchange_price=r["last_exchange_price"],
        last_reference_price=r["last_reference_price"],
        last_spread_pct=r["last_spread_pct"],
        last_action_at=r["last_action_at"],
    )


class HysteresisStore:
    """
    Per-(user, symbol) armed flag plus the last observed price snapshot.

    Only the spread engine writes `armed`, and only for ENTER / RESET.
    """

    def __init__(self, db: DB):
        self.db = db

    def get(self, user_id: str, symbol: str) -> Optional[HysteresisState]:
        symbol = symbol.upper()
        try:
            with self.db.connect() as conn:
                row = conn.execute(
                    "SELECT * FROM spread_state WHERE telegram_user_id = ? AND symbol = ?",
                    (str(user_id), symbol),
                ).fetchone()
        except sqlite3.Error as e:
            raise StateStoreError(f"read spread_state failed: {e}") from e

        return _row_to_state(row) if row else None

    def get_or_init(self, user_id: str, symbol: str) -> HysteresisState:
        """
        Return the record, creating it UNARMED on first access.

        INSERT OR IGNORE makes concurrent first access converge on one row:
        the loser of the race inserts nothing and re-reads the winner's row.
        """
        user_id = str(user_id)
        symbol = symbol.upper()

        try:
            with self.db.connect() as conn:
                conn.execute(
                    """
                    INSERT OR IGNORE INTO spread_state(telegram_user_id, symbol, armed, updated_at)
                    VALUES (?,?,0,?)
                    """,
                    (user_id, symbol, utc_now_iso()),
                )
                row = conn.execute(
                    "SELECT * FROM spread_state WHERE telegram_user_id = ? AND symbol = ?",
                    (user_id, symbol),
                ).fetchone()
        except sqlite3.Error as e:
            raise StateStoreError(f"init spread_state failed: {e}") from e

        if not row:
            raise StateStoreError(f"spread_state row missing after init: {user_id}/{symbol}")
        return _row_to_state(row)

    def update(
        self,
        user_id: str,
        symbol: str,
        armed: bool,
        snapshot: Optional[PriceSnapshot] = None,
    ) -> HysteresisState:
        """
        UPSERT armed + diagnostic snapshot, bumping last_action_at.
        """
        user_id = str(user_id)
        symbol = symbol.upper()
        now = utc_now_iso()

        ex_px = snapshot.exchange_price if snapshot else None
        ref_px = snapshot.reference_price if snapshot else None
        spread = snapshot.spread_pct if snapshot else None

        try:
            with self.db.connect() as conn:
                conn.execute(
                    """
                    INSERT INTO spread_state(
                        telegram_user_id, symbol, armed,
                        last_exchange_price, last_reference_price, last_spread_pct,
                        last_action_at, updated_at
                    )
                    VALUES (?,?,?,?,?,?,?,?)
                    ON CONFLICT(telegram_user_id, symbol) DO UPDATE SET
                        armed=excluded.armed,
                        last_exchange_price=excluded.last_exchange_price,
                        last_reference_price=excluded.last_reference_price,
                        last_spread_pct=excluded.last_spread_pct,
                        last_action_at=excluded.last_action_at,
                        updated_at=excluded.updated_at
                    """,
                    (user_id, symbol, 1 if armed else 0, ex_px, ref_px, spread, now, now),
                )
        except sqlite3.Error as e:
            raise StateStoreError(f"update spread_state failed: {e}") from e

        return HysteresisState(
            user_id=user_id,
            symbol=symbol,
            armed=bool(armed),
            last_exchange_price=ex_px,
            last_reference_price=ref_px,
            last_spread_pct=spread,
            last_action_at=now,
        )

    def list_for_user(self, user_id: str) -> List[HysteresisState]:
        try:
            with self.db.connect() as conn:
                rows = conn.execute(
                    "SELECT * FROM spread_state WHERE telegram_user_id = ? ORDER BY symbol",
                    (str(user_id),),
                ).fetchall()
        except sqlite3.Error as e:
            raise StateStoreError(f"list spread_state failed: {e}") from e

        return [_row_to_state(r) for r in rows]

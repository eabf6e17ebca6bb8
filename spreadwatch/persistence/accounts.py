from __future__ import annotations

from dataclasses import dataclass
from typing import List, Optional

from spreadwatch.persistence.db import DB, utc_now_iso


@dataclass(frozen=True)
class Account:
    id: int
    telegram_user_id: str
    account_number: int
    web_uid: str
    proxy: Optional[str] = None
    telegram_username: Optional[str] = None
    account_name: Optional[str] = None
    default_leverage: int = 20
    default_size: int = 10
    is_active: bool = True

    def public_dict(self) -> dict:
        """Account view with the u_id masked."""
        uid = self.web_uid or ""
        return {
            "account_number": self.account_number,
            "account_name": self.account_name,
            "web_uid": (uid[:6] + "***") if uid else "",
            "proxy": self.proxy,
            "default_leverage": self.default_leverage,
            "default_size": self.default_size,
            "is_active": self.is_active,
        }


def _row_to_account(r) -> Account:
    return Account(
        id=int(r["id"]),
        telegram_user_id=r["telegram_user_id"],
        account_number=int(r["account_number"]),
        web_uid=r["web_uid"],
        proxy=r["proxy"],
        telegram_username=r["telegram_username"],
        account_name=r["account_name"],
        default_leverage=int(r["default_leverage"]),
        default_size=int(r["default_size"]),
        is_active=bool(r["is_active"]),
    )


class AccountStore:
    def __init__(self, db: DB):
        self.db = db

    def register(
        self,
        user_id: str,
        account_number: int,
        web_uid: str,
        *,
        proxy: Optional[str] = None,
        telegram_username: Optional[str] = None,
        account_name: Optional[str] = None,
        default_leverage: int = 20,
        default_size: int = 10,
    ) -> Account:
        web_uid = (web_uid or "").strip()
        if not web_uid:
            raise ValueError("web_uid is required")
        if self.get(user_id, account_number) is not None:
            raise ValueError(f"account {account_number} already exists")

        now = utc_now_iso()
        with self.db.connect() as conn:
            cur = conn.execute(
                """
                INSERT INTO accounts(
                    telegram_user_id, telegram_username, account_number, account_name,
                    web_uid, proxy, default_leverage, default_size, is_active,
                    created_at, updated_at
                )
                VALUES (?,?,?,?,?,?,?,?,1,?,?)
                """,
                (
                    str(user_id),
                    telegram_username,
                    int(account_number),
                    account_name,
                    web_uid,
                    (proxy or "").strip() or None,
                    int(default_leverage),
                    int(default_size),
                    now,
                    now,
                ),
            )
            new_id = cur.lastrowid

        return Account(
            id=int(new_id),
            telegram_user_id=str(user_id),
            account_number=int(account_number),
            web_uid=web_uid,
            proxy=(proxy or "").strip() or None,
            telegram_username=telegram_username,
            account_name=account_name,
            default_leverage=int(default_leverage),
            default_size=int(default_size),
            is_active=True,
        )

    def get(self, user_id: str, account_number: int) -> Optional[Account]:
        with self.db.connect() as conn:
            row = conn.execute(
                "SELECT * FROM accounts WHERE telegram_user_id = ? AND account_number = ?",
                (str(user_id), int(account_number)),
            ).fetchone()
        return _row_to_account(row) if row else None

    def list_accounts(self, user_id: str) -> List[Account]:
        with self.db.connect() as conn:
            rows = conn.execute(
                "SELECT * FROM accounts WHERE telegram_user_id = ? ORDER BY account_number",
                (str(user_id),),
            ).fetchall()
        return [_row_to_account(r) for r in rows]

    def list_active(self, user_id: str) -> List[Account]:
        return [a for a in self.list_accounts(user_id) if a.is_active]

    def set_active(self, user_id: str, account_number: int, active: bool) -> bool:
        with self.db.connect() as conn:
            cur = conn.execute(
                "UPDATE accounts SET is_active = ?, updated_at = ? WHERE telegram_user_id = ? AND account_number = ?",
                (1 if active else 0, utc_now_iso(), str(user_id), int(account_number)),
            )
            return cur.rowcount > 0

    def update_settings(
        self,
        user_id: str,
        account_number: int,
        *,
        default_leverage: Optional[int] = None,
        default_size: Optional[int] = None,
        proxy: Optional[str] = None,
    ) -> Optional[Account]:
        acc = self.get(user_id, account_number)
        if acc is None:
            return None

        lev = int(default_leverage) if default_leverage is not None else acc.default_leverage
        size = int(default_size) if default_size is not None else acc.default_size
        if lev < 1 or size < 1:
            raise ValueError("leverage and size must be >= 1")
        prx = acc.proxy if proxy is None else ((proxy or "").strip() or None)

        with self.db.connect() as conn:
            conn.execute(
                """
                UPDATE accounts
                SET default_leverage = ?, default_size = ?, proxy = ?, updated_at = ?
                WHERE telegram_user_id = ? AND account_number = ?
                """,
                (lev, size, prx, utc_now_iso(), str(user_id), int(account_number)),
            )
        return self.get(user_id, account_number)

    def list_user_ids(self) -> List[str]:
        with self.db.connect() as conn:
            rows = conn.execute(
                "SELECT DISTINCT telegram_user_id FROM accounts ORDER BY telegram_user_id"
            ).fetchall()
        return [r["telegram_user_id"] for r in rows]

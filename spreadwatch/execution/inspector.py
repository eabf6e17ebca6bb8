from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, List

from spreadwatch.exchange.mexc.client import ClientPool, contract_symbol
from spreadwatch.feeds.prices import call_with_timeout
from spreadwatch.persistence.accounts import AccountStore
from spreadwatch.runner.models import PendingOrder, Position

log = logging.getLogger("spreadwatch.inspector")


class PositionInspector:
    """
    Answers "does this user already hold / wait on something for this symbol?"
    across every active account.

    On ANY error the has_* checks answer True: a false negative means a
    duplicate entry, a false positive only costs one cycle.
    """

    def __init__(
        self,
        accounts: AccountStore,
        pool: ClientPool,
        *,
        quote_asset: str = "USDT",
        timeout: float = 8.0,
    ):
        self.accounts = accounts
        self.pool = pool
        self.quote_asset = quote_asset
        self.timeout = float(timeout)

    # ---------------- RAW LISTINGS (raise on failure) ----------------

    async def list_positions(self, user_id: str) -> List[Position]:
        out: List[Position] = []
        for acc in await asyncio.to_thread(self.accounts.list_active, user_id):
            client = self.pool.for_account(acc)
            rows = await call_with_timeout(client.open_positions, timeout=self.timeout)
            for p in rows:
                out.append(
                    Position(
                        account_number=acc.account_number,
                        symbol=p.symbol.upper(),
                        side=p.side,
                        quantity=float(p.holdVol),
                    )
                )
        return out

    async def list_orders(self, user_id: str) -> List[PendingOrder]:
        out: List[PendingOrder] = []
        for acc in await asyncio.to_thread(self.accounts.list_active, user_id):
            client = self.pool.for_account(acc)
            rows = await call_with_timeout(client.open_orders, timeout=self.timeout)
            for o in rows:
                out.append(
                    PendingOrder(
                        account_number=acc.account_number,
                        symbol=o.symbol.upper(),
                        order_id=o.orderId,
                        side=o.side,
                    )
                )
        return out

    # ---------------- FAIL-SAFE CHECKS ----------------

    async def has_open_short(self, user_id: str, symbol: str) -> bool:
        contract = contract_symbol(symbol, self.quote_asset)
        try:
            positions = await self.list_positions(user_id)
        except Exception as e:
            log.warning(
                "position lookup failed for user=%s %s, assuming busy: %s",
                user_id,
                contract,
                e,
            )
            return True

        return any(
            p.symbol == contract and p.side == "SHORT" and p.quantity > 0
            for p in positions
        )

    async def has_pending_order(self, user_id: str, symbol: str) -> bool:
        contract = contract_symbol(symbol, self.quote_asset)
        try:
            orders = await self.list_orders(user_id)
        except Exception as e:
            log.warning(
                "order lookup failed for user=%s %s, assuming busy: %s",
                user_id,
                contract,
                e,
            )
            return True

        return any(o.symbol == contract for o in orders)

    async def is_busy(self, user_id: str, symbol: str) -> bool:
        if await self.has_open_short(user_id, symbol):
            return True
        return await self.has_pending_order(user_id, symbol)

    # ---------------- BALANCES ----------------

    async def account_balances(self, user_id: str) -> List[Dict[str, Any]]:
        """Wallet lines per active account; one failing account does not hide the rest."""
        out: List[Dict[str, Any]] = []
        for acc in await asyncio.to_thread(self.accounts.list_active, user_id):
            entry: Dict[str, Any] = {
                "account_number": acc.account_number,
                "account_name": acc.account_name,
                "assets": [],
                "error": None,
            }
            client = self.pool.for_account(acc)
            try:
                rows = await call_with_timeout(client.account_assets, timeout=self.timeout)
                entry["assets"] = [r.model_dump() for r in rows]
            except Exception as e:
                log.warning("balance lookup failed for user=%s account %s: %s", user_id, acc.account_number, e)
                entry["error"] = f"{type(e).__name__}: {e}"
            out.append(entry)
        return out

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, List, Optional

from spreadwatch.exchange.mexc.client import (
    ClientPool,
    ExchangeTransientError,
    OrderOutcomeUnknown,
    contract_symbol,
)
from spreadwatch.feeds.prices import call_with_timeout
from spreadwatch.persistence.accounts import Account, AccountStore

log = logging.getLogger("spreadwatch.dispatcher")


class TradeActionError(Exception):
    """The trade was not submitted; hysteresis state must stay as it was."""


# =========================
# Execution Result
# =========================
@dataclass
class AccountResult:
    account_number: int
    success: bool
    submitted: bool = False
    uncertain: bool = False
    order_id: Optional[str] = None
    message: str = ""
    attempts: int = 0
    raw: Any = field(default=None, repr=False)


@dataclass
class DispatchResult:
    action: str  # OPEN_SHORT | CLOSE_SHORT | CANCEL_ORDERS
    symbol: str
    results: List[AccountResult] = field(default_factory=list)

    @property
    def success_count(self) -> int:
        return sum(1 for r in self.results if r.success)

    @property
    def submitted_count(self) -> int:
        return sum(1 for r in self.results if r.submitted)

    @property
    def uncertain_count(self) -> int:
        return sum(1 for r in self.results if r.uncertain)

    def as_dict(self) -> dict:
        return {
            "action": self.action,
            "symbol": self.symbol,
            "success_count": self.success_count,
            "submitted_count": self.submitted_count,
            "uncertain_count": self.uncertain_count,
            "accounts": [
                {
                    "account_number": r.account_number,
                    "success": r.success,
                    "submitted": r.submitted,
                    "uncertain": r.uncertain,
                    "order_id": r.order_id,
                    "message": r.message,
                    "attempts": r.attempts,
                }
                for r in self.results
            ],
        }


def _order_id(res: Any) -> Optional[str]:
    if isinstance(res, dict) and res.get("orders"):
        return _order_id(res["orders"][0].get("result"))
    if isinstance(res, dict):
        oid = res.get("orderId")
        return str(oid) if oid is not None else None
    if res is None:
        return None
    return str(res)


def _holds_short(client: Any, contract: str) -> bool:
    return any(p.side == "SHORT" for p in client.open_positions(contract))


# =========================
# MEXC Dispatcher
# =========================
class TradeDispatcher:
    """
    executeEnter / executeExit over every active account of a user.

    An order is sent once per attempt and only resubmitted when the exchange
    provably did not take it: a transient rejection, or an unknown outcome
    that a position lookup shows was not applied. Definite rejections are
    final. `timeout` bounds those lookups; the order POST itself is bounded
    by the HTTP client's own timeout.
    """

    def __init__(
        self,
        accounts: AccountStore,
        pool: ClientPool,
        *,
        quote_asset: str = "USDT",
        timeout: float = 8.0,
        request_delay: float = 0.5,
        max_retries: int = 2,
        retry_backoff: float = 1.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.accounts = accounts
        self.pool = pool
        self.quote_asset = quote_asset
        self.timeout = float(timeout)
        self.request_delay = float(request_delay)
        self.max_retries = int(max_retries)
        self.retry_backoff = float(retry_backoff)
        self._sleep = sleep

    # ---------------- INTERNAL HELPERS ----------------

    async def _active_accounts(self, user_id: str) -> List[Account]:
        accounts = await asyncio.to_thread(self.accounts.list_active, user_id)
        if not accounts:
            raise TradeActionError(f"no active accounts for user {user_id}")
        return accounts

    async def _submit(
        self,
        acc: Account,
        label: str,
        fn: Callable[..., Any],
        *args,
        confirm: Optional[Callable[[], bool]] = None,
    ) -> AccountResult:
        """
        Run one write for one account with bounded resubmission.

        `confirm` answers "did the write take effect?" after an unknown
        outcome. Without it the write is treated as safe to repeat.
        """
        attempts = self.max_retries + 1
        last_err: Optional[Exception] = None

        for attempt in range(attempts):
            try:
                # no wait_for here: an abandoned worker thread would still send the order
                res = await asyncio.to_thread(fn, *args)
                return AccountResult(
                    account_number=acc.account_number,
                    success=True,
                    submitted=True,
                    order_id=_order_id(res),
                    message="ok",
                    attempts=attempt + 1,
                    raw=res,
                )
            except ExchangeTransientError as e:
                last_err = e
            except OrderOutcomeUnknown as e:
                last_err = e
                if confirm is not None:
                    try:
                        applied = await call_with_timeout(confirm, timeout=self.timeout)
                    except Exception as ce:
                        log.error(
                            "%s outcome unknown for account %s and lookup failed: %s / %s",
                            label,
                            acc.account_number,
                            e,
                            ce,
                        )
                        return AccountResult(
                            account_number=acc.account_number,
                            success=False,
                            uncertain=True,
                            message=f"outcome unknown: {e}",
                            attempts=attempt + 1,
                        )
                    if applied:
                        log.warning(
                            "%s for account %s confirmed by position after: %s",
                            label,
                            acc.account_number,
                            e,
                        )
                        return AccountResult(
                            account_number=acc.account_number,
                            success=True,
                            submitted=True,
                            message="confirmed_by_position",
                            attempts=attempt + 1,
                        )
            except Exception as e:
                log.warning("%s rejected for account %s: %s", label, acc.account_number, e)
                return AccountResult(
                    account_number=acc.account_number,
                    success=False,
                    message=f"{type(e).__name__}: {e}",
                    attempts=attempt + 1,
                )

            log.warning(
                "%s failed for account %s (attempt %d/%d): %s",
                label,
                acc.account_number,
                attempt + 1,
                attempts,
                last_err,
            )
            if attempt + 1 < attempts:
                await self._sleep(self.retry_backoff * (2**attempt))

        return AccountResult(
            account_number=acc.account_number,
            success=False,
            message=f"{type(last_err).__name__}: {last_err}",
            attempts=attempts,
        )

    async def _pace(self, index: int) -> None:
        if index > 0 and self.request_delay > 0:
            await self._sleep(self.request_delay)

    # ---------------- EXECUTION ----------------

    async def execute_enter(self, user_id: str, symbol: str) -> DispatchResult:
        """
        Open a market short on every active account.

        Submitted once at least one account accepted the order or may have.
        An uncertain account counts as entered so the symbol gets armed and
        the exit path can still close whatever is there; the position
        inspector keeps a later entry from doubling up.
        """
        contract = contract_symbol(symbol, self.quote_asset)
        out = DispatchResult(action="OPEN_SHORT", symbol=contract)

        for i, acc in enumerate(await self._active_accounts(user_id)):
            await self._pace(i)
            client = self.pool.for_account(acc)
            res = await self._submit(
                acc,
                f"open short {contract}",
                client.open_short_market,
                contract,
                acc.default_size,
                acc.default_leverage,
                confirm=lambda c=client: _holds_short(c, contract),
            )
            out.results.append(res)

        log.info(
            "open short %s for user=%s: %d/%d accounts (%d uncertain)",
            contract,
            user_id,
            out.success_count,
            len(out.results),
            out.uncertain_count,
        )
        if out.success_count == 0 and out.uncertain_count == 0:
            raise TradeActionError(f"open short {contract} failed on every account")
        return out

    async def execute_exit(self, user_id: str, symbol: str) -> DispatchResult:
        """
        Close the short on every active account.

        Every account must either close or already be flat; otherwise the
        whole exit counts as failed so the next tick retries it.
        """
        contract = contract_symbol(symbol, self.quote_asset)
        out = DispatchResult(action="CLOSE_SHORT", symbol=contract)

        for i, acc in enumerate(await self._active_accounts(user_id)):
            await self._pace(i)
            client = self.pool.for_account(acc)
            res = await self._submit(
                acc,
                f"close short {contract}",
                client.close_position_market,
                contract,
                "SHORT",
                confirm=lambda c=client: not _holds_short(c, contract),
            )
            out.results.append(res)

        for r in out.results:
            if r.success and isinstance(r.raw, dict):
                r.submitted = r.raw.get("status") == "close_sent"
                r.message = r.raw.get("status", r.message)

        failed = [r.account_number for r in out.results if not r.success]
        log.info(
            "close short %s for user=%s: %d/%d accounts ok",
            contract,
            user_id,
            out.success_count,
            len(out.results),
        )
        if failed:
            raise TradeActionError(
                f"close short {contract} failed on accounts {failed}"
            )
        return out

    async def cancel_orders(self, user_id: str, symbol: str) -> DispatchResult:
        """Cancel every open order for the contract on each active account."""
        contract = contract_symbol(symbol, self.quote_asset)
        out = DispatchResult(action="CANCEL_ORDERS", symbol=contract)

        for i, acc in enumerate(await self._active_accounts(user_id)):
            await self._pace(i)
            client = self.pool.for_account(acc)
            res = await self._submit(
                acc, f"cancel orders {contract}", client.cancel_all_orders, contract
            )
            out.results.append(res)

        log.info(
            "cancel orders %s for user=%s: %d/%d accounts ok",
            contract,
            user_id,
            out.success_count,
            len(out.results),
        )
        if out.success_count == 0:
            raise TradeActionError(f"cancel orders {contract} failed on every account")
        return out

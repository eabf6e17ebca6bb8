from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from typing import Any, Dict, Optional, Tuple

from spreadwatch.execution.dispatcher import DispatchResult, TradeDispatcher
from spreadwatch.execution.inspector import PositionInspector
from spreadwatch.feeds.prices import PriceFeeds
from spreadwatch.notify.telegram import (
    TelegramNotifier,
    build_enter_message,
    build_exit_message,
)
from spreadwatch.persistence.audit import Audit
from spreadwatch.persistence.db import StateStoreError
from spreadwatch.persistence.state_store import HysteresisStore
from spreadwatch.persistence.watchlist import normalize_ticker
from spreadwatch.policy.spread_policy import (
    Decision,
    SpreadDecision,
    SpreadInputs,
    SpreadThresholds,
    decide,
    entry_signal,
    is_favorable,
    spread_percent,
    wants_position_check,
)
from spreadwatch.runner.models import MonitoredSymbol, PriceSnapshot, TickOutcome

log = logging.getLogger("spreadwatch.engine")


class SpreadEngine:
    """
    One (user, symbol) evaluation: prices -> state -> decide -> act -> persist -> notify.

    Every evaluation and every manual close of the same pair runs under the
    same asyncio.Lock, so the read/decide/act/persist sequence is a critical
    section for that pair.
    """

    def __init__(
        self,
        feeds: PriceFeeds,
        inspector: PositionInspector,
        dispatcher: TradeDispatcher,
        store: HysteresisStore,
        notifier: TelegramNotifier,
        thresholds: SpreadThresholds,
        audit: Optional[Audit] = None,
    ):
        self.feeds = feeds
        self.inspector = inspector
        self.dispatcher = dispatcher
        self.store = store
        self.notifier = notifier
        self.thresholds = thresholds
        self.audit = audit
        self._locks: Dict[Tuple[str, str], asyncio.Lock] = defaultdict(asyncio.Lock)

    def lock_for(self, user_id: str, symbol: str) -> asyncio.Lock:
        return self._locks[(str(user_id), normalize_ticker(symbol))]

    async def _audit(self, event_type: str, action: str, user_id: str, symbol: str, details: Dict[str, Any]) -> None:
        if self.audit is None:
            return
        await asyncio.to_thread(
            self.audit.event,
            event_type,
            action,
            user_id,
            symbol,
            details,
        )

    # ---------------- EVALUATION ----------------

    async def evaluate(self, user_id: str, entry: MonitoredSymbol) -> TickOutcome:
        user_id = str(user_id)
        symbol = normalize_ticker(entry.symbol)

        if not entry.dex_pair_id:
            return TickOutcome(user_id=user_id, symbol=symbol, status="skipped_no_pair")

        async with self.lock_for(user_id, symbol):
            return await self._evaluate_locked(user_id, symbol, entry.dex_pair_id)

    async def _evaluate_locked(self, user_id: str, symbol: str, pair_id: str) -> TickOutcome:
        thr = self.thresholds

        # 1) prices (never raise)
        exchange_price = await self.feeds.get_exchange_price(symbol)
        reference_price = await self.feeds.get_reference_price(pair_id)
        if exchange_price is None or reference_price is None:
            log.debug(
                "prices unavailable for user=%s %s (exchange=%s reference=%s)",
                user_id,
                symbol,
                exchange_price,
                reference_price,
            )
            return TickOutcome(
                user_id=user_id,
                symbol=symbol,
                status="unavailable",
                exchange_price=exchange_price,
                reference_price=reference_price,
            )

        spread = spread_percent(exchange_price, reference_price)
        favorable = is_favorable(exchange_price, reference_price)
        snapshot = PriceSnapshot(exchange_price, reference_price, spread)
        log.info(
            "user=%s %s: MEXC=%s DEX=%s spread=%.2f%% favorable=%s",
            user_id,
            symbol,
            exchange_price,
            reference_price,
            spread,
            favorable,
        )

        # 2) state
        try:
            state = await asyncio.to_thread(self.store.get_or_init, user_id, symbol)
        except StateStoreError as e:
            log.error("state read failed for user=%s %s: %s", user_id, symbol, e)
            return TickOutcome(
                user_id=user_id,
                symbol=symbol,
                status="error",
                exchange_price=exchange_price,
                reference_price=reference_price,
                error=str(e),
            )

        # 3) exchange facts, only when a guard needs them
        busy: Optional[bool] = None
        has_short: Optional[bool] = None
        if not state.armed and entry_signal(spread, favorable, thr):
            busy = await self.inspector.is_busy(user_id, symbol)
        if wants_position_check(state.armed, spread, thr):
            has_short = await self.inspector.has_open_short(user_id, symbol)

        # 4) decide
        decision = decide(
            SpreadInputs(
                armed=state.armed,
                exchange_price=exchange_price,
                reference_price=reference_price,
                busy=busy,
                has_open_short=has_short,
            ),
            thr,
        )

        outcome = TickOutcome(
            user_id=user_id,
            symbol=symbol,
            status="decided",
            decision=decision,
            exchange_price=exchange_price,
            reference_price=reference_price,
        )

        # 5) act, then persist
        try:
            await self._apply(user_id, symbol, decision, snapshot, outcome)
        except StateStoreError as e:
            log.error("state write failed for user=%s %s: %s", user_id, symbol, e)
            outcome.status = "error"
            outcome.error = str(e)

        await self._audit(
            "DECISION" if outcome.status == "decided" else "ERROR",
            decision.action.value.upper(),
            user_id,
            symbol,
            {
                "status": outcome.status,
                "labels": outcome.labels,
                "reason": decision.reason,
                "state_cleared": decision.state_cleared,
                "position_closed": decision.position_closed,
                "armed_before": state.armed,
                "exchange_price": exchange_price,
                "reference_price": reference_price,
                "spread_pct": round(spread, 6),
                "error": outcome.error,
                **outcome.details,
            },
        )
        return outcome

    async def _apply(
        self,
        user_id: str,
        symbol: str,
        decision: SpreadDecision,
        snapshot: PriceSnapshot,
        outcome: TickOutcome,
    ) -> None:
        thr = self.thresholds

        if decision.action == Decision.ENTER:
            log.info(
                "opening SHORT for user=%s %s at spread=%.2f%%",
                user_id,
                symbol,
                decision.spread_pct,
            )
            result = await self._dispatch(self.dispatcher.execute_enter, user_id, symbol, outcome)
            if result is None:
                return
            await asyncio.to_thread(self.store.update, user_id, symbol, True, snapshot)
            await self.notifier.send(
                user_id,
                build_enter_message(
                    symbol,
                    snapshot.exchange_price,
                    snapshot.reference_price,
                    decision.spread_pct,
                ),
            )
            return

        if decision.position_closed:
            log.info(
                "closing SHORT for user=%s %s at spread=%.2f%%",
                user_id,
                symbol,
                decision.spread_pct,
            )
            result = await self._dispatch(self.dispatcher.execute_exit, user_id, symbol, outcome)
            if result is None:
                return
            if decision.state_cleared:
                await asyncio.to_thread(self.store.update, user_id, symbol, False, snapshot)
            await self.notifier.send(
                user_id, build_exit_message(symbol, decision.spread_pct, thr.exit_pct)
            )
            return

        if decision.state_cleared:
            log.info(
                "resetting state for user=%s %s (spread %.2f%% < %g%%)",
                user_id,
                symbol,
                decision.spread_pct,
                thr.reset_pct,
            )
            await asyncio.to_thread(self.store.update, user_id, symbol, False, snapshot)

    async def _dispatch(self, fn, user_id: str, symbol: str, outcome: TickOutcome) -> Optional[DispatchResult]:
        """Run a trade call; on failure mark the outcome and leave state untouched."""
        try:
            result = await fn(user_id, symbol)
        except Exception as e:
            log.warning(
                "trade action failed for user=%s %s, retrying next tick: %s",
                user_id,
                symbol,
                e,
            )
            outcome.status = "failed"
            outcome.error = f"{type(e).__name__}: {e}"
            return None

        outcome.details["dispatch"] = result.as_dict()
        return result

    # ---------------- MANUAL PATH ----------------

    async def manual_close(self, user_id: str, symbol: str) -> DispatchResult:
        """
        Operator-issued close. Shares the pair lock with evaluate() so it can
        never double-submit against an auto-exit. Does not touch `armed`.
        """
        user_id = str(user_id)
        symbol = normalize_ticker(symbol)
        async with self.lock_for(user_id, symbol):
            result = await self.dispatcher.execute_exit(user_id, symbol)
        await self._audit(
            "MANUAL",
            "CLOSE_SHORT",
            user_id,
            symbol,
            result.as_dict(),
        )
        return result

    async def cancel_orders(self, user_id: str, symbol: str) -> DispatchResult:
        """Operator-issued cancel of the pair's open orders, under the pair lock."""
        user_id = str(user_id)
        symbol = normalize_ticker(symbol)
        async with self.lock_for(user_id, symbol):
            result = await self.dispatcher.cancel_orders(user_id, symbol)
        await self._audit(
            "MANUAL",
            "CANCEL_ORDERS",
            user_id,
            symbol,
            result.as_dict(),
        )
        return result

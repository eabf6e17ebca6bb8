# spreadwatch/policy/spread_policy.py
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import FrozenSet, Optional


class Decision(str, Enum):
    ENTER = "enter"
    SKIP = "skip"
    RESET = "reset"
    EXIT = "exit"
    HOLD = "hold"


@dataclass(frozen=True)
class SpreadThresholds:
    entry_pct: float = 13.0
    reset_pct: float = 7.0
    exit_pct: float = 2.0

    def __post_init__(self) -> None:
        if self.exit_pct > self.reset_pct:
            raise ValueError(
                f"exit threshold ({self.exit_pct}) must be <= reset threshold ({self.reset_pct})"
            )
        if self.reset_pct > self.entry_pct:
            raise ValueError(
                f"reset threshold ({self.reset_pct}) must be <= entry threshold ({self.entry_pct})"
            )


@dataclass
class SpreadInputs:
    # state
    armed: bool

    # fresh prices
    exchange_price: float
    reference_price: float

    # exchange facts, None when the engine did not need to ask
    busy: Optional[bool] = None  # open short OR pending order (entry guard)
    has_open_short: Optional[bool] = None  # exit guard


@dataclass(frozen=True)
class SpreadDecision:
    action: Decision
    next_armed: bool
    state_cleared: bool
    position_closed: bool
    spread_pct: float
    favorable: bool
    reason: str

    @property
    def labels(self) -> FrozenSet[str]:
        """Every observable outcome of this evaluation (reset and exit may co-occur)."""
        out = {self.action.value}
        if self.state_cleared:
            out.add(Decision.RESET.value)
        if self.position_closed:
            out.add(Decision.EXIT.value)
        return frozenset(out)

    @property
    def opens_position(self) -> bool:
        return self.action == Decision.ENTER

    @property
    def changes_state(self) -> bool:
        return self.opens_position or self.state_cleared


def spread_percent(exchange_price: float, reference_price: float) -> float:
    """|exchange - reference| / reference * 100, always non-negative."""
    if reference_price <= 0:
        raise ValueError("reference price must be > 0")
    return abs(exchange_price - reference_price) / reference_price * 100.0


def is_favorable(exchange_price: float, reference_price: float) -> bool:
    # exchange inflated vs reference => shorting the exchange pays
    return exchange_price > reference_price


def entry_signal(spread_pct: float, favorable: bool, thr: SpreadThresholds) -> bool:
    return spread_pct >= thr.entry_pct and favorable


def wants_position_check(armed: bool, spread_pct: float, thr: SpreadThresholds) -> bool:
    """True when an armed symbol is deep enough in the exit band to need the open-short lookup."""
    return armed and spread_pct < thr.exit_pct


def decide(inp: SpreadInputs, thr: SpreadThresholds) -> SpreadDecision:
    """
    Two-state hysteresis machine (UNARMED / ARMED) for one (user, symbol).

    UNARMED:
      spread >= entry AND favorable AND not busy  -> ENTER (armed)
      otherwise                                   -> SKIP
    ARMED:
      spread < reset                              -> RESET (clears armed)
      spread < exit AND open short exists         -> EXIT (close the short)
      otherwise                                   -> HOLD

    RESET and EXIT are evaluated independently; when both fire the result is a
    single EXIT decision with state_cleared=True and position_closed=True.

    Engine should:
      - fetch `busy` only when entry_signal() is true on an unarmed symbol
      - fetch `has_open_short` only when wants_position_check() is true
      - act, then persist next_armed only after the trade call succeeded
    """
    spread = spread_percent(inp.exchange_price, inp.reference_price)
    favorable = is_favorable(inp.exchange_price, inp.reference_price)

    # --- UNARMED ---
    if not inp.armed:
        if not entry_signal(spread, favorable, thr):
            if spread >= thr.entry_pct:
                reason = "unfavorable_direction"
            else:
                reason = "below_entry_threshold"
            return SpreadDecision(
                Decision.SKIP, False, False, False, spread, favorable, reason
            )

        # Unknown counts as busy
        if inp.busy is None or inp.busy:
            return SpreadDecision(
                Decision.SKIP, False, False, False, spread, favorable, "position_or_order_open"
            )

        return SpreadDecision(
            Decision.ENTER, True, False, False, spread, favorable, "entry_threshold_reached"
        )

    # --- ARMED ---
    state_cleared = spread < thr.reset_pct
    position_closed = spread < thr.exit_pct and bool(inp.has_open_short)

    if position_closed:
        return SpreadDecision(
            Decision.EXIT,
            not state_cleared,
            state_cleared,
            True,
            spread,
            favorable,
            "exit_threshold_reached",
        )

    if state_cleared:
        if spread < thr.exit_pct:
            reason = "reset_no_open_short"
        else:
            reason = "reset_threshold_reached"
        return SpreadDecision(
            Decision.RESET, False, True, False, spread, favorable, reason
        )

    return SpreadDecision(
        Decision.HOLD, True, False, False, spread, favorable, "armed_waiting_for_reset"
    )

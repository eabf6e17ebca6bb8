# spreadwatch/runner/models.py
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional

from spreadwatch.policy.spread_policy import SpreadDecision


@dataclass(frozen=True)
class MonitoredSymbol:
    symbol: str  # bare ticker, uppercase: "BTC"
    dex_pair_id: Optional[str] = None  # None => never evaluated


@dataclass
class HysteresisState:
    user_id: str
    symbol: str
    armed: bool = False
    last_exchange_price: Optional[float] = None
    last_reference_price: Optional[float] = None
    last_spread_pct: Optional[float] = None
    last_action_at: Optional[str] = None


@dataclass(frozen=True)
class PriceSnapshot:
    exchange_price: float
    reference_price: float
    spread_pct: float


@dataclass(frozen=True)
class Position:
    account_number: int
    symbol: str  # contract symbol: "BTC_USDT"
    side: str  # "LONG" | "SHORT"
    quantity: float


@dataclass(frozen=True)
class PendingOrder:
    account_number: int
    symbol: str
    order_id: str
    side: Optional[int] = None


@dataclass
class TickOutcome:
    user_id: str
    symbol: str
    status: str  # decided | skipped_no_pair | unavailable | failed | error
    decision: Optional[SpreadDecision] = None
    exchange_price: Optional[float] = None
    reference_price: Optional[float] = None
    error: Optional[str] = None
    details: dict = field(default_factory=dict)

    @property
    def labels(self) -> list[str]:
        if self.decision is None:
            return []
        return sorted(self.decision.labels)

    def as_dict(self) -> dict:
        d = self.decision
        return {
            "user_id": self.user_id,
            "symbol": self.symbol,
            "status": self.status,
            "action": d.action.value if d else None,
            "labels": self.labels,
            "state_cleared": d.state_cleared if d else False,
            "position_closed": d.position_closed if d else False,
            "spread_pct": d.spread_pct if d else None,
            "exchange_price": self.exchange_price,
            "reference_price": self.reference_price,
            "error": self.error,
            "details": self.details,
        }

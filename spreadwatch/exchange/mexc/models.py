from __future__ import annotations

import logging
from typing import Any, List, Optional, Type, TypeVar

from pydantic import BaseModel, ConfigDict, ValidationError, field_validator

log = logging.getLogger("spreadwatch.exchange.mexc")

# MEXC contract order sides
SIDE_OPEN_LONG = 1
SIDE_CLOSE_SHORT = 2
SIDE_OPEN_SHORT = 3
SIDE_CLOSE_LONG = 4

ORDER_TYPE_MARKET = 5
OPEN_TYPE_ISOLATED = 1

POSITION_TYPE_LONG = 1
POSITION_TYPE_SHORT = 2


class Envelope(BaseModel):
    """{"success": bool, "code": int, "data": ..., "message": str}"""

    model_config = ConfigDict(extra="ignore")

    success: bool = False
    code: int = -1
    data: Any = None
    message: Optional[str] = None


class Ticker(BaseModel):
    model_config = ConfigDict(extra="ignore")

    symbol: str
    lastPrice: float


class PositionRow(BaseModel):
    model_config = ConfigDict(extra="ignore")

    symbol: str
    positionType: int
    holdVol: float
    positionId: Optional[int] = None
    openAvgPrice: Optional[float] = None
    leverage: Optional[int] = None

    @property
    def side(self) -> str:
        return "LONG" if self.positionType == POSITION_TYPE_LONG else "SHORT"

    @property
    def is_open(self) -> bool:
        return self.holdVol > 0


class OrderRow(BaseModel):
    model_config = ConfigDict(extra="ignore")

    orderId: str
    symbol: str
    side: Optional[int] = None
    vol: Optional[float] = None
    price: Optional[float] = None

    @field_validator("orderId", mode="before")
    @classmethod
    def _order_id_str(cls, v: Any) -> str:
        return str(v)


class AssetRow(BaseModel):
    """One currency line of the futures wallet."""

    model_config = ConfigDict(extra="ignore")

    currency: str
    equity: float = 0.0
    availableBalance: float = 0.0
    positionMargin: Optional[float] = None
    frozenBalance: Optional[float] = None
    unrealized: Optional[float] = None


M = TypeVar("M", bound=BaseModel)


def parse_rows(model: Type[M], data: Any) -> List[M]:
    """
    Validate a list payload row by row. Rows that do not match the schema are
    dropped (and logged), never guessed at.
    """
    if data is None:
        return []
    if not isinstance(data, list):
        raise ValueError(f"expected list payload for {model.__name__}, got {type(data).__name__}")

    out: List[M] = []
    for row in data:
        try:
            out.append(model.model_validate(row))
        except ValidationError as e:
            log.warning("dropping malformed %s row: %s", model.__name__, e.errors()[:1])
    return out

from __future__ import annotations

import asyncio
import logging
from typing import Callable, Optional, TypeVar

from spreadwatch.exchange.mexc.client import ClientPool, contract_symbol
from spreadwatch.feeds.dex import DexScreenerClient

log = logging.getLogger("spreadwatch.feeds")

T = TypeVar("T")


async def call_with_timeout(fn: Callable[..., T], *args, timeout: float) -> T:
    """Run a blocking call in a worker thread, bounded by `timeout` seconds."""
    return await asyncio.wait_for(asyncio.to_thread(fn, *args), timeout=timeout)


class PriceFeeds:
    """
    getExchangePrice / getReferencePrice. Never raises: every failure,
    timeout included, comes back as None (unavailable).
    """

    def __init__(
        self,
        pool: ClientPool,
        dex: DexScreenerClient,
        *,
        quote_asset: str = "USDT",
        timeout: float = 8.0,
    ):
        self.pool = pool
        self.dex = dex
        self.quote_asset = quote_asset
        self.timeout = float(timeout)

    async def get_exchange_price(self, symbol: str) -> Optional[float]:
        contract = contract_symbol(symbol, self.quote_asset)
        try:
            price = await call_with_timeout(
                self.pool.public().last_price, contract, timeout=self.timeout
            )
        except asyncio.TimeoutError:
            log.warning("exchange price timed out for %s", contract)
            return None
        except Exception as e:
            log.warning("exchange price unavailable for %s: %s", contract, e)
            return None

        if price is None or price <= 0:
            return None
        return float(price)

    async def get_reference_price(self, pair_id: str) -> Optional[float]:
        try:
            price = await call_with_timeout(
                self.dex.pair_price, pair_id, timeout=self.timeout
            )
        except asyncio.TimeoutError:
            log.warning("reference price timed out for pair %s", pair_id)
            return None
        except Exception as e:
            log.warning("reference price unavailable for pair %s: %s", pair_id, e)
            return None

        if price is None or price <= 0:
            return None
        return float(price)

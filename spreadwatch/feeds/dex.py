from __future__ import annotations

import logging
from typing import List, Optional

import requests
from pydantic import BaseModel, ConfigDict, ValidationError

log = logging.getLogger("spreadwatch.feeds.dex")


class DexPair(BaseModel):
    model_config = ConfigDict(extra="ignore")

    pairAddress: Optional[str] = None
    priceUsd: float


class DexPairsResponse(BaseModel):
    """GET /latest/dex/pairs/{chain}/{pair} -> {"pairs": [{"priceUsd": "0.123", ...}]}"""

    model_config = ConfigDict(extra="ignore")

    pairs: Optional[List[DexPair]] = None


class DexScreenerClient:
    def __init__(self, base_url: str, chain: str = "solana", timeout: float = 8.0):
        self.base_url = base_url.rstrip("/")
        self.chain = chain
        self.timeout = float(timeout)

    def pair_price(self, pair_id: str) -> Optional[float]:
        """
        USD price of the first pair returned, or None when the feed is
        unreachable, the payload does not match the schema, or the price is not positive.
        """
        url = f"{self.base_url}/latest/dex/pairs/{self.chain}/{pair_id}"
        try:
            r = requests.get(url, timeout=self.timeout)
            if r.status_code >= 400:
                log.debug("dex feed HTTP %s for %s", r.status_code, pair_id)
                return None
            parsed = DexPairsResponse.model_validate(r.json())
        except (requests.RequestException, ValueError, ValidationError) as e:
            log.debug("dex feed unavailable for %s: %s", pair_id, e)
            return None

        if not parsed.pairs:
            return None
        price = float(parsed.pairs[0].priceUsd)
        return price if price > 0 else None

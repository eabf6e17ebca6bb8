from __future__ import annotations

import logging
import random
import threading
import time
from typing import Any, Dict, List, Optional, Tuple

import requests
from pydantic import ValidationError

from spreadwatch.exchange.mexc.models import (
    AssetRow,
    Envelope,
    OPEN_TYPE_ISOLATED,
    ORDER_TYPE_MARKET,
    OrderRow,
    POSITION_TYPE_LONG,
    PositionRow,
    SIDE_CLOSE_LONG,
    SIDE_CLOSE_SHORT,
    SIDE_OPEN_SHORT,
    Ticker,
    parse_rows,
)

log = logging.getLogger("spreadwatch.exchange.mexc")


class ExchangeError(RuntimeError):
    pass


class ExchangeRejected(ExchangeError):
    """The exchange answered and refused the request (4xx or an error envelope)."""


class ExchangeTransientError(ExchangeError):
    """The request was not processed (rate limit, connect failure, exhausted GET retries)."""


class OrderOutcomeUnknown(ExchangeError):
    """A write may or may not have been applied (read timeout, 5xx, garbled reply)."""


def contract_symbol(ticker: str, quote: str = "USDT") -> str:
    """'btc' -> 'BTC_USDT' (already-qualified symbols pass through)."""
    t = (ticker or "").strip().upper()
    if not t:
        raise ValueError("symbol is required")
    if "_" in t:
        return t
    return f"{t}_{quote.upper()}"


class MexcFuturesClient:
    """
    MEXC contract REST client for one account (cookie u_id auth, optional proxy).

    A client without web_uid can only call public endpoints. Only GETs are
    retried here; a write is sent exactly once and its failures are classified
    so the caller can decide whether resubmitting is safe.
    """

    def __init__(
        self,
        base_url: str,
        web_uid: Optional[str] = None,
        proxy: Optional[str] = None,
        timeout: float = 10.0,
        max_retries: int = 3,
    ):
        self.base_url = base_url.rstrip("/")
        self.web_uid = (web_uid or "").strip() or None
        self.proxy = (proxy or "").strip() or None
        self.timeout = float(timeout)
        self.max_retries = int(max_retries)

    # ------------------------------------------------------------------
    # Request helper
    # ------------------------------------------------------------------
    def _headers(self, signed: bool) -> Dict[str, str]:
        headers = {
            "Content-Type": "application/json",
            "Accept": "application/json",
            "Origin": "https://contract.mexc.com",
            "Referer": "https://contract.mexc.com/",
        }
        if signed:
            if not self.web_uid:
                raise ExchangeRejected("Missing web u_id for private MEXC request")
            headers["Cookie"] = f"u_id={self.web_uid}"
        return headers

    def _proxies(self) -> Optional[Dict[str, str]]:
        if not self.proxy:
            return None
        return {"http": self.proxy, "https": self.proxy}

    def _request(
        self,
        method: str,
        path: str,
        params: Optional[dict] = None,
        body: Optional[dict] = None,
        signed: bool = False,
    ) -> Any:
        url = f"{self.base_url}{path}"
        headers = self._headers(signed)
        params = dict(params or {})
        idempotent = method.upper() == "GET"
        attempts = self.max_retries + 1 if idempotent else 1

        last_err: Optional[Exception] = None
        for attempt in range(attempts):
            try:
                r = requests.request(
                    method,
                    url,
                    params=params or None,
                    json=body,
                    headers=headers,
                    proxies=self._proxies(),
                    timeout=self.timeout,
                )
            except requests.ConnectTimeout as e:
                # never reached the exchange
                last_err = e
            except (requests.Timeout, requests.ConnectionError) as e:
                if not idempotent:
                    raise OrderOutcomeUnknown(f"MEXC {method} {path} interrupted: {e}") from e
                last_err = e
            else:
                # Rate limit: rejected before processing
                if r.status_code == 429:
                    last_err = ExchangeTransientError(f"MEXC rate limited: {method} {path}")
                    if not idempotent:
                        raise last_err
                    ra = r.headers.get("Retry-After")
                    sleep_s = float(ra) if ra else (0.4 * (2**attempt))
                    sleep_s += random.uniform(0, 0.2)
                    time.sleep(min(sleep_s, 10.0))
                    continue

                # Server errors
                if r.status_code >= 500:
                    msg = f"MEXC HTTP {r.status_code}: {r.text[:200]}"
                    if not idempotent:
                        raise OrderOutcomeUnknown(msg)
                    last_err = ExchangeTransientError(msg)
                elif r.status_code >= 400:
                    raise ExchangeRejected(f"MEXC HTTP {r.status_code}: {r.text[:200]}")
                else:
                    return self._unwrap(method, path, r, idempotent)

            if attempt + 1 < attempts:
                time.sleep(min(0.4 * (2**attempt), 8.0))

        raise ExchangeTransientError(
            f"MEXC request failed after retries: {method} {path} ({last_err})"
        )

    @staticmethod
    def _unwrap(method: str, path: str, r: requests.Response, idempotent: bool = True) -> Any:
        try:
            env = Envelope.model_validate(r.json())
        except (ValueError, ValidationError) as e:
            msg = f"Invalid JSON from MEXC {method} {path}: {r.text[:100]}"
            if idempotent:
                raise ExchangeTransientError(msg) from e
            raise OrderOutcomeUnknown(msg) from e

        if not env.success or env.code != 0:
            raise ExchangeRejected(
                f"MEXC API error {env.code} on {method} {path}: {env.message or 'unknown'}"
            )
        return env.data

    # ---------------- PUBLIC ----------------

    def last_price(self, symbol: str) -> float:
        data = self._request(
            "GET", "/api/v1/contract/ticker", params={"symbol": symbol.upper()}
        )
        try:
            ticker = Ticker.model_validate(data)
        except ValidationError as e:
            raise ExchangeError(f"Unexpected ticker payload for {symbol}") from e
        return float(ticker.lastPrice)

    # ---------------- ACCOUNT / TRADING ----------------

    def account_assets(self) -> List[AssetRow]:
        data = self._request("GET", "/api/v1/private/account/assets", signed=True)
        return parse_rows(AssetRow, data)

    def open_positions(self, symbol: Optional[str] = None) -> List[PositionRow]:
        params = {}
        if symbol:
            params["symbol"] = symbol.upper()
        data = self._request(
            "GET", "/api/v1/private/position/open_positions", params=params, signed=True
        )
        return [p for p in parse_rows(PositionRow, data) if p.is_open]

    def open_orders(self, symbol: Optional[str] = None) -> List[OrderRow]:
        params = {}
        if symbol:
            params["symbol"] = symbol.upper()
        data = self._request(
            "GET", "/api/v1/private/order/list/open_orders", params=params, signed=True
        )
        return parse_rows(OrderRow, data)

    def place_market_order(
        self,
        symbol: str,
        side: int,
        vol: float,
        leverage: Optional[int] = None,
        open_type: int = OPEN_TYPE_ISOLATED,
    ) -> Any:
        body: Dict[str, Any] = {
            "symbol": symbol.upper(),
            "side": int(side),
            "type": ORDER_TYPE_MARKET,
            "vol": vol,
            "openType": open_type,
        }
        if leverage is not None:
            body["leverage"] = int(leverage)
        return self._request(
            "POST", "/api/v1/private/order/submit", body=body, signed=True
        )

    def open_short_market(self, symbol: str, vol: float, leverage: int) -> Any:
        return self.place_market_order(symbol, SIDE_OPEN_SHORT, vol, leverage)

    def close_position_market(self, symbol: str, side: Optional[str] = None) -> Dict[str, Any]:
        """
        Close the held volume at market. `side` restricts to LONG/SHORT rows.
        Returns {"status": "no_position"} when nothing is held.
        """
        rows = self.open_positions(symbol)
        if side:
            rows = [p for p in rows if p.side == side.upper()]
        if not rows:
            return {"status": "no_position", "symbol": symbol.upper()}

        orders = []
        for p in rows:
            close_side = SIDE_CLOSE_LONG if p.positionType == POSITION_TYPE_LONG else SIDE_CLOSE_SHORT
            res = self.place_market_order(p.symbol, close_side, p.holdVol)
            orders.append({"side": p.side, "vol": p.holdVol, "result": res})
        return {"status": "close_sent", "symbol": symbol.upper(), "orders": orders}

    def cancel_all_orders(self, symbol: str) -> Any:
        return self._request(
            "POST",
            "/api/v1/private/order/cancel_all",
            body={"symbol": symbol.upper()},
            signed=True,
        )


class ClientPool:
    """
    One client per (u_id, proxy), shared by every symbol in every tick.
    """

    def __init__(self, base_url: str, timeout: float = 10.0, max_retries: int = 3):
        self.base_url = base_url
        self.timeout = timeout
        self.max_retries = max_retries
        self._clients: Dict[Tuple[Optional[str], Optional[str]], MexcFuturesClient] = {}
        self._lock = threading.Lock()

    def get(self, web_uid: Optional[str] = None, proxy: Optional[str] = None) -> MexcFuturesClient:
        key = ((web_uid or "").strip() or None, (proxy or "").strip() or None)
        with self._lock:
            client = self._clients.get(key)
            if client is None:
                client = MexcFuturesClient(
                    self.base_url,
                    web_uid=key[0],
                    proxy=key[1],
                    timeout=self.timeout,
                    max_retries=self.max_retries,
                )
                self._clients[key] = client
            return client

    def public(self) -> MexcFuturesClient:
        return self.get(None, None)

    def for_account(self, account) -> MexcFuturesClient:
        return self.get(account.web_uid, account.proxy)

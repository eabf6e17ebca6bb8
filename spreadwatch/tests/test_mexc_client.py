import pytest

import spreadwatch.exchange.mexc.client as client_mod
from spreadwatch.exchange.mexc.client import (
    ClientPool,
    ExchangeError,
    ExchangeRejected,
    ExchangeTransientError,
    MexcFuturesClient,
    OrderOutcomeUnknown,
    contract_symbol,
)
from spreadwatch.exchange.mexc.models import SIDE_CLOSE_SHORT, SIDE_OPEN_SHORT


class _Resp:
    def __init__(self, status_code=200, payload=None, text="", headers=None):
        self.status_code = status_code
        self._payload = payload
        self.text = text
        self.headers = headers or {}

    def json(self):
        if self._payload is None:
            raise ValueError("no json")
        return self._payload


class _Recorder:
    def __init__(self, responses):
        self.responses = list(responses)
        self.calls = []

    def __call__(self, method, url, **kwargs):
        self.calls.append((method, url, kwargs))
        return self.responses.pop(0)


def _ok(data):
    return _Resp(payload={"success": True, "code": 0, "data": data})


@pytest.fixture(autouse=True)
def _no_sleep(monkeypatch):
    monkeypatch.setattr(client_mod.time, "sleep", lambda s: None)


def test_contract_symbol():
    assert contract_symbol("btc") == "BTC_USDT"
    assert contract_symbol("SOL_USDT") == "SOL_USDT"
    with pytest.raises(ValueError):
        contract_symbol(" ")


def test_last_price_unwraps_envelope(monkeypatch):
    rec = _Recorder([_ok({"symbol": "BTC_USDT", "lastPrice": "101.5"})])
    monkeypatch.setattr(client_mod.requests, "request", rec)

    c = MexcFuturesClient("https://contract.mexc.com")
    assert c.last_price("BTC_USDT") == 101.5

    method, url, kwargs = rec.calls[0]
    assert method == "GET"
    assert url.endswith("/api/v1/contract/ticker")
    assert kwargs["params"] == {"symbol": "BTC_USDT"}
    assert "Cookie" not in kwargs["headers"]


def test_api_error_envelope_raises(monkeypatch):
    rec = _Recorder([_Resp(payload={"success": False, "code": 602, "message": "bad"})])
    monkeypatch.setattr(client_mod.requests, "request", rec)

    with pytest.raises(ExchangeRejected, match="602"):
        MexcFuturesClient("https://x").last_price("BTC_USDT")


def test_server_error_is_retried(monkeypatch):
    rec = _Recorder(
        [
            _Resp(status_code=502, text="gateway"),
            _ok({"symbol": "BTC_USDT", "lastPrice": 99}),
        ]
    )
    monkeypatch.setattr(client_mod.requests, "request", rec)

    assert MexcFuturesClient("https://x", max_retries=1).last_price("BTC_USDT") == 99.0
    assert len(rec.calls) == 2


def test_client_error_is_not_retried(monkeypatch):
    rec = _Recorder([_Resp(status_code=401, text="unauthorized")])
    monkeypatch.setattr(client_mod.requests, "request", rec)

    with pytest.raises(ExchangeRejected):
        MexcFuturesClient("https://x", web_uid="WEB1").account_assets()
    assert len(rec.calls) == 1


def test_private_call_requires_uid():
    with pytest.raises(ExchangeError):
        MexcFuturesClient("https://x").open_positions()


def test_open_short_sends_cookie_and_side(monkeypatch):
    rec = _Recorder([_ok({"orderId": 123})])
    monkeypatch.setattr(client_mod.requests, "request", rec)

    c = MexcFuturesClient("https://x", web_uid="WEB1", proxy="http://p:1")
    c.open_short_market("BTC_USDT", 10, 20)

    method, url, kwargs = rec.calls[0]
    assert method == "POST"
    assert url.endswith("/api/v1/private/order/submit")
    assert kwargs["headers"]["Cookie"] == "u_id=WEB1"
    assert kwargs["proxies"] == {"http": "http://p:1", "https": "http://p:1"}
    assert kwargs["json"]["side"] == SIDE_OPEN_SHORT
    assert kwargs["json"]["leverage"] == 20


def test_close_short_only_touches_short_rows(monkeypatch):
    positions = [
        {"symbol": "BTC_USDT", "positionType": 1, "holdVol": 4},
        {"symbol": "BTC_USDT", "positionType": 2, "holdVol": 10},
        {"symbol": "BTC_USDT", "positionType": 2, "holdVol": 0},
    ]
    rec = _Recorder([_ok(positions), _ok({"orderId": 9})])
    monkeypatch.setattr(client_mod.requests, "request", rec)

    res = MexcFuturesClient("https://x", web_uid="WEB1").close_position_market(
        "BTC_USDT", "SHORT"
    )
    assert res["status"] == "close_sent"
    assert len(res["orders"]) == 1
    body = rec.calls[1][2]["json"]
    assert body["side"] == SIDE_CLOSE_SHORT
    assert body["vol"] == 10


def test_close_without_position(monkeypatch):
    rec = _Recorder([_ok([])])
    monkeypatch.setattr(client_mod.requests, "request", rec)

    res = MexcFuturesClient("https://x", web_uid="WEB1").close_position_market("BTC_USDT")
    assert res["status"] == "no_position"
    assert len(rec.calls) == 1


def test_malformed_rows_are_dropped(monkeypatch):
    rows = [{"symbol": "BTC_USDT"}, {"symbol": "ETH_USDT", "positionType": 2, "holdVol": 1}]
    rec = _Recorder([_ok(rows)])
    monkeypatch.setattr(client_mod.requests, "request", rec)

    out = MexcFuturesClient("https://x", web_uid="WEB1").open_positions()
    assert [p.symbol for p in out] == ["ETH_USDT"]


def test_pool_reuses_clients():
    pool = ClientPool("https://x")
    assert pool.get("WEB1", None) is pool.get(" WEB1 ", "")
    assert pool.get("WEB1", "http://p") is not pool.get("WEB1", None)
    assert pool.public().web_uid is None


def test_cancel_all_orders_posts_symbol(monkeypatch):
    rec = _Recorder([_ok(None)])
    monkeypatch.setattr(client_mod.requests, "request", rec)

    MexcFuturesClient("https://x", web_uid="WEB1").cancel_all_orders("btc_usdt")
    method, url, kwargs = rec.calls[0]
    assert method == "POST"
    assert url.endswith("/api/v1/private/order/cancel_all")
    assert kwargs["json"] == {"symbol": "BTC_USDT"}


def _raise(exc):
    def request(method, url, **kwargs):
        request.calls += 1
        raise exc

    request.calls = 0
    return request


def test_order_server_error_is_not_resubmitted(monkeypatch):
    rec = _Recorder([_Resp(status_code=502, text="gateway"), _ok({"orderId": 1})])
    monkeypatch.setattr(client_mod.requests, "request", rec)

    with pytest.raises(OrderOutcomeUnknown):
        MexcFuturesClient("https://x", web_uid="WEB1", max_retries=3).open_short_market(
            "BTC_USDT", 1, 10
        )
    assert len(rec.calls) == 1


def test_order_read_timeout_is_unknown(monkeypatch):
    fake = _raise(client_mod.requests.ReadTimeout("slow"))
    monkeypatch.setattr(client_mod.requests, "request", fake)

    with pytest.raises(OrderOutcomeUnknown):
        MexcFuturesClient("https://x", web_uid="WEB1", max_retries=3).open_short_market(
            "BTC_USDT", 1, 10
        )
    assert fake.calls == 1


def test_order_connect_timeout_is_transient(monkeypatch):
    fake = _raise(client_mod.requests.ConnectTimeout("no route"))
    monkeypatch.setattr(client_mod.requests, "request", fake)

    with pytest.raises(ExchangeTransientError):
        MexcFuturesClient("https://x", web_uid="WEB1", max_retries=3).open_short_market(
            "BTC_USDT", 1, 10
        )
    assert fake.calls == 1


def test_order_rate_limit_is_transient(monkeypatch):
    rec = _Recorder([_Resp(status_code=429, headers={"Retry-After": "1"}), _ok({"orderId": 1})])
    monkeypatch.setattr(client_mod.requests, "request", rec)

    with pytest.raises(ExchangeTransientError):
        MexcFuturesClient("https://x", web_uid="WEB1").cancel_all_orders("BTC_USDT")
    assert len(rec.calls) == 1


def test_order_garbled_reply_is_unknown(monkeypatch):
    rec = _Recorder([_Resp(status_code=200, text="<html>")])
    monkeypatch.setattr(client_mod.requests, "request", rec)

    with pytest.raises(OrderOutcomeUnknown):
        MexcFuturesClient("https://x", web_uid="WEB1").open_short_market("BTC_USDT", 1, 10)


def test_read_retries_exhausted_is_transient(monkeypatch):
    rec = _Recorder([_Resp(status_code=503, text="busy")] * 3)
    monkeypatch.setattr(client_mod.requests, "request", rec)

    with pytest.raises(ExchangeTransientError):
        MexcFuturesClient("https://x", max_retries=2).last_price("BTC_USDT")
    assert len(rec.calls) == 3


def test_account_assets_parsed(monkeypatch):
    rows = [
        {"currency": "USDT", "equity": "120.5", "availableBalance": 100},
        {"equity": 1},
    ]
    rec = _Recorder([_ok(rows)])
    monkeypatch.setattr(client_mod.requests, "request", rec)

    out = MexcFuturesClient("https://x", web_uid="WEB1").account_assets()
    assert [(a.currency, a.equity, a.availableBalance) for a in out] == [("USDT", 120.5, 100.0)]
    assert rec.calls[0][2]["headers"]["Cookie"] == "u_id=WEB1"

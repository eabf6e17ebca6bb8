import asyncio

import pytest

from spreadwatch.exchange.mexc.client import ExchangeTransientError, OrderOutcomeUnknown
from spreadwatch.execution.dispatcher import (
    AccountResult,
    DispatchResult,
    TradeActionError,
    TradeDispatcher,
)
from spreadwatch.persistence.accounts import AccountStore
from spreadwatch.persistence.audit import Audit
from spreadwatch.persistence.state_store import HysteresisStore
from spreadwatch.policy.spread_policy import Decision, SpreadThresholds
from spreadwatch.runner.engine import SpreadEngine
from spreadwatch.runner.models import MonitoredSymbol


class _FakeFeeds:
    def __init__(self, exchange=None, reference=None):
        self.exchange = exchange
        self.reference = reference

    async def get_exchange_price(self, symbol):
        return self.exchange

    async def get_reference_price(self, pair_id):
        return self.reference


class _FakeInspector:
    def __init__(self, busy=False, short=False):
        self.busy = busy
        self.short = short
        self.busy_calls = 0
        self.short_calls = 0

    async def is_busy(self, user_id, symbol):
        self.busy_calls += 1
        return self.busy

    async def has_open_short(self, user_id, symbol):
        self.short_calls += 1
        return self.short


class _FakeDispatcher:
    def __init__(self, fail=False):
        self.fail = fail
        self.enters = []
        self.exits = []
        self.cancels = []

    def _result(self, action, symbol):
        return DispatchResult(
            action=action,
            symbol=f"{symbol}_USDT",
            results=[AccountResult(account_number=1, success=True, submitted=True, order_id="1")],
        )

    async def execute_enter(self, user_id, symbol):
        self.enters.append((user_id, symbol))
        if self.fail:
            raise TradeActionError("rejected")
        return self._result("OPEN_SHORT", symbol)

    async def execute_exit(self, user_id, symbol):
        self.exits.append((user_id, symbol))
        if self.fail:
            raise TradeActionError("rejected")
        return self._result("CLOSE_SHORT", symbol)

    async def cancel_orders(self, user_id, symbol):
        self.cancels.append((user_id, symbol))
        return self._result("CANCEL_ORDERS", symbol)


class _FakeNotifier:
    def __init__(self):
        self.sent = []

    async def send(self, user_id, text):
        self.sent.append((user_id, text))
        return True


@pytest.fixture
def store(db):
    return HysteresisStore(db)


def _engine(db, store, feeds, inspector=None, dispatcher=None, tmp_path=None):
    audit = Audit(db, str(tmp_path / "audit.jsonl")) if tmp_path else None
    return SpreadEngine(
        feeds,
        inspector or _FakeInspector(),
        dispatcher or _FakeDispatcher(),
        store,
        _FakeNotifier(),
        SpreadThresholds(),
        audit=audit,
    )


BTC = MonitoredSymbol("BTC", "pairBtc")


def test_entry_arms_and_notifies(db, store, tmp_path):
    # spread = 13.1 / 86.9 = 15.07%
    eng = _engine(db, store, _FakeFeeds(100.0, 86.9), tmp_path=tmp_path)

    out = asyncio.run(eng.evaluate("42", BTC))
    assert out.status == "decided"
    assert out.decision.action == Decision.ENTER
    assert eng.dispatcher.enters == [("42", "BTC")]
    assert store.get("42", "BTC").armed is True
    assert len(eng.notifier.sent) == 1
    assert "Auto SHORT" in eng.notifier.sent[0][1]

    events = eng.audit.tail(10)
    assert events[-1]["event_type"] == "DECISION"
    assert events[-1]["action"] == "ENTER"


def test_armed_symbol_does_not_enter_twice(db, store):
    eng = _engine(db, store, _FakeFeeds(100.0, 86.9))
    asyncio.run(eng.evaluate("42", BTC))
    out = asyncio.run(eng.evaluate("42", BTC))

    assert out.decision.action == Decision.HOLD
    assert len(eng.dispatcher.enters) == 1
    assert eng.inspector.busy_calls == 1


def test_exit_closes_short_and_resets(db, store):
    store.update("42", "BTC", True)
    inspector = _FakeInspector(short=True)
    eng = _engine(db, store, _FakeFeeds(101.5, 100.0), inspector=inspector)

    out = asyncio.run(eng.evaluate("42", BTC))
    assert out.decision.action == Decision.EXIT
    assert out.labels == ["exit", "reset"]
    assert eng.dispatcher.exits == [("42", "BTC")]
    assert store.get("42", "BTC").armed is False
    assert "Auto close SHORT" in eng.notifier.sent[0][1]


def test_exit_band_without_short_only_resets(db, store):
    store.update("42", "BTC", True)
    eng = _engine(db, store, _FakeFeeds(101.0, 100.0), inspector=_FakeInspector(short=False))

    out = asyncio.run(eng.evaluate("42", BTC))
    assert out.decision.action == Decision.RESET
    assert eng.dispatcher.exits == []
    assert store.get("42", "BTC").armed is False
    assert eng.notifier.sent == []


def test_reset_zone_skips_position_lookup(db, store):
    store.update("42", "BTC", True)
    inspector = _FakeInspector()
    eng = _engine(db, store, _FakeFeeds(105.0, 100.0), inspector=inspector)

    out = asyncio.run(eng.evaluate("42", BTC))
    assert out.decision.action == Decision.RESET
    assert inspector.short_calls == 0


def test_unavailable_price_changes_nothing(db, store):
    eng = _engine(db, store, _FakeFeeds(None, 86.9))
    out = asyncio.run(eng.evaluate("42", BTC))

    assert out.status == "unavailable"
    assert out.decision is None
    assert store.get("42", "BTC") is None
    assert eng.dispatcher.enters == []


def test_missing_pair_is_skipped(db, store):
    eng = _engine(db, store, _FakeFeeds(100.0, 86.9))
    out = asyncio.run(eng.evaluate("42", MonitoredSymbol("BTC", None)))
    assert out.status == "skipped_no_pair"
    assert eng.dispatcher.enters == []


def test_failed_entry_leaves_state_unarmed(db, store):
    eng = _engine(db, store, _FakeFeeds(100.0, 86.9), dispatcher=_FakeDispatcher(fail=True))

    out = asyncio.run(eng.evaluate("42", BTC))
    assert out.status == "failed"
    assert store.get("42", "BTC").armed is False
    assert eng.notifier.sent == []

    # retried on the next tick
    asyncio.run(eng.evaluate("42", BTC))
    assert len(eng.dispatcher.enters) == 2


def test_failed_exit_keeps_state_armed(db, store):
    store.update("42", "BTC", True)
    eng = _engine(
        db,
        store,
        _FakeFeeds(101.5, 100.0),
        inspector=_FakeInspector(short=True),
        dispatcher=_FakeDispatcher(fail=True),
    )

    out = asyncio.run(eng.evaluate("42", BTC))
    assert out.status == "failed"
    assert store.get("42", "BTC").armed is True


def test_busy_blocks_entry(db, store):
    eng = _engine(db, store, _FakeFeeds(100.0, 86.9), inspector=_FakeInspector(busy=True))
    out = asyncio.run(eng.evaluate("42", BTC))
    assert out.decision.action == Decision.SKIP
    assert eng.dispatcher.enters == []
    assert store.get("42", "BTC").armed is False


def test_concurrent_evaluations_enter_once(db, store):
    eng = _engine(db, store, _FakeFeeds(100.0, 86.9))

    async def both():
        return await asyncio.gather(eng.evaluate("42", BTC), eng.evaluate("42", BTC))

    outs = asyncio.run(both())
    assert sorted(o.decision.action.value for o in outs) == ["enter", "hold"]
    assert len(eng.dispatcher.enters) == 1


def test_manual_close_does_not_touch_armed(db, store, tmp_path):
    store.update("42", "BTC", True)
    eng = _engine(db, store, _FakeFeeds(), tmp_path=tmp_path)

    res = asyncio.run(eng.manual_close("42", "btc"))
    assert res.action == "CLOSE_SHORT"
    assert eng.dispatcher.exits == [("42", "BTC")]
    assert store.get("42", "BTC").armed is True
    assert eng.audit.tail(1)[0]["event_type"] == "MANUAL"


def test_manual_cancel_shares_lock_and_audits(db, store, tmp_path):
    eng = _engine(db, store, _FakeFeeds(), tmp_path=tmp_path)

    res = asyncio.run(eng.cancel_orders("42", "btc"))
    assert res.action == "CANCEL_ORDERS"
    assert eng.dispatcher.cancels == [("42", "BTC")]
    event = eng.audit.tail(1)[0]
    assert (event["event_type"], event["action"]) == ("MANUAL", "CANCEL_ORDERS")


class _LostReplyClient:
    """Order may have filled but neither the reply nor a position lookup came back."""

    def __init__(self):
        self.opens = 0

    def open_short_market(self, symbol, vol, leverage):
        self.opens += 1
        raise OrderOutcomeUnknown("read timeout")

    def open_positions(self, symbol=None):
        raise ExchangeTransientError("positions down")


class _OnePool:
    def __init__(self, client):
        self.client = client

    def for_account(self, acc):
        return self.client


def test_entry_with_unknown_outcome_still_arms(db, store):
    accounts = AccountStore(db)
    accounts.register("42", 1, "WEB1")
    client = _LostReplyClient()

    async def no_sleep(s):
        return None

    dispatcher = TradeDispatcher(accounts, _OnePool(client), max_retries=2, sleep=no_sleep)
    eng = _engine(db, store, _FakeFeeds(100.0, 86.9), dispatcher=dispatcher)

    out = asyncio.run(eng.evaluate("42", BTC))
    assert out.decision.action == Decision.ENTER
    assert out.status == "decided"
    assert client.opens == 1
    assert store.get("42", "BTC").armed is True

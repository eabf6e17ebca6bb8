import asyncio

from spreadwatch.persistence.audit import Audit
from spreadwatch.persistence.watchlist import WatchlistStore
from spreadwatch.runner.models import TickOutcome
from spreadwatch.runner.scheduler import MonitoringScheduler


class _FakeEngine:
    def __init__(self, crash_on=()):
        self.crash_on = set(crash_on)
        self.calls = []

    async def evaluate(self, user_id, entry):
        self.calls.append((user_id, entry.symbol))
        if entry.symbol in self.crash_on:
            raise RuntimeError("boom")
        if not entry.dex_pair_id:
            return TickOutcome(user_id=user_id, symbol=entry.symbol, status="skipped_no_pair")
        return TickOutcome(user_id=user_id, symbol=entry.symbol, status="unavailable")


def _watchlist(db):
    wl = WatchlistStore(db)
    wl.set_enabled("1", True)
    wl.add_symbol("1", "BTC", "pairBtc")
    wl.add_symbol("1", "ETH", "pairEth")
    wl.add_symbol("1", "SOL")
    wl.set_enabled("2", False)
    wl.add_symbol("2", "DOGE", "pairDoge")
    return wl


def test_tick_covers_enabled_users_only(db):
    engine = _FakeEngine()
    sched = MonitoringScheduler(engine, _watchlist(db))

    outcomes = asyncio.run(sched.run_tick())
    assert [c[1] for c in engine.calls] == ["BTC", "ETH", "SOL"]
    assert [o.status for o in outcomes] == ["unavailable", "unavailable", "skipped_no_pair"]
    assert sched.tick_count == 1


def test_one_symbol_failure_does_not_stop_the_tick(db):
    engine = _FakeEngine(crash_on={"BTC"})
    sched = MonitoringScheduler(engine, _watchlist(db))

    outcomes = asyncio.run(sched.run_tick())
    assert len(outcomes) == 3
    assert outcomes[0].status == "error"
    assert "boom" in outcomes[0].error
    assert outcomes[1].symbol == "ETH"
    assert sched.last_error is not None


def test_start_runs_ticks_until_stopped(db, tmp_path):
    audit = Audit(db, str(tmp_path / "audit.jsonl"))
    engine = _FakeEngine()
    sched = MonitoringScheduler(engine, _watchlist(db), interval_seconds=0.01, audit=audit)

    async def scenario():
        assert sched.start() is True
        assert sched.start() is False
        await asyncio.sleep(0.3)
        assert await sched.stop() is True
        assert await sched.stop() is False

    asyncio.run(scenario())
    assert sched.tick_count >= 2
    assert sched.running is False

    with db.connect() as conn:
        row = conn.execute("SELECT * FROM runs WHERE run_id = ?", (sched.run_id,)).fetchone()
    assert row["stopped_at"] is not None


def test_status_reports_last_outcomes(db):
    sched = MonitoringScheduler(_FakeEngine(), _watchlist(db), interval_seconds=5)
    asyncio.run(sched.run_tick())

    st = sched.status()
    assert st["running"] is False
    assert st["interval_seconds"] == 5.0
    assert len(st["last_outcomes"]) == 3

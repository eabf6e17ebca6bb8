from __future__ import annotations

import asyncio
import logging
import traceback
import uuid
from datetime import datetime, timezone
from typing import List, Optional

from spreadwatch.ops.context import cycle_scope, set_run_id
from spreadwatch.persistence.audit import Audit
from spreadwatch.persistence.watchlist import WatchlistStore
from spreadwatch.runner.engine import SpreadEngine
from spreadwatch.runner.models import TickOutcome

log = logging.getLogger("spreadwatch.scheduler")


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class MonitoringScheduler:
    """
    Single cooperative loop: one tick covers every enabled user and every
    monitored symbol, sequentially; the next tick is scheduled only after
    the current one finished (delay, never overlap).

    Constructed once per process and handed to whoever starts/stops it.
    """

    def __init__(
        self,
        engine: SpreadEngine,
        watchlist: WatchlistStore,
        *,
        interval_seconds: float = 15.0,
        audit: Optional[Audit] = None,
    ):
        self.engine = engine
        self.watchlist = watchlist
        self.interval_seconds = float(interval_seconds)
        self.audit = audit

        self.running: bool = False
        self.task: Optional[asyncio.Task] = None
        self._stop_event: Optional[asyncio.Event] = None

        self.run_id: Optional[str] = None
        self.started_at: Optional[str] = None
        self.last_tick_at: Optional[str] = None
        self.tick_count: int = 0
        self.last_error: Optional[str] = None
        self.last_outcomes: List[TickOutcome] = []

    # ---------------- LIFECYCLE ----------------

    def start(self, interval_seconds: Optional[float] = None) -> bool:
        """Start the loop on the running event loop. False if already running."""
        if self.running and self.task and not self.task.done():
            log.info("monitoring already running (run_id=%s)", self.run_id)
            return False

        if interval_seconds is not None:
            self.interval_seconds = float(interval_seconds)

        self.run_id = str(uuid.uuid4())
        set_run_id(self.run_id)
        if self.audit is not None:
            try:
                self.audit.start_run(self.run_id, self.interval_seconds)
            except Exception as e:
                log.error("audit start_run failed: %s", e)

        self.running = True
        self.started_at = _utc_now_iso()
        self.last_tick_at = None
        self.tick_count = 0
        self.last_error = None
        self._stop_event = asyncio.Event()
        self.task = asyncio.create_task(self._loop())

        log.info(
            "monitoring started run_id=%s interval=%ss",
            self.run_id,
            self.interval_seconds,
        )
        return True

    async def stop(self) -> bool:
        if not self.running:
            log.info("monitoring not running")
            return False

        self.running = False
        if self._stop_event is not None:
            self._stop_event.set()

        if self.task and not self.task.done():
            try:
                await asyncio.wait_for(self.task, timeout=self.interval_seconds + 30)
            except asyncio.TimeoutError:
                self.task.cancel()
                try:
                    await self.task
                except asyncio.CancelledError:
                    pass
        self.task = None

        if self.audit is not None and self.run_id:
            try:
                self.audit.stop_run(self.run_id)
            except Exception as e:
                log.error("audit stop_run failed: %s", e)

        log.info("monitoring stopped run_id=%s", self.run_id)
        return True

    async def _loop(self) -> None:
        while self.running:
            try:
                await self.run_tick()
            except Exception:
                # run_tick already isolates pairs; this only guards the loop itself
                self.last_error = traceback.format_exc()
                log.exception("monitoring tick crashed")

            if not self.running:
                break
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.interval_seconds)
            except asyncio.TimeoutError:
                pass

    # ---------------- ONE TICK ----------------

    async def run_tick(self) -> List[TickOutcome]:
        outcomes: List[TickOutcome] = []

        with cycle_scope():
            self.last_tick_at = _utc_now_iso()

            try:
                users = await asyncio.to_thread(self.watchlist.enabled_users)
            except Exception as e:
                self.last_error = f"{type(e).__name__}: {e}"
                log.error("could not list monitored users: %s", e)
                return outcomes

            for user_id in users:
                try:
                    symbols = await asyncio.to_thread(self.watchlist.list_symbols, user_id)
                except Exception as e:
                    log.error("could not list symbols for user=%s: %s", user_id, e)
                    continue

                for entry in symbols:
                    try:
                        outcome = await self.engine.evaluate(user_id, entry)
                    except Exception as e:
                        log.exception(
                            "evaluation crashed for user=%s %s", user_id, entry.symbol
                        )
                        outcome = TickOutcome(
                            user_id=user_id,
                            symbol=entry.symbol,
                            status="error",
                            error=f"{type(e).__name__}: {e}",
                        )
                        self.last_error = outcome.error
                    outcomes.append(outcome)

            self.tick_count += 1
            self.last_outcomes = outcomes
            log.debug("tick %d done: %d evaluations", self.tick_count, len(outcomes))
            return outcomes

    # ---------------- STATUS ----------------

    def status(self) -> dict:
        return {
            "running": self.running,
            "run_id": self.run_id,
            "interval_seconds": self.interval_seconds,
            "started_at": self.started_at,
            "last_tick_at": self.last_tick_at,
            "tick_count": self.tick_count,
            "last_error": self.last_error,
            "last_outcomes": [o.as_dict() for o in self.last_outcomes],
        }

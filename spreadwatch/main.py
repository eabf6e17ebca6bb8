import logging
from dataclasses import dataclass
from typing import Optional

from fastapi import FastAPI, HTTPException, Query
from pydantic import BaseModel, Field

from spreadwatch.core.config import Settings, settings
from spreadwatch.exchange.mexc.client import ClientPool
from spreadwatch.execution.dispatcher import TradeActionError, TradeDispatcher
from spreadwatch.execution.inspector import PositionInspector
from spreadwatch.feeds.dex import DexScreenerClient
from spreadwatch.feeds.prices import PriceFeeds
from spreadwatch.notify.telegram import TelegramNotifier
from spreadwatch.ops.context import configure_logging
from spreadwatch.persistence.accounts import AccountStore
from spreadwatch.persistence.audit import Audit
from spreadwatch.persistence.db import DB
from spreadwatch.persistence.state_store import HysteresisStore
from spreadwatch.persistence.watchlist import WatchlistStore
from spreadwatch.runner.engine import SpreadEngine
from spreadwatch.runner.scheduler import MonitoringScheduler

log = logging.getLogger("spreadwatch.api")

app = FastAPI(title="Spreadwatch")


@dataclass
class Services:
    db: DB
    audit: Audit
    accounts: AccountStore
    watchlist: WatchlistStore
    store: HysteresisStore
    pool: ClientPool
    inspector: PositionInspector
    dispatcher: TradeDispatcher
    engine: SpreadEngine
    scheduler: MonitoringScheduler


_services: Optional[Services] = None


def build_services(cfg: Settings) -> Services:
    db = DB(cfg.DB_PATH)
    audit = Audit(db, cfg.AUDIT_JSONL_PATH)
    accounts = AccountStore(db)
    watchlist = WatchlistStore(db)
    store = HysteresisStore(db)

    pool = ClientPool(cfg.MEXC_BASE_URL, timeout=cfg.EXCHANGE_TIMEOUT_SECONDS)
    dex = DexScreenerClient(cfg.DEX_BASE_URL, chain=cfg.DEX_CHAIN, timeout=cfg.FEED_TIMEOUT_SECONDS)
    feeds = PriceFeeds(pool, dex, quote_asset=cfg.MEXC_QUOTE_ASSET, timeout=cfg.CALL_TIMEOUT_SECONDS)
    inspector = PositionInspector(
        accounts, pool, quote_asset=cfg.MEXC_QUOTE_ASSET, timeout=cfg.CALL_TIMEOUT_SECONDS
    )
    dispatcher = TradeDispatcher(
        accounts,
        pool,
        quote_asset=cfg.MEXC_QUOTE_ASSET,
        timeout=cfg.CALL_TIMEOUT_SECONDS,
        request_delay=cfg.ACCOUNT_REQUEST_DELAY_SECONDS,
        max_retries=cfg.ORDER_MAX_RETRIES,
        retry_backoff=cfg.ORDER_RETRY_BACKOFF_SECONDS,
    )
    notifier = TelegramNotifier(cfg.TELEGRAM_BOT_TOKEN, api_url=cfg.TELEGRAM_API_URL)

    engine = SpreadEngine(
        feeds,
        inspector,
        dispatcher,
        store,
        notifier,
        cfg.thresholds(),
        audit=audit,
    )
    scheduler = MonitoringScheduler(
        engine,
        watchlist,
        interval_seconds=cfg.TICK_INTERVAL_SECONDS,
        audit=audit,
    )
    return Services(
        db, audit, accounts, watchlist, store, pool, inspector, dispatcher, engine, scheduler
    )


def get_services() -> Services:
    global _services
    if _services is None:
        _services = build_services(settings)
    return _services


def reset_services() -> None:
    """Drop the cached wiring (settings changed, tests)."""
    global _services
    _services = None


# ---------------- LIFECYCLE ----------------


@app.on_event("startup")
async def _startup_validate_config():
    """Fail-fast config validation at startup."""
    configure_logging(settings.LOG_LEVEL)
    # Fail-closed: crash the service rather than running with broken thresholds
    warnings = settings.validate_runtime()
    for w in warnings:
        log.warning("[CONFIG WARNING] %s", w)

    if settings.AUTOSTART_MONITORING:
        get_services().scheduler.start()


@app.on_event("shutdown")
async def _shutdown_scheduler():
    if _services is not None and _services.scheduler.running:
        await _services.scheduler.stop()


# ---------------- REQUEST BODIES ----------------


class AccountIn(BaseModel):
    account_number: int = Field(..., ge=1)
    web_uid: str = Field(..., min_length=1)
    proxy: Optional[str] = None
    telegram_username: Optional[str] = None
    account_name: Optional[str] = None
    default_leverage: Optional[int] = Field(None, ge=1)
    default_size: Optional[int] = Field(None, ge=1)


class AccountSettingsIn(BaseModel):
    default_leverage: Optional[int] = Field(None, ge=1)
    default_size: Optional[int] = Field(None, ge=1)
    proxy: Optional[str] = None


class WatchIn(BaseModel):
    symbol: str = Field(..., min_length=1)
    dex_pair_id: Optional[str] = None


# ---------------- ROUTES ----------------


@app.get("/")
def root():
    return {"status": "ok", "service": "spreadwatch"}


@app.get("/config/thresholds")
def config_thresholds():
    thr = get_services().engine.thresholds
    return {
        "entry_threshold_pct": thr.entry_pct,
        "reset_threshold_pct": thr.reset_pct,
        "exit_threshold_pct": thr.exit_pct,
        "tick_interval_seconds": get_services().scheduler.interval_seconds,
    }


@app.post("/monitoring/start")
async def monitoring_start(interval_seconds: Optional[float] = Query(None, gt=0)):
    scheduler = get_services().scheduler
    started = scheduler.start(interval_seconds)
    return {"status": "started" if started else "already_running", **scheduler.status()}


@app.post("/monitoring/stop")
async def monitoring_stop():
    scheduler = get_services().scheduler
    stopped = await scheduler.stop()
    return {"status": "stopped" if stopped else "not_running", **scheduler.status()}


@app.get("/monitoring/status")
def monitoring_status():
    return get_services().scheduler.status()


@app.post("/monitoring/tick")
async def monitoring_tick():
    outcomes = await get_services().scheduler.run_tick()
    return {"count": len(outcomes), "outcomes": [o.as_dict() for o in outcomes]}


@app.post("/users/{user_id}/monitoring")
def user_monitoring(user_id: str, enabled: bool = True):
    svc = get_services()
    svc.watchlist.set_enabled(user_id, enabled)
    return {"user_id": user_id, "enabled": svc.watchlist.is_enabled(user_id)}


@app.get("/users/{user_id}/watchlist")
def watchlist_get(user_id: str):
    svc = get_services()
    items = svc.watchlist.list_symbols(user_id)
    return {
        "user_id": user_id,
        "enabled": svc.watchlist.is_enabled(user_id),
        "symbols": [{"symbol": s.symbol, "dex_pair_id": s.dex_pair_id} for s in items],
    }


@app.post("/users/{user_id}/watchlist")
def watchlist_add(user_id: str, body: WatchIn):
    try:
        item = get_services().watchlist.add_symbol(user_id, body.symbol, body.dex_pair_id)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return {"symbol": item.symbol, "dex_pair_id": item.dex_pair_id}


@app.delete("/users/{user_id}/watchlist/{symbol}")
def watchlist_remove(user_id: str, symbol: str):
    removed = get_services().watchlist.remove_symbol(user_id, symbol)
    if not removed:
        raise HTTPException(status_code=404, detail=f"{symbol} is not monitored")
    return {"removed": symbol.upper()}


@app.get("/users/{user_id}/accounts")
def accounts_list(user_id: str):
    accounts = get_services().accounts.list_accounts(user_id)
    return {"count": len(accounts), "accounts": [a.public_dict() for a in accounts]}


@app.post("/users/{user_id}/accounts")
def accounts_register(user_id: str, body: AccountIn):
    try:
        acc = get_services().accounts.register(
            user_id,
            body.account_number,
            body.web_uid,
            proxy=body.proxy,
            telegram_username=body.telegram_username,
            account_name=body.account_name,
            default_leverage=body.default_leverage or settings.DEFAULT_LEVERAGE,
            default_size=body.default_size or settings.DEFAULT_SIZE,
        )
    except ValueError as e:
        raise HTTPException(status_code=409, detail=str(e))
    return acc.public_dict()


@app.post("/users/{user_id}/accounts/{account_number}/active")
def accounts_set_active(user_id: str, account_number: int, active: bool = True):
    if not get_services().accounts.set_active(user_id, account_number, active):
        raise HTTPException(status_code=404, detail=f"account {account_number} not found")
    return {"account_number": account_number, "is_active": active}


@app.post("/users/{user_id}/accounts/{account_number}/settings")
def accounts_update_settings(user_id: str, account_number: int, body: AccountSettingsIn):
    try:
        acc = get_services().accounts.update_settings(
            user_id,
            account_number,
            default_leverage=body.default_leverage,
            default_size=body.default_size,
            proxy=body.proxy,
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    if acc is None:
        raise HTTPException(status_code=404, detail=f"account {account_number} not found")
    return acc.public_dict()


@app.get("/users/{user_id}/state")
def user_state(user_id: str):
    rows = get_services().store.list_for_user(user_id)
    return {
        "user_id": user_id,
        "states": [
            {
                "symbol": s.symbol,
                "armed": s.armed,
                "last_exchange_price": s.last_exchange_price,
                "last_reference_price": s.last_reference_price,
                "last_spread_pct": s.last_spread_pct,
                "last_action_at": s.last_action_at,
            }
            for s in rows
        ],
    }


@app.post("/users/{user_id}/close")
async def user_close(user_id: str, symbol: str = Query(..., min_length=1)):
    try:
        result = await get_services().engine.manual_close(user_id, symbol)
    except TradeActionError as e:
        raise HTTPException(status_code=502, detail=str(e))
    return result.as_dict()


@app.post("/users/{user_id}/orders/cancel")
async def user_cancel_orders(user_id: str, symbol: str = Query(..., min_length=1)):
    try:
        result = await get_services().engine.cancel_orders(user_id, symbol)
    except TradeActionError as e:
        raise HTTPException(status_code=502, detail=str(e))
    return result.as_dict()


@app.get("/users/{user_id}/balance")
async def user_balance(user_id: str):
    accounts = await get_services().inspector.account_balances(user_id)
    return {"user_id": user_id, "accounts": accounts}


@app.get("/users/{user_id}/positions")
async def user_positions(user_id: str):
    try:
        positions = await get_services().inspector.list_positions(user_id)
    except Exception as e:
        raise HTTPException(status_code=502, detail=f"position lookup failed: {e}")
    return {
        "user_id": user_id,
        "count": len(positions),
        "positions": [
            {
                "account_number": p.account_number,
                "symbol": p.symbol,
                "side": p.side,
                "quantity": p.quantity,
            }
            for p in positions
        ],
    }


@app.get("/users/{user_id}/orders")
async def user_orders(user_id: str):
    try:
        orders = await get_services().inspector.list_orders(user_id)
    except Exception as e:
        raise HTTPException(status_code=502, detail=f"order lookup failed: {e}")
    return {
        "user_id": user_id,
        "count": len(orders),
        "orders": [
            {
                "account_number": o.account_number,
                "symbol": o.symbol,
                "order_id": o.order_id,
                "side": o.side,
            }
            for o in orders
        ],
    }


@app.get("/logs/events/tail")
def logs_events_tail(limit: int = 50, user_id: Optional[str] = None):
    events = get_services().audit.tail(limit, user_id=user_id)
    return {"count": len(events), "events": events}

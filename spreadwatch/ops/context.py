from __future__ import annotations

import logging
import uuid
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Iterator, Optional

# Context-local (safe for async & threads); asyncio tasks and to_thread workers copy it
_run_id: ContextVar[Optional[str]] = ContextVar("spreadwatch_run_id", default=None)
_cycle_id: ContextVar[Optional[str]] = ContextVar("spreadwatch_cycle_id", default=None)


def set_run_id(run_id: Optional[str]) -> None:
    _run_id.set(run_id)


def get_run_id() -> Optional[str]:
    return _run_id.get()


def get_cycle_id() -> Optional[str]:
    return _cycle_id.get()


@contextmanager
def cycle_scope(cycle_id: Optional[str] = None) -> Iterator[str]:
    """Tag everything logged/audited inside one monitoring tick with a cycle id."""
    cid = cycle_id or str(uuid.uuid4())
    token = _cycle_id.set(cid)
    try:
        yield cid
    finally:
        _cycle_id.reset(token)


class ContextFilter(logging.Filter):
    """Adds `run_id` / `cycle_id` to every record so the log format can print them."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.run_id = (get_run_id() or "-")[:8]
        record.cycle_id = (get_cycle_id() or "-")[:8]
        return True


LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s [run=%(run_id)s cycle=%(cycle_id)s] %(message)s"


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(level=getattr(logging, level.upper(), logging.INFO), format=LOG_FORMAT)
    for handler in logging.getLogger().handlers:
        if not any(isinstance(f, ContextFilter) for f in handler.filters):
            handler.addFilter(ContextFilter())

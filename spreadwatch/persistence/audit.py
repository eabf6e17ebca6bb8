from __future__ import annotations

import json
import logging
import sqlite3
from pathlib import Path
from typing import Any, Dict, List, Optional

from spreadwatch.ops.context import get_cycle_id, get_run_id
from spreadwatch.persistence.db import DB, utc_now_iso

log = logging.getLogger("spreadwatch.audit")

MAX_TAIL = 500


def _row_to_event(r: sqlite3.Row) -> Dict[str, Any]:
    out = {k: r[k] for k in r.keys() if k != "details_json"}
    out["details"] = json.loads(r["details_json"] or "{}")
    return out


class Audit:
    """
    Decision/trade trail. The `events` table is authoritative; every record
    is also appended to a JSONL file so it can be tailed without the API.
    """

    def __init__(self, db: DB, jsonl_path: str = "logs/spread_audit.jsonl"):
        self.db = db
        self.jsonl_path = Path(jsonl_path)

    # ---------------- RUNS ----------------

    def start_run(self, run_id: str, interval_seconds: float) -> None:
        started = utc_now_iso()
        with self.db.connect() as conn:
            conn.execute(
                "INSERT OR REPLACE INTO runs(run_id, started_at, interval_seconds) VALUES (?,?,?)",
                (run_id, started, float(interval_seconds)),
            )
        self._append_jsonl(
            {
                "timestamp_utc": started,
                "event_type": "RUN_START",
                "run_id": run_id,
                "details": {"interval_seconds": interval_seconds},
            }
        )

    def stop_run(self, run_id: str) -> None:
        stopped = utc_now_iso()
        with self.db.connect() as conn:
            conn.execute("UPDATE runs SET stopped_at = ? WHERE run_id = ?", (stopped, run_id))
        self._append_jsonl({"timestamp_utc": stopped, "event_type": "RUN_STOP", "run_id": run_id})

    # ---------------- EVENTS ----------------

    def event(
        self,
        event_type: str,
        action: Optional[str] = None,
        user_id: Optional[str] = None,
        symbol: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        """Record one event. Never raises: audit trouble must not stop trading."""
        record = {
            "timestamp_utc": utc_now_iso(),
            "run_id": get_run_id(),
            "cycle_id": get_cycle_id(),
            "user_id": user_id,
            "symbol": symbol,
            "event_type": event_type,
            "action": action,
            "details": details or {},
        }

        try:
            with self.db.connect() as conn:
                conn.execute(
                    """
                    INSERT INTO events(timestamp_utc, run_id, cycle_id, user_id, symbol,
                                       event_type, action, details_json)
                    VALUES (:timestamp_utc, :run_id, :cycle_id, :user_id, :symbol,
                            :event_type, :action, :details_json)
                    """,
                    {
                        **record,
                        "details_json": json.dumps(record["details"], ensure_ascii=False, default=str),
                    },
                )
        except Exception as e:
            log.error("audit db write failed (%s/%s): %s", event_type, action, e)

        self._append_jsonl(record)

    def tail(self, limit: int = 50, user_id: Optional[str] = None) -> List[Dict[str, Any]]:
        """Most recent events, oldest first."""
        limit = max(1, min(int(limit), MAX_TAIL))
        where, params = "", []
        if user_id is not None:
            where, params = "WHERE user_id = ?", [str(user_id)]

        with self.db.connect() as conn:
            rows = conn.execute(
                f"SELECT * FROM events {where} ORDER BY id DESC LIMIT ?",
                (*params, limit),
            ).fetchall()
        return [_row_to_event(r) for r in reversed(rows)]

    def _append_jsonl(self, obj: Dict[str, Any]) -> None:
        try:
            self.jsonl_path.parent.mkdir(parents=True, exist_ok=True)
            with self.jsonl_path.open("a", encoding="utf-8") as f:
                f.write(json.dumps(obj, ensure_ascii=False, default=str) + "\n")
        except OSError as e:
            log.warning("audit jsonl write failed (%s): %s", self.jsonl_path, e)

"""
Telegram notification sink.

Only successful ENTER / EXIT transitions reach the user; everything else
stays in the logs.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, Optional

import requests

log = logging.getLogger("spreadwatch.notify")


def build_enter_message(
    symbol: str, exchange_price: float, reference_price: float, spread_pct: float
) -> str:
    return (
        "🔻 *Auto SHORT on spread*\n\n"
        f"📍 Coin: {symbol}\n"
        f"💵 MEXC price: {exchange_price:.8f}\n"
        f"💵 DEX price: {reference_price:.8f}\n"
        f"📊 Spread: {spread_pct:.2f}%"
    )


def build_exit_message(symbol: str, spread_pct: float, exit_threshold_pct: float) -> str:
    return (
        "✅ *Auto close SHORT on spread*\n\n"
        f"📍 Coin: {symbol}\n"
        f"📊 Spread: {spread_pct:.2f}% (< {exit_threshold_pct:g}%)\n"
        "✅ Short closed on all active accounts"
    )


class TelegramNotifier:
    def __init__(self, bot_token: str, api_url: str = "https://api.telegram.org", timeout: float = 10.0):
        self.bot_token = (bot_token or "").strip()
        self.api_url = api_url.rstrip("/")
        self.timeout = float(timeout)

    @property
    def enabled(self) -> bool:
        return bool(self.bot_token)

    def _post(self, payload: Dict[str, Any]) -> requests.Response:
        return requests.post(
            f"{self.api_url}/bot{self.bot_token}/sendMessage",
            json=payload,
            timeout=self.timeout,
        )

    def send_sync(self, chat_id: str, text: str, parse_mode: Optional[str] = "Markdown") -> bool:
        """Send a message; returns False on any failure instead of raising."""
        if not self.enabled or not str(chat_id or "").strip():
            log.info("telegram disabled, message for %s: %s", chat_id, text)
            return False

        payload: Dict[str, Any] = {"chat_id": str(chat_id), "text": text}
        if parse_mode:
            payload["parse_mode"] = parse_mode

        try:
            response = self._post(payload)
            if response.status_code == 200:
                return True

            log.warning(
                "Telegram notification failed (%s): %s",
                response.status_code,
                response.text,
            )
            if (
                response.status_code == 400
                and "can't parse entities" in response.text.lower()
                and parse_mode
            ):
                fallback = self._post({"chat_id": str(chat_id), "text": text})
                if fallback.status_code == 200:
                    return True
                log.warning(
                    "Telegram fallback notification failed (%s): %s",
                    fallback.status_code,
                    fallback.text,
                )
        except requests.RequestException as exc:
            log.error("Error sending Telegram message: %s", exc)
        return False

    async def send(self, user_id: str, text: str) -> bool:
        # best-effort: never lets a transport problem reach trade logic
        try:
            return await asyncio.to_thread(self.send_sync, user_id, text)
        except Exception as exc:
            log.error("Telegram send crashed for %s: %s", user_id, exc)
            return False

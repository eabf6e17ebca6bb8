# spreadwatch/core/config.py
from __future__ import annotations

import logging
from typing import Any, List

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from spreadwatch.policy.spread_policy import SpreadThresholds

log = logging.getLogger("spreadwatch.config")


def _parse_bool(v: Any) -> bool:
    """
    Accepts:
      - bool
      - "1"/"0", "true"/"false", "yes"/"no", "on"/"off"
    """
    if isinstance(v, bool):
        return v
    if v is None:
        return False
    return str(v).strip().lower() in {"1", "true", "yes", "on"}


class Settings(BaseSettings):
    """Runtime configuration loaded from .env / environment variables."""

    # enable_decoding=False keeps pydantic-settings from json-decoding raw env values.
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
        enable_decoding=False,
    )

    # --- Exchange (MEXC contract API) ---
    MEXC_BASE_URL: str = "https://contract.mexc.com"
    MEXC_QUOTE_ASSET: str = "USDT"
    EXCHANGE_TIMEOUT_SECONDS: float = 10.0

    # --- Reference feed (DexScreener) ---
    DEX_BASE_URL: str = "https://api.dexscreener.com"
    DEX_CHAIN: str = "solana"
    FEED_TIMEOUT_SECONDS: float = 8.0

    # --- Spread thresholds (percent) ---
    ENTRY_THRESHOLD_PCT: float = 13.0
    RESET_THRESHOLD_PCT: float = 7.0
    EXIT_THRESHOLD_PCT: float = 2.0

    # --- Scheduler ---
    TICK_INTERVAL_SECONDS: float = 15.0
    CALL_TIMEOUT_SECONDS: float = 8.0
    AUTOSTART_MONITORING: bool = False

    # --- Dispatcher pacing / retries ---
    ACCOUNT_REQUEST_DELAY_SECONDS: float = 0.5
    ORDER_MAX_RETRIES: int = 2
    ORDER_RETRY_BACKOFF_SECONDS: float = 1.0

    # --- Account defaults ---
    DEFAULT_LEVERAGE: int = 20
    DEFAULT_SIZE: int = 10

    # --- Notifications ---
    TELEGRAM_BOT_TOKEN: str = ""
    TELEGRAM_API_URL: str = "https://api.telegram.org"

    # --- Storage / logs ---
    DB_PATH: str = "data/spreadwatch.db"
    AUDIT_JSONL_PATH: str = "logs/spread_audit.jsonl"
    LOG_LEVEL: str = "INFO"

    @field_validator("AUTOSTART_MONITORING", mode="before")
    @classmethod
    def parse_autostart(cls, v: Any) -> bool:
        return _parse_bool(v)

    def model_post_init(self, __context: Any) -> None:
        self.MEXC_BASE_URL = (self.MEXC_BASE_URL or "").rstrip("/")
        self.DEX_BASE_URL = (self.DEX_BASE_URL or "").rstrip("/")
        self.TELEGRAM_API_URL = (self.TELEGRAM_API_URL or "").rstrip("/")
        self.MEXC_QUOTE_ASSET = (self.MEXC_QUOTE_ASSET or "USDT").upper().strip()
        self.DEX_CHAIN = (self.DEX_CHAIN or "solana").lower().strip()
        self.LOG_LEVEL = (self.LOG_LEVEL or "INFO").upper().strip()

    def thresholds(self) -> SpreadThresholds:
        return SpreadThresholds(
            entry_pct=float(self.ENTRY_THRESHOLD_PCT),
            reset_pct=float(self.RESET_THRESHOLD_PCT),
            exit_pct=float(self.EXIT_THRESHOLD_PCT),
        )

    def validate_runtime(self) -> List[str]:
        """
        Fail-fast validation. Returns warnings (non-fatal).
        Raises ValueError for fatal misconfiguration.
        """
        errors: List[str] = []
        warnings: List[str] = []

        # Threshold sanity
        for name in ("ENTRY_THRESHOLD_PCT", "RESET_THRESHOLD_PCT", "EXIT_THRESHOLD_PCT"):
            if getattr(self, name) <= 0:
                errors.append(f"{name} must be > 0.")

        # Hysteresis ordering: reversing these silently breaks the state machine
        if self.EXIT_THRESHOLD_PCT > self.RESET_THRESHOLD_PCT:
            errors.append(
                f"EXIT_THRESHOLD_PCT ({self.EXIT_THRESHOLD_PCT}) must be <= "
                f"RESET_THRESHOLD_PCT ({self.RESET_THRESHOLD_PCT})."
            )
        if self.RESET_THRESHOLD_PCT > self.ENTRY_THRESHOLD_PCT:
            errors.append(
                f"RESET_THRESHOLD_PCT ({self.RESET_THRESHOLD_PCT}) must be <= "
                f"ENTRY_THRESHOLD_PCT ({self.ENTRY_THRESHOLD_PCT})."
            )

        # Timing sanity
        if self.TICK_INTERVAL_SECONDS <= 0:
            errors.append("TICK_INTERVAL_SECONDS must be > 0.")
        if self.CALL_TIMEOUT_SECONDS <= 0:
            errors.append("CALL_TIMEOUT_SECONDS must be > 0.")
        if self.EXCHANGE_TIMEOUT_SECONDS <= 0:
            errors.append("EXCHANGE_TIMEOUT_SECONDS must be > 0.")
        if self.FEED_TIMEOUT_SECONDS <= 0:
            errors.append("FEED_TIMEOUT_SECONDS must be > 0.")

        # Dispatcher pacing
        if self.ORDER_MAX_RETRIES < 0:
            errors.append("ORDER_MAX_RETRIES must be >= 0.")
        if self.ORDER_RETRY_BACKOFF_SECONDS < 0:
            errors.append("ORDER_RETRY_BACKOFF_SECONDS must be >= 0.")
        if self.ACCOUNT_REQUEST_DELAY_SECONDS < 0:
            errors.append("ACCOUNT_REQUEST_DELAY_SECONDS must be >= 0.")

        # Account defaults
        if self.DEFAULT_LEVERAGE < 1:
            errors.append("DEFAULT_LEVERAGE must be >= 1.")
        if self.DEFAULT_SIZE < 1:
            errors.append("DEFAULT_SIZE must be >= 1.")

        if not self.TELEGRAM_BOT_TOKEN:
            warnings.append(
                "TELEGRAM_BOT_TOKEN is empty. Trade notifications will only be logged."
            )

        if 0 < self.TICK_INTERVAL_SECONDS <= self.CALL_TIMEOUT_SECONDS:
            warnings.append(
                f"CALL_TIMEOUT_SECONDS ({self.CALL_TIMEOUT_SECONDS}) is not below "
                f"TICK_INTERVAL_SECONDS ({self.TICK_INTERVAL_SECONDS}); "
                "a stalled feed can stretch a tick past the interval."
            )

        if errors:
            msg = "Config validation failed:\n" + "\n".join([f"- {e}" for e in errors])
            raise ValueError(msg)

        return warnings


# Pydantic v2 + postponed annotations safety
Settings.model_rebuild()
settings = Settings()

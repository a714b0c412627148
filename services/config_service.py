from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel
from pydantic_settings import BaseSettings, SettingsConfigDict

from data.store import BaseStore


GatewayName = Literal["paper", "binance", "http"]


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    DATABASE_PATH: str = "./dca.db"
    DATABASE_URL: str = ""
    GATEWAY: GatewayName = "paper"
    GATEWAY_URL: str = ""
    BINANCE_API_KEY: str = ""
    BINANCE_API_SECRET: str = ""
    QUOTE_ASSET: str = "USDT"
    GATEWAY_TIMEOUT_SECONDS: float = 10.0
    RETRY_MAX_ATTEMPTS: int = 3
    RETRY_BACKOFF_MIN_SECONDS: float = 0.5
    RETRY_BACKOFF_MAX_SECONDS: float = 5.0
    RETRY_BACKOFF_MULTIPLIER: float = 1.0
    TICK_SECONDS: int = 60
    MAX_PARALLEL_EXECUTIONS: int = 8
    SIGNAL_INTERVAL: str = "1h"
    SIGNAL_CANDLE_LIMIT: int = 250
    SIGNAL_VALIDITY_INTERVALS: int = 1
    DEFAULT_MAX_SLIPPAGE_BPS: int = 100
    MAX_SLIPPAGE_CAP_BPS: int = 1000
    WEEKEND_BOOST_MULTIPLIER: float = 1.5
    WEEKEND_BOOST_DAYS: str = "5,6"
    PAPER_SLIPPAGE_BPS: float = 2.0
    PAPER_FEE_BPS: float = 1.0
    CREDENTIAL_ENCRYPTION_KEY: str = ""
    LOG_LEVEL: str = "INFO"
    LOG_FILE: str = ""
    NOTIFY_WEBHOOK_URL: str = ""

    def weekend_boost_days(self) -> frozenset[int]:
        return frozenset(int(d) for d in self.WEEKEND_BOOST_DAYS.split(",") if d.strip())


class RuntimeConfig(BaseModel):
    gateway: GatewayName
    max_slippage_bps: int
    weekend_boost_multiplier: float


OWNER_KEYS = {"max_slippage_bps", "weekend_boost_multiplier", "gateway"}


class ConfigService:
    """Process settings with per-owner overrides layered on top."""

    def __init__(self, store: BaseStore, base: Settings) -> None:
        self.store = store
        self.base = base

    def load(self, owner: str) -> RuntimeConfig:
        def _get(key: str, default: Any) -> Any:
            return self.store.get_setting(owner, key, default)

        return RuntimeConfig(
            gateway=_get("gateway", self.base.GATEWAY),
            max_slippage_bps=int(_get("max_slippage_bps", self.base.DEFAULT_MAX_SLIPPAGE_BPS)),
            weekend_boost_multiplier=float(_get("weekend_boost_multiplier", self.base.WEEKEND_BOOST_MULTIPLIER)),
        )

    def update_for_owner(self, owner: str, key: str, value: Any) -> RuntimeConfig:
        if key not in OWNER_KEYS:
            raise ValueError(f"Unknown owner setting: {key}")
        self.store.ensure_owner(owner)
        self.store.set_setting(owner, key, value)
        return self.load(owner)

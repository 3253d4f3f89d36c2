from __future__ import annotations

from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, model_validator

CANONICAL_FILTERS: tuple[str, ...] = (
    "threshold_cross",
    "peak_and_fall",
    "calc_ref",
    "interim_low",
)


class RangeWindowConfig(BaseModel):
    base: float
    width: float
    floor: float
    step: float = 5.0
    target_premium: float = 200.0

    @model_validator(mode="after")
    def validate_window(self) -> "RangeWindowConfig":
        if self.width <= 0:
            raise ValueError("range width must be > 0")
        if self.step <= 0:
            raise ValueError("range step must be > 0")
        if self.floor > self.base:
            raise ValueError("range floor must be <= base")
        if self.target_premium <= 0:
            raise ValueError("target_premium must be > 0")
        return self


class RangeProfilesConfig(BaseModel):
    expiry_day: RangeWindowConfig = Field(
        default_factory=lambda: RangeWindowConfig(base=85, width=50, floor=75, target_premium=100)
    )
    pre_expiry_day: RangeWindowConfig = Field(
        default_factory=lambda: RangeWindowConfig(base=165, width=35, floor=150, target_premium=200)
    )
    normal_day: RangeWindowConfig = Field(
        default_factory=lambda: RangeWindowConfig(base=170, width=30, floor=150, target_premium=200)
    )


class StrategyParams(BaseModel):
    target: float = 7.0
    stoploss: float = -100.0
    quantity: int = 75
    enable_trading: bool = False
    peak_threshold: float = 3.0
    peak_fall_threshold: float = 3.0
    calc_ref_fraction: float = 0.5
    recovery_threshold: float = 3.0
    interim_low_disabled: bool = False
    strict_pipeline: bool = False
    filters: list[str] = Field(default_factory=lambda: list(CANONICAL_FILTERS))
    entry_selection: str = "closest_premium"
    entry_premium: float = 200.0
    partial_exit_upper: float = 24.0
    partial_exit_lower: float = -36.0
    partial_exit_mtm_ceiling: float | None = -10.0
    buy_back_enabled: bool = True
    buy_back_trigger: float = -12.0
    buy_back_stoploss: float = -100.0
    buy_back_premium: float = 200.0
    max_buy_backs: int = 1
    expiry_weekday: int = 3
    live_cycles_limit: int | None = None

    @model_validator(mode="after")
    def validate_values(self) -> "StrategyParams":
        if self.quantity <= 0:
            raise ValueError("quantity must be > 0")
        if self.stoploss >= self.target:
            raise ValueError("stoploss must be < target")
        if self.peak_threshold <= 0:
            raise ValueError("peak_threshold must be > 0")
        if self.peak_fall_threshold <= 0:
            raise ValueError("peak_fall_threshold must be > 0")
        if not (0 < self.calc_ref_fraction <= 1.0):
            raise ValueError("calc_ref_fraction must be in (0,1]")
        if self.recovery_threshold <= 0:
            raise ValueError("recovery_threshold must be > 0")
        if self.partial_exit_upper <= 0:
            raise ValueError("partial_exit_upper must be > 0")
        if self.partial_exit_lower >= 0:
            raise ValueError("partial_exit_lower must be < 0")
        if self.buy_back_trigger >= 0:
            raise ValueError("buy_back_trigger must be < 0")
        if self.buy_back_stoploss >= 0:
            raise ValueError("buy_back_stoploss must be < 0")
        if self.buy_back_premium <= 0 or self.entry_premium <= 0:
            raise ValueError("buy_back_premium and entry_premium must be > 0")
        if self.max_buy_backs < 0:
            raise ValueError("max_buy_backs must be >= 0")
        if not (0 <= self.expiry_weekday <= 6):
            raise ValueError("expiry_weekday must be in [0,6] (0=Monday)")
        if self.live_cycles_limit is not None and self.live_cycles_limit < 0:
            raise ValueError("live_cycles_limit must be >= 0 when provided")
        selection = str(self.entry_selection).strip().lower()
        if selection not in {"pair", "closest_premium"}:
            raise ValueError("entry_selection must be pair or closest_premium")
        self.entry_selection = selection

        filters = [str(item).strip().lower() for item in self.filters if str(item).strip()]
        if not filters:
            raise ValueError("filters must enable at least threshold_cross")
        if tuple(filters) != CANONICAL_FILTERS[: len(filters)]:
            raise ValueError(
                "filters must be an ordered prefix of: " + ", ".join(CANONICAL_FILTERS)
            )
        self.filters = filters
        return self

    @property
    def active_filters(self) -> list[str]:
        if self.interim_low_disabled:
            return [name for name in self.filters if name != "interim_low"]
        return list(self.filters)


class EngineConfig(BaseModel):
    stall_after_batches: int = 600
    snapshot_every_batches: int = 10

    @model_validator(mode="after")
    def validate_values(self) -> "EngineConfig":
        if self.stall_after_batches <= 0:
            raise ValueError("stall_after_batches must be > 0")
        if self.snapshot_every_batches <= 0:
            raise ValueError("snapshot_every_batches must be > 0")
        return self


class KiteConfig(BaseModel):
    base_url: str = "https://api.kite.trade"
    exchange: str = "NFO"
    product: str = "MIS"
    order_type: str = "MARKET"
    variety: str = "regular"
    timeout_seconds: int = 10
    rate_limit_rps: float = 3.0
    rate_limit_burst: int = 5
    request_max_attempts: int = 4
    backoff_base_seconds: float = 0.5
    backoff_max_seconds: float = 10.0
    fill_poll_attempts: int = 5
    fill_poll_interval_seconds: float = 1.0
    fill_workers: int = 4

    @model_validator(mode="after")
    def validate_values(self) -> "KiteConfig":
        self.exchange = self.exchange.strip().upper()
        self.product = self.product.strip().upper()
        self.order_type = self.order_type.strip().upper()
        if self.order_type not in {"MARKET", "LIMIT"}:
            raise ValueError("kite.order_type must be MARKET or LIMIT")
        if self.fill_poll_attempts <= 0:
            raise ValueError("kite.fill_poll_attempts must be > 0")
        if self.fill_poll_interval_seconds < 0:
            raise ValueError("kite.fill_poll_interval_seconds must be >= 0")
        if self.fill_workers <= 0:
            raise ValueError("kite.fill_workers must be > 0")
        return self


class FeedConfig(BaseModel):
    instruments: list[str] = Field(default_factory=list)
    loop_seconds: float = 1.0
    replay_file: str | None = None

    @model_validator(mode="after")
    def normalize_instruments(self) -> "FeedConfig":
        normalized: list[str] = []
        seen: set[str] = set()
        for item in self.instruments:
            key = str(item).strip().upper()
            if not key or key in seen:
                continue
            seen.add(key)
            normalized.append(key)
        self.instruments = normalized
        if self.loop_seconds < 0:
            raise ValueError("feed.loop_seconds must be >= 0")
        return self


class MonitoringConfig(BaseModel):
    dashboard_path: str = "runtime_dashboard.json"
    dashboard_interval_seconds: int = 5
    alerts_enabled: bool = True
    alert_cooldown_seconds: int = 30
    event_buffer_size: int = 500


class SessionConfig(BaseModel):
    user_id: str
    strategy: str = "MTM"
    params: dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="after")
    def normalize(self) -> "SessionConfig":
        self.user_id = self.user_id.strip()
        if not self.user_id:
            raise ValueError("session user_id must not be empty")
        self.strategy = self.strategy.strip().upper().replace("-", "_")
        return self


class AppConfig(BaseModel):
    timezone: str = "Asia/Kolkata"
    ranges: RangeProfilesConfig = Field(default_factory=RangeProfilesConfig)
    engine: EngineConfig = Field(default_factory=EngineConfig)
    kite: KiteConfig = Field(default_factory=KiteConfig)
    feed: FeedConfig = Field(default_factory=FeedConfig)
    monitoring: MonitoringConfig = Field(default_factory=MonitoringConfig)
    sessions: list[SessionConfig] = Field(
        default_factory=lambda: [SessionConfig(user_id="default", strategy="MTM")]
    )

    @model_validator(mode="after")
    def dedupe_sessions(self) -> "AppConfig":
        seen: set[str] = set()
        for session in self.sessions:
            if session.user_id in seen:
                raise ValueError(f"duplicate session user_id '{session.user_id}'")
            seen.add(session.user_id)
        return self


def load_config(path: str | Path) -> AppConfig:
    config_path = Path(path)
    with config_path.open("r", encoding="utf-8") as file:
        raw: dict[str, Any] = yaml.safe_load(file) or {}
    return AppConfig.model_validate(raw)

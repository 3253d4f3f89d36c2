from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Iterable

LOGGER = logging.getLogger(__name__)

CALL = "CE"
PUT = "PE"


@dataclass(slots=True, frozen=True)
class Tick:
    token: int
    symbol: str
    last_price: float
    timestamp: datetime | None = None


def option_type(symbol: str | None) -> str | None:
    if not symbol:
        return None
    normalized = symbol.strip().upper()
    if normalized.endswith(CALL):
        return CALL
    if normalized.endswith(PUT):
        return PUT
    return None


def _parse_timestamp(raw: Any) -> datetime | None:
    if raw is None or raw == "":
        return None
    if isinstance(raw, datetime):
        return raw
    try:
        return datetime.fromisoformat(str(raw).replace("Z", "+00:00"))
    except ValueError:
        return None


def tick_from_payload(item: dict[str, Any]) -> Tick | None:
    token_raw = item.get("instrument_token", item.get("token"))
    symbol = item.get("tradingsymbol") or item.get("symbol")
    price_raw = item.get("last_price", item.get("lastPrice"))
    if token_raw is None or not symbol or price_raw is None:
        return None
    try:
        token = int(token_raw)
        price = float(price_raw)
    except (TypeError, ValueError):
        return None
    if price <= 0:
        return None
    timestamp = _parse_timestamp(
        item.get("exchange_timestamp") or item.get("last_trade_time") or item.get("timestamp")
    )
    return Tick(token=token, symbol=str(symbol).strip().upper(), last_price=price, timestamp=timestamp)


def ticks_from_payload(items: Iterable[dict[str, Any]]) -> list[Tick]:
    ticks: list[Tick] = []
    dropped = 0
    for item in items:
        tick = tick_from_payload(item)
        if tick is None:
            dropped += 1
            continue
        ticks.append(tick)
    if dropped:
        LOGGER.debug("Dropped %d malformed tick rows", dropped)
    return ticks


def latest_by_token(ticks: Iterable[Tick]) -> dict[int, Tick]:
    """Collapse a batch to one tick per token; later rows win."""
    latest: dict[int, Tick] = {}
    for tick in ticks:
        latest[tick.token] = tick
    return latest

from __future__ import annotations

from datetime import datetime, timezone
from typing import Iterable
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from optbot.config import RangeProfilesConfig, RangeWindowConfig

MARKET_TIMEZONE = "Asia/Kolkata"


def _get_zone(timezone_name: str) -> ZoneInfo:
    try:
        return ZoneInfo(timezone_name)
    except ZoneInfoNotFoundError as exc:
        raise RuntimeError(
            f"Timezone '{timezone_name}' is not available. "
            "Install tzdata in your environment: pip install tzdata"
        ) from exc


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def to_timezone(dt: datetime, timezone_name: str) -> datetime:
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(_get_zone(timezone_name))


def day_kind(weekday: int, expiry_weekday: int) -> str:
    """Classify a weekday (0=Monday) relative to the weekly expiry day."""
    if weekday == expiry_weekday:
        return "expiry_day"
    if weekday == (expiry_weekday - 1) % 7:
        return "pre_expiry_day"
    return "normal_day"


def range_window_for(
    now: datetime,
    *,
    expiry_weekday: int,
    ranges: RangeProfilesConfig,
    timezone_name: str = MARKET_TIMEZONE,
) -> RangeWindowConfig:
    local = to_timezone(now, timezone_name)
    kind = day_kind(local.weekday(), expiry_weekday)
    return getattr(ranges, kind)


def latest_timestamp(
    stamps: Iterable[datetime | None],
    timezone_name: str = MARKET_TIMEZONE,
) -> datetime | None:
    """Latest of ``stamps``; naive values are read as market-local time."""
    zone = _get_zone(timezone_name)
    aware = [stamp if stamp.tzinfo is not None else stamp.replace(tzinfo=zone) for stamp in stamps if stamp is not None]
    return max(aware) if aware else None

from __future__ import annotations

from datetime import timezone
from pathlib import Path
from typing import Any

import pytest

from optbot.data.kite_client import KiteAPIError, KiteAuthError
from optbot.data.market_data import LtpFeed
from optbot.data.replay import ReplayFeed, ReplayFeedError
from optbot.data.ticks import CALL, PUT, latest_by_token, option_type, tick_from_payload


class _FakeKite:
    def __init__(self, result: Any):
        self.result = result
        self.requested: list[list[str]] = []

    def get_ltp(self, instruments: list[str]) -> dict[str, Any]:
        self.requested.append(instruments)
        if isinstance(self.result, Exception):
            raise self.result
        return self.result


def test_replay_groups_rows_by_batch(tmp_path: Path) -> None:
    path = tmp_path / "ticks.csv"
    path.write_text(
        "\n".join(
            [
                "batch,instrument_token,tradingsymbol,last_price",
                "1,101,nifty26feb26000ce,180",
                "1,102,NIFTY26FEB25000PE,190",
                "2,101,NIFTY26FEB26000CE,181.5",
                "2,102,NIFTY26FEB25000PE,bad",
                "3,101,NIFTY26FEB26000CE,-1",
            ]
        ),
        encoding="utf-8",
    )
    feed = ReplayFeed(path)
    batches = list(feed)

    assert len(feed) == 2
    assert [[tick.token for tick in batch] for batch in batches] == [[101, 102], [101]]
    assert batches[0][0].symbol == "NIFTY26FEB26000CE"
    assert batches[1][0].last_price == 181.5
    assert batches[0][0].timestamp is None


def test_replay_groups_by_timestamp_with_aliases(tmp_path: Path) -> None:
    path = tmp_path / "ticks.csv"
    path.write_text(
        "\n".join(
            [
                "timestamp,token,symbol,ltp",
                "2026-02-09T04:30:00Z,101,NIFTY26FEB26000CE,180",
                "2026-02-09T04:30:00Z,102,NIFTY26FEB25000PE,190",
                "2026-02-09T04:30:01Z,101,NIFTY26FEB26000CE,181",
            ]
        ),
        encoding="utf-8",
    )
    batches = list(ReplayFeed(path).batches())

    assert [len(batch) for batch in batches] == [2, 1]
    stamp = batches[1][0].timestamp
    assert stamp is not None
    assert stamp.tzinfo is not None
    assert stamp.astimezone(timezone.utc).second == 1


def test_replay_rejects_missing_columns(tmp_path: Path) -> None:
    path = tmp_path / "ticks.csv"
    path.write_text("batch,instrument_token\n1,101\n", encoding="utf-8")
    with pytest.raises(ReplayFeedError):
        list(ReplayFeed(path))
    with pytest.raises(ReplayFeedError):
        list(ReplayFeed(tmp_path / "missing.csv"))


def test_ltp_feed_builds_ticks() -> None:
    client = _FakeKite(
        {
            "NFO:NIFTY26FEB26000CE": {"instrument_token": 101, "last_price": 180.5},
            "NFO:NIFTY26FEB25000PE": {"instrument_token": 102, "last_price": 0},
        }
    )
    feed = LtpFeed(client, ["nifty26feb26000ce", "NFO:NIFTY26FEB25000PE"])  # type: ignore[arg-type]
    ticks = feed.fetch_batch()

    assert client.requested == [["NFO:NIFTY26FEB26000CE", "NFO:NIFTY26FEB25000PE"]]
    assert [(tick.token, tick.symbol, tick.last_price) for tick in ticks] == [(101, "NIFTY26FEB26000CE", 180.5)]
    assert feed.last_batch_at is not None


def test_ltp_feed_swallows_api_errors_but_not_auth() -> None:
    feed = LtpFeed(_FakeKite(KiteAPIError("HTTP 500")), ["NFO:X"])  # type: ignore[arg-type]
    assert feed.fetch_batch() == []
    feed = LtpFeed(_FakeKite(KiteAuthError("expired")), ["NFO:X"])  # type: ignore[arg-type]
    with pytest.raises(KiteAuthError):
        feed.fetch_batch()


def test_tick_payload_parsing() -> None:
    assert option_type("nifty26feb26000ce") == CALL
    assert option_type("NIFTY26FEB25000PE") == PUT
    assert option_type("NIFTY26FEBFUT") is None
    assert tick_from_payload({"instrument_token": "x", "tradingsymbol": "A", "last_price": 1}) is None
    assert tick_from_payload({"instrument_token": 1, "tradingsymbol": "A", "last_price": -2}) is None
    tick = tick_from_payload({"token": "7", "symbol": "abcCE", "lastPrice": "10", "timestamp": "2026-02-09T04:30:00Z"})
    assert tick is not None and tick.token == 7 and tick.timestamp is not None
    latest = latest_by_token([tick, tick_from_payload({"token": 7, "symbol": "abcCE", "last_price": 11})])
    assert latest[7].last_price == 11.0

from __future__ import annotations

from datetime import datetime, timezone

from optbot.clock import day_kind, latest_timestamp, range_window_for
from optbot.config import RangeProfilesConfig, StrategyParams
from optbot.data.ticks import Tick
from optbot.strategy.contracts import Block, InstrumentRecord
from optbot.strategy.cycle import CycleController, live_trading_allowed, new_session_state


def _without_cycle(snapshot: dict) -> dict:
    return {key: value for key, value in snapshot.items() if key != "cycle_number"}


def test_reset_keeps_only_params_and_bumps_cycle() -> None:
    state = new_session_state("u1", StrategyParams(target=9.0))
    state.block = Block.TRADE
    state.main_token = 11
    state.instruments[11] = InstrumentRecord.from_tick(Tick(11, "NIFTY26FEB26000CE", 180.0))
    state.observed_tokens = [11]
    state.buy_backs_done = 1
    state.remaining_ref_price = 150.0

    fresh = CycleController().reset(state)

    assert fresh.cycle_number == 1
    assert fresh.block == Block.INIT
    assert fresh.params is state.params
    assert fresh.main_token is None
    assert fresh.instruments == {}
    assert fresh.legs == []
    assert fresh.buy_backs_done == 0
    assert fresh.remaining_ref_price is None
    assert fresh.entry_stage.steps == []


def test_reset_is_idempotent_apart_from_cycle_number() -> None:
    controller = CycleController()
    once = controller.reset(new_session_state("u1", StrategyParams()))
    twice = controller.reset(once)
    assert twice.cycle_number == once.cycle_number + 1
    assert _without_cycle(once.snapshot()) == _without_cycle(twice.snapshot())


def test_live_cycles_limit_switches_to_paper() -> None:
    state = new_session_state("u1", StrategyParams(enable_trading=True, live_cycles_limit=1))
    assert state.live_trading
    fresh = CycleController().reset(state)
    assert not fresh.live_trading


def test_live_trading_allowed() -> None:
    assert not live_trading_allowed(False, 0, None)
    assert live_trading_allowed(True, 50, None)
    assert live_trading_allowed(True, 1, 2)
    assert not live_trading_allowed(True, 2, 2)
    assert not live_trading_allowed(True, 0, 0)


def test_day_kind_relative_to_expiry() -> None:
    assert day_kind(3, 3) == "expiry_day"
    assert day_kind(2, 3) == "pre_expiry_day"
    assert day_kind(0, 3) == "normal_day"
    assert day_kind(6, 0) == "pre_expiry_day"


def test_range_window_uses_market_timezone() -> None:
    ranges = RangeProfilesConfig()
    # 20:00 UTC Wednesday is already Thursday in Kolkata.
    late_wednesday = datetime(2026, 2, 11, 20, 0, tzinfo=timezone.utc)
    window = range_window_for(late_wednesday, expiry_weekday=3, ranges=ranges)
    assert window == ranges.expiry_day
    window = range_window_for(late_wednesday, expiry_weekday=3, ranges=ranges, timezone_name="UTC")
    assert window == ranges.pre_expiry_day


def test_latest_timestamp_reads_naive_stamps_as_market_time() -> None:
    # 09:20 IST is 03:50 UTC, later than the 03:45 UTC stamp.
    naive_ist = datetime(2026, 2, 12, 9, 20)
    aware_utc = datetime(2026, 2, 12, 3, 45, tzinfo=timezone.utc)
    latest = latest_timestamp([None, aware_utc, naive_ist])
    assert latest is not None
    assert latest.astimezone(timezone.utc) == datetime(2026, 2, 12, 3, 50, tzinfo=timezone.utc)
    assert latest_timestamp([None, None]) is None

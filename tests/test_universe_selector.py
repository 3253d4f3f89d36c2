from __future__ import annotations

import math

import pytest

from optbot.config import RangeWindowConfig
from optbot.data.ticks import Tick
from optbot.strategy.contracts import ConfigurationError
from optbot.strategy.universe import RangeWindow, find_tokens_in_dynamic_range


def _window(base: float = 165, width: float = 35, floor: float = 150, step: float = 5) -> RangeWindow:
    return RangeWindow(base=base, width=width, floor=floor, step=step, target_premium=200)


def test_accepts_both_sides_inside_initial_window() -> None:
    ticks = [
        Tick(1, "NIFTY26FEB26500CE", 140.0),
        Tick(2, "NIFTY26FEB26000CE", 172.0),
        Tick(3, "NIFTY26FEB25000PE", 190.0),
        Tick(4, "NIFTY26FEB24500PE", 210.0),
    ]
    result = find_tokens_in_dynamic_range(ticks, _window())

    assert result.ok
    assert result.iterations == 0
    assert set(result.accepted) == {2, 3}
    assert result.call_tokens == [2]
    assert result.put_tokens == [3]
    assert set(result.rejected) == {1, 4}
    # Ranked by distance from the target premium.
    assert result.accepted == [3, 2]


def test_widens_until_missing_side_appears() -> None:
    ticks = [
        Tick(1, "NIFTY26FEB26000CE", 180.0),
        Tick(2, "NIFTY26FEB25000PE", 157.0),
    ]
    result = find_tokens_in_dynamic_range(ticks, _window())

    assert result.ok
    assert result.iterations == 2
    assert result.window is not None
    assert result.window.base == 155
    assert result.window.upper == 210
    assert result.put_tokens == [2]


def test_gives_up_at_floor_without_crossing_it() -> None:
    ticks = [Tick(1, "NIFTY26FEB26000CE", 180.0), Tick(2, "NIFTY26FEB26100CE", 175.0)]
    window = _window()
    result = find_tokens_in_dynamic_range(ticks, window)

    assert not result.ok
    assert result.put_tokens == []
    assert result.iterations <= math.ceil((window.base - window.floor) / window.step)
    assert result.window is not None
    assert result.window.base >= window.floor


def test_empty_batch_returns_empty_selection() -> None:
    result = find_tokens_in_dynamic_range([], _window())
    assert not result.ok
    assert result.accepted == []


def test_non_option_symbols_are_rejected() -> None:
    ticks = [
        Tick(1, "NIFTY26FEBFUT", 180.0),
        Tick(2, "NIFTY26FEB26000CE", 180.0),
        Tick(3, "NIFTY26FEB25000PE", 185.0),
    ]
    result = find_tokens_in_dynamic_range(ticks, _window())
    assert 1 in result.rejected
    assert 1 not in result.accepted


def test_latest_tick_per_token_wins() -> None:
    ticks = [
        Tick(1, "NIFTY26FEB26000CE", 120.0),
        Tick(2, "NIFTY26FEB25000PE", 185.0),
        Tick(1, "NIFTY26FEB26000CE", 180.0),
    ]
    result = find_tokens_in_dynamic_range(ticks, _window())
    assert result.ok
    assert result.call_tokens == [1]


def test_non_positive_step_is_a_configuration_error() -> None:
    with pytest.raises(ConfigurationError):
        find_tokens_in_dynamic_range([], _window(step=0))


def test_window_from_config() -> None:
    window = RangeWindow.from_config(RangeWindowConfig(base=85, width=50, floor=75, target_premium=100))
    assert window.upper == 135
    assert window.contains(85) and window.contains(135)
    assert not window.contains(84.95)
    widened = window.widened()
    assert widened.base == 80
    assert widened.upper == 140

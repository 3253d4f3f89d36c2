from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Iterable

from optbot.config import RangeWindowConfig
from optbot.data.ticks import CALL, PUT, Tick, latest_by_token, option_type
from optbot.strategy.contracts import ConfigurationError

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class RangeWindow:
    base: float
    width: float
    floor: float
    step: float
    target_premium: float

    @classmethod
    def from_config(cls, config: RangeWindowConfig) -> "RangeWindow":
        return cls(
            base=config.base,
            width=config.width,
            floor=config.floor,
            step=config.step,
            target_premium=config.target_premium,
        )

    @property
    def upper(self) -> float:
        return self.base + self.width

    def contains(self, price: float) -> bool:
        return self.base <= price <= self.upper

    def widened(self) -> "RangeWindow":
        return RangeWindow(
            base=self.base - self.step,
            width=self.width + 2 * self.step,
            floor=self.floor,
            step=self.step,
            target_premium=self.target_premium,
        )


@dataclass(slots=True)
class SelectionResult:
    accepted: list[int] = field(default_factory=list)
    rejected: list[int] = field(default_factory=list)
    call_tokens: list[int] = field(default_factory=list)
    put_tokens: list[int] = field(default_factory=list)
    iterations: int = 0
    window: RangeWindow | None = None

    @property
    def ok(self) -> bool:
        return bool(self.call_tokens) and bool(self.put_tokens)


def _partition(ordered: list[Tick], window: RangeWindow) -> SelectionResult:
    result = SelectionResult(window=window)
    for tick in ordered:
        if not window.contains(tick.last_price):
            result.rejected.append(tick.token)
            continue
        kind = option_type(tick.symbol)
        if kind == CALL:
            result.call_tokens.append(tick.token)
        elif kind == PUT:
            result.put_tokens.append(tick.token)
        else:
            result.rejected.append(tick.token)
            continue
        result.accepted.append(tick.token)
    return result


def find_tokens_in_dynamic_range(ticks: Iterable[Tick], window: RangeWindow) -> SelectionResult:
    """
    Pick the working universe for a cycle.

    Ticks are ranked by distance from the window's target premium and those
    priced inside ``[base, base + width]`` are accepted. While either the call
    or the put side is empty the window is widened by one step on both sides;
    the search gives up rather than take ``base`` below ``floor``, so it runs
    at most ``(base - floor) / step`` widenings.
    """
    if window.step <= 0:
        raise ConfigurationError(f"range step must be > 0 (got {window.step})")
    ordered = sorted(
        latest_by_token(ticks).values(),
        key=lambda tick: abs(tick.last_price - window.target_premium),
    )
    current = window
    iterations = 0
    while True:
        result = _partition(ordered, current)
        result.iterations = iterations
        if result.ok:
            LOGGER.debug(
                "Universe selected calls=%d puts=%d window=[%.2f, %.2f] widenings=%d",
                len(result.call_tokens),
                len(result.put_tokens),
                current.base,
                current.upper,
                iterations,
            )
            return result
        if current.base - current.step < current.floor:
            LOGGER.info(
                "No call/put pair inside range down to floor %.2f (calls=%d puts=%d)",
                current.floor,
                len(result.call_tokens),
                len(result.put_tokens),
            )
            return result
        current = current.widened()
        iterations += 1

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from optbot.config import StrategyParams
from optbot.data.ticks import Tick, option_type


class InvariantViolation(RuntimeError):
    """State the engine must never reach; fatal to the current cycle."""


class ConfigurationError(ValueError):
    pass


class Block(str, Enum):
    INIT = "INIT"
    UPDATE = "UPDATE"
    FINAL_REF = "FINAL_REF"
    TRADE = "TRADE"
    NEXT_CYCLE = "NEXT_CYCLE"


BLOCK_TRANSITIONS: dict[Block, frozenset[Block]] = {
    Block.INIT: frozenset({Block.UPDATE}),
    Block.UPDATE: frozenset({Block.FINAL_REF}),
    Block.FINAL_REF: frozenset({Block.TRADE}),
    Block.TRADE: frozenset({Block.NEXT_CYCLE}),
    Block.NEXT_CYCLE: frozenset({Block.INIT}),
}


def check_block_transition(current: Block, target: Block) -> Block:
    if target not in BLOCK_TRANSITIONS[current]:
        raise InvariantViolation(f"Illegal block transition {current.value} -> {target.value}")
    return target


class Checkpoint(str, Enum):
    THRESHOLD_CROSS = "threshold_cross"
    PEAK_AND_FALL = "peak_and_fall"
    CALC_REF = "calc_ref"
    INTERIM_LOW = "interim_low"


CHECKPOINT_ORDER: tuple[Checkpoint, ...] = (
    Checkpoint.THRESHOLD_CROSS,
    Checkpoint.PEAK_AND_FALL,
    Checkpoint.CALC_REF,
    Checkpoint.INTERIM_LOW,
)


class LegRole(str, Enum):
    MAIN = "MAIN"
    OPPOSITE = "OPPOSITE"
    BUY_BACK = "BUY_BACK"


class ExitBranch(str, Enum):
    TARGET_STOPLOSS = "TARGET_STOPLOSS"
    UPPER_PARTIAL = "UPPER_PARTIAL"
    LOWER_PARTIAL = "LOWER_PARTIAL"


class LifecycleStep(str, Enum):
    ENTERED = "ENTERED"
    FIRST_EXIT = "FIRST_EXIT"
    SECOND_EXIT = "SECOND_EXIT"
    BUY_BACK = "BUY_BACK"
    BUY_BACK_EXIT = "BUY_BACK_EXIT"
    COMPLETE = "COMPLETE"


STEP_TRANSITIONS: dict[LifecycleStep | None, frozenset[LifecycleStep]] = {
    None: frozenset({LifecycleStep.ENTERED}),
    LifecycleStep.ENTERED: frozenset({LifecycleStep.FIRST_EXIT, LifecycleStep.COMPLETE}),
    LifecycleStep.FIRST_EXIT: frozenset({LifecycleStep.SECOND_EXIT}),
    LifecycleStep.SECOND_EXIT: frozenset({LifecycleStep.BUY_BACK, LifecycleStep.COMPLETE}),
    LifecycleStep.BUY_BACK: frozenset({LifecycleStep.BUY_BACK_EXIT}),
    LifecycleStep.BUY_BACK_EXIT: frozenset({LifecycleStep.BUY_BACK, LifecycleStep.COMPLETE}),
    LifecycleStep.COMPLETE: frozenset(),
}


@dataclass(slots=True)
class EntryStage:
    """Append-only lifecycle steps plus the single exit branch taken this cycle."""

    branch: ExitBranch | None = None
    steps: list[LifecycleStep] = field(default_factory=list)

    @property
    def current(self) -> LifecycleStep | None:
        return self.steps[-1] if self.steps else None

    @property
    def complete(self) -> bool:
        return self.current == LifecycleStep.COMPLETE

    def advance(self, step: LifecycleStep) -> None:
        allowed = STEP_TRANSITIONS[self.current]
        if step not in allowed:
            current = self.current.value if self.current else "<none>"
            raise InvariantViolation(f"Illegal lifecycle step {current} -> {step.value}")
        self.steps.append(step)

    def choose_branch(self, branch: ExitBranch) -> None:
        if self.branch is not None and self.branch != branch:
            raise InvariantViolation(
                f"Exit branch already {self.branch.value}; cannot switch to {branch.value}"
            )
        self.branch = branch


@dataclass(slots=True)
class InstrumentRecord:
    token: int
    symbol: str
    option_type: str | None
    first_price: float
    last: float
    peak: float
    prev_peak: float
    peak_time: datetime | None = None
    updated_at: datetime | None = None
    peak_at_ref: float | None = None
    low_at_ref: float | None = None
    change: float = 0.0
    change_from_open: float = 0.0
    change_from_buy: float = 0.0
    calc_ref: float | None = None
    prev_calc_ref: float | None = None
    buy_price: float = -1.0
    passed_threshold_cross: bool = False
    passed_peak_and_fall: bool = False
    passed_calc_ref: bool = False
    passed_interim_low: bool = False

    @classmethod
    def from_tick(cls, tick: Tick, now: datetime | None = None) -> "InstrumentRecord":
        at = tick.timestamp or now
        return cls(
            token=tick.token,
            symbol=tick.symbol,
            option_type=option_type(tick.symbol),
            first_price=tick.last_price,
            last=tick.last_price,
            peak=tick.last_price,
            prev_peak=tick.last_price,
            peak_time=at,
            updated_at=at,
        )

    @property
    def bought(self) -> bool:
        return self.buy_price > 0

    def observe(self, price: float, at: datetime | None = None) -> None:
        self.change = price - self.last
        self.last = price
        self.change_from_open = price - self.first_price
        if price > self.peak:
            self.prev_peak = self.peak
            self.peak = price
            self.peak_time = at
        if self.bought:
            self.change_from_buy = price - self.buy_price
        self.updated_at = at

    def passed(self, checkpoint: Checkpoint) -> bool:
        return bool(getattr(self, f"passed_{checkpoint.value}"))

    def mark(self, checkpoint: Checkpoint) -> bool:
        """Set a checkpoint flag; returns True when it was newly set."""
        index = CHECKPOINT_ORDER.index(checkpoint)
        if index > 0 and not self.passed(CHECKPOINT_ORDER[index - 1]):
            raise InvariantViolation(
                f"{self.symbol}: cannot mark {checkpoint.value} before "
                f"{CHECKPOINT_ORDER[index - 1].value}"
            )
        if self.passed(checkpoint):
            return False
        setattr(self, f"passed_{checkpoint.value}", True)
        return True

    def record_buy(self, price: float) -> None:
        if self.bought:
            raise InvariantViolation(f"{self.symbol} already bought this cycle at {self.buy_price:.2f}")
        if price <= 0:
            raise InvariantViolation(f"{self.symbol}: refusing non-positive buy price {price}")
        self.buy_price = price
        self.change_from_buy = self.last - price

    def reprice_buy(self, price: float) -> None:
        if price <= 0 or not self.bought:
            return
        self.buy_price = price
        self.change_from_buy = self.last - price

    def to_dict(self) -> dict[str, Any]:
        return {
            "token": self.token,
            "symbol": self.symbol,
            "option_type": self.option_type,
            "first_price": self.first_price,
            "last": self.last,
            "peak": self.peak,
            "peak_at_ref": self.peak_at_ref,
            "low_at_ref": self.low_at_ref,
            "change_from_open": round(self.change_from_open, 4),
            "change_from_buy": round(self.change_from_buy, 4),
            "calc_ref": self.calc_ref,
            "buy_price": self.buy_price,
            "checkpoints": [cp.value for cp in CHECKPOINT_ORDER if self.passed(cp)],
        }


@dataclass(slots=True)
class Leg:
    leg_id: str
    token: int
    symbol: str
    option_type: str | None
    role: LegRole
    quantity: int
    buy_price: float
    reference_buy_price: float
    buy_order_id: str
    opened_at: datetime
    sell_price: float | None = None
    reference_sell_price: float | None = None
    sell_order_id: str | None = None
    closed_at: datetime | None = None

    @property
    def is_open(self) -> bool:
        return self.sell_price is None

    def pnl_points(self, last: float) -> float:
        exit_price = self.sell_price if self.sell_price is not None else last
        return exit_price - self.buy_price

    def to_dict(self) -> dict[str, Any]:
        return {
            "leg_id": self.leg_id,
            "symbol": self.symbol,
            "role": self.role.value,
            "quantity": self.quantity,
            "buy_price": self.buy_price,
            "sell_price": self.sell_price,
            "buy_order_id": self.buy_order_id,
            "sell_order_id": self.sell_order_id,
            "opened_at": self.opened_at.isoformat(),
            "closed_at": self.closed_at.isoformat() if self.closed_at else None,
        }


@dataclass(slots=True)
class FilterFlags:
    call_crossed: bool = False
    put_crossed: bool = False
    calc_ref_reached: bool = False
    interim_low_reached: bool = False


@dataclass(slots=True)
class SessionState:
    session_id: str
    params: StrategyParams
    block: Block = Block.INIT
    cycle_number: int = 0
    live_trading: bool = False
    main_token: int | None = None
    opp_token: int | None = None
    bought_token: int | None = None
    opp_bought_token: int | None = None
    buy_back_token: int | None = None
    first_option_token: int | None = None
    interim_trigger_token: int | None = None
    filter_flags: FilterFlags = field(default_factory=FilterFlags)
    entry_stage: EntryStage = field(default_factory=EntryStage)
    instruments: dict[int, InstrumentRecord] = field(default_factory=dict)
    observed_tokens: list[int] = field(default_factory=list)
    call_tokens: list[int] = field(default_factory=list)
    put_tokens: list[int] = field(default_factory=list)
    legs: list[Leg] = field(default_factory=list)
    residual_target: float | None = None
    remaining_ref_price: float | None = None
    buy_backs_done: int = 0
    stalled: bool = False
    batches_in_block: int = 0
    lifecycle_complete: bool = False

    def open_legs(self) -> list[Leg]:
        return [leg for leg in self.legs if leg.is_open]

    def closed_legs(self) -> list[Leg]:
        return [leg for leg in self.legs if not leg.is_open]

    def last_price(self, token: int) -> float:
        record = self.instruments.get(token)
        if record is None:
            raise InvariantViolation(f"Token {token} is not tracked this cycle")
        return record.last

    @property
    def realized(self) -> float:
        return sum((leg.sell_price or 0.0) - leg.buy_price for leg in self.closed_legs())

    @property
    def mtm(self) -> float:
        unrealized = sum(leg.pnl_points(self.last_price(leg.token)) for leg in self.open_legs())
        return self.realized + unrealized

    def snapshot(self) -> dict[str, Any]:
        tracked = [self.instruments[token] for token in self.observed_tokens if token in self.instruments]
        return {
            "session_id": self.session_id,
            "block": self.block.value,
            "cycle_number": self.cycle_number,
            "live_trading": self.live_trading,
            "main_token": self.main_token,
            "opp_token": self.opp_token,
            "bought_token": self.bought_token,
            "opp_bought_token": self.opp_bought_token,
            "buy_back_token": self.buy_back_token,
            "interim_trigger_token": self.interim_trigger_token,
            "filter_flags": {
                "call_crossed": self.filter_flags.call_crossed,
                "put_crossed": self.filter_flags.put_crossed,
                "calc_ref_reached": self.filter_flags.calc_ref_reached,
                "interim_low_reached": self.filter_flags.interim_low_reached,
            },
            "entry_stage": {
                "branch": self.entry_stage.branch.value if self.entry_stage.branch else None,
                "steps": [step.value for step in self.entry_stage.steps],
            },
            "mtm": round(self.mtm, 4) if self.legs else 0.0,
            "residual_target": self.residual_target,
            "remaining_ref_price": self.remaining_ref_price,
            "buy_backs_done": self.buy_backs_done,
            "stalled": self.stalled,
            "batches_in_block": self.batches_in_block,
            "legs": [leg.to_dict() for leg in self.legs],
            "instruments": [record.to_dict() for record in tracked],
            "params": self.params.model_dump(),
        }

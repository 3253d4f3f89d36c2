from __future__ import annotations

import logging
import threading
from datetime import datetime
from typing import Any, Callable, Iterable

from optbot.clock import latest_timestamp, range_window_for, utc_now
from optbot.config import EngineConfig, RangeProfilesConfig, StrategyParams
from optbot.data.ticks import CALL, PUT, Tick, latest_by_token
from optbot.execution.gateway import OrderGateway
from optbot.monitoring.events import EventSink, NullSink, StatusEvent
from optbot.strategy.contracts import (
    Block,
    InstrumentRecord,
    InvariantViolation,
    SessionState,
    check_block_transition,
)
from optbot.strategy.cycle import CycleController, live_trading_allowed, new_session_state
from optbot.strategy.filters import PairSelection, SequentialFilterPipeline, check_checkpoint_order
from optbot.strategy.lifecycle import PositionLifecycleManager
from optbot.strategy.universe import RangeWindow, find_tokens_in_dynamic_range

LOGGER = logging.getLogger(__name__)

Handler = Callable[[dict[int, Tick]], "Block | None"]

_OBSERVING_BLOCKS = frozenset({Block.UPDATE, Block.FINAL_REF, Block.TRADE})
_STALL_BLOCKS = frozenset({Block.INIT, Block.UPDATE})


class StrategyEngine:
    """
    Tick-driven block state machine for one strategy session.

    Each batch is handled by the active block. When a handler asks for a
    transition the next block runs on the same batch; the chain ends after a
    cycle reset so the new INIT starts on fresh ticks.
    """

    def __init__(
        self,
        *,
        session_id: str,
        params: StrategyParams,
        gateway: OrderGateway,
        ranges: RangeProfilesConfig | None = None,
        engine_config: EngineConfig | None = None,
        timezone_name: str = "Asia/Kolkata",
        sink: EventSink | None = None,
        now_fn: Callable[[], datetime] = utc_now,
    ):
        self.session_id = session_id
        self.ranges = ranges or RangeProfilesConfig()
        self.engine_config = engine_config or EngineConfig()
        self.timezone_name = timezone_name
        self.sink: EventSink = sink or NullSink()
        self.now_fn = now_fn
        self.lock = threading.RLock()
        self._batch_now: datetime | None = None
        self.lifecycle = PositionLifecycleManager(gateway, emit=self.emit, now_fn=self.batch_now)
        self.cycle = CycleController()
        self.state: SessionState = new_session_state(session_id, params)
        self.batches_seen = 0
        self.transitions: list[tuple[Block, Block]] = []
        self._handlers: dict[Block, Handler] = {
            Block.INIT: self._handle_init,
            Block.UPDATE: self._handle_update,
            Block.FINAL_REF: self._handle_final_ref,
            Block.TRADE: self._handle_trade,
            Block.NEXT_CYCLE: self._handle_next_cycle,
        }

    # -- events -----------------------------------------------------------------

    def emit(self, kind: str, payload: dict[str, Any]) -> None:
        self.sink.publish(StatusEvent(kind=kind, session_id=self.session_id, payload=payload))

    # -- public -----------------------------------------------------------------

    @property
    def block(self) -> Block:
        return self.state.block

    @property
    def in_lifecycle(self) -> bool:
        return self.state.block in (Block.FINAL_REF, Block.TRADE)

    def update_params(self, params: StrategyParams) -> None:
        with self.lock:
            self.state.params = params
            self.state.live_trading = live_trading_allowed(
                params.enable_trading,
                self.state.cycle_number,
                params.live_cycles_limit,
            )

    def batch_now(self) -> datetime:
        """Time of the batch being processed: its latest tick timestamp, else the wall clock."""
        return self._batch_now or self.now_fn()

    def snapshot(self) -> dict[str, Any]:
        with self.lock:
            return self.state.snapshot()

    def process_batch(self, ticks: Iterable[Tick]) -> Block:
        latest = latest_by_token(ticks)
        with self.lock:
            self.batches_seen += 1
            self._batch_now = latest_timestamp((tick.timestamp for tick in latest.values()), self.timezone_name)
            self.lifecycle.drain(self.state)
            try:
                self._run(latest)
            except InvariantViolation as exc:
                self._on_invariant_violation(exc)
            if self.batches_seen % self.engine_config.snapshot_every_batches == 0:
                self.emit("instrument_snapshot", self.state.snapshot())
            return self.state.block

    # -- dispatch ---------------------------------------------------------------

    def _run(self, latest: dict[int, Tick]) -> None:
        if self.state.block in _OBSERVING_BLOCKS:
            self._observe(latest)
        block = self.state.block
        while True:
            target = self._handlers[block](latest)
            if target is None:
                self._track_stall(block)
                return
            self._transition(block, target)
            if target == Block.INIT:
                return
            if block == Block.INIT:
                self._observe(latest)
            block = target

    def _transition(self, current: Block, target: Block) -> None:
        check_block_transition(current, target)
        self.transitions.append((current, target))
        self.state.block = target
        self.state.batches_in_block = 0
        self.state.stalled = False
        LOGGER.info(
            "Session %s cycle %d: %s -> %s",
            self.session_id,
            self.state.cycle_number,
            current.value,
            target.value,
        )
        self.emit(
            "block_transition",
            {"from": current.value, "to": target.value, "cycle": self.state.cycle_number},
        )

    def _track_stall(self, block: Block) -> None:
        state = self.state
        state.batches_in_block += 1
        if block not in _STALL_BLOCKS or state.stalled:
            return
        if state.batches_in_block >= self.engine_config.stall_after_batches:
            state.stalled = True
            LOGGER.warning(
                "Session %s stalled in %s for %d batches",
                self.session_id,
                block.value,
                state.batches_in_block,
            )
            self.emit(
                "stalled",
                {"block": block.value, "batches": state.batches_in_block, "cycle": state.cycle_number},
            )

    def _on_invariant_violation(self, exc: InvariantViolation) -> None:
        state = self.state
        LOGGER.error(
            "Invariant violation in session %s cycle %d block %s: %s",
            self.session_id,
            state.cycle_number,
            state.block.value,
            exc,
        )
        open_legs = state.open_legs()
        if open_legs:
            LOGGER.warning(
                "Forced reset leaves %d open leg(s): %s",
                len(open_legs),
                ", ".join(leg.symbol for leg in open_legs),
            )
        self.emit(
            "invariant_violation",
            {
                "error": str(exc),
                "block": state.block.value,
                "cycle": state.cycle_number,
                "open_legs": [leg.symbol for leg in open_legs],
            },
        )
        self.state = self.cycle.reset(state)
        self.emit("cycle_complete", {"cycle": state.cycle_number, "realized": state.realized, "forced": True})

    def _observe(self, latest: dict[int, Tick]) -> None:
        now = self.batch_now()
        instruments = self.state.instruments
        for token in self.state.observed_tokens:
            tick = latest.get(token)
            if tick is None:
                continue
            record = instruments.get(token)
            if record is None:
                instruments[token] = InstrumentRecord.from_tick(tick, now)
            else:
                record.observe(tick.last_price, tick.timestamp or now)

    # -- blocks -----------------------------------------------------------------

    def _handle_init(self, latest: dict[int, Tick]) -> Block | None:
        state = self.state
        window_config = range_window_for(
            self.batch_now(),
            expiry_weekday=state.params.expiry_weekday,
            ranges=self.ranges,
            timezone_name=self.timezone_name,
        )
        result = find_tokens_in_dynamic_range(latest.values(), RangeWindow.from_config(window_config))
        if not result.ok:
            return None
        state.call_tokens = list(result.call_tokens)
        state.put_tokens = list(result.put_tokens)
        state.observed_tokens = sorted(result.accepted, key=lambda token: latest[token].last_price)
        LOGGER.info(
            "Session %s universe: %d calls, %d puts after %d widenings",
            self.session_id,
            len(state.call_tokens),
            len(state.put_tokens),
            result.iterations,
        )
        return Block.UPDATE

    def _handle_update(self, latest: dict[int, Tick]) -> Block | None:
        state = self.state
        pipeline = SequentialFilterPipeline.for_params(state.params)
        result = pipeline.apply(
            state.observed_tokens,
            state.instruments,
            state.call_tokens,
            state.put_tokens,
            state.filter_flags,
            state.params,
            pair=PairSelection(
                main_token=state.main_token,
                opp_token=state.opp_token,
                first_option_token=state.first_option_token,
                interim_trigger_token=state.interim_trigger_token,
            ),
        )
        for record in state.instruments.values():
            check_checkpoint_order(record)
        if not result.success:
            return None
        state.filter_flags = result.flags
        if state.main_token is not None and result.pair.main_token != state.main_token:
            raise InvariantViolation("Main token reassigned within a cycle")
        state.main_token = result.pair.main_token
        state.opp_token = result.pair.opp_token
        state.first_option_token = result.pair.first_option_token
        state.interim_trigger_token = result.pair.interim_trigger_token
        if result.fallback_stage:
            LOGGER.debug("Pipeline fell back at %s with %d survivors", result.fallback_stage, len(result.survivors))
        return Block.FINAL_REF if result.completed else None

    def _entry_pair(self) -> tuple[int, int] | None:
        state = self.state
        params = state.params
        if params.entry_selection == "pair":
            if state.main_token is None or state.opp_token is None:
                return None
            return state.main_token, state.opp_token

        picks: dict[str, int] = {}
        for kind in (CALL, PUT):
            below = [
                record
                for record in state.instruments.values()
                if record.option_type == kind and not record.bought and record.last <= params.entry_premium
            ]
            if below:
                picks[kind] = max(below, key=lambda record: record.last).token
        if CALL not in picks or PUT not in picks:
            LOGGER.info(
                "No call/put pair at or below %.2f yet (calls=%s puts=%s)",
                params.entry_premium,
                CALL in picks,
                PUT in picks,
            )
            return None

        preferred = CALL
        for token in (state.interim_trigger_token, state.first_option_token):
            record = state.instruments.get(token) if token is not None else None
            if record is not None and record.option_type in (CALL, PUT):
                preferred = record.option_type
                break
        other = PUT if preferred == CALL else CALL
        return picks[preferred], picks[other]

    def _handle_final_ref(self, latest: dict[int, Tick]) -> Block | None:
        pair = self._entry_pair()
        if pair is None:
            return None
        if not self.lifecycle.enter(self.state, *pair):
            return None
        return Block.TRADE

    def _handle_trade(self, latest: dict[int, Tick]) -> Block | None:
        if self.lifecycle.evaluate(self.state):
            return Block.NEXT_CYCLE
        return None

    def _handle_next_cycle(self, latest: dict[int, Tick]) -> Block | None:
        finished = self.state
        self.state = self.cycle.reset(finished)
        # The fresh state starts in INIT; keep the transition record explicit.
        self.state.block = Block.NEXT_CYCLE
        self.emit(
            "cycle_complete",
            {
                "cycle": finished.cycle_number,
                "realized": round(finished.realized, 4),
                "branch": finished.entry_stage.branch.value if finished.entry_stage.branch else None,
                "legs": [leg.to_dict() for leg in finished.legs],
            },
        )
        return Block.INIT

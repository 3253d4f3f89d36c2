from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from typing import Callable

from optbot.config import CANONICAL_FILTERS, StrategyParams
from optbot.strategy.contracts import (
    Checkpoint,
    FilterFlags,
    InstrumentRecord,
    InvariantViolation,
)

LOGGER = logging.getLogger(__name__)

# Two calc-ref samples closer than this are treated as the same reference.
CALC_REF_EPSILON = 1e-9


@dataclass(slots=True)
class PairSelection:
    main_token: int | None = None
    opp_token: int | None = None
    first_option_token: int | None = None
    interim_trigger_token: int | None = None


@dataclass(slots=True)
class PipelineResult:
    success: bool
    survivors: list[int]
    flags: FilterFlags
    pair: PairSelection
    stage_survivors: dict[str, list[int]] = field(default_factory=dict)
    fallback_stage: str | None = None
    completed: bool = False


@dataclass(slots=True)
class _StageContext:
    instruments: dict[int, InstrumentRecord]
    call_tokens: list[int]
    put_tokens: list[int]
    flags: FilterFlags
    pair: PairSelection
    params: StrategyParams


StageFn = Callable[[list[int], _StageContext], list[int]]


def _records(tokens: list[int], ctx: _StageContext) -> list[InstrumentRecord]:
    return [ctx.instruments[token] for token in tokens if token in ctx.instruments]


def _first_available(tokens: list[int], ctx: _StageContext, exclude: int | None) -> int | None:
    for token in tokens:
        if token != exclude and token in ctx.instruments:
            return token
    for token in tokens:
        if token != exclude:
            return token
    return None


def threshold_cross(candidates: list[int], ctx: _StageContext) -> list[int]:
    """Mark instruments that rose ``peak_threshold`` above their first price and fix the pair."""
    call_set = set(ctx.call_tokens)
    put_set = set(ctx.put_tokens)
    crossed_calls: list[int] = []
    crossed_puts: list[int] = []
    for record in _records(candidates, ctx):
        if record.token not in call_set and record.token not in put_set:
            continue
        if not record.passed_threshold_cross:
            if record.last - record.first_price < ctx.params.peak_threshold:
                continue
            record.mark(Checkpoint.THRESHOLD_CROSS)
            LOGGER.info(
                "Threshold cross %s first=%.2f last=%.2f",
                record.symbol,
                record.first_price,
                record.last,
            )
        if record.token in call_set:
            crossed_calls.append(record.token)
        else:
            crossed_puts.append(record.token)

    if crossed_calls:
        ctx.flags.call_crossed = True
    if crossed_puts:
        ctx.flags.put_crossed = True

    pair = ctx.pair
    if pair.main_token is None:
        # Discovery order decides which side is main.
        first = next((token for token in candidates if token in crossed_calls or token in crossed_puts), None)
        if first is not None:
            pair.main_token = first
            pair.first_option_token = first
            if first in crossed_calls:
                pair.opp_token = crossed_puts[0] if crossed_puts else _first_available(ctx.put_tokens, ctx, None)
            else:
                pair.opp_token = crossed_calls[0] if crossed_calls else _first_available(ctx.call_tokens, ctx, None)
            LOGGER.info("Pair fixed main=%s opp=%s", pair.main_token, pair.opp_token)
    return crossed_calls + crossed_puts


def peak_and_fall(candidates: list[int], ctx: _StageContext) -> list[int]:
    survivors: list[int] = []
    for record in _records(candidates, ctx):
        if not record.passed_peak_and_fall:
            if record.peak - record.last < ctx.params.peak_fall_threshold:
                continue
            record.mark(Checkpoint.PEAK_AND_FALL)
            record.peak_at_ref = record.peak
            LOGGER.info("Peak and fall %s peak=%.2f last=%.2f", record.symbol, record.peak, record.last)
        survivors.append(record.token)
    return survivors


def calc_ref(candidates: list[int], ctx: _StageContext) -> list[int]:
    survivors: list[int] = []
    for record in _records(candidates, ctx):
        record.prev_calc_ref = record.calc_ref
        record.calc_ref = record.peak * ctx.params.calc_ref_fraction
        if not record.passed_calc_ref:
            stable = record.prev_calc_ref is not None and abs(record.calc_ref - record.prev_calc_ref) <= CALC_REF_EPSILON
            if not stable:
                continue
            record.mark(Checkpoint.CALC_REF)
            LOGGER.info("Calc ref stable %s calc_ref=%.2f", record.symbol, record.calc_ref)
        survivors.append(record.token)
    if survivors:
        ctx.flags.calc_ref_reached = True
    return survivors


def interim_low(candidates: list[int], ctx: _StageContext) -> list[int]:
    survivors: list[int] = []
    for record in _records(candidates, ctx):
        if record.low_at_ref is None or record.last < record.low_at_ref:
            record.low_at_ref = record.last
        if not record.passed_interim_low:
            if record.last - record.low_at_ref < ctx.params.recovery_threshold:
                continue
            record.mark(Checkpoint.INTERIM_LOW)
            LOGGER.info(
                "Interim low recovery %s low=%.2f last=%.2f",
                record.symbol,
                record.low_at_ref,
                record.last,
            )
            if ctx.pair.interim_trigger_token is None:
                ctx.pair.interim_trigger_token = record.token
        survivors.append(record.token)
    if survivors:
        ctx.flags.interim_low_reached = True
    return survivors


STAGES: dict[str, StageFn] = {
    "threshold_cross": threshold_cross,
    "peak_and_fall": peak_and_fall,
    "calc_ref": calc_ref,
    "interim_low": interim_low,
}


class SequentialFilterPipeline:
    """
    Ordered checkpoint filters over the cycle's candidate instruments.

    Each stage sees only the previous stage's survivors. A later stage with no
    survivors ends the pass early and, unless ``strict`` is set, the previous
    stage's survivors are reported instead.
    """

    def __init__(self, filters: list[str] | tuple[str, ...] = CANONICAL_FILTERS, *, strict: bool = False):
        names = [str(item).strip().lower() for item in filters]
        if not names or tuple(names) != CANONICAL_FILTERS[: len(names)]:
            raise ValueError("filters must be an ordered prefix of: " + ", ".join(CANONICAL_FILTERS))
        self.filters = names
        self.strict = strict

    @classmethod
    def for_params(cls, params: StrategyParams) -> "SequentialFilterPipeline":
        return cls(params.active_filters, strict=params.strict_pipeline)

    def apply(
        self,
        candidate_tokens: list[int],
        instruments: dict[int, InstrumentRecord],
        call_tokens: list[int],
        put_tokens: list[int],
        flags: FilterFlags,
        params: StrategyParams,
        pair: PairSelection | None = None,
    ) -> PipelineResult:
        ctx = _StageContext(
            instruments=instruments,
            call_tokens=list(call_tokens),
            put_tokens=list(put_tokens),
            flags=replace(flags),
            pair=replace(pair) if pair is not None else PairSelection(),
            params=params,
        )
        stage_survivors: dict[str, list[int]] = {}
        survivors = list(candidate_tokens)
        for index, name in enumerate(self.filters):
            passed = STAGES[name](survivors, ctx)
            stage_survivors[name] = passed
            if passed:
                survivors = passed
                continue
            if index == 0:
                LOGGER.debug("No instrument crossed threshold yet (%d candidates)", len(candidate_tokens))
                return PipelineResult(
                    success=False,
                    survivors=[],
                    flags=replace(flags),
                    pair=replace(pair) if pair is not None else PairSelection(),
                    stage_survivors=stage_survivors,
                )
            if self.strict:
                survivors = []
            return PipelineResult(
                success=True,
                survivors=survivors,
                flags=ctx.flags,
                pair=ctx.pair,
                stage_survivors=stage_survivors,
                fallback_stage=name,
            )
        return PipelineResult(
            success=True,
            survivors=survivors,
            flags=ctx.flags,
            pair=ctx.pair,
            stage_survivors=stage_survivors,
            completed=True,
        )


def check_checkpoint_order(record: InstrumentRecord) -> None:
    """Raise when a later checkpoint is set while an earlier one is not."""
    flags = [
        record.passed_threshold_cross,
        record.passed_peak_and_fall,
        record.passed_calc_ref,
        record.passed_interim_low,
    ]
    for earlier, later in zip(flags, flags[1:]):
        if later and not earlier:
            raise InvariantViolation(f"{record.symbol}: checkpoint flags out of order {flags}")



from __future__ import annotations

import logging

from optbot.config import StrategyParams
from optbot.strategy.contracts import Block, SessionState

LOGGER = logging.getLogger(__name__)


def live_trading_allowed(enable_trading: bool, cycle_number: int, live_cycles_limit: int | None) -> bool:
    if not enable_trading:
        return False
    if live_cycles_limit is not None and cycle_number >= live_cycles_limit:
        return False
    return True


def new_session_state(session_id: str, params: StrategyParams, *, cycle_number: int = 0) -> SessionState:
    return SessionState(
        session_id=session_id,
        params=params,
        block=Block.INIT,
        cycle_number=cycle_number,
        live_trading=live_trading_allowed(params.enable_trading, cycle_number, params.live_cycles_limit),
    )


class CycleController:
    """Replaces a finished cycle's state with a fresh one; only parameters survive."""

    def reset(self, state: SessionState) -> SessionState:
        next_cycle = state.cycle_number + 1
        fresh = new_session_state(state.session_id, state.params, cycle_number=next_cycle)
        if state.live_trading and not fresh.live_trading and state.params.enable_trading:
            LOGGER.info(
                "Session %s reached live cycle limit %s; cycle %d runs on paper",
                state.session_id,
                state.params.live_cycles_limit,
                next_cycle,
            )
        LOGGER.info(
            "Session %s cycle %d -> %d (realized %.2f over %d legs)",
            state.session_id,
            state.cycle_number,
            next_cycle,
            state.realized,
            len(state.legs),
        )
        return fresh

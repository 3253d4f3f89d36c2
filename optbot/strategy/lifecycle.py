from __future__ import annotations

import logging
import queue
from concurrent.futures import Future
from datetime import datetime
from typing import Any, Callable

from optbot.clock import utc_now
from optbot.execution.gateway import OrderGateway
from optbot.execution.models import FillEvent, OrderTicket
from optbot.strategy.contracts import (
    ExitBranch,
    InvariantViolation,
    Leg,
    LegRole,
    LifecycleStep,
    SessionState,
)

LOGGER = logging.getLogger(__name__)

Emit = Callable[[str, dict[str, Any]], None]


def _no_emit(kind: str, payload: dict[str, Any]) -> None:
    return None


class PositionLifecycleManager:
    """
    Drives the bought pair through target/stoploss, partial exits and buy-backs.

    Every decision is taken on the last traded price at order time. Broker
    fills arrive later through ``completions`` and only reprice the legs.
    """

    def __init__(
        self,
        gateway: OrderGateway,
        *,
        emit: Emit | None = None,
        now_fn: Callable[[], datetime] = utc_now,
    ):
        self.gateway = gateway
        self.emit = emit or _no_emit
        self.now_fn = now_fn
        self.completions: queue.Queue[FillEvent] = queue.Queue()

    # -- orders -----------------------------------------------------------------

    def _watch_fill(self, leg: Leg, ticket: OrderTicket) -> None:
        if ticket.fill is None:
            return

        def _on_done(future: Future) -> None:
            if future.cancelled():
                event = FillEvent(leg.leg_id, ticket.side, ticket.order_id, None, "cancelled")
            elif future.exception() is not None:
                event = FillEvent(leg.leg_id, ticket.side, ticket.order_id, None, str(future.exception()))
            else:
                event = FillEvent(leg.leg_id, ticket.side, ticket.order_id, future.result())
            self.completions.put(event)

        ticket.fill.add_done_callback(_on_done)

    def _report_order(self, state: SessionState, ticket: OrderTicket, leg: Leg, reason: str) -> None:
        payload = {
            "action": ticket.side.lower(),
            "reason": reason,
            "leg_id": leg.leg_id,
            "role": leg.role.value,
            "symbol": ticket.symbol,
            "price": ticket.reference_price,
            "quantity": ticket.quantity,
            "order_id": ticket.order_id,
            "paper": ticket.paper,
            "cycle": state.cycle_number,
        }
        self.emit("trade_action", payload)
        if ticket.error:
            self.emit("order_failed", {**payload, "error": ticket.error})

    def _open_leg(self, state: SessionState, token: int, role: LegRole, reason: str) -> Leg:
        record = state.instruments.get(token)
        if record is None:
            raise InvariantViolation(f"Cannot buy untracked token {token}")
        if record.bought:
            raise InvariantViolation(f"{record.symbol} already bought this cycle at {record.buy_price:.2f}")
        quantity = state.params.quantity
        ticket = self.gateway.place_buy(
            record.symbol,
            record.last,
            quantity,
            tag=f"c{state.cycle_number}{role.value[:3].lower()}",
            live=state.live_trading,
        )
        record.record_buy(ticket.reference_price)
        leg = Leg(
            leg_id=f"{state.session_id}:{state.cycle_number}:{len(state.legs) + 1}",
            token=token,
            symbol=record.symbol,
            option_type=record.option_type,
            role=role,
            quantity=quantity,
            buy_price=ticket.reference_price,
            reference_buy_price=ticket.reference_price,
            buy_order_id=ticket.order_id,
            opened_at=self.now_fn(),
        )
        state.legs.append(leg)
        self._watch_fill(leg, ticket)
        self._report_order(state, ticket, leg, reason)
        return leg

    def _close_leg(self, state: SessionState, leg: Leg, reason: str) -> None:
        if not leg.is_open:
            raise InvariantViolation(f"Leg {leg.leg_id} already closed")
        price = state.last_price(leg.token)
        ticket = self.gateway.place_sell(
            leg.symbol,
            price,
            leg.quantity,
            tag=f"c{state.cycle_number}sell",
            live=state.live_trading,
        )
        leg.sell_price = ticket.reference_price
        leg.reference_sell_price = ticket.reference_price
        leg.sell_order_id = ticket.order_id
        leg.closed_at = self.now_fn()
        self._watch_fill(leg, ticket)
        self._report_order(state, ticket, leg, reason)
        LOGGER.info(
            "Closed %s %s buy=%.2f sell=%.2f reason=%s realized=%.2f",
            leg.role.value,
            leg.symbol,
            leg.buy_price,
            price,
            reason,
            state.realized,
        )

    def _complete(self, state: SessionState) -> bool:
        state.entry_stage.advance(LifecycleStep.COMPLETE)
        state.lifecycle_complete = True
        LOGGER.info(
            "Lifecycle complete cycle=%d branch=%s realized=%.2f",
            state.cycle_number,
            state.entry_stage.branch.value if state.entry_stage.branch else None,
            state.realized,
        )
        return True

    # -- entry ------------------------------------------------------------------

    def enter(self, state: SessionState, bought_token: int, opp_token: int) -> bool:
        if state.entry_stage.current is not None:
            raise InvariantViolation("Entry requested while a lifecycle is already running")
        if bought_token == opp_token:
            raise InvariantViolation(f"Entry pair uses token {bought_token} twice")
        for token in (bought_token, opp_token):
            record = state.instruments.get(token)
            if record is None:
                LOGGER.info("Entry token %s not observed yet; waiting", token)
                return False
            if record.bought:
                raise InvariantViolation(f"{record.symbol} already bought this cycle")

        self._open_leg(state, bought_token, LegRole.MAIN, "entry")
        self._open_leg(state, opp_token, LegRole.OPPOSITE, "entry")
        state.bought_token = bought_token
        state.opp_bought_token = opp_token
        state.entry_stage.advance(LifecycleStep.ENTERED)
        return True

    # -- evaluation -------------------------------------------------------------

    def evaluate(self, state: SessionState) -> bool:
        """Take at most one exit decision; returns True once the lifecycle is complete."""
        step = state.entry_stage.current
        if step is None:
            raise InvariantViolation("evaluate() called before entry")
        if step == LifecycleStep.COMPLETE:
            return True
        if step == LifecycleStep.ENTERED:
            return self._evaluate_pair(state)
        if step == LifecycleStep.FIRST_EXIT:
            return self._evaluate_remaining(state)
        if step == LifecycleStep.BUY_BACK:
            return self._evaluate_buy_back(state)
        raise InvariantViolation(f"Lifecycle parked on transient step {step.value}")

    def _evaluate_pair(self, state: SessionState) -> bool:
        params = state.params
        legs = state.open_legs()
        if len(legs) != 2:
            raise InvariantViolation(f"Expected two open legs, found {len(legs)}")
        mtm = state.mtm
        if mtm >= params.target or mtm <= params.stoploss:
            reason = "target" if mtm >= params.target else "stoploss"
            state.entry_stage.choose_branch(ExitBranch.TARGET_STOPLOSS)
            for leg in legs:
                self._close_leg(state, leg, reason)
            return self._complete(state)

        ceiling = params.partial_exit_mtm_ceiling
        for leg in legs:
            change = state.instruments[leg.token].change_from_buy
            if change >= params.partial_exit_upper and (ceiling is None or mtm <= ceiling):
                return self._partial_exit(state, leg, ExitBranch.UPPER_PARTIAL)
        for leg in legs:
            change = state.instruments[leg.token].change_from_buy
            if change <= params.partial_exit_lower:
                return self._partial_exit(state, leg, ExitBranch.LOWER_PARTIAL)
        return False

    def _partial_exit(self, state: SessionState, leg: Leg, branch: ExitBranch) -> bool:
        state.entry_stage.choose_branch(branch)
        self._close_leg(state, leg, branch.value.lower())
        state.entry_stage.advance(LifecycleStep.FIRST_EXIT)
        state.residual_target = state.params.target - state.realized
        remaining = self._single_open_leg(state)
        state.remaining_ref_price = state.last_price(remaining.token)
        LOGGER.info(
            "Partial exit %s on %s; residual target %.2f, remaining %s from %.2f",
            branch.value,
            leg.symbol,
            state.residual_target,
            remaining.symbol,
            state.remaining_ref_price,
        )
        return False

    def _single_open_leg(self, state: SessionState) -> Leg:
        legs = state.open_legs()
        if len(legs) != 1:
            raise InvariantViolation(f"Expected one open leg, found {len(legs)}")
        return legs[0]

    def _evaluate_remaining(self, state: SessionState) -> bool:
        params = state.params
        leg = self._single_open_leg(state)
        record = state.instruments[leg.token]
        change = record.change_from_buy
        # Buy-back trigger is measured from the price at the partial exit, not from the buy.
        anchor = state.remaining_ref_price if state.remaining_ref_price is not None else record.buy_price
        residual = state.residual_target if state.residual_target is not None else params.target
        if change >= residual:
            reason = "residual_target"
        elif state.realized + change <= params.stoploss:
            reason = "stoploss"
        elif record.last - anchor <= params.buy_back_trigger:
            reason = "buy_back_trigger"
        else:
            return False

        self._close_leg(state, leg, reason)
        state.entry_stage.advance(LifecycleStep.SECOND_EXIT)
        if reason == "buy_back_trigger" and params.buy_back_enabled and params.max_buy_backs > 0:
            return self._buy_back(state, leg)
        return self._complete(state)

    def _evaluate_buy_back(self, state: SessionState) -> bool:
        params = state.params
        leg = self._single_open_leg(state)
        change = state.instruments[leg.token].change_from_buy
        residual = state.residual_target if state.residual_target is not None else params.target
        if change >= residual:
            reason = "residual_target"
        elif state.realized + change <= params.stoploss:
            reason = "stoploss"
        elif change <= params.buy_back_stoploss:
            reason = "buy_back_stoploss"
        else:
            return False

        self._close_leg(state, leg, reason)
        state.entry_stage.advance(LifecycleStep.BUY_BACK_EXIT)
        if reason == "buy_back_stoploss" and state.buy_backs_done < params.max_buy_backs:
            return self._buy_back(state, leg)
        return self._complete(state)

    def select_buy_back_token(self, state: SessionState, option_type: str | None) -> int | None:
        """Unbought instrument of ``option_type`` priced closest to the buy-back premium, preferring at or below."""
        premium = state.params.buy_back_premium
        candidates = [
            record
            for record in state.instruments.values()
            if record.option_type == option_type and not record.bought and record.last > 0
        ]
        if not candidates:
            return None
        below = [record for record in candidates if record.last <= premium]
        if below:
            return max(below, key=lambda record: record.last).token
        return min(candidates, key=lambda record: abs(record.last - premium)).token

    def _buy_back(self, state: SessionState, sold_leg: Leg) -> bool:
        wanted = "PE" if sold_leg.option_type == "CE" else "CE"
        token = self.select_buy_back_token(state, wanted)
        if token is None:
            LOGGER.info("No %s instrument available for buy-back; closing lifecycle", wanted)
            return self._complete(state)
        state.entry_stage.advance(LifecycleStep.BUY_BACK)
        self._open_leg(state, token, LegRole.BUY_BACK, "buy_back")
        state.buy_back_token = token
        state.buy_backs_done += 1
        state.residual_target = state.params.target - state.realized
        LOGGER.info(
            "Buy-back %s at %.2f residual target %.2f (buy-backs=%d)",
            state.instruments[token].symbol,
            state.instruments[token].buy_price,
            state.residual_target,
            state.buy_backs_done,
        )
        return False

    # -- fills ------------------------------------------------------------------

    def reconcile(self, state: SessionState, event: FillEvent) -> bool:
        leg = next((item for item in state.legs if item.leg_id == event.leg_id), None)
        if leg is None:
            LOGGER.debug("Fill for %s belongs to a finished cycle; ignored", event.leg_id)
            return False
        if event.price is None or event.price <= 0:
            LOGGER.warning(
                "Fill unresolved for %s %s (%s); keeping reference price",
                event.side,
                leg.symbol,
                event.error or "no price",
            )
            return False
        if event.side == "BUY":
            leg.buy_price = float(event.price)
            record = state.instruments.get(leg.token)
            if record is not None:
                record.reprice_buy(float(event.price))
        else:
            leg.sell_price = float(event.price)
        LOGGER.info("Reconciled %s %s fill=%.2f", event.side, leg.symbol, event.price)
        return True

    def drain(self, state: SessionState) -> int:
        applied = 0
        while True:
            try:
                event = self.completions.get_nowait()
            except queue.Empty:
                return applied
            if self.reconcile(state, event):
                applied += 1

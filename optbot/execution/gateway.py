from __future__ import annotations

import logging
import time
import uuid
from concurrent.futures import Future, ThreadPoolExecutor
from datetime import datetime, timezone
from typing import Callable

from optbot.config import KiteConfig
from optbot.data.kite_client import KiteAPIError, KiteClient, last_complete_average_price
from optbot.execution.models import FillUnresolved, OrderTicket

LOGGER = logging.getLogger(__name__)


class OrderGateway:
    """
    Places buy/sell orders for one session.

    Paper tickets are accepted immediately and carry no fill future. Live
    tickets resolve their fill price on a worker pool by polling the order
    history, so callers never wait on the broker.
    """

    def __init__(
        self,
        *,
        client: KiteClient | None,
        config: KiteConfig,
        executor: ThreadPoolExecutor | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.client = client
        self.config = config
        self._owns_executor = executor is None and client is not None
        self._executor = executor
        if self._owns_executor:
            self._executor = ThreadPoolExecutor(
                max_workers=config.fill_workers,
                thread_name_prefix="fill-poll",
            )
        self._sleep = sleep

    def place_buy(
        self,
        symbol: str,
        reference_price: float,
        quantity: int,
        tag: str | None = None,
        *,
        live: bool = False,
    ) -> OrderTicket:
        return self._place("BUY", symbol, reference_price, quantity, tag, live=live)

    def place_sell(
        self,
        symbol: str,
        reference_price: float,
        quantity: int,
        tag: str | None = None,
        *,
        live: bool = False,
    ) -> OrderTicket:
        return self._place("SELL", symbol, reference_price, quantity, tag, live=live)

    def _paper_ticket(
        self,
        side: str,
        symbol: str,
        reference_price: float,
        quantity: int,
        tag: str | None,
        *,
        accepted: bool = True,
        error: str | None = None,
    ) -> OrderTicket:
        return OrderTicket(
            side=side,
            symbol=symbol,
            reference_price=reference_price,
            quantity=quantity,
            tag=tag,
            accepted=accepted,
            order_id=f"PAPER-{side}-{uuid.uuid4().hex[:12]}",
            paper=True,
            created_at=datetime.now(timezone.utc),
            error=error,
        )

    def _place(
        self,
        side: str,
        symbol: str,
        reference_price: float,
        quantity: int,
        tag: str | None,
        *,
        live: bool,
    ) -> OrderTicket:
        if not live or self.client is None:
            ticket = self._paper_ticket(side, symbol, reference_price, quantity, tag)
            LOGGER.info(
                "PAPER %s %s qty=%d ref=%.2f id=%s",
                side,
                symbol,
                quantity,
                reference_price,
                ticket.order_id,
            )
            return ticket

        try:
            order_id = self.client.place_order(
                symbol=symbol,
                side=side,
                quantity=quantity,
                price=reference_price,
                exchange=self.config.exchange,
                product=self.config.product,
                order_type=self.config.order_type,
                variety=self.config.variety,
                tag=tag,
            )
        except KiteAPIError as exc:
            LOGGER.warning("Order %s %s failed, continuing on paper: %s", side, symbol, exc)
            return self._paper_ticket(
                side,
                symbol,
                reference_price,
                quantity,
                tag,
                accepted=False,
                error=str(exc),
            )

        ticket = OrderTicket(
            side=side,
            symbol=symbol,
            reference_price=reference_price,
            quantity=quantity,
            tag=tag,
            accepted=True,
            order_id=order_id,
            paper=False,
            created_at=datetime.now(timezone.utc),
        )
        ticket.fill = self._submit_fill_poll(order_id)
        LOGGER.info(
            "LIVE %s %s qty=%d ref=%.2f order_id=%s",
            side,
            symbol,
            quantity,
            reference_price,
            order_id,
        )
        return ticket

    def _submit_fill_poll(self, order_id: str) -> Future:
        assert self._executor is not None
        return self._executor.submit(self._resolve_fill, order_id)

    def _resolve_fill(self, order_id: str) -> float:
        assert self.client is not None
        last_error: Exception | None = None
        for attempt in range(1, self.config.fill_poll_attempts + 1):
            try:
                history = self.client.get_order_history(order_id)
            except KiteAPIError as exc:
                last_error = exc
                LOGGER.debug("Order history poll failed order_id=%s attempt=%d: %s", order_id, attempt, exc)
            else:
                price = last_complete_average_price(history)
                if price is not None:
                    return price
            if attempt < self.config.fill_poll_attempts:
                self._sleep(self.config.fill_poll_interval_seconds)
        message = f"No positive fill price for order {order_id}"
        if last_error is not None:
            message += f" ({last_error})"
        raise FillUnresolved(message)

    def shutdown(self, wait: bool = False) -> None:
        if self._owns_executor and self._executor is not None:
            self._executor.shutdown(wait=wait, cancel_futures=True)

from __future__ import annotations

from concurrent.futures import Future
from dataclasses import dataclass, field
from datetime import datetime


class FillUnresolved(RuntimeError):
    """Order history never produced a positive average price."""


@dataclass(slots=True)
class OrderTicket:
    side: str
    symbol: str
    reference_price: float
    quantity: int
    tag: str | None
    accepted: bool
    order_id: str
    paper: bool
    created_at: datetime
    fill: Future | None = None
    error: str | None = None


@dataclass(slots=True)
class FillEvent:
    leg_id: str
    side: str
    order_id: str
    price: float | None
    error: str | None = None
    metadata: dict[str, str] = field(default_factory=dict)

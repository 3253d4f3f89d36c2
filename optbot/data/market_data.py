from __future__ import annotations

import logging
from datetime import datetime, timezone

from optbot.data.kite_client import KiteAPIError, KiteAuthError, KiteClient
from optbot.data.ticks import Tick, ticks_from_payload

LOGGER = logging.getLogger(__name__)


def _instrument_key(exchange: str, symbol: str) -> str:
    if ":" in symbol:
        return symbol.strip().upper()
    return f"{exchange.strip().upper()}:{symbol.strip().upper()}"


class LtpFeed:
    """Polls last traded prices for a fixed instrument list and turns them into a tick batch."""

    def __init__(self, client: KiteClient, instruments: list[str], *, exchange: str = "NFO"):
        self.client = client
        self.keys = [_instrument_key(exchange, item) for item in instruments]
        self.last_batch_at: datetime | None = None

    def fetch_batch(self) -> list[Tick]:
        if not self.keys:
            return []
        try:
            quotes = self.client.get_ltp(self.keys)
        except KiteAuthError:
            raise
        except KiteAPIError as exc:
            LOGGER.warning("Could not fetch LTP batch (%d instruments): %s", len(self.keys), exc)
            return []
        now = datetime.now(timezone.utc)
        rows = []
        for key, quote in quotes.items():
            if not isinstance(quote, dict):
                continue
            rows.append(
                {
                    "instrument_token": quote.get("instrument_token"),
                    "tradingsymbol": key.split(":", 1)[-1],
                    "last_price": quote.get("last_price"),
                    "timestamp": now,
                }
            )
        self.last_batch_at = now
        return ticks_from_payload(rows)

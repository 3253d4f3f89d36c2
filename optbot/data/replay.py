from __future__ import annotations

import logging
from pathlib import Path
from typing import Iterator

import pandas as pd

from optbot.data.ticks import Tick

LOGGER = logging.getLogger(__name__)

_REQUIRED_COLUMNS = ("instrument_token", "tradingsymbol", "last_price")
_COLUMN_ALIASES = {
    "token": "instrument_token",
    "symbol": "tradingsymbol",
    "ltp": "last_price",
    "lastprice": "last_price",
}


class ReplayFeedError(ValueError):
    pass


class ReplayFeed:
    """
    Tick batches recorded to CSV.

    Rows are grouped by a ``batch`` column when present, otherwise by
    ``timestamp``; groups are yielded in the order they first appear.
    """

    def __init__(self, path: str | Path):
        self.path = Path(path)
        self._frame: pd.DataFrame | None = None

    def _load(self) -> pd.DataFrame:
        if self._frame is not None:
            return self._frame
        if not self.path.exists():
            raise ReplayFeedError(f"Replay file not found: {self.path}")
        frame = pd.read_csv(self.path)
        frame.columns = [str(col).strip().lower() for col in frame.columns]
        frame = frame.rename(columns={key: value for key, value in _COLUMN_ALIASES.items() if key in frame.columns})
        missing = [col for col in _REQUIRED_COLUMNS if col not in frame.columns]
        if missing:
            raise ReplayFeedError(f"Replay file {self.path} missing columns: {', '.join(missing)}")
        if "batch" not in frame.columns and "timestamp" not in frame.columns:
            raise ReplayFeedError(f"Replay file {self.path} needs a batch or timestamp column")

        frame["instrument_token"] = pd.to_numeric(frame["instrument_token"], errors="coerce")
        frame["last_price"] = pd.to_numeric(frame["last_price"], errors="coerce")
        frame["tradingsymbol"] = frame["tradingsymbol"].astype(str).str.strip().str.upper()
        if "timestamp" in frame.columns:
            frame["timestamp"] = pd.to_datetime(frame["timestamp"], errors="coerce", utc=True)
        before = len(frame)
        frame = frame.dropna(subset=["instrument_token", "last_price"])
        frame = frame[frame["last_price"] > 0]
        dropped = before - len(frame)
        if dropped:
            LOGGER.warning("Replay %s: dropped %d malformed rows", self.path.name, dropped)
        self._frame = frame.reset_index(drop=True)
        return self._frame

    def __len__(self) -> int:
        frame = self._load()
        key = "batch" if "batch" in frame.columns else "timestamp"
        return int(frame[key].nunique())

    def batches(self) -> Iterator[list[Tick]]:
        frame = self._load()
        key = "batch" if "batch" in frame.columns else "timestamp"
        for _, group in frame.groupby(key, sort=False):
            ticks: list[Tick] = []
            for row in group.itertuples(index=False):
                timestamp = getattr(row, "timestamp", None)
                if timestamp is not None and pd.isna(timestamp):
                    timestamp = None
                ticks.append(
                    Tick(
                        token=int(row.instrument_token),
                        symbol=str(row.tradingsymbol),
                        last_price=float(row.last_price),
                        timestamp=timestamp.to_pydatetime() if timestamp is not None else None,
                    )
                )
            yield ticks

    def __iter__(self) -> Iterator[list[Tick]]:
        return self.batches()

from __future__ import annotations

import json
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable


class DashboardWriter:
    """Atomic JSON snapshot of every session, rewritten at most once per interval."""

    def __init__(
        self,
        path: str | Path,
        *,
        interval_seconds: float = 0.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.path = Path(path)
        self.interval_seconds = max(0.0, float(interval_seconds))
        self._clock = clock
        self._last_write: float | None = None

    def due(self) -> bool:
        if self._last_write is None:
            return True
        return (self._clock() - self._last_write) >= self.interval_seconds

    def write(self, payload: dict[str, Any]) -> None:
        snapshot = {
            "updated_at": datetime.now(timezone.utc).isoformat(),
            **payload,
        }
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        tmp_path.write_text(json.dumps(snapshot, indent=2, ensure_ascii=True, default=str), encoding="utf-8")
        tmp_path.replace(self.path)
        self._last_write = self._clock()

    def maybe_write(self, payload_fn: Callable[[], dict[str, Any]]) -> bool:
        if not self.due():
            return False
        self.write(payload_fn())
        return True

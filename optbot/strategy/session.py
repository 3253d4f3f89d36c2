from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Callable, Iterable

from pydantic import ValidationError

from optbot.clock import utc_now
from optbot.config import AppConfig, SessionConfig, StrategyParams
from optbot.data.ticks import Tick
from optbot.execution.gateway import OrderGateway
from optbot.monitoring.events import EventSink
from optbot.strategy.contracts import Block
from optbot.strategy.profiles import params_for_session
from optbot.strategy.state_machine import StrategyEngine

LOGGER = logging.getLogger(__name__)

# Changing these while a position is open would corrupt its accounting.
ACCOUNTING_PARAMETERS = frozenset({"quantity", "enable_trading"})


class StrategySession:
    def __init__(self, *, user_id: str, profile: str, engine: StrategyEngine):
        self.user_id = user_id
        self.profile = profile
        self.engine = engine

    @classmethod
    def from_config(
        cls,
        session: SessionConfig,
        *,
        app_config: AppConfig,
        gateway: OrderGateway,
        sink: EventSink | None = None,
        now_fn: Callable[[], datetime] = utc_now,
    ) -> "StrategySession":
        engine = StrategyEngine(
            session_id=session.user_id,
            params=params_for_session(session),
            gateway=gateway,
            ranges=app_config.ranges,
            engine_config=app_config.engine,
            timezone_name=app_config.timezone,
            sink=sink,
            now_fn=now_fn,
        )
        return cls(user_id=session.user_id, profile=session.strategy, engine=engine)

    @property
    def params(self) -> StrategyParams:
        return self.engine.state.params

    def process_batch(self, ticks: Iterable[Tick]) -> Block:
        return self.engine.process_batch(ticks)

    def _reject(self, name: str, value: Any, reason: str) -> bool:
        LOGGER.warning("Session %s rejected %s=%r: %s", self.user_id, name, value, reason)
        self.engine.emit("parameter_error", {"name": name, "value": value, "reason": reason})
        return False

    def update_parameter(self, name: str, value: Any) -> bool:
        with self.engine.lock:
            if name not in StrategyParams.model_fields:
                return self._reject(name, value, "unknown parameter")
            if name in ACCOUNTING_PARAMETERS and self.engine.in_lifecycle:
                return self._reject(name, value, f"locked while block is {self.engine.block.value}")
            candidate = self.params.model_dump()
            candidate[name] = value
            try:
                updated = StrategyParams.model_validate(candidate)
            except ValidationError as exc:
                return self._reject(name, value, str(exc.errors()[0].get("msg", exc)))
            self.engine.update_params(updated)
            LOGGER.info("Session %s parameter %s=%r", self.user_id, name, value)
            self.engine.emit("parameter_update", {"name": name, "value": getattr(updated, name)})
            return True

    def describe(self) -> dict[str, Any]:
        snapshot = self.engine.snapshot()
        snapshot["user_id"] = self.user_id
        snapshot["profile"] = self.profile
        return snapshot


class SessionManager:
    """One independent session per user; batches are fanned out to every session."""

    def __init__(self) -> None:
        self._sessions: dict[str, StrategySession] = {}

    @classmethod
    def from_config(
        cls,
        config: AppConfig,
        *,
        gateway: OrderGateway,
        sink: EventSink | None = None,
        now_fn: Callable[[], datetime] = utc_now,
    ) -> "SessionManager":
        manager = cls()
        for session in config.sessions:
            manager.add(
                StrategySession.from_config(
                    session,
                    app_config=config,
                    gateway=gateway,
                    sink=sink,
                    now_fn=now_fn,
                )
            )
        return manager

    def add(self, session: StrategySession) -> None:
        if session.user_id in self._sessions:
            raise ValueError(f"Session for user '{session.user_id}' already exists")
        self._sessions[session.user_id] = session

    def remove(self, user_id: str) -> StrategySession | None:
        return self._sessions.pop(user_id, None)

    def get(self, user_id: str) -> StrategySession:
        return self._sessions[user_id]

    def __len__(self) -> int:
        return len(self._sessions)

    def process_batch(self, ticks: Iterable[Tick]) -> dict[str, Block]:
        batch = list(ticks)
        blocks: dict[str, Block] = {}
        for user_id, session in self._sessions.items():
            try:
                blocks[user_id] = session.process_batch(batch)
            except Exception:  # noqa: BLE001
                LOGGER.exception("Session %s failed on batch", user_id)
        return blocks

    def describe(self) -> dict[str, Any]:
        return {"sessions": [session.describe() for session in self._sessions.values()]}

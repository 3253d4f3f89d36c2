from __future__ import annotations

from datetime import datetime, timezone

import pytest

from optbot.config import AppConfig, KiteConfig, SessionConfig
from optbot.data.ticks import Tick
from optbot.execution.gateway import OrderGateway
from optbot.monitoring.events import EventRecorder
from optbot.strategy.contracts import Block
from optbot.strategy.session import SessionManager, StrategySession


def _now() -> datetime:
    return datetime(2026, 2, 9, 4, 30, tzinfo=timezone.utc)


def _manager(recorder: EventRecorder) -> SessionManager:
    config = AppConfig(
        sessions=[
            SessionConfig(user_id="alice", strategy="MTM"),
            SessionConfig(user_id="bob", strategy="strategy-x"),
        ]
    )
    return SessionManager.from_config(
        config,
        gateway=OrderGateway(client=None, config=KiteConfig()),
        sink=recorder,
        now_fn=_now,
    )


def test_sessions_are_built_from_profiles() -> None:
    manager = _manager(EventRecorder())
    assert len(manager) == 2
    assert manager.get("alice").params.target == 7.0
    assert manager.get("bob").params.target == 9.0
    assert manager.get("bob").params.quantity == 65
    assert manager.get("bob").profile == "STRATEGY_X"


def test_parameter_update_applies_to_one_session_only() -> None:
    recorder = EventRecorder()
    manager = _manager(recorder)

    assert manager.get("alice").update_parameter("target", 12)

    assert manager.get("alice").params.target == 12.0
    assert manager.get("bob").params.target == 9.0
    updates = recorder.events("parameter_update", session_id="alice")
    assert updates[0].payload == {"name": "target", "value": 12.0}


def test_unknown_or_invalid_parameter_is_rejected() -> None:
    recorder = EventRecorder()
    session = _manager(recorder).get("alice")

    assert not session.update_parameter("bogus", 1)
    assert not session.update_parameter("stoploss", 50)
    assert not session.update_parameter("quantity", "many")

    assert session.params.stoploss == -100.0
    errors = recorder.events("parameter_error")
    assert [event.payload["name"] for event in errors] == ["bogus", "stoploss", "quantity"]


def test_accounting_parameters_locked_during_lifecycle() -> None:
    recorder = EventRecorder()
    session = _manager(recorder).get("alice")
    session.engine.state.block = Block.TRADE

    assert not session.update_parameter("quantity", 50)
    assert not session.update_parameter("enable_trading", True)
    assert session.update_parameter("target", 10)
    assert session.params.quantity == 75

    session.engine.state.block = Block.UPDATE
    assert session.update_parameter("quantity", 50)
    assert session.params.quantity == 50


def test_enable_trading_update_recomputes_live_flag() -> None:
    session = _manager(EventRecorder()).get("alice")
    assert not session.engine.state.live_trading
    assert session.update_parameter("enable_trading", True)
    assert session.engine.state.live_trading


def test_duplicate_session_is_rejected() -> None:
    manager = _manager(EventRecorder())
    duplicate = StrategySession.from_config(
        SessionConfig(user_id="alice"),
        app_config=AppConfig(),
        gateway=OrderGateway(client=None, config=KiteConfig()),
    )
    with pytest.raises(ValueError):
        manager.add(duplicate)
    assert manager.remove("alice") is not None
    manager.add(duplicate)
    assert len(manager) == 2


def test_failing_session_does_not_block_others(monkeypatch: pytest.MonkeyPatch) -> None:
    manager = _manager(EventRecorder())

    def _boom(ticks: object) -> Block:
        raise RuntimeError("boom")

    monkeypatch.setattr(manager.get("alice"), "process_batch", _boom)
    blocks = manager.process_batch(
        [Tick(1, "NIFTY26FEB26000CE", 180.0), Tick(2, "NIFTY26FEB25000PE", 190.0)]
    )

    assert blocks == {"bob": Block.UPDATE}


def test_describe_lists_every_session() -> None:
    manager = _manager(EventRecorder())
    described = manager.describe()["sessions"]
    assert [item["user_id"] for item in described] == ["alice", "bob"]
    assert described[1]["profile"] == "STRATEGY_X"
    assert described[0]["block"] == "INIT"

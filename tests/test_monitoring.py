from __future__ import annotations

import json
from pathlib import Path
from typing import Any

import pytest
import requests

from optbot.monitoring.alerts import AlertConfig, AlertSink
from optbot.monitoring.dashboard import DashboardWriter
from optbot.monitoring.events import EventRecorder, FanOutSink, StatusEvent


class _Clock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


class _Post:
    def __init__(self, fail: bool = False):
        self.fail = fail
        self.calls: list[tuple[str, dict[str, Any]]] = []

    def __call__(self, url: str, json: dict[str, Any], timeout: int) -> "_Post":
        self.calls.append((url, json))
        if self.fail:
            raise requests.ConnectionError("unreachable")
        return self

    def raise_for_status(self) -> None:
        return None


def _sink(post: _Post, clock: _Clock) -> AlertSink:
    config = AlertConfig(
        discord_webhook="https://discord.example/webhook",
        telegram_bot_token="bot",
        telegram_chat_id="42",
        cooldown_seconds=30,
    )
    return AlertSink(config, post=post, clock=clock)


def test_only_error_events_are_alerted_with_cooldown() -> None:
    post, clock = _Post(), _Clock()
    sink = _sink(post, clock)

    sink.publish(StatusEvent("trade_action", "u1", {"action": "buy"}))
    assert post.calls == []

    stalled = StatusEvent("stalled", "u1", {"block": "INIT", "cycle": 0})
    sink.publish(stalled)
    assert len(post.calls) == 2
    assert "[WARNING] stalled: session=u1 INIT" in post.calls[0][1]["content"]
    assert post.calls[1][0] == "https://api.telegram.org/botbot/sendMessage"

    sink.publish(stalled)
    assert len(post.calls) == 2
    sink.publish(StatusEvent("stalled", "u2", {"block": "INIT"}))
    assert len(post.calls) == 4

    clock.now += 31
    sink.publish(stalled)
    assert len(post.calls) == 6


def test_alert_transport_failure_is_logged_not_raised() -> None:
    sink = _sink(_Post(fail=True), _Clock())
    assert sink.send(event="order_failed", message="margin")


def test_disabled_alerts_send_nothing() -> None:
    post = _Post()
    sink = AlertSink(AlertConfig(enabled=False, discord_webhook="https://x"), post=post, clock=_Clock())
    assert not sink.send(event="stalled", message="x")
    assert post.calls == []


def test_fan_out_isolates_failing_sink() -> None:
    class _Broken:
        def publish(self, event: StatusEvent) -> None:
            raise RuntimeError("down")

    recorder = EventRecorder(maxlen=2)
    fan_out = FanOutSink(_Broken(), recorder)
    for kind in ("block_transition", "trade_action", "cycle_complete"):
        fan_out.publish(StatusEvent(kind, "u1"))

    assert recorder.kinds() == ["trade_action", "cycle_complete"]
    assert recorder.recent(1)[0]["kind"] == "cycle_complete"


def test_dashboard_writes_atomically_on_interval(tmp_path: Path) -> None:
    clock = _Clock()
    path = tmp_path / "runtime" / "dashboard.json"
    writer = DashboardWriter(path, interval_seconds=5, clock=clock)

    assert writer.maybe_write(lambda: {"sessions": [{"user_id": "u1"}]})
    assert not writer.maybe_write(lambda: {"sessions": []})
    clock.now += 5
    assert writer.maybe_write(lambda: {"sessions": []})

    payload = json.loads(path.read_text(encoding="utf-8"))
    assert payload["sessions"] == []
    assert "updated_at" in payload
    assert not path.with_suffix(".json.tmp").exists()


def test_unknown_event_kind_is_rejected() -> None:
    with pytest.raises(ValueError):
        StatusEvent("mystery", "u1")

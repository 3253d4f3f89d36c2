from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Callable

import requests

from optbot.monitoring.events import ERROR_KINDS, StatusEvent

LOGGER = logging.getLogger(__name__)

_LEVELS = {
    "invariant_violation": "error",
    "order_failed": "warning",
    "stalled": "warning",
    "parameter_error": "info",
}


@dataclass(slots=True)
class AlertConfig:
    enabled: bool = True
    discord_webhook: str | None = None
    telegram_bot_token: str | None = None
    telegram_chat_id: str | None = None
    cooldown_seconds: int = 30


class AlertSink:
    """Forwards error-class status events to Discord/Telegram webhooks."""

    def __init__(
        self,
        config: AlertConfig,
        *,
        post: Callable[..., requests.Response] = requests.post,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.config = config
        self._post = post
        self._clock = clock
        self._last_sent_ts: dict[str, float] = {}

    def publish(self, event: StatusEvent) -> None:
        if event.kind not in ERROR_KINDS:
            return
        summary = event.payload.get("error") or event.payload.get("reason") or event.payload.get("block") or ""
        self.send(
            event=event.kind,
            message=f"session={event.session_id} {summary}".strip(),
            level=_LEVELS.get(event.kind, "info"),
            context={"cycle": event.payload.get("cycle")} if "cycle" in event.payload else None,
            dedupe_key=f"{event.session_id}:{event.kind}",
        )

    def send(
        self,
        *,
        event: str,
        message: str,
        level: str = "info",
        context: dict[str, Any] | None = None,
        dedupe_key: str | None = None,
    ) -> bool:
        if not self.config.enabled:
            return False
        key = dedupe_key or event
        now = self._clock()
        prev = self._last_sent_ts.get(key)
        if prev is not None and (now - prev) < self.config.cooldown_seconds:
            return False
        self._last_sent_ts[key] = now

        details = f"[{level.upper()}] {event}: {message}"
        if context:
            details += " | " + " ".join(f"{k}={v}" for k, v in context.items())

        self._send_discord(details)
        self._send_telegram(details)
        return True

    def _send_discord(self, text: str) -> None:
        webhook = (self.config.discord_webhook or "").strip()
        if not webhook:
            return
        try:
            response = self._post(webhook, json={"content": text}, timeout=10)
            response.raise_for_status()
        except requests.RequestException as exc:
            LOGGER.warning("Discord alert failed: %s", exc)

    def _send_telegram(self, text: str) -> None:
        bot_token = (self.config.telegram_bot_token or "").strip()
        chat_id = (self.config.telegram_chat_id or "").strip()
        if not bot_token or not chat_id:
            return
        url = f"https://api.telegram.org/bot{bot_token}/sendMessage"
        try:
            response = self._post(url, json={"chat_id": chat_id, "text": text}, timeout=10)
            response.raise_for_status()
        except requests.RequestException as exc:
            LOGGER.warning("Telegram alert failed: %s", exc)

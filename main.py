from __future__ import annotations

import argparse
import logging
import os
import signal
import threading
import time
from pathlib import Path
from typing import Iterator

from dotenv import load_dotenv

from optbot.config import AppConfig, load_config
from optbot.data.kite_client import KiteAPIError, KiteAuthError, KiteClient
from optbot.data.market_data import LtpFeed
from optbot.data.replay import ReplayFeed
from optbot.data.ticks import Tick
from optbot.execution.gateway import OrderGateway
from optbot.monitoring.alerts import AlertConfig, AlertSink
from optbot.monitoring.dashboard import DashboardWriter
from optbot.monitoring.events import EventRecorder, FanOutSink
from optbot.strategy.session import SessionManager

LOGGER = logging.getLogger(__name__)


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Tick-driven options strategy engine (Kite Connect)")
    parser.add_argument("--config", default="config.yaml", help="Path to YAML config")
    parser.add_argument("--replay", default=None, help="Replay tick batches from a CSV file instead of polling LTP")
    parser.add_argument(
        "--live",
        action="store_true",
        help="Allow live orders for sessions with enable_trading (otherwise everything is paper)",
    )
    parser.add_argument("--max-batches", type=int, default=None, help="Stop after this many batches")
    return parser.parse_args(argv)


def setup_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
    )


def build_client(config: AppConfig, live: bool) -> KiteClient | None:
    api_key = os.getenv("KITE_API_KEY")
    access_token = os.getenv("KITE_ACCESS_TOKEN")
    if live and not (api_key and access_token):
        raise RuntimeError("Live mode requires KITE_API_KEY and KITE_ACCESS_TOKEN in .env")
    if not (api_key and access_token):
        LOGGER.warning("Kite credentials missing. Running without broker connectivity.")
        return None
    kite = config.kite
    return KiteClient(
        base_url=os.getenv("KITE_BASE_URL", kite.base_url),
        api_key=api_key,
        access_token=access_token,
        timeout_seconds=kite.timeout_seconds,
        rate_limit_rps=float(os.getenv("KITE_RATE_LIMIT_RPS", str(kite.rate_limit_rps))),
        rate_limit_burst=int(os.getenv("KITE_RATE_LIMIT_BURST", str(kite.rate_limit_burst))),
        request_max_attempts=int(os.getenv("KITE_REQUEST_MAX_ATTEMPTS", str(kite.request_max_attempts))),
        backoff_base_seconds=float(os.getenv("KITE_BACKOFF_BASE_SECONDS", str(kite.backoff_base_seconds))),
        backoff_max_seconds=float(os.getenv("KITE_BACKOFF_MAX_SECONDS", str(kite.backoff_max_seconds))),
    )


def build_alert_sink(config: AppConfig) -> AlertSink:
    return AlertSink(
        AlertConfig(
            enabled=config.monitoring.alerts_enabled,
            discord_webhook=os.getenv("ALERT_DISCORD_WEBHOOK"),
            telegram_bot_token=os.getenv("ALERT_TELEGRAM_BOT_TOKEN"),
            telegram_chat_id=os.getenv("ALERT_TELEGRAM_CHAT_ID"),
            cooldown_seconds=int(os.getenv("ALERT_COOLDOWN_SECONDS", str(config.monitoring.alert_cooldown_seconds))),
        )
    )


def resolve_path(root: Path, raw: str) -> Path:
    path = Path(raw)
    return path if path.is_absolute() else root / path


def _dashboard_payload(manager: SessionManager, recorder: EventRecorder, client: KiteClient | None, mode: str) -> dict:
    return {
        "mode": mode,
        "api": client.metrics_snapshot() if client is not None else {},
        **manager.describe(),
        "events": recorder.recent(50),
    }


def _polling_batches(feed: LtpFeed, stop_event: threading.Event, loop_seconds: float) -> Iterator[list[Tick]]:
    while not stop_event.is_set():
        started = time.monotonic()
        try:
            batch = feed.fetch_batch()
        except KiteAuthError as exc:
            LOGGER.error("Kite rejected the access token, stopping feed: %s", exc)
            return
        yield batch
        stop_event.wait(max(0.0, loop_seconds - (time.monotonic() - started)))


def run(argv: list[str] | None = None) -> None:
    args = parse_args(argv)
    load_dotenv()
    setup_logging(os.getenv("LOG_LEVEL", "INFO"))

    root = Path(__file__).resolve().parent
    config = load_config(resolve_path(root, args.config))

    client = build_client(config, args.live)
    if not args.live:
        for session in config.sessions:
            session.params["enable_trading"] = False
    gateway = OrderGateway(client=client, config=config.kite)
    recorder = EventRecorder(maxlen=config.monitoring.event_buffer_size)
    sink = FanOutSink(recorder, build_alert_sink(config))
    manager = SessionManager.from_config(config, gateway=gateway, sink=sink)
    dashboard = DashboardWriter(
        os.getenv("DASHBOARD_PATH", str(resolve_path(root, config.monitoring.dashboard_path))),
        interval_seconds=config.monitoring.dashboard_interval_seconds,
    )
    mode = "live" if args.live else "paper"
    LOGGER.info(
        "Starting optbot | mode=%s | sessions=%d | timezone=%s | feed=%s",
        mode,
        len(manager),
        config.timezone,
        "replay" if args.replay else "ltp",
    )

    stop_event = threading.Event()

    def _stop(signum: int, _frame: object) -> None:
        LOGGER.info("Received signal %s, shutting down.", signum)
        stop_event.set()

    signal.signal(signal.SIGINT, _stop)
    if hasattr(signal, "SIGTERM"):
        signal.signal(signal.SIGTERM, _stop)

    replay_file = args.replay or config.feed.replay_file
    if replay_file:
        batches: Iterator[list[Tick]] = iter(ReplayFeed(resolve_path(root, replay_file)))
    else:
        if client is None:
            raise RuntimeError("LTP polling needs Kite credentials; pass --replay FILE to run offline")
        feed = LtpFeed(client, config.feed.instruments, exchange=config.kite.exchange)
        batches = _polling_batches(feed, stop_event, config.feed.loop_seconds)

    processed = 0
    try:
        for batch in batches:
            if stop_event.is_set():
                break
            try:
                manager.process_batch(batch)
                processed += 1
                dashboard.maybe_write(lambda: _dashboard_payload(manager, recorder, client, mode))
            except KiteAuthError as exc:
                LOGGER.error("Kite rejected the access token, stopping: %s", exc)
                break
            except KiteAPIError as exc:
                LOGGER.error("Kite API error: %s", exc)
            except Exception:
                LOGGER.exception("Unhandled batch error")
            if args.max_batches is not None and processed >= args.max_batches:
                LOGGER.info("Reached --max-batches=%d", args.max_batches)
                break
    finally:
        dashboard.write(_dashboard_payload(manager, recorder, client, mode))
        gateway.shutdown()
        LOGGER.info("optbot stopped after %d batches.", processed)


if __name__ == "__main__":
    run()

from __future__ import annotations

import json
from pathlib import Path

import pytest

import main


def _write_replay(path: Path) -> None:
    rows = ["batch,instrument_token,tradingsymbol,last_price"]
    calls = [180, 181, 183, 186, 183, 183, 181, 184, 189]
    puts = [190, 190, 190, 190, 190, 190, 190, 190, 192]
    for batch, (call, put) in enumerate(zip(calls, puts), start=1):
        rows.append(f"{batch},1,NIFTY26FEB26000CE,{call}")
        rows.append(f"{batch},2,NIFTY26FEB25000PE,{put}")
    path.write_text("\n".join(rows), encoding="utf-8")


def test_replay_run_writes_dashboard(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    for name in ("KITE_API_KEY", "KITE_ACCESS_TOKEN", "DASHBOARD_PATH"):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.chdir(tmp_path)
    monkeypatch.setattr(main.signal, "signal", lambda *_args: None)
    replay = tmp_path / "ticks.csv"
    _write_replay(replay)
    dashboard = tmp_path / "dashboard.json"
    config = tmp_path / "config.yaml"
    config.write_text(
        "\n".join(
            [
                "ranges:",
                "  expiry_day: {base: 170, width: 30, floor: 150}",
                "  pre_expiry_day: {base: 170, width: 30, floor: 150}",
                "  normal_day: {base: 170, width: 30, floor: 150}",
                "monitoring:",
                f"  dashboard_path: {dashboard.as_posix()}",
                "  alerts_enabled: false",
                "sessions:",
                "  - user_id: alice",
                "    strategy: MTM",
                "    params: {enable_trading: true}",
            ]
        ),
        encoding="utf-8",
    )

    main.run(["--config", str(config), "--replay", str(replay), "--max-batches", "3"])

    payload = json.loads(dashboard.read_text(encoding="utf-8"))
    assert payload["mode"] == "paper"
    session = payload["sessions"][0]
    assert session["user_id"] == "alice"
    assert session["params"]["enable_trading"] is False
    assert session["block"] == "UPDATE"
    assert session["main_token"] == 1
    assert any(event["kind"] == "block_transition" for event in payload["events"])


def test_live_mode_requires_credentials(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    for name in ("KITE_API_KEY", "KITE_ACCESS_TOKEN"):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.chdir(tmp_path)
    config = tmp_path / "config.yaml"
    config.write_text("sessions: [{user_id: a}]\n", encoding="utf-8")
    with pytest.raises(RuntimeError, match="KITE_API_KEY"):
        main.run(["--config", str(config), "--live"])

from __future__ import annotations

from pathlib import Path

import pytest
from pydantic import ValidationError

from optbot.config import AppConfig, KiteConfig, StrategyParams, load_config
from optbot.strategy.contracts import ConfigurationError
from optbot.strategy.profiles import build_params, get_profile


def test_load_config_from_yaml(tmp_path: Path) -> None:
    path = tmp_path / "config.yaml"
    path.write_text(
        "\n".join(
            [
                "timezone: Asia/Kolkata",
                "ranges:",
                "  normal_day: {base: 160, width: 40, floor: 140}",
                "engine: {stall_after_batches: 20}",
                "feed:",
                "  instruments: [nfo:nifty26feb26000ce, NFO:NIFTY26FEB26000CE]",
                "sessions:",
                "  - user_id: ' trader '",
                "    strategy: fifty_percent",
                "    params: {quantity: 50}",
            ]
        ),
        encoding="utf-8",
    )
    config = load_config(path)

    assert config.ranges.normal_day.base == 160
    assert config.ranges.expiry_day.base == 85
    assert config.engine.stall_after_batches == 20
    assert config.feed.instruments == ["NFO:NIFTY26FEB26000CE"]
    assert config.sessions[0].user_id == "trader"
    assert config.sessions[0].strategy == "FIFTY_PERCENT"


def test_empty_yaml_uses_defaults(tmp_path: Path) -> None:
    path = tmp_path / "config.yaml"
    path.write_text("", encoding="utf-8")
    config = load_config(path)
    assert config.sessions[0].user_id == "default"
    assert config.kite.order_type == "MARKET"


def test_stoploss_must_be_below_target() -> None:
    with pytest.raises(ValidationError):
        StrategyParams(target=5.0, stoploss=5.0)


def test_filters_must_be_ordered_prefix() -> None:
    with pytest.raises(ValidationError):
        StrategyParams(filters=["threshold_cross", "calc_ref"])
    params = StrategyParams(filters=[" Threshold_Cross ", "peak_and_fall"])
    assert params.filters == ["threshold_cross", "peak_and_fall"]


def test_interim_low_disabled_drops_last_stage() -> None:
    params = StrategyParams(interim_low_disabled=True)
    assert params.active_filters == ["threshold_cross", "peak_and_fall", "calc_ref"]
    assert "interim_low" in params.filters


def test_duplicate_user_ids_rejected() -> None:
    with pytest.raises(ValidationError):
        AppConfig.model_validate({"sessions": [{"user_id": "a"}, {"user_id": "a"}]})


def test_range_floor_above_base_rejected() -> None:
    with pytest.raises(ValidationError):
        AppConfig.model_validate({"ranges": {"normal_day": {"base": 100, "width": 30, "floor": 120}}})


def test_kite_order_type_validated() -> None:
    assert KiteConfig(order_type="limit").order_type == "LIMIT"
    with pytest.raises(ValidationError):
        KiteConfig(order_type="SL")


def test_profiles_apply_defaults_and_overrides() -> None:
    strategy_x = build_params("STRATEGY_X")
    assert strategy_x.target == 9.0
    assert strategy_x.expiry_weekday == 2
    assert strategy_x.entry_selection == "pair"

    fifty = build_params("fifty-percent", {"target": 8})
    assert fifty.filters == ["threshold_cross", "peak_and_fall", "calc_ref"]
    assert fifty.target == 8.0
    assert "half-peak reference stops moving" in get_profile("FIFTY_PERCENT").description


def test_unknown_profile_or_parameter_is_configuration_error() -> None:
    with pytest.raises(ConfigurationError):
        get_profile("NOPE")
    with pytest.raises(ConfigurationError):
        build_params("MTM", {"targett": 7})

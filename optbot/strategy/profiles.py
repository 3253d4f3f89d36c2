from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from optbot.config import SessionConfig, StrategyParams
from optbot.strategy.contracts import ConfigurationError


@dataclass(slots=True, frozen=True)
class StrategyProfile:
    name: str
    description: str
    defaults: dict[str, Any] = field(default_factory=dict)


PROFILES: dict[str, StrategyProfile] = {
    "MTM": StrategyProfile(
        name="MTM",
        description="Four-stage filter, closest-premium entry, partial exits and buy-back",
        defaults={},
    ),
    "STRATEGY_X": StrategyProfile(
        name="STRATEGY_X",
        description="Buys the filtered main/opposite pair; Wednesday expiry",
        defaults={
            "target": 9.0,
            "quantity": 65,
            "expiry_weekday": 2,
            "entry_selection": "pair",
        },
    ),
    "FIFTY_PERCENT": StrategyProfile(
        name="FIFTY_PERCENT",
        description="Enters once the half-peak reference stops moving; no interim-low stage",
        defaults={
            "target": 7.0,
            "calc_ref_fraction": 0.5,
            "filters": ["threshold_cross", "peak_and_fall", "calc_ref"],
        },
    ),
}


def get_profile(name: str) -> StrategyProfile:
    key = name.strip().upper().replace("-", "_")
    profile = PROFILES.get(key)
    if profile is None:
        raise ConfigurationError(f"Unknown strategy profile '{name}'. Known: {', '.join(sorted(PROFILES))}")
    return profile


def build_params(profile: str | StrategyProfile, overrides: dict[str, Any] | None = None) -> StrategyParams:
    resolved = get_profile(profile) if isinstance(profile, str) else profile
    unknown = set(overrides or {}) - set(StrategyParams.model_fields)
    if unknown:
        raise ConfigurationError(f"Unknown strategy parameter(s): {', '.join(sorted(unknown))}")
    merged = {**resolved.defaults, **(overrides or {})}
    return StrategyParams.model_validate(merged)


def params_for_session(session: SessionConfig) -> StrategyParams:
    return build_params(session.strategy, session.params)

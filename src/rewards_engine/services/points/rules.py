"""Per-action earning rules for the points ledger."""

from __future__ import annotations

from dataclasses import dataclass, replace
from pathlib import Path
from typing import Mapping

import tomllib

from rewards_engine.core.errors import ValidationError
from rewards_engine.models.points import PointsCategory


@dataclass(frozen=True, slots=True)
class ActionRule:
    """Limits applied to one earning action.

    ``daily_limit`` caps how many awards happen per user and day,
    ``daily_points_cap`` caps the points those awards add up to, and
    ``max_per_award`` caps a single award. ``None`` disables a cap.
    """

    action: str
    category: PointsCategory
    points: int
    daily_limit: int | None = None
    daily_points_cap: int | None = None
    max_per_award: int | None = None
    cooldown_seconds: int = 0

    @property
    def counter_feature(self) -> str:
        return f"points.{self.action}"


DEFAULT_ACTION_RULES: dict[str, ActionRule] = {
    rule.action: rule
    for rule in (
        ActionRule("daily_login", PointsCategory.DAILY, 10, daily_limit=1, daily_points_cap=20, max_per_award=20),
        ActionRule(
            "watch_ad",
            PointsCategory.ADS,
            5,
            daily_limit=20,
            daily_points_cap=100,
            max_per_award=10,
            cooldown_seconds=60,
        ),
        ActionRule(
            "play_game",
            PointsCategory.GAME,
            15,
            daily_limit=10,
            daily_points_cap=200,
            max_per_award=50,
            cooldown_seconds=5 * 60,
        ),
        ActionRule("referral_signup", PointsCategory.REFERRAL, 100, daily_points_cap=1000, max_per_award=100),
        ActionRule("referral_welcome", PointsCategory.REFERRAL, 50, daily_limit=1, max_per_award=100),
        ActionRule("content_like", PointsCategory.DAILY, 1, daily_limit=50, max_per_award=5),
        ActionRule("content_share", PointsCategory.DAILY, 3, daily_limit=20, max_per_award=10),
        ActionRule("metro_usage", PointsCategory.DAILY, 5, daily_limit=10, max_per_award=20),
        ActionRule("survey_complete", PointsCategory.DAILY, 25, daily_limit=3, max_per_award=50),
        ActionRule("coupon_bonus", PointsCategory.DAILY, 0, max_per_award=1000),
        ActionRule("admin_adjustment", PointsCategory.ADMIN, 0, daily_points_cap=10000, max_per_award=1000),
    )
}


class ActionRuleBook:
    """Lookup of action rules, optionally overridden from a TOML file."""

    def __init__(self, rules: Mapping[str, ActionRule] | None = None) -> None:
        self._rules = dict(rules if rules is not None else DEFAULT_ACTION_RULES)

    def get(self, action: str) -> ActionRule:
        rule = self._rules.get(action)
        if rule is None:
            raise ValidationError(f"Unknown points action '{action}'", action=action)
        return rule

    def __contains__(self, action: object) -> bool:
        return action in self._rules

    def actions(self) -> list[str]:
        return sorted(self._rules)

    @classmethod
    def from_path(cls, config_path: Path | str | None) -> "ActionRuleBook":
        if not config_path:
            return cls()
        return cls(load_action_rules(Path(config_path)))


def _optional_int(value: object) -> int | None:
    if value is None or value == "" or value is False:
        return None
    number = int(value)  # type: ignore[arg-type]
    return number if number >= 0 else None


def load_action_rules(config_path: Path, *, base: Mapping[str, ActionRule] | None = None) -> dict[str, ActionRule]:
    """Merge ``[actions.<name>]`` tables from a TOML file over the defaults."""

    if not config_path.exists():
        raise FileNotFoundError(f"Points rules config not found: {config_path}")

    data = tomllib.loads(config_path.read_text())
    rules = dict(base if base is not None else DEFAULT_ACTION_RULES)
    for action, payload in (data.get("actions") or {}).items():
        if not isinstance(payload, dict):
            continue
        current = rules.get(action)
        try:
            category = PointsCategory(payload.get("category", current.category if current else "daily"))
        except ValueError as exc:
            raise ValidationError(f"Invalid category for action '{action}'", action=action) from exc
        rule = current or ActionRule(action=action, category=category, points=0)
        overrides: dict[str, object] = {"category": category}
        if "points" in payload:
            overrides["points"] = max(int(payload["points"]), 0)
        for key in ("daily_limit", "daily_points_cap", "max_per_award"):
            if key in payload:
                overrides[key] = _optional_int(payload[key])
        if "cooldown_seconds" in payload:
            overrides["cooldown_seconds"] = max(int(payload["cooldown_seconds"] or 0), 0)
        rules[action] = replace(rule, **overrides)
    return rules


__all__ = ["ActionRule", "ActionRuleBook", "DEFAULT_ACTION_RULES", "load_action_rules"]

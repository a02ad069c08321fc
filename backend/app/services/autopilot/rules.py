"""Rule config parsing, validation and defaults.

Stored configs are plain JSON dicts (camelCase or snake_case keys); every
read goes through :func:`parse_rule_config` so evaluators only ever see a
validated, typed config.
"""

from __future__ import annotations

from typing import Any, Dict, List, Mapping, Union

from pydantic import ValidationError

from .errors import InputError
from .types import (
    DelistRuleConfig,
    OfferRuleConfig,
    RepriceRuleConfig,
    RuleConfig,
    RuleType,
    StaleRuleConfig,
)


_CONFIG_MODELS = {
    RuleType.OFFER: OfferRuleConfig,
    RuleType.REPRICE: RepriceRuleConfig,
    RuleType.STALE: StaleRuleConfig,
    RuleType.DELIST: DelistRuleConfig,
}


def coerce_rule_type(rule_type: Union[str, RuleType]) -> RuleType:
    try:
        return RuleType(rule_type)
    except ValueError:
        raise InputError(f"Unknown rule type '{rule_type}'")


def default_rule_config(rule_type: Union[str, RuleType]) -> RuleConfig:
    """Config used when a user enables a rule without customising it."""
    return _CONFIG_MODELS[coerce_rule_type(rule_type)]()


def validate_offer_rule_config(config: OfferRuleConfig) -> List[str]:
    errors: List[str] = []
    if not 0 <= config.auto_accept_threshold <= 1:
        errors.append("Auto-accept threshold must be between 0 and 1")
    if not 0 <= config.auto_decline_threshold <= 1:
        errors.append("Auto-decline threshold must be between 0 and 1")
    if config.auto_accept_threshold <= config.auto_decline_threshold:
        errors.append("Auto-accept threshold must be greater than auto-decline threshold")
    if not 0 <= config.max_counter_rounds <= 10:
        errors.append("Max counter rounds must be between 0 and 10")
    if config.high_value_threshold < 0:
        errors.append("High value threshold must not be negative")
    return errors


def validate_reprice_rule_config(config: RepriceRuleConfig) -> List[str]:
    errors: List[str] = []
    daily = config.max_daily_drop_percent
    weekly = config.max_weekly_drop_percent
    if not 0 < daily <= 1:
        errors.append("Max daily drop must be greater than 0 and at most 1")
    if not 0 < weekly <= 1:
        errors.append("Max weekly drop must be greater than 0 and at most 1")
    if daily > weekly:
        errors.append("Max daily drop must not exceed max weekly drop")
    if not 0 <= config.decay_per_day <= 1:
        errors.append("Decay per day must be between 0 and 1")
    if config.days_before_first_drop < 0:
        errors.append("Days before first drop must not be negative")
    if config.high_value_threshold < 0:
        errors.append("High value threshold must not be negative")
    return errors


def validate_stale_rule_config(config: StaleRuleConfig) -> List[str]:
    errors: List[str] = []
    if config.days_until_stale < 1:
        errors.append("Days until stale must be at least 1")
    return errors


def validate_delist_rule_config(config: DelistRuleConfig) -> List[str]:
    return []


def validate_rule_config(config: RuleConfig) -> List[str]:
    if isinstance(config, OfferRuleConfig):
        return validate_offer_rule_config(config)
    if isinstance(config, RepriceRuleConfig):
        return validate_reprice_rule_config(config)
    if isinstance(config, StaleRuleConfig):
        return validate_stale_rule_config(config)
    if isinstance(config, DelistRuleConfig):
        return validate_delist_rule_config(config)
    raise InputError(f"Unsupported rule config type {type(config).__name__}")


def parse_rule_config(rule_type: Union[str, RuleType], data: Mapping[str, Any] | None) -> RuleConfig:
    """Build and validate the typed config for ``rule_type``.

    Raises :class:`InputError` when the dict does not describe a valid
    config of that type.
    """
    rt = coerce_rule_type(rule_type)
    raw: Dict[str, Any] = dict(data or {})

    declared = raw.pop("ruleType", None) or raw.pop("rule_type", None)
    if declared is not None and declared != rt.value:
        raise InputError(f"Config is tagged '{declared}' but rule type is '{rt.value}'")

    model = _CONFIG_MODELS[rt]
    try:
        config = model.model_validate(raw)
    except ValidationError as exc:
        raise InputError(f"Invalid {rt.value} rule config: {exc.errors()}") from exc

    errors = validate_rule_config(config)
    if errors:
        raise InputError(f"Invalid {rt.value} rule config: " + "; ".join(errors))
    return config

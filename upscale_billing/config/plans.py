#!/usr/bin/env python3
"""
Plan & Credit Pack Catalog
Maps Stripe price ids to the subscription plans and one-time credit packs they bill for.

The catalog is static configuration. Deployments can override or extend it through
BILLING_PLANS_JSON / BILLING_PACKS_JSON (a JSON object or list of objects keyed by
price id), which is how staging and test environments point at their own Stripe prices.
"""

import json
import logging
import os
from dataclasses import dataclass
from functools import lru_cache
from typing import Any, Literal

from upscale_billing.utils.exceptions import UnknownPriceIdError
from upscale_billing.utils.security_validators import sanitize_for_logging

logger = logging.getLogger(__name__)

ExpirationMode = Literal["never", "cycle_end", "rolling_window"]

_PLANS_ENV_VAR = "BILLING_PLANS_JSON"
_PACKS_ENV_VAR = "BILLING_PACKS_JSON"
_EXPIRATION_MODES = {"never", "cycle_end", "rolling_window"}
_EXPIRATION_ALIASES = {"end_of_cycle": "cycle_end"}
DEFAULT_ROLLOVER_MULTIPLIER = 6

_DEFAULT_PLANS: tuple[dict[str, Any], ...] = (
    {
        "key": "hobby",
        "name": "Hobby",
        "price_id": "price_1SZmVyALMLhQocpf0H7n5ls8",
        "price_in_cents": 1900,
        "credits_per_cycle": 200,
        "max_rollover": None,
        "rollover_multiplier": 6,
        "expiration_mode": "cycle_end",
        "trial_enabled": False,
        "trial_credits": None,
    },
    {
        "key": "pro",
        "name": "Professional",
        "price_id": "price_1SZmVzALMLhQocpfPyRX2W8D",
        "price_in_cents": 4900,
        "credits_per_cycle": 1000,
        "max_rollover": None,
        "rollover_multiplier": 6,
        "expiration_mode": "cycle_end",
        "trial_enabled": False,
        "trial_credits": None,
    },
    {
        "key": "business",
        "name": "Business",
        "price_id": "price_1SZmVzALMLhQocpfqPk9spg4",
        "price_in_cents": 14900,
        "credits_per_cycle": 5000,
        "max_rollover": None,
        "rollover_multiplier": 6,
        "expiration_mode": "cycle_end",
        "trial_enabled": False,
        "trial_credits": None,
    },
)

_DEFAULT_PACKS: tuple[dict[str, Any], ...] = (
    {"key": "small", "name": "Small Pack", "price_id": "price_1SbAASALMLhQocpfGUg3wLXM", "credits": 50, "price_in_cents": 499},
    {"key": "medium", "name": "Medium Pack", "price_id": "price_1SbAASALMLhQocpf7nw3wRj7", "credits": 200, "price_in_cents": 1499},
    {"key": "large", "name": "Large Pack", "price_id": "price_1SbAASALMLhQocpfCrD7P7TW", "credits": 600, "price_in_cents": 3999},
)


@dataclass(frozen=True)
class TrialConfig:
    enabled: bool = False
    trial_credits: int | None = None


@dataclass(frozen=True)
class PlanDescriptor:
    """A recurring subscription plan."""

    key: str
    name: str
    price_id: str
    credits_per_cycle: int
    max_rollover: int
    expiration_mode: ExpirationMode
    trial: TrialConfig
    price_in_cents: int | None = None
    type: Literal["plan"] = "plan"


@dataclass(frozen=True)
class PackDescriptor:
    """A one-time credit pack; carries no cycle credits."""

    key: str
    name: str
    price_id: str
    credits: int
    price_in_cents: int | None = None
    type: Literal["pack"] = "pack"


PlanOrPack = PlanDescriptor | PackDescriptor


def _coerce_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "yes", "on"}
    return bool(value)


def _optional_int(value: Any) -> int | None:
    if value is None or value == "":
        return None
    return int(value)


def _normalize_plan_entry(entry: Any) -> PlanDescriptor | None:
    if not isinstance(entry, dict):
        return None

    price_id = entry.get("price_id")
    key = entry.get("key")
    if not price_id or not key:
        return None

    try:
        credits = int(entry["credits_per_cycle"])
        multiplier = int(entry.get("rollover_multiplier") or DEFAULT_ROLLOVER_MULTIPLIER)
        max_rollover = _optional_int(entry.get("max_rollover"))
        trial_credits = _optional_int(entry.get("trial_credits"))
        price_in_cents = _optional_int(entry.get("price_in_cents"))
    except (KeyError, TypeError, ValueError):
        return None

    mode = str(entry.get("expiration_mode") or "cycle_end")
    mode = _EXPIRATION_ALIASES.get(mode, mode)
    if mode not in _EXPIRATION_MODES:
        return None

    return PlanDescriptor(
        key=str(key),
        name=entry.get("name") or str(key).title(),
        price_id=str(price_id),
        credits_per_cycle=credits,
        max_rollover=max_rollover if max_rollover is not None else credits * multiplier,
        expiration_mode=mode,
        trial=TrialConfig(
            enabled=_coerce_bool(entry.get("trial_enabled", False)),
            trial_credits=trial_credits,
        ),
        price_in_cents=price_in_cents,
    )


def _normalize_pack_entry(entry: Any) -> PackDescriptor | None:
    if not isinstance(entry, dict):
        return None

    price_id = entry.get("price_id")
    key = entry.get("key")
    if not price_id or not key:
        return None

    try:
        credits = int(entry["credits"])
        price_in_cents = _optional_int(entry.get("price_in_cents"))
    except (KeyError, TypeError, ValueError):
        return None

    return PackDescriptor(
        key=str(key),
        name=entry.get("name") or str(key).title(),
        price_id=str(price_id),
        credits=credits,
        price_in_cents=price_in_cents,
    )


def _load_env_entries(var_name: str) -> list[Any]:
    raw = os.getenv(var_name)
    if not raw:
        return []

    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError as exc:
        logger.warning(
            "Ignoring %s override due to JSON parse error: %s",
            var_name,
            sanitize_for_logging(str(exc)),
        )
        return []

    if isinstance(parsed, dict):
        parsed = [parsed]
    return parsed if isinstance(parsed, list) else []


@lru_cache(maxsize=1)
def get_price_index() -> dict[str, PlanOrPack]:
    """Build the price id -> descriptor index once per process."""
    index: dict[str, PlanOrPack] = {}

    for entry in (*_DEFAULT_PLANS, *_load_env_entries(_PLANS_ENV_VAR)):
        plan = _normalize_plan_entry(entry)
        if plan is None:
            logger.debug("Skipped invalid plan entry: %s", sanitize_for_logging(str(entry)))
            continue
        index[plan.price_id] = plan

    for entry in (*_DEFAULT_PACKS, *_load_env_entries(_PACKS_ENV_VAR)):
        pack = _normalize_pack_entry(entry)
        if pack is None:
            logger.debug("Skipped invalid credit pack entry: %s", sanitize_for_logging(str(entry)))
            continue
        index[pack.price_id] = pack

    return index


def clear_catalog_cache() -> None:
    get_price_index.cache_clear()


def resolve(price_id: str | None) -> PlanOrPack | None:
    """Look up a price id; returns None when it is not in the catalog."""
    if not price_id:
        return None
    return get_price_index().get(price_id)


def assert_known(price_id: str | None) -> PlanOrPack:
    """Like resolve() but raises UnknownPriceIdError instead of returning None."""
    resolved = resolve(price_id)
    if resolved is None:
        raise UnknownPriceIdError(price_id)
    return resolved


def assert_plan(price_id: str | None) -> PlanDescriptor:
    """Resolve a price id that must bill a recurring plan."""
    resolved = assert_known(price_id)
    if not isinstance(resolved, PlanDescriptor):
        raise UnknownPriceIdError(
            price_id, f"Price {price_id} is a credit pack, expected a subscription plan"
        )
    return resolved


def get_pack_by_key(key: str) -> PackDescriptor | None:
    for entry in get_price_index().values():
        if isinstance(entry, PackDescriptor) and entry.key == key:
            return entry
    return None


def get_trial_config(price_id: str) -> TrialConfig | None:
    """Trial settings for a plan price, or None when the plan has no trial."""
    resolved = resolve(price_id)
    if isinstance(resolved, PlanDescriptor) and resolved.trial.enabled:
        return resolved.trial
    return None

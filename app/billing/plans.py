from __future__ import annotations

import calendar
import hashlib
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime
from functools import lru_cache

from app.billing.constants import (
    INTERVAL_MONTH,
    INTERVAL_YEAR,
    PLAN_PRO,
    PLAN_RANKS,
    PLAN_VIP,
    PROVIDER_PAYMONGO,
    PROVIDER_PAYPAL,
)
from app.core.config import Settings, get_settings


@dataclass(frozen=True, slots=True)
class PlanPrice:
    price_key: str
    plan_key: str
    interval: str
    list_prices_minor: Mapping[str, int] = field(default_factory=dict)

    def list_price(self, currency: str) -> int | None:
        return self.list_prices_minor.get(currency.upper())


DEFAULT_PLAN_PRICES: tuple[PlanPrice, ...] = (
    PlanPrice("pro_monthly", PLAN_PRO, INTERVAL_MONTH, {"USD": 1299, "PHP": 72900}),
    PlanPrice("pro_yearly", PLAN_PRO, INTERVAL_YEAR, {"USD": 9900, "PHP": 554000}),
    PlanPrice("vip_monthly", PLAN_VIP, INTERVAL_MONTH, {"USD": 2900, "PHP": 162600}),
    PlanPrice("vip_yearly", PLAN_VIP, INTERVAL_YEAR, {"USD": 19900, "PHP": 1114400}),
)


@dataclass(frozen=True, slots=True)
class PlanCatalog:
    """Read-only price/plan lookup passed into normalizers and the grant engine."""

    version: str
    prices: Mapping[str, PlanPrice]
    provider_refs: Mapping[str, Mapping[str, str]] = field(default_factory=dict)

    def plan_for_price_key(self, price_key: str | None) -> PlanPrice | None:
        if not price_key:
            return None
        return self.prices.get(price_key.strip().lower())

    def lookup(self, provider: str, ref: str | None) -> PlanPrice | None:
        """Resolve a provider plan/price reference, falling back to a bare price key."""
        if not ref:
            return None
        mapped = self.provider_refs.get(provider, {}).get(ref.strip())
        if mapped is not None:
            return self.plan_for_price_key(mapped)
        return self.plan_for_price_key(ref)

    def is_known_plan(self, plan_key: str | None) -> bool:
        return plan_key in PLAN_RANKS


def parse_plan_map(raw: str) -> dict[str, str]:
    mapping: dict[str, str] = {}
    for chunk in raw.split(","):
        item = chunk.strip()
        if not item:
            continue
        ref, sep, price_key = item.partition("=")
        if not sep or not ref.strip() or not price_key.strip():
            raise ValueError(f"invalid plan map entry: {item!r}")
        mapping[ref.strip()] = price_key.strip().lower()
    return mapping


def _catalog_version(
    prices: Mapping[str, PlanPrice],
    provider_refs: Mapping[str, Mapping[str, str]],
) -> str:
    parts = [
        f"{price.price_key}:{price.plan_key}:{price.interval}:"
        + ",".join(f"{code}={amount}" for code, amount in sorted(price.list_prices_minor.items()))
        for price in sorted(prices.values(), key=lambda item: item.price_key)
    ]
    for provider in sorted(provider_refs):
        for ref, price_key in sorted(provider_refs[provider].items()):
            parts.append(f"{provider}:{ref}={price_key}")
    digest = hashlib.sha256("|".join(parts).encode("utf-8")).hexdigest()
    return f"plans-{digest[:12]}"


def build_plan_catalog(
    *,
    prices: tuple[PlanPrice, ...] = DEFAULT_PLAN_PRICES,
    provider_refs: Mapping[str, Mapping[str, str]] | None = None,
) -> PlanCatalog:
    price_map = {price.price_key: price for price in prices}
    refs = {provider: dict(mapping) for provider, mapping in (provider_refs or {}).items()}
    for provider, mapping in refs.items():
        unknown = sorted(value for value in mapping.values() if value not in price_map)
        if unknown:
            raise ValueError(f"{provider} plan map references unknown price keys: {unknown}")
    return PlanCatalog(
        version=_catalog_version(price_map, refs),
        prices=price_map,
        provider_refs=refs,
    )


def build_plan_catalog_from_settings(settings: Settings) -> PlanCatalog:
    return build_plan_catalog(
        provider_refs={
            PROVIDER_PAYPAL: parse_plan_map(settings.paypal_plan_map),
            PROVIDER_PAYMONGO: parse_plan_map(settings.paymongo_plan_map),
        }
    )


@lru_cache(maxsize=1)
def get_plan_catalog() -> PlanCatalog:
    return build_plan_catalog_from_settings(get_settings())


def advance_by_interval(moment: datetime, interval: str) -> datetime:
    """Add one billing interval, clamping to the last day of a shorter month."""
    if interval == INTERVAL_MONTH:
        year = moment.year + (moment.month // 12)
        month = moment.month % 12 + 1
    elif interval == INTERVAL_YEAR:
        year = moment.year + 1
        month = moment.month
    else:
        raise ValueError(f"unsupported billing interval: {interval!r}")
    day = min(moment.day, calendar.monthrange(year, month)[1])
    return moment.replace(year=year, month=month, day=day)

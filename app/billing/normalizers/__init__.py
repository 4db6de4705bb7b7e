from __future__ import annotations

from collections.abc import Iterable, Mapping
from functools import lru_cache

from app.billing.constants import PROVIDERS
from app.billing.errors import NormalizationError, NormalizationErrorKind
from app.billing.plans import PlanCatalog, get_plan_catalog
from app.billing.types import EventEnvelope, NormalizedPaymentEvent
from app.core.config import get_settings

from .base import JournalEntryLike, ProviderNormalizer
from .paymongo import PaymongoNormalizer
from .paypal import PaypalNormalizer

_NORMALIZER_FACTORIES = {
    PaypalNormalizer.provider: PaypalNormalizer,
    PaymongoNormalizer.provider: PaymongoNormalizer,
}


class NormalizerRegistry:
    def __init__(self, normalizers: Iterable[ProviderNormalizer]) -> None:
        self._normalizers: dict[str, ProviderNormalizer] = {
            normalizer.provider: normalizer for normalizer in normalizers
        }

    @property
    def providers(self) -> tuple[str, ...]:
        return tuple(sorted(self._normalizers))

    def get(self, provider: str) -> ProviderNormalizer:
        normalizer = self._normalizers.get(provider)
        if normalizer is None:
            raise NormalizationError(NormalizationErrorKind.UNSUPPORTED_PROVIDER, provider)
        return normalizer

    def extract_envelope(self, provider: str, payload: Mapping[str, object]) -> EventEnvelope:
        return self.get(provider).extract_envelope(payload)

    def normalize(self, entry: JournalEntryLike) -> NormalizedPaymentEvent:
        return self.get(entry.provider).normalize(entry)


def build_normalizer_registry(
    catalog: PlanCatalog,
    *,
    providers: Iterable[str] = PROVIDERS,
) -> NormalizerRegistry:
    normalizers: list[ProviderNormalizer] = []
    for provider in providers:
        factory = _NORMALIZER_FACTORIES.get(provider)
        if factory is None:
            raise ValueError(f"no normalizer registered for provider {provider!r}")
        normalizers.append(factory(catalog))
    return NormalizerRegistry(normalizers)


def parse_provider_list(raw: str) -> tuple[str, ...]:
    items = (item.strip().lower() for item in raw.split(","))
    providers = tuple(dict.fromkeys(item for item in items if item))
    unknown = [provider for provider in providers if provider not in PROVIDERS]
    if unknown:
        raise ValueError(f"unsupported billing providers: {unknown}")
    return providers


@lru_cache(maxsize=1)
def get_normalizer_registry() -> NormalizerRegistry:
    return build_normalizer_registry(
        get_plan_catalog(),
        providers=parse_provider_list(get_settings().billing_providers),
    )


__all__ = [
    "JournalEntryLike",
    "NormalizerRegistry",
    "PaymongoNormalizer",
    "PaypalNormalizer",
    "ProviderNormalizer",
    "build_normalizer_registry",
    "get_normalizer_registry",
    "parse_provider_list",
]

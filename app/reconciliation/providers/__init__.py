from __future__ import annotations

from app.billing.constants import PROVIDER_PAYMONGO, PROVIDER_PAYPAL
from app.core.config import Settings
from app.reconciliation.errors import ProviderFetchError

from .base import ProviderRecordSource
from .paymongo import PaymongoPaymentsClient
from .paypal import PaypalReportingClient


def build_provider_source(provider: str, settings: Settings) -> ProviderRecordSource:
    if provider == PROVIDER_PAYPAL:
        return PaypalReportingClient(
            api_base=settings.paypal_api_base,
            client_id=settings.paypal_client_id,
            client_secret=settings.paypal_client_secret,
            timeout_seconds=settings.provider_fetch_timeout_seconds,
        )
    if provider == PROVIDER_PAYMONGO:
        return PaymongoPaymentsClient(
            api_base=settings.paymongo_api_base,
            secret_key=settings.paymongo_secret_key,
            timeout_seconds=settings.provider_fetch_timeout_seconds,
        )
    raise ProviderFetchError(f"no reporting client for provider {provider!r}")


__all__ = [
    "PaymongoPaymentsClient",
    "PaypalReportingClient",
    "ProviderRecordSource",
    "build_provider_source",
]

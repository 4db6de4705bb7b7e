from __future__ import annotations

from collections.abc import Mapping
from datetime import datetime

import httpx
import structlog

from app.billing.constants import PROVIDER_PAYMONGO
from app.billing.errors import NormalizationError
from app.billing.money import integer_minor_amount, normalize_currency
from app.billing.normalizers.fields import (
    optional_mapping,
    optional_str,
    optional_unix_timestamp,
    parse_unix_timestamp,
)
from app.reconciliation.constants import (
    KIND_CHARGE,
    KIND_REVERSAL,
    RECORD_FAILED,
    RECORD_PENDING,
    RECORD_REVERSED,
    RECORD_SUCCEEDED,
)
from app.reconciliation.errors import ProviderFetchError
from app.reconciliation.types import ProviderRecord

logger = structlog.get_logger(__name__)

PAGE_LIMIT = 100
# Bounds a runaway cursor; a day of payments never needs this many pages.
MAX_PAGES = 200

_PAYMENT_STATUS_MAP = {
    "paid": RECORD_SUCCEEDED,
    "failed": RECORD_FAILED,
    "pending": RECORD_PENDING,
    "refunded": RECORD_SUCCEEDED,
    "partially_refunded": RECORD_SUCCEEDED,
}


def _refund_status(raw: str | None) -> str:
    if raw in {"succeeded", None}:
        return RECORD_REVERSED
    if raw == "failed":
        return RECORD_FAILED
    return RECORD_PENDING


def _event_payload(
    *,
    event_id: str,
    event_type: str,
    created_at: int,
    resource: Mapping[str, object],
) -> dict[str, object]:
    return {
        "data": {
            "id": event_id,
            "type": "event",
            "attributes": {
                "type": event_type,
                "livemode": True,
                "created_at": created_at,
                "data": dict(resource),
            },
        }
    }


def _refund_records(
    payment_id: str,
    attrs: Mapping[str, object],
) -> list[ProviderRecord]:
    records: list[ProviderRecord] = []
    refunds = attrs.get("refunds")
    for raw_refund in refunds if isinstance(refunds, list) else []:
        refund = optional_mapping(raw_refund)
        refund_id = optional_str(refund.get("id"))
        refund_attrs = optional_mapping(refund.get("attributes"))
        if refund_id is None:
            continue
        created_raw = refund_attrs.get("created_at")
        occurred_at = parse_unix_timestamp(created_raw, "paymongo refund created_at")
        currency = normalize_currency(refund_attrs.get("currency"))
        amount_minor = integer_minor_amount(refund_attrs.get("amount"))
        refund_status = optional_str(refund_attrs.get("status"))
        succeeded = refund_status in {"succeeded", None}
        payload = None
        if succeeded:
            payload = _event_payload(
                event_id=f"recon_{refund_id}",
                event_type="payment.refunded",
                created_at=int(occurred_at.timestamp()),
                resource={
                    "id": refund_id,
                    "type": "refund",
                    "attributes": {**refund_attrs, "payment_id": payment_id},
                },
            )
        records.append(
            ProviderRecord(
                provider=PROVIDER_PAYMONGO,
                record_id=refund_id,
                kind=KIND_REVERSAL,
                status=_refund_status(refund_status),
                payment_ref=payment_id,
                occurred_at=occurred_at,
                amount_minor=amount_minor,
                currency=currency,
                event_id=f"recon_{refund_id}" if payload is not None else None,
                payload=payload,
            )
        )
    return records


def parse_payment(resource: Mapping[str, object]) -> list[ProviderRecord]:
    """Map one payment resource to its charge record plus any refund records."""
    payment_id = optional_str(resource.get("id"))
    attrs = optional_mapping(resource.get("attributes"))
    if payment_id is None:
        return []

    created_at = parse_unix_timestamp(attrs.get("created_at"), "paymongo payment created_at")
    paid_at = optional_unix_timestamp(attrs.get("paid_at"), "paymongo payment paid_at")
    occurred_at = paid_at or created_at
    status = _PAYMENT_STATUS_MAP.get(optional_str(attrs.get("status")) or "", RECORD_PENDING)
    currency = normalize_currency(attrs.get("currency"))
    amount_minor = integer_minor_amount(attrs.get("amount"))

    payload = None
    if status == RECORD_SUCCEEDED:
        payload = _event_payload(
            event_id=f"recon_{payment_id}",
            event_type="payment.paid",
            created_at=int(occurred_at.timestamp()),
            resource={"id": payment_id, "type": "payment", "attributes": dict(attrs)},
        )

    charge = ProviderRecord(
        provider=PROVIDER_PAYMONGO,
        record_id=payment_id,
        kind=KIND_CHARGE,
        status=status,
        payment_ref=payment_id,
        occurred_at=occurred_at,
        amount_minor=amount_minor,
        currency=currency,
        event_id=f"recon_{payment_id}" if payload is not None else None,
        payload=payload,
    )
    return [charge, *_refund_records(payment_id, attrs)]


class PaymongoPaymentsClient:
    provider = PROVIDER_PAYMONGO

    def __init__(
        self,
        *,
        api_base: str,
        secret_key: str,
        timeout_seconds: float,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._api_base = api_base.rstrip("/")
        self._secret_key = secret_key
        self._timeout_seconds = timeout_seconds
        self._http_client = http_client

    async def fetch_records(
        self,
        *,
        window_start: datetime,
        window_end: datetime,
    ) -> list[ProviderRecord]:
        if not self._secret_key:
            raise ProviderFetchError("paymongo secret key is not configured")
        try:
            if self._http_client is not None:
                return await self._fetch(self._http_client, window_start, window_end)
            async with httpx.AsyncClient(timeout=self._timeout_seconds) as client:
                return await self._fetch(client, window_start, window_end)
        except (httpx.HTTPError, ValueError) as exc:
            raise ProviderFetchError(f"paymongo payments listing failed: {exc}") from exc

    async def _fetch(
        self,
        client: httpx.AsyncClient,
        window_start: datetime,
        window_end: datetime,
    ) -> list[ProviderRecord]:
        records: list[ProviderRecord] = []
        cursor: str | None = None
        # The listing is newest first; stop once a page reaches past the window start.
        for _ in range(MAX_PAGES):
            params: dict[str, object] = {"limit": PAGE_LIMIT}
            if cursor is not None:
                params["after"] = cursor
            response = await client.get(
                f"{self._api_base}/v1/payments",
                params=params,
                auth=(self._secret_key, ""),
            )
            response.raise_for_status()
            body = response.json()
            data = body.get("data")
            page = data if isinstance(data, list) else []

            reached_start = False
            for raw in page:
                resource = optional_mapping(raw)
                try:
                    parsed = parse_payment(resource)
                except NormalizationError as exc:
                    logger.warning(
                        "reconciliation_provider_record_unreadable",
                        provider=self.provider,
                        record_id=optional_str(resource.get("id")),
                        error=str(exc),
                    )
                    continue
                for record in parsed:
                    if window_start <= record.occurred_at < window_end:
                        records.append(record)
                if parsed and parsed[0].occurred_at < window_start:
                    reached_start = True

            if reached_start or not body.get("has_more") or not page:
                return records
            cursor = optional_str(optional_mapping(page[-1]).get("id"))
            if cursor is None:
                return records
        raise ProviderFetchError("paymongo payments listing exceeded the page limit")

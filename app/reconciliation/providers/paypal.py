from __future__ import annotations

from collections.abc import Mapping
from datetime import datetime, timedelta, timezone

import httpx
import structlog

from app.billing.constants import PROVIDER_PAYPAL
from app.billing.errors import NormalizationError
from app.billing.money import decimal_amount_to_minor, normalize_currency
from app.billing.normalizers.fields import optional_mapping, optional_str, parse_iso_datetime
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

PAGE_SIZE = 500
# The transaction search API refuses ranges longer than 31 days.
MAX_RANGE = timedelta(days=31)

_STATUS_MAP = {
    "S": RECORD_SUCCEEDED,
    "P": RECORD_PENDING,
    "D": RECORD_FAILED,
    "V": RECORD_REVERSED,
}
SUBSCRIPTION_PAYMENT_CODE = "T0002"


def _format_time(moment: datetime) -> str:
    return moment.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S+0000")


def _record_kind(event_code: str) -> str | None:
    if event_code.startswith("T00"):
        return KIND_CHARGE
    if event_code.startswith(("T11", "T12")):
        return KIND_REVERSAL
    return None


def _webhook_payload(
    *,
    kind: str,
    event_code: str,
    transaction_id: str,
    payment_ref: str,
    occurred_at: datetime,
    amount: Mapping[str, object],
    transaction_info: Mapping[str, object],
    payer_info: Mapping[str, object],
    api_base: str,
) -> dict[str, object]:
    resource: dict[str, object] = {
        "id": transaction_id,
        "amount": {
            "currency_code": amount.get("currency_code"),
            "value": str(amount.get("value", "")).lstrip("-"),
        },
        "create_time": occurred_at.isoformat(),
    }
    custom_field = optional_str(transaction_info.get("custom_field"))
    if custom_field is not None:
        resource["custom_id"] = custom_field
    payer_id = optional_str(payer_info.get("account_id"))
    if payer_id is not None:
        resource["payer"] = {"payer_id": payer_id}

    if kind == KIND_CHARGE:
        event_type = "PAYMENT.CAPTURE.COMPLETED"
        if event_code == SUBSCRIPTION_PAYMENT_CODE:
            event_type = "PAYMENT.SALE.COMPLETED"
            agreement_id = optional_str(transaction_info.get("paypal_reference_id"))
            if agreement_id is not None:
                resource["billing_agreement_id"] = agreement_id
    else:
        event_type = "PAYMENT.CAPTURE.REFUNDED"
        resource["links"] = [
            {"rel": "up", "href": f"{api_base}/v2/payments/captures/{payment_ref}"},
        ]

    return {
        "id": f"RECON-{transaction_id}",
        "event_type": event_type,
        "create_time": occurred_at.isoformat(),
        "resource_type": "capture" if kind == KIND_CHARGE else "refund",
        "resource": resource,
    }


def parse_transaction(
    detail: Mapping[str, object],
    *,
    api_base: str,
) -> ProviderRecord | None:
    """Map one transaction search row to a provider record, or None when irrelevant."""
    transaction_info = optional_mapping(detail.get("transaction_info"))
    payer_info = optional_mapping(detail.get("payer_info"))
    transaction_id = optional_str(transaction_info.get("transaction_id"))
    event_code = optional_str(transaction_info.get("transaction_event_code")) or ""
    kind = _record_kind(event_code)
    if transaction_id is None or kind is None:
        return None

    occurred_at = parse_iso_datetime(
        transaction_info.get("transaction_initiation_date"),
        "paypal transaction_initiation_date",
    )
    status = _STATUS_MAP.get(
        (optional_str(transaction_info.get("transaction_status")) or "").upper(),
        RECORD_PENDING,
    )
    if kind == KIND_REVERSAL:
        payment_ref = optional_str(transaction_info.get("paypal_reference_id"))
        if payment_ref is None:
            return None
        if status == RECORD_SUCCEEDED:
            status = RECORD_REVERSED
    else:
        payment_ref = transaction_id

    amount = optional_mapping(transaction_info.get("transaction_amount"))
    currency = normalize_currency(amount.get("currency_code"))
    amount_minor = decimal_amount_to_minor(str(amount.get("value", "")).lstrip("-"), currency)

    payload = None
    if status in {RECORD_SUCCEEDED, RECORD_REVERSED}:
        payload = _webhook_payload(
            kind=kind,
            event_code=event_code,
            transaction_id=transaction_id,
            payment_ref=payment_ref,
            occurred_at=occurred_at,
            amount=amount,
            transaction_info=transaction_info,
            payer_info=payer_info,
            api_base=api_base,
        )

    return ProviderRecord(
        provider=PROVIDER_PAYPAL,
        record_id=transaction_id,
        kind=kind,
        status=status,
        payment_ref=payment_ref,
        occurred_at=occurred_at,
        amount_minor=amount_minor,
        currency=currency,
        event_id=f"RECON-{transaction_id}" if payload is not None else None,
        payload=payload,
    )


class PaypalReportingClient:
    provider = PROVIDER_PAYPAL

    def __init__(
        self,
        *,
        api_base: str,
        client_id: str,
        client_secret: str,
        timeout_seconds: float,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._api_base = api_base.rstrip("/")
        self._client_id = client_id
        self._client_secret = client_secret
        self._timeout_seconds = timeout_seconds
        self._http_client = http_client

    async def fetch_records(
        self,
        *,
        window_start: datetime,
        window_end: datetime,
    ) -> list[ProviderRecord]:
        if not self._client_id or not self._client_secret:
            raise ProviderFetchError("paypal reporting credentials are not configured")
        if window_end - window_start > MAX_RANGE:
            raise ProviderFetchError("paypal transaction search window exceeds 31 days")

        try:
            if self._http_client is not None:
                return await self._fetch(self._http_client, window_start, window_end)
            async with httpx.AsyncClient(timeout=self._timeout_seconds) as client:
                return await self._fetch(client, window_start, window_end)
        except (httpx.HTTPError, ValueError) as exc:
            raise ProviderFetchError(f"paypal transaction search failed: {exc}") from exc

    async def _access_token(self, client: httpx.AsyncClient) -> str:
        response = await client.post(
            f"{self._api_base}/v1/oauth2/token",
            data={"grant_type": "client_credentials"},
            auth=(self._client_id, self._client_secret),
        )
        response.raise_for_status()
        token = optional_str(response.json().get("access_token"))
        if token is None:
            raise ProviderFetchError("paypal token response carried no access_token")
        return token

    async def _fetch(
        self,
        client: httpx.AsyncClient,
        window_start: datetime,
        window_end: datetime,
    ) -> list[ProviderRecord]:
        token = await self._access_token(client)
        records: list[ProviderRecord] = []
        page = 1
        while True:
            response = await client.get(
                f"{self._api_base}/v1/reporting/transactions",
                params={
                    "start_date": _format_time(window_start),
                    "end_date": _format_time(window_end),
                    "fields": "transaction_info,payer_info",
                    "page_size": PAGE_SIZE,
                    "page": page,
                },
                headers={"Authorization": f"Bearer {token}"},
            )
            response.raise_for_status()
            body = response.json()
            details = body.get("transaction_details")
            for detail in details if isinstance(details, list) else []:
                try:
                    record = parse_transaction(optional_mapping(detail), api_base=self._api_base)
                except NormalizationError as exc:
                    logger.warning(
                        "reconciliation_provider_record_unreadable",
                        provider=self.provider,
                        error=str(exc),
                    )
                    continue
                if record is not None:
                    records.append(record)

            total_pages = body.get("total_pages")
            if not isinstance(total_pages, int) or page >= total_pages:
                return records
            page += 1

from __future__ import annotations

import asyncio

import structlog
from fastapi import APIRouter, Request, status
from fastapi.responses import JSONResponse

from app.billing.errors import NormalizationError, TransientIngestError
from app.billing.ingestion import accept_delivery, process_journal_entry
from app.billing.normalizers import get_normalizer_registry
from app.core.config import get_settings

router = APIRouter(tags=["billing", "webhooks"])
logger = structlog.get_logger(__name__)


async def _process_inline(*, journal_entry_id: int, timeout_seconds: float) -> str | None:
    """Best-effort processing inside the delivery; the replay sweep covers any miss."""
    try:
        result = await asyncio.wait_for(
            process_journal_entry(journal_entry_id),
            timeout=timeout_seconds,
        )
        return result.status
    except asyncio.TimeoutError:
        logger.warning(
            "payment_webhook_processing_timeout",
            journal_entry_id=journal_entry_id,
            timeout_seconds=timeout_seconds,
        )
        return None
    except Exception as exc:
        logger.warning(
            "payment_webhook_processing_failed",
            journal_entry_id=journal_entry_id,
            error_type=type(exc).__name__,
        )
        return None


@router.post("/webhooks/payments/{provider}")
async def payment_webhook(provider: str, request: Request) -> JSONResponse:
    registry = get_normalizer_registry()
    if provider not in registry.providers:
        logger.warning("payment_webhook_unknown_provider", provider=provider)
        return JSONResponse(
            status_code=status.HTTP_404_NOT_FOUND,
            content={"status": "unknown_provider"},
        )

    try:
        payload = await request.json()
    except ValueError:
        logger.warning("payment_webhook_invalid_json", provider=provider)
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={"status": "invalid_json"},
        )
    if not isinstance(payload, dict):
        logger.warning("payment_webhook_invalid_payload", provider=provider)
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={"status": "invalid_payload"},
        )

    try:
        envelope, delivery = await accept_delivery(
            provider=provider,
            payload=payload,
            registry=registry,
        )
    except NormalizationError as exc:
        logger.warning(
            "payment_webhook_rejected",
            provider=provider,
            kind=exc.kind.value,
            detail=exc.detail,
        )
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={"status": "rejected"},
        )
    except TransientIngestError:
        # Never acknowledge (2xx) a delivery that is not durably journaled.
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content={"status": "retry"},
        )

    timeout_ms = max(1, int(getattr(get_settings(), "webhook_processing_timeout_ms", 2500)))
    process_status = await _process_inline(
        journal_entry_id=delivery.journal_entry_id,
        timeout_seconds=timeout_ms / 1000.0,
    )
    return JSONResponse(
        status_code=status.HTTP_200_OK,
        content={
            "status": "accepted",
            "provider_event_id": envelope.provider_event_id,
            "duplicate": not delivery.is_first_delivery,
            "processing": process_status or "deferred",
        },
    )

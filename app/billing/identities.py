from __future__ import annotations

from datetime import datetime
from uuid import UUID

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from app.billing.errors import InvariantViolationError, NormalizationError, NormalizationErrorKind
from app.db.models.billing_identities import BillingIdentity
from app.db.repo.billing_identities_repo import BillingIdentitiesRepo

logger = structlog.get_logger(__name__)


def parse_user_hint(user_hint: str | None) -> UUID | None:
    if user_hint is None:
        return None
    try:
        return UUID(user_hint)
    except ValueError as exc:
        raise NormalizationError(
            NormalizationErrorKind.MALFORMED_PAYLOAD,
            f"user hint {user_hint!r} is not a user id",
        ) from exc


async def customer_ref_for_user(
    session: AsyncSession,
    *,
    user_id: UUID,
    provider: str,
) -> str | None:
    identity = await BillingIdentitiesRepo.get_current_for_user(
        session,
        user_id=user_id,
        provider=provider,
    )
    return identity.external_customer_ref if identity is not None else None


async def user_for_customer_ref(
    session: AsyncSession,
    *,
    provider: str,
    external_customer_ref: str,
) -> UUID | None:
    # Superseded refs still resolve so historical events land on the right user.
    identity = await BillingIdentitiesRepo.get_by_customer_ref(
        session,
        provider=provider,
        external_customer_ref=external_customer_ref,
    )
    return identity.user_id if identity is not None else None


async def upsert_identity(
    session: AsyncSession,
    *,
    user_id: UUID,
    provider: str,
    external_customer_ref: str,
    now_utc: datetime,
) -> BillingIdentity:
    existing = await BillingIdentitiesRepo.get_by_customer_ref(
        session,
        provider=provider,
        external_customer_ref=external_customer_ref,
    )
    if existing is not None:
        if existing.user_id != user_id:
            raise InvariantViolationError(
                "customer reference already belongs to another user",
                context={
                    "provider": provider,
                    "external_customer_ref": external_customer_ref,
                    "user_id": str(user_id),
                    "mapped_user_id": str(existing.user_id),
                },
            )
        return existing

    current = await BillingIdentitiesRepo.get_current_for_user(
        session,
        user_id=user_id,
        provider=provider,
        for_update=True,
    )
    if current is not None:
        await BillingIdentitiesRepo.supersede(
            session,
            identity_id=current.id,
            superseded_at=now_utc,
        )
        logger.info(
            "billing_identity_superseded",
            user_id=str(user_id),
            provider=provider,
            previous_customer_ref=current.external_customer_ref,
        )
    return await BillingIdentitiesRepo.create(
        session,
        user_id=user_id,
        provider=provider,
        external_customer_ref=external_customer_ref,
        created_at=now_utc,
    )


async def resolve_event_user(
    session: AsyncSession,
    *,
    provider: str,
    customer_ref: str | None,
    user_hint: str | None,
    now_utc: datetime,
) -> UUID:
    """Resolve the internal user for an event: identity map first, then the checkout hint."""
    hinted_user_id = parse_user_hint(user_hint)
    if customer_ref is not None:
        mapped_user_id = await user_for_customer_ref(
            session,
            provider=provider,
            external_customer_ref=customer_ref,
        )
        if mapped_user_id is not None:
            if hinted_user_id is not None and hinted_user_id != mapped_user_id:
                logger.warning(
                    "billing_identity_hint_mismatch",
                    provider=provider,
                    customer_ref=customer_ref,
                    mapped_user_id=str(mapped_user_id),
                    hinted_user_id=str(hinted_user_id),
                )
            return mapped_user_id

    if hinted_user_id is None:
        raise NormalizationError(
            NormalizationErrorKind.UNKNOWN_CUSTOMER,
            f"{provider} customer {customer_ref!r} is not mapped to a user",
        )
    if customer_ref is not None:
        await upsert_identity(
            session,
            user_id=hinted_user_id,
            provider=provider,
            external_customer_ref=customer_ref,
            now_utc=now_utc,
        )
    return hinted_user_id

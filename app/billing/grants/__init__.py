from __future__ import annotations

from .common import event_key
from .engine import apply_event
from .expiry import activate_scheduled_entitlement, expire_entitlement
from .manual import upsert_entitlement_period


class GrantService:
    event_key = staticmethod(event_key)
    apply_event = staticmethod(apply_event)
    upsert_entitlement_period = staticmethod(upsert_entitlement_period)
    expire_entitlement = staticmethod(expire_entitlement)
    activate_scheduled_entitlement = staticmethod(activate_scheduled_entitlement)


__all__ = ["GrantService"]

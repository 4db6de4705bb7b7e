from __future__ import annotations

from datetime import datetime
from typing import Protocol

from app.reconciliation.types import ProviderRecord


class ProviderRecordSource(Protocol):
    provider: str

    async def fetch_records(
        self,
        *,
        window_start: datetime,
        window_end: datetime,
    ) -> list[ProviderRecord]: ...

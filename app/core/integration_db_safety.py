from __future__ import annotations

import re
from dataclasses import dataclass

from sqlalchemy.engine import make_url

TEST_DB_NAME_RE = re.compile(r"test", re.IGNORECASE)
# Restored copies of real billing data often keep a test-looking suffix.
LIVE_DATA_NAME_RE = re.compile(r"prod|live|replica|backup", re.IGNORECASE)
ALLOWED_LOCAL_HOSTS = frozenset(
    {
        "localhost",
        "127.0.0.1",
        "::1",
        "postgres",
        "billing_postgres",
    }
)


@dataclass(frozen=True, slots=True)
class IntegrationDbSafetyResult:
    is_safe: bool
    reason: str
    database_name: str
    host: str


def _unsafe_reason(backend: str, db_name: str, host: str) -> str | None:
    if backend != "postgresql":
        return "Integration tests support only PostgreSQL test databases."
    if not db_name:
        return "Database name is empty."
    if TEST_DB_NAME_RE.search(db_name) is None:
        return "Database name must clearly indicate a test database (contain 'test')."
    if LIVE_DATA_NAME_RE.search(db_name) is not None:
        return "Database name suggests a copy of live billing data."
    if host not in ALLOWED_LOCAL_HOSTS:
        return "Host is not in allowed local integration-test hosts."
    return None


def assess_integration_db_safety(database_url: str) -> IntegrationDbSafetyResult:
    parsed = make_url(database_url)
    db_name = (parsed.database or "").strip()
    host = (parsed.host or "").strip().lower()
    reason = _unsafe_reason(parsed.get_backend_name(), db_name, host)
    return IntegrationDbSafetyResult(
        is_safe=reason is None,
        reason=reason or "ok",
        database_name=db_name,
        host=host,
    )


def assert_safe_integration_db(database_url: str) -> None:
    """Refuse to point the truncating integration suite at anything but a local test DB."""
    result = assess_integration_db_safety(database_url)
    if result.is_safe:
        return

    raise RuntimeError(
        "Refusing to TRUNCATE the payment journal, ledger and entitlements.\n"
        f"Reason: {result.reason}\n"
        f"Resolved DB: name='{result.database_name}' host='{result.host}'\n"
        "Required: use a dedicated local PostgreSQL test DB, e.g. 'billing_test'."
    )

from __future__ import annotations

from collections.abc import Mapping
from datetime import datetime, timezone

from app.billing.errors import NormalizationError, NormalizationErrorKind

# Unix timestamps above this are treated as milliseconds.
_MILLISECOND_THRESHOLD = 2_000_000_000


def malformed(detail: str) -> NormalizationError:
    return NormalizationError(NormalizationErrorKind.MALFORMED_PAYLOAD, detail)


def as_mapping(value: object, what: str) -> Mapping[str, object]:
    if not isinstance(value, Mapping):
        raise malformed(f"{what} must be an object")
    return value


def optional_mapping(value: object) -> Mapping[str, object]:
    return value if isinstance(value, Mapping) else {}


def optional_str(value: object) -> str | None:
    if isinstance(value, str):
        stripped = value.strip()
        return stripped or None
    return None


def required_str(value: object, what: str) -> str:
    resolved = optional_str(value)
    if resolved is None:
        raise malformed(f"{what} is missing")
    return resolved


def parse_iso_datetime(value: object, what: str) -> datetime:
    raw = optional_str(value)
    if raw is None:
        raise malformed(f"{what} is missing")
    try:
        parsed = datetime.fromisoformat(raw.replace("Z", "+00:00"))
    except ValueError as exc:
        raise malformed(f"{what} is not an ISO timestamp") from exc
    if parsed.tzinfo is None:
        raise malformed(f"{what} has no timezone")
    return parsed.astimezone(timezone.utc)


def optional_iso_datetime(value: object, what: str) -> datetime | None:
    if value is None or optional_str(value) is None:
        return None
    return parse_iso_datetime(value, what)


def parse_unix_timestamp(value: object, what: str) -> datetime:
    if isinstance(value, bool):
        raise malformed(f"{what} is not a unix timestamp")
    if isinstance(value, int):
        seconds = value
    elif isinstance(value, str) and value.strip().isdigit():
        seconds = int(value.strip())
    else:
        raise malformed(f"{what} is not a unix timestamp")
    if seconds >= _MILLISECOND_THRESHOLD * 1000:
        raise malformed(f"{what} is out of range")
    if seconds >= _MILLISECOND_THRESHOLD:
        return datetime.fromtimestamp(seconds / 1000, tz=timezone.utc)
    return datetime.fromtimestamp(seconds, tz=timezone.utc)


def optional_unix_timestamp(value: object, what: str) -> datetime | None:
    if value is None:
        return None
    return parse_unix_timestamp(value, what)


def parse_custom_id(value: object) -> dict[str, str]:
    """Parse ``user:<uuid>|plan:<price_key>|provider:<name>`` hints."""
    hints: dict[str, str] = {}
    raw = optional_str(value)
    if raw is None:
        return hints
    for piece in raw.split("|"):
        key, sep, item = piece.partition(":")
        if not sep:
            continue
        key = key.strip().lower()
        item = item.strip()
        if key and item:
            hints[key] = item
    return hints

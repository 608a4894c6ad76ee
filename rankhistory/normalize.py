from datetime import date, datetime, timezone
from typing import Any


def normalize_text(s: str) -> str:
    return " ".join(s.strip().split())


def normalize_symbol(symbol: str) -> str:
    return normalize_text(symbol).upper()


def normalize_slug(slug: str) -> str:
    return normalize_text(slug).lower().replace(" ", "-")


def parse_timestamp(value: str) -> datetime:
    """Parse an API timestamp (ISO 8601, 'Z' suffix allowed) as an aware UTC datetime."""
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def quote_date(timestamp: str) -> date:
    """UTC calendar day a quote timestamp falls on."""
    return parse_timestamp(timestamp).date()


def parse_day(value: str) -> date:
    """Parse a YYYY-MM-DD calendar day. Raises ValueError on bad input."""
    return date.fromisoformat(value.strip())


def to_amount(value: Any) -> float:
    """Coerce an API number to a non-negative float (missing -> 0.0)."""
    if value is None:
        return 0.0
    amount = float(value)
    if amount != amount or amount < 0:  # NaN or negative
        return 0.0
    return amount

from datetime import date, datetime
from typing import Any, Dict, List


def _is_day(v: Any) -> bool:
    return isinstance(v, date) and not isinstance(v, datetime)


def validate_backfill_request(range_start: Any, range_end: Any, token_scope: Any) -> List[str]:
    """
    Returns a list of validation error messages. Empty list means valid.

    Bounds are inclusive calendar days and the start must come before
    the end. The scope is the number of tracked tokens to replay.
    """
    errors: List[str] = []

    if not _is_day(range_start):
        errors.append("date_range_start must be a calendar date (YYYY-MM-DD)")
    if not _is_day(range_end):
        errors.append("date_range_end must be a calendar date (YYYY-MM-DD)")
    if not errors and range_start >= range_end:
        errors.append("date_range_start must be before date_range_end")

    if isinstance(token_scope, bool) or not isinstance(token_scope, int):
        errors.append("token_scope must be an integer")
    elif token_scope < 1:
        errors.append("token_scope must be at least 1")

    return errors


def _is_non_empty_str(v: Any) -> bool:
    return isinstance(v, str) and v.strip() != ""


def validate_token_entry(data: Dict[str, Any]) -> List[str]:
    """
    Validate one token record from an import file.

    Accepts CMC listing objects as-is: ``id`` is read when ``cmc_id`` is absent.
    """
    errors: List[str] = []
    if not isinstance(data, dict):
        return ["Token entry must be an object"]

    cmc_id = data.get("cmc_id", data.get("id"))
    if cmc_id is None:
        errors.append("Missing required field: cmc_id")
    elif isinstance(cmc_id, bool) or not isinstance(cmc_id, int) or cmc_id < 1:
        errors.append("Field 'cmc_id' must be a positive integer")

    if "symbol" not in data:
        errors.append("Missing required field: symbol")
    elif not _is_non_empty_str(data["symbol"]):
        errors.append("Field 'symbol' must be a non-empty string")

    for f in ("name", "slug"):
        if f in data and data[f] is not None and not isinstance(data[f], str):
            errors.append(f"Field '{f}' must be a string if provided")

    if "is_tracked" in data and not isinstance(data["is_tracked"], bool):
        errors.append("Field 'is_tracked' must be a boolean if provided")

    return errors
